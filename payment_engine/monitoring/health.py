"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Redis connectivity
- Reachability of every configured payment gateway
"""
from typing import Any, Dict, Mapping

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_engine.core.cache import Cache
from payment_engine.core.types import PaymentProvider
from payment_engine.integrations.base import PaymentGateway

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Redis connectivity check
    - Gateway API reachability checks
    - Overall system health status
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: Cache,
        gateways: Mapping[PaymentProvider, PaymentGateway],
    ) -> None:
        self.session_factory = session_factory
        self.cache = cache
        self.gateways = dict(gateways)

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}") from e

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If Redis check fails
        """
        try:
            await self.cache.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}") from e

        return {
            "status": "healthy",
            "service": "redis",
            "message": "Redis connection successful",
        }

    async def check_gateway(self, gateway: PaymentGateway) -> Dict[str, Any]:
        """
        Check one gateway with a cheap authenticated call.

        Raises:
            HealthCheckError: If the gateway check fails
        """
        name = gateway.provider.value
        try:
            await gateway.health_check()
        except Exception as e:
            logger.error("gateway_health_check_failed", provider=name, error=str(e))
            raise HealthCheckError(f"{name} health check failed: {str(e)}") from e

        return {
            "status": "healthy",
            "service": name,
            "message": f"{name} API connection successful",
            "circuit_breaker": gateway.circuit_breaker.state,
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks."""
        probes = {
            "database": self.check_database,
            "redis": self.check_redis,
        }
        for provider, gateway in self.gateways.items():
            probes[provider.value] = lambda gateway=gateway: self.check_gateway(gateway)

        checks = {}
        all_healthy = True
        for service, probe in probes.items():
            try:
                checks[service] = await probe()
            except HealthCheckError as e:
                checks[service] = {
                    "status": "unhealthy",
                    "service": service,
                    "error": str(e),
                }
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: every dependency must be reachable."""
        return await self.check_all()
