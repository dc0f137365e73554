"""
Gateway adapter contract.

Implements, for every concrete gateway:
- Exponential backoff for retryable errors (connection, rate limit)
- Circuit breaker pattern
- Timeout-bounded calls into the blocking SDKs
- Error classification into ``GatewayErrorKind``
"""
import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional

import structlog
from pydantic import BaseModel, ConfigDict
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from payment_engine.core.errors import GatewayError, GatewayErrorKind
from payment_engine.core.types import PaymentProvider
from payment_engine.integrations.mapper import (
    GatewayWebhookEvent,
    NormalisedPayment,
    NormalisedRefund,
)
from payment_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class CreatedIntent(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider_intent_id: str
    client_secret: Optional[str] = None
    raw_status: str


class CircuitBreaker:
    """
    Circuit breaker for gateway API calls.

    Stops calling a gateway for ``timeout`` seconds after
    ``failure_threshold`` consecutive transient failures.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Label used in logs and metrics
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(self.name, state)

    def allow(self) -> bool:
        """Return False while the circuit is open."""
        if self.state == "open":
            if (
                self.last_failure_time
                and time.monotonic() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open", gateway=self.name)
            else:
                return False
        return True

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed", gateway=self.name)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            if self.state != "open":
                logger.warning(
                    "circuit_breaker_opened",
                    gateway=self.name,
                    failure_count=self.failure_count,
                )
            self._set_state("open")


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, GatewayError) and error.retryable


def header_value(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup that works for plain dicts too."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


class PaymentGateway(ABC):
    """
    Capability interface implemented once per provider.

    Amounts passed in and returned are major-unit Decimals; conversion to the
    provider's minor unit happens inside the adapter.
    """

    provider: PaymentProvider
    supports_capture: bool = False
    requires_payment_signature: bool = False
    webhook_signature_header: str
    capturable_statuses: FrozenSet[str] = frozenset()

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        retry_attempts: int = 3,
        retry_backoff: float = 1.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.circuit_breaker = circuit_breaker or CircuitBreaker(self.provider.value)

    # ------------------------------------------------------------------
    # Call plumbing
    # ------------------------------------------------------------------

    @abstractmethod
    def classify_error(self, error: Exception) -> GatewayError:
        """Map an SDK exception onto the engine's error taxonomy."""

    async def _call_once(self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        provider = self.provider.value
        if not self.circuit_breaker.allow():
            metrics.record_gateway_error(provider, GatewayErrorKind.CONNECTION.value)
            raise GatewayError(
                f"{provider} circuit breaker is open",
                GatewayErrorKind.CONNECTION,
                provider=provider,
            )

        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            error = GatewayError(
                f"{provider} {operation} timed out after {self.timeout_seconds}s",
                GatewayErrorKind.CONNECTION,
                provider=provider,
                original_error=e,
            )
        except GatewayError as e:
            error = e
        except Exception as e:
            error = self.classify_error(e)
        else:
            self.circuit_breaker.on_success()
            metrics.record_gateway_call(provider, operation, "success", time.perf_counter() - start)
            return result

        if error.retryable:
            self.circuit_breaker.on_failure()
        metrics.record_gateway_call(provider, operation, "error", time.perf_counter() - start)
        metrics.record_gateway_error(provider, error.kind.value)
        logger.error(
            "gateway_api_error",
            provider=provider,
            operation=operation,
            kind=error.kind.value,
            error_message=error.message,
        )
        raise error from error.original_error

    async def _call(self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Run a blocking SDK call in a worker thread.

        Retries only connection and rate-limit errors, with exponential
        backoff, up to ``retry_attempts`` attempts in total.
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff, max=8),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._call_once(operation, func, *args, **kwargs)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> CreatedIntent:
        """Create a payment intent (Stripe) or order (Razorpay)."""

    @abstractmethod
    async def retrieve_payment(
        self, intent_id: str, transaction_id: Optional[str] = None
    ) -> NormalisedPayment:
        """Current gateway view of the payment behind ``intent_id``."""

    @abstractmethod
    async def capture(
        self,
        intent_id: str,
        transaction_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
    ) -> NormalisedPayment:
        """Capture an authorised payment."""

    @abstractmethod
    async def cancel(self, intent_id: str, reason: Optional[str] = None) -> None:
        """Cancel an uncaptured intent."""

    @abstractmethod
    async def create_refund(
        self,
        intent_id: str,
        transaction_id: Optional[str],
        amount: Optional[Decimal],
        currency: str,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> NormalisedRefund:
        """Refund ``amount`` (all when None) of a collected payment."""

    @abstractmethod
    async def list_payments(self, created_from: datetime, created_to: datetime) -> List[NormalisedPayment]:
        """Gateway payments created within the range, for reconciliation."""

    @abstractmethod
    def verify_signature(self, payload: bytes, signature: str, secret: Optional[str] = None) -> bool:
        """Authenticate a webhook body against its signature header."""

    def verify_payment_signature(self, intent_id: str, transaction_id: str, signature: str) -> bool:
        """Authenticate a client-side checkout result. Only some gateways sign these."""
        return False

    @abstractmethod
    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> GatewayWebhookEvent:
        """Parse a verified webhook body."""

    @abstractmethod
    async def health_check(self) -> bool:
        """Cheap authenticated call proving the gateway is reachable."""
