"""Client for the order service, the authority on order totals."""
from decimal import Decimal, InvalidOperation
from typing import Optional, Protocol

import httpx
import structlog

from payment_engine.core.errors import OrderServiceError, PaymentValidationError

logger = structlog.get_logger(__name__)


class OrderService(Protocol):
    async def get_order_total(self, order_id: str) -> Decimal:
        ...


class HttpOrderService:
    """Reads ``GET /orders/{order_id}`` and returns its total in major units."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def get_order_total(self, order_id: str) -> Decimal:
        """
        Fetch the order total.

        Raises:
            PaymentValidationError: If the order does not exist
            OrderServiceError: If the service is unreachable or the answer is unusable
        """
        try:
            response = await self.client.get(f"/orders/{order_id}")
        except httpx.HTTPError as e:
            logger.error("order_service_unreachable", order_id=order_id, error=str(e))
            raise OrderServiceError(f"Order service unavailable: {e}") from e

        if response.status_code == 404:
            raise PaymentValidationError(f"Order {order_id} not found", order_id=order_id)
        if response.is_error:
            logger.error(
                "order_service_error",
                order_id=order_id,
                status_code=response.status_code,
            )
            raise OrderServiceError(
                f"Order service returned {response.status_code} for order {order_id}"
            )

        body = response.json()
        total = body.get("total_amount", body.get("total"))
        try:
            return Decimal(str(total))
        except (InvalidOperation, TypeError) as e:
            raise OrderServiceError(f"Order {order_id} has no usable total") from e

    async def close(self) -> None:
        await self.client.aclose()
