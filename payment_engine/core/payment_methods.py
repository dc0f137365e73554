"""
Saved payment methods.

Cards are vaulted on the Stripe customer; nothing is stored locally. The
customer id passed in is the Stripe customer id.
"""
from typing import List, Mapping

import structlog

from payment_engine.core.errors import PaymentValidationError
from payment_engine.core.types import PaymentProvider
from payment_engine.integrations.base import PaymentGateway
from payment_engine.integrations.mapper import SavedPaymentMethod
from payment_engine.integrations.stripe_client import StripeGateway

logger = structlog.get_logger(__name__)


class PaymentMethodManager:
    """List, save and remove a customer's cards at Stripe."""

    def __init__(self, gateways: Mapping[PaymentProvider, PaymentGateway]):
        self.gateways = dict(gateways)

    def _stripe(self) -> StripeGateway:
        gateway = self.gateways.get(PaymentProvider.STRIPE)
        if not isinstance(gateway, StripeGateway):
            raise PaymentValidationError("Saved payment methods require the Stripe provider")
        return gateway

    async def get_payment_methods(self, customer_id: str) -> List[SavedPaymentMethod]:
        return await self._stripe().list_payment_methods(customer_id)

    async def save_payment_method(
        self, customer_id: str, payment_method_id: str, set_as_default: bool = False
    ) -> SavedPaymentMethod:
        """
        Attach a confirmed payment method to the customer.

        Raises:
            GatewayError: If Stripe rejects the method or the customer
        """
        return await self._stripe().attach_payment_method(
            customer_id, payment_method_id, set_as_default=set_as_default
        )

    async def delete_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        """
        Detach a payment method from the customer.

        Raises:
            PaymentValidationError: If the method is not saved on this customer
        """
        gateway = self._stripe()
        saved = await gateway.list_payment_methods(customer_id)
        if payment_method_id not in {m.id for m in saved}:
            raise PaymentValidationError(
                f"Payment method {payment_method_id} is not saved for this customer",
                customer_id=customer_id,
            )
        await gateway.detach_payment_method(payment_method_id)
        logger.info(
            "payment_method_deleted",
            customer_id=customer_id,
            payment_method_id=payment_method_id,
        )
