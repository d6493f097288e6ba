"""Binding a confirmed payment method to a customer as invoice default."""

import logging

from billflow.billing.gateway import StripeGateway
from billflow.billing.models import PaymentMethodBinding, ref_id

logger = logging.getLogger(__name__)


class PaymentMethodBinder:
    """Attaches payment methods and makes them the customer's default."""

    def __init__(self, gateway: StripeGateway):
        self._gateway = gateway

    async def bind_default(self, customer_id: str, payment_method_id: str) -> PaymentMethodBinding:
        """Attach a payment method to a customer and mark it default.

        Idempotent: a method already attached to the customer is not attached
        again, and setting the same default twice changes nothing. Setting a
        new default supersedes the previous one.

        Raises:
            ProcessorError: If Stripe refuses the attach or update (for example
                when the method belongs to another customer)
        """
        method = await self._gateway.retrieve_payment_method(payment_method_id)
        owner = ref_id(method.get("customer"))

        if owner == customer_id:
            logger.debug(f"Payment method {payment_method_id} already attached to {customer_id}")
        else:
            await self._gateway.attach_payment_method(payment_method_id, customer_id)
            logger.info(f"Attached payment method {payment_method_id} to {customer_id}")

        await self._gateway.set_default_payment_method(customer_id, payment_method_id)
        logger.info(f"Default payment method for {customer_id} is now {payment_method_id}")

        return PaymentMethodBinding(
            customer_id=customer_id,
            payment_method_id=payment_method_id,
            is_default=True,
        )
