"""One-time payment authorization and customer resolution."""

import logging
from typing import Mapping

from billflow.billing.errors import ProcessorError, ValidationError
from billflow.billing.gateway import StripeGateway
from billflow.billing.models import AuthorizationHandle, PaymentAuthorization
from billflow.billing.plans import normalize_interval

logger = logging.getLogger(__name__)

BILLING_PERIODS = {"month": "monthly", "year": "yearly"}


def require_fields(**fields: object) -> None:
    """Raise ValidationError naming every missing or blank field."""
    missing = [
        name
        for name, value in fields.items()
        if value is None or (isinstance(value, str) and not value.strip())
    ]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


class PaymentAuthorizer:
    """Creates and reads payment authorizations (Stripe PaymentIntents)."""

    def __init__(self, gateway: StripeGateway, product_name: str = "Subscription"):
        self._gateway = gateway
        self._product_name = product_name

    async def resolve_customer(self, email: str) -> str:
        """Find the customer for an email, creating it on first use.

        Lookup always precedes creation, so sequential calls with the same
        email reuse one customer. Two truly concurrent first calls can still
        both create one; Stripe offers no atomic upsert by email.

        Returns:
            Stripe customer id
        """
        customer = await self._gateway.find_customer_by_email(email)
        if customer is not None:
            return customer["id"]

        customer = await self._gateway.create_customer(email)
        logger.info(f"Created Stripe customer {customer['id']} for {email}")
        return customer["id"]

    async def create_authorization(
        self,
        amount: int,
        currency: str,
        customer_email: str,
        metadata: Mapping[str, str] | None = None,
    ) -> AuthorizationHandle:
        """Create a one-time payment authorization for a customer.

        The payment method used to confirm it is saved to the customer
        (``setup_future_usage=off_session``) so it can be bound as the
        subscription's default afterwards.

        Args:
            amount: Positive amount in minor currency units
            currency: ISO currency code
            customer_email: Email identifying the customer
            metadata: String metadata, typically plan_id and interval

        Returns:
            AuthorizationHandle with the id and client confirmation secret

        Raises:
            ValidationError: On missing fields, bad amount or non-string metadata
            ProcessorError: On Stripe failures
        """
        require_fields(currency=currency, customer_email=customer_email)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("amount must be a positive integer in minor currency units")

        metadata = dict(metadata or {})
        if not all(isinstance(v, str) for v in metadata.values()):
            raise ValidationError("metadata values must be strings")
        metadata["customer_email"] = customer_email

        customer_id = await self.resolve_customer(customer_email)

        plan_id = metadata.get("plan_id")
        interval = normalize_interval(metadata.get("interval") or "")
        description = f"{self._product_name} subscription"
        if plan_id and interval:
            description = f"{self._product_name} {plan_id} subscription ({BILLING_PERIODS[interval]})"

        intent = await self._gateway.create_payment_intent(
            amount=amount,
            currency=currency.lower(),
            customer=customer_id,
            setup_future_usage="off_session",
            metadata=metadata,
            description=description,
        )

        client_secret = intent.get("client_secret")
        if not client_secret:
            raise ProcessorError(f"Payment intent {intent.get('id')} returned no client secret")

        logger.info(
            f"Created payment authorization {intent['id']} for {customer_email}: "
            f"{amount} {currency.lower()}"
        )
        return AuthorizationHandle(id=intent["id"], client_confirmation_secret=client_secret)

    async def get_authorization(self, authorization_id: str) -> PaymentAuthorization:
        """Retrieve an authorization by id.

        Raises:
            NotFoundError: If Stripe does not know the id
            ProcessorError: On other Stripe failures
        """
        intent = await self._gateway.retrieve_payment_intent(authorization_id)
        return PaymentAuthorization.from_stripe(intent)
