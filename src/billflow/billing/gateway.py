"""Stripe API gateway with bounded timeouts and error translation.

The Stripe SDK is blocking, so every call runs in a worker thread under
``asyncio.wait_for``. Results come back as plain dicts and every
``stripe.StripeError`` leaves this module as a ``ProcessorError`` (or
``NotFoundError`` for a missing object on lookups).
"""

import asyncio
import logging
from functools import partial
from typing import Any, Callable

import stripe

from billflow.billing.errors import NotFoundError, ProcessorError, ValidationError
from billflow.config.settings import AppConfig

logger = logging.getLogger(__name__)


def to_plain(obj: Any) -> Any:
    """Convert a StripeObject (recursively) to builtin dicts and lists."""
    if isinstance(obj, stripe.StripeObject):
        to_dict = getattr(obj, "to_dict_recursive", None) or obj.to_dict
        return to_dict()
    return obj


class StripeGateway:
    """Thin async facade over the Stripe resources this service uses."""

    def __init__(self, api_key: str, api_version: str | None = None, timeout: float = 10.0):
        self._api_key = api_key
        self._api_version = api_version
        self._timeout = timeout

    @classmethod
    def from_config(cls, config: AppConfig) -> "StripeGateway":
        secret = config.stripe_secret.get_secret_value()
        if not secret:
            raise ValueError("stripe_secret not configured")
        return cls(
            api_key=secret,
            api_version=config.stripe_api_version,
            timeout=config.processor_timeout_seconds,
        )

    def _options(self) -> dict[str, str]:
        options = {"api_key": self._api_key}
        if self._api_version:
            options["stripe_version"] = self._api_version
        return options

    async def _call(
        self,
        operation: str,
        fn: Callable[..., Any],
        *args: Any,
        not_found: str | None = None,
        **params: Any,
    ) -> Any:
        """Run one SDK call under the gateway timeout.

        Args:
            operation: Short description used in logs and error messages
            fn: Stripe SDK callable
            not_found: If set, a ``resource_missing`` error becomes
                NotFoundError with this message

        Raises:
            NotFoundError: Object missing and ``not_found`` given
            ProcessorError: Any other Stripe failure or timeout
        """
        call = partial(fn, *args, **params, **self._options())
        try:
            result = await asyncio.wait_for(asyncio.to_thread(call), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Stripe {operation} timed out after {self._timeout}s")
            raise ProcessorError(f"{operation} timed out after {self._timeout}s") from e
        except stripe.InvalidRequestError as e:
            if not_found and e.code == "resource_missing":
                raise NotFoundError(not_found) from e
            logger.error(f"Stripe {operation} rejected: {e}")
            raise ProcessorError(e.user_message or str(e)) from e
        except stripe.StripeError as e:
            logger.error(f"Stripe {operation} failed: {e}")
            raise ProcessorError(e.user_message or str(e)) from e
        return to_plain(result)

    # Customers

    async def find_customer_by_email(self, email: str) -> dict | None:
        result = await self._call("customer lookup", stripe.Customer.list, email=email, limit=1)
        data = result.get("data") or []
        return data[0] if data else None

    async def create_customer(self, email: str) -> dict:
        return await self._call("customer create", stripe.Customer.create, email=email)

    async def retrieve_customer(self, customer_id: str) -> dict:
        return await self._call(
            "customer retrieve",
            stripe.Customer.retrieve,
            customer_id,
            not_found=f"Customer not found: {customer_id}",
        )

    async def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> dict:
        return await self._call(
            "customer update",
            stripe.Customer.modify,
            customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
        )

    # Payment intents and methods

    async def create_payment_intent(self, **params: Any) -> dict:
        return await self._call("payment intent create", stripe.PaymentIntent.create, **params)

    async def retrieve_payment_intent(self, intent_id: str) -> dict:
        return await self._call(
            "payment intent retrieve",
            stripe.PaymentIntent.retrieve,
            intent_id,
            not_found=f"Payment authorization not found: {intent_id}",
        )

    async def retrieve_payment_method(self, payment_method_id: str) -> dict:
        return await self._call(
            "payment method retrieve", stripe.PaymentMethod.retrieve, payment_method_id
        )

    async def attach_payment_method(self, payment_method_id: str, customer_id: str) -> dict:
        return await self._call(
            "payment method attach",
            stripe.PaymentMethod.attach,
            payment_method_id,
            customer=customer_id,
        )

    # Subscriptions and portal

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> dict:
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "expand": ["latest_invoice.payment_intent"],
            "metadata": metadata,
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        return await self._call("subscription create", stripe.Subscription.create, **params)

    async def create_portal_session(self, customer_id: str, return_url: str) -> dict:
        if not customer_id:
            raise ValidationError("Customer ID required")
        return await self._call(
            "billing portal session create",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
