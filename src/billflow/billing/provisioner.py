"""Subscription provisioning saga.

authorization verified -> payment method bound -> subscription created.

Each step either succeeds or the whole call fails. Nothing is rolled back:
every step is idempotent or gated on an external status, so the caller can
safely re-drive from the top.
"""

import asyncio
import logging
from typing import Any

from billflow.billing.authorizer import PaymentAuthorizer, require_fields
from billflow.billing.binder import PaymentMethodBinder
from billflow.billing.errors import (
    BillingError,
    MissingPaymentMethodError,
    NotReadyError,
    ProcessorError,
    StoreWriteError,
)
from billflow.billing.gateway import StripeGateway
from billflow.billing.models import (
    LocalSubscriptionRecord,
    ProvisioningState,
    ProvisionResult,
    from_epoch,
)
from billflow.billing.plans import PlanCatalog
from billflow.billing.store import SubscriptionStore

logger = logging.getLogger(__name__)


def confirmation_secret(subscription: dict[str, Any]) -> str | None:
    """Client secret needed to confirm the first invoice, if Stripe returned one.

    Reads the expanded ``latest_invoice.payment_intent`` and falls back to the
    invoice ``confirmation_secret`` used by newer API versions.
    """
    invoice = subscription.get("latest_invoice")
    if not isinstance(invoice, dict):
        return None
    intent = invoice.get("payment_intent")
    if isinstance(intent, dict) and intent.get("client_secret"):
        return intent["client_secret"]
    secret = invoice.get("confirmation_secret")
    if isinstance(secret, dict):
        return secret.get("client_secret")
    return None


class SubscriptionProvisioner:
    """Creates a recurring subscription from a succeeded authorization."""

    def __init__(
        self,
        gateway: StripeGateway,
        plans: PlanCatalog,
        authorizer: PaymentAuthorizer | None = None,
        binder: PaymentMethodBinder | None = None,
        store: SubscriptionStore | None = None,
        store_timeout: float = 5.0,
    ):
        self._gateway = gateway
        self._plans = plans
        self._authorizer = authorizer or PaymentAuthorizer(gateway)
        self._binder = binder or PaymentMethodBinder(gateway)
        self._store = store
        self._store_timeout = store_timeout

    async def provision(
        self,
        plan_id: str,
        interval: str,
        authorization_id: str,
        customer_email: str,
    ) -> ProvisionResult:
        """Run the provisioning saga.

        Args:
            plan_id: Configured plan id, e.g. 'essential'
            interval: 'month' or 'year' (aliases accepted)
            authorization_id: PaymentIntent the customer already confirmed
            customer_email: Email identifying the customer

        Returns:
            ProvisionResult; status 'incomplete' is expected, the caller
            confirms the first invoice with the returned client secret

        Raises:
            ValidationError: Missing input (before any network call)
            NotFoundError: Unknown authorization
            NotReadyError: Authorization has not succeeded
            MissingPaymentMethodError: Authorization carries no payment method
            UnknownPlanError: Plan/interval not configured
            ProcessorError: Stripe failure or timeout
            StoreWriteError: Subscription created but local record not saved
        """
        require_fields(
            plan_id=plan_id,
            interval=interval,
            authorization_id=authorization_id,
            customer_email=customer_email,
        )

        state = ProvisioningState.AUTHORIZATION_PENDING
        try:
            authorization = await self._authorizer.get_authorization(authorization_id)
            if not authorization.succeeded:
                raise NotReadyError(
                    f"Payment authorization {authorization_id} is {authorization.status}, "
                    "not succeeded"
                )
            state = self._advance(state, ProvisioningState.AUTHORIZATION_VERIFIED, authorization_id)

            customer_id = await self._authorizer.resolve_customer(customer_email)

            payment_method_id = authorization.payment_method_id
            if not payment_method_id:
                raise MissingPaymentMethodError(
                    f"Payment authorization {authorization_id} has no payment method"
                )
            await self._binder.bind_default(customer_id, payment_method_id)
            state = self._advance(state, ProvisioningState.METHOD_BOUND, authorization_id)

            price = self._plans.resolve(plan_id, interval)
            subscription = await self._gateway.create_subscription(
                customer_id=customer_id,
                price_id=price.price_id,
                metadata={
                    "plan_id": plan_id,
                    "interval": price.interval,
                    "customer_email": customer_email,
                },
                idempotency_key=f"subscription-{authorization_id}",
            )
            if not subscription.get("id"):
                raise ProcessorError("Subscription create returned no id")
            state = self._advance(state, ProvisioningState.SUBSCRIPTION_CREATED, authorization_id)
        except BillingError as e:
            logger.warning(
                f"Provisioning {authorization_id} failed after {state.value}: {e.kind}: {e}"
            )
            raise

        result = ProvisionResult(
            subscription_id=subscription["id"],
            status=subscription.get("status") or "incomplete",
            client_confirmation_secret=confirmation_secret(subscription),
        )

        if self._store is not None:
            await self._record(customer_email, customer_id, plan_id, price.interval, subscription)

        logger.info(
            f"Provisioned subscription {result.subscription_id} for {customer_email} "
            f"({plan_id}/{price.interval}): status={result.status}"
        )
        return result

    def _advance(
        self, current: ProvisioningState, target: ProvisioningState, authorization_id: str
    ) -> ProvisioningState:
        logger.debug(f"Provisioning {authorization_id}: {current.value} -> {target.value}")
        return target

    async def _record(
        self,
        email: str,
        customer_id: str,
        plan_id: str,
        interval: str,
        subscription: dict[str, Any],
    ) -> None:
        """Write the initial local record through the reconciliation ordering rule.

        The record is stamped with the subscription's creation time; if a
        webhook already stored a newer state, it is left alone.
        """
        try:
            existing = await asyncio.wait_for(
                self._store.find_by_customer(email), timeout=self._store_timeout
            )
            base = existing or LocalSubscriptionRecord(customer_email=email)
            created = from_epoch(subscription.get("created") or 0)

            if base.subscription_id == subscription["id"] and base.is_newer_than(created):
                logger.info(f"Local record for {email} already ahead of provisioning - kept")
                return

            record = LocalSubscriptionRecord(
                customer_email=email,
                stripe_customer_id=customer_id,
                subscription_id=subscription["id"],
                plan=plan_id,
                interval=interval,
                status=subscription.get("status") or base.status,
                last_event_id=base.last_event_id,
                last_event_timestamp=base.last_event_timestamp,
                recent_event_ids=base.recent_event_ids,
            ).stamped(None, max(created, base.last_event_timestamp or created))
            await asyncio.wait_for(self._store.upsert(record), timeout=self._store_timeout)
        except asyncio.TimeoutError as e:
            raise StoreWriteError(
                f"Subscription {subscription['id']} created but local record timed out"
            ) from e
        except BillingError as e:
            raise StoreWriteError(
                f"Subscription {subscription['id']} created but local record not saved: {e}"
            ) from e
