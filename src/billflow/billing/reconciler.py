"""Stripe webhook verification and reconciliation into local records."""

import asyncio
import json
import logging
from typing import Any

import stripe

from billflow.billing.errors import (
    AuthenticityError,
    BillingError,
    MalformedPayloadError,
    NotFoundError,
    StoreReadError,
    StoreWriteError,
)
from billflow.billing.gateway import StripeGateway
from billflow.billing.models import LocalSubscriptionRecord, from_epoch, ref_id
from billflow.billing.rules import (
    EventKind,
    Outcome,
    WebhookEvent,
    evaluate,
    subject_email,
    subject_subscription_id,
)
from billflow.billing.store import SubscriptionStore
from billflow.config.settings import AppConfig

logger = logging.getLogger(__name__)


def parse_event(payload: bytes) -> WebhookEvent:
    """Parse a verified webhook body.

    Raises:
        MalformedPayloadError: If the body is not JSON or lacks id, type,
            created or data.object
    """
    try:
        body = json.loads(payload)
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedPayloadError(f"Webhook body is not valid JSON: {e}") from e

    if not isinstance(body, dict):
        raise MalformedPayloadError("Webhook body is not a JSON object")

    event_id = body.get("id")
    event_type = body.get("type")
    created = body.get("created")
    subject = (body.get("data") or {}).get("object")

    if not event_id or not event_type:
        raise MalformedPayloadError("Webhook event is missing id or type")
    if isinstance(created, bool) or not isinstance(created, (int, float)):
        raise MalformedPayloadError(f"Webhook event {event_id} has no valid created timestamp")
    if not isinstance(subject, dict):
        raise MalformedPayloadError(f"Webhook event {event_id} has no data.object")

    return WebhookEvent(id=event_id, type=event_type, created=from_epoch(created), subject=subject)


class WebhookReconciler:
    """Applies Stripe events to local subscription records.

    Redelivery belongs to Stripe: any failure is raised so the HTTP layer
    answers with an error status, and nothing is retried here.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        webhook_secret: str,
        gateway: StripeGateway | None = None,
        tolerance: int = 300,
        store_timeout: float = 5.0,
    ):
        self._store = store
        self._webhook_secret = webhook_secret
        self._gateway = gateway
        self._tolerance = tolerance
        self._store_timeout = store_timeout

    @classmethod
    def from_config(
        cls, config: AppConfig, store: SubscriptionStore, gateway: StripeGateway | None = None
    ) -> "WebhookReconciler":
        return cls(
            store=store,
            webhook_secret=config.stripe_webhook_secret.get_secret_value(),
            gateway=gateway,
            tolerance=config.webhook_tolerance_seconds,
            store_timeout=config.store_timeout_seconds,
        )

    def verify(self, payload: bytes, sig_header: str | None) -> WebhookEvent:
        """Check the Stripe-Signature header, then parse the body.

        Verification runs on the raw bytes exactly as received.

        Raises:
            AuthenticityError: On a missing, stale or mismatched signature
            MalformedPayloadError: If the verified body is not a usable event
        """
        if not self._webhook_secret:
            raise AuthenticityError("Webhook secret not configured")
        if not sig_header:
            raise AuthenticityError("Missing Stripe-Signature header")

        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            # Signed payloads are always UTF-8
            logger.error("Invalid webhook signature: body is not UTF-8")
            raise AuthenticityError("Invalid signature") from e

        try:
            stripe.WebhookSignature.verify_header(
                text, sig_header, self._webhook_secret, tolerance=self._tolerance
            )
        except stripe.SignatureVerificationError as e:
            logger.error(f"Invalid webhook signature: {e}")
            raise AuthenticityError("Invalid signature") from e

        return parse_event(payload)

    async def reconcile(self, payload: bytes, sig_header: str | None) -> dict[str, bool]:
        """Verify one delivery and apply it to the matching local record.

        Unknown event types, duplicates, stale events and events that cannot
        be tied to a customer are acknowledged without being applied.

        Returns:
            ``{"received": True}``

        Raises:
            AuthenticityError, MalformedPayloadError, StoreReadError,
            StoreWriteError, ProcessorError
        """
        event = self.verify(payload, sig_header)
        kind = event.kind
        logger.info(f"Received webhook {event.type} ({event.id})")

        if kind is EventKind.UNKNOWN:
            logger.info(f"Unhandled event type: {event.type}")
            return {"received": True}

        record = await self._load_record(event)
        if record is None:
            logger.warning(f"{event.type} {event.id}: cannot resolve customer - not applied")
            return {"received": True}

        decision = evaluate(record, event)
        if decision.outcome is Outcome.DUPLICATE:
            logger.info(f"Event {event.id} already applied to {record.customer_email}")
        elif decision.outcome is Outcome.STALE:
            logger.info(
                f"Event {event.id} at {event.created.isoformat()} is older than "
                f"{record.last_event_timestamp.isoformat()} for {record.customer_email} - not applied"
            )
        elif decision.outcome is Outcome.APPLIED:
            stored = await self._persist(decision.record)
            logger.info(
                f"Applied {event.type} {event.id} to {stored.customer_email}: "
                f"status {record.status} -> {stored.status}"
            )

        return {"received": True}

    async def _load_record(self, event: WebhookEvent) -> LocalSubscriptionRecord | None:
        """Find (or start) the record an event belongs to, keyed by email."""
        subject = event.subject
        email = subject_email(subject)

        if email:
            record = await self._with_timeout(self._store.find_by_customer(email), StoreReadError)
            return record or LocalSubscriptionRecord(customer_email=email)

        subscription_id = subject_subscription_id(event.kind, subject)
        if subscription_id:
            record = await self._with_timeout(
                self._store.find_by_subscription(subscription_id), StoreReadError
            )
            if record is not None:
                return record

        email = await self._customer_email(ref_id(subject.get("customer")))
        if email is None:
            return None
        record = await self._with_timeout(self._store.find_by_customer(email), StoreReadError)
        return record or LocalSubscriptionRecord(customer_email=email)

    async def _customer_email(self, customer_id: str | None) -> str | None:
        if not customer_id or self._gateway is None:
            return None
        try:
            customer = await self._gateway.retrieve_customer(customer_id)
        except NotFoundError:
            logger.warning(f"Customer {customer_id} no longer exists in Stripe")
            return None
        return customer.get("email") or None

    async def _persist(self, record: LocalSubscriptionRecord) -> LocalSubscriptionRecord:
        return await self._with_timeout(self._store.upsert(record), StoreWriteError)

    async def _with_timeout(self, coro: Any, error: type[BillingError]) -> Any:
        try:
            return await asyncio.wait_for(coro, timeout=self._store_timeout)
        except asyncio.TimeoutError as e:
            raise error(f"Subscription store timed out after {self._store_timeout}s") from e
