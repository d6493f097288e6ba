"""Reconciliation rules: event kinds and pure record transitions.

Nothing here performs I/O. ``evaluate`` folds one event into a record and
says whether the result must be persisted, which makes the rules easy to
replay in any order.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from billflow.billing.models import LocalSubscriptionRecord, SubscriptionStatus, ref_id

CANCELED = SubscriptionStatus.CANCELED.value


class EventKind(str, Enum):
    """Closed set of processor events this service applies."""

    SUBSCRIPTION_CHANGED = "subscription_changed"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice_payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    AUTHORIZATION_SUCCEEDED = "authorization_succeeded"
    UNKNOWN = "unknown"

    @classmethod
    def from_type(cls, event_type: str) -> "EventKind":
        return EVENT_TYPES.get(event_type, cls.UNKNOWN)


EVENT_TYPES: dict[str, EventKind] = {
    "customer.subscription.created": EventKind.SUBSCRIPTION_CHANGED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_CHANGED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
    "invoice.payment_succeeded": EventKind.INVOICE_PAYMENT_SUCCEEDED,
    "invoice.payment_failed": EventKind.INVOICE_PAYMENT_FAILED,
    "payment_intent.succeeded": EventKind.AUTHORIZATION_SUCCEEDED,
}


@dataclass(frozen=True)
class WebhookEvent:
    """A verified processor event."""

    id: str
    type: str
    created: datetime
    subject: dict[str, Any]

    @property
    def kind(self) -> EventKind:
        return EventKind.from_type(self.type)


class Outcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    IGNORED = "ignored"


@dataclass(frozen=True)
class Decision:
    outcome: Outcome
    record: LocalSubscriptionRecord


# Subject accessors


def subject_subscription_id(kind: EventKind, subject: dict[str, Any]) -> str | None:
    """Subscription id referenced by an event subject, if any."""
    if kind in (EventKind.SUBSCRIPTION_CHANGED, EventKind.SUBSCRIPTION_DELETED):
        return subject.get("id")
    if kind in (EventKind.INVOICE_PAYMENT_SUCCEEDED, EventKind.INVOICE_PAYMENT_FAILED):
        subscription = ref_id(subject.get("subscription"))
        if subscription is None:
            # Newer API versions nest it under the invoice parent
            details = (subject.get("parent") or {}).get("subscription_details") or {}
            subscription = ref_id(details.get("subscription"))
        return subscription
    return None


def subject_email(subject: dict[str, Any]) -> str | None:
    """Customer email carried by a subscription, invoice or payment intent."""
    metadata = subject.get("metadata") or {}
    return (
        metadata.get("customer_email")
        or subject.get("customer_email")
        or subject.get("receipt_email")
        or None
    )


def _is_closed(record: LocalSubscriptionRecord, subscription_id: str | None) -> bool:
    """A canceled subscription is never reopened; a new subscription id is a fresh start."""
    if record.status != CANCELED:
        return False
    return subscription_id is None or record.subscription_id in (None, subscription_id)


def _with_subject_refs(
    record: LocalSubscriptionRecord, subject: dict[str, Any], subscription_id: str | None
) -> LocalSubscriptionRecord:
    metadata = subject.get("metadata") or {}
    return replace(
        record,
        stripe_customer_id=ref_id(subject.get("customer")) or record.stripe_customer_id,
        subscription_id=subscription_id or record.subscription_id,
        plan=metadata.get("plan_id") or record.plan,
        interval=metadata.get("interval") or record.interval,
    )


# Transition handlers: (record, subject) -> record


def on_subscription_changed(
    record: LocalSubscriptionRecord, subscription: dict[str, Any]
) -> LocalSubscriptionRecord:
    """Copy the processor status verbatim, including statuses we do not know."""
    subscription_id = subscription.get("id")
    if _is_closed(record, subscription_id):
        return record
    updated = _with_subject_refs(record, subscription, subscription_id)
    return replace(updated, status=subscription.get("status") or record.status)


def on_subscription_deleted(
    record: LocalSubscriptionRecord, subscription: dict[str, Any]
) -> LocalSubscriptionRecord:
    """Cancel the tracked subscription; ending some other subscription of the customer is a no-op."""
    subscription_id = subscription.get("id")
    if (
        subscription_id
        and record.subscription_id
        and subscription_id != record.subscription_id
        and record.status != CANCELED
    ):
        return record
    updated = _with_subject_refs(record, subscription, subscription_id)
    return replace(updated, status=CANCELED)


def on_invoice_payment_succeeded(
    record: LocalSubscriptionRecord, invoice: dict[str, Any]
) -> LocalSubscriptionRecord:
    subscription_id = subject_subscription_id(EventKind.INVOICE_PAYMENT_SUCCEEDED, invoice)
    if _is_closed(record, subscription_id):
        return record
    updated = replace(
        record,
        stripe_customer_id=ref_id(invoice.get("customer")) or record.stripe_customer_id,
        subscription_id=subscription_id or record.subscription_id,
    )
    if record.status in (SubscriptionStatus.INCOMPLETE.value, SubscriptionStatus.PAST_DUE.value):
        updated = replace(updated, status=SubscriptionStatus.ACTIVE.value)
    return updated


def on_invoice_payment_failed(
    record: LocalSubscriptionRecord, invoice: dict[str, Any]
) -> LocalSubscriptionRecord:
    subscription_id = subject_subscription_id(EventKind.INVOICE_PAYMENT_FAILED, invoice)
    if _is_closed(record, subscription_id):
        return record
    return replace(
        record,
        stripe_customer_id=ref_id(invoice.get("customer")) or record.stripe_customer_id,
        subscription_id=subscription_id or record.subscription_id,
        status=SubscriptionStatus.PAST_DUE.value,
    )


def on_authorization_succeeded(
    record: LocalSubscriptionRecord, intent: dict[str, Any]
) -> LocalSubscriptionRecord:
    """Remember the customer and chosen plan; subscription status is untouched."""
    return _with_subject_refs(record, intent, None)


Handler = Callable[[LocalSubscriptionRecord, dict[str, Any]], LocalSubscriptionRecord]

HANDLERS: dict[EventKind, Handler] = {
    EventKind.SUBSCRIPTION_CHANGED: on_subscription_changed,
    EventKind.SUBSCRIPTION_DELETED: on_subscription_deleted,
    EventKind.INVOICE_PAYMENT_SUCCEEDED: on_invoice_payment_succeeded,
    EventKind.INVOICE_PAYMENT_FAILED: on_invoice_payment_failed,
    EventKind.AUTHORIZATION_SUCCEEDED: on_authorization_succeeded,
}


def evaluate(record: LocalSubscriptionRecord, event: WebhookEvent) -> Decision:
    """Fold one event into a record.

    Replays of an applied event id and events older than the record's last
    applied timestamp leave the record untouched.
    """
    handler = HANDLERS.get(event.kind)
    if handler is None:
        return Decision(Outcome.IGNORED, record)
    if record.has_applied(event.id):
        return Decision(Outcome.DUPLICATE, record)
    if record.is_newer_than(event.created):
        return Decision(Outcome.STALE, record)

    updated = handler(record, event.subject).stamped(event.id, event.created)
    return Decision(Outcome.APPLIED, updated)
