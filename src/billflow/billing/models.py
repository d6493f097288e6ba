"""Billing domain types: statuses, processor objects and the local record."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

# Applied event ids remembered per record for replay detection
RECENT_EVENT_WINDOW = 32


class AuthorizationStatus(str, Enum):
    """Stripe PaymentIntent status."""

    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    REQUIRES_CAPTURE = "requires_capture"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"


class SubscriptionStatus(str, Enum):
    """Stripe subscription status values this service reasons about.

    Local records store plain strings so statuses outside this enum pass
    through untouched.
    """

    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"


class ProvisioningState(str, Enum):
    """Provisioning saga states."""

    AUTHORIZATION_PENDING = "authorization_pending"
    AUTHORIZATION_VERIFIED = "authorization_verified"
    METHOD_BOUND = "method_bound"
    SUBSCRIPTION_CREATED = "subscription_created"
    FAILED = "failed"


@dataclass(frozen=True)
class PaymentAuthorization:
    """One-time charge intent (Stripe PaymentIntent)."""

    id: str
    amount: int  # minor currency units
    currency: str
    status: str
    customer_id: str | None
    payment_method_id: str | None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == AuthorizationStatus.SUCCEEDED.value

    @classmethod
    def from_stripe(cls, intent: dict[str, Any]) -> "PaymentAuthorization":
        """Build from a PaymentIntent object.

        ``customer`` and ``payment_method`` may be ids or expanded objects.
        """
        return cls(
            id=intent["id"],
            amount=intent.get("amount") or 0,
            currency=intent.get("currency") or "",
            status=intent.get("status") or "",
            customer_id=ref_id(intent.get("customer")),
            payment_method_id=ref_id(intent.get("payment_method")),
            metadata={k: str(v) for k, v in (intent.get("metadata") or {}).items()},
        )


@dataclass(frozen=True)
class AuthorizationHandle:
    """What a client needs to confirm an authorization out-of-band."""

    id: str
    client_confirmation_secret: str


@dataclass(frozen=True)
class PaymentMethodBinding:
    """A payment method attached to a customer, optionally as default."""

    customer_id: str
    payment_method_id: str
    is_default: bool


@dataclass(frozen=True)
class ProvisionResult:
    """Outcome of a successful provisioning saga."""

    subscription_id: str
    status: str
    client_confirmation_secret: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "subscriptionId": self.subscription_id,
            "status": self.status,
            "clientSecret": self.client_confirmation_secret,
        }


@dataclass(frozen=True)
class LocalSubscriptionRecord:
    """Locally owned projection of a customer's subscription.

    ``last_event_timestamp`` never moves backwards across applied updates;
    that property is what makes reconciliation order tolerant.
    """

    customer_email: str
    stripe_customer_id: str | None = None
    subscription_id: str | None = None
    plan: str | None = None
    interval: str | None = None
    status: str | None = None
    last_event_id: str | None = None
    last_event_timestamp: datetime | None = None
    recent_event_ids: tuple[str, ...] = ()

    def has_applied(self, event_id: str) -> bool:
        return event_id == self.last_event_id or event_id in self.recent_event_ids

    def is_newer_than(self, timestamp: datetime) -> bool:
        """True when the record already reflects a state newer than ``timestamp``."""
        return self.last_event_timestamp is not None and timestamp < self.last_event_timestamp

    def stamped(self, event_id: str | None, timestamp: datetime) -> "LocalSubscriptionRecord":
        """Return a copy marked as reflecting the event at ``timestamp``."""
        recent = self.recent_event_ids
        if event_id is not None and event_id not in recent:
            recent = (recent + (event_id,))[-RECENT_EVENT_WINDOW:]
        return replace(
            self,
            last_event_id=event_id if event_id is not None else self.last_event_id,
            last_event_timestamp=timestamp,
            recent_event_ids=recent,
        )


def from_epoch(seconds: int | float) -> datetime:
    """Convert a Stripe epoch timestamp to an aware UTC datetime."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def ref_id(value: Any) -> str | None:
    """Normalize an id-or-expanded-object reference to its id."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("id")
    return str(value)
