"""Persistence boundary for local subscription records."""

from abc import ABC, abstractmethod

from billflow.billing.models import LocalSubscriptionRecord


class SubscriptionStore(ABC):
    """Abstract subscription store.

    ``upsert`` is assumed atomic. Implementations must never move a record's
    ``last_event_timestamp`` backwards, and return the record as stored.
    """

    @abstractmethod
    async def find_by_customer(self, email: str) -> LocalSubscriptionRecord | None:
        """Fetch the record for a customer email, or None."""
        pass

    @abstractmethod
    async def find_by_subscription(self, subscription_id: str) -> LocalSubscriptionRecord | None:
        """Fetch the record holding a Stripe subscription id, or None."""
        pass

    @abstractmethod
    async def upsert(self, record: LocalSubscriptionRecord) -> LocalSubscriptionRecord:
        """
        Insert or update the record keyed by customer email.

        Returns:
            The stored record. If a newer write won a race, that newer record.
        """
        pass
