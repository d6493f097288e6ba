"""Postgres-backed subscription store.

The ordering rule is enforced inside the upsert statement itself, so two
concurrent writers for the same customer cannot move ``last_event_timestamp``
backwards: the write carrying the later timestamp wins.
"""

import logging

import asyncpg

from billflow.billing.errors import StoreReadError, StoreWriteError
from billflow.billing.models import LocalSubscriptionRecord
from billflow.billing.store import SubscriptionStore
from billflow.db.models import Table
from billflow.db.pool import get_pool

logger = logging.getLogger(__name__)

_COLUMNS = (
    "customer_email, stripe_customer_id, subscription_id, plan, billing_interval, status, "
    "last_event_id, last_event_timestamp, recent_event_ids"
)

_UPSERT_SQL = f"""
    INSERT INTO {Table.LOCAL_SUBSCRIPTIONS} ({_COLUMNS})
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
    ON CONFLICT (customer_email) DO UPDATE SET
        stripe_customer_id = EXCLUDED.stripe_customer_id,
        subscription_id = EXCLUDED.subscription_id,
        plan = EXCLUDED.plan,
        billing_interval = EXCLUDED.billing_interval,
        status = EXCLUDED.status,
        last_event_id = EXCLUDED.last_event_id,
        last_event_timestamp = EXCLUDED.last_event_timestamp,
        recent_event_ids = EXCLUDED.recent_event_ids,
        updated_at = now()
    WHERE {Table.LOCAL_SUBSCRIPTIONS}.last_event_timestamp IS NULL
       OR EXCLUDED.last_event_timestamp >= {Table.LOCAL_SUBSCRIPTIONS}.last_event_timestamp
    RETURNING {_COLUMNS}
"""


def _row_to_record(row: asyncpg.Record) -> LocalSubscriptionRecord:
    return LocalSubscriptionRecord(
        customer_email=row["customer_email"],
        stripe_customer_id=row["stripe_customer_id"],
        subscription_id=row["subscription_id"],
        plan=row["plan"],
        interval=row["billing_interval"],
        status=row["status"],
        last_event_id=row["last_event_id"],
        last_event_timestamp=row["last_event_timestamp"],
        recent_event_ids=tuple(row["recent_event_ids"] or ()),
    )


class PostgresSubscriptionStore(SubscriptionStore):
    """SubscriptionStore on the shared asyncpg pool."""

    async def _fetch_one(self, column: str, value: str) -> LocalSubscriptionRecord | None:
        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_COLUMNS} FROM {Table.LOCAL_SUBSCRIPTIONS} "
                    f"WHERE {column} = $1 ORDER BY updated_at DESC LIMIT 1",
                    value,
                )
        except (asyncpg.PostgresError, OSError, RuntimeError) as e:
            raise StoreReadError(f"Failed to load subscription record: {e}") from e
        return _row_to_record(row) if row else None

    async def find_by_customer(self, email: str) -> LocalSubscriptionRecord | None:
        return await self._fetch_one("customer_email", email)

    async def find_by_subscription(self, subscription_id: str) -> LocalSubscriptionRecord | None:
        return await self._fetch_one("subscription_id", subscription_id)

    async def upsert(self, record: LocalSubscriptionRecord) -> LocalSubscriptionRecord:
        """Write the record unless the stored one is already newer.

        Raises:
            StoreWriteError: On database errors
        """
        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    _UPSERT_SQL,
                    record.customer_email,
                    record.stripe_customer_id,
                    record.subscription_id,
                    record.plan,
                    record.interval,
                    record.status,
                    record.last_event_id,
                    record.last_event_timestamp,
                    list(record.recent_event_ids),
                )
                if row is None:
                    # Guard rejected the write: a newer state is already stored
                    logger.info(
                        f"Skipped stale write for {record.customer_email} "
                        f"(event {record.last_event_id})"
                    )
                    row = await conn.fetchrow(
                        f"SELECT {_COLUMNS} FROM {Table.LOCAL_SUBSCRIPTIONS} "
                        "WHERE customer_email = $1",
                        record.customer_email,
                    )
        except (asyncpg.PostgresError, OSError, RuntimeError) as e:
            raise StoreWriteError(f"Failed to persist subscription record: {e}") from e

        return _row_to_record(row)
