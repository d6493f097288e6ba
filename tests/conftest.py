"""Shared fixtures: in-memory store, fake Stripe gateway, webhook signing."""

import hashlib
import hmac
import itertools
import json
import time
from dataclasses import replace

import pytest

from billflow.billing.errors import NotFoundError, StoreWriteError
from billflow.billing.models import LocalSubscriptionRecord
from billflow.billing.plans import PlanCatalog
from billflow.billing.store import SubscriptionStore

WEBHOOK_SECRET = "whsec_test_secret"


class InMemorySubscriptionStore(SubscriptionStore):
    """Dict-backed store with the same ordering guard as the Postgres upsert."""

    def __init__(self):
        self.records: dict[str, LocalSubscriptionRecord] = {}
        self.upserts = 0
        self.fail_writes = False

    async def find_by_customer(self, email):
        return self.records.get(email)

    async def find_by_subscription(self, subscription_id):
        for record in self.records.values():
            if record.subscription_id == subscription_id:
                return record
        return None

    async def upsert(self, record):
        if self.fail_writes:
            raise StoreWriteError("database unavailable")
        self.upserts += 1
        current = self.records.get(record.customer_email)
        if (
            current is not None
            and current.last_event_timestamp is not None
            and record.last_event_timestamp is not None
            and record.last_event_timestamp < current.last_event_timestamp
        ):
            return current
        self.records[record.customer_email] = record
        return record


class FakeStripeGateway:
    """In-memory stand-in for StripeGateway recording every mutation."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.customers: dict[str, dict] = {}
        self.intents: dict[str, dict] = {}
        self.payment_methods: dict[str, dict] = {}
        self.subscriptions: dict[str, dict] = {}
        self.idempotent: dict[str, dict] = {}
        self.calls: list[str] = []

    def _id(self, prefix):
        return f"{prefix}_{next(self._ids)}"

    def add_intent(self, intent_id, status="succeeded", amount=2499, payment_method="pm_card"):
        if payment_method and payment_method not in self.payment_methods:
            self.payment_methods[payment_method] = {"id": payment_method, "customer": None}
        self.intents[intent_id] = {
            "id": intent_id,
            "amount": amount,
            "currency": "usd",
            "status": status,
            "customer": None,
            "payment_method": payment_method,
            "metadata": {},
        }
        return self.intents[intent_id]

    async def find_customer_by_email(self, email):
        self.calls.append("find_customer_by_email")
        for customer in self.customers.values():
            if customer["email"] == email:
                return customer
        return None

    async def create_customer(self, email):
        self.calls.append("create_customer")
        customer = {"id": self._id("cus"), "email": email, "default_payment_method": None}
        self.customers[customer["id"]] = customer
        return customer

    async def retrieve_customer(self, customer_id):
        self.calls.append("retrieve_customer")
        if customer_id not in self.customers:
            raise NotFoundError(f"Customer not found: {customer_id}")
        return self.customers[customer_id]

    async def set_default_payment_method(self, customer_id, payment_method_id):
        self.calls.append("set_default_payment_method")
        self.customers[customer_id]["default_payment_method"] = payment_method_id
        return self.customers[customer_id]

    async def create_payment_intent(self, **params):
        self.calls.append("create_payment_intent")
        intent = {
            "id": self._id("pi"),
            "status": "requires_payment_method",
            "payment_method": None,
            **params,
        }
        intent["client_secret"] = f"{intent['id']}_secret_abc"
        self.intents[intent["id"]] = intent
        return intent

    async def retrieve_payment_intent(self, intent_id):
        self.calls.append("retrieve_payment_intent")
        if intent_id not in self.intents:
            raise NotFoundError(f"Payment authorization not found: {intent_id}")
        return self.intents[intent_id]

    async def retrieve_payment_method(self, payment_method_id):
        self.calls.append("retrieve_payment_method")
        return self.payment_methods[payment_method_id]

    async def attach_payment_method(self, payment_method_id, customer_id):
        self.calls.append("attach_payment_method")
        self.payment_methods[payment_method_id] = {"id": payment_method_id, "customer": customer_id}
        return self.payment_methods[payment_method_id]

    async def create_subscription(self, customer_id, price_id, metadata, idempotency_key=None):
        self.calls.append("create_subscription")
        if idempotency_key in self.idempotent:
            return self.idempotent[idempotency_key]
        subscription_id = self._id("sub")
        subscription = {
            "id": subscription_id,
            "customer": customer_id,
            "status": "incomplete",
            "created": 1_700_000_000,
            "items": {"data": [{"price": {"id": price_id}}]},
            "metadata": metadata,
            "latest_invoice": {
                "id": self._id("in"),
                "payment_intent": {"client_secret": f"pi_for_{subscription_id}_secret_xyz"},
            },
        }
        self.subscriptions[subscription_id] = subscription
        if idempotency_key:
            self.idempotent[idempotency_key] = subscription
        return subscription

    async def create_portal_session(self, customer_id, return_url):
        self.calls.append("create_portal_session")
        return {"id": "bps_1", "url": f"https://billing.stripe.com/session/{customer_id}"}


@pytest.fixture
def store() -> InMemorySubscriptionStore:
    return InMemorySubscriptionStore()


@pytest.fixture
def gateway() -> FakeStripeGateway:
    return FakeStripeGateway()


@pytest.fixture
def plans() -> PlanCatalog:
    return PlanCatalog(
        prices={
            "essential": {"month": "price_ess_m", "year": "price_ess_y"},
            "professional": {"month": "price_your_professional_monthly_id", "year": "price_pro_y"},
        },
        amounts={"essential": {"month": 2499, "year": 25490}},
    )


@pytest.fixture
def webhook_secret() -> str:
    return WEBHOOK_SECRET


@pytest.fixture
def sign():
    """Build a valid Stripe-Signature header for a payload."""

    def _sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
        timestamp = int(time.time()) if timestamp is None else timestamp
        signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
        digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={digest}"

    return _sign


@pytest.fixture
def make_event():
    """Serialize a Stripe-shaped event body."""

    def _make(event_id: str, event_type: str, created: int, obj: dict) -> bytes:
        return json.dumps(
            {
                "id": event_id,
                "object": "event",
                "type": event_type,
                "created": created,
                "data": {"object": obj},
            }
        ).encode("utf-8")

    return _make


@pytest.fixture
def record_factory():
    def _make(**overrides) -> LocalSubscriptionRecord:
        base = LocalSubscriptionRecord(
            customer_email="a@b.com",
            stripe_customer_id="cus_1",
            subscription_id="sub_1",
            plan="essential",
            interval="month",
            status="active",
        )
        return replace(base, **overrides)

    return _make
