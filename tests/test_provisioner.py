"""Tests for the subscription provisioning saga.

Covers:
1. Happy path from a succeeded authorization
2. Customer reuse across authorizations
3. Authorization gate (every non-succeeded status)
4. Input validation before any processor call
5. Missing payment method, unknown and placeholder plans
6. Re-driving the same authorization
7. Local record write and its failure mode
"""

import asyncio
from dataclasses import replace

import pytest

from billflow.billing.errors import (
    MissingPaymentMethodError,
    NotFoundError,
    NotReadyError,
    StoreWriteError,
    UnknownPlanError,
    ValidationError,
)
from billflow.billing.models import from_epoch
from billflow.billing.provisioner import SubscriptionProvisioner, confirmation_secret


@pytest.fixture
def provisioner(gateway, plans, store):
    return SubscriptionProvisioner(gateway, plans, store=store)


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_provision_from_succeeded_authorization(self, gateway, provisioner):
        gateway.add_intent("pi_1", status="succeeded", amount=2499, payment_method="pm_card")

        result = await provisioner.provision("essential", "month", "pi_1", "a@b.com")

        assert len(gateway.customers) == 1
        customer_id = next(iter(gateway.customers))
        assert gateway.payment_methods["pm_card"]["customer"] == customer_id
        assert gateway.customers[customer_id]["default_payment_method"] == "pm_card"

        subscription = gateway.subscriptions[result.subscription_id]
        assert subscription["customer"] == customer_id
        assert subscription["items"]["data"][0]["price"]["id"] == "price_ess_m"
        assert subscription["metadata"] == {
            "plan_id": "essential",
            "interval": "month",
            "customer_email": "a@b.com",
        }
        assert result.status == "incomplete"
        assert result.client_confirmation_secret

    @pytest.mark.asyncio
    async def test_steps_run_in_order(self, gateway, provisioner):
        gateway.add_intent("pi_1")

        await provisioner.provision("essential", "year", "pi_1", "a@b.com")

        order = [
            call
            for call in gateway.calls
            if call
            in (
                "retrieve_payment_intent",
                "create_customer",
                "attach_payment_method",
                "set_default_payment_method",
                "create_subscription",
            )
        ]
        assert order == [
            "retrieve_payment_intent",
            "create_customer",
            "attach_payment_method",
            "set_default_payment_method",
            "create_subscription",
        ]

    @pytest.mark.asyncio
    async def test_interval_alias_uses_canonical_interval(self, gateway, provisioner):
        gateway.add_intent("pi_1")

        result = await provisioner.provision("essential", "annual", "pi_1", "a@b.com")

        subscription = gateway.subscriptions[result.subscription_id]
        assert subscription["items"]["data"][0]["price"]["id"] == "price_ess_y"
        assert subscription["metadata"]["interval"] == "year"

    @pytest.mark.asyncio
    async def test_works_without_store(self, gateway, plans):
        gateway.add_intent("pi_1")

        result = await SubscriptionProvisioner(gateway, plans).provision(
            "essential", "month", "pi_1", "a@b.com"
        )

        assert result.subscription_id in gateway.subscriptions


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_customer_reused_across_authorizations(self, gateway, provisioner):
        gateway.add_intent("pi_1")
        gateway.add_intent("pi_2")

        first = await provisioner.provision("essential", "month", "pi_1", "a@b.com")
        second = await provisioner.provision("essential", "month", "pi_2", "a@b.com")

        assert gateway.calls.count("create_customer") == 1
        assert gateway.calls.count("attach_payment_method") == 1
        assert (
            gateway.subscriptions[first.subscription_id]["customer"]
            == gateway.subscriptions[second.subscription_id]["customer"]
        )

    @pytest.mark.asyncio
    async def test_redriving_same_authorization_returns_same_subscription(self, gateway, provisioner):
        gateway.add_intent("pi_1")

        first = await provisioner.provision("essential", "month", "pi_1", "a@b.com")
        second = await provisioner.provision("essential", "month", "pi_1", "a@b.com")

        assert first.subscription_id == second.subscription_id
        assert len(gateway.subscriptions) == 1


class TestAuthorizationGate:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status",
        [
            "requires_payment_method",
            "requires_confirmation",
            "requires_action",
            "requires_capture",
            "processing",
            "canceled",
        ],
    )
    async def test_not_succeeded_is_not_ready(self, gateway, provisioner, status):
        gateway.add_intent("pi_1", status=status)

        with pytest.raises(NotReadyError, match=status):
            await provisioner.provision("essential", "month", "pi_1", "a@b.com")

        assert gateway.subscriptions == {}
        assert gateway.customers == {}

    @pytest.mark.asyncio
    async def test_unknown_authorization(self, gateway, provisioner):
        with pytest.raises(NotFoundError):
            await provisioner.provision("essential", "month", "pi_missing", "a@b.com")

        assert gateway.subscriptions == {}


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "args",
        [
            ("", "month", "pi_1", "a@b.com"),
            ("essential", None, "pi_1", "a@b.com"),
            ("essential", "month", "", "a@b.com"),
            ("essential", "month", "pi_1", " "),
        ],
    )
    async def test_missing_input_makes_no_calls(self, gateway, provisioner, args):
        gateway.add_intent("pi_1")

        with pytest.raises(ValidationError):
            await provisioner.provision(*args)

        assert gateway.calls == []


class TestFailures:
    @pytest.mark.asyncio
    async def test_missing_payment_method(self, gateway, provisioner):
        gateway.add_intent("pi_1", payment_method=None)

        with pytest.raises(MissingPaymentMethodError):
            await provisioner.provision("essential", "month", "pi_1", "a@b.com")

        assert "create_subscription" not in gateway.calls

    @pytest.mark.asyncio
    async def test_unknown_plan(self, gateway, provisioner):
        gateway.add_intent("pi_1")

        with pytest.raises(UnknownPlanError):
            await provisioner.provision("enterprise", "month", "pi_1", "a@b.com")

        assert gateway.subscriptions == {}

    @pytest.mark.asyncio
    async def test_placeholder_price_is_unknown_plan(self, gateway, provisioner):
        gateway.add_intent("pi_1")

        with pytest.raises(UnknownPlanError):
            await provisioner.provision("professional", "month", "pi_1", "a@b.com")

        assert "create_subscription" not in gateway.calls


class TestLocalRecord:
    @pytest.mark.asyncio
    async def test_record_written_after_create(self, gateway, provisioner, store):
        gateway.add_intent("pi_1")

        result = await provisioner.provision("essential", "month", "pi_1", "a@b.com")

        record = store.records["a@b.com"]
        assert record.subscription_id == result.subscription_id
        assert record.stripe_customer_id == next(iter(gateway.customers))
        assert record.plan == "essential"
        assert record.interval == "month"
        assert record.status == "incomplete"
        assert record.last_event_timestamp == from_epoch(1_700_000_000)

    @pytest.mark.asyncio
    async def test_record_timestamp_never_moves_backwards(
        self, gateway, provisioner, store, record_factory
    ):
        later = from_epoch(1_800_000_000)
        store.records["a@b.com"] = record_factory(
            subscription_id="sub_old",
            status="canceled",
            last_event_id="evt_old",
            last_event_timestamp=later,
        )
        gateway.add_intent("pi_1")

        result = await provisioner.provision("essential", "month", "pi_1", "a@b.com")

        record = store.records["a@b.com"]
        assert record.subscription_id == result.subscription_id
        assert record.status == "incomplete"
        assert record.last_event_timestamp == later
        assert record.last_event_id == "evt_old"

    @pytest.mark.asyncio
    async def test_newer_webhook_state_is_kept(self, gateway, provisioner, store):
        gateway.add_intent("pi_1")
        result = await provisioner.provision("essential", "month", "pi_1", "a@b.com")
        ahead = replace(
            store.records["a@b.com"],
            status="active",
            last_event_id="evt_paid",
            last_event_timestamp=from_epoch(1_700_000_500),
        )
        store.records["a@b.com"] = ahead
        upserts = store.upserts

        await provisioner.provision("essential", "month", "pi_1", "a@b.com")

        assert store.records["a@b.com"] == ahead
        assert store.upserts == upserts
        assert ahead.subscription_id == result.subscription_id

    @pytest.mark.asyncio
    async def test_store_failure_after_create(self, gateway, provisioner, store):
        gateway.add_intent("pi_1")
        store.fail_writes = True

        with pytest.raises(StoreWriteError):
            await provisioner.provision("essential", "month", "pi_1", "a@b.com")

        # The processor side already happened; the next webhook reconciles
        assert len(gateway.subscriptions) == 1

    @pytest.mark.asyncio
    async def test_store_timeout_is_write_error(self, gateway, plans, store):
        async def slow_lookup(email):
            await asyncio.sleep(1)

        store.find_by_customer = slow_lookup
        gateway.add_intent("pi_1")
        provisioner = SubscriptionProvisioner(gateway, plans, store=store, store_timeout=0.01)

        with pytest.raises(StoreWriteError, match="timed out"):
            await provisioner.provision("essential", "month", "pi_1", "a@b.com")


class TestConfirmationSecret:
    def test_expanded_invoice_intent(self):
        subscription = {"latest_invoice": {"payment_intent": {"client_secret": "pi_secret"}}}

        assert confirmation_secret(subscription) == "pi_secret"

    def test_invoice_confirmation_secret(self):
        subscription = {
            "latest_invoice": {"payment_intent": None, "confirmation_secret": {"client_secret": "cs"}}
        }

        assert confirmation_secret(subscription) == "cs"

    def test_unexpanded_invoice(self):
        assert confirmation_secret({"latest_invoice": "in_1"}) is None
