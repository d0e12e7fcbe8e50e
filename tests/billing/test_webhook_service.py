"""Tests for end-to-end webhook delivery processing.

**Feature: convertviral-billing, Property 1: Exactly-Once Event Effects**
**Feature: convertviral-billing, Property 6: Rejected Deliveries Write Nothing**
"""

import json
import time
from datetime import datetime, timezone

import pytest
import stripe

from convertviral.modules.auth.models import User
from convertviral.modules.billing.idempotency import IdempotencyStore, event_key
from convertviral.modules.billing.models import (
    CheckoutSession,
    Invoice,
    ProcessedWebhookEvent,
    Subscription,
)
from convertviral.modules.billing.retry import RetryPolicy
from convertviral.modules.billing.stripe_client import StripeClient, StripeInvoiceData
from convertviral.modules.billing.webhook_service import StripeWebhookService


def deleted_subscription(subscription_id="sub_1") -> dict:
    return {"id": subscription_id, "object": "subscription", "status": "canceled"}


def failed_invoice(invoice_id: str, subscription_id: str) -> dict:
    return {
        "id": invoice_id,
        "object": "invoice",
        "subscription": subscription_id,
        "status": "open",
        "total": 1190,
        "amount_due": 1190,
    }


async def count_writes(fetch) -> int:
    total = 0
    for model in (Subscription, Invoice, CheckoutSession, ProcessedWebhookEvent):
        total += len(await fetch(model))
    return total


class TestDuplicateDeliveries:
    """Each event's side effects apply at most once.

    **Feature: convertviral-billing, Property 1: Exactly-Once Event Effects**
    """

    @pytest.mark.asyncio
    async def test_same_event_twice(
        self, webhook_service, signed_event, make_user, make_subscription, fetch
    ) -> None:
        user = await make_user("anna@example.de", is_premium=True, plan="pro")
        await make_subscription(user, "sub_1")
        payload, signature = signed_event(
            "customer.subscription.deleted", deleted_subscription(), event_id="evt_1",
        )

        first = await webhook_service.process(payload, signature)
        second = await webhook_service.process(payload, signature)

        assert first.status_code == 200
        assert first.body["received"] is True
        assert first.body["result"]["status"] == "canceled"
        assert second.status_code == 200
        assert second.body == {
            "received": True,
            "status": "already_processed",
            "result": first.body["result"],
        }

        [subscription] = await fetch(Subscription)
        [stored_user] = await fetch(User, User.id == user.id)
        assert subscription.status == "canceled"
        assert stored_user.is_premium is False
        assert len(await fetch(ProcessedWebhookEvent)) == 1

    @pytest.mark.asyncio
    async def test_lost_cache_marker_does_not_reapply(
        self, webhook_service, signed_event, fake_redis, user, make_subscription, fetch
    ) -> None:
        await make_subscription(user, "sub_2")
        payload, signature = signed_event(
            "invoice.payment_failed", failed_invoice("in_1", "sub_2"), event_id="evt_fail_1",
        )

        first = await webhook_service.process(payload, signature)
        fake_redis.data.clear()
        second = await webhook_service.process(payload, signature)

        assert second.status_code == 200
        assert second.body["result"] == first.body["result"]
        [subscription] = await fetch(Subscription)
        assert subscription.failed_payment_count == 1

    @pytest.mark.asyncio
    async def test_event_in_flight_elsewhere(self, webhook_service, signed_event, fake_redis, fetch) -> None:
        fake_redis.data[event_key("evt_busy")] = json.dumps({
            "status": "processing",
            "claimed_at": datetime.now(timezone.utc).isoformat(),
        })
        payload, signature = signed_event(
            "customer.subscription.deleted", deleted_subscription(), event_id="evt_busy",
        )

        outcome = await webhook_service.process(payload, signature)

        assert outcome.status_code == 409
        assert outcome.body == {"error": "Event is already being processed"}
        assert await fetch(ProcessedWebhookEvent) == []


class TestDunningScenario:

    @pytest.mark.asyncio
    async def test_four_failures_mark_subscription_unpaid(
        self, webhook_service, signed_event, stripe_client, make_user,
        make_subscription, fetch, stripe_subscription,
    ) -> None:
        user = await make_user("max@example.de", is_premium=True, plan="pro")
        await make_subscription(user, "sub_2")
        stripe_client.retrieve_subscription.return_value = stripe_subscription(
            "sub_2", status="past_due",
        )

        statuses = []
        for n in range(1, 5):
            payload, signature = signed_event(
                "invoice.payment_failed", failed_invoice(f"in_{n}", "sub_2"), event_id=f"evt_f{n}",
            )
            outcome = await webhook_service.process(payload, signature)
            statuses.append(outcome.body["result"]["status"])

        assert statuses == ["payment_failed", "payment_failed", "payment_failed", "unpaid"]
        [subscription] = await fetch(Subscription)
        [stored_user] = await fetch(User, User.id == user.id)
        assert subscription.failed_payment_count == 4
        assert subscription.status == "unpaid"
        assert stored_user.is_premium is False

    @pytest.mark.asyncio
    async def test_payment_success_resets_count(
        self, webhook_service, signed_event, stripe_client, user,
        make_subscription, fetch, stripe_subscription,
    ) -> None:
        await make_subscription(user, "sub_1", status="past_due", failed_payment_count=2)
        stripe_client.retrieve_invoice.return_value = StripeInvoiceData(
            id="in_1", customer_id="cus_1", subscription_id="sub_1", status="paid",
            subtotal=1000, tax=190, total=1190, amount_paid=1190, amount_due=0, currency="eur",
        )
        stripe_client.retrieve_subscription.return_value = stripe_subscription(status="active")
        payload, signature = signed_event(
            "payment_intent.succeeded", {"id": "pi_1", "amount": 1190, "invoice": "in_1"},
        )

        outcome = await webhook_service.process(payload, signature)

        assert outcome.status_code == 200
        [subscription] = await fetch(Subscription)
        assert subscription.failed_payment_count == 0
        assert subscription.status == "active"


class TestSubscriptionLifecycle:

    @pytest.mark.asyncio
    async def test_checkout_then_renewal_keeps_one_row(
        self, webhook_service, signed_event, stripe_client, user, fetch, as_utc, stripe_subscription
    ) -> None:
        first_period_end = datetime(2026, 11, 19, tzinfo=timezone.utc)
        renewed_period_end = datetime(2026, 12, 19, tzinfo=timezone.utc)

        stripe_client.retrieve_subscription.return_value = stripe_subscription(
            period_end=first_period_end,
        )
        payload, signature = signed_event("checkout.session.completed", {
            "id": "cs_1",
            "customer": "cus_1",
            "subscription": "sub_1",
            "metadata": {"userId": str(user.id)},
        })
        checkout = await webhook_service.process(payload, signature)

        stripe_client.retrieve_subscription.return_value = stripe_subscription(
            period_end=renewed_period_end,
        )
        payload, signature = signed_event("invoice.paid", {
            "id": "in_2",
            "subscription": "sub_1",
            "status": "paid",
            "total": 1190,
            "amount_paid": 1190,
        })
        renewal = await webhook_service.process(payload, signature)

        assert checkout.status_code == 200
        assert renewal.status_code == 200
        rows = await fetch(Subscription, Subscription.stripe_subscription_id == "sub_1")
        assert len(rows) == 1
        assert as_utc(rows[0].current_period_end) == renewed_period_end
        [stored_user] = await fetch(User, User.id == user.id)
        assert stored_user.is_premium is True

    @pytest.mark.asyncio
    async def test_unhandled_event_is_recorded(self, webhook_service, signed_event, fetch) -> None:
        payload, signature = signed_event("customer.created", {"id": "cus_1"}, event_id="evt_c")

        outcome = await webhook_service.process(payload, signature)

        assert outcome.status_code == 200
        assert outcome.body["result"] == {"status": "unhandled", "event_type": "customer.created"}
        [entry] = await fetch(ProcessedWebhookEvent)
        assert entry.event_id == "evt_c"


class TestRetries:
    """Processing errors are retried with backoff, then released."""

    @pytest.mark.asyncio
    async def test_transient_error_then_success(
        self, webhook_service, signed_event, stripe_client, sleep, user, fetch, stripe_subscription
    ) -> None:
        stripe_client.retrieve_subscription.side_effect = [
            stripe.APIConnectionError("Network error"),
            stripe_subscription(),
        ]
        payload, signature = signed_event("checkout.session.completed", {
            "id": "cs_1",
            "subscription": "sub_1",
            "metadata": {"userId": str(user.id)},
        })

        outcome = await webhook_service.process(payload, signature)

        assert outcome.status_code == 200
        sleep.assert_awaited_once_with(4.0)
        assert len(await fetch(Subscription)) == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries_release_the_claim(
        self, webhook_service, signed_event, sleep, fake_redis, fetch
    ) -> None:
        payload, signature = signed_event("invoice.paid", {
            "id": "in_1",
            "subscription": "sub_early",
            "status": "paid",
        }, event_id="evt_early")

        outcome = await webhook_service.process(payload, signature)

        assert outcome.status_code == 500
        assert outcome.body == {
            "error": "Webhook processing failed after 3 retries: "
            "Subscription not found: sub_early",
        }
        assert [c.args[0] for c in sleep.await_args_list] == [4.0, 8.0, 16.0]
        assert event_key("evt_early") not in fake_redis.data
        assert await fetch(ProcessedWebhookEvent) == []
        assert await fetch(Invoice) == []

    @pytest.mark.asyncio
    async def test_redelivery_after_failure_succeeds(
        self, webhook_service, signed_event, user, make_subscription, fetch
    ) -> None:
        payload, signature = signed_event("invoice.paid", {
            "id": "in_1",
            "subscription": "sub_1",
            "status": "paid",
        }, event_id="evt_early")
        failed = await webhook_service.process(payload, signature)

        await make_subscription(user, "sub_1")
        redelivered = await webhook_service.process(payload, signature)

        assert failed.status_code == 500
        assert redelivered.status_code == 200
        assert len(await fetch(Invoice)) == 1


class TestRejectedDeliveries:
    """Rejected deliveries leave no trace.

    **Feature: convertviral-billing, Property 6: Rejected Deliveries Write Nothing**
    """

    @pytest.mark.asyncio
    async def test_bad_signature(
        self, webhook_service, signed_event, user, make_subscription, fake_redis, fetch
    ) -> None:
        await make_subscription(user, "sub_1")
        before = await count_writes(fetch)
        payload, _ = signed_event("customer.subscription.deleted", deleted_subscription())
        _, forged = signed_event(
            "customer.subscription.deleted", deleted_subscription(), secret="whsec_attacker",
        )

        outcome = await webhook_service.process(payload, forged)

        assert outcome.status_code == 400
        assert "error" in outcome.body
        assert await count_writes(fetch) == before
        assert fake_redis.data == {}
        [subscription] = await fetch(Subscription)
        assert subscription.status == "active"

    @pytest.mark.asyncio
    async def test_tampered_payload(self, webhook_service, signed_event, fetch) -> None:
        payload, signature = signed_event("customer.subscription.deleted", deleted_subscription())
        tampered = payload.replace(b"sub_1", b"sub_9")

        outcome = await webhook_service.process(tampered, signature)

        assert outcome.status_code == 400
        assert await count_writes(fetch) == 0

    @pytest.mark.asyncio
    async def test_missing_signature(self, webhook_service, signed_event) -> None:
        payload, _ = signed_event("customer.subscription.deleted", deleted_subscription())

        outcome = await webhook_service.process(payload, None)

        assert outcome.status_code == 400
        assert outcome.body == {"error": "Missing Stripe-Signature header"}

    @pytest.mark.asyncio
    async def test_stale_timestamp(self, webhook_service, sign_payload) -> None:
        payload = json.dumps({
            "id": "evt_old", "type": "customer.subscription.deleted",
            "data": {"object": deleted_subscription()},
        }).encode()
        signature = sign_payload(payload, timestamp=int(time.time()) - 3600)

        outcome = await webhook_service.process(payload, signature)

        assert outcome.status_code == 400

    @pytest.mark.asyncio
    async def test_malformed_envelope(self, webhook_service, sign_payload, fetch) -> None:
        payload = json.dumps({"id": "evt_x", "data": {"object": {}}}).encode()

        outcome = await webhook_service.process(payload, sign_payload(payload))

        assert outcome.status_code == 400
        assert outcome.body == {"error": "Invalid webhook payload"}
        assert await count_writes(fetch) == 0

    @pytest.mark.asyncio
    async def test_payments_disabled(
        self, session_factory, stripe_client, fake_redis, signed_event, fetch
    ) -> None:
        service = StripeWebhookService(
            session_factory, stripe_client, IdempotencyStore(fake_redis), payments_enabled=False,
        )
        payload, signature = signed_event("customer.subscription.deleted", deleted_subscription())

        outcome = await service.process(payload, signature)

        assert outcome.status_code == 403
        assert outcome.body == {"error": "Payments are currently disabled"}
        assert fake_redis.data == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("api_key,webhook_secret", [
        ("", "whsec_test_convertviral"),
        ("sk_test_convertviral", ""),
    ])
    async def test_incomplete_configuration(
        self, session_factory, fake_redis, signed_event, api_key, webhook_secret
    ) -> None:
        service = StripeWebhookService(
            session_factory,
            StripeClient(api_key=api_key, webhook_secret=webhook_secret),
            IdempotencyStore(fake_redis),
            policy=RetryPolicy(max_retries=0),
        )
        payload, signature = signed_event("customer.subscription.deleted", deleted_subscription())

        outcome = await service.process(payload, signature)

        assert outcome.status_code == 500
        assert outcome.body == {"error": "Stripe configuration is incomplete"}


class TestWebhookEndpoint:
    """The HTTP route passes the raw body and signature header through."""

    @pytest.mark.asyncio
    async def test_signed_delivery(self, client, signed_event, user, make_subscription, fetch) -> None:
        await make_subscription(user, "sub_1")
        payload, signature = signed_event("customer.subscription.deleted", deleted_subscription())

        response = await client.post(
            "/api/v1/webhooks/stripe",
            content=payload,
            headers={"Stripe-Signature": signature, "Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["received"] is True
        [subscription] = await fetch(Subscription)
        assert subscription.status == "canceled"

    @pytest.mark.asyncio
    async def test_unsigned_delivery(self, client, signed_event) -> None:
        payload, _ = signed_event("customer.subscription.deleted", deleted_subscription())

        response = await client.post("/api/v1/webhooks/stripe", content=payload)

        assert response.status_code == 400
        assert response.json() == {"error": "Missing Stripe-Signature header"}
