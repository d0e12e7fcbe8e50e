"""API tests for saved payment methods and the billing overview."""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from convertviral.core.config import settings
from convertviral.modules.auth.jwt import create_access_token
from convertviral.modules.auth.models import User
from convertviral.modules.billing.models import Invoice
from convertviral.modules.billing.stripe_client import (
    StripeCustomerData,
    StripeInvoiceData,
    StripePaymentMethodData,
)

PAYMENT_METHODS_URL = "/api/v1/billing/payment-methods"


def card(pm_id: str = "pm_card", customer_id: Optional[str] = "cus_1") -> StripePaymentMethodData:
    return StripePaymentMethodData(
        id=pm_id,
        type="card",
        customer_id=customer_id,
        card={"brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": 2030},
    )


def sepa_debit(pm_id: str = "pm_sepa") -> StripePaymentMethodData:
    return StripePaymentMethodData(
        id=pm_id,
        type="sepa_debit",
        customer_id="cus_1",
        sepa_debit={"last4": "3000", "country": "DE", "bank_code": "37040044"},
    )


def customer(default: Optional[str] = None, **values) -> StripeCustomerData:
    values.setdefault("email", "jonas@example.de")
    values.setdefault("name", "Jonas")
    return StripeCustomerData(id="cus_1", default_payment_method_id=default, **values)


@pytest.fixture
async def customer_user(make_user) -> User:
    return await make_user("jonas@example.de", name="Jonas", stripe_customer_id="cus_1")


@pytest.fixture
def customer_headers(customer_user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(customer_user.id)}"}


@pytest.fixture
def saved_methods(stripe_client):
    """Stripe holds one card and one SEPA mandate for cus_1; the card is default."""
    methods = {"card": [card()], "sepa_debit": [sepa_debit()]}

    async def list_methods(customer_id, method_type, limit=None):
        return methods[method_type][:limit]

    stripe_client.list_payment_methods.side_effect = list_methods
    stripe_client.retrieve_customer.return_value = customer(default="pm_card")
    stripe_client.retrieve_payment_method.side_effect = lambda pm_id: {
        "pm_card": card(), "pm_sepa": sepa_debit(),
    }.get(pm_id)
    return methods


class TestListPaymentMethods:

    @pytest.mark.asyncio
    async def test_without_customer(self, client, auth_headers, stripe_client) -> None:
        response = await client.get(PAYMENT_METHODS_URL, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["payment_methods"] == []
        stripe_client.list_payment_methods.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cards_and_sepa_debit(
        self, client, customer_headers, saved_methods, stripe_client, stripe_subscription
    ) -> None:
        stripe_client.list_subscriptions.return_value = [
            stripe_subscription(default_payment_method_id="pm_card"),
        ]

        response = await client.get(PAYMENT_METHODS_URL, headers=customer_headers)

        assert response.status_code == 200
        body = response.json()
        assert [(pm["id"], pm["is_default"]) for pm in body["payment_methods"]] == [
            ("pm_card", True), ("pm_sepa", False),
        ]
        assert body["payment_methods"][1]["sepa_debit"]["bank_code"] == "37040044"
        assert body["default_payment_method"] == "pm_card"
        assert body["subscription_payment_methods"] == [
            {"subscription_id": "sub_1", "payment_method_id": "pm_card", "status": "active"},
        ]
        assert body["customer"]["email"] == "jonas@example.de"

    @pytest.mark.asyncio
    async def test_payments_disabled(self, client, customer_headers, monkeypatch) -> None:
        monkeypatch.setattr(settings, "PAYMENTS_ENABLED", False)

        response = await client.get(PAYMENT_METHODS_URL, headers=customer_headers)

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_requires_authentication(self, client) -> None:
        response = await client.get(PAYMENT_METHODS_URL)

        assert response.status_code in (401, 403)


class TestAddPaymentMethod:

    @pytest.mark.asyncio
    async def test_creates_customer_on_first_use(
        self, client, auth_headers, user, stripe_client, fetch
    ) -> None:
        stripe_client.attach_payment_method.return_value = card(customer_id="cus_new")

        response = await client.post(
            PAYMENT_METHODS_URL, json={"payment_method_id": "pm_card"}, headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["is_default"] is False
        assert stripe_client.create_customer.await_args.kwargs["metadata"]["source"] == (
            "payment_method_addition"
        )
        stripe_client.attach_payment_method.assert_awaited_once_with("pm_card", "cus_new")
        stripe_client.set_default_payment_method.assert_not_awaited()
        [stored] = await fetch(User, User.id == user.id)
        assert stored.stripe_customer_id == "cus_new"

    @pytest.mark.asyncio
    async def test_default_also_moves_active_subscriptions(
        self, client, customer_headers, stripe_client, stripe_subscription
    ) -> None:
        stripe_client.attach_payment_method.return_value = sepa_debit()
        stripe_client.list_subscriptions.return_value = [
            stripe_subscription("sub_1"), stripe_subscription("sub_2"),
        ]

        response = await client.post(
            PAYMENT_METHODS_URL,
            json={"payment_method_id": "pm_sepa", "set_as_default": True},
            headers=customer_headers,
        )

        assert response.status_code == 200
        assert response.json()["is_default"] is True
        stripe_client.create_customer.assert_not_awaited()
        stripe_client.set_default_payment_method.assert_awaited_once_with("cus_1", "pm_sepa")
        assert [c.args for c in stripe_client.set_subscription_payment_method.await_args_list] == [
            ("sub_1", "pm_sepa"), ("sub_2", "pm_sepa"),
        ]

    @pytest.mark.asyncio
    async def test_billing_details_are_saved(self, client, customer_headers, stripe_client) -> None:
        stripe_client.attach_payment_method.return_value = card()
        stripe_client.update_payment_method_billing.return_value = card()

        response = await client.post(
            PAYMENT_METHODS_URL,
            json={
                "payment_method_id": "pm_card",
                "billing_details": {"name": "Jonas", "address": {"country": "DE"}},
            },
            headers=customer_headers,
        )

        assert response.status_code == 200
        stripe_client.update_payment_method_billing.assert_awaited_once_with(
            "pm_card", {"name": "Jonas", "address": {"country": "DE"}},
        )

    @pytest.mark.asyncio
    async def test_invalid_email(self, client, customer_headers) -> None:
        response = await client.post(
            PAYMENT_METHODS_URL,
            json={"payment_method_id": "pm_card", "billing_details": {"email": "not-an-email"}},
            headers=customer_headers,
        )

        assert response.status_code == 422


class TestUpdatePaymentMethod:

    @pytest.mark.asyncio
    async def test_set_default(
        self, client, customer_headers, saved_methods, stripe_client
    ) -> None:
        response = await client.patch(
            PAYMENT_METHODS_URL,
            json={"payment_method_id": "pm_sepa", "action": "set_default"},
            headers=customer_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["action"] == "set_default"
        assert body["payment_method"]["is_default"] is True
        stripe_client.set_default_payment_method.assert_awaited_once_with("cus_1", "pm_sepa")

    @pytest.mark.asyncio
    async def test_update_billing_requires_details(
        self, client, customer_headers, saved_methods, stripe_client
    ) -> None:
        response = await client.patch(
            PAYMENT_METHODS_URL,
            json={"payment_method_id": "pm_card", "action": "update_billing"},
            headers=customer_headers,
        )

        assert response.status_code == 400
        stripe_client.update_payment_method_billing.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_billing(
        self, client, customer_headers, saved_methods, stripe_client
    ) -> None:
        stripe_client.update_payment_method_billing.return_value = card()

        response = await client.patch(
            PAYMENT_METHODS_URL,
            json={
                "payment_method_id": "pm_card",
                "action": "update_billing",
                "billing_details": {"email": "billing@example.de"},
            },
            headers=customer_headers,
        )

        assert response.status_code == 200
        assert response.json()["payment_method"]["is_default"] is True
        stripe_client.update_payment_method_billing.assert_awaited_once_with(
            "pm_card", {"email": "billing@example.de"},
        )

    @pytest.mark.asyncio
    async def test_other_customers_method(
        self, client, customer_headers, saved_methods, stripe_client
    ) -> None:
        stripe_client.retrieve_payment_method.side_effect = None
        stripe_client.retrieve_payment_method.return_value = card("pm_foreign", "cus_other")

        response = await client.patch(
            PAYMENT_METHODS_URL,
            json={"payment_method_id": "pm_foreign", "action": "set_default"},
            headers=customer_headers,
        )

        assert response.status_code == 404
        stripe_client.set_default_payment_method.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_without_customer(self, client, auth_headers) -> None:
        response = await client.patch(
            PAYMENT_METHODS_URL,
            json={"payment_method_id": "pm_card", "action": "detach"},
            headers=auth_headers,
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_action(self, client, customer_headers) -> None:
        response = await client.patch(
            PAYMENT_METHODS_URL,
            json={"payment_method_id": "pm_card", "action": "freeze"},
            headers=customer_headers,
        )

        assert response.status_code == 422


class TestDetachPaymentMethod:

    @pytest.mark.asyncio
    async def test_method_in_use(
        self, client, customer_headers, saved_methods, stripe_client, stripe_subscription
    ) -> None:
        stripe_client.list_subscriptions.return_value = [
            stripe_subscription(default_payment_method_id="pm_card"),
        ]

        response = await client.patch(
            PAYMENT_METHODS_URL,
            json={"payment_method_id": "pm_card", "action": "detach"},
            headers=customer_headers,
        )

        assert response.status_code == 400
        assert "active subscriptions" in response.json()["detail"]
        stripe_client.detach_payment_method.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_default_passes_to_remaining_method(
        self, client, customer_headers, saved_methods, stripe_client
    ) -> None:
        response = await client.delete(
            PAYMENT_METHODS_URL,
            params={"payment_method_id": "pm_card"},
            headers=customer_headers,
        )

        assert response.status_code == 200
        assert response.json() == {
            "deleted_payment_method_id": "pm_card",
            "was_default": True,
            "new_default_payment_method": "pm_sepa",
        }
        stripe_client.set_default_payment_method.assert_awaited_once_with("cus_1", "pm_sepa")
        stripe_client.detach_payment_method.assert_awaited_once_with("pm_card")

    @pytest.mark.asyncio
    async def test_last_default_clears_default(
        self, client, customer_headers, saved_methods, stripe_client
    ) -> None:
        saved_methods["sepa_debit"] = []

        response = await client.delete(
            PAYMENT_METHODS_URL,
            params={"payment_method_id": "pm_card"},
            headers=customer_headers,
        )

        assert response.status_code == 200
        assert response.json()["new_default_payment_method"] is None
        stripe_client.set_default_payment_method.assert_awaited_once_with("cus_1", None)

    @pytest.mark.asyncio
    async def test_non_default_method(
        self, client, customer_headers, saved_methods, stripe_client
    ) -> None:
        response = await client.patch(
            PAYMENT_METHODS_URL,
            json={"payment_method_id": "pm_sepa", "action": "detach"},
            headers=customer_headers,
        )

        assert response.status_code == 200
        assert response.json()["payment_method"]["is_default"] is False
        stripe_client.set_default_payment_method.assert_not_awaited()
        stripe_client.detach_payment_method.assert_awaited_once_with("pm_sepa")

    @pytest.mark.asyncio
    async def test_unknown_method(
        self, client, customer_headers, saved_methods, stripe_client
    ) -> None:
        response = await client.delete(
            PAYMENT_METHODS_URL,
            params={"payment_method_id": "pm_missing"},
            headers=customer_headers,
        )

        assert response.status_code == 404
        stripe_client.detach_payment_method.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_requires_payment_method_id(self, client, customer_headers) -> None:
        response = await client.delete(PAYMENT_METHODS_URL, headers=customer_headers)

        assert response.status_code == 422


class TestBillingSummary:

    @pytest.mark.asyncio
    async def test_without_customer(self, client, auth_headers, stripe_client) -> None:
        response = await client.get("/api/v1/billing/summary", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["has_active_subscription"] is False
        assert body["plan"] == "free"
        assert body["is_premium"] is False
        stripe_client.list_subscriptions.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_next_charge_and_open_invoices(
        self, client, customer_headers, saved_methods, stripe_client, stripe_subscription
    ) -> None:
        stripe_client.list_subscriptions.return_value = [stripe_subscription(price_amount=1190)]
        stripe_client.list_invoices.return_value = [
            StripeInvoiceData(
                id="in_open", customer_id="cus_1", subscription_id="sub_1", status="open",
                subtotal=1000, tax=190, total=1190, amount_paid=0, amount_due=1190,
                currency="eur",
            ),
        ]

        response = await client.get("/api/v1/billing/summary", headers=customer_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["has_active_subscription"] is True
        assert body["next_billing_amount"] == 1190
        assert body["has_payment_method"] is True
        assert body["pending_invoices"] == 1
        assert body["pending_amount"] == 1190
        stripe_client.list_invoices.assert_awaited_once_with("cus_1", status="open", limit=10)


class TestBillingDashboard:

    @pytest.mark.asyncio
    async def test_totals_from_local_records(
        self, client, customer_headers, customer_user, make_subscription, session_factory,
        saved_methods, stripe_client, stripe_subscription,
    ) -> None:
        period_end = datetime.now(timezone.utc) + timedelta(days=12)
        await make_subscription(customer_user, "sub_1", current_period_end=period_end)
        await make_subscription(customer_user, "sub_old", status="canceled", failed_payment_count=2)
        async with session_factory() as session:
            session.add(Invoice(
                user_id=customer_user.id, stripe_invoice_id="in_paid", status="paid",
                total=1190, amount_paid=1190, paid_at=datetime.now(timezone.utc),
            ))
            session.add(Invoice(
                user_id=customer_user.id, stripe_invoice_id="in_open", status="open",
                total=1190, amount_due=1190,
            ))
            await session.commit()
        stripe_client.retrieve_customer.return_value = customer(
            default="pm_card", address={"country": "DE"}, tax_ids=["DE123456789"],
        )
        stripe_client.list_subscriptions.return_value = [stripe_subscription(price_amount=1190)]

        response = await client.get("/api/v1/billing/dashboard", headers=customer_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["user"]["email"] == "jonas@example.de"
        assert len(body["subscriptions"]) == 2
        assert len(body["invoices"]) == 2
        assert [pm["id"] for pm in body["payment_methods"]] == ["pm_card", "pm_sepa"]
        assert body["billing"]["amount_due"] == 1190
        assert body["billing"]["tax_rate"] == 0.19
        assert body["billing"]["tax_id"] == "DE123456789"
        assert body["billing"]["billing_address"] == {"country": "DE"}
        assert body["billing"]["next_billing_date"] is not None
        assert body["summary"] == {
            "total_spent": 1190,
            "total_invoices": 2,
            "active_subscriptions": 1,
            "failed_payments": 2,
            "next_payment_amount": 1190,
            "current_month_spending": 1190,
        }

    @pytest.mark.asyncio
    async def test_sections_can_be_skipped(
        self, client, customer_headers, saved_methods, stripe_client
    ) -> None:
        response = await client.get(
            "/api/v1/billing/dashboard",
            params={"include_invoices": "false", "include_payment_methods": "false"},
            headers=customer_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["invoices"] == []
        assert body["payment_methods"] == []
        stripe_client.list_payment_methods.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invoice_limit_bounds(self, client, customer_headers) -> None:
        response = await client.get(
            "/api/v1/billing/dashboard", params={"invoice_limit": 51}, headers=customer_headers,
        )

        assert response.status_code == 422
