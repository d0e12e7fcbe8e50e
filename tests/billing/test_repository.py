"""Tests for the billing and user repositories."""

import pytest

from convertviral.modules.auth.models import User
from convertviral.modules.auth.repository import UserRepository
from convertviral.modules.billing.models import Invoice, Subscription
from convertviral.modules.billing.repository import InvoiceRepository, SubscriptionRepository


class TestColumnUpdates:
    """Updates only accept mapped column names."""

    @pytest.mark.asyncio
    async def test_subscription_update(self, db_session, user, make_subscription) -> None:
        await make_subscription(user, "sub_1")
        repo = SubscriptionRepository(db_session)
        subscription = await repo.get_by_stripe_id("sub_1")

        await repo.update(subscription, status="past_due", stripe_metadata={"source": "test"})

        assert subscription.status == "past_due"
        assert subscription.stripe_metadata == {"source": "test"}

    @pytest.mark.asyncio
    async def test_subscription_update_rejects_unknown_field(
        self, db_session, user, make_subscription, fetch
    ) -> None:
        await make_subscription(user, "sub_1")
        repo = SubscriptionRepository(db_session)
        subscription = await repo.get_by_stripe_id("sub_1")

        with pytest.raises(TypeError, match="failed_payments"):
            await repo.update(subscription, status="unpaid", failed_payments=4)

        await db_session.rollback()
        [stored] = await fetch(Subscription)
        assert stored.status == "active"

    @pytest.mark.asyncio
    async def test_subscription_upsert_rejects_unknown_field(self, db_session, user) -> None:
        with pytest.raises(TypeError, match="period_end"):
            await SubscriptionRepository(db_session).upsert(
                "sub_new", user_id=user.id, status="active", period_end=None,
            )

    @pytest.mark.asyncio
    async def test_invoice_upsert_rejects_unknown_field(self, db_session, user) -> None:
        with pytest.raises(TypeError, match="tax_total"):
            await InvoiceRepository(db_session).upsert(
                "in_1", user_id=user.id, status="paid", tax_total=190,
            )

    @pytest.mark.asyncio
    async def test_paid_invoice_still_rejects_unknown_field(
        self, db_session, user, session_factory
    ) -> None:
        async with session_factory() as session:
            session.add(Invoice(user_id=user.id, stripe_invoice_id="in_1", status="paid"))
            await session.commit()

        with pytest.raises(TypeError):
            await InvoiceRepository(db_session).upsert("in_1", user_id=user.id, pdf_url="x")

    @pytest.mark.asyncio
    async def test_user_update_rejects_unknown_field(self, db_session, user, fetch) -> None:
        repo = UserRepository(db_session)
        stored = await repo.get_by_id(user.id)

        with pytest.raises(TypeError, match="premium"):
            await repo.update(stored, premium=True)

        await db_session.rollback()
        [reloaded] = await fetch(User, User.id == user.id)
        assert reloaded.is_premium is False
