"""Repository for billing database operations.

Writes are flushed, not committed: webhook handlers run inside a single
transaction that the webhook service commits or rolls back as a whole.
"""

import uuid
from typing import Optional

from sqlalchemy import inspect, select
from sqlalchemy.ext.asyncio import AsyncSession

from convertviral.modules.billing.models import (
    CheckoutSession,
    Invoice,
    ProcessedWebhookEvent,
    Subscription,
)


def _check_columns(model, values: dict) -> None:
    unknown = sorted(set(values).difference(inspect(model).column_attrs.keys()))
    if unknown:
        raise TypeError(f"{model.__name__} has no column(s): {', '.join(unknown)}")


def _apply(instance, values: dict) -> None:
    """Set mapped column attributes; unknown names raise TypeError."""
    _check_columns(type(instance), values)
    for key, value in values.items():
        setattr(instance, key, value)


class SubscriptionRepository:
    """Repository for subscription operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_stripe_id(self, stripe_subscription_id: str) -> Optional[Subscription]:
        """Get subscription by Stripe subscription ID."""
        result = await self.session.execute(
            select(Subscription).where(
                Subscription.stripe_subscription_id == stripe_subscription_id
            )
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        stripe_subscription_id: str,
        user_id: uuid.UUID,
        **values,
    ) -> Subscription:
        """Create the subscription or update the existing row in place.

        Keyed by ``stripe_subscription_id`` so at most one row exists per
        provider subscription.
        """
        _check_columns(Subscription, values)
        subscription = await self.get_by_stripe_id(stripe_subscription_id)
        if subscription is None:
            subscription = Subscription(
                stripe_subscription_id=stripe_subscription_id,
                user_id=user_id,
            )
            self.session.add(subscription)
        _apply(subscription, values)
        await self.session.flush()
        return subscription

    async def update(self, subscription: Subscription, **values) -> Subscription:
        """Update subscription fields."""
        _apply(subscription, values)
        await self.session.flush()
        return subscription

    async def list_for_user(self, user_id: uuid.UUID) -> list[Subscription]:
        """Get a user's subscriptions, newest first."""
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
        )
        return list(result.scalars().all())


class InvoiceRepository:
    """Repository for invoice operations."""

    # Fields a paid invoice may still receive from later events
    MUTABLE_WHEN_PAID = frozenset({"hosted_invoice_url", "invoice_pdf", "stripe_metadata"})

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_stripe_id(self, stripe_invoice_id: str) -> Optional[Invoice]:
        result = await self.session.execute(
            select(Invoice).where(Invoice.stripe_invoice_id == stripe_invoice_id)
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        stripe_invoice_id: str,
        user_id: uuid.UUID,
        **values,
    ) -> Invoice:
        """Create or update an invoice keyed by its Stripe id.

        Once an invoice is recorded as paid its amounts and status are frozen;
        only URLs and metadata are refreshed.
        """
        _check_columns(Invoice, values)
        invoice = await self.get_by_stripe_id(stripe_invoice_id)
        if invoice is None:
            invoice = Invoice(stripe_invoice_id=stripe_invoice_id, user_id=user_id)
            self.session.add(invoice)
        elif invoice.is_paid():
            values = {k: v for k, v in values.items() if k in self.MUTABLE_WHEN_PAID}
        _apply(invoice, values)
        await self.session.flush()
        return invoice

    async def list_for_user(
        self,
        user_id: uuid.UUID,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Invoice]:
        """Get a user's invoices, newest first."""
        result = await self.session.execute(
            select(Invoice)
            .where(Invoice.user_id == user_id)
            .order_by(Invoice.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())


class CheckoutSessionRepository:
    """Repository for checkout session operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **values) -> CheckoutSession:
        checkout = CheckoutSession(**values)
        self.session.add(checkout)
        await self.session.flush()
        return checkout

    async def get_by_stripe_id(
        self,
        stripe_session_id: str,
        user_id: Optional[uuid.UUID] = None,
    ) -> Optional[CheckoutSession]:
        """Get checkout session by Stripe id, optionally scoped to a user."""
        query = select(CheckoutSession).where(
            CheckoutSession.stripe_session_id == stripe_session_id
        )
        if user_id is not None:
            query = query.where(CheckoutSession.user_id == user_id)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def mark_status(self, checkout: CheckoutSession, status: str) -> CheckoutSession:
        checkout.status = status
        await self.session.flush()
        return checkout


class WebhookEventRepository:
    """Repository for the processed webhook event ledger."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, event_id: str) -> Optional[ProcessedWebhookEvent]:
        result = await self.session.execute(
            select(ProcessedWebhookEvent).where(ProcessedWebhookEvent.event_id == event_id)
        )
        return result.scalar_one_or_none()

    async def record(
        self,
        event_id: str,
        event_type: str,
        result: Optional[dict],
    ) -> ProcessedWebhookEvent:
        """Add the ledger row for ``event_id`` to the current transaction."""
        entry = ProcessedWebhookEvent(event_id=event_id, event_type=event_type, result=result)
        self.session.add(entry)
        await self.session.flush()
        return entry
