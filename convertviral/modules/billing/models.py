"""Billing models mirroring Stripe subscriptions, invoices and checkouts.

These rows mirror provider-side state; Stripe remains the source of truth and
the webhook handlers keep the local copies in step.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from convertviral.core.database import Base


class SubscriptionStatus(str, Enum):
    """Stripe subscription status values."""
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    PAUSED = "paused"


# Statuses that grant or revoke the user's premium flag; any other status
# leaves the flag as it is.
PREMIUM_STATUSES = frozenset({SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value})
NON_PREMIUM_STATUSES = frozenset({SubscriptionStatus.CANCELED.value, SubscriptionStatus.UNPAID.value})

# Cumulative failed payments after which a subscription is marked unpaid
MAX_FAILED_PAYMENTS = 3


class InvoiceStatus(str, Enum):
    """Stripe invoice status values."""
    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    VOID = "void"
    UNCOLLECTIBLE = "uncollectible"


class CheckoutSessionStatus(str, Enum):
    """Stripe checkout session status values."""
    OPEN = "open"
    COMPLETE = "complete"
    EXPIRED = "expired"


class CheckoutMode(str, Enum):
    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"
    SETUP = "setup"


class Subscription(Base):
    """Local mirror of a Stripe subscription."""

    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )

    # Stripe integration
    stripe_subscription_id: Mapped[str] = mapped_column(
        String(255), nullable=False, unique=True
    )
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    stripe_price_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(
        String(50), default=SubscriptionStatus.INCOMPLETE.value, nullable=False, index=True
    )

    # Billing period
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Cancellation
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Dunning
    failed_payment_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_failed_payment_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_successful_payment_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Last invoice pointer
    last_invoice_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_invoice_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_invoice_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    stripe_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, stripe_id={self.stripe_subscription_id}, status={self.status})>"

    def is_active(self) -> bool:
        """Check if the subscription currently grants premium access."""
        return self.status in PREMIUM_STATUSES

    def is_canceled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELED.value


class Invoice(Base):
    """Local record of a Stripe invoice."""

    __tablename__ = "invoices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("subscriptions.id"), nullable=True, index=True
    )

    stripe_invoice_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    status: Mapped[str] = mapped_column(
        String(50), default=InvoiceStatus.DRAFT.value, nullable=False, index=True
    )

    # Amounts (in cents)
    currency: Mapped[str] = mapped_column(String(3), default="eur")
    subtotal: Mapped[int] = mapped_column(Integer, default=0)
    tax: Mapped[int] = mapped_column(Integer, default=0)
    total: Mapped[int] = mapped_column(Integer, default=0)
    amount_paid: Mapped[int] = mapped_column(Integer, default=0)
    amount_due: Mapped[int] = mapped_column(Integer, default=0)

    hosted_invoice_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    invoice_pdf: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    stripe_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_invoice_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Invoice(id={self.id}, stripe_id={self.stripe_invoice_id}, status={self.status})>"

    def is_paid(self) -> bool:
        return self.status == InvoiceStatus.PAID.value


class CheckoutSession(Base):
    """Checkout session created through the billing API."""

    __tablename__ = "checkout_sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Anonymous checkouts have no user
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True, index=True
    )

    stripe_session_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    mode: Mapped[str] = mapped_column(String(20), default=CheckoutMode.SUBSCRIPTION.value)
    status: Mapped[str] = mapped_column(
        String(20), default=CheckoutSessionStatus.OPEN.value, nullable=False
    )

    price_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    success_url: Mapped[str] = mapped_column(String(1000), nullable=False)
    cancel_url: Mapped[str] = mapped_column(String(1000), nullable=False)

    stripe_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<CheckoutSession(id={self.id}, stripe_id={self.stripe_session_id}, status={self.status})>"


class ProcessedWebhookEvent(Base):
    """Ledger of fully processed Stripe events.

    Written in the same transaction as the handler's writes, so a committed
    row proves the event's side effects were applied exactly once.
    """

    __tablename__ = "stripe_webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<ProcessedWebhookEvent(event_id={self.event_id}, type={self.event_type})>"
