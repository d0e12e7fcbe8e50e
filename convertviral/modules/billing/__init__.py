"""Billing module.

Stripe checkout, subscription and invoice management, and the webhook that
keeps local billing state and the user's premium flag in step with Stripe.
"""

from convertviral.modules.billing.router import router, webhook_router
from convertviral.modules.billing.service import BillingService
from convertviral.modules.billing.webhook_service import StripeWebhookService, WebhookOutcome
from convertviral.modules.billing.models import (
    CheckoutSession,
    Invoice,
    InvoiceStatus,
    ProcessedWebhookEvent,
    Subscription,
    SubscriptionStatus,
)

__all__ = [
    "router",
    "webhook_router",
    "BillingService",
    "StripeWebhookService",
    "WebhookOutcome",
    "CheckoutSession",
    "Invoice",
    "InvoiceStatus",
    "ProcessedWebhookEvent",
    "Subscription",
    "SubscriptionStatus",
]
