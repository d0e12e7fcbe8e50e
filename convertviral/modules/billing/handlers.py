"""Stripe webhook event handlers.

Each handler receives the verified event and its typed object, applies the
state change to subscriptions, invoices and users, and returns a small
JSON-serializable result. Handlers only flush; the webhook service owns the
transaction.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from convertviral.core.logging import log_error, log_info, log_warning
from convertviral.core.metrics import SUBSCRIPTIONS_MARKED_UNPAID_TOTAL
from convertviral.modules.auth.models import User, UserPlan
from convertviral.modules.auth.repository import UserRepository
from convertviral.modules.billing.events import (
    CheckoutSessionObject,
    EventType,
    InvoiceObject,
    PaymentIntentObject,
    SubscriptionObject,
    WebhookEvent,
    parse_event_object,
    timestamp_to_datetime,
)
from convertviral.modules.billing.exceptions import (
    SubscriptionNotFoundError,
    UserNotFoundError,
    WebhookPayloadError,
)
from convertviral.modules.billing.models import (
    MAX_FAILED_PAYMENTS,
    NON_PREMIUM_STATUSES,
    PREMIUM_STATUSES,
    CheckoutSessionStatus,
    InvoiceStatus,
    Subscription,
    SubscriptionStatus,
)
from convertviral.modules.billing.repository import (
    CheckoutSessionRepository,
    InvoiceRepository,
    SubscriptionRepository,
)
from convertviral.modules.billing.stripe_client import StripeClient

logger = logging.getLogger(__name__)

# Payment intent states in which a re-confirmation can still succeed
RETRYABLE_INTENT_STATUSES = frozenset({"requires_payment_method", "requires_action"})

# Only the first failure of an invoice triggers an automatic re-confirmation
AUTO_RETRY_BELOW_COUNT = 2

Handler = Callable[[WebhookEvent, object], Awaitable[dict]]


def plan_for_price(price_id: Optional[str]) -> UserPlan:
    """Derive the plan tier from the price id naming convention."""
    if price_id and "pro" in price_id:
        return UserPlan.PRO
    return UserPlan.BUSINESS


def _now() -> datetime:
    return datetime.now(timezone.utc)


class WebhookEventHandlers:
    """Dispatches Stripe events to the handler for their type."""

    def __init__(self, session: AsyncSession, stripe_client: StripeClient):
        self.session = session
        self.stripe = stripe_client
        self.users = UserRepository(session)
        self.subscriptions = SubscriptionRepository(session)
        self.invoices = InvoiceRepository(session)
        self.checkouts = CheckoutSessionRepository(session)
        self._handlers: dict[str, Handler] = {
            EventType.CHECKOUT_SESSION_COMPLETED: self.handle_checkout_session_completed,
            EventType.INVOICE_PAID: self.handle_invoice_paid,
            EventType.INVOICE_PAYMENT_FAILED: self.handle_invoice_payment_failed,
            EventType.SUBSCRIPTION_UPDATED: self.handle_subscription_updated,
            EventType.SUBSCRIPTION_DELETED: self.handle_subscription_deleted,
            EventType.PAYMENT_INTENT_SUCCEEDED: self.handle_payment_intent_succeeded,
            EventType.PAYMENT_INTENT_FAILED: self.handle_payment_intent_failed,
        }

    async def dispatch(self, event: WebhookEvent) -> dict:
        """Run the handler registered for ``event.type``.

        Unknown event types are acknowledged without side effects.
        """
        handler = self._handlers.get(event.type)
        if handler is None:
            log_warning(
                logger,
                "Unhandled webhook event type",
                event_id=event.id,
                event_type=event.type,
            )
            return {"status": "unhandled", "event_type": event.type}

        event_object = parse_event_object(event)
        return await handler(event, event_object)

    # ==================== Helpers ====================

    async def _get_user(self, user_id: uuid.UUID) -> User:
        user = await self.users.get_by_id(user_id)
        if user is None:
            raise UserNotFoundError(str(user_id))
        return user

    async def _require_subscription(self, stripe_subscription_id: str) -> Subscription:
        subscription = await self.subscriptions.get_by_stripe_id(stripe_subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(stripe_subscription_id)
        return subscription

    async def _set_premium(
        self,
        user_id: uuid.UUID,
        is_premium: bool,
        plan: Optional[UserPlan] = None,
    ) -> User:
        user = await self._get_user(user_id)
        values = {"is_premium": is_premium}
        if plan is not None:
            values["plan"] = plan.value
        return await self.users.update(user, **values)

    async def _sync_premium(
        self,
        subscription: Subscription,
        plan: Optional[UserPlan] = None,
        payment_received: bool = False,
    ) -> Optional[bool]:
        """Derive the user's premium flag from the subscription's local status.

        Canceled and unpaid always revoke premium. Active and trialing grant
        it, as does a received payment for any other status. Otherwise the
        flag is left as it is and None is returned.
        """
        if subscription.status in NON_PREMIUM_STATUSES:
            await self._set_premium(subscription.user_id, False)
            return False
        if subscription.status in PREMIUM_STATUSES or payment_received:
            await self._set_premium(subscription.user_id, True, plan)
            return True
        return None

    # ==================== Checkout ====================

    async def handle_checkout_session_completed(
        self, event: WebhookEvent, session: CheckoutSessionObject
    ) -> dict:
        """Create or refresh the subscription bought through checkout."""
        if not session.user_id:
            raise WebhookPayloadError(f"No user id in metadata of checkout session {session.id}")
        if not session.subscription:
            raise WebhookPayloadError(f"No subscription on checkout session {session.id}")
        try:
            user_id = uuid.UUID(session.user_id)
        except ValueError as e:
            raise WebhookPayloadError(
                f"Invalid user id {session.user_id!r} on checkout session {session.id}"
            ) from e

        user = await self._get_user(user_id)
        stripe_sub = await self.stripe.retrieve_subscription(session.subscription)
        customer_id = stripe_sub.customer_id or session.customer

        subscription = await self.subscriptions.upsert(
            stripe_sub.id,
            user_id=user.id,
            stripe_customer_id=customer_id,
            stripe_price_id=stripe_sub.price_id,
            status=stripe_sub.status,
            current_period_end=stripe_sub.current_period_end,
            cancel_at_period_end=stripe_sub.cancel_at_period_end,
            stripe_metadata=stripe_sub.metadata,
        )

        if customer_id and not user.stripe_customer_id:
            await self.users.update(user, stripe_customer_id=customer_id)
        plan = plan_for_price(stripe_sub.price_id)
        is_premium = await self._sync_premium(subscription, plan, payment_received=True)

        checkout = await self.checkouts.get_by_stripe_id(session.id)
        if checkout is not None:
            await self.checkouts.mark_status(checkout, CheckoutSessionStatus.COMPLETE.value)

        log_info(
            logger,
            "Checkout session completed",
            event_id=event.id,
            event_type=event.type,
            checkout_session_id=session.id,
            subscription_id=stripe_sub.id,
            user_id=str(user.id),
            plan=plan.value,
            is_premium=is_premium,
        )
        return {
            "success": True,
            "subscription_id": stripe_sub.id,
            "user_id": str(user.id),
            "db_subscription_id": str(subscription.id),
        }

    # ==================== Invoices ====================

    async def handle_invoice_paid(self, event: WebhookEvent, invoice: InvoiceObject) -> dict:
        """Record a paid invoice and extend the subscription period."""
        subscription_id = invoice.subscription_id
        if not subscription_id:
            raise WebhookPayloadError(f"No subscription on invoice {invoice.id}")

        subscription = await self._require_subscription(subscription_id)
        stripe_sub = await self.stripe.retrieve_subscription(subscription_id)

        now = _now()
        values = {
            "status": stripe_sub.status,
            "last_invoice_id": invoice.id,
            "last_invoice_at": now,
            "last_invoice_url": invoice.hosted_invoice_url,
        }
        if stripe_sub.current_period_end is not None:
            values["current_period_end"] = stripe_sub.current_period_end
        await self.subscriptions.update(subscription, **values)
        await self._sync_premium(subscription, payment_received=True)

        status = invoice.status or InvoiceStatus.PAID.value
        paid_at = (invoice.paid_at or now) if status == InvoiceStatus.PAID.value else None
        record = await self.invoices.upsert(
            invoice.id,
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            status=status,
            currency=invoice.currency,
            subtotal=invoice.subtotal,
            tax=invoice.tax_amount,
            total=invoice.total,
            amount_paid=invoice.amount_paid,
            amount_due=invoice.amount_due,
            hosted_invoice_url=invoice.hosted_invoice_url,
            invoice_pdf=invoice.invoice_pdf,
            paid_at=paid_at,
            stripe_metadata=invoice.metadata,
        )

        log_info(
            logger,
            "Invoice paid",
            event_id=event.id,
            event_type=event.type,
            invoice_id=invoice.id,
            subscription_id=subscription_id,
            user_id=str(subscription.user_id),
            amount_paid=invoice.amount_paid,
        )
        return {
            "success": True,
            "invoice_id": invoice.id,
            "subscription_id": subscription_id,
            "user_id": str(subscription.user_id),
            "db_invoice_id": str(record.id),
        }

    async def handle_invoice_payment_failed(
        self, event: WebhookEvent, invoice: InvoiceObject
    ) -> dict:
        """Count the failure and apply the dunning policy.

        The first failure re-confirms the payment intent once. After
        MAX_FAILED_PAYMENTS failures the subscription becomes unpaid. Premium
        is then derived from the resulting status, so a status Stripe already
        reports as unpaid or canceled revokes it at any count. The result's
        ``status`` names the dunning stage, not the subscription status.
        """
        subscription_id = invoice.subscription_id
        if not subscription_id:
            raise WebhookPayloadError(f"No subscription on invoice {invoice.id}")

        subscription = await self._require_subscription(subscription_id)
        stripe_sub = await self.stripe.retrieve_subscription(subscription_id)
        failed_payment_count = (subscription.failed_payment_count or 0) + 1
        exhausted = failed_payment_count > MAX_FAILED_PAYMENTS

        await self.subscriptions.update(
            subscription,
            status=stripe_sub.status,
            failed_payment_count=failed_payment_count,
            last_failed_payment_at=_now(),
        )

        payment_intent_id = invoice.payment_intent_id
        if not exhausted and payment_intent_id:
            await self._retry_payment(
                event, invoice, payment_intent_id, subscription_id, failed_payment_count
            )
        elif exhausted and not subscription.is_canceled():
            await self.subscriptions.update(subscription, status=SubscriptionStatus.UNPAID.value)
            SUBSCRIPTIONS_MARKED_UNPAID_TOTAL.inc()
            log_warning(
                logger,
                "Subscription marked unpaid after repeated payment failures",
                event_id=event.id,
                event_type=event.type,
                subscription_id=subscription_id,
                user_id=str(subscription.user_id),
                failed_payment_count=failed_payment_count,
            )

        await self._sync_premium(subscription)

        return {
            "success": True,
            "invoice_id": invoice.id,
            "subscription_id": subscription_id,
            "user_id": str(subscription.user_id),
            "failed_payment_count": failed_payment_count,
            "status": "unpaid" if exhausted else "payment_failed",
        }

    async def _retry_payment(
        self,
        event: WebhookEvent,
        invoice: InvoiceObject,
        payment_intent_id: str,
        subscription_id: str,
        failed_payment_count: int,
    ) -> None:
        # Best effort: a failed re-confirmation must not fail the event
        try:
            intent = await self.stripe.retrieve_payment_intent(payment_intent_id)
            if intent.status not in RETRYABLE_INTENT_STATUSES:
                return
            if failed_payment_count >= AUTO_RETRY_BELOW_COUNT:
                return
            await self.stripe.confirm_payment_intent(intent.id)
            log_info(
                logger,
                "Payment retry initiated",
                event_id=event.id,
                payment_intent_id=intent.id,
                invoice_id=invoice.id,
                subscription_id=subscription_id,
                attempt_number=failed_payment_count,
            )
        except stripe.StripeError as e:
            log_error(
                logger,
                "Payment retry failed",
                exception=e,
                event_id=event.id,
                invoice_id=invoice.id,
                subscription_id=subscription_id,
                error=str(e),
            )

    # ==================== Subscriptions ====================

    async def handle_subscription_updated(
        self, event: WebhookEvent, stripe_sub: SubscriptionObject
    ) -> dict:
        """Mirror Stripe's view of the subscription and derive premium."""
        subscription = await self._require_subscription(stripe_sub.id)

        values = {
            "status": stripe_sub.status,
            "cancel_at_period_end": stripe_sub.cancel_at_period_end,
            "stripe_metadata": stripe_sub.metadata,
        }
        if stripe_sub.price_id:
            values["stripe_price_id"] = stripe_sub.price_id
        if stripe_sub.period_end is not None:
            values["current_period_end"] = stripe_sub.period_end
        if stripe_sub.canceled_at is not None:
            values["canceled_at"] = timestamp_to_datetime(stripe_sub.canceled_at)
        await self.subscriptions.update(subscription, **values)
        await self._sync_premium(subscription, plan_for_price(subscription.stripe_price_id))

        log_info(
            logger,
            "Subscription updated",
            event_id=event.id,
            event_type=event.type,
            subscription_id=stripe_sub.id,
            user_id=str(subscription.user_id),
            status=stripe_sub.status,
        )
        return {
            "success": True,
            "subscription_id": stripe_sub.id,
            "user_id": str(subscription.user_id),
            "status": stripe_sub.status,
        }

    async def handle_subscription_deleted(
        self, event: WebhookEvent, stripe_sub: SubscriptionObject
    ) -> dict:
        """Mark the subscription canceled and revoke premium."""
        subscription = await self._require_subscription(stripe_sub.id)

        await self.subscriptions.update(
            subscription,
            status=SubscriptionStatus.CANCELED.value,
            cancel_at_period_end=True,
            canceled_at=_now(),
        )
        await self._sync_premium(subscription)

        log_info(
            logger,
            "Subscription deleted",
            event_id=event.id,
            event_type=event.type,
            subscription_id=stripe_sub.id,
            user_id=str(subscription.user_id),
        )
        return {
            "success": True,
            "subscription_id": stripe_sub.id,
            "user_id": str(subscription.user_id),
            "status": SubscriptionStatus.CANCELED.value,
        }

    # ==================== Payment Intents ====================

    async def handle_payment_intent_succeeded(
        self, event: WebhookEvent, intent: PaymentIntentObject
    ) -> dict:
        """Reset dunning state when a subscription payment goes through."""
        if intent.invoice:
            stripe_invoice = await self.stripe.retrieve_invoice(intent.invoice)
            if stripe_invoice.subscription_id:
                stripe_sub = await self.stripe.retrieve_subscription(
                    stripe_invoice.subscription_id
                )
                subscription = await self.subscriptions.get_by_stripe_id(stripe_sub.id)
                if subscription is not None:
                    values = {
                        "status": stripe_sub.status,
                        "failed_payment_count": 0,
                        "last_successful_payment_at": _now(),
                    }
                    if stripe_sub.current_period_end is not None:
                        values["current_period_end"] = stripe_sub.current_period_end
                    await self.subscriptions.update(subscription, **values)
                    await self._sync_premium(subscription, payment_received=True)

                    log_info(
                        logger,
                        "Payment succeeded",
                        event_id=event.id,
                        payment_intent_id=intent.id,
                        invoice_id=stripe_invoice.id,
                        subscription_id=stripe_sub.id,
                        user_id=str(subscription.user_id),
                        amount=intent.amount,
                    )
                    return {
                        "success": True,
                        "payment_intent_id": intent.id,
                        "invoice_id": stripe_invoice.id,
                        "subscription_id": stripe_sub.id,
                        "user_id": str(subscription.user_id),
                    }

        return {
            "success": True,
            "payment_intent_id": intent.id,
            "amount": intent.amount,
            "status": "succeeded",
        }

    async def handle_payment_intent_failed(
        self, event: WebhookEvent, intent: PaymentIntentObject
    ) -> dict:
        # invoice.payment_failed owns the failure count for the same failure
        log_warning(
            logger,
            "Payment failed",
            event_id=event.id,
            payment_intent_id=intent.id,
            invoice_id=intent.invoice,
            amount=intent.amount,
            error=intent.error_message,
        )
        return {
            "success": True,
            "payment_intent_id": intent.id,
            "status": "failed",
            "error": intent.error_message,
        }
