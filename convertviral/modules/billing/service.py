"""Billing service for checkout, subscriptions, invoices and saved payment methods.

Backs the user-facing billing API. State changes that originate at Stripe
(payments, renewals, cancellations taking effect) arrive through the webhook
service instead; the actions here only ask Stripe for a change and mirror
the immediate answer locally.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from convertviral.core.config import settings
from convertviral.core.logging import log_info, log_warning
from convertviral.modules.auth.models import User
from convertviral.modules.auth.repository import UserRepository
from convertviral.modules.billing.exceptions import (
    BillingActionError,
    CheckoutSessionNotFoundError,
    CustomerNotFoundError,
    PaymentMethodNotFoundError,
    PaymentsDisabledError,
    SubscriptionNotFoundError,
)
from convertviral.modules.billing.models import (
    CheckoutMode,
    CheckoutSessionStatus,
    InvoiceStatus,
    Subscription,
)
from convertviral.modules.billing.repository import (
    CheckoutSessionRepository,
    InvoiceRepository,
    SubscriptionRepository,
)
from convertviral.modules.billing.schemas import (
    BillingDashboardResponse,
    BillingInfo,
    BillingSummaryResponse,
    BillingTotals,
    CardDetails,
    CheckoutCreateRequest,
    CheckoutSessionDetailResponse,
    CheckoutSessionResponse,
    CustomerSummary,
    DashboardUser,
    InvoiceListResponse,
    InvoiceResponse,
    PaymentMethodAction,
    PaymentMethodActionResponse,
    PaymentMethodAttachRequest,
    PaymentMethodDeleteResponse,
    PaymentMethodListResponse,
    PaymentMethodResponse,
    PaymentMethodUpdateRequest,
    PriceSummary,
    ProductSummary,
    SepaDebitDetails,
    SubscriptionActionResponse,
    SubscriptionListResponse,
    SubscriptionPaymentMethod,
    SubscriptionResponse,
    TaxInfo,
)
from convertviral.modules.billing.stripe_client import (
    StripeClient,
    StripePaymentMethodData,
    StripePriceData,
)
from convertviral.modules.billing.tax import GERMAN_STANDARD_VAT_RATE, calculate_german_tax

# Payment method types listed for a customer; Germany relies on SEPA debit
SAVED_PAYMENT_METHOD_TYPES = ("card", "sepa_debit")

logger = logging.getLogger(__name__)


class BillingService:
    """Service for the billing API."""

    def __init__(
        self,
        session: AsyncSession,
        stripe_client: StripeClient,
        payments_enabled: Optional[bool] = None,
    ):
        self.session = session
        self.stripe = stripe_client
        self.payments_enabled = (
            settings.PAYMENTS_ENABLED if payments_enabled is None else payments_enabled
        )
        self.user_repo = UserRepository(session)
        self.subscription_repo = SubscriptionRepository(session)
        self.invoice_repo = InvoiceRepository(session)
        self.checkout_repo = CheckoutSessionRepository(session)

    def _ensure_payments_enabled(self, action: str) -> None:
        if not self.payments_enabled:
            log_warning(logger, "Billing action rejected, payments are disabled", action=action)
            raise PaymentsDisabledError("Payments are currently disabled")

    # ==================== Checkout ====================

    async def get_or_create_customer(
        self,
        user: User,
        address: Optional[dict] = None,
        tax_id: Optional[str] = None,
        source: str = "checkout_session",
    ) -> str:
        """Return the user's Stripe customer, creating it on first use."""
        if user.stripe_customer_id:
            return user.stripe_customer_id

        customer_id = await self.stripe.create_customer(
            email=user.email,
            name=user.name,
            address=address,
            tax_id=tax_id,
            metadata={"userId": str(user.id), "source": source},
        )
        await self.user_repo.update(user, stripe_customer_id=customer_id)
        return customer_id

    async def create_checkout_session(
        self,
        user: User,
        request: CheckoutCreateRequest,
    ) -> CheckoutSessionResponse:
        """Create a Stripe Checkout with German VAT and GDPR settings.

        Args:
            user: Authenticated user
            request: Checkout options

        Returns:
            CheckoutSessionResponse with the hosted checkout URL

        Raises:
            PaymentsDisabledError: If payments are switched off
        """
        self._ensure_payments_enabled("create_checkout_session")

        customer_id = await self.get_or_create_customer(
            user,
            address=request.address.model_dump(exclude_none=True) if request.address else None,
            tax_id=request.tax_id,
        )
        price = await self.stripe.retrieve_price(request.price_id)
        tax = calculate_german_tax(price.unit_amount)

        # Server-set keys win over caller metadata; userId links the webhook back
        metadata = {
            **request.metadata,
            "userId": str(user.id),
            "priceId": request.price_id,
            "productName": price.product_name or "Unknown Product",
            **tax.to_metadata(),
        }
        params = self._build_checkout_params(request, customer_id, metadata)
        checkout = await self.stripe.create_checkout_session(params)

        record = await self.checkout_repo.create(
            user_id=user.id,
            stripe_session_id=checkout.id,
            mode=request.mode.value,
            status=CheckoutSessionStatus.OPEN.value,
            price_id=request.price_id,
            amount=price.unit_amount,
            currency=price.currency,
            success_url=str(request.success_url),
            cancel_url=str(request.cancel_url),
            stripe_metadata=metadata,
        )
        await self.session.commit()

        log_info(
            logger,
            "Checkout session created",
            user_id=str(user.id),
            checkout_session_id=checkout.id,
            checkout_mode=request.mode.value,
            price_id=request.price_id,
            amount=price.unit_amount,
            currency=price.currency,
            customer_id=customer_id,
        )
        return CheckoutSessionResponse(
            session_id=checkout.id,
            url=checkout.url,
            mode=checkout.mode,
            customer_id=checkout.customer_id or customer_id,
            payment_status=checkout.payment_status,
            tax_info=TaxInfo(**tax.to_dict()),
            price=self._price_summary(price),
            product=ProductSummary(
                id=price.product_id,
                name=price.product_name,
                description=price.product_description,
            ),
            db_session_id=record.id,
        )

    def _build_checkout_params(
        self,
        request: CheckoutCreateRequest,
        customer_id: str,
        metadata: dict[str, str],
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "mode": request.mode.value,
            "customer": customer_id,
            "customer_update": {"address": "auto", "name": "auto"},
            "success_url": str(request.success_url),
            "cancel_url": str(request.cancel_url),
            "billing_address_collection": request.billing_address_collection,
            "payment_method_types": request.payment_method_types
            or settings.STRIPE_PAYMENT_METHOD_TYPES,
            "automatic_tax": {"enabled": True},
            "tax_id_collection": {"enabled": True},
            "consent_collection": {"terms_of_service": "required", "promotions": "auto"},
            "phone_number_collection": {"enabled": True},
            "metadata": metadata,
        }
        if request.locale != "auto":
            params["locale"] = request.locale

        if request.mode == CheckoutMode.SUBSCRIPTION:
            params["line_items"] = [{"price": request.price_id, "quantity": 1}]
            subscription_data: dict[str, Any] = {"metadata": metadata}
            if request.trial_period_days:
                subscription_data["trial_period_days"] = request.trial_period_days
            params["subscription_data"] = subscription_data
            if request.coupon_id:
                params["discounts"] = [{"coupon": request.coupon_id}]
        elif request.mode == CheckoutMode.PAYMENT:
            params["line_items"] = [{"price": request.price_id, "quantity": 1}]
            params["payment_intent_data"] = {"metadata": metadata}
            if request.coupon_id:
                params["discounts"] = [{"coupon": request.coupon_id}]

        # Stripe rejects promotion codes alongside explicit discounts
        if request.allow_promotion_codes and "discounts" not in params:
            params["allow_promotion_codes"] = True
        return params

    async def get_checkout_session(
        self,
        user: User,
        session_id: str,
    ) -> CheckoutSessionDetailResponse:
        """Get a checkout session the user started.

        Raises:
            CheckoutSessionNotFoundError: If the session is unknown locally,
                belongs to another user, or is unknown to Stripe
        """
        self._ensure_payments_enabled("get_checkout_session")

        record = await self.checkout_repo.get_by_stripe_id(session_id, user_id=user.id)
        if record is None:
            raise CheckoutSessionNotFoundError(f"Checkout session not found: {session_id}")

        checkout = await self.stripe.retrieve_checkout_session(session_id)
        if checkout is None:
            raise CheckoutSessionNotFoundError(f"Checkout session not found: {session_id}")

        tax_info = None
        if checkout.amount_total is not None:
            tax_info = TaxInfo(**calculate_german_tax(checkout.amount_total).to_dict())

        return CheckoutSessionDetailResponse(
            id=checkout.id,
            mode=checkout.mode,
            status=checkout.status,
            payment_status=checkout.payment_status,
            customer_id=checkout.customer_id,
            customer_email=checkout.customer_email,
            subscription_id=checkout.subscription_id,
            amount_subtotal=checkout.amount_subtotal,
            amount_total=checkout.amount_total,
            currency=checkout.currency,
            expires_at=checkout.expires_at,
            metadata=checkout.metadata,
            tax_info=tax_info,
            db_id=record.id,
            db_status=record.status,
            db_created_at=record.created_at,
        )

    # ==================== Subscriptions ====================

    async def list_subscriptions(self, user: User) -> SubscriptionListResponse:
        subscriptions = await self.subscription_repo.list_for_user(user.id)
        return SubscriptionListResponse(
            subscriptions=[SubscriptionResponse.model_validate(s) for s in subscriptions],
            total=len(subscriptions),
        )

    async def _get_owned_subscription(
        self, user: User, stripe_subscription_id: str
    ) -> Subscription:
        subscription = await self.subscription_repo.get_by_stripe_id(stripe_subscription_id)
        if subscription is None or subscription.user_id != user.id:
            raise SubscriptionNotFoundError(stripe_subscription_id)
        return subscription

    async def cancel_subscription(
        self,
        user: User,
        stripe_subscription_id: str,
    ) -> SubscriptionActionResponse:
        """Cancel a subscription at the end of the current period.

        The user keeps premium until Stripe deletes the subscription and the
        customer.subscription.deleted webhook arrives.

        Raises:
            SubscriptionNotFoundError: If the user has no such subscription
            PaymentsDisabledError: If payments are switched off
            BillingActionError: If it is already canceled or scheduled to cancel
        """
        self._ensure_payments_enabled("cancel_subscription")
        subscription = await self._get_owned_subscription(user, stripe_subscription_id)
        if subscription.is_canceled():
            raise BillingActionError("Subscription is already canceled")
        if subscription.cancel_at_period_end:
            raise BillingActionError("Subscription is already scheduled to cancel")

        stripe_sub = await self.stripe.set_cancel_at_period_end(stripe_subscription_id, True)
        await self.subscription_repo.update(
            subscription,
            status=stripe_sub.status,
            cancel_at_period_end=True,
        )
        await self.session.commit()

        log_info(
            logger,
            "Subscription scheduled for cancellation",
            user_id=str(user.id),
            subscription_id=stripe_subscription_id,
        )
        return SubscriptionActionResponse(
            stripe_subscription_id=stripe_subscription_id,
            status=subscription.status,
            cancel_at_period_end=True,
            current_period_end=subscription.current_period_end,
            message="Subscription will be canceled at the end of the billing period",
        )

    async def reactivate_subscription(
        self,
        user: User,
        stripe_subscription_id: str,
    ) -> SubscriptionActionResponse:
        """Undo a scheduled cancellation.

        A subscription that Stripe has already canceled cannot be revived;
        the user has to go through checkout again.

        Raises:
            SubscriptionNotFoundError: If the user has no such subscription
            PaymentsDisabledError: If payments are switched off
            BillingActionError: If the subscription is not scheduled to cancel
        """
        self._ensure_payments_enabled("reactivate_subscription")
        subscription = await self._get_owned_subscription(user, stripe_subscription_id)
        if subscription.is_canceled():
            raise BillingActionError(
                "Subscription has ended; start a new checkout to subscribe again"
            )
        if not subscription.cancel_at_period_end:
            raise BillingActionError("Subscription is not scheduled to cancel")

        stripe_sub = await self.stripe.set_cancel_at_period_end(stripe_subscription_id, False)
        await self.subscription_repo.update(
            subscription,
            status=stripe_sub.status,
            cancel_at_period_end=False,
        )
        await self.session.commit()

        log_info(
            logger,
            "Subscription reactivated",
            user_id=str(user.id),
            subscription_id=stripe_subscription_id,
        )
        return SubscriptionActionResponse(
            stripe_subscription_id=stripe_subscription_id,
            status=subscription.status,
            cancel_at_period_end=False,
            current_period_end=subscription.current_period_end,
            message="Subscription reactivated",
        )

    # ==================== Invoices ====================

    async def list_invoices(
        self,
        user: User,
        limit: int = 20,
        offset: int = 0,
    ) -> InvoiceListResponse:
        invoices = await self.invoice_repo.list_for_user(user.id, limit=limit, offset=offset)
        return InvoiceListResponse(
            invoices=[InvoiceResponse.model_validate(i) for i in invoices],
            limit=limit,
            offset=offset,
        )

    # ==================== Payment Methods ====================

    def _require_customer(self, user: User) -> str:
        if not user.stripe_customer_id:
            raise CustomerNotFoundError("No Stripe customer for this user")
        return user.stripe_customer_id

    async def _get_owned_payment_method(
        self, customer_id: str, payment_method_id: str
    ) -> StripePaymentMethodData:
        payment_method = await self.stripe.retrieve_payment_method(payment_method_id)
        if payment_method is None or payment_method.customer_id != customer_id:
            raise PaymentMethodNotFoundError(f"Payment method not found: {payment_method_id}")
        return payment_method

    async def _list_saved_methods(
        self, customer_id: str, limit: Optional[int] = None
    ) -> list[StripePaymentMethodData]:
        methods: list[StripePaymentMethodData] = []
        for method_type in SAVED_PAYMENT_METHOD_TYPES:
            methods.extend(await self.stripe.list_payment_methods(customer_id, method_type, limit))
        return methods

    async def _make_default(self, customer_id: str, payment_method_id: str) -> None:
        """Make the method the invoice default, also on every active subscription."""
        await self.stripe.set_default_payment_method(customer_id, payment_method_id)
        for subscription in await self.stripe.list_subscriptions(customer_id, status="active"):
            await self.stripe.set_subscription_payment_method(subscription.id, payment_method_id)

    async def list_payment_methods(self, user: User) -> PaymentMethodListResponse:
        """List saved cards and SEPA debit mandates with the customer default."""
        self._ensure_payments_enabled("list_payment_methods")
        if not user.stripe_customer_id:
            return PaymentMethodListResponse(payment_methods=[])

        customer = await self.stripe.retrieve_customer(user.stripe_customer_id)
        default_id = customer.default_payment_method_id
        methods = await self._list_saved_methods(customer.id)
        subscriptions = await self.stripe.list_subscriptions(customer.id, status="active")

        return PaymentMethodListResponse(
            payment_methods=[_payment_method_response(pm, default_id) for pm in methods],
            default_payment_method=default_id,
            subscription_payment_methods=[
                SubscriptionPaymentMethod(
                    subscription_id=s.id,
                    payment_method_id=s.default_payment_method_id,
                    status=s.status,
                )
                for s in subscriptions
            ],
            customer=CustomerSummary(
                id=customer.id,
                email=customer.email,
                name=customer.name,
                address=customer.address,
                tax_ids=customer.tax_ids,
            ),
        )

    async def add_payment_method(
        self,
        user: User,
        request: PaymentMethodAttachRequest,
    ) -> PaymentMethodResponse:
        """Attach a payment method collected by Stripe.js to the user's customer.

        The Stripe customer is created first when the user has none.

        Raises:
            PaymentsDisabledError: If payments are switched off
        """
        self._ensure_payments_enabled("add_payment_method")
        address = None
        if request.billing_details and request.billing_details.address:
            address = request.billing_details.address.model_dump(exclude_none=True)
        customer_id = await self.get_or_create_customer(
            user, address=address, source="payment_method_addition"
        )
        await self.session.commit()

        payment_method = await self.stripe.attach_payment_method(
            request.payment_method_id, customer_id
        )
        if request.billing_details:
            payment_method = await self.stripe.update_payment_method_billing(
                payment_method.id, request.billing_details.model_dump(exclude_none=True)
            )
        if request.set_as_default:
            await self._make_default(customer_id, payment_method.id)

        log_info(
            logger,
            "Payment method added",
            user_id=str(user.id),
            customer_id=customer_id,
            payment_method_id=payment_method.id,
            payment_method_type=payment_method.type,
            set_as_default=request.set_as_default,
        )
        return _payment_method_response(
            payment_method, payment_method.id if request.set_as_default else None
        )

    async def update_payment_method(
        self,
        user: User,
        request: PaymentMethodUpdateRequest,
    ) -> PaymentMethodActionResponse:
        """Set a saved method as default, change its billing details, or detach it.

        Raises:
            CustomerNotFoundError: If the user has no Stripe customer
            PaymentMethodNotFoundError: If the method is not attached to the user
            BillingActionError: If billing details are missing for
                ``update_billing``, or a detach is not allowed
        """
        self._ensure_payments_enabled("update_payment_method")
        customer_id = self._require_customer(user)
        payment_method = await self._get_owned_payment_method(
            customer_id, request.payment_method_id
        )

        if request.action == PaymentMethodAction.SET_DEFAULT:
            await self._make_default(customer_id, payment_method.id)
            default_id = payment_method.id
        elif request.action == PaymentMethodAction.UPDATE_BILLING:
            if not request.billing_details:
                raise BillingActionError("Billing details are required for this action")
            payment_method = await self.stripe.update_payment_method_billing(
                payment_method.id, request.billing_details.model_dump(exclude_none=True)
            )
            customer = await self.stripe.retrieve_customer(customer_id)
            default_id = customer.default_payment_method_id
        else:
            await self._detach(user, customer_id, payment_method.id)
            default_id = None

        log_info(
            logger,
            "Payment method updated",
            user_id=str(user.id),
            customer_id=customer_id,
            payment_method_id=payment_method.id,
            action=request.action.value,
        )
        return PaymentMethodActionResponse(
            payment_method=_payment_method_response(payment_method, default_id),
            action=request.action,
        )

    async def delete_payment_method(
        self,
        user: User,
        payment_method_id: str,
    ) -> PaymentMethodDeleteResponse:
        self._ensure_payments_enabled("delete_payment_method")
        customer_id = self._require_customer(user)
        await self._get_owned_payment_method(customer_id, payment_method_id)
        return await self._detach(user, customer_id, payment_method_id)

    async def _detach(
        self,
        user: User,
        customer_id: str,
        payment_method_id: str,
    ) -> PaymentMethodDeleteResponse:
        """Detach a method no active subscription pays with.

        When it was the customer default, another saved method takes over,
        or the default is cleared if none is left.
        """
        subscriptions = await self.stripe.list_subscriptions(customer_id, status="active")
        if any(s.default_payment_method_id == payment_method_id for s in subscriptions):
            raise BillingActionError(
                "Cannot detach payment method that is being used by active subscriptions"
            )

        customer = await self.stripe.retrieve_customer(customer_id)
        was_default = customer.default_payment_method_id == payment_method_id
        new_default = None
        if was_default:
            others = [
                pm for pm in await self._list_saved_methods(customer_id)
                if pm.id != payment_method_id
            ]
            new_default = others[0].id if others else None
            await self.stripe.set_default_payment_method(customer_id, new_default)

        await self.stripe.detach_payment_method(payment_method_id)

        log_info(
            logger,
            "Payment method detached",
            user_id=str(user.id),
            customer_id=customer_id,
            payment_method_id=payment_method_id,
            was_default=was_default,
            new_default_payment_method=new_default,
        )
        return PaymentMethodDeleteResponse(
            deleted_payment_method_id=payment_method_id,
            was_default=was_default,
            new_default_payment_method=new_default,
        )

    # ==================== Overview ====================

    async def get_billing_summary(self, user: User) -> BillingSummaryResponse:
        """Quick overview: next charge, saved methods and open invoices."""
        self._ensure_payments_enabled("get_billing_summary")
        summary = BillingSummaryResponse(plan=user.plan, is_premium=user.is_premium)
        if not user.stripe_customer_id:
            return summary

        customer_id = user.stripe_customer_id
        active = await self.stripe.list_subscriptions(customer_id, status="active", limit=1)
        if active:
            subscription = active[0]
            summary.has_active_subscription = True
            summary.next_billing_date = subscription.current_period_end
            summary.next_billing_amount = subscription.price_amount or 0
            summary.currency = subscription.currency or summary.currency

        summary.has_payment_method = bool(await self._list_saved_methods(customer_id, limit=1))

        pending = await self.stripe.list_invoices(
            customer_id, status=InvoiceStatus.OPEN.value, limit=10
        )
        summary.pending_invoices = len(pending)
        summary.pending_amount = sum(invoice.amount_due for invoice in pending)
        return summary

    async def get_billing_dashboard(
        self,
        user: User,
        include_invoices: bool = True,
        include_payment_methods: bool = True,
        invoice_limit: int = 10,
    ) -> BillingDashboardResponse:
        """Billing page data.

        Subscriptions and invoices come from the local mirror; the billing
        address, tax id, upcoming amount and saved methods come from Stripe.
        """
        self._ensure_payments_enabled("get_billing_dashboard")
        subscriptions = await self.subscription_repo.list_for_user(user.id)
        invoices = []
        if include_invoices:
            invoices = await self.invoice_repo.list_for_user(user.id, limit=invoice_limit)

        billing = BillingInfo(tax_rate=GERMAN_STANDARD_VAT_RATE)
        totals = BillingTotals(total_invoices=len(invoices))

        month_start = datetime.now(timezone.utc).replace(
            day=1, hour=0, minute=0, second=0, microsecond=0
        )
        for invoice in invoices:
            if invoice.is_paid():
                totals.total_spent += invoice.amount_paid
                if invoice.paid_at and _as_utc(invoice.paid_at) >= month_start:
                    totals.current_month_spending += invoice.amount_paid
            elif invoice.status == InvoiceStatus.OPEN.value:
                billing.amount_due += invoice.amount_due

        for subscription in subscriptions:
            totals.failed_payments += subscription.failed_payment_count
            if not subscription.is_active():
                continue
            totals.active_subscriptions += 1
            if subscription.current_period_end is not None:
                period_end = _as_utc(subscription.current_period_end)
                if billing.next_billing_date is None or period_end < billing.next_billing_date:
                    billing.next_billing_date = period_end

        payment_methods: list[PaymentMethodResponse] = []
        if user.stripe_customer_id:
            customer = await self.stripe.retrieve_customer(user.stripe_customer_id)
            billing.billing_address = customer.address
            billing.tax_id = customer.tax_ids[0] if customer.tax_ids else None
            active = await self.stripe.list_subscriptions(customer.id, status="active")
            totals.next_payment_amount = sum(s.price_amount or 0 for s in active)
            if include_payment_methods:
                payment_methods = [
                    _payment_method_response(pm, customer.default_payment_method_id)
                    for pm in await self._list_saved_methods(customer.id)
                ]

        return BillingDashboardResponse(
            user=DashboardUser.model_validate(user),
            subscriptions=[SubscriptionResponse.model_validate(s) for s in subscriptions],
            invoices=[InvoiceResponse.model_validate(i) for i in invoices],
            payment_methods=payment_methods,
            billing=billing,
            summary=totals,
        )

    def _price_summary(self, price: StripePriceData) -> PriceSummary:
        return PriceSummary(
            id=price.id,
            unit_amount=price.unit_amount,
            currency=price.currency,
            recurring_interval=price.recurring_interval,
        )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _payment_method_response(
    payment_method: StripePaymentMethodData,
    default_id: Optional[str],
) -> PaymentMethodResponse:
    return PaymentMethodResponse(
        id=payment_method.id,
        type=payment_method.type,
        card=CardDetails(**payment_method.card) if payment_method.card else None,
        sepa_debit=(
            SepaDebitDetails(**payment_method.sepa_debit) if payment_method.sepa_debit else None
        ),
        billing_details=payment_method.billing_details,
        created=payment_method.created,
        is_default=payment_method.id == default_id,
    )
