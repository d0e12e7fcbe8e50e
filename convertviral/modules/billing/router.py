"""API routers for billing and the Stripe webhook."""

from typing import Optional

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from convertviral.core.database import get_session
from convertviral.modules.auth.jwt import get_current_user
from convertviral.modules.auth.models import User
from convertviral.modules.billing.exceptions import (
    BillingActionError,
    CheckoutSessionNotFoundError,
    CustomerNotFoundError,
    PaymentMethodNotFoundError,
    PaymentsDisabledError,
    SubscriptionNotFoundError,
)
from convertviral.modules.billing.schemas import (
    BillingDashboardResponse,
    BillingSummaryResponse,
    CheckoutCreateRequest,
    CheckoutSessionDetailResponse,
    CheckoutSessionResponse,
    InvoiceListResponse,
    PaymentMethodActionResponse,
    PaymentMethodAttachRequest,
    PaymentMethodDeleteResponse,
    PaymentMethodListResponse,
    PaymentMethodResponse,
    PaymentMethodUpdateRequest,
    SubscriptionActionResponse,
    SubscriptionListResponse,
)
from convertviral.modules.billing.service import BillingService
from convertviral.modules.billing.stripe_client import StripeClient, get_stripe_client
from convertviral.modules.billing.webhook_service import (
    StripeWebhookService,
    get_webhook_service,
)

router = APIRouter(prefix="/billing", tags=["billing"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def get_billing_service(
    session: AsyncSession = Depends(get_session),
    stripe_client: StripeClient = Depends(get_stripe_client),
) -> BillingService:
    return BillingService(session, stripe_client)


# ==================== Stripe Webhook ====================

@webhook_router.post("/stripe")
async def handle_stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    service: StripeWebhookService = Depends(get_webhook_service),
):
    """Receive a Stripe event.

    The raw body is read unparsed; the signature covers its exact bytes.
    """
    payload = await request.body()
    outcome = await service.process(payload, stripe_signature)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)


# ==================== Checkout ====================

@router.post("/checkout", response_model=CheckoutSessionResponse)
async def create_checkout_session(
    data: CheckoutCreateRequest,
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """Start a Stripe Checkout for the current user."""
    try:
        return await service.create_checkout_session(user, data)
    except PaymentsDisabledError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except stripe.InvalidRequestError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.user_message or str(e))
    except stripe.StripeError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to create checkout session: {e.user_message or e}",
        )


@router.get("/checkout/{session_id}", response_model=CheckoutSessionDetailResponse)
async def get_checkout_session(
    session_id: str,
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """Get a checkout session started by the current user."""
    try:
        return await service.get_checkout_session(user, session_id)
    except PaymentsDisabledError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except CheckoutSessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


# ==================== Subscriptions ====================

@router.get("/subscriptions", response_model=SubscriptionListResponse)
async def list_subscriptions(
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """List the current user's subscriptions."""
    return await service.list_subscriptions(user)


@router.post(
    "/subscriptions/{subscription_id}/cancel",
    response_model=SubscriptionActionResponse,
)
async def cancel_subscription(
    subscription_id: str,
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """Cancel a subscription at the end of its billing period."""
    try:
        return await service.cancel_subscription(user, subscription_id)
    except PaymentsDisabledError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except SubscriptionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except BillingActionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except stripe.StripeError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to update subscription: {e.user_message or e}",
        )


@router.post(
    "/subscriptions/{subscription_id}/reactivate",
    response_model=SubscriptionActionResponse,
)
async def reactivate_subscription(
    subscription_id: str,
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """Undo a scheduled cancellation."""
    try:
        return await service.reactivate_subscription(user, subscription_id)
    except PaymentsDisabledError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except SubscriptionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except BillingActionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except stripe.StripeError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to update subscription: {e.user_message or e}",
        )


# ==================== Invoices ====================

@router.get("/invoices", response_model=InvoiceListResponse)
async def list_invoices(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """List the current user's invoices, newest first."""
    return await service.list_invoices(user, limit=limit, offset=offset)


# ==================== Payment Methods ====================

@router.get("/payment-methods", response_model=PaymentMethodListResponse)
async def list_payment_methods(
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """List the current user's saved cards and SEPA debit mandates."""
    try:
        return await service.list_payment_methods(user)
    except PaymentsDisabledError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except stripe.StripeError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to retrieve payment methods: {e.user_message or e}",
        )


@router.post("/payment-methods", response_model=PaymentMethodResponse)
async def add_payment_method(
    data: PaymentMethodAttachRequest,
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """Save a payment method for the current user."""
    try:
        return await service.add_payment_method(user, data)
    except PaymentsDisabledError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except stripe.InvalidRequestError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.user_message or str(e))
    except stripe.StripeError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to add payment method: {e.user_message or e}",
        )


@router.patch("/payment-methods", response_model=PaymentMethodActionResponse)
async def update_payment_method(
    data: PaymentMethodUpdateRequest,
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """Set a payment method as default, update its billing details, or detach it."""
    try:
        return await service.update_payment_method(user, data)
    except PaymentsDisabledError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except (CustomerNotFoundError, PaymentMethodNotFoundError) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except BillingActionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except stripe.InvalidRequestError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.user_message or str(e))
    except stripe.StripeError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to update payment method: {e.user_message or e}",
        )


@router.delete("/payment-methods", response_model=PaymentMethodDeleteResponse)
async def delete_payment_method(
    payment_method_id: str = Query(..., min_length=1),
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """Detach a payment method from the current user."""
    try:
        return await service.delete_payment_method(user, payment_method_id)
    except PaymentsDisabledError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except (CustomerNotFoundError, PaymentMethodNotFoundError) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except BillingActionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except stripe.StripeError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to delete payment method: {e.user_message or e}",
        )


# ==================== Overview ====================

@router.get("/summary", response_model=BillingSummaryResponse)
async def get_billing_summary(
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    try:
        return await service.get_billing_summary(user)
    except PaymentsDisabledError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except stripe.StripeError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to retrieve billing summary: {e.user_message or e}",
        )


@router.get("/dashboard", response_model=BillingDashboardResponse)
async def get_billing_dashboard(
    include_invoices: bool = Query(True),
    include_payment_methods: bool = Query(True),
    invoice_limit: int = Query(10, ge=1, le=50),
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """Billing page data for the current user."""
    try:
        return await service.get_billing_dashboard(
            user,
            include_invoices=include_invoices,
            include_payment_methods=include_payment_methods,
            invoice_limit=invoice_limit,
        )
    except PaymentsDisabledError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except stripe.StripeError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to retrieve billing dashboard: {e.user_message or e}",
        )
