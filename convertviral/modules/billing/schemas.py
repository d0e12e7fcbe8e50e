"""Pydantic schemas for the billing API."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, HttpUrl

from convertviral.modules.billing.models import CheckoutMode

PaymentMethodType = Literal["card", "sepa_debit", "giropay", "sofort"]


# ==================== Checkout Schemas ====================

class BillingAddress(BaseModel):
    """Customer billing address; Germany unless stated otherwise."""
    line1: Optional[str] = None
    line2: Optional[str] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    country: str = Field("DE", min_length=2, max_length=2, description="ISO country code")


class CheckoutCreateRequest(BaseModel):
    """Request to start a Stripe Checkout."""
    price_id: str = Field(..., min_length=1, description="Stripe price ID")
    mode: CheckoutMode = Field(CheckoutMode.SUBSCRIPTION, description="Checkout mode")
    success_url: HttpUrl
    cancel_url: HttpUrl
    coupon_id: Optional[str] = None
    trial_period_days: Optional[int] = Field(None, ge=0, le=365)
    allow_promotion_codes: bool = True
    billing_address_collection: Literal["auto", "required"] = "required"
    locale: Literal["de", "en", "auto"] = "auto"
    payment_method_types: Optional[list[PaymentMethodType]] = Field(
        None, description="Defaults to the configured payment methods"
    )
    tax_id: Optional[str] = Field(None, description="EU VAT ID for new customers")
    address: Optional[BillingAddress] = None
    metadata: dict[str, str] = Field(default_factory=dict)


class TaxInfo(BaseModel):
    """German VAT split of a gross amount in cents."""
    net_amount: int
    tax_amount: int
    gross_amount: int
    tax_rate: float


class PriceSummary(BaseModel):
    id: str
    unit_amount: int
    currency: str
    recurring_interval: Optional[str] = None


class ProductSummary(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None


class CheckoutSessionResponse(BaseModel):
    """Response after creating a checkout session."""
    session_id: str
    url: Optional[str]
    mode: str
    customer_id: Optional[str]
    payment_status: Optional[str]
    tax_info: TaxInfo
    price: PriceSummary
    product: ProductSummary
    db_session_id: uuid.UUID


class CheckoutSessionDetailResponse(BaseModel):
    """Checkout session as seen by Stripe, joined with the local record."""
    id: str
    mode: str
    status: Optional[str]
    payment_status: Optional[str]
    customer_id: Optional[str]
    customer_email: Optional[str]
    subscription_id: Optional[str]
    amount_subtotal: Optional[int]
    amount_total: Optional[int]
    currency: Optional[str]
    expires_at: Optional[datetime]
    metadata: dict[str, str]
    tax_info: Optional[TaxInfo] = None
    db_id: Optional[uuid.UUID] = None
    db_status: Optional[str] = None
    db_created_at: Optional[datetime] = None


# ==================== Subscription Schemas ====================

class SubscriptionResponse(BaseModel):
    """Response schema for subscription."""
    id: uuid.UUID
    stripe_subscription_id: str
    stripe_price_id: Optional[str]
    status: str
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    canceled_at: Optional[datetime]
    failed_payment_count: int
    last_invoice_url: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class SubscriptionListResponse(BaseModel):
    subscriptions: list[SubscriptionResponse]
    total: int


class SubscriptionActionResponse(BaseModel):
    """Result of a cancel or reactivate action."""
    stripe_subscription_id: str
    status: str
    cancel_at_period_end: bool
    current_period_end: Optional[datetime]
    message: str


# ==================== Invoice Schemas ====================

class InvoiceResponse(BaseModel):
    """Response schema for invoice."""
    id: uuid.UUID
    stripe_invoice_id: str
    subscription_id: Optional[uuid.UUID]
    status: str
    currency: str
    subtotal: int
    tax: int
    total: int
    amount_paid: int
    amount_due: int
    hosted_invoice_url: Optional[str]
    invoice_pdf: Optional[str]
    paid_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class InvoiceListResponse(BaseModel):
    invoices: list[InvoiceResponse]
    limit: int
    offset: int


# ==================== Payment Method Schemas ====================

class PaymentMethodAddress(BaseModel):
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = Field(None, min_length=2, max_length=2)


class BillingDetails(BaseModel):
    """Billing details stored on a payment method."""
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[PaymentMethodAddress] = None


class PaymentMethodAttachRequest(BaseModel):
    """Request to save a payment method collected by Stripe.js."""
    payment_method_id: str = Field(..., min_length=1, description="Stripe payment method ID")
    set_as_default: bool = False
    billing_details: Optional[BillingDetails] = None


class PaymentMethodAction(str, Enum):
    SET_DEFAULT = "set_default"
    UPDATE_BILLING = "update_billing"
    DETACH = "detach"


class PaymentMethodUpdateRequest(BaseModel):
    payment_method_id: str = Field(..., min_length=1)
    action: PaymentMethodAction
    billing_details: Optional[BillingDetails] = None


class CardDetails(BaseModel):
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    country: Optional[str] = None
    funding: Optional[str] = None


class SepaDebitDetails(BaseModel):
    last4: Optional[str] = None
    country: Optional[str] = None
    bank_code: Optional[str] = None


class PaymentMethodResponse(BaseModel):
    """A saved card or SEPA debit mandate."""
    id: str
    type: str
    card: Optional[CardDetails] = None
    sepa_debit: Optional[SepaDebitDetails] = None
    billing_details: dict[str, Any] = Field(default_factory=dict)
    created: Optional[datetime] = None
    is_default: bool = False


class SubscriptionPaymentMethod(BaseModel):
    subscription_id: str
    payment_method_id: Optional[str]
    status: str


class CustomerSummary(BaseModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    address: Optional[dict[str, Any]] = None
    tax_ids: list[str] = Field(default_factory=list)


class PaymentMethodListResponse(BaseModel):
    payment_methods: list[PaymentMethodResponse]
    default_payment_method: Optional[str] = None
    subscription_payment_methods: list[SubscriptionPaymentMethod] = Field(default_factory=list)
    customer: Optional[CustomerSummary] = None


class PaymentMethodActionResponse(BaseModel):
    payment_method: PaymentMethodResponse
    action: PaymentMethodAction


class PaymentMethodDeleteResponse(BaseModel):
    deleted_payment_method_id: str
    was_default: bool
    new_default_payment_method: Optional[str] = None


# ==================== Billing Overview Schemas ====================

class BillingSummaryResponse(BaseModel):
    """Quick billing overview for the account header."""
    has_active_subscription: bool = False
    next_billing_date: Optional[datetime] = None
    next_billing_amount: int = 0
    currency: str = "eur"
    plan: str
    is_premium: bool
    has_payment_method: bool = False
    pending_invoices: int = 0
    pending_amount: int = 0


class DashboardUser(BaseModel):
    id: uuid.UUID
    email: str
    name: Optional[str]
    is_premium: bool
    plan: str
    stripe_customer_id: Optional[str]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class BillingInfo(BaseModel):
    next_billing_date: Optional[datetime] = None
    amount_due: int = 0
    currency: str = "eur"
    tax_rate: float
    billing_address: Optional[dict[str, Any]] = None
    tax_id: Optional[str] = None


class BillingTotals(BaseModel):
    """Totals over the invoices and subscriptions shown on the dashboard."""
    total_spent: int = 0
    total_invoices: int = 0
    active_subscriptions: int = 0
    failed_payments: int = 0
    next_payment_amount: int = 0
    current_month_spending: int = 0


class BillingDashboardResponse(BaseModel):
    user: DashboardUser
    subscriptions: list[SubscriptionResponse]
    invoices: list[InvoiceResponse]
    payment_methods: list[PaymentMethodResponse]
    billing: BillingInfo
    summary: BillingTotals
