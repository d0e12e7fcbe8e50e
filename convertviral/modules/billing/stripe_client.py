"""Stripe client for payment processing.

Wraps the Stripe API calls the billing module needs and converts provider
objects into plain dataclasses. The client is constructed explicitly with its
keys and passes ``api_key`` on every request; the global ``stripe.api_key`` is
never touched.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import stripe
from fastapi import Request

from convertviral.modules.billing.exceptions import (
    StripeConfigurationError,
    WebhookSignatureError,
)
from convertviral.modules.billing.tax import STRIPE_COUNTRY

DEFAULT_WEBHOOK_TOLERANCE_SECONDS = 300


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a key from a Stripe object or plain dict."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def _id_of(value: Any) -> Optional[str]:
    """Return the id of an expandable field, expanded or not."""
    if value is None or isinstance(value, str):
        return value
    return _get(value, "id")


def _to_datetime(timestamp: Optional[int]) -> Optional[datetime]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


@dataclass
class StripeSubscriptionData:
    """Data for a Stripe subscription."""
    id: str
    customer_id: Optional[str]
    status: str
    price_id: Optional[str]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool = False
    metadata: dict = field(default_factory=dict)
    price_amount: Optional[int] = None
    currency: Optional[str] = None
    default_payment_method_id: Optional[str] = None


@dataclass
class StripeInvoiceData:
    """Data for a Stripe invoice."""
    id: str
    customer_id: Optional[str]
    subscription_id: Optional[str]
    status: str
    subtotal: int
    tax: int
    total: int
    amount_paid: int
    amount_due: int
    currency: str
    hosted_invoice_url: Optional[str] = None
    invoice_pdf: Optional[str] = None
    payment_intent_id: Optional[str] = None
    paid_at: Optional[datetime] = None


@dataclass
class StripeCustomerData:
    """Data for a Stripe customer."""
    id: str
    email: Optional[str]
    name: Optional[str]
    address: Optional[dict] = None
    default_payment_method_id: Optional[str] = None
    tax_ids: list = field(default_factory=list)


@dataclass
class StripePaymentMethodData:
    """Data for a saved card or SEPA debit payment method."""
    id: str
    type: str
    customer_id: Optional[str]
    card: Optional[dict] = None
    sepa_debit: Optional[dict] = None
    billing_details: dict = field(default_factory=dict)
    created: Optional[datetime] = None


@dataclass
class StripePaymentIntentData:
    """Data for a Stripe payment intent."""
    id: str
    status: str
    amount: int
    currency: Optional[str]
    invoice_id: Optional[str] = None


@dataclass
class StripePriceData:
    """Data for a Stripe price with its product expanded."""
    id: str
    unit_amount: int
    currency: str
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    product_description: Optional[str] = None
    recurring_interval: Optional[str] = None


@dataclass
class StripeCheckoutSessionData:
    """Data for a Stripe Checkout session."""
    id: str
    url: Optional[str]
    mode: str
    status: Optional[str]
    payment_status: Optional[str]
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    subscription_id: Optional[str] = None
    amount_subtotal: Optional[int] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    expires_at: Optional[datetime] = None
    metadata: dict = field(default_factory=dict)


class StripeClient:
    """Client for Stripe API operations."""

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        webhook_tolerance: int = DEFAULT_WEBHOOK_TOLERANCE_SECONDS,
    ):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.webhook_tolerance = webhook_tolerance

    @property
    def is_configured(self) -> bool:
        """Both the API key and the webhook secret are set."""
        return bool(self.api_key and self.webhook_secret)

    # ==================== Webhook Handling ====================

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> dict:
        """Verify a webhook signature and decode the event envelope.

        Args:
            payload: Raw request body, exactly as received
            signature: Stripe-Signature header value

        Returns:
            Decoded event as a dict

        Raises:
            StripeConfigurationError: If the webhook secret is not configured
            WebhookSignatureError: If the header is missing, the signature does
                not match, the timestamp is outside tolerance, or the body is
                not a JSON object
        """
        if not self.webhook_secret:
            raise StripeConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body, signature, self.webhook_secret, self.webhook_tolerance
            )
            event = json.loads(body)
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(f"Invalid webhook signature: {e}") from e
        except (UnicodeDecodeError, ValueError) as e:
            raise WebhookSignatureError(f"Invalid webhook payload: {e}") from e

        if not isinstance(event, dict):
            raise WebhookSignatureError("Invalid webhook payload: expected a JSON object")
        return event

    # ==================== Customer Management ====================

    async def create_customer(
        self,
        email: str,
        name: Optional[str] = None,
        address: Optional[dict] = None,
        tax_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> str:
        """Create a customer with German tax settings.

        Args:
            email: Customer email
            name: Customer name
            address: Billing address, defaults to country DE
            tax_id: EU VAT id, attached as ``eu_vat`` tax id
            metadata: Additional metadata (e.g. userId)

        Returns:
            Stripe customer ID
        """
        params: dict[str, Any] = {
            "email": email,
            "address": address or {"country": STRIPE_COUNTRY},
            "metadata": {"country": STRIPE_COUNTRY, "tax_exempt": "none", **(metadata or {})},
            "tax": {"validate_location": "immediately"},
        }
        if name:
            params["name"] = name
        if tax_id:
            params["tax_id_data"] = [{"type": "eu_vat", "value": tax_id}]

        customer = await stripe.Customer.create_async(api_key=self.api_key, **params)
        return customer["id"]

    async def retrieve_customer(self, customer_id: str) -> StripeCustomerData:
        customer = await stripe.Customer.retrieve_async(
            customer_id, api_key=self.api_key, expand=["tax_ids"]
        )
        return StripeCustomerData(
            id=_get(customer, "id"),
            email=_get(customer, "email"),
            name=_get(customer, "name"),
            address=dict(_get(customer, "address", {})) or None,
            default_payment_method_id=_id_of(
                _get(_get(customer, "invoice_settings"), "default_payment_method")
            ),
            tax_ids=[
                _get(tax_id, "value")
                for tax_id in _get(_get(customer, "tax_ids"), "data", [])
            ],
        )

    async def set_default_payment_method(
        self, customer_id: str, payment_method_id: Optional[str]
    ) -> None:
        """Set the customer's invoice default; None clears it."""
        await stripe.Customer.modify_async(
            customer_id,
            api_key=self.api_key,
            invoice_settings={"default_payment_method": payment_method_id or ""},
        )

    # ==================== Payment Methods ====================

    async def list_payment_methods(
        self,
        customer_id: str,
        method_type: str,
        limit: Optional[int] = None,
    ) -> list[StripePaymentMethodData]:
        params: dict[str, Any] = {"customer": customer_id, "type": method_type}
        if limit is not None:
            params["limit"] = limit
        result = await stripe.PaymentMethod.list_async(api_key=self.api_key, **params)
        return [self._payment_method_to_data(pm) for pm in _get(result, "data", [])]

    async def retrieve_payment_method(
        self, payment_method_id: str
    ) -> Optional[StripePaymentMethodData]:
        """Get a payment method, or None if Stripe does not know it."""
        try:
            payment_method = await stripe.PaymentMethod.retrieve_async(
                payment_method_id, api_key=self.api_key
            )
        except stripe.InvalidRequestError:
            return None
        return self._payment_method_to_data(payment_method)

    async def attach_payment_method(
        self, payment_method_id: str, customer_id: str
    ) -> StripePaymentMethodData:
        payment_method = await stripe.PaymentMethod.attach_async(
            payment_method_id, api_key=self.api_key, customer=customer_id
        )
        return self._payment_method_to_data(payment_method)

    async def update_payment_method_billing(
        self, payment_method_id: str, billing_details: dict
    ) -> StripePaymentMethodData:
        payment_method = await stripe.PaymentMethod.modify_async(
            payment_method_id, api_key=self.api_key, billing_details=billing_details
        )
        return self._payment_method_to_data(payment_method)

    async def detach_payment_method(self, payment_method_id: str) -> StripePaymentMethodData:
        payment_method = await stripe.PaymentMethod.detach_async(
            payment_method_id, api_key=self.api_key
        )
        return self._payment_method_to_data(payment_method)

    def _payment_method_to_data(self, pm: Any) -> StripePaymentMethodData:
        card = _get(pm, "card")
        sepa = _get(pm, "sepa_debit")
        return StripePaymentMethodData(
            id=_get(pm, "id"),
            type=_get(pm, "type"),
            customer_id=_id_of(_get(pm, "customer")),
            card={
                "brand": _get(card, "brand"),
                "last4": _get(card, "last4"),
                "exp_month": _get(card, "exp_month"),
                "exp_year": _get(card, "exp_year"),
                "country": _get(card, "country"),
                "funding": _get(card, "funding"),
            } if card else None,
            sepa_debit={
                "last4": _get(sepa, "last4"),
                "country": _get(sepa, "country"),
                "bank_code": _get(sepa, "bank_code"),
            } if sepa else None,
            billing_details=dict(_get(pm, "billing_details", {})),
            created=_to_datetime(_get(pm, "created")),
        )

    # ==================== Subscription Management ====================

    async def retrieve_subscription(self, subscription_id: str) -> StripeSubscriptionData:
        subscription = await stripe.Subscription.retrieve_async(
            subscription_id, api_key=self.api_key
        )
        return self._subscription_to_data(subscription)

    async def set_cancel_at_period_end(
        self, subscription_id: str, cancel_at_period_end: bool
    ) -> StripeSubscriptionData:
        """Schedule (or unschedule) cancellation at the end of the period."""
        subscription = await stripe.Subscription.modify_async(
            subscription_id,
            api_key=self.api_key,
            cancel_at_period_end=cancel_at_period_end,
        )
        return self._subscription_to_data(subscription)

    def _subscription_to_data(self, sub: Any) -> StripeSubscriptionData:
        """Convert a Stripe subscription to StripeSubscriptionData.

        Newer API versions moved ``current_period_end`` onto the subscription
        items, so the first item is used when the top-level field is absent.
        """
        items = _get(_get(sub, "items"), "data", [])
        first_item = items[0] if items else None
        price = _get(first_item, "price")
        period_end = _get(sub, "current_period_end") or _get(first_item, "current_period_end")
        return StripeSubscriptionData(
            id=_get(sub, "id"),
            customer_id=_id_of(_get(sub, "customer")),
            status=_get(sub, "status"),
            price_id=_get(price, "id"),
            current_period_end=_to_datetime(period_end),
            cancel_at_period_end=bool(_get(sub, "cancel_at_period_end", False)),
            metadata=dict(_get(sub, "metadata", {})),
            price_amount=_get(price, "unit_amount"),
            currency=_get(price, "currency"),
            default_payment_method_id=_id_of(_get(sub, "default_payment_method")),
        )

    async def list_subscriptions(
        self,
        customer_id: str,
        status: str = "active",
        limit: Optional[int] = None,
    ) -> list[StripeSubscriptionData]:
        """List a customer's subscriptions with the given status."""
        params: dict[str, Any] = {"customer": customer_id, "status": status}
        if limit is not None:
            params["limit"] = limit
        result = await stripe.Subscription.list_async(api_key=self.api_key, **params)
        return [self._subscription_to_data(s) for s in _get(result, "data", [])]

    async def set_subscription_payment_method(
        self, subscription_id: str, payment_method_id: str
    ) -> StripeSubscriptionData:
        subscription = await stripe.Subscription.modify_async(
            subscription_id,
            api_key=self.api_key,
            default_payment_method=payment_method_id,
        )
        return self._subscription_to_data(subscription)

    # ==================== Invoice Management ====================

    async def retrieve_invoice(self, invoice_id: str) -> StripeInvoiceData:
        invoice = await stripe.Invoice.retrieve_async(invoice_id, api_key=self.api_key)
        return self._invoice_to_data(invoice)

    async def list_invoices(
        self,
        customer_id: str,
        status: Optional[str] = None,
        limit: int = 10,
    ) -> list[StripeInvoiceData]:
        params: dict[str, Any] = {"customer": customer_id, "limit": limit}
        if status is not None:
            params["status"] = status
        result = await stripe.Invoice.list_async(api_key=self.api_key, **params)
        return [self._invoice_to_data(inv) for inv in _get(result, "data", [])]

    def _invoice_to_data(self, inv: Any) -> StripeInvoiceData:
        """Convert a Stripe invoice to StripeInvoiceData."""
        subscription_id = _id_of(_get(inv, "subscription"))
        if subscription_id is None:
            details = _get(_get(inv, "parent"), "subscription_details")
            subscription_id = _id_of(_get(details, "subscription"))

        payment_intent_id = _id_of(_get(inv, "payment_intent"))
        if payment_intent_id is None:
            payments = _get(_get(inv, "payments"), "data", [])
            if payments:
                payment_intent_id = _id_of(_get(_get(payments[0], "payment"), "payment_intent"))

        tax = _get(inv, "tax")
        if tax is None:
            tax = sum(_get(t, "amount", 0) for t in _get(inv, "total_taxes", []))

        return StripeInvoiceData(
            id=_get(inv, "id"),
            customer_id=_id_of(_get(inv, "customer")),
            subscription_id=subscription_id,
            status=_get(inv, "status", "draft"),
            subtotal=_get(inv, "subtotal", 0),
            tax=tax,
            total=_get(inv, "total", 0),
            amount_paid=_get(inv, "amount_paid", 0),
            amount_due=_get(inv, "amount_due", 0),
            currency=_get(inv, "currency", "eur"),
            hosted_invoice_url=_get(inv, "hosted_invoice_url"),
            invoice_pdf=_get(inv, "invoice_pdf"),
            payment_intent_id=payment_intent_id,
            paid_at=_to_datetime(_get(_get(inv, "status_transitions"), "paid_at")),
        )

    # ==================== Payment Intents ====================

    async def retrieve_payment_intent(self, payment_intent_id: str) -> StripePaymentIntentData:
        intent = await stripe.PaymentIntent.retrieve_async(
            payment_intent_id, api_key=self.api_key
        )
        return self._payment_intent_to_data(intent)

    async def confirm_payment_intent(self, payment_intent_id: str) -> StripePaymentIntentData:
        """Re-attempt a payment intent with its current payment method."""
        intent = await stripe.PaymentIntent.confirm_async(
            payment_intent_id, api_key=self.api_key
        )
        return self._payment_intent_to_data(intent)

    def _payment_intent_to_data(self, intent: Any) -> StripePaymentIntentData:
        return StripePaymentIntentData(
            id=_get(intent, "id"),
            status=_get(intent, "status"),
            amount=_get(intent, "amount", 0),
            currency=_get(intent, "currency"),
            invoice_id=_id_of(_get(intent, "invoice")),
        )

    # ==================== Prices ====================

    async def retrieve_price(self, price_id: str) -> StripePriceData:
        price = await stripe.Price.retrieve_async(
            price_id, api_key=self.api_key, expand=["product"]
        )
        product = _get(price, "product")
        expanded = product is not None and not isinstance(product, str)
        return StripePriceData(
            id=_get(price, "id"),
            unit_amount=_get(price, "unit_amount", 0),
            currency=_get(price, "currency", "eur"),
            product_id=_id_of(product),
            product_name=_get(product, "name") if expanded else None,
            product_description=_get(product, "description") if expanded else None,
            recurring_interval=_get(_get(price, "recurring"), "interval"),
        )

    # ==================== Checkout Session ====================

    async def create_checkout_session(self, params: dict) -> StripeCheckoutSessionData:
        """Create a Stripe Checkout session from prepared parameters."""
        session = await stripe.checkout.Session.create_async(api_key=self.api_key, **params)
        return self._checkout_session_to_data(session)

    async def retrieve_checkout_session(self, session_id: str) -> Optional[StripeCheckoutSessionData]:
        """Get a checkout session by ID, or None if Stripe does not know it."""
        try:
            session = await stripe.checkout.Session.retrieve_async(
                session_id, api_key=self.api_key
            )
        except stripe.InvalidRequestError:
            return None
        return self._checkout_session_to_data(session)

    def _checkout_session_to_data(self, session: Any) -> StripeCheckoutSessionData:
        return StripeCheckoutSessionData(
            id=_get(session, "id"),
            url=_get(session, "url"),
            mode=_get(session, "mode", "subscription"),
            status=_get(session, "status"),
            payment_status=_get(session, "payment_status"),
            customer_id=_id_of(_get(session, "customer")),
            customer_email=_get(_get(session, "customer_details"), "email"),
            subscription_id=_id_of(_get(session, "subscription")),
            amount_subtotal=_get(session, "amount_subtotal"),
            amount_total=_get(session, "amount_total"),
            currency=_get(session, "currency"),
            expires_at=_to_datetime(_get(session, "expires_at")),
            metadata=dict(_get(session, "metadata", {})),
        )


async def get_stripe_client(request: Request) -> StripeClient:
    """FastAPI dependency returning the client built at startup."""
    return request.app.state.stripe_client
