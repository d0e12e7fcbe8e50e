"""Typed Stripe webhook payloads.

Provider payloads arrive as loosely typed JSON; each handled event type is
narrowed into one of the models below before a handler touches it. Unknown
fields are ignored so newer API versions do not break parsing.
"""

from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from convertviral.modules.billing.exceptions import WebhookPayloadError


class EventType:
    """Stripe event types handled by the webhook."""
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"


def _expandable_id(value: Any) -> Any:
    """Stripe may send an expanded object where an id is expected."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def timestamp_to_datetime(value: Optional[int]) -> Optional[datetime]:
    """Convert a Unix timestamp from Stripe into an aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class EventData(BaseModel):
    object: dict[str, Any]


class WebhookEvent(BaseModel):
    """Stripe event envelope."""
    id: str
    type: str
    created: Optional[int] = None
    livemode: bool = False
    data: EventData


class CheckoutSessionObject(BaseModel):
    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    client_reference_id: Optional[str] = None
    mode: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)

    _ids = field_validator("customer", "subscription", mode="before")(_expandable_id)

    @property
    def user_id(self) -> Optional[str]:
        """User id placed in metadata when the checkout was created."""
        return self.metadata.get("userId") or self.metadata.get("user_id")


class InvoiceObject(BaseModel):
    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    parent: Optional[dict[str, Any]] = None
    payment_intent: Optional[str] = None
    payments: Optional[dict[str, Any]] = None
    status: Optional[str] = None
    currency: str = "eur"
    subtotal: int = 0
    tax: Optional[int] = None
    total_taxes: Optional[list[dict[str, Any]]] = None
    total: int = 0
    amount_paid: int = 0
    amount_due: int = 0
    hosted_invoice_url: Optional[str] = None
    invoice_pdf: Optional[str] = None
    status_transitions: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, str] = Field(default_factory=dict)

    _ids = field_validator("customer", "subscription", "payment_intent", mode="before")(
        _expandable_id
    )

    @property
    def subscription_id(self) -> Optional[str]:
        """Subscription id from the legacy field or the newer ``parent`` block."""
        if self.subscription:
            return self.subscription
        details = (self.parent or {}).get("subscription_details") or {}
        return _expandable_id(details.get("subscription"))

    @property
    def payment_intent_id(self) -> Optional[str]:
        """Payment intent from the legacy field or the newer ``payments`` list."""
        if self.payment_intent:
            return self.payment_intent
        for entry in (self.payments or {}).get("data") or []:
            intent = _expandable_id((entry.get("payment") or {}).get("payment_intent"))
            if intent:
                return intent
        return None

    @property
    def tax_amount(self) -> int:
        """Tax in cents; newer API versions only send ``total_taxes``."""
        if self.tax is not None:
            return self.tax
        return sum(entry.get("amount") or 0 for entry in self.total_taxes or [])

    @property
    def paid_at(self) -> Optional[datetime]:
        return timestamp_to_datetime(self.status_transitions.get("paid_at"))


class PriceRef(BaseModel):
    id: str


class SubscriptionItem(BaseModel):
    price: PriceRef
    current_period_end: Optional[int] = None


class SubscriptionItems(BaseModel):
    data: list[SubscriptionItem] = Field(default_factory=list)


class SubscriptionObject(BaseModel):
    id: str
    customer: Optional[str] = None
    status: str
    cancel_at_period_end: bool = False
    current_period_end: Optional[int] = None
    canceled_at: Optional[int] = None
    items: SubscriptionItems = Field(default_factory=SubscriptionItems)
    metadata: dict[str, str] = Field(default_factory=dict)

    _ids = field_validator("customer", mode="before")(_expandable_id)

    @property
    def price_id(self) -> Optional[str]:
        if self.items.data:
            return self.items.data[0].price.id
        return None

    @property
    def period_end(self) -> Optional[datetime]:
        """Period end, read from the first item on newer API versions."""
        timestamp = self.current_period_end
        if timestamp is None and self.items.data:
            timestamp = self.items.data[0].current_period_end
        return timestamp_to_datetime(timestamp)


class PaymentIntentObject(BaseModel):
    id: str
    amount: int = 0
    currency: Optional[str] = None
    status: Optional[str] = None
    invoice: Optional[str] = None
    last_payment_error: Optional[dict[str, Any]] = None

    _ids = field_validator("invoice", mode="before")(_expandable_id)

    @property
    def error_message(self) -> str:
        if self.last_payment_error and self.last_payment_error.get("message"):
            return self.last_payment_error["message"]
        return "Unknown error"


EventObject = Union[CheckoutSessionObject, InvoiceObject, SubscriptionObject, PaymentIntentObject]

EVENT_OBJECT_MODELS: dict[str, type[BaseModel]] = {
    EventType.CHECKOUT_SESSION_COMPLETED: CheckoutSessionObject,
    EventType.INVOICE_PAID: InvoiceObject,
    EventType.INVOICE_PAYMENT_FAILED: InvoiceObject,
    EventType.SUBSCRIPTION_UPDATED: SubscriptionObject,
    EventType.SUBSCRIPTION_DELETED: SubscriptionObject,
    EventType.PAYMENT_INTENT_SUCCEEDED: PaymentIntentObject,
    EventType.PAYMENT_INTENT_FAILED: PaymentIntentObject,
}


def parse_event(envelope: dict[str, Any]) -> WebhookEvent:
    """Validate the event envelope.

    Raises:
        ValidationError: If id, type or data.object is missing
    """
    return WebhookEvent.model_validate(envelope)


def parse_event_object(event: WebhookEvent) -> Optional[EventObject]:
    """Narrow ``event.data.object`` to the model for its event type.

    Returns None for event types that are not handled.

    Raises:
        WebhookPayloadError: If the object does not match its model
    """
    model = EVENT_OBJECT_MODELS.get(event.type)
    if model is None:
        return None
    try:
        return model.model_validate(event.data.object)
    except ValidationError as e:
        raise WebhookPayloadError(
            f"Malformed {event.type} payload for event {event.id}: {e.error_count()} error(s)"
        ) from e
