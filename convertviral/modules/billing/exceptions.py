"""Billing exceptions.

Webhook errors fall in two groups: those raised before any processing
(configuration, signature), which are answered immediately and never retried,
and processing errors raised by event handlers, which the webhook service
retries with backoff.
"""


class BillingServiceError(Exception):
    """Base exception for billing errors."""
    pass


class PaymentsDisabledError(BillingServiceError):
    """Raised when payments are switched off by feature flag."""
    pass


class StripeConfigurationError(BillingServiceError):
    """Raised when a required Stripe secret is not configured."""
    pass


class WebhookSignatureError(BillingServiceError):
    """Raised when a webhook signature or envelope cannot be verified."""
    pass


class WebhookProcessingError(BillingServiceError):
    """Base for errors raised while handling a verified event.

    These are treated as transient: the event is retried.
    """
    pass


class WebhookPayloadError(WebhookProcessingError):
    """Raised when an event lacks an identifier its handler requires."""
    pass


class SubscriptionNotFoundError(WebhookProcessingError):
    """Raised when no local subscription matches a Stripe subscription id.

    During webhook handling this usually means the events arrived out of
    order (e.g. invoice.paid before checkout.session.completed).
    """

    def __init__(self, stripe_subscription_id: str):
        self.stripe_subscription_id = stripe_subscription_id
        super().__init__(f"Subscription not found: {stripe_subscription_id}")


class UserNotFoundError(WebhookProcessingError):
    """Raised when a referenced user does not exist."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class BillingActionError(BillingServiceError):
    """Raised when a billing action is not allowed in the current state."""
    pass


class CheckoutSessionNotFoundError(BillingServiceError):
    """Raised when a checkout session is unknown or belongs to another user."""
    pass


class PaymentMethodNotFoundError(BillingServiceError):
    """Raised when a payment method is unknown or not attached to the user."""
    pass


class CustomerNotFoundError(BillingServiceError):
    """Raised when a payment method action needs a Stripe customer the user lacks."""
    pass
