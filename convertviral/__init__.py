"""ConvertViral billing backend.

Owns the Stripe billing state of the ConvertViral file-conversion product.

Modules:
    - core: Configuration, database, Redis, logging, tracing and metrics
    - modules.auth: Users and JWT bearer authentication
    - modules.billing: Checkout, subscriptions, invoices and Stripe webhook reconciliation
"""

__version__ = "0.1.0"
