"""Stripe webhook processing.

A delivery goes through: feature flag and configuration checks, signature
verification, deduplication, then the event handler inside one database
transaction. Only that transaction is retried; verification and
deduplication run once per delivery.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from fastapi import Request
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from convertviral.core.config import settings
from convertviral.core.logging import log_error, log_info, log_warning
from convertviral.core.metrics import (
    WEBHOOK_EVENTS_TOTAL,
    WEBHOOK_PROCESSING_SECONDS,
    WEBHOOK_RETRIES_TOTAL,
)
from convertviral.core.tracing import add_span_attributes, create_span, record_exception
from convertviral.modules.billing.events import WebhookEvent, parse_event
from convertviral.modules.billing.exceptions import (
    StripeConfigurationError,
    WebhookSignatureError,
)
from convertviral.modules.billing.handlers import WebhookEventHandlers
from convertviral.modules.billing.idempotency import IdempotencyStore
from convertviral.modules.billing.repository import WebhookEventRepository
from convertviral.modules.billing.retry import RetryPolicy, Sleep, run_with_retry
from convertviral.modules.billing.stripe_client import StripeClient

logger = logging.getLogger(__name__)


@dataclass
class WebhookOutcome:
    """HTTP status and JSON body to answer the provider with."""
    status_code: int
    body: dict = field(default_factory=dict)


class StripeWebhookService:
    """Verifies, deduplicates and applies Stripe webhook deliveries."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        stripe_client: StripeClient,
        idempotency: IdempotencyStore,
        policy: Optional[RetryPolicy] = None,
        sleep: Sleep = asyncio.sleep,
        payments_enabled: bool = True,
    ):
        self.session_factory = session_factory
        self.stripe = stripe_client
        self.idempotency = idempotency
        self.policy = policy or RetryPolicy()
        self.sleep = sleep
        self.payments_enabled = payments_enabled

    async def process(self, payload: bytes, signature: Optional[str]) -> WebhookOutcome:
        """Process one webhook delivery.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header value

        Returns:
            WebhookOutcome: 200 on success or duplicate, 400 on a bad
            signature, 403 when payments are disabled, 409 while the same
            event is in flight elsewhere, 500 on missing configuration or
            once retries are exhausted
        """
        if not self.payments_enabled:
            log_warning(logger, "Webhook rejected, payments are disabled")
            return WebhookOutcome(403, {"error": "Payments are currently disabled"})

        try:
            self._check_configuration()
            event = parse_event(self.stripe.verify_webhook(payload, signature))
        except StripeConfigurationError as e:
            log_error(logger, "Stripe configuration error", error=str(e))
            return WebhookOutcome(500, {"error": "Stripe configuration is incomplete"})
        except WebhookSignatureError as e:
            log_error(logger, "Webhook signature verification failed", error=str(e))
            WEBHOOK_EVENTS_TOTAL.labels(event_type="unknown", outcome="invalid_signature").inc()
            return WebhookOutcome(400, {"error": str(e)})
        except ValidationError as e:
            log_error(logger, "Webhook envelope is malformed", error=str(e))
            WEBHOOK_EVENTS_TOTAL.labels(event_type="unknown", outcome="invalid_payload").inc()
            return WebhookOutcome(400, {"error": "Invalid webhook payload"})

        with create_span(
            "stripe.webhook.process",
            attributes={"stripe.event_id": event.id, "stripe.event_type": event.type},
        ):
            return await self._process_event(event)

    def _check_configuration(self) -> None:
        if not self.stripe.api_key:
            raise StripeConfigurationError("STRIPE_SECRET_KEY is not configured")
        if not self.stripe.webhook_secret:
            raise StripeConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")

    async def _process_event(self, event: WebhookEvent) -> WebhookOutcome:
        cached = await self.idempotency.get_result(event.id)
        if cached is not None:
            return self._duplicate(event, cached)

        if not await self.idempotency.claim(event.id):
            # The other delivery may have finished between the two reads
            cached = await self.idempotency.get_result(event.id)
            if cached is not None:
                return self._duplicate(event, cached)
            log_warning(
                logger,
                "Webhook event is already being processed",
                event_id=event.id,
                event_type=event.type,
            )
            WEBHOOK_EVENTS_TOTAL.labels(event_type=event.type, outcome="in_flight").inc()
            return WebhookOutcome(409, {"error": "Event is already being processed"})

        log_info(logger, "Webhook received", event_id=event.id, event_type=event.type)

        started = time.perf_counter()
        try:
            result = await run_with_retry(
                lambda: self._apply(event),
                self.policy,
                sleep=self.sleep,
                on_error=self._attempt_failed(event),
            )
        except Exception as e:
            await self.idempotency.release(event.id)
            WEBHOOK_EVENTS_TOTAL.labels(event_type=event.type, outcome="failed").inc()
            log_error(
                logger,
                "Webhook processing failed",
                exception=e,
                event_id=event.id,
                event_type=event.type,
                attempts=self.policy.max_attempts,
            )
            return WebhookOutcome(500, {
                "error": f"Webhook processing failed after {self.policy.max_retries} retries: {e}",
            })
        finally:
            WEBHOOK_PROCESSING_SECONDS.labels(event_type=event.type).observe(
                time.perf_counter() - started
            )

        await self.idempotency.complete(event.id, result)
        WEBHOOK_EVENTS_TOTAL.labels(event_type=event.type, outcome="processed").inc()
        log_info(
            logger,
            "Webhook processed successfully",
            event_id=event.id,
            event_type=event.type,
            result=result,
        )
        return WebhookOutcome(200, {"received": True, "result": result})

    async def _apply(self, event: WebhookEvent) -> dict:
        """One attempt: ledger check, handler and ledger insert in a transaction."""
        async with self.session_factory() as session:
            async with session.begin():
                ledger = WebhookEventRepository(session)
                entry = await ledger.get(event.id)
                if entry is not None:
                    # Applied before but the cache marker was lost
                    return entry.result or {}

                result = await WebhookEventHandlers(session, self.stripe).dispatch(event)
                await ledger.record(event.id, event.type, result)
        return result

    def _duplicate(self, event: WebhookEvent, cached: dict) -> WebhookOutcome:
        log_warning(
            logger,
            "Duplicate webhook event",
            event_id=event.id,
            event_type=event.type,
        )
        WEBHOOK_EVENTS_TOTAL.labels(event_type=event.type, outcome="duplicate").inc()
        add_span_attributes({"stripe.duplicate": True})
        return WebhookOutcome(200, {
            "received": True,
            "status": "already_processed",
            "result": cached.get("result"),
        })

    def _attempt_failed(self, event: WebhookEvent):
        async def on_error(attempt: int, error: Exception, delay: Optional[float]) -> None:
            record_exception(error, {"stripe.attempt": attempt})
            log_error(
                logger,
                "Webhook processing error",
                event_id=event.id,
                event_type=event.type,
                attempt=attempt,
                will_retry=delay is not None,
                retry_in_seconds=delay,
                error=str(error),
            )
            if delay is not None:
                WEBHOOK_RETRIES_TOTAL.labels(event_type=event.type).inc()

        return on_error


async def get_webhook_service(request: Request) -> StripeWebhookService:
    """FastAPI dependency assembling the service from application state."""
    state = request.app.state
    return StripeWebhookService(
        session_factory=state.session_factory,
        stripe_client=state.stripe_client,
        idempotency=IdempotencyStore(
            state.redis,
            result_ttl=settings.WEBHOOK_IDEMPOTENCY_TTL_SECONDS,
            claim_ttl=settings.WEBHOOK_CLAIM_TTL_SECONDS,
        ),
        policy=RetryPolicy(
            max_retries=settings.WEBHOOK_MAX_RETRIES,
            base_delay=settings.WEBHOOK_RETRY_BASE_DELAY_SECONDS,
        ),
        payments_enabled=settings.PAYMENTS_ENABLED,
    )
