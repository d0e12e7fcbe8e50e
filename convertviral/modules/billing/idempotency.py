"""Redis-backed deduplication of Stripe webhook events.

Key pattern: ``webhook:processed:{event_id}``. The key holds either an
in-progress claim (short TTL) or the completion record (24h TTL):

    {"status": "processed", "processed_at": "...", "result": {...}}

If Redis is unavailable the store fails open. The processed-event ledger in
the database still rejects a duplicate inside the handler transaction.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from convertviral.core.logging import log_warning

logger = logging.getLogger(__name__)

KEY_PREFIX = "webhook:processed"

STATUS_PROCESSING = "processing"
STATUS_PROCESSED = "processed"

DEFAULT_RESULT_TTL_SECONDS = 86400
DEFAULT_CLAIM_TTL_SECONDS = 300


def event_key(event_id: str) -> str:
    return f"{KEY_PREFIX}:{event_id}"


class IdempotencyStore:
    """Tracks which webhook events are in flight or already processed."""

    def __init__(
        self,
        client: redis.Redis,
        result_ttl: int = DEFAULT_RESULT_TTL_SECONDS,
        claim_ttl: int = DEFAULT_CLAIM_TTL_SECONDS,
    ):
        self.client = client
        self.result_ttl = result_ttl
        self.claim_ttl = claim_ttl

    async def get_result(self, event_id: str) -> Optional[dict]:
        """Return the completion record for ``event_id``, or None.

        An in-progress claim is not a completion record.
        """
        try:
            raw = await self.client.get(event_key(event_id))
        except RedisError as e:
            log_warning(logger, "Idempotency lookup failed, continuing without cache",
                        event_id=event_id, error=str(e))
            return None

        if raw is None:
            return None
        try:
            record = json.loads(raw)
        except ValueError:
            log_warning(logger, "Discarding unreadable idempotency record", event_id=event_id)
            return None
        if not isinstance(record, dict) or record.get("status") != STATUS_PROCESSED:
            return None
        return record

    async def claim(self, event_id: str) -> bool:
        """Atomically mark ``event_id`` as in progress.

        Uses SET NX EX so only one concurrent delivery can own the event.

        Returns:
            True if this caller owns the event, False if another delivery
            holds the key (in progress or already processed)
        """
        marker = json.dumps({
            "status": STATUS_PROCESSING,
            "claimed_at": datetime.now(timezone.utc).isoformat(),
        })
        try:
            acquired = await self.client.set(
                event_key(event_id), marker, nx=True, ex=self.claim_ttl
            )
        except RedisError as e:
            log_warning(logger, "Idempotency claim failed, continuing without lock",
                        event_id=event_id, error=str(e))
            return True
        return bool(acquired)

    async def complete(self, event_id: str, result: Optional[dict]) -> dict:
        """Replace the claim with the completion record."""
        record = {
            "status": STATUS_PROCESSED,
            "processed_at": datetime.now(timezone.utc).isoformat(),
            "result": result,
        }
        try:
            await self.client.set(
                event_key(event_id), json.dumps(record, default=str), ex=self.result_ttl
            )
        except RedisError as e:
            log_warning(logger, "Failed to store idempotency record",
                        event_id=event_id, error=str(e))
        return record

    async def release(self, event_id: str) -> None:
        """Drop an in-progress claim so the provider's redelivery can run."""
        try:
            await self.client.delete(event_key(event_id))
        except RedisError as e:
            log_warning(logger, "Failed to release idempotency claim",
                        event_id=event_id, error=str(e))
