"""
Redis SET NX store for external event ids (Stripe event.id).

Fast path in front of CreditGuard: a redelivered webhook is dropped before it
touches the database. Fails open: without Redis the ledger unique index still
prevents double credits.
"""
import logging

import redis

from ledger_service.core.config import settings

logger = logging.getLogger(__name__)


class IdempotencyStore:
    def __init__(self, client: redis.Redis | None = None, ttl_seconds: int | None = None) -> None:
        self.client = client or redis.Redis.from_url(settings.redis_url, decode_responses=True)
        self.default_ttl = ttl_seconds if ttl_seconds is not None else settings.idempotency_ttl

    @staticmethod
    def _key(key: str) -> str:
        return f"idempotency:{key}"

    def check_and_set(self, key: str, ttl_seconds: int | None = None) -> bool:
        """Atomic setnx + expire. True = first time this key is seen."""
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl
        try:
            created = self.client.set(self._key(key), "1", nx=True, ex=ttl)
        except redis.RedisError as e:
            logger.warning("idempotency_redis_error", extra={"error": str(e)})
            return True
        return bool(created)

    def release(self, key: str) -> None:
        """Forget a key whose processing failed, so a manual resend is processed again."""
        try:
            self.client.delete(self._key(key))
        except redis.RedisError as e:
            logger.warning("idempotency_redis_error", extra={"error": str(e)})
