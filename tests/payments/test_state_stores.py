"""Redis-backed idempotency store and circuit breaker storage."""
import time
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pybreaker
import pytest
import redis

from ledger_service.services.circuit_breaker import RedisCircuitBreakerStorage
from ledger_service.services.idempotency import IdempotencyStore


class TestIdempotencyStore:
    def test_first_and_repeat(self):
        client = MagicMock()
        client.set.side_effect = [True, None]
        store = IdempotencyStore(client, ttl_seconds=60)

        assert store.check_and_set("stripe_event:evt_1") is True
        assert store.check_and_set("stripe_event:evt_1") is False
        client.set.assert_called_with("idempotency:stripe_event:evt_1", "1", nx=True, ex=60)

    def test_fails_open(self):
        client = MagicMock()
        client.set.side_effect = redis.ConnectionError("down")
        assert IdempotencyStore(client).check_and_set("k") is True

    def test_release_swallows_redis_errors(self):
        client = MagicMock()
        client.delete.side_effect = redis.ConnectionError("down")
        IdempotencyStore(client).release("k")


class TestBreakerStorage:
    def test_defaults_to_closed(self):
        client = MagicMock()
        client.get.return_value = None
        storage = RedisCircuitBreakerStorage("stripe", client)

        assert storage.state == pybreaker.STATE_CLOSED
        assert storage.counter == 0
        assert storage.opened_at is None

    def test_opened_at_round_trips_through_isoformat(self):
        client = MagicMock()
        storage = RedisCircuitBreakerStorage("stripe", client)
        when = datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)

        storage.opened_at = when
        client.get.return_value = client.set.call_args.args[1]

        assert storage.opened_at == when

    def test_counter(self):
        client = MagicMock()
        client.get.return_value = "3"
        storage = RedisCircuitBreakerStorage("stripe", client)

        storage.increment_counter()

        client.pipeline.return_value.incr.assert_called_once_with("cb:stripe:counter")
        client.pipeline.return_value.execute.assert_called_once()
        assert storage.counter == 3

    def test_success_counter(self):
        client = MagicMock()
        client.get.return_value = "1"
        storage = RedisCircuitBreakerStorage("stripe", client)

        storage.increment_success_counter()
        storage.reset_success_counter()

        client.pipeline.return_value.incr.assert_called_once_with("cb:stripe:success_counter")
        client.delete.assert_called_once_with("cb:stripe:success_counter")
        assert storage.success_counter == 1


class _DictRedis:
    """Just enough of the redis client for breaker storage."""

    def __init__(self):
        self.data = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, ex=None):
        self.data[key] = value

    def delete(self, key):
        self.data.pop(key, None)

    def pipeline(self):
        return _DictPipeline(self)


class _DictPipeline:
    def __init__(self, client):
        self.client = client
        self.keys = []

    def incr(self, key):
        self.keys.append(key)

    def expire(self, key, seconds):
        pass

    def execute(self):
        for key in self.keys:
            self.client.data[key] = str(int(self.client.get(key) or 0) + 1)


def test_breaker_closes_again_after_a_successful_trial_call():
    breaker = pybreaker.CircuitBreaker(
        fail_max=1,
        reset_timeout=0.05,
        state_storage=RedisCircuitBreakerStorage("stripe-recovery", _DictRedis()),
    )

    def _fail():
        raise ConnectionError("stripe down")

    with pytest.raises((ConnectionError, pybreaker.CircuitBreakerError)):
        breaker.call(_fail)
    assert breaker.current_state == pybreaker.STATE_OPEN

    time.sleep(0.06)

    assert breaker.call(lambda: "ok") == "ok"
    assert breaker.current_state == pybreaker.STATE_CLOSED
