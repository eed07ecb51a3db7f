"""PaymentService: webhook routing, status checks, recharge limits, rate limit."""
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import redis

from ledger_service.models.transaction import Transaction
from ledger_service.services.idempotency import IdempotencyStore
from ledger_service.services.ledger.errors import InvalidAmount
from ledger_service.services.ledger.store import LedgerStore
from ledger_service.services.payments.service import (
    PaymentNotFound,
    PaymentService,
    PurchaseRateLimited,
    validate_recharge_amount,
)
from ledger_service.services.payments.stripe_gateway import PaymentIntentInfo


def _redis(seen=None):
    """Redis double: SET NX honours previously seen keys, INCR counts."""
    seen = set() if seen is None else seen
    counters = {}
    client = MagicMock()

    def _set(key, value, nx=False, ex=None):
        if nx and key in seen:
            return None
        seen.add(key)
        return True

    def _incr(key):
        counters[key] = counters.get(key, 0) + 1
        return counters[key]

    client.set.side_effect = _set
    client.delete.side_effect = lambda key: seen.discard(key)
    client.incr.side_effect = _incr
    return client


def _service(db, gateway=None, client=None):
    client = client or _redis()
    return PaymentService(db, gateway or MagicMock(), redis_client=client, event_store=IdempotencyStore(client))


def _event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _intent(status="succeeded", amount=Decimal("5.00"), account_id="acc", id="pi_123"):
    return PaymentIntentInfo(
        id=id,
        status=status,
        amount=amount,
        currency="usd",
        metadata={"account_id": account_id, "type": "recharge"},
    )


def _failed_rows(db):
    return db.query(Transaction).filter(Transaction.transaction_type == "RECHARGE_FAILED").all()


class TestRechargeLimits:
    def test_bounds(self):
        assert validate_recharge_amount("1") == Decimal("1.00000000")
        assert validate_recharge_amount(1000) == Decimal("1000.00000000")
        with pytest.raises(InvalidAmount):
            validate_recharge_amount("0.99")
        with pytest.raises(InvalidAmount):
            validate_recharge_amount("1000.01")


class TestWebhookEvents:
    def test_checkout_completed_credits_amount_total(self, db):
        svc = _service(db)
        session = {"id": "cs_1", "amount_total": 2500, "payment_status": "paid", "metadata": {"account_id": "acc"}}

        assert svc.process_webhook_event(_event("checkout.session.completed", session)) == "credited"
        assert LedgerStore(db).get_balance("acc") == Decimal("25.00000000")
        entry = db.query(Transaction).one()
        assert entry.external_reference == "cs_1"
        assert entry.transaction_type == "RECHARGE"

    def test_redelivered_event_is_dropped(self, db):
        svc = _service(db)
        session = {"id": "cs_1", "amount_total": 500, "metadata": {"account_id": "acc"}}
        event = _event("checkout.session.completed", session)

        svc.process_webhook_event(event)
        assert svc.process_webhook_event(event) == "duplicate_event"
        assert LedgerStore(db).get_balance("acc") == Decimal("5.00000000")

    def test_distinct_events_for_same_payment_credit_once(self, db):
        svc = _service(db)
        session = {"id": "cs_1", "amount_total": 500, "metadata": {"account_id": "acc"}}

        svc.process_webhook_event(_event("checkout.session.completed", session, "evt_1"))
        outcome = svc.process_webhook_event(_event("checkout.session.completed", session, "evt_2"))

        assert outcome == "already_processed"
        assert db.query(Transaction).count() == 1

    def test_unpaid_checkout_is_skipped(self, db):
        svc = _service(db)
        session = {"id": "cs_2", "amount_total": 500, "payment_status": "unpaid", "metadata": {"account_id": "acc"}}

        assert svc.process_webhook_event(_event("checkout.session.completed", session)) == "ignored"
        assert db.query(Transaction).count() == 0

    def test_payment_intent_succeeded_requires_recharge_metadata(self, db):
        svc = _service(db)
        other = {"id": "pi_x", "amount": 500, "metadata": {"account_id": "acc", "type": "subscription"}}
        recharge = {"id": "pi_y", "amount": 500, "metadata": {"account_id": "acc", "type": "recharge"}}

        assert svc.process_webhook_event(_event("payment_intent.succeeded", other, "evt_a")) == "ignored"
        assert svc.process_webhook_event(_event("payment_intent.succeeded", recharge, "evt_b")) == "credited"
        assert LedgerStore(db).get_balance("acc") == Decimal("5.00000000")

    def test_amount_outside_limits_logs_failure_without_credit(self, db):
        svc = _service(db)
        session = {"id": "cs_big", "amount_total": 500000, "metadata": {"account_id": "acc"}}

        assert svc.process_webhook_event(_event("checkout.session.completed", session)) == "invalid_amount"
        assert LedgerStore(db).get_balance("acc") == Decimal("0")
        [row] = _failed_rows(db)
        assert row.amount == Decimal("5000")
        assert "Maximum recharge amount" in row.description

    def test_payment_failed_is_audited(self, db):
        svc = _service(db)
        intent = {
            "id": "pi_f",
            "amount": 1000,
            "metadata": {"account_id": "acc", "type": "recharge"},
            "last_payment_error": {"message": "Your card was declined."},
        }

        assert svc.process_webhook_event(_event("payment_intent.payment_failed", intent)) == "failure_logged"
        [row] = _failed_rows(db)
        assert row.description == "Failed/Expired payment: Your card was declined."
        assert row.previous_balance == row.after_balance

    def test_checkout_expired_is_audited(self, db):
        svc = _service(db)
        session = {"id": "cs_e", "amount_total": 1000, "metadata": {"account_id": "acc"}}

        assert svc.process_webhook_event(_event("checkout.session.expired", session)) == "failure_logged"
        assert len(_failed_rows(db)) == 1

    def test_missing_account_metadata(self, db):
        svc = _service(db)
        session = {"id": "cs_n", "amount_total": 1000, "metadata": {}}

        assert svc.process_webhook_event(_event("checkout.session.completed", session)) == "missing_account"

    def test_unknown_event_type_is_ignored(self, db):
        assert _service(db).process_webhook_event(_event("customer.created", {"id": "cus_1"})) == "ignored"

    def test_processing_error_releases_event_id(self, db):
        client = _redis()
        svc = _service(db, client=client)
        svc.guard = MagicMock()
        svc.guard.credit_once.side_effect = RuntimeError("boom")
        session = {"id": "cs_1", "amount_total": 500, "metadata": {"account_id": "acc"}}

        with pytest.raises(RuntimeError):
            svc.process_webhook_event(_event("checkout.session.completed", session))

        client.delete.assert_called_once_with("idempotency:stripe_event:evt_1")


class TestCheckPaymentStatus:
    def test_succeeded_intent_is_credited_once(self, db):
        gateway = MagicMock()
        gateway.retrieve_payment_intent.return_value = _intent()
        svc = _service(db, gateway)

        first = svc.check_payment_status("acc", "pi_123")
        second = svc.check_payment_status("acc", "pi_123")

        assert first.status == "succeeded"
        assert first.balance == Decimal("5.00000000")
        assert second.status == "already_processed"
        assert gateway.retrieve_payment_intent.call_count == 1
        assert db.query(Transaction).count() == 1

    def test_pending_status_is_passed_through(self, db):
        gateway = MagicMock()
        gateway.retrieve_payment_intent.return_value = _intent(status="processing")

        result = _service(db, gateway).check_payment_status("acc", "pi_123")

        assert result.status == "processing"
        assert db.query(Transaction).count() == 0

    def test_other_accounts_intent_is_not_found(self, db):
        gateway = MagicMock()
        gateway.retrieve_payment_intent.return_value = _intent(account_id="someone-else")

        with pytest.raises(PaymentNotFound):
            _service(db, gateway).check_payment_status("acc", "pi_123")
        assert db.query(Transaction).count() == 0

    def test_webhook_then_status_check_does_not_double_credit(self, db):
        gateway = MagicMock()
        gateway.retrieve_payment_intent.return_value = _intent()
        svc = _service(db, gateway)
        intent = {"id": "pi_123", "amount": 500, "metadata": {"account_id": "acc", "type": "recharge"}}

        svc.process_webhook_event(_event("payment_intent.succeeded", intent))
        result = svc.check_payment_status("acc", "pi_123")

        assert result.status == "already_processed"
        assert LedgerStore(db).get_balance("acc") == Decimal("5.00000000")


class TestPaymentCreation:
    def test_create_payment_intent_validates_limits(self, db):
        gateway = MagicMock()
        with pytest.raises(InvalidAmount):
            _service(db, gateway).create_payment_intent("acc", "0.50")
        gateway.create_payment_intent.assert_not_called()

    def test_create_payment_intent(self, db):
        gateway = MagicMock()
        gateway.create_payment_intent.return_value = _intent(status="requires_payment_method")

        intent = _service(db, gateway).create_payment_intent("acc", "5")

        gateway.create_payment_intent.assert_called_once_with("acc", Decimal("5.00000000"))
        assert intent.id == "pi_123"

    def test_rate_limit(self, db, monkeypatch):
        from ledger_service.core.config import settings

        monkeypatch.setattr(settings, "purchase_rate_limit", 2)
        gateway = MagicMock()
        svc = _service(db, gateway)

        svc.create_checkout_session("acc", "5")
        svc.create_checkout_session("acc", "5")
        with pytest.raises(PurchaseRateLimited):
            svc.create_checkout_session("acc", "5")
        assert gateway.create_checkout_session.call_count == 2

    def test_rate_limit_fails_open(self, db):
        client = _redis()
        client.incr.side_effect = redis.ConnectionError("down")
        gateway = MagicMock()

        _service(db, gateway, client).create_checkout_session("acc", "5")

        gateway.create_checkout_session.assert_called_once()
