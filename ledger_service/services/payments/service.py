"""
PaymentService — recharge reconciliation with Stripe.

Responsibilities:
- Create PaymentIntents / Checkout Sessions (recharge limits + purchase rate limit)
- Process webhook events idempotently (event id fast path, CreditGuard, unique index)
- Synchronous payment status check used by client polling
- Audit rows for failed / expired / rejected payments
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import redis
from sqlalchemy.orm import Session

from ledger_service.core.config import settings
from ledger_service.models.transaction import TransactionType
from ledger_service.services.idempotency import IdempotencyStore
from ledger_service.services.ledger.errors import InvalidAmount
from ledger_service.services.ledger.idempotency import CreditGuard
from ledger_service.services.ledger.service import LedgerService
from ledger_service.services.payments.stripe_gateway import (
    CheckoutSessionInfo,
    PaymentIntentInfo,
    StripeGateway,
    minor_to_amount,
)
from ledger_service.utils.metrics import credits_deduplicated_total, stripe_webhook_events_total
from ledger_service.utils.precision import validate_amount

logger = logging.getLogger(__name__)

RECHARGE_METADATA_TYPE = "recharge"


class PurchaseRateLimited(Exception):
    pass


class PaymentNotFound(Exception):
    pass


@dataclass(frozen=True)
class PaymentStatusResult:
    status: str  # already_processed | succeeded | rejected | <stripe intent status>
    message: str
    balance: Decimal | None = None


def validate_recharge_amount(value: Any) -> Decimal:
    """validate_amount plus the configured recharge window (1..1000 by default)."""
    amount = validate_amount(value)
    if amount < settings.recharge_min_amount:
        raise InvalidAmount(value, f"Minimum recharge amount is ${settings.recharge_min_amount}")
    if amount > settings.recharge_max_amount:
        raise InvalidAmount(value, f"Maximum recharge amount is ${settings.recharge_max_amount}")
    return amount


class PaymentService:
    def __init__(
        self,
        db: Session,
        gateway: StripeGateway,
        redis_client: redis.Redis | None = None,
        event_store: IdempotencyStore | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.ledger = LedgerService(db)
        self.guard = CreditGuard(self.ledger)
        self._redis = redis_client or redis.Redis.from_url(settings.redis_url, decode_responses=True)
        self.event_store = event_store or IdempotencyStore(self._redis)

    # ------------------------------------------------------------------
    # Payment creation
    # ------------------------------------------------------------------

    def create_payment_intent(self, account_id: str, amount: Any) -> PaymentIntentInfo:
        value = validate_recharge_amount(amount)
        if not self._check_rate_limit(account_id):
            raise PurchaseRateLimited("Too many payment attempts. Try again later.")
        intent = self.gateway.create_payment_intent(account_id, value)
        logger.info(
            "payment_intent_created",
            extra={"account_id": account_id, "amount": str(value), "external_reference": intent.id},
        )
        return intent

    def create_checkout_session(
        self,
        account_id: str,
        amount: Any,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> CheckoutSessionInfo:
        value = validate_recharge_amount(amount)
        if not self._check_rate_limit(account_id):
            raise PurchaseRateLimited("Too many payment attempts. Try again later.")
        session = self.gateway.create_checkout_session(account_id, value, success_url, cancel_url)
        logger.info(
            "checkout_session_created",
            extra={"account_id": account_id, "amount": str(value), "external_reference": session.id},
        )
        return session

    # ------------------------------------------------------------------
    # Status check (client poll path)
    # ------------------------------------------------------------------

    def check_payment_status(self, account_id: str, payment_intent_id: str) -> PaymentStatusResult:
        """
        Same contract as the webhook, triggered by the client instead of Stripe.
        Safe to call concurrently with webhook delivery: the credit is applied once.
        """
        store = self.ledger.store
        if store.find_transaction_by_external_ref(account_id, payment_intent_id) is not None:
            credits_deduplicated_total.labels(source="precheck").inc()
            return PaymentStatusResult(
                status="already_processed",
                message="Payment has already been processed",
                balance=store.get_balance(account_id),
            )

        intent = self.gateway.retrieve_payment_intent(payment_intent_id)
        if intent.metadata.get("account_id") != account_id:
            logger.warning(
                "payment_intent_account_mismatch",
                extra={"account_id": account_id, "external_reference": payment_intent_id},
            )
            raise PaymentNotFound(payment_intent_id)

        if intent.status != "succeeded":
            return PaymentStatusResult(status=intent.status, message=f"Payment status: {intent.status}")

        outcome = self._credit_recharge(
            account_id,
            intent.amount,
            payment_intent_id,
            description=f"Recharge via Stripe payment intent {payment_intent_id}",
        )
        balance = store.get_balance(account_id)
        if outcome == "credited":
            return PaymentStatusResult(status="succeeded", message="Payment processed successfully", balance=balance)
        if outcome == "already_processed":
            return PaymentStatusResult(status="already_processed", message="Payment has already been processed", balance=balance)
        return PaymentStatusResult(status="rejected", message="Payment amount outside recharge limits", balance=balance)

    # ------------------------------------------------------------------
    # Webhook events
    # ------------------------------------------------------------------

    def process_webhook_event(self, event: dict[str, Any]) -> str:
        """
        Route a verified Stripe event. Returns the processing outcome.
        Raises only for infrastructure errors; the caller answers Stripe 200 regardless.
        """
        event_id = event.get("id") or ""
        event_type = event.get("type") or "unknown"
        if event_id and not self.event_store.check_and_set(f"stripe_event:{event_id}"):
            credits_deduplicated_total.labels(source="event_id").inc()
            stripe_webhook_events_total.labels(event_type=event_type, outcome="duplicate_event").inc()
            logger.info("stripe_event_duplicate", extra={"event_id": event_id, "event_type": event_type})
            return "duplicate_event"

        obj = (event.get("data") or {}).get("object") or {}
        handlers = {
            "checkout.session.completed": self._on_checkout_completed,
            "payment_intent.succeeded": self._on_payment_intent_succeeded,
            "payment_intent.payment_failed": self._on_payment_intent_failed,
            "checkout.session.expired": self._on_checkout_expired,
        }
        handler = handlers.get(event_type)
        try:
            if handler is None:
                outcome = "ignored"
                logger.info("stripe_event_unhandled", extra={"event_id": event_id, "event_type": event_type})
            else:
                outcome = handler(obj)
        except Exception:
            if event_id:
                self.event_store.release(f"stripe_event:{event_id}")
            stripe_webhook_events_total.labels(event_type=event_type, outcome="error").inc()
            raise

        stripe_webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()
        logger.info(
            "stripe_event_processed",
            extra={"event_id": event_id, "event_type": event_type, "outcome": outcome},
        )
        return outcome

    def _on_checkout_completed(self, session: dict[str, Any]) -> str:
        account_id = self._account_from_metadata(session)
        if account_id is None:
            return "missing_account"
        if session.get("payment_status") == "unpaid":
            # async payment methods complete later via a separate event
            return "ignored"
        return self._credit_recharge(
            account_id,
            minor_to_amount(session.get("amount_total")),
            session.get("id"),
            description=f"Recharge via Stripe checkout session: {session.get('id')}",
        )

    def _on_payment_intent_succeeded(self, intent: dict[str, Any]) -> str:
        if (intent.get("metadata") or {}).get("type") != RECHARGE_METADATA_TYPE:
            return "ignored"
        account_id = self._account_from_metadata(intent)
        if account_id is None:
            return "missing_account"
        return self._credit_recharge(
            account_id,
            minor_to_amount(intent.get("amount")),
            intent.get("id"),
            description=f"Recharge via Stripe payment intent {intent.get('id')}",
        )

    def _on_payment_intent_failed(self, intent: dict[str, Any]) -> str:
        if (intent.get("metadata") or {}).get("type") != RECHARGE_METADATA_TYPE:
            return "ignored"
        account_id = self._account_from_metadata(intent)
        if account_id is None:
            return "missing_account"
        reason = (intent.get("last_payment_error") or {}).get("message") or "Payment failed"
        self.ledger.record_failed_recharge(account_id, minor_to_amount(intent.get("amount")), intent.get("id"), reason)
        return "failure_logged"

    def _on_checkout_expired(self, session: dict[str, Any]) -> str:
        account_id = self._account_from_metadata(session)
        if account_id is None:
            return "missing_account"
        self.ledger.record_failed_recharge(
            account_id,
            minor_to_amount(session.get("amount_total")),
            session.get("id"),
            "Checkout session expired - user did not complete payment in time",
        )
        return "failure_logged"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _credit_recharge(self, account_id: str, amount: Decimal, reference: str, description: str) -> str:
        try:
            value = validate_recharge_amount(amount)
        except InvalidAmount as e:
            logger.warning(
                "recharge_amount_rejected",
                extra={"account_id": account_id, "amount": str(amount), "external_reference": reference, "error": e.reason},
            )
            self.ledger.record_failed_recharge(account_id, amount, reference, e.reason)
            return "invalid_amount"

        result = self.guard.credit_once(
            account_id,
            value,
            reference,
            TransactionType.RECHARGE,
            description=description,
        )
        return "credited" if result.applied else "already_processed"

    @staticmethod
    def _account_from_metadata(obj: dict[str, Any]) -> str | None:
        account_id = (obj.get("metadata") or {}).get("account_id")
        if not account_id:
            logger.warning("stripe_object_without_account", extra={"external_reference": obj.get("id")})
            return None
        return str(account_id)

    def _check_rate_limit(self, account_id: str) -> bool:
        """At most purchase_rate_limit payment creations per window, shared by all replicas."""
        key = f"purchase_rate:{account_id}"
        try:
            current = self._redis.incr(key)
            if current == 1:
                self._redis.expire(key, settings.purchase_rate_window_seconds)
            return current <= settings.purchase_rate_limit
        except redis.RedisError as e:
            logger.warning("purchase_rate_limit_redis_error", extra={"error": str(e)})
            return True  # fail open
