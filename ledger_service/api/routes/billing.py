"""
Billing API: balance, transaction history, consumption, recharges and the
Stripe webhook. Every ledger change goes through LedgerService / CreditGuard.
"""
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from ledger_service.api.deps import get_account_id, get_idempotency_store, get_payment_gateway
from ledger_service.core.config import settings
from ledger_service.db.session import get_db
from ledger_service.models.transaction import Transaction, TransactionType
from ledger_service.schemas.billing import (
    BalanceOut,
    CheckoutSessionIn,
    CheckoutSessionOut,
    ConsumeIn,
    ConsumeOut,
    PaymentIntentOut,
    PaymentStatusIn,
    PaymentStatusOut,
    RechargeIn,
    ReconcileOut,
    TransactionListOut,
    TransactionOut,
    WebhookAck,
)
from ledger_service.services.idempotency import IdempotencyStore
from ledger_service.services.ledger.errors import InsufficientBalance, InvalidAmount, LedgerUnavailable
from ledger_service.services.ledger.service import LedgerService
from ledger_service.services.ledger.store import LedgerStore, Page, TransactionFilter
from ledger_service.services.payments.service import PaymentNotFound, PaymentService, PurchaseRateLimited
from ledger_service.services.payments.stripe_gateway import (
    InvalidWebhookSignature,
    PaymentProviderError,
    StripeGateway,
)
from ledger_service.services.reconciliation.poller import ReconciliationPoller
from ledger_service.utils.precision import format_amount

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])

RETRY_AFTER_SECONDS = "1"


def ledger_http_error(exc: Exception) -> HTTPException:
    """Map ledger / payment errors to their HTTP responses."""
    if isinstance(exc, InsufficientBalance):
        return HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "error": str(exc),
                "code": exc.code,
                "balance": format_amount(exc.balance),
            },
        )
    if isinstance(exc, InvalidAmount):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"error": exc.reason, "code": exc.code})
    if isinstance(exc, LedgerUnavailable):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "Ledger temporarily unavailable, please retry", "code": exc.code},
            headers={"Retry-After": RETRY_AFTER_SECONDS},
        )
    if isinstance(exc, PurchaseRateLimited):
        return HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(exc))
    if isinstance(exc, PaymentNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    if isinstance(exc, PaymentProviderError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    raise exc


def _transaction_out(tx: Transaction) -> TransactionOut:
    return TransactionOut(
        id=tx.id,
        amount=format_amount(tx.amount),
        previous_balance=format_amount(tx.previous_balance),
        after_balance=format_amount(tx.after_balance),
        transaction_type=tx.transaction_type,
        external_reference=tx.external_reference,
        description=tx.description,
        created_at=tx.created_at,
    )


def _payment_service(db: Session, gateway: StripeGateway, store: IdempotencyStore) -> PaymentService:
    return PaymentService(db, gateway, redis_client=store.client, event_store=store)


# ---------- Ledger ----------


@router.get("/balance", response_model=BalanceOut)
def get_balance(account_id: str = Depends(get_account_id), db: Session = Depends(get_db)):
    return BalanceOut(balance=format_amount(LedgerStore(db).get_balance(account_id)))


@router.get("/transactions", response_model=TransactionListOut)
def list_transactions(
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.transactions_page_size, ge=1, le=settings.transactions_max_page_size),
    external_reference: str | None = Query(None, max_length=255),
    transaction_type: TransactionType | None = Query(None),
    account_id: str = Depends(get_account_id),
    db: Session = Depends(get_db),
):
    """Newest first."""
    rows = LedgerStore(db).list_transactions(
        account_id,
        TransactionFilter(external_reference=external_reference, transaction_type=transaction_type),
        Page(number=page, size=page_size),
    )
    return TransactionListOut(
        transactions=[_transaction_out(tx) for tx in rows],
        page=page,
        page_size=page_size,
    )


@router.post("/consume", response_model=ConsumeOut)
def consume(body: ConsumeIn, account_id: str = Depends(get_account_id), db: Session = Depends(get_db)):
    try:
        result = LedgerService(db).debit(
            account_id,
            body.amount,
            TransactionType(body.transaction_type),
            body.description,
        )
    except (InsufficientBalance, InvalidAmount, LedgerUnavailable) as e:
        raise ledger_http_error(e)
    return ConsumeOut(success=True, transaction_id=result.transaction_id, balance=format_amount(result.new_balance))


# ---------- Recharge ----------


@router.post("/payment-intents", response_model=PaymentIntentOut)
def create_payment_intent(
    body: RechargeIn,
    account_id: str = Depends(get_account_id),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    store: IdempotencyStore = Depends(get_idempotency_store),
):
    try:
        intent = _payment_service(db, gateway, store).create_payment_intent(account_id, body.amount)
    except (InvalidAmount, PurchaseRateLimited, PaymentProviderError) as e:
        raise ledger_http_error(e)
    return PaymentIntentOut(
        payment_intent_id=intent.id,
        client_secret=intent.client_secret,
        amount=format_amount(intent.amount),
        currency=intent.currency,
    )


@router.post("/checkout-sessions", response_model=CheckoutSessionOut)
def create_checkout_session(
    body: CheckoutSessionIn,
    account_id: str = Depends(get_account_id),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    store: IdempotencyStore = Depends(get_idempotency_store),
):
    try:
        session = _payment_service(db, gateway, store).create_checkout_session(
            account_id, body.amount, body.success_url, body.cancel_url
        )
    except (InvalidAmount, PurchaseRateLimited, PaymentProviderError) as e:
        raise ledger_http_error(e)
    return CheckoutSessionOut(session_id=session.id, url=session.url)


@router.post("/payments/status", response_model=PaymentStatusOut)
def check_payment_status(
    body: PaymentStatusIn,
    account_id: str = Depends(get_account_id),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    store: IdempotencyStore = Depends(get_idempotency_store),
):
    """Client-triggered equivalent of the webhook: credits a succeeded intent once."""
    try:
        result = _payment_service(db, gateway, store).check_payment_status(account_id, body.payment_intent_id)
    except (PaymentNotFound, PaymentProviderError, LedgerUnavailable) as e:
        raise ledger_http_error(e)
    return PaymentStatusOut(
        status=result.status,
        message=result.message,
        balance=format_amount(result.balance) if result.balance is not None else None,
    )


@router.get("/payments/{external_reference}/reconcile", response_model=ReconcileOut)
def reconcile_payment(
    external_reference: str,
    check_provider: bool = Query(False),
    account_id: str = Depends(get_account_id),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    store: IdempotencyStore = Depends(get_idempotency_store),
):
    """
    Wait (bounded) for a payment to show up in the ledger. Ends as `pending`
    rather than failing; the webhook completes the credit independently.
    """
    refresh = None
    if check_provider and external_reference.startswith("pi_"):
        payments = _payment_service(db, gateway, store)

        def refresh() -> None:
            payments.check_payment_status(account_id, external_reference)

    result = ReconciliationPoller(LedgerStore(db)).poll(account_id, external_reference, refresh=refresh)
    return ReconcileOut(
        status=result.status,
        attempts=result.attempts,
        balance=format_amount(result.balance) if result.balance is not None else None,
        transaction_id=result.transaction_id,
    )


# ---------- Webhook ----------


@router.post("/webhooks/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    store: IdempotencyStore = Depends(get_idempotency_store),
):
    """
    Signature failures are the only non-200 answer. After verification Stripe
    always gets 200: internal errors are logged, and the status-check and
    reconciliation paths remain available to complete the credit.
    """
    payload = await request.body()
    try:
        event = gateway.verify_webhook(payload, stripe_signature)
    except InvalidWebhookSignature as e:
        logger.warning("stripe_webhook_bad_signature", extra={"error": str(e)})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    logger.info(
        "stripe_webhook_received",
        extra={"event_id": event.get("id"), "event_type": event.get("type")},
    )
    try:
        await run_in_threadpool(_payment_service(db, gateway, store).process_webhook_event, event)
    except Exception:
        logger.exception(
            "stripe_webhook_processing_failed",
            extra={"event_id": event.get("id"), "event_type": event.get("type")},
        )
    return WebhookAck(received=True)
