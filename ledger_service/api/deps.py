"""
Request dependencies: bearer authentication and the collaborators the app
factory placed on app.state.
"""
import logging

from fastapi import Header, HTTPException, Request, status
from jose import JWTError, jwt

from ledger_service.core.config import settings
from ledger_service.services.idempotency import IdempotencyStore
from ledger_service.services.metering.dispatcher import DebitDispatcher
from ledger_service.services.payments.stripe_gateway import StripeGateway
from ledger_service.services.upstream.client import ModelClient

logger = logging.getLogger(__name__)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_account_id(authorization: str | None = Header(default=None)) -> str:
    """Account id from `Authorization: Bearer <jwt>` (`sub`, or the legacy `id` claim)."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise _unauthorized("Missing bearer token")
    if not settings.jwt_secret_key:
        logger.error("jwt_secret_not_configured")
        raise _unauthorized("Authentication is not configured")
    token = authorization.split(" ", 1)[1].strip()
    try:
        claims = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise _unauthorized("Invalid token") from None
    account_id = claims.get("sub") or claims.get("id")
    if not account_id:
        raise _unauthorized("Token has no subject")
    return str(account_id)


def get_payment_gateway(request: Request) -> StripeGateway:
    return request.app.state.payment_gateway


def get_debit_dispatcher(request: Request) -> DebitDispatcher:
    return request.app.state.debit_dispatcher


def get_model_client(request: Request) -> ModelClient:
    return request.app.state.model_client


def get_idempotency_store(request: Request) -> IdempotencyStore:
    return request.app.state.idempotency_store
