"""
Metered chat completions proxy (OpenAI-compatible, OpenRouter upstream).

Pre-flight: the account must have a positive balance before any upstream cost
is incurred. Non-streaming responses are charged in batch mode; streamed
responses are passed through the metering stream decorator, which dispatches
the debit to the worker.
"""
import logging
from contextlib import AsyncExitStack
from typing import Any

import httpx
from fastapi import APIRouter, Depends, Header, HTTPException, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ledger_service.api.deps import get_account_id, get_debit_dispatcher, get_model_client
from ledger_service.db.session import get_db
from ledger_service.services.ledger.errors import InsufficientBalance
from ledger_service.services.ledger.service import LedgerService
from ledger_service.services.ledger.store import LedgerStore
from ledger_service.services.metering.dispatcher import DebitDispatcher
from ledger_service.services.metering.stream import metered_stream
from ledger_service.services.metering.usage import UsageMeter
from ledger_service.services.upstream.client import ModelClient, UpstreamError, UpstreamNotConfigured
from ledger_service.utils.precision import ZERO

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["chat"])


class ChatCompletionIn(BaseModel):
    """Provider parameters other than these pass through untouched."""

    model_config = ConfigDict(extra="allow")

    model: str = Field(min_length=1)
    messages: list[dict[str, Any]] = Field(min_length=1)
    stream: bool = False


def _check_has_balance(db: Session, account_id: str) -> None:
    try:
        balance = LedgerStore(db).get_balance(account_id)
    except SQLAlchemyError:
        logger.exception("chat_balance_check_failed", extra={"account_id": account_id})
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Failed to check account balance")
    if balance <= ZERO:
        logger.info("chat_blocked_insufficient_balance", extra={"account_id": account_id, "balance": str(balance)})
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "error": "Insufficient balance. Please recharge your account to continue using the service.",
                "code": InsufficientBalance.code,
                "balance": str(balance),
            },
        )


def _upstream_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, UpstreamNotConfigured):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Model provider is not configured")
    if isinstance(exc, UpstreamError):
        code = exc.status_code if 400 <= exc.status_code < 600 else status.HTTP_502_BAD_GATEWAY
        return HTTPException(status_code=code, detail=exc.body)
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Model provider unavailable")


@router.post("/chat/completions")
async def chat_completions(
    body: ChatCompletionIn,
    account_id: str = Depends(get_account_id),
    x_title: str | None = Header(default=None),
    referer: str | None = Header(default=None),
    db: Session = Depends(get_db),
    client: ModelClient = Depends(get_model_client),
    dispatcher: DebitDispatcher = Depends(get_debit_dispatcher),
):
    await run_in_threadpool(_check_has_balance, db, account_id)
    payload = body.model_dump()
    logger.info("chat_request", extra={"account_id": account_id, "model": body.model, "mode": "stream" if body.stream else "batch"})

    if not body.stream:
        try:
            completion = await client.complete(payload, referer=referer, title=x_title)
        except (UpstreamNotConfigured, UpstreamError) as e:
            raise _upstream_http_error(e)
        except httpx.HTTPError as e:
            logger.exception("chat_upstream_failed", extra={"account_id": account_id, "model": body.model})
            raise _upstream_http_error(e)
        meter = UsageMeter(LedgerService(db))
        await run_in_threadpool(meter.charge, account_id, completion.get("model") or body.model, completion.get("usage"))
        return JSONResponse(completion)

    stack = AsyncExitStack()
    try:
        chunks = await stack.enter_async_context(client.stream(payload, referer=referer, title=x_title))
    except (UpstreamNotConfigured, UpstreamError) as e:
        await stack.aclose()
        raise _upstream_http_error(e)
    except httpx.HTTPError as e:
        await stack.aclose()
        logger.exception("chat_upstream_failed", extra={"account_id": account_id, "model": body.model})
        raise _upstream_http_error(e)

    async def _body():
        try:
            async for chunk in metered_stream(chunks, account_id, body.model, dispatcher):
                yield chunk
        finally:
            await stack.aclose()

    return StreamingResponse(
        _body(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
