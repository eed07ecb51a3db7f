"""
Model provider client (OpenRouter-compatible chat completions).

Only the transport lives here; metering is applied by the caller.
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx

from ledger_service.core.config import settings

logger = logging.getLogger(__name__)


class UpstreamNotConfigured(Exception):
    pass


class UpstreamError(Exception):
    def __init__(self, status_code: int, body: Any):
        super().__init__(f"Upstream returned {status_code}")
        self.status_code = status_code
        self.body = body


def prepare_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Ask the provider to report usage (including cost) on every call."""
    prepared = dict(payload)
    usage = dict(prepared.get("usage") or {})
    usage["include"] = True
    prepared["usage"] = usage
    if prepared.get("stream"):
        stream_options = dict(prepared.get("stream_options") or {})
        stream_options["include_usage"] = True
        prepared["stream_options"] = stream_options
    return prepared


class ModelClient:
    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.openrouter_api_key
        self.base_url = (base_url or settings.openrouter_api_url).rstrip("/")
        self.timeout = timeout or settings.upstream_timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self, referer: str | None, title: str | None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": title or settings.upstream_default_title,
        }
        if referer:
            headers["HTTP-Referer"] = referer
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def complete(
        self,
        payload: dict[str, Any],
        referer: str | None = None,
        title: str | None = None,
    ) -> dict[str, Any]:
        """Non-streaming completion; returns the decoded JSON body."""
        if not self.configured:
            raise UpstreamNotConfigured("OPENROUTER_API_KEY is not set")
        async with self._client() as client:
            resp = await client.post(
                f"{self.base_url}/chat/completions",
                json=prepare_payload({**payload, "stream": False}),
                headers=self._headers(referer, title),
            )
        if resp.status_code >= 400:
            logger.warning("upstream_error", extra={"status_code": resp.status_code, "model": payload.get("model")})
            raise UpstreamError(resp.status_code, _safe_json(resp))
        return resp.json()

    @asynccontextmanager
    async def stream(
        self,
        payload: dict[str, Any],
        referer: str | None = None,
        title: str | None = None,
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        """
        Open a streaming completion. Yields the raw SSE byte iterator; the
        connection is closed when the context exits.
        """
        if not self.configured:
            raise UpstreamNotConfigured("OPENROUTER_API_KEY is not set")
        async with self._client() as client:
            async with client.stream(
                "POST",
                f"{self.base_url}/chat/completions",
                json=prepare_payload({**payload, "stream": True}),
                headers=self._headers(referer, title),
            ) as resp:
                if resp.status_code >= 400:
                    body = await resp.aread()
                    logger.warning("upstream_error", extra={"status_code": resp.status_code, "model": payload.get("model")})
                    raise UpstreamError(resp.status_code, body.decode("utf-8", errors="replace"))
                yield resp.aiter_bytes()


def _safe_json(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text
