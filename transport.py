# transport.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

import httpx
import orjson

from config import APP_NAME, APP_VERSION, Settings
from errors import ApiError, TransportError

logger = logging.getLogger(__name__)


@dataclass
class BufferedResponse:
    status: int
    reason: str
    headers: httpx.Headers
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class StreamedResponse:
    """Status and headers of a live response; the body is read through ``lines()``."""

    def __init__(self, resp: httpx.Response) -> None:
        self._resp = resp
        self.status = resp.status_code
        self.reason = resp.reason_phrase
        self.headers = resp.headers

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    async def aread(self) -> bytes:
        try:
            return await self._resp.aread()
        except httpx.HTTPError as exc:
            raise TransportError(f"HTTP request failed: {exc}") from exc

    async def lines(self) -> AsyncIterator[str]:
        try:
            async for line in self._resp.aiter_lines():
                yield line
        except httpx.HTTPError as exc:
            raise TransportError(f"HTTP request failed: {exc}") from exc


def api_error_message(body: bytes) -> str:
    """Best-effort message from an ``{"error": {"message": ...}}`` envelope."""
    text = body.decode("utf-8", "replace").strip()
    try:
        data = orjson.loads(body)
    except orjson.JSONDecodeError:
        return text
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and isinstance(err.get("message"), str):
            return err["message"]
    return text


def raise_for_api_status(status: int, reason: str, body: bytes) -> None:
    if 200 <= status < 300:
        return
    detail = api_error_message(body)
    raise ApiError(f"API call failed: {status} {reason}\nDetails: {detail}")


class Transport:
    """One-shot HTTP calls against the configured endpoint (no retries)."""

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "Transport":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _headers(self, streaming: bool = False) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.settings.api_key}",
            "User-Agent": f"{APP_NAME}/{APP_VERSION}",
        }
        if streaming:
            headers["Accept"] = "text/event-stream"
        return headers

    def _content(self, payload: Optional[Dict[str, Any]]) -> Optional[bytes]:
        return orjson.dumps(payload) if payload is not None else None

    async def send_buffered(
        self,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        method: str = "POST",
    ) -> BufferedResponse:
        url = self.settings.url_for(path)
        headers = self._headers()
        content = None
        if method.upper() != "GET":
            content = self._content(payload)
            headers["Content-Type"] = "application/json"
        logger.debug("%s %s", method, url)
        try:
            resp = await self.client.request(method, url, headers=headers, content=content)
        except httpx.HTTPError as exc:
            raise TransportError(f"HTTP request failed: {exc}") from exc
        return BufferedResponse(resp.status_code, resp.reason_phrase, resp.headers, resp.content)

    @asynccontextmanager
    async def send_streamed(self, path: str, payload: Dict[str, Any]) -> AsyncIterator[StreamedResponse]:
        url = self.settings.url_for(path)
        headers = self._headers(streaming=True)
        headers["Content-Type"] = "application/json"
        logger.debug("POST %s (stream)", url)
        try:
            async with self.client.stream("POST", url, headers=headers, content=self._content(payload)) as resp:
                yield StreamedResponse(resp)
        except httpx.HTTPError as exc:
            raise TransportError(f"HTTP request failed: {exc}") from exc
