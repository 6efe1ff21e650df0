"""aiohttp transport shared by the HTTP backends.

Owns one lazily created ClientSession per backend, builds headers
(including a bearer token taken from the environment), maps HTTP and
network failures onto the error taxonomy, and turns streamed response
bodies into decoded stream events.
"""
from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
from datetime import datetime, timezone
import json
import logging
import os
from typing import Any, TypeVar

import aiohttp

from aichat.shared.models import MessageResponse

from ..errors import (
    AIClientError,
    RequestCancelledError,
    ServerError,
    TransportError,
    ValidationError,
)
from ..stream_events import StreamEvent
from .base import BackendClient, SendOptions

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Turns a raw byte stream into decoded events.
Decoder = Callable[[AsyncIterable[bytes]], AsyncIterator[StreamEvent]]


def check_signal(signal: asyncio.Event | None) -> None:
    if signal is not None and signal.is_set():
        raise RequestCancelledError()


async def abortable(coro: Awaitable[T], signal: asyncio.Event | None) -> T:
    """Await *coro*, cancelling it if *signal* is set first."""
    if signal is None:
        return await coro
    request = asyncio.ensure_future(coro)
    waiter = asyncio.ensure_future(signal.wait())
    try:
        await asyncio.wait({request, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not request.done():
            request.cancel()
    if request.done() and not request.cancelled():
        return request.result()
    await asyncio.gather(request, return_exceptions=True)
    raise RequestCancelledError()


async def _guard_chunks(
    chunks: AsyncIterable[bytes],
    signal: asyncio.Event | None,
) -> AsyncIterator[bytes]:
    async for chunk in chunks:
        check_signal(signal)
        yield chunk


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp, falling back to now (UTC)."""
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Unparseable timestamp %r, using now", value)
        else:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed
    return datetime.now(timezone.utc)


def response_object(payload: Any, context: str, required: tuple[str, ...] = ()) -> dict[str, Any]:
    """Return *payload* as a dict, raising TransportError when it is unusable.

    An empty body counts as an empty object; *required* keys must be
    present and non-empty.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise TransportError(
            f"{context}: expected a JSON object, got {type(payload).__name__}",
            data=payload,
        )
    missing = [key for key in required if not payload.get(key)]
    if missing:
        raise TransportError(
            f"{context}: response is missing {', '.join(missing)}", data=payload,
        )
    return payload


def _error_message(body: Any) -> str | None:
    if isinstance(body, str):
        return body.strip()[:500] or None
    if not isinstance(body, dict):
        return None
    detail = body.get("detail")
    if isinstance(detail, str):
        return detail
    if isinstance(detail, dict):
        for key in ("response", "cause", "message"):
            if isinstance(detail.get(key), str):
                return detail[key]
    if isinstance(detail, list) and detail and isinstance(detail[0], dict):
        msg = detail[0].get("msg")
        if msg:
            return str(msg)
    for key in ("message", "error"):
        if isinstance(body.get(key), str):
            return body[key]
    return None


class HttpBackend(BackendClient):
    """Base class for backends reached over HTTP."""

    def __init__(
        self,
        base_url: str,
        *,
        headers: dict[str, str] | None = None,
        token_env: str | None = None,
        timeout_seconds: float = 60.0,
        session: aiohttp.ClientSession | None = None,
        ignore_unknown_events: bool = False,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = dict(headers or {})
        self._token_env = token_env
        self._timeout = aiohttp.ClientTimeout(
            total=timeout_seconds if timeout_seconds > 0 else None,
        )
        self._session = session
        self._owns_session = session is None
        self._ignore_unknown_events = ignore_unknown_events

    @property
    def base_url(self) -> str:
        return self._base_url

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    def _build_headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {"Accept": "application/json", **self._headers}
        if self._token_env:
            token = os.environ.get(self._token_env)
            if token:
                headers.setdefault("Authorization", f"Bearer {token}")
            else:
                logger.debug(
                    "%s: token env %s is not set; sending without Authorization",
                    self.name, self._token_env,
                )
        if extra:
            headers.update(extra)
        return headers

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    async def _raise_for_response(self, resp: aiohttp.ClientResponse) -> None:
        text = await resp.text()
        try:
            body: Any = json.loads(text) if text else None
        except ValueError:
            body = text
        message = _error_message(body) or f"HTTP {resp.status}: {resp.reason}"
        logger.debug("%s: HTTP %d from %s: %s", self.name, resp.status, resp.url, message)

        if resp.status == 422:
            detail = body.get("detail") if isinstance(body, dict) else None
            if isinstance(detail, list) and all(isinstance(d, dict) for d in detail):
                raise ValidationError(detail)
            raise ValidationError.from_message(message)
        if resp.status >= 500:
            raise ServerError(message, status=resp.status, data=body)
        raise AIClientError(resp.status, resp.reason or "", message, body)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
        signal: asyncio.Event | None = None,
        as_text: bool = False,
    ) -> Any:
        """Make a request and return the decoded JSON (or text) body."""
        check_signal(signal)
        url = self._url(path)
        logger.debug("%s: %s %s", self.name, method, url)

        async def _do() -> Any:
            async with self._get_session().request(
                method, url, json=json_body, headers=self._build_headers(headers),
            ) as resp:
                if resp.status >= 400:
                    await self._raise_for_response(resp)
                if as_text:
                    return await resp.text()
                return await resp.json(content_type=None)

        try:
            return await abortable(_do(), signal)
        except AIClientError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise TransportError(f"Failed to make request to {url}: {exc}") from exc

    def _check_stream_response(self, resp: aiohttp.ClientResponse) -> None:
        """Hook for backends that require a particular content type."""
        return None

    async def _stream_events(
        self,
        path: str,
        decode: Decoder,
        *,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
        signal: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """POST and yield the decoded events of the streamed response.

        Lazy: no request is made until the first event is pulled.
        """
        check_signal(signal)
        url = self._url(path)
        logger.debug("%s: POST %s (stream)", self.name, url)
        try:
            async with self._get_session().post(
                url, json=json_body, headers=self._build_headers(headers),
            ) as resp:
                if resp.status >= 400:
                    await self._raise_for_response(resp)
                self._check_stream_response(resp)
                async for event in decode(_guard_chunks(resp.content.iter_any(), signal)):
                    yield event
        except AIClientError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"Stream from {url} failed: {exc}") from exc

    async def _consume_stream(
        self,
        events: AsyncIterator[StreamEvent],
        conversation_id: str,
        options: SendOptions,
    ) -> MessageResponse:
        """Hand *events* to the resolved streaming handler."""
        handler = options.handler or self.get_default_streaming_handler()
        if handler is None:
            raise ValidationError.from_message(
                "Streaming mode requires a streaming handler to be configured",
                loc=["options", "stream"],
            )
        try:
            return await handler.process(
                events,
                conversation_id=conversation_id,
                after_chunk=options.after_chunk,
            )
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

    async def shutdown(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
