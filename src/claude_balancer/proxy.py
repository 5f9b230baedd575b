"""Relays /v1/messages requests to an upstream endpoint, buffered or streamed."""

import json
import logging
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

import anyio
import httpx
from fastapi.responses import Response, StreamingResponse

from .config import DEFAULT_ANTHROPIC_VERSION
from .endpoints import Endpoint

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0
PROGRESS_LOG_EVERY = 100

STREAM_MEDIA_TYPE = "text/event-stream"
STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
}


@dataclass
class RelayContext:
    """Per-request record, kept for the whole lifetime of the response."""

    endpoint: Endpoint
    stream: bool = False
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: float = field(default_factory=time.monotonic)
    response_handled: bool = False

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started_at) * 1000

    def claim_response(self) -> bool:
        """Return True the first time only; later callers must not respond."""
        if self.response_handled:
            return False
        self.response_handled = True
        return True


class RelayError(Exception):
    status_code = 500
    error_type = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict:
        return {"error": {"type": self.error_type, "message": self.message}}


class UpstreamTimeout(RelayError):
    status_code = 408
    error_type = "timeout_error"

    def __init__(self, message: str = "Request timeout"):
        super().__init__(message)


class UpstreamUnavailable(RelayError):
    """Upstream could not be reached or the connection broke without a response."""


@dataclass
class UpstreamResult:
    status_code: int
    content: bytes
    media_type: str


def describe_error(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def build_upstream_headers(endpoint: Endpoint, anthropic_version: str | None = None) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "x-api-key": endpoint.auth_token,
        "anthropic-version": anthropic_version or DEFAULT_ANTHROPIC_VERSION,
    }


def create_http_client(timeout: httpx.Timeout) -> httpx.AsyncClient:
    """One client per relayed request; nothing is pooled across requests."""
    return httpx.AsyncClient(timeout=timeout)


async def relay_message(
    ctx: RelayContext,
    body: bytes,
    anthropic_version: str | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> UpstreamResult:
    """Forward a non-streaming request and return the upstream response untouched.

    Upstream 4xx/5xx responses are results, not errors. Only a missing
    response raises: UpstreamTimeout or UpstreamUnavailable.
    """
    endpoint = ctx.endpoint
    logger.info(
        "[%s] POST %s (endpoint %d, stream=false, %d bytes)",
        ctx.request_id, endpoint.messages_url, endpoint.index + 1, len(body),
    )

    try:
        async with create_http_client(httpx.Timeout(timeout)) as client:
            # httpx limits each phase; this caps the whole exchange, body included
            with anyio.fail_after(timeout):
                resp = await client.post(
                    endpoint.messages_url,
                    headers=build_upstream_headers(endpoint, anthropic_version),
                    content=body,
                )
    except (httpx.TimeoutException, TimeoutError) as e:
        logger.error("[%s] Upstream timeout after %.0fms: %s", ctx.request_id, ctx.elapsed_ms, describe_error(e))
        raise UpstreamTimeout() from e
    except httpx.HTTPError as e:
        logger.error("[%s] Upstream request failed after %.0fms: %s", ctx.request_id, ctx.elapsed_ms, describe_error(e))
        raise UpstreamUnavailable(describe_error(e)) from e

    logger.log(
        logging.INFO if resp.is_success else logging.WARNING,
        "[%s] Upstream responded %d in %.0fms (%d bytes)",
        ctx.request_id, resp.status_code, ctx.elapsed_ms, len(resp.content),
    )
    return UpstreamResult(
        status_code=resp.status_code,
        content=resp.content,
        media_type=resp.headers.get("content-type", "application/json"),
    )


def sse_event(event: str, payload: dict) -> bytes:
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n".encode()


def error_event(error_type: str, message: str, **extra) -> bytes:
    return sse_event("error", {"type": "error", "error": {"type": error_type, "message": message, **extra}})


def stream_error_response(error: RelayError) -> Response:
    """Error reply for a stream request that failed before any headers were sent."""
    return Response(
        content=error_event(error.error_type, error.message),
        status_code=error.status_code,
        media_type=STREAM_MEDIA_TYPE,
        headers=STREAM_HEADERS,
    )


class StreamState(Enum):
    INIT = "init"
    HEADERS_SENT = "headers_sent"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset({StreamState.COMPLETED, StreamState.ABORTED})

_TRANSITIONS = {
    StreamState.INIT: {StreamState.HEADERS_SENT, StreamState.ABORTED},
    StreamState.HEADERS_SENT: {StreamState.STREAMING, StreamState.ABORTED},
    StreamState.STREAMING: {StreamState.COMPLETED, StreamState.ABORTED},
    StreamState.COMPLETED: set(),
    StreamState.ABORTED: set(),
}


class InvalidTransition(RuntimeError):
    pass


class StreamRelay:
    """Relays one upstream SSE stream to one client.

    Once the downstream headers are out, every failure is reported as an
    in-band ``event: error`` and the status code is never touched again.
    Upstream resources are released exactly once, whichever side closes first.
    """

    def __init__(
        self,
        ctx: RelayContext,
        body: bytes,
        anthropic_version: str | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        idle_timeout: float | None = None,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ):
        self.ctx = ctx
        self.state = StreamState.INIT
        self.bytes_relayed = 0
        self.chunks_relayed = 0
        self._body = body
        self._anthropic_version = anthropic_version
        self._timeout = timeout
        self._idle_timeout = idle_timeout
        self._is_disconnected = is_disconnected
        self._client: httpx.AsyncClient | None = None
        self._upstream: httpx.Response | None = None
        self._closed = False

    def _transition(self, new_state: StreamState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.name} -> {new_state.name}")
        logger.debug("[%s] Stream %s -> %s", self.ctx.request_id, self.state.name, new_state.name)
        self.state = new_state

    def response(self) -> StreamingResponse:
        return StreamingResponse(self.iter_body(), media_type=STREAM_MEDIA_TYPE, headers=STREAM_HEADERS)

    async def iter_body(self) -> AsyncIterator[bytes]:
        # Starlette has already sent the status line and headers when the
        # first chunk is pulled from this iterator.
        self._transition(StreamState.HEADERS_SENT)
        try:
            try:
                upstream = await self._open_upstream()
            except RelayError as e:
                event = self._fail(e.error_type, e.message)
                if event:
                    yield event
                return

            if not upstream.is_success:
                event = await self._fail_on_status(upstream)
                if event:
                    yield event
                return

            self._transition(StreamState.STREAMING)
            async for chunk in upstream.aiter_bytes():
                self.bytes_relayed += len(chunk)
                self.chunks_relayed += 1
                if self.chunks_relayed % PROGRESS_LOG_EVERY == 0:
                    logger.debug(
                        "[%s] Relayed %d chunks (%d bytes)",
                        self.ctx.request_id, self.chunks_relayed, self.bytes_relayed,
                    )
                yield chunk
                # Checked before the next upstream read, so nothing more is pulled for a dead client
                if self._is_disconnected is not None and await self._is_disconnected():
                    self._abort("client disconnected")
                    return

            self.ctx.claim_response()
            self._transition(StreamState.COMPLETED)
            logger.info(
                "[%s] Stream completed in %.0fms (%d chunks, %d bytes)",
                self.ctx.request_id, self.ctx.elapsed_ms, self.chunks_relayed, self.bytes_relayed,
            )
        except httpx.HTTPError as e:
            if isinstance(e, httpx.TimeoutException):
                event = self._fail("timeout_error", "Stream idle timeout")
            else:
                event = self._fail("internal_error", describe_error(e))
            if event:
                yield event
        finally:
            if self.state not in TERMINAL_STATES:
                self._abort("response stream closed")
            await self.close()

    async def _open_upstream(self) -> httpx.Response:
        endpoint = self.ctx.endpoint
        logger.info(
            "[%s] POST %s (endpoint %d, stream=true, %d bytes)",
            self.ctx.request_id, endpoint.messages_url, endpoint.index + 1, len(self._body),
        )
        # read=None: once the stream is open only the idle timeout applies
        self._client = create_http_client(httpx.Timeout(self._timeout, read=self._idle_timeout))
        request = self._client.build_request(
            "POST",
            endpoint.messages_url,
            headers=build_upstream_headers(endpoint, self._anthropic_version),
            content=self._body,
        )
        try:
            with anyio.fail_after(self._timeout):
                self._upstream = await self._client.send(request, stream=True)
        except (httpx.TimeoutException, TimeoutError) as e:
            raise UpstreamTimeout() from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(describe_error(e)) from e
        return self._upstream

    async def _fail_on_status(self, upstream: httpx.Response) -> bytes | None:
        raw = await upstream.aread()
        try:
            body = json.loads(raw)
        except ValueError:
            body = raw.decode("utf-8", errors="replace")
        return self._fail(
            "upstream_error",
            f"Upstream responded with status {upstream.status_code}",
            status=upstream.status_code,
            body=body,
        )

    def _fail(self, error_type: str, message: str, **extra) -> bytes | None:
        """Abort and return the in-band error event, or None if a response was already made."""
        logger.error(
            "[%s] Stream failed after %.0fms: %s: %s",
            self.ctx.request_id, self.ctx.elapsed_ms, error_type, message,
        )
        claimed = self.ctx.claim_response()
        self._abort(error_type)
        if not claimed:
            logger.warning("[%s] Response already handled, error not sent", self.ctx.request_id)
            return None
        return error_event(error_type, message, **extra)

    def _abort(self, reason: str) -> None:
        if self.state in TERMINAL_STATES:
            return
        self.ctx.claim_response()
        self._transition(StreamState.ABORTED)
        logger.info(
            "[%s] Stream aborted after %.0fms (%s, %d chunks, %d bytes)",
            self.ctx.request_id, self.ctx.elapsed_ms, reason, self.chunks_relayed, self.bytes_relayed,
        )

    async def close(self) -> None:
        """Release the upstream response and client. Safe to call any number of times."""
        if self._closed:
            return
        self._closed = True
        # Shielded so a cancelled response task still frees the upstream connection
        with anyio.CancelScope(shield=True):
            if self._upstream is not None:
                await self._upstream.aclose()
            if self._client is not None:
                await self._client.aclose()
