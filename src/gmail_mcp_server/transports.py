"""Transport handles and the HTTP-stream / SSE adapters.

A handle is the narrow "deliver this message" capability the session
router routes responses to. The adapters translate HTTP requests into
router calls and handle deliveries back into HTTP responses or SSE events.
"""

import asyncio
import json
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional

from fastapi import FastAPI
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse

from .errors import SessionExpired
from .jsonrpc import error_response

if TYPE_CHECKING:
    from .config import Settings
    from .sessions import SessionRouter

logger = logging.getLogger(__name__)

MCP_SESSION_HEADER = "Mcp-Session-Id"

_CLOSED = object()


class TransportKind(str, Enum):
    HTTP_STREAM = "http_stream"
    SSE = "sse"


class TransportHandle:
    """Something the router can push JSON-RPC messages into."""

    kind: TransportKind

    def __init__(self):
        self.closed = False

    def deliver(self, message: dict[str, Any]) -> None:
        raise NotImplementedError

    def close(self) -> None:
        self.closed = True


class HttpStreamHandle(TransportHandle):
    """One still-open POST waiting for exactly one response."""

    kind = TransportKind.HTTP_STREAM

    def __init__(self):
        super().__init__()
        self._response: asyncio.Future = asyncio.get_running_loop().create_future()

    def deliver(self, message: dict[str, Any]) -> None:
        if not self._response.done():
            self._response.set_result(message)

    def close(self) -> None:
        super().close()
        if not self._response.done():
            self._response.cancel()

    async def wait(self) -> dict[str, Any]:
        return await self._response


class SseHandle(TransportHandle):
    """A long-lived event stream; deliveries are queued until written out."""

    kind = TransportKind.SSE

    def __init__(self):
        super().__init__()
        self._queue: asyncio.Queue = asyncio.Queue()

    def deliver(self, message: dict[str, Any]) -> None:
        if not self.closed:
            self._queue.put_nowait(message)

    def close(self) -> None:
        if not self.closed:
            super().close()
            self._queue.put_nowait(_CLOSED)

    async def next_message(self, timeout: Optional[float] = None) -> Optional[dict[str, Any]]:
        """Next queued message, or None once the stream is closed.

        Raises asyncio.TimeoutError if nothing arrives within ``timeout``.
        """
        item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if item is _CLOSED:
            return None
        return item


def format_sse(event: str, data: str) -> str:
    lines = "".join(f"data: {line}\n" for line in data.splitlines() or [""])
    return f"event: {event}\n{lines}\n"


async def sse_event_stream(
    router: "SessionRouter",
    session_id: str,
    handle: SseHandle,
    endpoint_url: str,
    keepalive_seconds: float,
) -> AsyncIterator[str]:
    """Yield the SSE wire format for one session until its handle closes."""
    try:
        yield format_sse("endpoint", endpoint_url)
        while True:
            try:
                message = await handle.next_message(timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            if message is None:
                break
            yield format_sse("message", json.dumps(message))
    finally:
        router.close_session(session_id, reason="SSE stream closed")


class TransportAdapters:
    """HTTP endpoints for both MCP transports."""

    def __init__(self, router: "SessionRouter", settings: "Settings"):
        self.router = router
        self.settings = settings

    def mount(self, app: FastAPI) -> None:
        stream_route = self.settings.http_stream_route
        app.add_api_route(stream_route, self.stream_post, methods=["POST"])
        app.add_api_route(stream_route, self.stream_delete, methods=["DELETE"])
        app.add_api_route(self.settings.sse_route(), self.sse_connect, methods=["GET"])
        app.add_api_route(self.settings.sse_post_route(), self.sse_message, methods=["POST"])

    # ------------------------------------------------------------------
    # Streamable HTTP: one request, one response
    # ------------------------------------------------------------------

    async def stream_post(self, request: Request) -> Response:
        """Handle one JSON-RPC message and answer it synchronously."""
        body = await request.body()
        handle = HttpStreamHandle()
        try:
            result = self.router.route_inbound(
                body, handle, session_id=request.headers.get(MCP_SESSION_HEADER)
            )
        except SessionExpired as e:
            handle.close()
            return JSONResponse(error_response(None, e), status_code=404)
        headers = {MCP_SESSION_HEADER: result.session_id} if result.session_id else {}

        if result.response is not None:
            handle.close()
            status = 400 if result.rejected else 200
            return JSONResponse(result.response, status_code=status, headers=headers)
        if not result.dispatched:
            handle.close()
            return Response(status_code=202, headers=headers)

        try:
            message = await handle.wait()
        finally:
            handle.close()
        return JSONResponse(message, headers=headers)

    async def stream_delete(self, request: Request) -> Response:
        session_id = request.headers.get(MCP_SESSION_HEADER)
        if not session_id or not self.router.close_session(session_id, reason="client terminated"):
            return Response(status_code=404)
        return Response(status_code=204)

    # ------------------------------------------------------------------
    # SSE: persistent push channel + companion POST endpoint
    # ------------------------------------------------------------------

    async def sse_connect(self, request: Request) -> Response:
        handle = SseHandle()
        session = self.router.open_session(handle)
        endpoint_url = f"{self.settings.sse_post_route()}?session_id={session.session_id}"
        logger.info(f"New SSE connection from {request.client}, session {session.session_id}")
        return StreamingResponse(
            sse_event_stream(
                self.router,
                session.session_id,
                handle,
                endpoint_url,
                self.settings.sse_keepalive_seconds,
            ),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    async def sse_message(self, request: Request) -> Response:
        """Accept a client message; its response arrives on the SSE stream."""
        session_id = request.query_params.get("session_id")
        if not session_id:
            return JSONResponse({"error": "session_id is required"}, status_code=400)

        body = await request.body()
        try:
            result = self.router.route_inbound(
                body,
                None,
                session_id=session_id,
                create_if_missing=False,
                transport_kind=TransportKind.SSE,
            )
        except SessionExpired as e:
            return JSONResponse(error_response(None, e), status_code=404)

        if result.rejected:
            return JSONResponse(result.response, status_code=400)
        if result.response is not None:
            self.router.push(session_id, result.response)
        return Response("Accepted", status_code=202)
