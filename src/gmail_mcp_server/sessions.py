"""Session router: correlates JSON-RPC traffic with sessions and transports.

Sessions are keyed by an opaque random id. Inbound messages are decoded,
attributed to a session and dispatched; tool calls run as background tasks
and their results are routed back through the transport handle recorded in
the session's pending-request table.

The session table is only mutated by synchronous sections with no awaits
in between, so create-if-absent and remove-if-idle are atomic on the event
loop with respect to any other inbound traffic.
"""

import asyncio
import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from mcp.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    LATEST_PROTOCOL_VERSION,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    CallToolResult,
    ErrorData,
    Implementation,
    InitializeResult,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    ListResourcesResult,
    ListResourceTemplatesResult,
    ListToolsResult,
    ServerCapabilities,
    TextContent,
    ToolsCapability,
)
from pydantic import BaseModel, ValidationError

from .errors import GmailMcpError, SessionExpired, UpstreamTimeout
from .jsonrpc import RequestId, error_response, success_response
from .metrics import ServerMetrics
from .registry import ToolRegistry, ToolSpec
from .transports import TransportHandle, TransportKind

logger = logging.getLogger(__name__)

SERVER_NAME = "gmail-mcp-server"
SERVER_VERSION = "0.1.0"


def new_session_id() -> str:
    return secrets.token_hex(16)


@dataclass
class Session:
    """A logical client connection, independent of the carrying transport."""

    session_id: str
    transport_kind: TransportKind
    transport: TransportHandle
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_seen_at: float = field(default_factory=time.monotonic)
    pending_requests: dict[RequestId, TransportHandle] = field(default_factory=dict)
    client_info: Optional[dict[str, Any]] = None

    def touch(self) -> None:
        self.last_seen_at = time.monotonic()

    def idle_for(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.monotonic()) - self.last_seen_at


@dataclass
class ToolInvocation:
    tool_name: str
    arguments: dict[str, Any]
    request_id: RequestId
    session_id: str


@dataclass
class InboundResult:
    """Outcome of routing one inbound message.

    ``response`` is an immediate reply for the adapter to deliver;
    ``dispatched`` means a tool call is running and its response will be
    routed later; ``rejected`` marks messages that could not be decoded.
    """

    session_id: Optional[str] = None
    response: Optional[dict[str, Any]] = None
    dispatched: bool = False
    rejected: bool = False


class SessionRouter:
    """Owns live sessions and routes messages between transports and tools."""

    def __init__(
        self,
        registry: ToolRegistry,
        context: Any,
        tool_timeout_seconds: float = 60.0,
        idle_timeout_seconds: float = 1800.0,
        metrics: Optional[ServerMetrics] = None,
        id_factory: Callable[[], str] = new_session_id,
        instructions: Optional[str] = None,
    ):
        self.registry = registry
        self.context = context
        self.tool_timeout_seconds = tool_timeout_seconds
        self.idle_timeout_seconds = idle_timeout_seconds
        self.metrics = metrics
        self.id_factory = id_factory
        self.instructions = instructions
        self._sessions: dict[str, Session] = {}
        self._tasks: dict[tuple[str, RequestId], asyncio.Task] = {}
        self._reaper: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Session table
    # ------------------------------------------------------------------

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def _new_session_id(self) -> str:
        while True:
            session_id = self.id_factory()
            if session_id not in self._sessions:
                return session_id
            logger.warning("Generated session id collided with a live session, retrying")

    def open_session(self, handle: TransportHandle) -> Session:
        session = Session(
            session_id=self._new_session_id(),
            transport_kind=handle.kind,
            transport=handle,
        )
        self._sessions[session.session_id] = session
        if self.metrics:
            self.metrics.active_sessions.labels(transport=handle.kind.value).inc()
        logger.info(f"Opened {handle.kind.value} session {session.session_id}")
        return session

    def close_session(self, session_id: str, reason: str = "closed") -> bool:
        """Remove a session. Returns False if it was already gone."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        self._teardown(session, SessionExpired(f"Session {reason}", session_id=session_id))
        logger.info(f"Closed session {session_id}: {reason}")
        return True

    def _teardown(self, session: Session, error: GmailMcpError) -> None:
        pending, session.pending_requests = session.pending_requests, {}
        for request_id, handle in pending.items():
            if not handle.closed:
                handle.deliver(error_response(request_id, error))
        session.transport.close()
        if self.metrics:
            self.metrics.active_sessions.labels(transport=session.transport_kind.value).dec()

    def _resolve_session(
        self,
        session_id: Optional[str],
        handle: Optional[TransportHandle],
        create_if_missing: bool,
        transport_kind: Optional[TransportKind] = None,
    ) -> Session:
        session = self._sessions.get(session_id) if session_id else None
        if session is None:
            if not create_if_missing or handle is None:
                raise SessionExpired(
                    f"Session {session_id} does not exist or has expired", session_id=session_id
                )
            return self.open_session(handle)
        expected_kind = handle.kind if handle is not None else transport_kind
        if expected_kind is not None and expected_kind != session.transport_kind:
            raise SessionExpired(
                f"Session {session_id} is bound to the {session.transport_kind.value} transport",
                session_id=session_id,
            )
        if handle is not None:
            session.transport = handle
        session.touch()
        return session

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def route_inbound(
        self,
        raw_message: Union[bytes, str, dict[str, Any]],
        handle: Optional[TransportHandle],
        session_id: Optional[str] = None,
        create_if_missing: bool = True,
        transport_kind: Optional[TransportKind] = None,
    ) -> InboundResult:
        """Decode and dispatch one inbound message.

        ``handle`` is the transport that will carry the response; pass None
        for an SSE companion POST, whose responses go to the session's open
        stream, and set ``transport_kind`` to the kind the session must have.
        Raises SessionExpired when ``create_if_missing`` is False and the
        session is unknown, or when the session uses another transport.
        """
        if isinstance(raw_message, (bytes, str)):
            try:
                payload = json.loads(raw_message)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                logger.warning(f"Rejected undecodable message: {e}")
                return InboundResult(
                    session_id=session_id,
                    response=error_response(None, ErrorData(code=PARSE_ERROR, message=f"Parse error: {e}")),
                    rejected=True,
                )
        else:
            payload = raw_message

        try:
            message = JSONRPCMessage.model_validate(payload).root
        except ValidationError:
            request_id = payload.get("id") if isinstance(payload, dict) else None
            if not isinstance(request_id, (str, int)):
                request_id = None
            return InboundResult(
                session_id=session_id,
                response=error_response(
                    request_id, ErrorData(code=INVALID_REQUEST, message="Invalid JSON-RPC message")
                ),
                rejected=True,
            )

        session = self._resolve_session(session_id, handle, create_if_missing, transport_kind)
        result = InboundResult(session_id=session.session_id)

        if isinstance(message, JSONRPCRequest):
            target = handle if handle is not None else session.transport
            result.response = self._dispatch_request(session, message, target)
            result.dispatched = result.response is None
        elif isinstance(message, JSONRPCNotification):
            if message.method == "notifications/cancelled":
                self._cancel_request(session, (message.params or {}).get("requestId"))
            else:
                logger.debug(f"Notification {message.method} on session {session.session_id}")
        # Responses and errors from the client need no reply.
        return result

    def _dispatch_request(
        self, session: Session, request: JSONRPCRequest, handle: TransportHandle
    ) -> Optional[dict[str, Any]]:
        method = request.method
        params = request.params or {}

        if method == "initialize":
            session.client_info = params.get("clientInfo")
            return success_response(request.id, self._initialize_result(params))
        if method == "ping":
            return success_response(request.id, {})
        if method == "tools/list":
            return success_response(request.id, ListToolsResult(tools=self.registry.list_tools()))
        if method == "resources/list":
            return success_response(request.id, ListResourcesResult(resources=[]))
        if method == "resources/templates/list":
            return success_response(request.id, ListResourceTemplatesResult(resourceTemplates=[]))
        if method == "resources/read":
            uri = params.get("uri")
            return error_response(
                request.id,
                ErrorData(code=INVALID_PARAMS, message=f"Resource not found: {uri}", data={"uri": uri}),
            )
        if method == "tools/call":
            return self._dispatch_tool_call(session, request, params, handle)
        return error_response(
            request.id, ErrorData(code=METHOD_NOT_FOUND, message=f"Method not found: {method}")
        )

    def _initialize_result(self, params: dict[str, Any]) -> InitializeResult:
        requested = params.get("protocolVersion")
        version = requested if requested in SUPPORTED_PROTOCOL_VERSIONS else LATEST_PROTOCOL_VERSION
        return InitializeResult(
            protocolVersion=version,
            capabilities=ServerCapabilities(tools=ToolsCapability(listChanged=False)),
            serverInfo=Implementation(name=SERVER_NAME, version=SERVER_VERSION),
            instructions=self.instructions,
        )

    def _dispatch_tool_call(
        self,
        session: Session,
        request: JSONRPCRequest,
        params: dict[str, Any],
        handle: TransportHandle,
    ) -> Optional[dict[str, Any]]:
        name = params.get("name")
        arguments = params.get("arguments") or {}
        if not isinstance(name, str) or not isinstance(arguments, dict):
            return error_response(
                request.id,
                ErrorData(code=INVALID_PARAMS, message="tools/call requires a tool name and an arguments object"),
            )

        try:
            spec, args = self.registry.validate(name, arguments)
        except GmailMcpError as e:
            logger.warning(f"Rejected call to {name}: {e.message}")
            self._count_call(name, "invalid")
            return error_response(request.id, e)

        if request.id in session.pending_requests:
            return error_response(
                request.id,
                ErrorData(code=INVALID_REQUEST, message=f"Request id {request.id!r} is already pending"),
            )

        invocation = ToolInvocation(
            tool_name=name,
            arguments=arguments,
            request_id=request.id,
            session_id=session.session_id,
        )
        session.pending_requests[request.id] = handle
        key = (session.session_id, request.id)
        task = asyncio.get_running_loop().create_task(self._run_invocation(invocation, spec, args))
        self._tasks[key] = task
        task.add_done_callback(lambda t: self._forget_task(key, t))
        return None

    def _forget_task(self, key: tuple[str, RequestId], task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

    def _cancel_request(self, session: Session, request_id: Optional[RequestId]) -> None:
        """Abandon a running tool call; no result will be routed for it."""
        if request_id is None:
            return
        handle = session.pending_requests.pop(request_id, None)
        if handle is None:
            return
        task = self._tasks.get((session.session_id, request_id))
        if task is not None:
            task.cancel()
        if handle.kind is TransportKind.HTTP_STREAM:
            # The POST that carried the call is still waiting for a body.
            handle.deliver(
                error_response(request_id, ErrorData(code=INTERNAL_ERROR, message="Request cancelled"))
            )
        logger.info(f"Cancelled request {request_id!r} on session {session.session_id}")

    async def _run_invocation(self, invocation: ToolInvocation, spec: ToolSpec, args: BaseModel) -> None:
        started = time.perf_counter()
        request_id = invocation.request_id
        try:
            result = await asyncio.wait_for(
                spec.handler(self.context, args), timeout=self.tool_timeout_seconds
            )
        except asyncio.TimeoutError:
            error = UpstreamTimeout(
                f"Tool {spec.name} did not complete within {self.tool_timeout_seconds}s",
                tool=spec.name,
            )
            logger.warning(error.message)
            message = error_response(request_id, error)
            outcome = "timeout"
        except GmailMcpError as e:
            logger.warning(f"Tool {spec.name} failed: {e.message}")
            message = error_response(request_id, e)
            outcome = "error"
        except Exception as e:
            logger.exception(f"Unexpected error in tool {spec.name}")
            message = error_response(request_id, ErrorData(code=INTERNAL_ERROR, message=str(e)))
            outcome = "error"
        else:
            message = success_response(
                request_id,
                CallToolResult(
                    content=[TextContent(type="text", text=json.dumps(result, indent=2, default=str))],
                    structuredContent=result,
                    isError=False,
                ),
            )
            outcome = "success"

        self._count_call(spec.name, outcome)
        if self.metrics:
            self.metrics.tool_call_duration.labels(tool=spec.name).observe(time.perf_counter() - started)
        self.route_outbound(invocation.session_id, message)

    def _count_call(self, tool: str, outcome: str) -> None:
        if self.metrics:
            self.metrics.tool_calls.labels(tool=tool, outcome=outcome).inc()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def route_outbound(self, session_id: str, message: dict[str, Any]) -> bool:
        """Deliver a response (by its id) or notification to its transport.

        Results for sessions or requests that no longer exist are dropped
        with a warning. Returns True if the message was handed to a transport.
        """
        session = self._sessions.get(session_id)
        if session is None:
            logger.warning(f"Discarding message for unknown or expired session {session_id}")
            return False

        request_id = message.get("id")
        if request_id is not None:
            handle = session.pending_requests.pop(request_id, None)
            if handle is None:
                logger.warning(f"Discarding response to request {request_id!r}: no longer pending")
                return False
        else:
            handle = session.transport

        if handle.closed:
            logger.warning(f"Discarding message for session {session_id}: transport closed")
            return False
        handle.deliver(message)
        session.touch()
        return True

    def push(self, session_id: str, message: dict[str, Any]) -> bool:
        """Deliver on the session's current transport binding."""
        session = self._sessions.get(session_id)
        if session is None or session.transport.closed:
            return False
        session.transport.deliver(message)
        return True

    # ------------------------------------------------------------------
    # Idle reaping and lifecycle
    # ------------------------------------------------------------------

    def reap_idle(self, now: Optional[float] = None) -> list[str]:
        """Remove sessions idle past the timeout; fail their pending requests."""
        now = now if now is not None else time.monotonic()
        expired = [
            s for s in self._sessions.values() if s.idle_for(now) > self.idle_timeout_seconds
        ]
        for session in expired:
            del self._sessions[session.session_id]
            self._teardown(
                session,
                SessionExpired(
                    f"Session expired after {self.idle_timeout_seconds}s of inactivity",
                    session_id=session.session_id,
                ),
            )
            if self.metrics:
                self.metrics.sessions_reaped.inc()
            logger.info(f"Reaped idle session {session.session_id}")
        return [s.session_id for s in expired]

    async def _reap_forever(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self.reap_idle()

    def start(self, reap_interval_seconds: float) -> None:
        if self._reaper is None:
            self._reaper = asyncio.get_running_loop().create_task(
                self._reap_forever(reap_interval_seconds)
            )

    async def stop(self) -> None:
        """Stop reaping, close every session and cancel running tool calls."""
        if self._reaper is not None:
            self._reaper.cancel()
            await asyncio.gather(self._reaper, return_exceptions=True)
            self._reaper = None
        for session_id in list(self._sessions):
            self.close_session(session_id, reason="server shutting down")
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
