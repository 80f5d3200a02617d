import json
import uuid
import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from datetime import datetime, timezone

from fastapi import Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import ValidationError

from config import Config
from data_client import DataAccessError, RecordAccessor
from database import Database
from models import MCPRequest, MCPServerInfo, MCPToolCallParams, MCPToolCallResult, MCPContentItem, TokenIdentity
from tools import ToolRegistry, build_tool_registry

logger = logging.getLogger(__name__)

SUPPORTED_PROTOCOL_VERSIONS = ["2025-06-18", "2025-03-26", "2024-11-05"]
SESSION_HEADER = "Mcp-Session-Id"

# JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
NO_VALID_SESSION = -32000
SESSION_NOT_FOUND = -32001


def jsonrpc_error(msg_id: Optional[Union[str, int]], code: int, message: str, data: Optional[str] = None) -> Dict[str, Any]:
    """Create a JSON-RPC error response"""
    error = {
        "code": code,
        "message": message
    }
    if data:
        error["data"] = data

    return {
        "jsonrpc": "2.0",
        "id": msg_id,
        "error": error
    }


def jsonrpc_result(msg_id: Optional[Union[str, int]], result: Any) -> Dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": msg_id,
        "result": result
    }


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    CLOSED = "closed"


class MCPSession:
    """
    One long-lived MCP connection bound to an authenticated user.

    Messages are handled one at a time under the session lock, so a client
    sees its requests processed in the order they arrived. Server-to-client
    messages are queued and delivered over the session's SSE stream.
    """

    def __init__(self, session_id: str, user_id: int, tools: ToolRegistry, config: Config):
        self.session_id = session_id
        self.user_id = user_id
        self.tools = tools
        self.config = config
        self.state = SessionState.UNINITIALIZED
        self.client_ready = False
        self.client_info: Dict[str, Any] = {}
        self.protocol_version = config.mcp_protocol_version
        self.created_at = time.time()
        self.last_seen = self.created_at
        self.streaming = False
        self._lock = asyncio.Lock()
        self._outbound: asyncio.Queue = asyncio.Queue()
        self._closed = asyncio.Event()
        self._close_callbacks: List[Callable[["MCPSession"], Awaitable[None]]] = []

    @property
    def closed(self) -> bool:
        return self.state == SessionState.CLOSED

    def on_close(self, callback: Callable[["MCPSession"], Awaitable[None]]):
        self._close_callbacks.append(callback)

    async def close(self, reason: str = "closed by client"):
        """Close the session and run its close callbacks; later calls do nothing"""
        if self.closed:
            return
        self.state = SessionState.CLOSED
        self.notify("notifications/message", {"level": "info", "logger": "session", "data": f"Session {reason}"})
        self._closed.set()
        logger.info(f"Session {self.session_id} for user {self.user_id} {reason}")

        for callback in self._close_callbacks:
            try:
                await callback(self)
            except Exception as e:
                logger.error(f"Error in close callback for session {self.session_id}: {e}")

    def notify(self, method: str, params: Optional[Dict[str, Any]] = None):
        """Queue a server-to-client notification for the SSE stream"""
        message = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        self._outbound.put_nowait(message)

    async def handle_messages(self, messages: List[Dict[str, Any]], identity: TokenIdentity) -> List[Dict[str, Any]]:
        """Process a batch in order; returns responses for the requests that carried an id"""
        async with self._lock:
            self.last_seen = time.time()
            responses = []
            for message in messages:
                response = await self._handle_jsonrpc_message(message, identity)
                if response is not None:
                    responses.append(response)
            return responses

    async def _handle_jsonrpc_message(self, message: Dict[str, Any], identity: TokenIdentity) -> Optional[Dict[str, Any]]:
        if self.closed:
            return jsonrpc_error(message.get("id"), SESSION_NOT_FOUND, "Session not found")

        # Responses to server-initiated requests carry no method
        if "method" not in message:
            return None

        try:
            request = MCPRequest(**message)
        except ValidationError as e:
            return jsonrpc_error(message.get("id"), INVALID_REQUEST, "Invalid Request", str(e.errors()[0]["msg"]))

        handlers = {
            "initialize": self._handle_initialize,
            "notifications/initialized": self._handle_initialized,
            "ping": self._handle_ping,
            "tools/list": self._handle_tools_list,
            "tools/call": self._handle_tools_call,
            "resources/list": self._handle_resources_list,
            "prompts/list": self._handle_prompts_list,
        }
        handler = handlers.get(request.method)

        if handler is None:
            if request.is_notification:
                return None
            return jsonrpc_error(request.id, METHOD_NOT_FOUND, "Method not found", f"Unknown method: {request.method}")

        if self.state == SessionState.UNINITIALIZED and request.method not in ("initialize", "ping"):
            return jsonrpc_error(request.id, INVALID_REQUEST, "Invalid Request", "Session not initialized")

        try:
            result = await handler(request.params or {}, identity)
        except Exception as e:
            logger.error(f"Error in {request.method} for session {self.session_id}: {e}")
            result = jsonrpc_error(request.id, INTERNAL_ERROR, "Internal error")
            return None if request.is_notification else result

        if request.is_notification:
            return None
        if isinstance(result, dict) and "error" in result and "jsonrpc" in result:
            result["id"] = request.id
            return result
        return jsonrpc_result(request.id, result)

    async def _handle_initialize(self, params: Dict[str, Any], identity: TokenIdentity) -> Dict[str, Any]:
        """Handle initialize method"""
        if self.state != SessionState.UNINITIALIZED:
            return jsonrpc_error(None, INVALID_REQUEST, "Invalid Request", "Server already initialized")

        requested = params.get("protocolVersion")
        self.protocol_version = requested if requested in SUPPORTED_PROTOCOL_VERSIONS else self.config.mcp_protocol_version
        self.client_info = params.get("clientInfo") or {}
        self.state = SessionState.ACTIVE

        logger.info(
            f"Session {self.session_id} initialized for user {self.user_id} "
            f"(client={self.client_info.get('name', 'unknown')}, protocol={self.protocol_version})"
        )

        return {
            "protocolVersion": self.protocol_version,
            "capabilities": {
                "tools": {"listChanged": False},
                "resources": {},
                "prompts": {},
                "logging": {}
            },
            "serverInfo": MCPServerInfo(name=self.config.mcp_server_name, version=self.config.mcp_server_version).model_dump(),
            "instructions": (
                f"This server provides database access to the models {', '.join(sorted({t.name.split('_')[0] for t in self.tools.tools()}))}. "
                f"The current user id is '{self.user_id}'. When creating records, use only the fields in each tool's input schema."
            )
        }

    async def _handle_initialized(self, params: Dict[str, Any], identity: TokenIdentity) -> None:
        self.client_ready = True

    async def _handle_ping(self, params: Dict[str, Any], identity: TokenIdentity) -> Dict[str, Any]:
        """Handle ping method"""
        return {}

    async def _handle_tools_list(self, params: Dict[str, Any], identity: TokenIdentity) -> Dict[str, Any]:
        """Handle tools/list method"""
        if not identity.has_scope("read"):
            return jsonrpc_error(None, INTERNAL_ERROR, "Insufficient permissions", "read scope required")

        tools = [tool for tool in self.tools.tools() if not tool.write or identity.has_scope("write")]
        return {"tools": [tool.definition().model_dump() for tool in tools]}

    async def _handle_tools_call(self, params: Dict[str, Any], identity: TokenIdentity) -> Dict[str, Any]:
        """Handle tools/call method"""
        try:
            call = MCPToolCallParams(**params)
        except ValidationError:
            return jsonrpc_error(None, INVALID_PARAMS, "Invalid params", "Tool name is required")

        tool = self.tools.get(call.name)
        if tool is None:
            return jsonrpc_error(None, METHOD_NOT_FOUND, "Tool not found", f"Tool '{call.name}' not found")

        required_scope = "write" if tool.write else "read"
        if not identity.has_scope(required_scope):
            return jsonrpc_error(None, INTERNAL_ERROR, "Insufficient permissions", f"{required_scope} scope required")

        try:
            text = await self.tools.call(call.name, call.arguments)
            result = MCPToolCallResult(content=[MCPContentItem(text=text)])
        except DataAccessError as e:
            result = MCPToolCallResult(content=[MCPContentItem(text=str(e))], isError=True)
        except Exception as e:
            logger.error(f"Error executing tool {call.name}: {e}")
            result = MCPToolCallResult(content=[MCPContentItem(text="Tool execution failed")], isError=True)

        return result.model_dump(exclude_none=True)

    async def _handle_resources_list(self, params: Dict[str, Any], identity: TokenIdentity) -> Dict[str, Any]:
        """Handle resources/list method"""
        return {"resources": []}

    async def _handle_prompts_list(self, params: Dict[str, Any], identity: TokenIdentity) -> Dict[str, Any]:
        """Handle prompts/list method"""
        return {"prompts": []}

    async def stream(self, ping_interval: float = 30.0):
        """SSE frames: queued notifications and keep-alive pings until the session closes"""
        self.streaming = True
        try:
            yield f"id: {uuid.uuid4()}\n"
            yield "event: connection\n"
            yield f"data: {json.dumps({'type': 'connection', 'session_id': self.session_id, 'timestamp': datetime.now(timezone.utc).isoformat()})}\n\n"

            while True:
                if self._closed.is_set() and self._outbound.empty():
                    break
                try:
                    message = await asyncio.wait_for(self._outbound.get(), timeout=ping_interval)
                except asyncio.TimeoutError:
                    yield ": ping\n\n"
                    continue
                yield f"id: {uuid.uuid4()}\n"
                yield "event: message\n"
                yield f"data: {json.dumps(message)}\n\n"

        except asyncio.CancelledError:
            logger.info(f"SSE stream cancelled for session {self.session_id}")
            raise
        finally:
            self.streaming = False


class MCPTransport:
    """
    MCP Streamable HTTP transport: the table of live sessions and the HTTP
    handlers that route each request to its session.

    A POST without a session id must carry ``initialize`` and opens a new
    session. Requests with a session id are routed to that session when it
    exists and belongs to the caller. Closing a session removes it from the
    table through its close callback.
    """

    def __init__(self, config: Config, database: Database):
        self.config = config
        self.database = database
        self.active_sessions: Dict[str, MCPSession] = {}
        self._lock = asyncio.Lock()

    @property
    def session_count(self) -> int:
        return len(self.active_sessions)

    async def create_session(self, identity: TokenIdentity) -> MCPSession:
        """Open a session whose tools act as the given user"""
        tools = build_tool_registry(RecordAccessor(self.database, identity.user_id))
        session = MCPSession(uuid.uuid4().hex, identity.user_id, tools, self.config)
        session.on_close(self._deregister)

        async with self._lock:
            self.active_sessions[session.session_id] = session

        logger.info(f"Session {session.session_id} opened for user {identity.user_id}")
        return session

    async def get_session(self, session_id: str, identity: TokenIdentity) -> Optional[MCPSession]:
        async with self._lock:
            session = self.active_sessions.get(session_id)
        # Another user's session is reported as unknown
        if session is None or session.closed or session.user_id != identity.user_id:
            return None
        return session

    async def _deregister(self, session: MCPSession):
        async with self._lock:
            if self.active_sessions.get(session.session_id) is session:
                del self.active_sessions[session.session_id]

    async def close_all(self, reason: str = "closed: server shutting down"):
        """Close every session, giving up after the configured drain timeout"""
        async with self._lock:
            sessions = list(self.active_sessions.values())
        if not sessions:
            return

        logger.info(f"Closing {len(sessions)} open sessions")
        try:
            await asyncio.wait_for(
                asyncio.gather(*(session.close(reason) for session in sessions), return_exceptions=True),
                timeout=self.config.shutdown_drain_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Session drain timed out; dropping remaining sessions")
            async with self._lock:
                self.active_sessions.clear()

    async def expire_idle(self, idle_timeout: float) -> int:
        """Close sessions that have not seen a message within idle_timeout seconds"""
        cutoff = time.time() - idle_timeout
        async with self._lock:
            idle = [s for s in self.active_sessions.values() if s.last_seen < cutoff and not s.streaming]
        for session in idle:
            await session.close("expired after inactivity")
        return len(idle)

    @staticmethod
    def _session_id_from(request: Request) -> Optional[str]:
        return request.headers.get(SESSION_HEADER) or request.query_params.get("session_id")

    async def handle_post_request(self, request: Request, identity: TokenIdentity) -> Response:
        """Handle POST request for JSON-RPC messages"""
        content_type = request.headers.get("content-type", "")
        if not content_type.startswith("application/json"):
            return JSONResponse(
                status_code=415,
                content=jsonrpc_error(None, INVALID_REQUEST, "Unsupported Media Type", "Content-Type must be application/json")
            )

        # Parse JSON-RPC message
        body = await request.body()
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            return JSONResponse(status_code=400, content=jsonrpc_error(None, PARSE_ERROR, "Parse error", str(e)))

        # Check for MCP protocol version header
        protocol_version = request.headers.get("mcp-protocol-version")
        if protocol_version and protocol_version not in SUPPORTED_PROTOCOL_VERSIONS:
            logger.warning(f"Unsupported protocol version: {protocol_version}")

        is_batch = isinstance(payload, list)
        messages = payload if is_batch else [payload]
        if not messages or not all(isinstance(m, dict) for m in messages):
            return JSONResponse(status_code=400, content=jsonrpc_error(None, INVALID_REQUEST, "Invalid Request"))

        initialize_count = sum(1 for m in messages if m.get("method") == "initialize")
        session_id = self._session_id_from(request)

        if session_id is None:
            if initialize_count != 1 or (is_batch and len(messages) > 1):
                return JSONResponse(
                    status_code=400,
                    content=jsonrpc_error(None, NO_VALID_SESSION, "Bad Request: No valid session ID provided")
                )
            session = await self.create_session(identity)
        else:
            session = await self.get_session(session_id, identity)
            if session is None:
                return JSONResponse(status_code=404, content=jsonrpc_error(None, SESSION_NOT_FOUND, "Session not found"))

        responses = await session.handle_messages(messages, identity)
        headers = {SESSION_HEADER: session.session_id}

        if session_id is None and session.state == SessionState.UNINITIALIZED:
            await session.close("initialization failed")
            headers = {}

        if not responses:
            return Response(status_code=202, headers=headers)
        return JSONResponse(content=responses if is_batch else responses[0], headers=headers)

    async def handle_get_request(self, request: Request, identity: TokenIdentity) -> Response:
        """Handle GET request for SSE streaming"""
        if "text/event-stream" not in request.headers.get("accept", ""):
            return JSONResponse(
                status_code=406,
                content=jsonrpc_error(None, INVALID_REQUEST, "Not Acceptable", "Client must accept text/event-stream")
            )

        session_id = self._session_id_from(request)
        if session_id is None:
            return JSONResponse(status_code=400, content=jsonrpc_error(None, NO_VALID_SESSION, "Bad Request: No valid session ID provided"))

        session = await self.get_session(session_id, identity)
        if session is None:
            return JSONResponse(status_code=404, content=jsonrpc_error(None, SESSION_NOT_FOUND, "Session not found"))
        if session.streaming:
            return JSONResponse(status_code=409, content=jsonrpc_error(None, INVALID_REQUEST, "Conflict", "Only one SSE stream is allowed per session"))

        logger.info(f"Opening SSE stream for session {session_id}")
        return StreamingResponse(
            session.stream(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                SESSION_HEADER: session_id
            }
        )

    async def handle_delete_request(self, request: Request, identity: TokenIdentity) -> Response:
        """Handle DELETE request closing a session"""
        session_id = self._session_id_from(request)
        if session_id is None:
            return JSONResponse(status_code=400, content=jsonrpc_error(None, NO_VALID_SESSION, "Bad Request: No valid session ID provided"))

        session = await self.get_session(session_id, identity)
        if session is None:
            return JSONResponse(status_code=404, content=jsonrpc_error(None, SESSION_NOT_FOUND, "Session not found"))

        await session.close()
        return Response(status_code=200)
