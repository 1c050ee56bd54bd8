"""Protocol Engine for the Resource Gateway.

Interprets JSON-RPC 2.0 messages for a single session: handshake,
ping, tool discovery and tool invocation. One engine is owned by each
session; messages for the same session are handled one at a time, in
arrival order.
"""

import asyncio
import uuid
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import ValidationError

from shared.errors import GatewayError
from shared.logging import bind_context, get_logger
from shared.models import ExecutionContext, JsonRpcRequest
from mcp_server.registry import ToolRegistry

logger = get_logger(__name__)

SERVER_NAME = "resource-gateway"
SERVER_VERSION = "1.0.0"

JSONRPC_VERSION = "2.0"
SUPPORTED_PROTOCOL_VERSIONS = ("2024-11-05", "2025-03-26", "2025-06-18")
LATEST_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[-1]

# JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

Message = dict[str, Any]
Payload = Union[Message, list[Any]]


class SessionClosedError(GatewayError):
    """The engine's session was closed before or while a message was handled."""


class ProtocolError(Exception):
    """A JSON-RPC level failure answered with an ``error`` member."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def error_response(msg_id: Any, code: int, message: str) -> Message:
    """Build a JSON-RPC error response."""
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": msg_id,
        "error": {"code": code, "message": message},
    }


def negotiate_protocol_version(requested: Any) -> str:
    """Echo the client's version when supported, otherwise answer the latest."""
    if isinstance(requested, str) and requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return LATEST_PROTOCOL_VERSION


class ProtocolEngine:
    """
    Per-session JSON-RPC interpreter.

    Tool errors are never protocol errors: a failed tool call still
    produces a normal ``result`` whose envelope has ``isError: true``.
    """

    def __init__(self, registry: ToolRegistry, session_id: str) -> None:
        self.registry = registry
        self.session_id = session_id
        self.protocol_version: Optional[str] = None
        self.client_info: dict[str, Any] = {}
        self._lock = asyncio.Lock()
        self._closed = False
        self._methods: dict[str, Callable[[JsonRpcRequest], Awaitable[Any]]] = {
            "initialize": self._initialize,
            "ping": self._ping,
            "tools/list": self._list_tools,
            "tools/call": self._call_tool,
        }

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def initialized(self) -> bool:
        return self.protocol_version is not None

    def close(self) -> None:
        """Mark the engine closed; results of in-flight calls are discarded."""
        if not self._closed:
            self._closed = True
            logger.debug("Protocol engine closed", session_id=self.session_id)

    async def handle(self, payload: Payload) -> Optional[Payload]:
        """
        Process one message or a batch.

        Returns:
            The response message, a list of responses for a batch, or
            None when the input held only notifications.

        Raises:
            SessionClosedError: If the session is closed before the
                message is processed or while it is being processed
        """
        async with self._lock:
            if self._closed:
                raise SessionClosedError("Session not found")

            if isinstance(payload, list):
                response = await self._handle_batch(payload)
            else:
                response = await self._handle_message(payload)

            if self._closed:
                raise SessionClosedError("Session not found")

            return response

    async def _handle_batch(self, batch: list[Any]) -> Optional[Payload]:
        if not batch:
            return error_response(None, INVALID_REQUEST, "Invalid Request: empty batch")

        responses = []
        for message in batch:
            response = await self._handle_message(message)
            if response is not None:
                responses.append(response)
        return responses or None

    async def _handle_message(self, message: Any) -> Optional[Message]:
        if not isinstance(message, dict):
            return error_response(None, INVALID_REQUEST, "Invalid Request")

        raw_id = message.get("id")
        try:
            request = JsonRpcRequest.model_validate(message)
        except ValidationError:
            msg_id = raw_id if isinstance(raw_id, (str, int)) else None
            return error_response(msg_id, INVALID_REQUEST, "Invalid Request")

        if request.jsonrpc != JSONRPC_VERSION:
            return error_response(request.id, INVALID_REQUEST, "Invalid Request: jsonrpc must be '2.0'")

        if request.is_notification:
            logger.debug("Notification received", method=request.method)
            return None

        method = self._methods.get(request.method)
        if method is None:
            logger.warning("Unknown method", method=request.method)
            return error_response(request.id, METHOD_NOT_FOUND, f"Method not found: {request.method}")

        try:
            result = await method(request)
        except ProtocolError as e:
            return error_response(request.id, e.code, e.message)
        except Exception as e:
            logger.exception("Method failed", method=request.method, error=str(e))
            return error_response(request.id, INTERNAL_ERROR, "Internal error")

        return {"jsonrpc": JSONRPC_VERSION, "id": request.id, "result": result}

    async def _initialize(self, request: JsonRpcRequest) -> dict[str, Any]:
        self.protocol_version = negotiate_protocol_version(request.params.get("protocolVersion"))
        client_info = request.params.get("clientInfo")
        self.client_info = client_info if isinstance(client_info, dict) else {}

        logger.info(
            "Session initialized",
            session_id=self.session_id,
            protocol_version=self.protocol_version,
            client=self.client_info.get("name")
        )

        return {
            "protocolVersion": self.protocol_version,
            "capabilities": {"tools": {"listChanged": False}},
            "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
        }

    async def _ping(self, request: JsonRpcRequest) -> dict[str, Any]:
        return {}

    async def _list_tools(self, request: JsonRpcRequest) -> dict[str, Any]:
        return {"tools": self.registry.advertise()}

    async def _call_tool(self, request: JsonRpcRequest) -> dict[str, Any]:
        name = request.params.get("name")
        if not isinstance(name, str) or not name:
            raise ProtocolError(INVALID_PARAMS, "Invalid params: 'name' must be a non-empty string")

        arguments = request.params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise ProtocolError(INVALID_PARAMS, "Invalid params: 'arguments' must be an object")

        context = ExecutionContext(
            request_id=str(uuid.uuid4()),
            session_id=self.session_id,
        )
        bind_context(request_id=context.request_id)

        result = await self.registry.dispatch(name, arguments, context)
        return result.to_envelope()
