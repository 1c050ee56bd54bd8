"""Core data models for the Resource Gateway.

This module defines the shared data structures used across the gateway:
tool descriptors, typed tool arguments, the tool result envelope,
audit entries and the JSON-RPC message shapes.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from shared.schema import schema_for


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class ToolCategory(str, Enum):
    """Resource category a tool touches."""
    FILESYSTEM = "filesystem"
    SYSTEM = "system"
    DATABASE = "database"
    VAULT = "vault"
    NETWORK = "network"


class ToolArguments(BaseModel):
    """
    Base class for typed tool arguments.

    Each tool declares a subclass; the registry decodes the raw argument
    mapping into it once, at the dispatch boundary. Field aliases carry
    the wire names (e.g. ``maxDepth``) advertised to clients.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class NoArguments(ToolArguments):
    """Arguments model for tools that take no input."""


class ContentBlock(BaseModel):
    """A single typed content block of a tool result."""
    type: str = "text"
    text: str


class ToolResultStatus(str, Enum):
    """Status of tool execution."""
    SUCCESS = "success"
    ERROR = "error"
    NOT_FOUND = "not_found"
    VALIDATION_ERROR = "validation_error"
    DENIED = "denied"
    TIMEOUT = "timeout"


class ToolResult(BaseModel):
    """
    Result of a tool execution.

    Carries the content blocks returned to the caller plus the status
    and timing metadata used for auditing. Anything other than
    ``SUCCESS`` is reported to the caller with ``isError: true``.
    """
    tool_name: str
    status: ToolResultStatus = ToolResultStatus.SUCCESS
    content: list[ContentBlock] = Field(default_factory=list)
    error_code: Optional[str] = None
    execution_time_ms: float = 0

    @property
    def is_error(self) -> bool:
        return self.status != ToolResultStatus.SUCCESS

    @property
    def text(self) -> str:
        """All text blocks joined, for logging and assertions."""
        return "\n".join(block.text for block in self.content)

    @classmethod
    def ok(cls, tool_name: str, text: str) -> "ToolResult":
        return cls(tool_name=tool_name, content=[ContentBlock(text=text)])

    @classmethod
    def failure(
        cls,
        tool_name: str,
        message: str,
        status: ToolResultStatus = ToolResultStatus.ERROR,
        error_code: str = "EXECUTION_ERROR"
    ) -> "ToolResult":
        return cls(
            tool_name=tool_name,
            status=status,
            content=[ContentBlock(text=message)],
            error_code=error_code,
        )

    def to_envelope(self) -> dict[str, Any]:
        """Render the protocol-level ``{content, isError}`` envelope."""
        return {
            "content": [block.model_dump() for block in self.content],
            "isError": self.is_error,
        }


ToolHandler = Callable[[Any], Union[ToolResult, Awaitable[ToolResult]]]


class ToolDescriptor(BaseModel):
    """
    Immutable catalog entry for one tool.

    Registered once at boot and never mutated afterwards.
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str = Field(..., description="Unique tool name")
    description: str = Field(..., description="Human-readable description for clients")
    category: ToolCategory
    arguments: type[ToolArguments] = NoArguments
    handler: ToolHandler

    @property
    def input_schema(self) -> dict[str, Any]:
        """JSON Schema advertised to clients, derived from the arguments model."""
        return schema_for(self.arguments)

    def advertise(self) -> dict[str, Any]:
        """Public-facing form returned by ``tools/list``."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


class ExecutionContext(BaseModel):
    """Request metadata propagated from the transport to the dispatch boundary."""
    request_id: str = Field(..., description="Unique request identifier")
    session_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class AuditEntry(BaseModel):
    """
    Audit log entry for tool executions.

    Captures session, tool, arguments, timestamp, and result.
    """
    id: str
    timestamp: datetime = Field(default_factory=utcnow)

    # Correlation
    session_id: Optional[str] = None
    request_id: str

    # Tool information
    tool_name: str
    category: ToolCategory

    # Request details
    arguments: dict[str, Any] = Field(default_factory=dict)

    # Result information
    status: ToolResultStatus
    error_code: Optional[str] = None
    execution_time_ms: float = 0


class JsonRpcRequest(BaseModel):
    """A decoded JSON-RPC 2.0 request or notification."""
    jsonrpc: str
    method: str
    id: Optional[Union[int, str]] = None
    params: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_notification(self) -> bool:
        """Notifications carry no ``id`` member at all."""
        return "id" not in self.model_fields_set


class HealthResponse(BaseModel):
    """Liveness response."""
    status: str
    timestamp: datetime


class IdentityResponse(BaseModel):
    """Static identity returned by a session-less probe of the protocol endpoint."""
    name: str
    version: str
    transport: str = "streamable-http"
