"""Tests for server components: registry, dispatch, auth and audit."""

import json

import pytest
from pydantic import Field

from shared.errors import ConfigurationError, ToolExecutionError
from shared.models import (
    ExecutionContext,
    NoArguments,
    ToolArguments,
    ToolCategory,
    ToolDescriptor,
    ToolResult,
    ToolResultStatus,
)


class GreetArguments(ToolArguments):
    name: str = Field(..., description="Who to greet")
    times: int = Field(default=1, ge=1, alias="repeatCount")


async def greet(args: GreetArguments) -> ToolResult:
    return ToolResult.ok("greet", " ".join([f"hello {args.name}"] * args.times))


def sync_echo(args: GreetArguments) -> ToolResult:
    return ToolResult.ok("echo", args.name)


def boom(args: NoArguments) -> ToolResult:
    raise RuntimeError("disk on fire")


async def remote_failure(args: NoArguments) -> ToolResult:
    raise ToolExecutionError("API error: 502 Bad Gateway", code="BACKEND_ERROR")


def make_tool(name="greet", handler=greet, arguments=GreetArguments, category=ToolCategory.SYSTEM):
    return ToolDescriptor(
        name=name,
        description=f"{name} tool",
        category=category,
        arguments=arguments,
        handler=handler,
    )


def make_context(request_id="req-1"):
    return ExecutionContext(request_id=request_id, session_id="a" * 32)


class TestToolRegistry:
    """Tests for the ToolRegistry."""

    def test_register_tool(self):
        """Test registering a tool."""
        from mcp_server.registry import ToolRegistry

        registry = ToolRegistry()
        registry.register(make_tool())

        assert registry.get("greet") is not None
        assert "greet" in registry
        assert len(registry) == 1

    def test_register_duplicate_tool_raises(self):
        """Test that registering duplicate tool raises error."""
        from mcp_server.registry import ToolRegistry

        registry = ToolRegistry()
        registry.register(make_tool())

        with pytest.raises(ValueError, match="already registered"):
            registry.register(make_tool())

    def test_register_after_freeze_raises(self):
        """Test that the catalog cannot change once frozen."""
        from mcp_server.registry import ToolRegistry

        registry = ToolRegistry()
        registry.register(make_tool())
        registry.freeze()

        with pytest.raises(RuntimeError, match="frozen"):
            registry.register(make_tool(name="other"))

    def test_list_tools_keeps_registration_order(self):
        """Test that listing preserves registration order."""
        from mcp_server.registry import ToolRegistry

        registry = ToolRegistry()
        for name in ("zeta", "alpha", "mid"):
            registry.register(make_tool(name=name))

        assert [t.name for t in registry.list_tools()] == ["zeta", "alpha", "mid"]

    def test_list_tools_by_category(self):
        """Test listing tools filtered by category."""
        from mcp_server.registry import ToolRegistry

        registry = ToolRegistry()
        registry.register(make_tool(name="a", category=ToolCategory.FILESYSTEM))
        registry.register(make_tool(name="b", category=ToolCategory.FILESYSTEM))
        registry.register(make_tool(name="c", category=ToolCategory.DATABASE))

        assert len(registry.list_tools(ToolCategory.FILESYSTEM)) == 2
        assert registry.get_tool_count() == {"filesystem": 2, "database": 1}

    def test_advertise_uses_wire_names(self):
        """Test the public form exposes name, description and schema."""
        from mcp_server.registry import ToolRegistry

        registry = ToolRegistry()
        registry.register(make_tool())

        [advertised] = registry.advertise()

        assert set(advertised) == {"name", "description", "inputSchema"}
        schema = advertised["inputSchema"]
        assert schema["type"] == "object"
        assert schema["required"] == ["name"]
        assert "repeatCount" in schema["properties"]
        assert "title" not in schema

    def test_no_argument_tool_schema(self):
        """Test that tools without arguments still advertise an object schema."""
        from mcp_server.registry import ToolRegistry

        registry = ToolRegistry()
        registry.register(make_tool(name="boom", handler=boom, arguments=NoArguments))

        schema = registry.advertise()[0]["inputSchema"]

        assert schema == {"type": "object", "properties": {}, "required": []}

    def test_validate_input(self):
        """Test input validation against schema."""
        from mcp_server.registry import ToolRegistry

        registry = ToolRegistry()
        registry.register(make_tool())

        is_valid, errors = registry.validate_input("greet", {"name": "ada", "repeatCount": 2})
        assert is_valid
        assert errors == []

        is_valid, errors = registry.validate_input("greet", {"repeatCount": 2})
        assert not is_valid
        assert len(errors) > 0


class TestDispatch:
    """Tests for dispatching tool calls through the registry."""

    def setup_method(self):
        """Set up test fixtures."""
        from mcp_server.audit import AuditLogger
        from mcp_server.registry import ToolRegistry

        self.audit = AuditLogger(enabled=False)
        self.registry = ToolRegistry(audit_logger=self.audit)
        self.registry.register(make_tool())
        self.registry.register(make_tool(name="echo", handler=sync_echo))
        self.registry.register(make_tool(name="boom", handler=boom, arguments=NoArguments))
        self.registry.register(make_tool(name="remote", handler=remote_failure, arguments=NoArguments))

    @pytest.mark.asyncio
    async def test_dispatch_async_handler(self):
        """Test dispatching to a coroutine handler with decoded arguments."""
        result = await self.registry.dispatch("greet", {"name": "ada", "repeatCount": 2}, make_context())

        assert result.status == ToolResultStatus.SUCCESS
        assert result.text == "hello ada hello ada"
        assert result.execution_time_ms >= 0

    @pytest.mark.asyncio
    async def test_dispatch_sync_handler(self):
        """Test that synchronous handlers run and return results."""
        result = await self.registry.dispatch("echo", {"name": "bob"}, make_context())

        assert not result.is_error
        assert result.text == "bob"

    @pytest.mark.asyncio
    async def test_execute_unknown_tool(self):
        """Test executing an unknown tool returns an error naming it."""
        result = await self.registry.dispatch("no_such_tool", {}, make_context())

        assert result.status == ToolResultStatus.NOT_FOUND
        assert result.is_error
        assert "no_such_tool" in result.text

    @pytest.mark.asyncio
    async def test_execute_with_validation_error(self):
        """Test executing with invalid parameters."""
        result = await self.registry.dispatch("greet", {"repeatCount": "many"}, make_context())

        assert result.status == ToolResultStatus.VALIDATION_ERROR
        assert result.error_code == "VALIDATION_ERROR"
        assert result.is_error

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_error_result(self):
        """Test that a raising handler yields a summarized error result."""
        result = await self.registry.dispatch("boom", {}, make_context())

        assert result.status == ToolResultStatus.ERROR
        assert result.text == "Tool error: disk on fire"
        assert "Traceback" not in result.text

    @pytest.mark.asyncio
    async def test_collaborator_error_keeps_code(self):
        """Test that ToolExecutionError codes are carried into the result."""
        result = await self.registry.dispatch("remote", {}, make_context())

        assert result.is_error
        assert result.error_code == "BACKEND_ERROR"
        assert "502" in result.text

    @pytest.mark.asyncio
    async def test_none_arguments_treated_as_empty(self):
        """Test that missing arguments are treated as an empty mapping."""
        result = await self.registry.dispatch("boom", None, make_context())

        assert result.error_code == "EXECUTION_ERROR"

    @pytest.mark.asyncio
    async def test_envelope(self):
        """Test the protocol-level result envelope."""
        result = await self.registry.dispatch("echo", {"name": "x"}, make_context())

        assert result.to_envelope() == {
            "content": [{"type": "text", "text": "x"}],
            "isError": False,
        }


class TestAuthGate:
    """Tests for bearer token authentication."""

    def test_empty_token_is_configuration_error(self):
        """Test that a gate cannot be built without a token."""
        from mcp_server.auth import AuthGate

        with pytest.raises(ConfigurationError):
            AuthGate("")
        with pytest.raises(ConfigurationError):
            AuthGate(None)

    def test_outcomes(self):
        """Test the three authentication outcomes."""
        from mcp_server.auth import AuthGate, AuthOutcome

        gate = AuthGate("s3cret")

        assert gate.evaluate("Bearer s3cret") == AuthOutcome.AUTHENTICATED
        assert gate.evaluate("bearer s3cret") == AuthOutcome.AUTHENTICATED
        assert gate.evaluate(None) == AuthOutcome.MISSING_CREDENTIAL
        assert gate.evaluate("") == AuthOutcome.MISSING_CREDENTIAL
        assert gate.evaluate("Bearer wrong") == AuthOutcome.INVALID_CREDENTIAL
        assert gate.evaluate("Basic czNjcmV0") == AuthOutcome.INVALID_CREDENTIAL
        assert gate.evaluate("Bearer ") == AuthOutcome.INVALID_CREDENTIAL

    def test_extract_bearer(self):
        """Test bearer token extraction."""
        from mcp_server.auth import extract_bearer

        assert extract_bearer("Bearer abc") == "abc"
        assert extract_bearer("Token abc") is None
        assert extract_bearer(None) is None


class TestAuditLogger:
    """Tests for audit logging."""

    def test_audit_entry_creation(self):
        """Test creating audit entries."""
        from mcp_server.audit import AuditLogger

        audit = AuditLogger(enabled=False)
        result = ToolResult(
            tool_name="greet",
            status=ToolResultStatus.SUCCESS,
            execution_time_ms=50.0
        )

        entry = audit.create_entry(make_tool(), make_context("req-9"), {"name": "ada"}, result)

        assert entry.request_id == "req-9"
        assert entry.session_id == "a" * 32
        assert entry.tool_name == "greet"
        assert entry.category == ToolCategory.SYSTEM
        assert entry.status == ToolResultStatus.SUCCESS
        assert entry.execution_time_ms == 50.0

    def test_sensitive_data_redaction(self):
        """Test that sensitive arguments are redacted, nested ones included."""
        from mcp_server.audit import AuditLogger

        audit = AuditLogger(enabled=False)
        result = ToolResult(tool_name="greet")

        entry = audit.create_entry(
            make_tool(),
            make_context(),
            {
                "username": "testuser",
                "password": "secret123",
                "options": {"api_key": "key123", "region": "eu"},
            },
            result
        )

        assert entry.arguments["username"] == "testuser"
        assert entry.arguments["password"] == "[REDACTED]"
        assert entry.arguments["options"]["api_key"] == "[REDACTED]"
        assert entry.arguments["options"]["region"] == "eu"

    @pytest.mark.asyncio
    async def test_flush_writes_json_lines(self, tmp_path):
        """Test that buffered entries are appended as JSON lines."""
        from mcp_server.audit import AuditLogger
        from mcp_server.registry import ToolRegistry

        log_path = tmp_path / "logs" / "audit.log"
        audit = AuditLogger(log_path=str(log_path), enabled=True, buffer_size=100)
        registry = ToolRegistry(audit_logger=audit)
        registry.register(make_tool())

        await registry.dispatch("greet", {"name": "ada"}, make_context())
        await registry.dispatch("greet", {}, make_context("req-2"))
        assert audit.pending == 2

        await audit.flush()

        lines = log_path.read_text().splitlines()
        assert len(lines) == 2
        first, second = (json.loads(line) for line in lines)
        assert first["tool_name"] == "greet"
        assert first["status"] == "success"
        assert second["status"] == "validation_error"
        assert audit.pending == 0

    @pytest.mark.asyncio
    async def test_failed_writes_keep_bounded_backlog(self, tmp_path):
        """Test that entries are retained across failed writes, oldest dropped past the cap."""
        from mcp_server.audit import RETAINED_BUFFERS, AuditLogger
        from mcp_server.registry import ToolRegistry

        log_path = tmp_path / "audit.log"
        audit = AuditLogger(log_path=str(log_path), enabled=True, buffer_size=2)
        log_path.mkdir()  # opening a directory for append fails
        registry = ToolRegistry(audit_logger=audit)
        registry.register(make_tool())

        for i in range(50):
            await registry.dispatch("greet", {"name": "ada"}, make_context(f"req-{i}"))

        assert audit.pending == 2 * RETAINED_BUFFERS

        log_path.rmdir()
        await audit.flush()

        request_ids = [json.loads(line)["request_id"] for line in log_path.read_text().splitlines()]
        assert request_ids == [f"req-{i}" for i in range(30, 50)]
        assert audit.pending == 0

    @pytest.mark.asyncio
    async def test_buffer_flushes_when_full(self, tmp_path):
        """Test that a full buffer is written without an explicit flush."""
        from mcp_server.audit import AuditLogger
        from mcp_server.registry import ToolRegistry

        log_path = tmp_path / "audit.log"
        audit = AuditLogger(log_path=str(log_path), enabled=True, buffer_size=1)
        registry = ToolRegistry(audit_logger=audit)
        registry.register(make_tool())

        await registry.dispatch("greet", {"name": "ada"}, make_context())

        assert len(log_path.read_text().splitlines()) == 1

    @pytest.mark.asyncio
    async def test_unknown_tool_not_audited(self, tmp_path):
        """Test that calls to unknown tools are not audited."""
        from mcp_server.audit import AuditLogger
        from mcp_server.registry import ToolRegistry

        audit = AuditLogger(log_path=str(tmp_path / "audit.log"), enabled=True)
        registry = ToolRegistry(audit_logger=audit)

        await registry.dispatch("missing", {}, make_context())

        assert audit.pending == 0
