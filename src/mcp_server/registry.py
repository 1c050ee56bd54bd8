"""Capability Registry for the Resource Gateway.

Holds the tool catalog and is the single dispatch boundary: argument
validation, typed decoding, handler execution and auditing all happen
here. Tools are registered by the domains at startup; the registry is
frozen before the listener accepts traffic.
"""

import asyncio
import contextvars
import functools
import inspect
import json
import time
from typing import Any, Optional

from pydantic import ValidationError

from shared.errors import ToolExecutionError
from shared.logging import get_logger
from shared.models import (
    ExecutionContext,
    ToolCategory,
    ToolDescriptor,
    ToolResult,
    ToolResultStatus,
)
from shared.schema import validate_schema
from mcp_server.audit import AuditLogger

logger = get_logger(__name__)


class ToolRegistry:
    """
    Central registry for all gateway tools.

    Responsibilities:
    - Register tools from domains (boot time only)
    - Advertise the catalog in registration order
    - Validate and decode tool arguments
    - Dispatch calls to handlers and audit every execution
    """

    def __init__(self, audit_logger: Optional[AuditLogger] = None) -> None:
        self._tools: dict[str, ToolDescriptor] = {}
        self._frozen = False
        self.audit_logger = audit_logger

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, descriptor: ToolDescriptor) -> None:
        """
        Register a tool in the registry.

        Args:
            descriptor: Tool descriptor to register

        Raises:
            ValueError: If the tool name is already registered
            RuntimeError: If the registry has been frozen
        """
        if self._frozen:
            raise RuntimeError(
                f"Cannot register tool '{descriptor.name}': registry is frozen"
            )

        if descriptor.name in self._tools:
            raise ValueError(f"Tool '{descriptor.name}' is already registered")

        self._tools[descriptor.name] = descriptor

        logger.info(
            "Tool registered",
            tool=descriptor.name,
            category=descriptor.category.value
        )

    def register_many(self, descriptors: list[ToolDescriptor]) -> None:
        """Register multiple tools at once."""
        for descriptor in descriptors:
            self.register(descriptor)

    def freeze(self) -> None:
        """Stop accepting registrations. Called once before serving traffic."""
        self._frozen = True
        logger.info("Tool registry frozen", tool_count=len(self._tools))

    def get(self, name: str) -> Optional[ToolDescriptor]:
        """Get a tool descriptor by name."""
        return self._tools.get(name)

    def list_tools(self, category: Optional[ToolCategory] = None) -> list[ToolDescriptor]:
        """
        List registered tools in registration order.

        Args:
            category: Optional category filter

        Returns:
            List of tool descriptors
        """
        tools = list(self._tools.values())
        if category is not None:
            tools = [t for t in tools if t.category == category]
        return tools

    def advertise(self) -> list[dict[str, Any]]:
        """Public ``{name, description, inputSchema}`` form of every tool."""
        return [tool.advertise() for tool in self.list_tools()]

    def get_tool_count(self) -> dict[str, int]:
        """Get count of tools per category."""
        counts: dict[str, int] = {}
        for tool in self._tools.values():
            counts[tool.category.value] = counts.get(tool.category.value, 0) + 1
        return counts

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def validate_input(
        self,
        name: str,
        arguments: dict[str, Any]
    ) -> tuple[bool, list[str]]:
        """
        Validate arguments against the tool's advertised input schema.

        Returns:
            Tuple of (is_valid, list of error messages)
        """
        tool = self.get(name)
        if not tool:
            return False, [f"Tool '{name}' not found"]

        return validate_schema(arguments, tool.input_schema)

    async def dispatch(
        self,
        name: str,
        arguments: Optional[dict[str, Any]],
        context: ExecutionContext
    ) -> ToolResult:
        """
        Execute a tool call.

        Never raises for per-call faults: unknown tools, invalid
        arguments and handler failures all come back as error-flagged
        results.

        Args:
            name: Tool name
            arguments: Raw argument mapping from the caller
            context: Execution context

        Returns:
            Tool execution result
        """
        start_time = time.time()
        arguments = arguments or {}

        descriptor = self.get(name)
        if descriptor is None:
            logger.warning("Unknown tool requested", tool=name)
            return ToolResult.failure(
                name,
                f"Unknown tool: {name}",
                status=ToolResultStatus.NOT_FOUND,
                error_code="TOOL_NOT_FOUND"
            )

        logger.debug("Executing tool", tool=name, request_id=context.request_id)

        is_valid, errors = self.validate_input(name, arguments)
        if not is_valid:
            result = self._invalid(name, errors)
        else:
            try:
                parsed = descriptor.arguments.model_validate(arguments)
            except ValidationError as e:
                result = self._invalid(
                    name, [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
                )
            else:
                result = await self._execute(descriptor, parsed)

        result.tool_name = descriptor.name
        result.execution_time_ms = (time.time() - start_time) * 1000

        if self.audit_logger is not None:
            await self.audit_logger.log(descriptor, context, arguments, result)

        return result

    @staticmethod
    def _invalid(name: str, errors: list[str]) -> ToolResult:
        return ToolResult.failure(
            name,
            f"Invalid arguments for {name}: {'; '.join(errors)}",
            status=ToolResultStatus.VALIDATION_ERROR,
            error_code="VALIDATION_ERROR"
        )

    async def _execute(self, descriptor: ToolDescriptor, arguments: Any) -> ToolResult:
        """Run the handler, awaiting coroutines and offloading sync work."""
        handler = descriptor.handler

        try:
            if inspect.iscoroutinefunction(handler):
                result = await handler(arguments)
            else:
                # Run sync handler in thread pool, keeping log context
                loop = asyncio.get_running_loop()
                ctx = contextvars.copy_context()
                result = await loop.run_in_executor(
                    None, functools.partial(ctx.run, handler, arguments)
                )
                if inspect.isawaitable(result):
                    result = await result

        except ToolExecutionError as e:
            logger.warning(
                "Tool execution failed",
                tool=descriptor.name,
                error=e.message,
                code=e.code
            )
            return ToolResult.failure(
                descriptor.name, f"Tool error: {e.message}", error_code=e.code
            )

        except Exception as e:
            logger.error(
                "Tool execution failed",
                tool=descriptor.name,
                error=str(e),
                exc_info=True
            )
            return ToolResult.failure(descriptor.name, f"Tool error: {e}")

        # Normalize result
        if isinstance(result, ToolResult):
            return result

        if isinstance(result, str):
            return ToolResult.ok(descriptor.name, result)

        return ToolResult.ok(descriptor.name, json.dumps(result, indent=2, default=str))
