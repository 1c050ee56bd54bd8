"""Base classes for domain adapters.

All adapters must:
- Declare their tools with typed argument models
- Consult their policy enforcer before touching a resource
- Normalize backend output into the common result envelope
- Never make cross-domain calls
- Receive configuration through the constructor, never from globals
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from shared.errors import ToolExecutionError
from shared.logging import get_logger
from shared.models import (
    NoArguments,
    ToolArguments,
    ToolCategory,
    ToolDescriptor,
    ToolHandler,
    ToolResult,
    ToolResultStatus,
)
from mcp_server.policy import PolicyDecision
from mcp_server.registry import ToolRegistry

logger = get_logger(__name__)


class BaseAdapter(ABC):
    """
    Base class for domain adapters.

    Each adapter:
    - Handles one resource category only
    - Builds the descriptors for its tools
    - Keeps no per-session state
    """

    category: ToolCategory

    @abstractmethod
    def descriptors(self) -> list[ToolDescriptor]:
        """Return all tool descriptors for this domain."""

    def register(self, registry: ToolRegistry) -> None:
        """Register every tool of this domain."""
        registry.register_many(self.descriptors())
        logger.info("Domain registered", category=self.category.value)

    def _tool(
        self,
        name: str,
        description: str,
        handler: ToolHandler,
        arguments: type[ToolArguments] = NoArguments
    ) -> ToolDescriptor:
        return ToolDescriptor(
            name=name,
            description=description,
            category=self.category,
            arguments=arguments,
            handler=handler,
        )

    async def close(self) -> None:
        """Release backend resources. Most adapters hold none."""

    def _success(self, tool_name: str, text: str) -> ToolResult:
        """Create a success result."""
        return ToolResult.ok(tool_name, text)

    def _json(self, tool_name: str, data: Any) -> ToolResult:
        """Create a success result holding pretty-printed JSON."""
        return ToolResult.ok(tool_name, json.dumps(data, indent=2, default=str))

    def _error(
        self,
        tool_name: str,
        message: str,
        code: str = "ERROR",
        status: ToolResultStatus = ToolResultStatus.ERROR
    ) -> ToolResult:
        """Create an error result."""
        return ToolResult.failure(tool_name, message, status=status, error_code=code)

    def _denied(
        self,
        tool_name: str,
        decision: PolicyDecision,
        hint: Optional[str] = None
    ) -> ToolResult:
        """Create a result for a policy denial."""
        message = decision.message if hint is None else f"{decision.message}\n\n{hint}"
        return ToolResult.failure(
            tool_name,
            message,
            status=ToolResultStatus.DENIED,
            error_code="POLICY_DENIED"
        )

    def _not_found(self, tool_name: str, message: str) -> ToolResult:
        """Create a not found result."""
        return ToolResult.failure(
            tool_name,
            message,
            status=ToolResultStatus.NOT_FOUND,
            error_code="NOT_FOUND"
        )


class RESTAdapter(BaseAdapter):
    """
    Base adapter for REST API backends.

    Provides common HTTP client functionality. ``transport`` lets tests
    substitute an ``httpx.MockTransport``.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        headers: Optional[dict[str, str]] = None,
        verify: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self.headers = headers or {}
        self.verify = verify
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self.headers,
                verify=self.verify,
                transport=self._transport,
            )
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        **kwargs
    ) -> Any:
        """
        Make an HTTP request to the backend.

        Raises:
            ToolExecutionError: If the backend answers with a non-2xx status
        """
        client = await self._get_client()
        response = await client.request(method, path, **kwargs)

        if response.is_error:
            logger.warning(
                "Backend request failed",
                method=method,
                path=path,
                status_code=response.status_code
            )
            raise ToolExecutionError(
                f"API error: {response.status_code} {response.reason_phrase}",
                code="BACKEND_ERROR",
                details={"status_code": response.status_code},
            )

        if not response.content:
            return {}
        return response.json()

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None


class CLIAdapter(BaseAdapter):
    """
    Base adapter for CLI-based backends.

    Commands are executed directly, never through a shell.
    """

    def __init__(self, timeout_seconds: float = 30.0) -> None:
        self.timeout_seconds = timeout_seconds

    async def _run_command(
        self,
        args: list[str],
        timeout: Optional[float] = None
    ) -> tuple[str, str, int]:
        """
        Run a CLI command.

        Args:
            args: Program and its arguments
            timeout: Optional timeout, defaults to the adapter timeout

        Returns:
            Tuple of (stdout, stderr, return_code)

        Raises:
            TimeoutError: If the command does not finish in time; the
                process is killed first
            OSError: If the program cannot be started
        """
        timeout = timeout or self.timeout_seconds

        logger.debug("Running command", command=args)

        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(),
                timeout=timeout
            )
            return (
                stdout.decode("utf-8", errors="replace"),
                stderr.decode("utf-8", errors="replace"),
                proc.returncode or 0
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TimeoutError(f"Command timed out after {timeout:g}s")
