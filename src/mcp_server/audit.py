"""Audit logging for the Resource Gateway.

Logs all tool executions for accountability and debugging.
Captures: session, request, tool, arguments, timestamp, result.
"""

import asyncio
import uuid
from pathlib import Path
from typing import Any

import aiofiles

from shared.logging import get_logger
from shared.models import (
    AuditEntry,
    ExecutionContext,
    ToolDescriptor,
    ToolResult,
    utcnow,
)

logger = get_logger(__name__)

# Unwritten entries kept across failed flushes, in multiples of the buffer size
RETAINED_BUFFERS = 10


class AuditLogger:
    """
    Audit logger for gateway tool executions.

    All tool executions are logged with:
    - Session and request identifiers
    - Tool name and category
    - Arguments (with sensitive data redaction)
    - Timestamp
    - Result status
    """

    # Argument keys that should be redacted in audit logs
    SENSITIVE_PARAMS = {"password", "token", "secret", "api_key", "apikey", "credential"}

    def __init__(
        self,
        log_path: str = "logs/audit.log",
        enabled: bool = True,
        buffer_size: int = 100
    ) -> None:
        self.log_path = Path(log_path)
        self.enabled = enabled
        self.buffer_size = buffer_size
        self._buffer: list[AuditEntry] = []
        self._lock = asyncio.Lock()

        if self.enabled:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def pending(self) -> int:
        """Number of entries waiting to be written."""
        return len(self._buffer)

    def _redact_sensitive(self, params: dict[str, Any]) -> dict[str, Any]:
        """Redact sensitive arguments from audit logs."""
        redacted = {}
        for key, value in params.items():
            if key.lower() in self.SENSITIVE_PARAMS:
                redacted[key] = "[REDACTED]"
            elif isinstance(value, dict):
                redacted[key] = self._redact_sensitive(value)
            else:
                redacted[key] = value
        return redacted

    def create_entry(
        self,
        descriptor: ToolDescriptor,
        context: ExecutionContext,
        arguments: dict[str, Any],
        result: ToolResult
    ) -> AuditEntry:
        """Create an audit entry from tool execution data."""
        return AuditEntry(
            id=str(uuid.uuid4()),
            timestamp=utcnow(),
            session_id=context.session_id,
            request_id=context.request_id,
            tool_name=descriptor.name,
            category=descriptor.category,
            arguments=self._redact_sensitive(arguments),
            status=result.status,
            error_code=result.error_code,
            execution_time_ms=result.execution_time_ms,
        )

    async def log(
        self,
        descriptor: ToolDescriptor,
        context: ExecutionContext,
        arguments: dict[str, Any],
        result: ToolResult
    ) -> None:
        """
        Log a tool execution.

        The entry goes to the structured logger immediately and is
        buffered for batch file writing.
        """
        if not self.enabled:
            return

        entry = self.create_entry(descriptor, context, arguments, result)

        logger.info(
            "Tool executed",
            audit_id=entry.id,
            session_id=entry.session_id,
            tool=entry.tool_name,
            category=entry.category.value,
            status=entry.status.value,
            execution_time_ms=round(entry.execution_time_ms, 2)
        )

        async with self._lock:
            self._buffer.append(entry)

            if len(self._buffer) >= self.buffer_size:
                await self._flush()

    async def _flush(self) -> None:
        """Flush buffered entries to file."""
        if not self._buffer:
            return

        entries_to_write = self._buffer.copy()
        self._buffer.clear()

        try:
            async with aiofiles.open(self.log_path, "a") as f:
                for entry in entries_to_write:
                    await f.write(entry.model_dump_json() + "\n")
        except OSError as e:
            logger.error("Failed to write audit log", path=str(self.log_path), error=str(e))
            # Keep entries for the next flush, oldest dropped first
            self._buffer[:0] = entries_to_write
            overflow = len(self._buffer) - self.buffer_size * RETAINED_BUFFERS
            if overflow > 0:
                del self._buffer[:overflow]
                logger.warning("Dropped unwritten audit entries", count=overflow)

    async def flush(self) -> None:
        """Public method to flush audit buffer."""
        async with self._lock:
            await self._flush()
