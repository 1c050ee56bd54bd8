"""Shared utilities and base classes for the Resource Gateway."""

from shared.models import (
    ToolDescriptor,
    ToolArguments,
    ToolResult,
    ExecutionContext,
    AuditEntry,
)
from shared.config import Settings, get_settings
from shared.errors import GatewayError, ConfigurationError, ToolExecutionError
from shared.logging import get_logger, setup_logging

__all__ = [
    "ToolDescriptor",
    "ToolArguments",
    "ToolResult",
    "ExecutionContext",
    "AuditEntry",
    "Settings",
    "get_settings",
    "GatewayError",
    "ConfigurationError",
    "ToolExecutionError",
    "get_logger",
    "setup_logging",
]
