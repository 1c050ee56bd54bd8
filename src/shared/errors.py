"""Exception hierarchy for the Resource Gateway.

    GatewayError
    +-- ConfigurationError   (fatal at boot, process must not serve traffic)
    +-- ToolExecutionError   (collaborator failure inside a tool handler)
"""

from typing import Any, Optional


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(GatewayError):
    """Raised at startup when required configuration is missing or invalid."""


class ToolExecutionError(GatewayError):
    """
    Raised by a collaborator (remote API, subprocess, database) when the
    underlying operation fails.

    Handlers let it propagate; the registry converts it into an
    error-flagged result at the dispatch boundary.
    """

    def __init__(
        self,
        message: str,
        code: str = "EXECUTION_ERROR",
        details: Optional[dict[str, Any]] = None
    ) -> None:
        super().__init__(message, details)
        self.code = code
