"""Resource Gateway server - registry, policies, sessions and protocol.

The server is the authoritative component for tool execution.
It authenticates callers, manages sessions, enforces resource policies,
dispatches calls to domains, and audits all executions.
"""

from mcp_server.registry import ToolRegistry
from mcp_server.policy import CommandPolicy, PathPolicy, SecurityPolicies, StatementPolicy
from mcp_server.auth import AuthGate, AuthOutcome
from mcp_server.audit import AuditLogger
from mcp_server.engine import ProtocolEngine
from mcp_server.sessions import SessionManager

__all__ = [
    "ToolRegistry",
    "PathPolicy",
    "CommandPolicy",
    "StatementPolicy",
    "SecurityPolicies",
    "AuthGate",
    "AuthOutcome",
    "AuditLogger",
    "ProtocolEngine",
    "SessionManager",
]
