"""Security policy enforcers.

Every tool that touches a sensitive resource consults one of these
before doing anything:

- PathPolicy: canonical path containment against an allowlist
- CommandPolicy: command whitelist (exact or argument-separated prefix)
- StatementPolicy: read-only SQL filter

Enforcers are pure decision functions over the candidate and the
configuration injected at construction. They never raise for a bad
candidate; they return a denied PolicyDecision instead. An empty
allowlist means "deny everything".
"""

import os
from enum import Enum
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict

from shared.config import PolicySettings
from shared.logging import get_logger

logger = get_logger(__name__)


class PolicyCategory(str, Enum):
    """Which constraint produced a decision."""
    PATH = "path containment"
    COMMAND = "command whitelist"
    STATEMENT = "statement filter"


class PolicyDecision(BaseModel):
    """
    Outcome of a policy evaluation.

    ``target`` is the resolved form of the candidate (canonical path,
    trimmed command or statement). Handlers must operate on it, never
    on the raw caller-supplied string.
    """
    model_config = ConfigDict(frozen=True)

    allowed: bool
    category: PolicyCategory
    candidate: str
    target: Optional[str] = None
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed

    @property
    def message(self) -> str:
        """User-visible denial text naming the violated policy."""
        return f"Access denied ({self.category.value}): {self.reason}"


class PathPolicy:
    """Allow a path only if its canonical form lies under an allowed root."""

    category = PolicyCategory.PATH

    def __init__(self, allowed_paths: Iterable[str]) -> None:
        self.allowed_roots: tuple[str, ...] = tuple(
            os.path.realpath(os.path.expanduser(p.strip()))
            for p in allowed_paths
            if p and p.strip()
        )

    def _deny(self, candidate: str, reason: str) -> PolicyDecision:
        logger.warning("Policy denied", policy=self.category.value, candidate=candidate, reason=reason)
        return PolicyDecision(
            allowed=False, category=self.category, candidate=candidate, reason=reason
        )

    @staticmethod
    def _contains(root: str, target: str) -> bool:
        if target == root:
            return True
        return target.startswith(root.rstrip(os.sep) + os.sep)

    def evaluate(self, candidate: str) -> PolicyDecision:
        """
        Evaluate a filesystem path.

        The candidate is canonicalized with ``os.path.realpath`` so that
        ``..`` segments and symlinks are resolved before comparison.
        Containment is checked on path-component boundaries: ``/data2``
        is not inside ``/data``.
        """
        if not self.allowed_roots:
            return self._deny(candidate, "no allowed paths are configured")

        if not candidate or "\x00" in candidate:
            return self._deny(candidate, "invalid path")

        resolved = os.path.realpath(os.path.expanduser(candidate))

        for root in self.allowed_roots:
            if self._contains(root, resolved):
                return PolicyDecision(
                    allowed=True,
                    category=self.category,
                    candidate=candidate,
                    target=resolved,
                )

        return self._deny(candidate, f"{candidate} is not in allowed paths")


class CommandPolicy:
    """Allow a command only if it is whitelisted."""

    category = PolicyCategory.COMMAND

    def __init__(self, allowed_commands: Iterable[str]) -> None:
        self.allowed_commands: tuple[str, ...] = tuple(
            c.strip() for c in allowed_commands if c and c.strip()
        )

    def evaluate(self, candidate: str) -> PolicyDecision:
        """
        Evaluate the literal command string supplied by the caller.

        Allowed when the trimmed command equals a whitelist entry, or
        starts with an entry followed by a space. ``dfx`` does not match
        ``df``.
        """
        command = (candidate or "").strip()

        for allowed in self.allowed_commands:
            if command == allowed or command.startswith(allowed + " "):
                return PolicyDecision(
                    allowed=True,
                    category=self.category,
                    candidate=candidate,
                    target=command,
                )

        reason = f"command not allowed: {command or '(empty)'}"
        logger.warning("Policy denied", policy=self.category.value, candidate=command)
        return PolicyDecision(
            allowed=False, category=self.category, candidate=candidate, reason=reason
        )


class StatementPolicy:
    """
    Conservative read-only filter for SQL text.

    This is not a parser. A statement is denied unless it starts with
    SELECT, and denied if any forbidden keyword appears anywhere in it,
    string literals and identifiers included (``last_updated`` trips
    ``update``). False positives are accepted.
    """

    category = PolicyCategory.STATEMENT
    READ_ONLY_KEYWORD = "select"

    def __init__(self, forbidden_keywords: Iterable[str]) -> None:
        self.forbidden_keywords: tuple[str, ...] = tuple(
            k.strip().casefold() for k in forbidden_keywords if k and k.strip()
        )

    def _deny(self, candidate: str, reason: str) -> PolicyDecision:
        logger.warning("Policy denied", policy=self.category.value, reason=reason)
        return PolicyDecision(
            allowed=False, category=self.category, candidate=candidate, reason=reason
        )

    def evaluate(self, candidate: str) -> PolicyDecision:
        statement = (candidate or "").strip()
        normalized = statement.casefold()

        if not normalized.startswith(self.READ_ONLY_KEYWORD):
            return self._deny(candidate, "only SELECT queries are allowed")

        for keyword in self.forbidden_keywords:
            if keyword in normalized:
                return self._deny(candidate, f"query contains forbidden keyword: {keyword}")

        return PolicyDecision(
            allowed=True,
            category=self.category,
            candidate=candidate,
            target=statement,
        )


class SecurityPolicies(BaseModel):
    """The three process-wide enforcers, built once from PolicySettings."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    paths: PathPolicy
    commands: CommandPolicy
    statements: StatementPolicy

    @classmethod
    def from_settings(cls, settings: PolicySettings) -> "SecurityPolicies":
        return cls(
            paths=PathPolicy(settings.allowed_paths),
            commands=CommandPolicy(settings.allowed_commands),
            statements=StatementPolicy(settings.forbidden_statement_keywords),
        )
