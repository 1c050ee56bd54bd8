"""Authentication gate for the Resource Gateway.

Every request to the protocol endpoint must present the shared bearer
token configured at boot. A missing credential and a wrong credential
are logged differently but receive the identical 401 response, so a
caller cannot tell which one happened.
"""

import hmac
from enum import Enum
from typing import Optional

from fastapi import HTTPException, Request, status

from shared.errors import ConfigurationError
from shared.logging import get_logger

logger = get_logger(__name__)

BEARER_PREFIX = "bearer "
UNAUTHORIZED_BODY = {"error": "Unauthorized"}


class AuthOutcome(str, Enum):
    """Result of checking a request's credential."""
    AUTHENTICATED = "authenticated"
    MISSING_CREDENTIAL = "missing_credential"
    INVALID_CREDENTIAL = "invalid_credential"


def extract_bearer(header: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer <token>`` header, if any."""
    if not header:
        return None
    if not header.lower().startswith(BEARER_PREFIX):
        return None
    token = header[len(BEARER_PREFIX):].strip()
    return token or None


class AuthGate:
    """
    Shared-secret bearer authentication.

    Used as a FastAPI dependency on every protected route.
    """

    def __init__(self, expected_token: Optional[str]) -> None:
        if not expected_token:
            raise ConfigurationError("MCP_TOKEN is required")
        self._expected = expected_token.encode("utf-8")

    def evaluate(self, authorization: Optional[str]) -> AuthOutcome:
        """
        Classify an ``Authorization`` header value.

        The comparison is constant time.
        """
        token = extract_bearer(authorization)
        if token is None:
            if authorization:
                # Present but not a bearer credential
                return AuthOutcome.INVALID_CREDENTIAL
            return AuthOutcome.MISSING_CREDENTIAL

        if hmac.compare_digest(token.encode("utf-8"), self._expected):
            return AuthOutcome.AUTHENTICATED
        return AuthOutcome.INVALID_CREDENTIAL

    async def __call__(self, request: Request) -> None:
        """
        FastAPI dependency for authentication.

        Raises:
            HTTPException: 401 for any outcome other than AUTHENTICATED
        """
        outcome = self.evaluate(request.headers.get("authorization"))
        if outcome is AuthOutcome.AUTHENTICATED:
            return

        logger.warning(
            "Authentication failed",
            reason=outcome.value,
            client=request.client.host if request.client else None,
            path=request.url.path
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=UNAUTHORIZED_BODY,
            headers={"WWW-Authenticate": "Bearer"},
        )
