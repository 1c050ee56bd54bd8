"""Resource Gateway - FastAPI Application.

Exposes the tool catalog over authenticated, session-based HTTP.
The application is built by ``create_app`` from validated settings;
``main`` is the console entry point that refuses to start on a
configuration error.
"""

import asyncio
import contextlib
import json
import sys
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from shared.config import Settings, get_settings
from shared.errors import ConfigurationError
from shared.logging import bind_context, clear_context, get_logger, setup_logging
from shared.models import HealthResponse, IdentityResponse, utcnow
from mcp_server.audit import AuditLogger
from mcp_server.auth import AuthGate
from mcp_server.engine import (
    PARSE_ERROR,
    SERVER_NAME,
    SERVER_VERSION,
    SessionClosedError,
    error_response,
)
from mcp_server.registry import ToolRegistry
from mcp_server.sessions import SESSION_HEADER, Session, SessionManager, validate_session_id

from domains import load_all_domains

logger = get_logger(__name__)

PROTOCOL_PATH = "/mcp"


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render HTTP errors as ``{"error": ...}`` bodies."""
    detail = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=detail, headers=exc.headers)


def _is_initialize(payload: Any) -> bool:
    """Whether the payload opens a session (an initialize request, alone or in a batch)."""
    if isinstance(payload, dict):
        return payload.get("method") == "initialize"
    if isinstance(payload, list):
        return any(isinstance(m, dict) and m.get("method") == "initialize" for m in payload)
    return False


def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[ToolRegistry] = None
) -> FastAPI:
    """
    Build the gateway application.

    Args:
        settings: Application settings (defaults to ``get_settings()``)
        registry: Pre-populated registry; when omitted every domain is loaded

    Raises:
        ConfigurationError: If no shared token is configured
    """
    settings = settings or get_settings()

    auth_gate = AuthGate(settings.server.token)

    adapters = []
    if registry is None:
        registry = ToolRegistry()
        adapters = load_all_domains(registry, settings)

    if registry.audit_logger is None:
        registry.audit_logger = AuditLogger(
            log_path=settings.server.audit_log_path,
            enabled=settings.server.enable_audit
        )
    audit_logger = registry.audit_logger

    if not registry.frozen:
        registry.freeze()

    sessions = SessionManager(registry, idle_minutes=settings.server.session_idle_minutes)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        logger.info(
            "Resource Gateway started",
            tool_count=len(registry),
            categories=registry.get_tool_count()
        )
        sweeper = asyncio.create_task(
            sessions.run_sweeper(settings.server.session_sweep_seconds)
        )

        yield

        logger.info("Shutting down Resource Gateway")
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        await sessions.close_all()
        for adapter in adapters:
            await adapter.close()
        await audit_logger.flush()

    app = FastAPI(
        title="Resource Gateway",
        description="Authenticated tool gateway for filesystem, system, database, vault and network resources",
        version=SERVER_VERSION,
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.registry = registry
    app.state.sessions = sessions
    app.state.auth_gate = auth_gate

    app.add_exception_handler(StarletteHTTPException, http_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
        expose_headers=[SESSION_HEADER],
    )

    def session_not_found() -> HTTPException:
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")

    async def resolve_session(raw_session_id: str) -> Session:
        if not validate_session_id(raw_session_id):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed session ID")
        session = await sessions.get(raw_session_id)
        if session is None:
            raise session_not_found()
        return session

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check():
        """Liveness probe. Does not require authentication."""
        return HealthResponse(status="ok", timestamp=utcnow())

    @app.post(PROTOCOL_PATH, tags=["Protocol"], dependencies=[Depends(auth_gate)])
    async def post_message(request: Request):
        """
        Deliver one JSON-RPC message or batch.

        Without a session header only an initialize request is accepted;
        it creates the session whose id is returned in the response header.
        """
        raw_session_id = request.headers.get(SESSION_HEADER)
        session = await resolve_session(raw_session_id) if raw_session_id is not None else None

        try:
            payload = json.loads(await request.body())
        except (json.JSONDecodeError, UnicodeDecodeError):
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content=error_response(None, PARSE_ERROR, "Parse error"),
            )

        created = session is None
        if created:
            if not _is_initialize(payload):
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing session ID")
            session = await sessions.create()

        bind_context(session_id=session.session_id)
        try:
            response = await session.engine.handle(payload)
        except SessionClosedError:
            raise session_not_found()
        finally:
            clear_context()

        # A session is only issued for a handshake that actually completed
        if created and not session.engine.initialized:
            await sessions.close(session.session_id)
            if response is None:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid initialize request")
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=response)

        headers = {SESSION_HEADER: session.session_id}
        if response is None:
            return Response(status_code=status.HTTP_202_ACCEPTED, headers=headers)
        return JSONResponse(content=response, headers=headers)

    @app.get(PROTOCOL_PATH, tags=["Protocol"], dependencies=[Depends(auth_gate)])
    async def probe(request: Request):
        """Identity probe without a session; no event stream is offered."""
        raw_session_id = request.headers.get(SESSION_HEADER)
        if raw_session_id is None:
            return IdentityResponse(name=SERVER_NAME, version=SERVER_VERSION)

        await resolve_session(raw_session_id)
        raise HTTPException(
            status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
            detail="Server-initiated event streams are not supported",
            headers={"Allow": "POST, DELETE"},
        )

    @app.delete(PROTOCOL_PATH, tags=["Protocol"], dependencies=[Depends(auth_gate)])
    async def close_session(request: Request):
        """Terminate a session."""
        raw_session_id = request.headers.get(SESSION_HEADER)
        if raw_session_id is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing session ID")
        if not validate_session_id(raw_session_id):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed session ID")

        if not await sessions.close(raw_session_id):
            raise session_not_found()
        return {"status": "closed"}

    return app


def main():
    """Run the Resource Gateway."""
    import uvicorn

    try:
        settings = get_settings()
        setup_logging(settings.log_level, json_output=settings.environment == "production")
        settings.validate_for_serving()
        app = create_app(settings)
    except ConfigurationError as e:
        setup_logging()
        logger.error("Invalid configuration", error=e.message, **e.details)
        sys.exit(1)

    ssl_options = {}
    if settings.server.use_https:
        ssl_options = {
            "ssl_certfile": settings.server.ssl_cert_path,
            "ssl_keyfile": settings.server.ssl_key_path,
        }

    logger.info(
        "Listening",
        host=settings.server.host,
        port=settings.server.port,
        https=settings.server.use_https
    )

    uvicorn.run(
        app,
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.log_level.lower(),
        **ssl_options
    )


if __name__ == "__main__":
    main()
