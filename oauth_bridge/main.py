import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from sqlalchemy.ext.asyncio import AsyncEngine

from oauth_bridge.common.crypto import TokenCipher
from oauth_bridge.common.exceptions import attach_exception_handlers
from oauth_bridge.core import db
from oauth_bridge.core.config import Settings, settings as default_settings
from oauth_bridge.core.logging_config import setup_logging
from oauth_bridge.routes.auth.auth_routes import router
from oauth_bridge.routes.mcp.mcp_routes import McpEndpoint
from oauth_bridge.services.auth.auth_services import AuthorizationBroker
from oauth_bridge.services.auth.client_registry import ClientRegistry
from oauth_bridge.services.auth.token_vault import TokenVault
from oauth_bridge.services.auth.upstream import UpstreamOAuthClient
from oauth_bridge.services.sessions.session_manager import SessionManager
from oauth_bridge.services.sessions.transport import TransportFactory
from oauth_bridge.tool_server.server import mcp_transport_factory

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings = default_settings,
    engine: Optional[AsyncEngine] = None,
    upstream_transport: Optional[httpx.AsyncBaseTransport] = None,
    transport_factory: Optional[TransportFactory] = None,
) -> FastAPI:
    engine = engine or db.engine
    session_factory = db.make_sessionmaker(engine)

    upstream = UpstreamOAuthClient(settings, transport=upstream_transport)
    clients = ClientRegistry(session_factory)
    vault = TokenVault(session_factory, TokenCipher(settings.ENCRYPTION_KEY), upstream)
    broker = AuthorizationBroker(session_factory, clients, vault, upstream, settings)
    sessions = SessionManager(
        session_factory,
        transport_factory or mcp_transport_factory(vault, settings),
        oauth_cleanup=broker.cleanup_expired_data,
        settings=settings,
    )

    # Lifespan
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # ---- Startup ----
        await db.init_db(engine)
        sessions.start()
        logger.info(f"[STARTUP] {settings.APP_NAME} started at {settings.BASE_URL} ({settings.ENV})")
        yield
        # ---- Shutdown ----
        try:
            await asyncio.wait_for(sessions.shutdown(), timeout=settings.GRACEFUL_SHUTDOWN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.error("[SHUTDOWN] Forced shutdown after timeout, open transports abandoned")
        await db.close_db(engine)

    # app
    app = FastAPI(
        title=settings.APP_NAME,
        debug=settings.DEBUG,
        openapi_url="/openapi.json" if settings.DEBUG else None,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url=None,
        lifespan=lifespan
    )

    app.state.settings = settings
    app.state.clients = clients
    app.state.vault = vault
    app.state.broker = broker
    app.state.sessions = sessions

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOW_ORIGINS,
        allow_methods=settings.CORS_ALLOW_METHODS,
        allow_headers=settings.CORS_ALLOW_HEADERS,
        expose_headers=["mcp-session-id"],
    )

    # Allowed hosts
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=[host for host in settings.ALLOWED_HOSTS.split(",") if host],
    )

    # Mount router
    app.include_router(router)

    # MCP endpoint (raw ASGI, streams responses itself)
    app.add_route(
        "/mcp",
        McpEndpoint(broker, sessions, settings),
        methods=["GET", "POST", "DELETE"],
        include_in_schema=False,
    )

    # Attach exception handlers
    attach_exception_handlers(app)

    return app


setup_logging(default_settings.LOG_LEVEL, default_settings.LOG_JSON, default_settings.APP_NAME)
app = create_app()
