# Shared fixtures for the bridge test suite.
# Created: 2026-10-18

import json
import os

# Settings are read at import time, so the environment must be in place first.
os.environ.setdefault("UPSTREAM_CLIENT_ID", "bridge-client")
os.environ.setdefault("UPSTREAM_CLIENT_SECRET", "bridge-secret")
os.environ.setdefault("UPSTREAM_AUTH_URL", "https://upstream.example/oauth/authorize")
os.environ.setdefault("UPSTREAM_TOKEN_URL", "https://upstream.example/oauth/token")
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "00112233445566778899aabbccddeeff" * 2)
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from urllib.parse import parse_qsl  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy.exc import OperationalError  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from starlette.responses import JSONResponse  # noqa: E402

from oauth_bridge.common.crypto import TokenCipher  # noqa: E402
from oauth_bridge.core.config import Settings  # noqa: E402
from oauth_bridge.core.db import init_db, make_sessionmaker  # noqa: E402
from oauth_bridge.services.auth.auth_services import AuthorizationBroker  # noqa: E402
from oauth_bridge.services.auth.client_registry import ClientRegistry  # noqa: E402
from oauth_bridge.services.auth.token_vault import TokenVault  # noqa: E402
from oauth_bridge.services.auth.upstream import UpstreamOAuthClient  # noqa: E402
from oauth_bridge.services.sessions.registry import ActiveTransportRegistry  # noqa: E402
from oauth_bridge.services.sessions.session_manager import SessionManager  # noqa: E402
from oauth_bridge.services.sessions.transport import SessionContext, Transport  # noqa: E402


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeUpstream:
    """Upstream token endpoint backed by httpx.MockTransport.

    Queue responses (or exceptions) in ``responses``; when the queue is empty
    a fresh token pair is issued.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.responses: list = []
        self._issued = 0
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            outcome = self.responses.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return httpx.Response(200, json=self.next_tokens())

    def next_tokens(self, expires_in: int = 3600) -> dict:
        self._issued += 1
        return {
            "access_token": f"upstream-access-{self._issued}",
            "refresh_token": f"upstream-refresh-{self._issued}",
            "expires_in": expires_in,
            "token_type": "Bearer",
        }

    def form(self, index: int = -1) -> dict:
        return dict(parse_qsl(self.requests[index].content.decode()))


class FakeTransport(Transport):
    """In-process transport answering JSON-RPC with who it belongs to."""

    def __init__(self, context: SessionContext, fail_close: bool = False, reject_initialize: bool = False):
        self.session_id = context.session_id
        self.context = context
        self.fail_close = fail_close
        self.reject_initialize = reject_initialize
        self.started = False
        self.closed = False
        self.bodies: list[bytes] = []

    async def start(self) -> None:
        self.started = True

    async def handle_request(self, scope, receive, send) -> None:
        message = await receive()
        body = message.get("body", b"")
        self.bodies.append(body)
        request = json.loads(body) if body else {}

        if self.reject_initialize and request.get("method") == "initialize":
            payload = {
                "jsonrpc": "2.0",
                "id": request.get("id"),
                "error": {"code": -32602, "message": "Invalid request parameters"},
            }
        else:
            payload = {
                "jsonrpc": "2.0",
                "id": request.get("id"),
                "result": {"session_id": self.session_id, "user_id": self.context.user_id},
            }

        response = JSONResponse(payload, headers={"mcp-session-id": self.session_id})
        await response(scope, receive, send)

    async def close(self) -> None:
        if self.fail_close:
            raise RuntimeError("transport close failed")
        self.closed = True

    async def die(self) -> None:
        """Stop as if the protocol server crashed."""
        self.closed = True
        if self.on_closed:
            await self.on_closed(self.session_id)


class FakeTransportFactory:
    def __init__(self):
        self.created: list[FakeTransport] = []
        self.fail_close = False
        self.reject_initialize = False

    def __call__(self, context: SessionContext) -> FakeTransport:
        transport = FakeTransport(
            context,
            fail_close=self.fail_close,
            reject_initialize=self.reject_initialize,
        )
        self.created.append(transport)
        return transport


class BrokenSessionFactory:
    """Session factory whose sessions fail on entry, like an unreachable DB."""

    def __call__(self):
        return self

    async def __aenter__(self):
        raise OperationalError("SELECT 1", {}, Exception("database is down"))

    async def __aexit__(self, *exc_info):
        return False


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        # sessions share one connection; a reset on return would roll back
        # whatever another session has in flight
        pool_reset_on_return=None,
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_sessionmaker(engine)


@pytest.fixture
def fake_upstream():
    return FakeUpstream()


@pytest.fixture
def cipher(settings):
    return TokenCipher(settings.ENCRYPTION_KEY)


@pytest.fixture
def upstream(settings, fake_upstream):
    return UpstreamOAuthClient(settings, transport=fake_upstream.transport)


@pytest.fixture
def clients(session_factory):
    return ClientRegistry(session_factory)


@pytest.fixture
def vault(session_factory, cipher, upstream):
    return TokenVault(session_factory, cipher, upstream)


@pytest.fixture
def broker(session_factory, clients, vault, upstream, settings):
    return AuthorizationBroker(session_factory, clients, vault, upstream, settings)


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()


@pytest.fixture
def registry():
    return ActiveTransportRegistry()


@pytest.fixture
def manager(session_factory, transport_factory, registry, settings):
    return SessionManager(
        session_factory,
        transport_factory,
        registry=registry,
        settings=settings,
    )


@pytest.fixture
def broken_session_factory():
    return BrokenSessionFactory()
