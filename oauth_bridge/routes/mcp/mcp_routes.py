import json
from dataclasses import dataclass
from typing import Optional

from starlette.requests import Request
from starlette.responses import Response
from starlette.types import Message, Receive, Scope, Send

from oauth_bridge.common.exceptions import (
    InvalidAccessToken,
    SessionError,
    SessionForbidden,
    SessionNotFound,
)
from oauth_bridge.core.config import Settings, settings as default_settings
from oauth_bridge.services.auth.auth_services import AuthorizationBroker, www_authenticate_header
from oauth_bridge.services.sessions.registry import ActiveTransport
from oauth_bridge.services.sessions.session_manager import SessionManager

BEARER_PREFIX = "Bearer "
SESSION_HEADER = "mcp-session-id"
ALLOWED_METHODS = "GET, POST, DELETE"


@dataclass(frozen=True)
class RequestContext:
    user_id: str
    session_id: Optional[str]


def is_initialize_request(body: bytes) -> bool:
    try:
        message = json.loads(body)
    except ValueError:
        return False

    return isinstance(message, dict) and message.get("method") == "initialize"


class McpEndpoint:
    """
    ASGI endpoint for ``/mcp``.

    Resolves the bearer token to a user, then either initializes a new
    session (POST with an ``initialize`` body and no session header) or
    routes the request to the caller's live session.
    """

    def __init__(
        self,
        broker: AuthorizationBroker,
        sessions: SessionManager,
        settings: Settings = default_settings,
    ):
        self._broker = broker
        self._sessions = sessions
        self._settings = settings

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        context = await self._resolve_context(request)

        if request.method == "POST":
            await self._post(context, request, scope, send)
        elif request.method == "GET":
            entry = await self._owned_session(context)
            await entry.transport.handle_request(scope, receive, send)
        elif request.method == "DELETE":
            await self._owned_session(context)
            await self._sessions.terminate_session(context.session_id)
            await Response(status_code=204)(scope, receive, send)
        else:
            # HEAD is added implicitly for GET routes; it must never reach a session
            await Response(status_code=405, headers={"Allow": ALLOWED_METHODS})(scope, receive, send)

    async def _resolve_context(self, request: Request) -> RequestContext:
        auth_header = request.headers.get("authorization", "")
        if not auth_header.startswith(BEARER_PREFIX):
            raise InvalidAccessToken(
                error="unauthorized",
                description="Missing or invalid Authorization header",
                headers=www_authenticate_header(self._settings),
            )

        user_id = await self._broker.resolve_access_token(auth_header[len(BEARER_PREFIX):])
        return RequestContext(user_id=user_id, session_id=request.headers.get(SESSION_HEADER))

    async def _owned_session(self, context: RequestContext) -> ActiveTransport:
        if not context.session_id:
            raise SessionError("Missing session ID")

        entry = await self._sessions.retrieve_session(context.session_id)
        if not entry:
            raise SessionNotFound()

        if entry.user_id != context.user_id:
            raise SessionForbidden()

        return entry

    async def _post(self, context: RequestContext, request: Request, scope: Scope, send: Send) -> None:
        # the body is read once here, then replayed to the transport
        body = await request.body()

        async def replay() -> Message:
            return {"type": "http.request", "body": body, "more_body": False}

        if context.session_id:
            entry = await self._owned_session(context)
            await entry.transport.handle_request(scope, replay, send)
            return

        if not is_initialize_request(body):
            raise SessionError("Missing session ID for non-initialize request")

        # the manager answers the initialize itself, once the session is recorded
        await self._sessions.create_session(context.user_id, scope, replay, send)
