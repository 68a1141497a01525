from typing import Optional

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import RedirectResponse

from oauth_bridge.common.exceptions import OAuthException
from oauth_bridge.services.auth import auth_services
from oauth_bridge.services.auth.auth_services import AuthorizationBroker
from oauth_bridge.services.auth.client_registry import ClientRegistry
from oauth_bridge.models.dto.auth_models import (
    ProtectedResourceMetadata,
    AuthorizationServerMetadata,
    ClientRegistrationResponse,
    TokenResponse,
    ClientRegistrationRequest,
)

router = APIRouter()


def get_broker(request: Request) -> AuthorizationBroker:
    return request.app.state.broker


def get_clients(request: Request) -> ClientRegistry:
    return request.app.state.clients

# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------

@router.get(
    "/.well-known/oauth-protected-resource",
    response_model=ProtectedResourceMetadata,
)
def protected_resource_metadata(request: Request):
    return auth_services.protected_resource_metadata(request.app.state.settings)


@router.get(
    "/.well-known/oauth-authorization-server",
    response_model=AuthorizationServerMetadata,
)
def authorization_server_metadata(request: Request):
    return auth_services.authorization_server_metadata(request.app.state.settings)

# ---------------------------------------------------------------------------
# Client registration
# ---------------------------------------------------------------------------

@router.post(
    "/register",
    response_model=ClientRegistrationResponse,
    status_code=201,
)
async def register_client(
    payload: ClientRegistrationRequest,
    clients: ClientRegistry = Depends(get_clients),
):
    if set(payload.grant_types) - {"authorization_code"}:
        raise OAuthException(
            error="invalid_client_metadata",
            description="Only grant_type=authorization_code is supported",
        )

    if set(payload.response_types) - {"code"}:
        raise OAuthException(
            error="invalid_client_metadata",
            description="Only response_type=code is supported",
        )

    if payload.token_endpoint_auth_method not in (None, "none"):
        raise OAuthException(
            error="invalid_client_metadata",
            description="Only token_endpoint_auth_method=none is supported",
        )

    client = await clients.register(payload.redirect_uris, payload.client_name)

    return {
        "client_id": client.client_id,
        "client_id_issued_at": client.client_id_issued_at,
        "client_name": client.client_name,
        "redirect_uris": client.redirect_uris,
        "grant_types": client.grant_types,
        "response_types": client.response_types,
        "token_endpoint_auth_method": client.token_endpoint_auth_method,
    }

# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------

@router.get("/authorize")
async def authorize(
    client_id: str,
    redirect_uri: str,
    response_type: str = "code",
    state: str = "",
    code_challenge: Optional[str] = None,
    code_challenge_method: Optional[str] = None,
    broker: AuthorizationBroker = Depends(get_broker),
):
    if response_type != "code":
        raise OAuthException(
            error="unsupported_response_type",
            description=f"Unsupported response_type: {response_type}",
        )

    upstream_url = await broker.begin_authorization(
        client_id=client_id,
        redirect_uri=redirect_uri,
        state=state,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
    )
    return RedirectResponse(upstream_url, status_code=302)

# ---------------------------------------------------------------------------
# Upstream callback
# ---------------------------------------------------------------------------

@router.get("/callback/upstream")
async def upstream_callback(
    state: str,
    code: Optional[str] = None,
    error: Optional[str] = None,
    broker: AuthorizationBroker = Depends(get_broker),
):
    if error:
        redirect_url = await broker.deny_upstream_callback(state, error)
    elif code:
        redirect_url = await broker.complete_upstream_callback(code, state)
    else:
        raise OAuthException(
            error="invalid_request",
            description="Missing code parameter",
        )

    return RedirectResponse(redirect_url, status_code=302)

# ---------------------------------------------------------------------------
# Token endpoint
# ---------------------------------------------------------------------------

@router.post("/token", response_model=TokenResponse)
async def token(
    grant_type: str = Form(...),
    code: str = Form(...),
    code_verifier: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    redirect_uri: Optional[str] = Form(None),
    broker: AuthorizationBroker = Depends(get_broker),
):
    if grant_type != "authorization_code":
        raise OAuthException(
            error="unsupported_grant_type",
            description=f"Unsupported grant_type: {grant_type}",
        )

    return await broker.exchange_code(
        code=code,
        code_verifier=code_verifier,
        client_id=client_id,
        redirect_uri=redirect_uri,
    )
