from pydantic import BaseModel, Field, field_validator, ConfigDict
from typing import List, Optional

from oauth_bridge.common.utils import is_absolute_uri


# ----- Well-known -----
class ProtectedResourceMetadata(BaseModel):
    resource: str
    authorization_servers: List[str]
    bearer_methods_supported: List[str]
    scopes_supported: List[str]


class AuthorizationServerMetadata(BaseModel):
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: str
    scopes_supported: List[str]
    response_types_supported: List[str]
    grant_types_supported: List[str]
    code_challenge_methods_supported: List[str]
    token_endpoint_auth_methods_supported: List[str]


# ----- Client Registration -----
class ClientRegistrationRequest(BaseModel):
    client_name: Optional[str] = None
    redirect_uris: List[str] = Field(min_length=1)
    grant_types: List[str] = ["authorization_code"]
    response_types: List[str] = ["code"]
    token_endpoint_auth_method: Optional[str] = "none"

    model_config = ConfigDict(extra="allow")

    @field_validator("redirect_uris")
    @classmethod
    def _absolute_redirect_uris(cls, value: List[str]) -> List[str]:
        for uri in value:
            if not is_absolute_uri(uri):
                raise ValueError(f"redirect_uri must be an absolute URI: {uri}")
        return value


class ClientRegistrationResponse(BaseModel):
    client_id: str
    client_id_issued_at: int
    client_name: Optional[str] = None
    redirect_uris: List[str]
    grant_types: List[str]
    response_types: List[str]
    token_endpoint_auth_method: str


# ----- Token -----
class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    scope: str


# ----- Upstream provider -----
class UpstreamTokenResponse(BaseModel):
    """Token endpoint payload returned by the upstream provider."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int
    token_type: str = "Bearer"

    model_config = ConfigDict(extra="ignore")
