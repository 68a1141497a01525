from typing import Any, Dict, Optional

from mcp.server import FastMCP
from mcp.server.lowlevel import Server
from mcp.server.transport_security import TransportSecuritySettings

from oauth_bridge.common.exceptions import NoUpstreamAccount, UpstreamUnavailable
from oauth_bridge.common.responses import AppResponse
from oauth_bridge.core.config import Settings, settings as default_settings
from oauth_bridge.services.auth.token_vault import TokenVault
from oauth_bridge.services.sessions.transport import McpTransport, SessionContext, Transport


def build_tool_server(
    context: SessionContext,
    vault: TokenVault,
    settings: Settings = default_settings,
) -> FastMCP:
    """
    Build the tool server for one session.

    The session's identity is bound here, so tools never look it up from
    request globals.
    """
    mcp = FastMCP(name=settings.APP_NAME, json_response=True)

    async def upstream_headers() -> Dict[str, str]:
        access_token = await vault.get_valid(context.user_id)
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

    @mcp.tool()
    async def check_upstream_connection() -> Dict[str, Any]:
        """
        Check that the user's upstream account is connected and usable.

        Use when:
        - A tool call failed with an authorization problem
        - The user asks whether their account is linked

        Returns:
            Dict[str, Any]:
                {
                    "status": bool,
                    "message": str,
                    "data": {"retryable": bool} | None
                }
        """
        try:
            await upstream_headers()
        except NoUpstreamAccount as exc:
            response = AppResponse(status=False, message=exc.message)
        except UpstreamUnavailable as exc:
            response = AppResponse(
                status=False,
                message=exc.message,
                data={"retryable": exc.retryable},
            )
        else:
            response = AppResponse(status=True, message="Upstream account connected")

        return response.model_dump()

    return mcp


def transport_security(settings: Settings = default_settings) -> Optional[TransportSecuritySettings]:
    hosts = [host for host in settings.ALLOWED_HOSTS.split(",") if host]
    if not hosts or "*" in hosts:
        return None

    return TransportSecuritySettings(
        enable_dns_rebinding_protection=True,
        allowed_hosts=hosts,
        allowed_origins=[origin for origin in settings.ALLOWED_ORIGINS.split(",") if origin],
    )


def lowlevel_server(tool_server: FastMCP) -> Server:
    # FastMCP has no public accessor for the protocol server it wraps; the
    # per-session transport drives it directly instead of FastMCP's HTTP app.
    return tool_server._mcp_server


def mcp_transport_factory(vault: TokenVault, settings: Settings = default_settings):
    security = transport_security(settings)

    def create(context: SessionContext) -> Transport:
        tool_server = build_tool_server(context, vault, settings)
        return McpTransport(context, lowlevel_server(tool_server), security)

    return create
