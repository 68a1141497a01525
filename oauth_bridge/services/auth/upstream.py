import logging
from typing import Optional
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from oauth_bridge.common.exceptions import (
    UpstreamRetryable,
    UpstreamRevoked,
    UpstreamUnavailable,
)
from oauth_bridge.core.config import Settings, settings as default_settings
from oauth_bridge.models.dto.auth_models import UpstreamTokenResponse

logger = logging.getLogger(__name__)


class UpstreamOAuthClient:
    """
    OAuth client for the upstream provider.

    Every call is bounded by ``UPSTREAM_TIMEOUT_SECONDS``. A timeout or a
    network failure is retryable; a non-2xx answer is a hard rejection.
    """

    def __init__(
        self,
        settings: Settings = default_settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._settings = settings
        self._transport = transport

    # Shared helper: one client per request (simple & safe)
    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._settings.UPSTREAM_TIMEOUT_SECONDS,
            transport=self._transport,
        )

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self._settings.UPSTREAM_CLIENT_ID,
            "redirect_uri": self._settings.UPSTREAM_REDIRECT_URI,
            "response_type": "code",
            "scope": self._settings.UPSTREAM_SCOPE,
            "state": state,
        }
        return f"{self._settings.UPSTREAM_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> UpstreamTokenResponse:
        response = await self._post_token({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._settings.UPSTREAM_REDIRECT_URI,
        })

        if not response.is_success:
            logger.warning(f"[UPSTREAM] Code exchange rejected with HTTP {response.status_code}")
            raise UpstreamUnavailable("Failed to exchange upstream authorization code")

        return self._parse(response)

    async def refresh(self, refresh_token: str) -> UpstreamTokenResponse:
        response = await self._post_token({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })

        if response.status_code >= 500:
            logger.warning(f"[UPSTREAM] Token refresh failed with HTTP {response.status_code}")
            raise UpstreamRetryable("Upstream provider is unavailable, please retry")

        if not response.is_success:
            logger.warning(f"[UPSTREAM] Refresh token rejected with HTTP {response.status_code}")
            raise UpstreamRevoked()

        return self._parse(response)

    async def _post_token(self, data: dict) -> httpx.Response:
        data = {
            **data,
            "client_id": self._settings.UPSTREAM_CLIENT_ID,
            "client_secret": self._settings.UPSTREAM_CLIENT_SECRET,
        }

        try:
            async with self._client() as client:
                return await client.post(
                    self._settings.UPSTREAM_TOKEN_URL,
                    data=data,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        except httpx.TimeoutException as exc:
            logger.warning(f"[UPSTREAM] Token endpoint timed out ({data['grant_type']})")
            raise UpstreamRetryable("Upstream provider timed out", status_code=504) from exc
        except httpx.TransportError as exc:
            logger.warning(f"[UPSTREAM] Token endpoint unreachable ({data['grant_type']}): {exc}")
            raise UpstreamRetryable("Upstream provider is unreachable") from exc

    @staticmethod
    def _parse(response: httpx.Response) -> UpstreamTokenResponse:
        try:
            return UpstreamTokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise UpstreamUnavailable("Upstream token response was malformed") from exc
