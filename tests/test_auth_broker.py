# Tests for the two-hop authorization broker.
# Created: 2026-10-18

import asyncio
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from sqlalchemy import select, update

from oauth_bridge.common.exceptions import (
    ClientError,
    GrantInvalid,
    InvalidAccessToken,
    MissingCodeVerifier,
    OAuthException,
    RedirectMismatch,
    StateInvalidOrExpired,
    UpstreamUnavailable,
)
from oauth_bridge.common.security import generate_pkce_pair
from oauth_bridge.common.utils import utcnow
from oauth_bridge.models.persistance.auth import AccessToken, AuthorizationCode, OAuthState
from oauth_bridge.models.persistance.tokens import UpstreamToken
from oauth_bridge.services.auth.auth_services import (
    authorization_server_metadata,
    protected_resource_metadata,
)

REDIRECT_URI = "https://client.example/cb"


def _query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


@pytest.fixture
async def client_id(clients):
    client = await clients.register([REDIRECT_URI], "Test Client")
    return client.client_id


@pytest.fixture
def pkce():
    return generate_pkce_pair()


async def _authorize(broker, client_id, pkce, client_state="client-xyz") -> str:
    _, challenge = pkce
    upstream_url = await broker.begin_authorization(
        client_id=client_id,
        redirect_uri=REDIRECT_URI,
        state=client_state,
        code_challenge=challenge,
        code_challenge_method="S256",
    )
    return _query(upstream_url)["state"]


async def _issue_code(broker, client_id, pkce) -> str:
    correlation = await _authorize(broker, client_id, pkce)
    redirect = await broker.complete_upstream_callback("upstream-code", correlation)
    return _query(redirect)["code"]


class TestBeginAuthorization:
    async def test_redirects_upstream_with_fresh_correlation(self, broker, client_id, pkce, settings):
        _, challenge = pkce
        url = await broker.begin_authorization(client_id, REDIRECT_URI, "client-xyz", challenge, "S256")

        assert url.startswith(settings.UPSTREAM_AUTH_URL)
        params = _query(url)
        assert params["client_id"] == settings.UPSTREAM_CLIENT_ID
        assert params["redirect_uri"] == settings.UPSTREAM_REDIRECT_URI
        assert params["response_type"] == "code"
        # the downstream client's state never leaves for the upstream
        assert params["state"] != "client-xyz"

    async def test_unknown_client(self, broker):
        with pytest.raises(ClientError):
            await broker.begin_authorization("nope", REDIRECT_URI, "s")

    async def test_unregistered_redirect_uri(self, broker, client_id):
        with pytest.raises(RedirectMismatch):
            await broker.begin_authorization(client_id, "https://evil.example/cb", "s")

    async def test_unsupported_challenge_method(self, broker, client_id):
        with pytest.raises(OAuthException) as exc_info:
            await broker.begin_authorization(client_id, REDIRECT_URI, "s", "challenge", "S512")
        assert exc_info.value.error == "invalid_request"

    async def test_challenge_without_method_stored_as_plain(self, broker, client_id, session_factory):
        url = await broker.begin_authorization(client_id, REDIRECT_URI, "s", code_challenge="verifier")

        async with session_factory() as db:
            record = await db.get(OAuthState, _query(url)["state"])
        assert record.pkce_method == "plain"


class TestUpstreamCallback:
    async def test_issues_code_and_echoes_client_state(self, broker, client_id, pkce, fake_upstream):
        correlation = await _authorize(broker, client_id, pkce, client_state="client-xyz")

        redirect = await broker.complete_upstream_callback("upstream-code", correlation)

        assert redirect.startswith(REDIRECT_URI)
        params = _query(redirect)
        assert params["state"] == "client-xyz"
        assert params["code"]
        assert fake_upstream.form()["code"] == "upstream-code"
        assert fake_upstream.form()["grant_type"] == "authorization_code"

    async def test_state_is_single_use(self, broker, client_id, pkce):
        correlation = await _authorize(broker, client_id, pkce)
        await broker.complete_upstream_callback("upstream-code", correlation)

        with pytest.raises(StateInvalidOrExpired):
            await broker.complete_upstream_callback("upstream-code", correlation)

    async def test_unknown_state(self, broker, fake_upstream):
        with pytest.raises(StateInvalidOrExpired):
            await broker.complete_upstream_callback("upstream-code", "never-issued")
        assert fake_upstream.requests == []

    async def test_expired_state(self, broker, client_id, pkce, session_factory):
        correlation = await _authorize(broker, client_id, pkce)
        async with session_factory() as db:
            await db.execute(
                update(OAuthState)
                .where(OAuthState.state == correlation)
                .values(expires_at=utcnow() - timedelta(seconds=1))
            )
            await db.commit()

        with pytest.raises(StateInvalidOrExpired):
            await broker.complete_upstream_callback("upstream-code", correlation)

    async def test_upstream_rejection_issues_no_code(self, broker, client_id, pkce, fake_upstream, session_factory):
        correlation = await _authorize(broker, client_id, pkce)
        fake_upstream.responses.append(httpx.Response(400, json={"error": "invalid_grant"}))

        with pytest.raises(UpstreamUnavailable):
            await broker.complete_upstream_callback("bad-code", correlation)

        async with session_factory() as db:
            codes = (await db.execute(select(AuthorizationCode))).scalars().all()
        assert codes == []

    async def test_each_login_vaults_a_new_user(self, broker, client_id, pkce, session_factory):
        await _issue_code(broker, client_id, pkce)
        await _issue_code(broker, client_id, pkce)

        async with session_factory() as db:
            users = (await db.execute(select(UpstreamToken.user_id))).scalars().all()
        assert len(set(users)) == 2

    async def test_deny_forwards_error(self, broker, client_id, pkce, fake_upstream):
        correlation = await _authorize(broker, client_id, pkce, client_state="client-xyz")

        redirect = await broker.deny_upstream_callback(correlation, "access_denied")

        assert _query(redirect) == {"error": "access_denied", "state": "client-xyz"}
        assert fake_upstream.requests == []
        with pytest.raises(StateInvalidOrExpired):
            await broker.deny_upstream_callback(correlation, "access_denied")


class TestExchangeCode:
    async def test_exchange_issues_bearer_token(self, broker, client_id, pkce, settings):
        verifier, _ = pkce
        code = await _issue_code(broker, client_id, pkce)

        response = await broker.exchange_code(code, verifier, client_id, REDIRECT_URI)

        assert response["token_type"] == "Bearer"
        assert response["scope"] == settings.DEFAULT_SCOPE
        assert await broker.resolve_access_token(response["access_token"])

    async def test_code_is_single_use(self, broker, client_id, pkce):
        verifier, _ = pkce
        code = await _issue_code(broker, client_id, pkce)
        await broker.exchange_code(code, verifier)

        with pytest.raises(GrantInvalid):
            await broker.exchange_code(code, verifier)

    async def test_concurrent_exchange_has_one_winner(self, broker, client_id, pkce, session_factory):
        verifier, _ = pkce
        code = await _issue_code(broker, client_id, pkce)

        results = await asyncio.gather(
            *(broker.exchange_code(code, verifier) for _ in range(5)),
            return_exceptions=True,
        )

        winners = [r for r in results if isinstance(r, dict)]
        losers = [r for r in results if isinstance(r, GrantInvalid)]
        assert len(winners) == 1
        assert len(losers) == 4

        async with session_factory() as db:
            tokens = (await db.execute(select(AccessToken))).scalars().all()
        assert len(tokens) == 1

    async def test_wrong_verifier(self, broker, client_id, pkce):
        code = await _issue_code(broker, client_id, pkce)
        other_verifier, _ = generate_pkce_pair()

        with pytest.raises(GrantInvalid) as exc_info:
            await broker.exchange_code(code, other_verifier)
        assert exc_info.value.error == "invalid_grant"

    async def test_missing_verifier(self, broker, client_id, pkce):
        code = await _issue_code(broker, client_id, pkce)

        with pytest.raises(MissingCodeVerifier) as exc_info:
            await broker.exchange_code(code)
        assert exc_info.value.error == "invalid_request"

    async def test_code_bound_to_client(self, broker, clients, client_id, pkce):
        verifier, _ = pkce
        other = await clients.register([REDIRECT_URI])
        code = await _issue_code(broker, client_id, pkce)

        with pytest.raises(GrantInvalid):
            await broker.exchange_code(code, verifier, client_id=other.client_id)

    async def test_code_bound_to_redirect_uri(self, broker, client_id, pkce):
        verifier, _ = pkce
        code = await _issue_code(broker, client_id, pkce)

        with pytest.raises(GrantInvalid):
            await broker.exchange_code(code, verifier, redirect_uri="https://client.example/other")

    async def test_expired_code(self, broker, client_id, pkce, session_factory):
        verifier, _ = pkce
        code = await _issue_code(broker, client_id, pkce)
        async with session_factory() as db:
            await db.execute(
                update(AuthorizationCode)
                .where(AuthorizationCode.code == code)
                .values(expires_at=utcnow() - timedelta(seconds=1))
            )
            await db.commit()

        with pytest.raises(GrantInvalid):
            await broker.exchange_code(code, verifier)

    async def test_code_without_pkce(self, broker, client_id):
        url = await broker.begin_authorization(client_id, REDIRECT_URI, "s")
        redirect = await broker.complete_upstream_callback("upstream-code", _query(url)["state"])

        response = await broker.exchange_code(_query(redirect)["code"])
        assert response["access_token"]


class TestResolveAccessToken:
    async def test_resolves_user_with_vaulted_tokens(self, broker, vault, client_id, pkce):
        verifier, _ = pkce
        code = await _issue_code(broker, client_id, pkce)
        response = await broker.exchange_code(code, verifier)

        user_id = await broker.resolve_access_token(response["access_token"])
        assert await vault.get_valid(user_id) == "upstream-access-1"

    async def test_unknown_token(self, broker):
        with pytest.raises(InvalidAccessToken) as exc_info:
            await broker.resolve_access_token("nope")
        assert exc_info.value.status_code == 401
        assert "WWW-Authenticate" in exc_info.value.headers

    async def test_expired_token(self, broker, client_id, pkce, session_factory):
        verifier, _ = pkce
        code = await _issue_code(broker, client_id, pkce)
        token = (await broker.exchange_code(code, verifier))["access_token"]
        async with session_factory() as db:
            await db.execute(
                update(AccessToken)
                .where(AccessToken.token == token)
                .values(expires_at=utcnow() - timedelta(seconds=1))
            )
            await db.commit()

        with pytest.raises(InvalidAccessToken):
            await broker.resolve_access_token(token)


class TestCleanup:
    async def test_removes_only_expired_and_stale_records(self, broker, client_id, pkce, session_factory):
        verifier, _ = pkce
        live_state = await _authorize(broker, client_id, pkce)
        dead_state = await _authorize(broker, client_id, pkce)
        used_code = await _issue_code(broker, client_id, pkce)
        token = (await broker.exchange_code(used_code, verifier))["access_token"]
        live_code = await _issue_code(broker, client_id, pkce)

        past = utcnow() - timedelta(days=2)
        async with session_factory() as db:
            await db.execute(update(OAuthState).where(OAuthState.state == dead_state).values(expires_at=past))
            await db.execute(
                update(AuthorizationCode).where(AuthorizationCode.code == used_code).values(used_at=past)
            )
            await db.commit()

        counts = await broker.cleanup_expired_data()

        assert counts == {"oauth_states": 1, "authorization_codes": 1, "access_tokens": 0}
        async with session_factory() as db:
            assert await db.get(OAuthState, live_state) is not None
            assert await db.get(AuthorizationCode, live_code) is not None
        assert await broker.resolve_access_token(token)


class TestMetadata:
    def test_authorization_server_metadata(self, settings):
        metadata = authorization_server_metadata(settings)
        assert metadata["issuer"] == settings.BASE_URL
        assert metadata["token_endpoint"] == f"{settings.BASE_URL}/token"
        assert "S256" in metadata["code_challenge_methods_supported"]

    def test_protected_resource_metadata(self, settings):
        metadata = protected_resource_metadata(settings)
        assert metadata["resource"] == f"{settings.BASE_URL}/mcp"
        assert metadata["authorization_servers"] == [settings.BASE_URL]
