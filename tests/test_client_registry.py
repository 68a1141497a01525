# Tests for dynamic client registration.
# Created: 2026-10-18

import pytest

from oauth_bridge.common.exceptions import ClientError, PersistenceFailure
from oauth_bridge.models.persistance.auth import Client
from oauth_bridge.services.auth.client_registry import ClientRegistry


class TestRegister:
    async def test_register_and_find(self, clients):
        client = await clients.register(["https://client.example/cb"], "Test Client")

        assert client.client_id
        assert client.client_name == "Test Client"
        assert client.grant_types == ["authorization_code"]
        assert client.response_types == ["code"]
        assert client.token_endpoint_auth_method == "none"

        found = await clients.find(client.client_id)
        assert found is not None
        assert found.redirect_uris == ["https://client.example/cb"]

    async def test_client_ids_are_unique(self, clients):
        ids = {(await clients.register(["https://client.example/cb"])).client_id for _ in range(20)}
        assert len(ids) == 20

    async def test_public_client_has_no_secret(self, clients):
        client = await clients.register(["https://client.example/cb"])

        assert client.token_endpoint_auth_method == "none"
        assert "client_secret" not in Client.__table__.columns

    async def test_empty_redirect_uris_rejected(self, clients):
        with pytest.raises(ClientError) as exc_info:
            await clients.register([])
        assert exc_info.value.error == "invalid_client_metadata"

    async def test_relative_redirect_uri_rejected(self, clients):
        with pytest.raises(ClientError):
            await clients.register(["https://client.example/cb", "/relative/cb"])

    async def test_unknown_client_is_none(self, clients):
        assert await clients.find("does-not-exist") is None

    async def test_storage_failure_is_persistence_failure(self, broken_session_factory):
        registry = ClientRegistry(broken_session_factory)
        with pytest.raises(PersistenceFailure):
            await registry.register(["https://client.example/cb"])
