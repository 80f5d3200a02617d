import time

import pytest

from auth import OAuthError
from clients import ClientRegistry
from models import ClientRegistrationRequest


@pytest.fixture
async def registry(config, database):
    registry = ClientRegistry(config, database)
    await registry.initialize()
    yield registry
    await registry.wait_persisted()


def registration(**overrides) -> ClientRegistrationRequest:
    fields = {"client_name": "Example App", "redirect_uris": ["https://app.example/cb"]}
    fields.update(overrides)
    return ClientRegistrationRequest(**fields)


async def test_get_before_initialize_returns_none(config, database):
    registry = ClientRegistry(config, database)
    await registry.ensure_client("static", "secret", ["https://app.example/cb"])
    fresh = ClientRegistry(config, database)

    assert fresh.get("static") is None
    await fresh.initialize()
    assert fresh.get("static") is not None


async def test_register_fills_credentials(registry):
    before = int(time.time())
    client = await registry.register(registration())

    assert client.client_id
    assert len(client.client_secret) == 64
    assert client.scope == "read write"
    assert client.client_id_issued_at >= before
    assert client.client_secret_expires_at >= before + 365 * 86400
    assert registry.get(client.client_id) == client


async def test_registration_is_persisted(config, database, registry):
    client = await registry.register(registration())
    await registry.wait_persisted()

    reloaded = ClientRegistry(config, database)
    await reloaded.initialize()
    assert reloaded.get(client.client_id) == client


async def test_failed_persist_rolls_back_cache(registry, monkeypatch):
    async def broken(client):
        raise RuntimeError("database unavailable")
    monkeypatch.setattr(registry, "_persist", broken)

    client = await registry.register(registration())
    await registry.wait_persisted()

    assert registry.get(client.client_id) is None


async def test_public_client_has_no_secret(registry):
    client = await registry.register(registration(token_endpoint_auth_method="none"))

    assert client.client_secret is None
    assert client.token_endpoint_auth_method == "none"
    assert registry.authenticate(client.client_id, None) == client


async def test_register_rejects_unsupported_scope(registry):
    with pytest.raises(OAuthError) as exc:
        await registry.register(registration(scope="read admin"))
    assert exc.value.error == "invalid_client_metadata"


@pytest.mark.parametrize("uri", ["http://app.example/cb", "not-a-uri"])
def test_registration_rejects_bad_redirect_uri(uri):
    with pytest.raises(ValueError):
        registration(redirect_uris=[uri])


def test_registration_accepts_loopback_and_custom_schemes():
    request = registration(redirect_uris=["http://localhost:3000/cb", "http://127.0.0.1/cb", "myapp://callback"])
    assert len(request.redirect_uris) == 3


async def test_authenticate(registry):
    client = await registry.register(registration())

    assert registry.authenticate(client.client_id, client.client_secret) == client

    with pytest.raises(OAuthError) as exc:
        registry.authenticate(client.client_id, "wrong")
    assert exc.value.error == "invalid_client"
    assert exc.value.status_code == 401

    with pytest.raises(OAuthError) as exc:
        registry.authenticate("unknown", "whatever")
    assert exc.value.error == "invalid_client"

    with pytest.raises(OAuthError) as exc:
        registry.authenticate(None, None)
    assert exc.value.error == "invalid_request"


async def test_expired_secret_is_rejected(registry):
    client = await registry.register(registration())
    registry._clients[client.client_id] = client.model_copy(update={"client_secret_expires_at": int(time.time()) - 1})

    with pytest.raises(OAuthError) as exc:
        registry.authenticate(client.client_id, client.client_secret)
    assert exc.value.error == "invalid_client"


async def test_rotate_secret(registry):
    client = await registry.register(registration())
    await registry.wait_persisted()

    rotated = await registry.rotate_secret(client.client_id)

    assert rotated.client_secret != client.client_secret
    assert registry.authenticate(client.client_id, rotated.client_secret) == rotated
    with pytest.raises(OAuthError):
        registry.authenticate(client.client_id, client.client_secret)


async def test_rotate_unknown_client(registry):
    with pytest.raises(OAuthError) as exc:
        await registry.rotate_secret("missing")
    assert exc.value.error == "invalid_client"


async def test_ensure_client_overwrites(registry):
    await registry.ensure_client("static", "one", ["https://app.example/cb"])
    client = await registry.ensure_client("static", "two", ["https://app.example/other"])

    assert registry.get("static") == client
    assert client.redirect_uris == ["https://app.example/other"]
    assert len(registry) == 1


async def test_delete(config, database, registry):
    client = await registry.register(registration())
    await registry.wait_persisted()

    assert await registry.delete(client.client_id)
    assert registry.get(client.client_id) is None
    assert not await registry.delete(client.client_id)

    reloaded = ClientRegistry(config, database)
    await reloaded.initialize()
    assert reloaded.get(client.client_id) is None
