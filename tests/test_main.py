import httpx

from config import Config
from main import create_app, parse_basic_auth, render_login_page


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["sessions"] == 0
    assert body["components"]["database"] == "ready"
    assert body["environment"] == "testing"


async def test_root_lists_endpoints(client):
    body = (await client.get("/")).json()
    assert body["endpoints"]["mcp"] == "http://testserver/mcp"


async def test_security_headers(client):
    response = await client.get("/health")
    assert response.headers["x-content-type-options"] == "nosniff"
    assert response.headers["x-frame-options"] == "DENY"


async def test_bootstrap_client(monkeypatch, config):
    monkeypatch.setenv("BOOTSTRAP_CLIENT_ID", "static-client")
    monkeypatch.setenv("BOOTSTRAP_CLIENT_SECRET", "static-secret")
    monkeypatch.setenv("BOOTSTRAP_REDIRECT_URIS", "https://app.example/cb, https://app.example/other")
    app = create_app(Config())

    async with app.router.lifespan_context(app):
        client = app.state.registry.authenticate("static-client", "static-secret")

    assert client.redirect_uris == ["https://app.example/cb", "https://app.example/other"]


async def test_rate_limit(monkeypatch, config):
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
    app = create_app(Config())

    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            statuses = []
            for i in range(6):
                response = await client.post("/oauth/register", json={
                    "client_name": f"Client {i}",
                    "redirect_uris": ["https://app.example/cb"],
                })
                statuses.append(response.status_code)
        await app.state.registry.wait_persisted()

    assert statuses == [201] * 5 + [429]


def test_render_login_page_defaults():
    page = render_login_page({"client_id": "c1"}, error="Invalid email or password")
    assert "Unknown Application" in page
    assert 'value="c1"' in page
    assert "Invalid email or password" in page


def test_parse_basic_auth_without_header():
    class FakeRequest:
        headers = {}

    assert parse_basic_auth(FakeRequest()) == (None, None)
