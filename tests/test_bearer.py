import pytest
from starlette.requests import Request

from auth import OAuthError
from bearer import BearerGate, extract_bearer_token

INITIALIZE = {"jsonrpc": "2.0", "method": "initialize", "id": 1, "params": {"protocolVersion": "2025-03-26"}}


def make_request(authorization=None, query=""):
    headers = []
    if authorization is not None:
        headers.append((b"authorization", authorization.encode()))
    return Request({
        "type": "http",
        "method": "POST",
        "path": "/mcp",
        "headers": headers,
        "query_string": query.encode(),
    })


def test_header_takes_precedence_over_query():
    request = make_request("Bearer from-header", "access_token=from-query")
    assert extract_bearer_token(request) == "from-header"


def test_query_parameter_fallback():
    assert extract_bearer_token(make_request(query="access_token=from-query")) == "from-query"


def test_non_bearer_header_falls_back_to_query():
    request = make_request("Basic dXNlcjpwYXNz", "access_token=from-query")
    assert extract_bearer_token(request) == "from-query"


def test_no_token():
    assert extract_bearer_token(make_request()) is None
    assert extract_bearer_token(make_request("Bearer ")) is None


async def test_missing_token_never_reaches_ledger():
    class ExplodingLedger:
        async def verify_access_token(self, token):
            raise AssertionError("ledger must not be called")

    gate = BearerGate(ExplodingLedger(), "http://testserver/.well-known/oauth-protected-resource")
    request = make_request()

    with pytest.raises(OAuthError) as exc:
        await gate.authenticate(request)
    assert exc.value.error == "unauthorized"
    assert exc.value.status_code == 401
    assert not hasattr(request.state, "identity")


async def test_authenticate_attaches_identity(app, tokens, app_users):
    token = await tokens("bob@example.com", ["read"])
    request = make_request(f"Bearer {token}")

    identity = await app.state.gate.authenticate(request)

    assert identity.user_id == app_users["bob@example.com"]
    assert request.state.identity == identity


def test_challenge_points_at_resource_metadata():
    gate = BearerGate(None, "http://testserver/.well-known/oauth-protected-resource")
    assert gate.challenge() == 'Bearer realm="records-mcp", resource_metadata="http://testserver/.well-known/oauth-protected-resource"'
    assert gate.challenge("invalid_token").endswith(', error="invalid_token"')


async def test_mcp_without_token_is_401_with_challenge(client):
    response = await client.post("/mcp", json=INITIALIZE)

    assert response.status_code == 401
    assert response.json()["error"] == "unauthorized"
    challenge = response.headers["www-authenticate"]
    assert challenge.startswith("Bearer ")
    assert 'resource_metadata="http://testserver/.well-known/oauth-protected-resource"' in challenge


async def test_mcp_with_invalid_token_is_401(client):
    response = await client.post("/mcp", json=INITIALIZE, headers={"Authorization": "Bearer bogus"})

    assert response.status_code == 401
    assert response.json()["error"] == "invalid_token"
    assert 'error="invalid_token"' in response.headers["www-authenticate"]


async def test_mcp_accepts_query_token(client, tokens):
    token = await tokens()
    response = await client.post(f"/mcp?access_token={token}", json=INITIALIZE)

    assert response.status_code == 200
    assert response.headers["mcp-session-id"]
