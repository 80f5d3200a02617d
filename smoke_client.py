#!/usr/bin/env python3

"""
Smoke test for a running Records Remote MCP Server
Walks the whole OAuth flow and an MCP session against a live server
"""

import asyncio
import base64
import hashlib
import json
import secrets
import sys
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlsplit

import httpx

REDIRECT_URI = "http://localhost:8765/callback"


class MCPSmokeClient:
    def __init__(self, base_url: str = "http://localhost:8000", email: str = "alex@zenstack.dev", password: str = "password123"):
        self.base_url = base_url.rstrip("/")
        self.email = email
        self.password = password
        self.client = httpx.AsyncClient(timeout=30.0)
        self.client_id: Optional[str] = None
        self.client_secret: Optional[str] = None
        self.code_verifier = secrets.token_urlsafe(48)
        self.code: Optional[str] = None
        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self.session_id: Optional[str] = None

    async def close(self):
        await self.client.aclose()

    @property
    def code_challenge(self) -> str:
        digest = hashlib.sha256(self.code_verifier.encode("ascii")).digest()
        return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")

    async def test_health_check(self) -> bool:
        """Test health check endpoint"""
        print("🏥 Testing health check...")
        response = await self.client.get(f"{self.base_url}/health")
        if response.status_code != 200:
            print(f"   ❌ Health check failed: {response.status_code}")
            return False
        data = response.json()
        print(f"   ✅ Health check passed: {data['status']} ({data['sessions']} open sessions)")
        return True

    async def test_unauthorized_mcp_access(self) -> bool:
        """Test that MCP endpoint requires authentication"""
        print("🚫 Testing unauthorized MCP access...")
        response = await self.client.post(
            f"{self.base_url}/mcp",
            json={"jsonrpc": "2.0", "method": "tools/list", "id": "test-1"}
        )
        if response.status_code != 401 or "WWW-Authenticate" not in response.headers:
            print(f"   ❌ MCP endpoint should return 401 with a challenge, got {response.status_code}")
            return False
        print("   ✅ MCP endpoint properly requires authentication")
        return True

    async def test_client_registration(self) -> bool:
        """Test dynamic client registration"""
        print("📝 Testing dynamic client registration...")
        response = await self.client.post(
            f"{self.base_url}/oauth/register",
            json={"client_name": "MCP Smoke Client", "redirect_uris": [REDIRECT_URI]}
        )
        if response.status_code != 201:
            print(f"   ❌ Client registration failed: {response.status_code} {response.text}")
            return False
        data = response.json()
        self.client_id = data["client_id"]
        self.client_secret = data.get("client_secret")
        print(f"   ✅ Client registered: {self.client_id}")
        return True

    async def test_authorization(self) -> bool:
        """Test the authorization redirect and the login step"""
        print("🔐 Testing authorization and login...")
        response = await self.client.get(f"{self.base_url}/oauth/authorize", params={
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": REDIRECT_URI,
            "scope": "read write",
            "state": "smoke-state",
            "code_challenge": self.code_challenge,
            "code_challenge_method": "S256"
        })
        if response.status_code != 302:
            print(f"   ❌ Authorization should redirect to login, got {response.status_code}")
            return False

        login_params = {k: v[0] for k, v in parse_qs(urlsplit(response.headers["location"]).query).items()}
        response = await self.client.post(f"{self.base_url}/auth/login", json={
            **login_params,
            "email": self.email,
            "password": self.password
        })
        if response.status_code != 200:
            print(f"   ❌ Login failed: {response.status_code} {response.text}")
            return False

        callback = parse_qs(urlsplit(response.json()["redirectUrl"]).query)
        if callback.get("state") != ["smoke-state"]:
            print("   ❌ State was not preserved")
            return False
        self.code = callback["code"][0]
        print("   ✅ Authorization code received")
        return True

    async def test_token_exchange(self) -> bool:
        """Test exchanging the code and refreshing the token pair"""
        print("🎟️  Testing token exchange and refresh...")
        response = await self.client.post(f"{self.base_url}/oauth/token", data=self._client_auth({
            "grant_type": "authorization_code",
            "code": self.code,
            "redirect_uri": REDIRECT_URI,
            "code_verifier": self.code_verifier
        }))
        if response.status_code != 200:
            print(f"   ❌ Token exchange failed: {response.status_code} {response.text}")
            return False
        tokens = response.json()
        print(f"   ✅ Access token issued, expires in {tokens['expires_in']}s")

        response = await self.client.post(f"{self.base_url}/oauth/token", data=self._client_auth({
            "grant_type": "refresh_token",
            "refresh_token": tokens["refresh_token"]
        }))
        if response.status_code != 200:
            print(f"   ❌ Refresh failed: {response.status_code} {response.text}")
            return False
        refreshed = response.json()
        if refreshed["refresh_token"] == tokens["refresh_token"]:
            print("   ❌ Refresh token was not rotated")
            return False
        self.access_token = refreshed["access_token"]
        self.refresh_token = refreshed["refresh_token"]
        print("   ✅ Refresh token rotated")
        return True

    async def test_mcp_session(self) -> bool:
        """Test initialize, tools/list, tools/call and session close"""
        print("🔌 Testing MCP session...")
        result = await self._rpc("initialize", {
            "protocolVersion": "2025-03-26",
            "capabilities": {},
            "clientInfo": {"name": "smoke-client", "version": "1.0.0"}
        })
        if result is None or not self.session_id:
            print("   ❌ Initialize did not return a session")
            return False
        print(f"   ✅ Session {self.session_id} ({result['serverInfo']['name']})")

        await self._notify("notifications/initialized")

        tools = await self._rpc("tools/list")
        if not tools or not tools.get("tools"):
            print("   ❌ No tools listed")
            return False
        print(f"   🧰 {len(tools['tools'])} tools available")

        call = await self._rpc("tools/call", {"name": "Post_findMany", "arguments": {"args": {"take": 5}}})
        if not call or call.get("isError"):
            print(f"   ❌ Tool call failed: {call}")
            return False
        posts = json.loads(call["content"][0]["text"])
        print(f"   ✅ Post_findMany returned {len(posts)} posts")

        response = await self.client.delete(f"{self.base_url}/mcp", headers=self._headers())
        if response.status_code != 200:
            print(f"   ❌ Session close failed: {response.status_code}")
            return False
        response = await self.client.post(
            f"{self.base_url}/mcp",
            json={"jsonrpc": "2.0", "method": "ping", "id": "after-close"},
            headers=self._headers()
        )
        if response.status_code != 404:
            print(f"   ❌ Closed session still resolves: {response.status_code}")
            return False
        print("   ✅ Session closed")
        return True

    async def test_revocation(self) -> bool:
        """Test that a revoked access token is refused"""
        print("🗑️  Testing token revocation...")
        response = await self.client.post(f"{self.base_url}/oauth/revoke", data=self._client_auth({
            "token": self.access_token,
            "token_type_hint": "access_token"
        }))
        if response.status_code != 200:
            print(f"   ❌ Revocation failed: {response.status_code}")
            return False
        response = await self.client.post(
            f"{self.base_url}/mcp",
            json={"jsonrpc": "2.0", "method": "initialize", "id": 1, "params": {}},
            headers={"Authorization": f"Bearer {self.access_token}"}
        )
        if response.status_code != 401:
            print(f"   ❌ Revoked token still accepted: {response.status_code}")
            return False
        print("   ✅ Revoked token refused")
        return True

    def _client_auth(self, data: Dict[str, Any]) -> Dict[str, Any]:
        data = {**data, "client_id": self.client_id}
        if self.client_secret:
            data["client_secret"] = self.client_secret
        return data

    def _headers(self) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        if self.session_id:
            headers["Mcp-Session-Id"] = self.session_id
        return headers

    async def _rpc(self, method: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        message = {"jsonrpc": "2.0", "method": method, "id": secrets.token_hex(4)}
        if params is not None:
            message["params"] = params
        response = await self.client.post(f"{self.base_url}/mcp", json=message, headers=self._headers())
        if response.status_code != 200:
            print(f"   ⚠️  {method} returned HTTP {response.status_code}: {response.text}")
            return None
        self.session_id = response.headers.get("Mcp-Session-Id", self.session_id)
        body = response.json()
        if "error" in body:
            print(f"   ⚠️  {method} error: {body['error']}")
            return None
        return body["result"]

    async def _notify(self, method: str):
        response = await self.client.post(
            f"{self.base_url}/mcp",
            json={"jsonrpc": "2.0", "method": method},
            headers=self._headers()
        )
        if response.status_code != 202:
            print(f"   ⚠️  {method} returned HTTP {response.status_code}")

    async def run_all_tests(self) -> bool:
        """Run the flow step by step, stopping at the first failure"""
        print("🧪 Starting MCP Server smoke test...")
        print(f"🎯 Target: {self.base_url}")
        print("=" * 50)

        steps = [
            ("Health Check", self.test_health_check),
            ("Unauthorized MCP Access", self.test_unauthorized_mcp_access),
            ("Client Registration", self.test_client_registration),
            ("Authorization", self.test_authorization),
            ("Token Exchange", self.test_token_exchange),
            ("MCP Session", self.test_mcp_session),
            ("Revocation", self.test_revocation),
        ]

        passed = 0
        for step_name, step in steps:
            try:
                ok = await step()
            except httpx.HTTPError as e:
                print(f"   ❌ {step_name} failed: {e}")
                ok = False
            print()
            if not ok:
                break
            passed += 1

        print("=" * 50)
        print(f"📊 Smoke test: {passed}/{len(steps)} steps passed")
        if passed == len(steps):
            print("🎉 Full OAuth and MCP flow works.")
            return True
        print("⚠️  Smoke test stopped early. Check the server logs.")
        return False


async def main():
    """Main smoke test function"""
    import argparse

    parser = argparse.ArgumentParser(description="Smoke test a Records Remote MCP Server")
    parser.add_argument("--url", default="http://localhost:8000", help="Base URL of the MCP server (default: http://localhost:8000)")
    parser.add_argument("--email", default="alex@zenstack.dev", help="Login email of a seeded user")
    parser.add_argument("--password", default="password123", help="Password of that user")
    args = parser.parse_args()

    smoke = MCPSmokeClient(args.url, args.email, args.password)
    try:
        success = await smoke.run_all_tests()
        sys.exit(0 if success else 1)
    finally:
        await smoke.close()


if __name__ == "__main__":
    asyncio.run(main())
