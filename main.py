#!/usr/bin/env python3

import asyncio
import base64
import html
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
from urllib.parse import unquote

from fastapi import FastAPI, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from sqlalchemy import text
import uvicorn

from auth import OAuthError, RateLimiter, TokenLedger
from bearer import BearerGate
from clients import ClientRegistry
from config import Config
from credentials import CredentialStore
from database import Database
from mcp_transport import MCPTransport
from models import ClientRegistrationRequest, HealthCheckResponse, LoginRequest, TokenIntrospectionResponse
from oauth_flow import AuthorizationFlow, RedirectableError, LOGIN_FAILED_MESSAGE
from token_store import create_token_store

logger = logging.getLogger(__name__)

SERVICE_NAME = "records-remote-mcp-server"

LOGIN_PAGE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>Sign in</title>
  <style>
    body {{ font-family: sans-serif; max-width: 380px; margin: 80px auto; }}
    label, input, button {{ display: block; width: 100%; margin-top: 8px; }}
    .error {{ color: #b00020; }}
  </style>
</head>
<body>
  <h2>Sign in to {client_name}</h2>
  <p>Requested access: {scope}</p>
  {error}
  <form method="post" action="/auth/login">
    <input type="hidden" name="client_id" value="{client_id}">
    <input type="hidden" name="redirect_uri" value="{redirect_uri}">
    <input type="hidden" name="code_challenge" value="{code_challenge}">
    <input type="hidden" name="scope" value="{scope}">
    <input type="hidden" name="state" value="{state}">
    <input type="hidden" name="client_name" value="{client_name}">
    <label>Email <input type="email" name="email" required autofocus></label>
    <label>Password <input type="password" name="password" required></label>
    <button type="submit">Sign in</button>
  </form>
</body>
</html>
"""


def render_login_page(params: Dict[str, Any], error: Optional[str] = None) -> str:
    """Login form with the authorization parameters as hidden fields"""
    fields = {
        key: html.escape(str(params.get(key) or ""), quote=True)
        for key in ("client_id", "redirect_uri", "code_challenge", "scope", "state")
    }
    fields["client_name"] = html.escape(str(params.get("client_name") or "Unknown Application"), quote=True)
    fields["error"] = f'<p class="error">{html.escape(error)}</p>' if error else ""
    return LOGIN_PAGE.format(**fields)


def parse_basic_auth(request: Request) -> Tuple[Optional[str], Optional[str]]:
    """client_secret_basic credentials from the Authorization header"""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, value = auth_header.partition(" ")
    if scheme.lower() != "basic" or not value:
        return None, None
    try:
        decoded = base64.b64decode(value.strip()).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        raise OAuthError("invalid_client", "Malformed Basic credentials", status_code=401)
    client_id, sep, client_secret = decoded.partition(":")
    if not sep:
        raise OAuthError("invalid_client", "Malformed Basic credentials", status_code=401)
    return unquote(client_id), unquote(client_secret)


async def read_body(request: Request) -> Dict[str, Any]:
    """Form or JSON request body as a flat dict"""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            raise OAuthError("invalid_request", "Malformed JSON body")
        if not isinstance(body, dict):
            raise OAuthError("invalid_request", "JSON body must be an object")
        return body
    form = await request.form()
    return dict(form)


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def create_app(config: Optional[Config] = None) -> FastAPI:
    """Build the server application and its components"""
    config = config or Config()

    logging.basicConfig(level=config.log_level, format=config.log_format)

    database = Database(config.database_url)
    registry = ClientRegistry(config, database)
    credentials = CredentialStore(database)
    ledger = TokenLedger(config, create_token_store(config.token_store, database))
    flow = AuthorizationFlow(config, registry, credentials, ledger)
    gate = BearerGate(ledger, config.protected_resource_metadata_url)
    rate_limiter = RateLimiter(config)
    mcp_transport = MCPTransport(config, database)

    async def maintenance_loop():
        """Periodically purge expired tokens, stale rate-limit keys and idle sessions"""
        while True:
            await asyncio.sleep(config.cleanup_interval)
            try:
                await ledger.purge_expired()
                rate_limiter.prune(config.rate_limit_window)
                if config.session_idle_timeout > 0:
                    expired = await mcp_transport.expire_idle(config.session_idle_timeout)
                    if expired:
                        logger.info(f"Expired {expired} idle sessions")
            except Exception as e:
                logger.error(f"Error in maintenance task: {e}")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {SERVICE_NAME} v{config.mcp_server_version}")
        logger.info(f"Environment: {config.environment}")
        logger.info(f"Base URL: {config.base_url}")

        await database.create_all()
        await registry.initialize()
        if config.bootstrap_client_id:
            await registry.ensure_client(
                config.bootstrap_client_id,
                config.bootstrap_client_secret,
                config.bootstrap_redirect_uris
            )

        maintenance = asyncio.create_task(maintenance_loop())
        try:
            yield
        finally:
            logger.info(f"Shutting down {SERVICE_NAME}")
            maintenance.cancel()
            try:
                await maintenance
            except asyncio.CancelledError:
                pass
            await mcp_transport.close_all()
            await registry.wait_persisted()
            await database.close()

    app = FastAPI(
        title="Records Remote MCP Server",
        description="MCP Server for database records with OAuth 2.1 and Streamable HTTP",
        version=config.mcp_server_version,
        docs_url="/docs" if config.is_development else None,
        redoc_url="/redoc" if config.is_development else None,
        lifespan=lifespan
    )

    app.state.config = config
    app.state.database = database
    app.state.registry = registry
    app.state.ledger = ledger
    app.state.flow = flow
    app.state.gate = gate
    app.state.rate_limiter = rate_limiter
    app.state.mcp_transport = mcp_transport

    # Error rendering
    @app.exception_handler(RedirectableError)
    async def redirectable_error_handler(request: Request, exc: RedirectableError):
        logger.info(f"Authorization error returned to client: {exc.error}")
        return RedirectResponse(url=exc.redirect_url(), status_code=302)

    @app.exception_handler(OAuthError)
    async def oauth_error_handler(request: Request, exc: OAuthError):
        headers = {"Cache-Control": "no-store", "Pragma": "no-cache"}
        if exc.status_code == 401 and exc.error in ("unauthorized", "invalid_token"):
            headers["WWW-Authenticate"] = gate.challenge(exc.error if exc.error == "invalid_token" else None)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content=OAuthError("server_error", "Internal server error").to_dict()
        )

    def enforce_rate_limit(key: str, max_requests: int, window_seconds: int = 300):
        if not rate_limiter.check_rate_limit(key, max_requests=max_requests, window_seconds=window_seconds):
            logger.warning(f"Rate limit exceeded: {key}")
            raise OAuthError("rate_limited", "Rate limit exceeded", status_code=429)

    # Add security headers middleware
    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)

        # Security headers
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        # HTTPS enforcement in production
        if config.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_credentials=config.allowed_origins != ["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["Mcp-Session-Id", "WWW-Authenticate"]
    )

    # Health and discovery endpoints
    @app.get("/health")
    async def health_check():
        """Health check endpoint with component status and open session count"""
        try:
            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            database_status = "ready"
        except Exception as e:
            logger.error(f"Health check database probe failed: {e}")
            database_status = "unavailable"

        status = "healthy" if database_status == "ready" and registry.initialized else "degraded"
        health = HealthCheckResponse(
            status=status,
            service=SERVICE_NAME,
            version=config.mcp_server_version,
            timestamp=datetime.now(timezone.utc).isoformat(),
            components={
                "database": database_status,
                "client_registry": "ready" if registry.initialized else "loading",
                "mcp_transport": "ready"
            },
            sessions=mcp_transport.session_count,
            environment=config.environment
        )
        return JSONResponse(status_code=200 if status == "healthy" else 503, content=health.model_dump())

    @app.get("/")
    async def root():
        """Root endpoint with server information"""
        return {
            "name": SERVICE_NAME,
            "version": config.mcp_server_version,
            "description": "MCP Server for database records with OAuth 2.1 and Streamable HTTP",
            "specification": f"MCP {config.mcp_protocol_version}",
            "transport": "Streamable HTTP",
            "authentication": "OAuth 2.1 authorization code with PKCE and Dynamic Client Registration",
            "endpoints": {
                "mcp": f"{config.base_url}/mcp",
                "oauth_metadata": f"{config.base_url}/.well-known/oauth-authorization-server",
                "protected_resource_metadata": config.protected_resource_metadata_url,
                "registration": f"{config.base_url}/oauth/register",
                "authorization": f"{config.base_url}/oauth/authorize",
                "token": f"{config.base_url}/oauth/token",
                "health": f"{config.base_url}/health"
            },
            "test_with_curl": f"curl -X POST {config.base_url}/oauth/register -H 'Content-Type: application/json' -d '{{\"client_name\": \"Test Client\", \"redirect_uris\": [\"https://example.com/callback\"]}}'"
        }

    # OAuth 2.1 Authorization Server Metadata (RFC 8414)
    @app.get("/.well-known/oauth-authorization-server")
    async def oauth_authorization_server_metadata():
        """OAuth 2.1 Authorization Server Metadata"""
        return {
            "issuer": config.base_url,
            "authorization_endpoint": f"{config.base_url}/oauth/authorize",
            "token_endpoint": f"{config.base_url}/oauth/token",
            "registration_endpoint": f"{config.base_url}/oauth/register",
            "revocation_endpoint": f"{config.base_url}/oauth/revoke",
            "introspection_endpoint": f"{config.base_url}/oauth/introspect",
            "scopes_supported": config.oauth_scopes,
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "code_challenge_methods_supported": ["S256"],
            "token_endpoint_auth_methods_supported": ["client_secret_post", "client_secret_basic", "none"],
            "revocation_endpoint_auth_methods_supported": ["client_secret_post", "client_secret_basic", "none"]
        }

    # OAuth 2.0 Protected Resource Metadata (RFC 9728)
    @app.get("/.well-known/oauth-protected-resource")
    async def oauth_protected_resource_metadata():
        """OAuth 2.0 Protected Resource Metadata"""
        return {
            "resource": f"{config.base_url}/mcp",
            "authorization_servers": [config.base_url],
            "scopes_supported": config.oauth_scopes,
            "bearer_methods_supported": ["header", "query"]
        }

    # Dynamic Client Registration (RFC 7591)
    @app.post("/oauth/register", status_code=201)
    async def dynamic_client_registration(request: Request):
        """Dynamic Client Registration endpoint"""
        enforce_rate_limit(f"register:{client_ip(request)}", max_requests=5)

        try:
            metadata = await request.json()
        except ValueError:
            raise OAuthError("invalid_client_metadata", "Request body must be JSON")
        if not isinstance(metadata, dict):
            raise OAuthError("invalid_client_metadata", "Request body must be a JSON object")

        try:
            registration = ClientRegistrationRequest(**metadata)
        except ValidationError as e:
            error = e.errors()[0]
            field = ".".join(str(part) for part in error["loc"])
            raise OAuthError("invalid_client_metadata", f"{field}: {error['msg']}")

        client = await registry.register(registration)
        logger.info(f"Registered new client: {client.client_id} from {client_ip(request)}")
        return JSONResponse(
            status_code=201,
            content=client.to_registration_response().model_dump(),
            headers={"Cache-Control": "no-store"}
        )

    # OAuth Authorization endpoint
    @app.get("/oauth/authorize")
    async def oauth_authorize(
        client_id: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        response_type: str = "code",
        scope: Optional[str] = None,
        state: Optional[str] = None,
        code_challenge: Optional[str] = None,
        code_challenge_method: str = "S256"
    ):
        """OAuth 2.1 Authorization endpoint: sends the user agent to the login prompt"""
        enforce_rate_limit(f"authorize:{client_id}", max_requests=10)

        # Errors before the redirect URI is verified are shown here, not redirected
        client = flow.resolve_client(client_id, redirect_uri)
        login_url = flow.begin_authorization(
            client,
            redirect_uri,
            code_challenge,
            scope=scope,
            state=state,
            response_type=response_type,
            code_challenge_method=code_challenge_method
        )
        return RedirectResponse(url=login_url, status_code=302)

    # Login prompt
    @app.get("/auth/login", response_class=HTMLResponse)
    async def login_page(request: Request):
        """Credential form for a pending authorization"""
        return HTMLResponse(render_login_page(dict(request.query_params)))

    @app.post("/auth/login")
    async def login_submit(request: Request):
        """Check credentials and send the user agent back to the client with a code"""
        enforce_rate_limit(f"login:{client_ip(request)}", max_requests=10)

        body = await read_body(request)
        wants_json = config.login_response_mode == "json" or request.headers.get("content-type", "").startswith("application/json")

        try:
            login = LoginRequest(**body)
        except ValidationError as e:
            error = e.errors()[0]
            field = ".".join(str(part) for part in error["loc"])
            raise OAuthError("invalid_request", f"{field}: {error['msg']}")

        attempt = await flow.complete_login(
            email=login.email or login.user_id or "",
            password=login.password or "",
            client_id=login.client_id,
            state=login.state or None,
            code_challenge=login.code_challenge,
            redirect_uri=login.redirect_uri,
            scopes=login.requested_scopes()
        )

        if attempt.error is not None:
            if wants_json:
                return JSONResponse(
                    status_code=400,
                    content=attempt.error.to_dict(),
                    headers={"Cache-Control": "no-store"}
                )
            return HTMLResponse(render_login_page(body, error=LOGIN_FAILED_MESSAGE), status_code=400)

        redirect_url = attempt.client_redirect_url()
        if wants_json:
            return JSONResponse(content={"redirectUrl": redirect_url}, headers={"Cache-Control": "no-store"})
        return RedirectResponse(url=redirect_url, status_code=302)

    async def authenticate_client(request: Request, form: Dict[str, Any]):
        basic_id, basic_secret = parse_basic_auth(request)
        if basic_id is not None:
            return registry.authenticate(basic_id, basic_secret)
        return registry.authenticate(form.get("client_id"), form.get("client_secret"))

    # OAuth Token endpoint
    @app.post("/oauth/token")
    async def oauth_token(request: Request):
        """OAuth 2.1 Token endpoint with PKCE verification"""
        form = dict(await request.form())

        client = await authenticate_client(request, form)
        enforce_rate_limit(f"token:{client.client_id}", max_requests=20)

        grant_type = form.get("grant_type")
        if grant_type == "authorization_code":
            token_response = await flow.exchange(
                client,
                form.get("code"),
                form.get("code_verifier"),
                form.get("redirect_uri")
            )
        elif grant_type == "refresh_token":
            token_response = await flow.exchange_refresh(client, form.get("refresh_token"), form.get("scope"))
        elif not grant_type:
            raise OAuthError("invalid_request", "grant_type is required")
        else:
            raise OAuthError("unsupported_grant_type", f"Unsupported grant_type: {grant_type}")

        logger.info(f"Access token issued for client {client.client_id} via {grant_type}")
        return JSONResponse(
            content=token_response.model_dump(exclude_none=True),
            headers={"Cache-Control": "no-store", "Pragma": "no-cache"}
        )

    # Token introspection endpoint
    @app.post("/oauth/introspect")
    async def token_introspection(request: Request):
        """OAuth 2.0 Token Introspection (RFC 7662)"""
        form = dict(await request.form())
        token = form.get("token")
        if not token:
            raise OAuthError("invalid_request", "token parameter required")

        result = await ledger.introspect(token)
        return TokenIntrospectionResponse(**result).model_dump(exclude_none=True)

    # Token revocation endpoint
    @app.post("/oauth/revoke")
    async def token_revocation(request: Request):
        """OAuth 2.0 Token Revocation (RFC 7009)"""
        form = dict(await request.form())
        client = await authenticate_client(request, form)

        token = form.get("token")
        if not token:
            raise OAuthError("invalid_request", "token parameter required")

        await ledger.revoke(client.client_id, token, form.get("token_type_hint"))
        return Response(status_code=200)

    # MCP Streamable HTTP Transport endpoint
    @app.api_route("/mcp", methods=["GET", "POST", "DELETE"])
    async def mcp_endpoint(request: Request):
        """
        Main MCP endpoint implementing Streamable HTTP transport
        POST carries JSON-RPC messages, GET opens the session's SSE stream
        and DELETE ends the session
        """
        identity = await gate.authenticate(request)
        enforce_rate_limit(f"mcp:{identity.user_id}", config.rate_limit_requests, config.rate_limit_window)

        if request.method == "POST":
            return await mcp_transport.handle_post_request(request, identity)
        if request.method == "GET":
            return await mcp_transport.handle_get_request(request, identity)
        return await mcp_transport.handle_delete_request(request, identity)

    return app


app = create_app()

if __name__ == "__main__":
    config = app.state.config

    print(f"🚀 Starting {SERVICE_NAME} v{config.mcp_server_version}")
    print(f"📊 Environment: {config.environment}")
    print(f"🗄️  Database: {config.database_url}")
    print(f"🌐 Base URL: {config.base_url}")
    print(f"🔧 OAuth 2.1 with PKCE and Dynamic Client Registration enabled")
    print(f"🚦 Streamable HTTP transport at {config.base_url}/mcp")
    print(f"💚 Health check: {config.base_url}/health")

    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.is_development,
        log_level=config.log_level.lower(),
        access_log=True
    )
