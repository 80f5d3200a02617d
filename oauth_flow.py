"""
Authorization-code grant with PKCE.

One authorization attempt moves through these states:

    START -> AWAITING_LOGIN -> CODE_ISSUED -> EXCHANGED | EXPIRED | FAILED

``begin_authorization`` validates the request and produces the login-prompt
URL; it never checks credentials. ``complete_login`` is a separate step invoked
by whatever credential UI is in front of it, and ``exchange`` /
``exchange_refresh`` back the token endpoint.

An attempt object ends at CODE_ISSUED or FAILED. From there the code itself
carries the attempt: the ledger either consumes it on exchange or drops it
once it expires.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qsl

from auth import OAuthError, TokenLedger
from clients import ClientRegistry
from config import Config
from credentials import CredentialStore
from models import OAuthClient, TokenResponse

logger = logging.getLogger(__name__)

LOGIN_FAILED_MESSAGE = "Invalid email or password"


class AuthorizationState(str, Enum):
    START = "start"
    AWAITING_LOGIN = "awaiting_login"
    CODE_ISSUED = "code_issued"
    FAILED = "failed"


@dataclass
class AuthorizationAttempt:
    """Parameters of one authorization request as they travel through the login step"""
    client_id: str
    redirect_uri: str
    code_challenge: str
    scopes: List[str] = field(default_factory=list)
    state: Optional[str] = None
    status: AuthorizationState = AuthorizationState.START
    code: Optional[str] = None
    error: Optional[OAuthError] = None

    def fail(self, error: OAuthError) -> "AuthorizationAttempt":
        self.status = AuthorizationState.FAILED
        self.error = error
        return self

    def client_redirect_url(self) -> str:
        """Where the user agent goes after login: the client's redirect URI carrying code or error"""
        params = {}
        if self.code:
            params["code"] = self.code
        elif self.error:
            params.update(self.error.to_dict())
        if self.state:
            params["state"] = self.state
        return append_query(self.redirect_uri, params)


def append_query(url: str, params: dict) -> str:
    """Add query parameters to a URL, keeping any it already has"""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items() if value is not None)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


class RedirectableError(OAuthError):
    """An error reported by redirecting back to the client's verified redirect URI"""

    def __init__(self, error: str, description: str, redirect_uri: str, state: Optional[str]):
        super().__init__(error, description)
        self.redirect_uri = redirect_uri
        self.state = state

    def redirect_url(self) -> str:
        return append_query(self.redirect_uri, {**self.to_dict(), "state": self.state})


class AuthorizationFlow:
    """Drives the authorization-code grant against the registry, credential store and ledger"""

    def __init__(self, config: Config, registry: ClientRegistry, credentials: CredentialStore, ledger: TokenLedger):
        self.config = config
        self.registry = registry
        self.credentials = credentials
        self.ledger = ledger

    def resolve_client(self, client_id: Optional[str], redirect_uri: Optional[str]) -> OAuthClient:
        """Look up the client and check the redirect URI is one it registered"""
        if not client_id:
            raise OAuthError("invalid_request", "client_id is required")
        client = self.registry.get(client_id)
        if client is None:
            raise OAuthError("invalid_client", "Unknown client_id")
        if not redirect_uri:
            raise OAuthError("invalid_request", "redirect_uri is required")
        if redirect_uri not in client.redirect_uris:
            raise OAuthError("invalid_request", "Unregistered redirect_uri")
        return client

    def resolve_scopes(self, client: OAuthClient, scope: Optional[str]) -> List[str]:
        requested = scope.split() if scope else client.scopes
        allowed = set(client.scopes)
        if any(s not in allowed for s in requested):
            raise OAuthError("invalid_scope", f"Client may request only: {client.scope}")
        return requested

    def begin_authorization(
        self,
        client: OAuthClient,
        redirect_uri: str,
        code_challenge: Optional[str],
        scope: Optional[str] = None,
        state: Optional[str] = None,
        response_type: str = "code",
        code_challenge_method: str = "S256"
    ) -> str:
        """Validate an authorization request and return the login-prompt URL carrying its parameters"""
        if redirect_uri not in client.redirect_uris:
            raise OAuthError("invalid_request", "Unregistered redirect_uri")

        # The redirect URI is trusted from here on: errors go back to the client
        if response_type != "code":
            raise RedirectableError("unsupported_response_type", "Only response_type=code is supported", redirect_uri, state)
        if "authorization_code" not in client.grant_types:
            raise RedirectableError("unauthorized_client", "Client may not use the authorization_code grant", redirect_uri, state)
        if not code_challenge:
            raise RedirectableError("invalid_request", "code_challenge is required", redirect_uri, state)
        if code_challenge_method != "S256":
            raise RedirectableError("invalid_request", "code_challenge_method must be S256", redirect_uri, state)
        try:
            scopes = self.resolve_scopes(client, scope)
        except OAuthError as e:
            raise RedirectableError(e.error, e.description, redirect_uri, state)

        attempt = AuthorizationAttempt(
            client_id=client.client_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            scopes=scopes,
            state=state,
            status=AuthorizationState.AWAITING_LOGIN
        )
        logger.info(f"Authorization started for client {client.client_id}, awaiting login")

        params = {
            "client_id": attempt.client_id,
            "client_name": client.client_name or "Unknown Application",
            "redirect_uri": attempt.redirect_uri,
            "code_challenge": attempt.code_challenge,
            "scope": " ".join(attempt.scopes),
            "state": attempt.state,
        }
        return append_query(f"{self.config.base_url}/auth/login", params)

    async def complete_login(
        self,
        email: str,
        password: str,
        client_id: str,
        state: Optional[str],
        code_challenge: str,
        redirect_uri: str,
        scopes: List[str]
    ) -> AuthorizationAttempt:
        """Check credentials and issue a code; failures come back on the attempt, not raised"""
        # The login form echoes these back from the browser, so they are checked again
        client = self.resolve_client(client_id, redirect_uri)
        if not code_challenge:
            raise OAuthError("invalid_request", "code_challenge is required")
        scopes = self.resolve_scopes(client, " ".join(scopes))

        attempt = AuthorizationAttempt(
            client_id=client.client_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            scopes=scopes,
            state=state,
            status=AuthorizationState.AWAITING_LOGIN
        )

        user_id = await self.credentials.verify(email, password)
        if user_id is None:
            return attempt.fail(OAuthError("access_denied", LOGIN_FAILED_MESSAGE))

        attempt.code = await self.ledger.issue_code(client.client_id, user_id, code_challenge, redirect_uri, scopes)
        attempt.status = AuthorizationState.CODE_ISSUED
        return attempt

    async def exchange(
        self,
        client: OAuthClient,
        code: Optional[str],
        code_verifier: Optional[str],
        redirect_uri: Optional[str]
    ) -> TokenResponse:
        """authorization_code grant"""
        if "authorization_code" not in client.grant_types:
            raise OAuthError("unauthorized_client", "Client may not use the authorization_code grant")
        if not code:
            raise OAuthError("invalid_request", "code is required")
        if not code_verifier:
            raise OAuthError("invalid_request", "code_verifier is required")

        # Every code is bound to a redirect URI, so leaving it out is a mismatch
        access_token, refresh_token, expires_in, scopes = await self.ledger.exchange_code(
            client.client_id, code, code_verifier, redirect_uri or ""
        )

        logger.info(f"Authorization code exchanged for client {client.client_id}")
        return TokenResponse(
            access_token=access_token,
            expires_in=expires_in,
            refresh_token=refresh_token,
            scope=" ".join(scopes)
        )

    async def exchange_refresh(self, client: OAuthClient, refresh_token: Optional[str], scope: Optional[str] = None) -> TokenResponse:
        """refresh_token grant"""
        if "refresh_token" not in client.grant_types:
            raise OAuthError("unauthorized_client", "Client may not use the refresh_token grant")
        if not refresh_token:
            raise OAuthError("invalid_request", "refresh_token is required")

        requested = scope.split() if scope else None
        access_token, new_refresh_token, expires_in, scopes = await self.ledger.refresh(
            client.client_id, refresh_token, requested
        )
        return TokenResponse(
            access_token=access_token,
            expires_in=expires_in,
            refresh_token=new_refresh_token,
            scope=" ".join(scopes)
        )
