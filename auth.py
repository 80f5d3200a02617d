import base64
import hashlib
import hmac
import logging
import secrets
import time
from typing import Any, Dict, List, Optional, Tuple

from config import Config
from models import AuthorizationCode, IssuedToken, TokenIdentity
from token_store import ACCESS, CODE, REFRESH, Entry, TokenStore

logger = logging.getLogger(__name__)


class OAuthError(Exception):
    """An error from the OAuth 2.1 error vocabulary, rendered as JSON at the HTTP boundary"""

    def __init__(self, error: str, description: str = "", status_code: int = 400):
        self.error = error
        self.description = description
        self.status_code = status_code
        super().__init__(f"{error}: {description}" if description else error)

    def to_dict(self) -> Dict[str, str]:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


def generate_secret(nbytes: int = 32) -> str:
    """URL-safe random secret with nbytes of entropy"""
    return secrets.token_urlsafe(nbytes)


def token_digest(token: str) -> str:
    """Storage key for a secret value"""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def pkce_challenge(code_verifier: str) -> str:
    """S256 challenge: BASE64URL(SHA256(verifier)) without padding"""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def verify_pkce(code_verifier: str, code_challenge: str) -> bool:
    try:
        return pkce_challenge(code_verifier) == code_challenge
    except UnicodeEncodeError:
        return False


class TokenLedger:
    """Issues, validates, rotates and revokes authorization codes, access tokens and refresh tokens"""

    def __init__(self, config: Config, store: TokenStore):
        self.config = config
        self.store = store

    async def issue_code(
        self,
        client_id: str,
        user_id: int,
        code_challenge: str,
        redirect_uri: str,
        scopes: List[str]
    ) -> str:
        """Create a single-use authorization code bound to a PKCE challenge"""
        code = generate_secret()
        now = time.time()
        await self.store.put(CODE, token_digest(code), AuthorizationCode(
            client_id=client_id,
            user_id=user_id,
            code_challenge=code_challenge,
            redirect_uri=redirect_uri,
            scopes=scopes,
            created_at=now,
            expires_at=now + self.config.oauth_code_expiry
        ))
        logger.info(f"Authorization code issued for client {client_id}, user {user_id}")
        return code

    async def _validated_code(
        self,
        client_id: str,
        code: str,
        code_verifier: Optional[str],
        redirect_uri: Optional[str]
    ) -> Tuple[str, AuthorizationCode]:
        key = token_digest(code)
        record = await self.store.get(CODE, key)

        if record is None or record.client_id != client_id:
            raise OAuthError("invalid_grant", "Invalid authorization code")

        if time.time() > record.expires_at:
            await self.store.delete(CODE, key)
            raise OAuthError("invalid_grant", "Authorization code expired")

        if redirect_uri is not None and redirect_uri != record.redirect_uri:
            raise OAuthError("invalid_grant", "redirect_uri does not match the authorization request")

        if code_verifier is not None and not verify_pkce(code_verifier, record.code_challenge):
            raise OAuthError("invalid_grant", "Invalid code_verifier")

        return key, record

    async def redeem_code(
        self,
        client_id: str,
        code: str,
        code_verifier: Optional[str] = None,
        redirect_uri: Optional[str] = None
    ) -> Tuple[int, List[str]]:
        """Consume an authorization code and return the (user_id, scopes) it was issued for"""
        key, record = await self._validated_code(client_id, code, code_verifier, redirect_uri)

        # Only one concurrent redeemer gets the record back
        if await self.store.take(CODE, key) is None:
            raise OAuthError("invalid_grant", "Authorization code already used")

        return record.user_id, record.scopes

    async def exchange_code(
        self,
        client_id: str,
        code: str,
        code_verifier: Optional[str] = None,
        redirect_uri: Optional[str] = None
    ) -> Tuple[str, str, int, List[str]]:
        """Redeem a code and issue its token pair in one write; returns (access, refresh, expires_in, scopes)"""
        key, record = await self._validated_code(client_id, code, code_verifier, redirect_uri)

        access_token, refresh_token, entries = self._token_pair(client_id, record.user_id, record.scopes)
        if await self.store.rotate(CODE, key, entries) is None:
            raise OAuthError("invalid_grant", "Authorization code already used")

        logger.info(f"Token pair issued for client {client_id}, user {record.user_id}")
        return access_token, refresh_token, self.config.oauth_token_expiry, record.scopes

    def _token_pair(self, client_id: str, user_id: int, scopes: List[str]) -> Tuple[str, str, List[Entry]]:
        access_token = generate_secret()
        refresh_token = generate_secret()
        now = time.time()
        entries = [
            (ACCESS, token_digest(access_token), IssuedToken(
                client_id=client_id,
                user_id=user_id,
                scopes=scopes,
                created_at=now,
                expires_at=now + self.config.oauth_token_expiry
            )),
            (REFRESH, token_digest(refresh_token), IssuedToken(
                client_id=client_id,
                user_id=user_id,
                scopes=scopes,
                created_at=now,
                expires_at=now + self.config.oauth_refresh_token_expiry
            )),
        ]
        return access_token, refresh_token, entries

    async def issue_token_pair(self, client_id: str, user_id: int, scopes: List[str]) -> Tuple[str, str, int]:
        """Create an access token and a refresh token; returns (access, refresh, expires_in)"""
        access_token, refresh_token, entries = self._token_pair(client_id, user_id, scopes)
        await self.store.put_many(entries)

        logger.info(f"Token pair issued for client {client_id}, user {user_id}")
        return access_token, refresh_token, self.config.oauth_token_expiry

    async def refresh(
        self,
        client_id: str,
        refresh_token: str,
        requested_scopes: Optional[List[str]] = None
    ) -> Tuple[str, str, int, List[str]]:
        """Rotate a refresh token; returns (access, refresh, expires_in, scopes)"""
        key = token_digest(refresh_token)
        record = await self.store.get(REFRESH, key)

        if record is None or record.client_id != client_id:
            raise OAuthError("invalid_grant", "Invalid refresh token")

        if time.time() > record.expires_at:
            await self.store.delete(REFRESH, key)
            raise OAuthError("invalid_grant", "Refresh token expired")

        scopes = requested_scopes or record.scopes
        if not set(scopes) <= set(record.scopes):
            raise OAuthError("invalid_scope", "Requested scope exceeds the original grant")

        access_token, new_refresh_token, entries = self._token_pair(client_id, record.user_id, scopes)
        if await self.store.rotate(REFRESH, key, entries) is None:
            raise OAuthError("invalid_grant", "Refresh token already used")

        expires_in = self.config.oauth_token_expiry
        logger.info(f"Refresh token rotated for client {client_id}")
        return access_token, new_refresh_token, expires_in, scopes

    async def verify_access_token(self, token: str) -> TokenIdentity:
        """Resolve an access token to the identity it was issued for"""
        key = token_digest(token)
        record = await self.store.get(ACCESS, key)

        if record is None:
            raise OAuthError("invalid_token", "Invalid access token", status_code=401)

        if time.time() > record.expires_at:
            await self.store.delete(ACCESS, key)
            raise OAuthError("invalid_token", "Access token expired", status_code=401)

        return TokenIdentity(
            client_id=record.client_id,
            user_id=record.user_id,
            scopes=record.scopes,
            expires_at=int(record.expires_at)
        )

    async def revoke(self, client_id: str, token: str, token_type_hint: Optional[str] = None) -> None:
        """Revoke an access or refresh token owned by client_id; anything else is a silent no-op"""
        kinds = [REFRESH, ACCESS] if token_type_hint == "refresh_token" else [ACCESS, REFRESH]
        key = token_digest(token)

        for kind in kinds:
            record = await self.store.get(kind, key)
            if record is None:
                continue
            if hmac.compare_digest(record.client_id, client_id):
                await self.store.delete(kind, key)
                logger.info(f"{kind.capitalize()} token revoked for client {client_id}: {token[:8]}...")
            return

    async def introspect(self, token: str) -> Dict[str, Any]:
        """OAuth 2.0 Token Introspection (RFC 7662)"""
        try:
            identity = await self.verify_access_token(token)
        except OAuthError:
            return {"active": False}

        record = await self.store.get(ACCESS, token_digest(token))
        return {
            "active": True,
            "client_id": identity.client_id,
            "scope": " ".join(identity.scopes),
            "token_type": "Bearer",
            "exp": identity.expires_at,
            "iat": int(record.created_at) if record else None,
            "sub": str(identity.user_id)
        }

    async def purge_expired(self) -> Dict[str, int]:
        """Delete expired codes and tokens"""
        counts = await self.store.purge_expired(time.time())
        if any(counts.values()):
            logger.info(
                f"Cleaned up {counts.get(CODE, 0)} codes, {counts.get(ACCESS, 0)} tokens, "
                f"{counts.get(REFRESH, 0)} refresh tokens"
            )
        return counts


class RateLimiter:
    """Sliding-window request counter keyed by caller"""

    def __init__(self, config: Config):
        self.config = config
        self.rate_limits: Dict[str, List[float]] = {}

    def check_rate_limit(self, key: str, max_requests: int = 100, window_seconds: int = 3600) -> bool:
        """Check if a request is within rate limits"""
        if not self.config.rate_limit_enabled:
            return True

        now = time.time()
        window_start = now - window_seconds

        # Clean old entries
        self.rate_limits[key] = [
            timestamp for timestamp in self.rate_limits.get(key, [])
            if timestamp > window_start
        ]

        # Check limit
        if len(self.rate_limits[key]) >= max_requests:
            return False

        # Add current request
        self.rate_limits[key].append(now)
        return True

    def prune(self, window_seconds: int = 3600):
        """Drop keys with no requests inside the window"""
        cutoff = time.time() - window_seconds
        for key in list(self.rate_limits.keys()):
            self.rate_limits[key] = [t for t in self.rate_limits[key] if t > cutoff]
            if not self.rate_limits[key]:
                del self.rate_limits[key]
