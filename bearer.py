import logging
from typing import Optional

from fastapi import Request

from auth import OAuthError, TokenLedger
from models import TokenIdentity

logger = logging.getLogger(__name__)


def extract_bearer_token(request: Request) -> Optional[str]:
    """Bearer value from the Authorization header, else the access_token query parameter"""
    auth_header = request.headers.get("Authorization")
    if auth_header:
        scheme, _, value = auth_header.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()

    # EventSource clients cannot set headers
    token = request.query_params.get("access_token")
    return token or None


class BearerGate:
    """Resolves the bearer token on a request to the identity it was issued for"""

    def __init__(self, ledger: TokenLedger, resource_metadata_url: str, realm: str = "records-mcp"):
        self.ledger = ledger
        self.resource_metadata_url = resource_metadata_url
        self.realm = realm

    def challenge(self, error: Optional[str] = None) -> str:
        """WWW-Authenticate header value for a 401"""
        header = f'Bearer realm="{self.realm}", resource_metadata="{self.resource_metadata_url}"'
        if error:
            header += f', error="{error}"'
        return header

    async def authenticate(self, request: Request) -> TokenIdentity:
        """Attach the resolved identity to request.state or raise a 401 OAuthError"""
        token = extract_bearer_token(request)
        if not token:
            raise OAuthError("unauthorized", "Valid access token required", status_code=401)

        try:
            identity = await self.ledger.verify_access_token(token)
        except OAuthError as e:
            logger.info(f"Bearer token rejected: {e.description}")
            raise

        request.state.identity = identity
        return identity
