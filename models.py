from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlsplit

from pydantic import BaseModel, Field, field_validator

# OAuth Models
class ClientRegistrationRequest(BaseModel):
    """OAuth 2.1 Dynamic Client Registration Request"""
    client_name: Optional[str] = Field(None, description="Human-readable client name")
    redirect_uris: List[str] = Field(..., description="Array of redirection URI strings")
    grant_types: List[str] = Field(["authorization_code", "refresh_token"], description="Grant types")
    response_types: List[str] = Field(["code"], description="Response types")
    scope: Optional[str] = Field(None, description="Requested scope")
    token_endpoint_auth_method: Optional[str] = Field("client_secret_post", description="Authentication method")

    @field_validator('redirect_uris')
    @classmethod
    def validate_redirect_uris(cls, v):
        if not v:
            raise ValueError('At least one redirect URI is required')
        for uri in v:
            parts = urlsplit(uri)
            if parts.scheme == 'https':
                valid = bool(parts.hostname)
            elif parts.scheme == 'http':
                valid = parts.hostname in ('localhost', '127.0.0.1')
            else:
                # Custom schemes for native apps
                valid = bool(parts.scheme) and '://' in uri
            if not valid:
                raise ValueError(f'Invalid redirect URI: {uri}')
        return v

    @field_validator('grant_types')
    @classmethod
    def validate_grant_types(cls, v):
        for grant_type in v:
            if grant_type not in ("authorization_code", "refresh_token"):
                raise ValueError(f'Unsupported grant type: {grant_type}')
        return v

    @field_validator('response_types')
    @classmethod
    def validate_response_types(cls, v):
        if any(response_type != "code" for response_type in v):
            raise ValueError('Only the "code" response type is supported')
        return v

class ClientRegistrationResponse(BaseModel):
    """OAuth 2.1 Dynamic Client Registration Response"""
    client_id: str
    client_secret: Optional[str] = None
    client_name: Optional[str] = None
    redirect_uris: List[str]
    grant_types: List[str]
    response_types: List[str]
    scope: str
    token_endpoint_auth_method: str
    client_id_issued_at: int
    client_secret_expires_at: int

class TokenResponse(BaseModel):
    """OAuth 2.1 Token Response"""
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    scope: Optional[str] = None

class TokenIntrospectionResponse(BaseModel):
    """OAuth 2.1 Token Introspection Response"""
    active: bool
    client_id: Optional[str] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None
    exp: Optional[int] = None
    iat: Optional[int] = None
    sub: Optional[str] = None

class LoginRequest(BaseModel):
    """Credentials posted by the login page, with the echoed authorization parameters"""
    email: Optional[str] = None
    user_id: Optional[str] = Field(None, description="Alias for email")
    password: Optional[str] = None
    client_id: Optional[str] = None
    state: Optional[str] = None
    code_challenge: Optional[str] = None
    redirect_uri: Optional[str] = None
    scope: Optional[Union[str, List[str]]] = None
    scopes: Optional[Union[str, List[str]]] = None

    def requested_scopes(self) -> List[str]:
        scopes = self.scopes if self.scopes is not None else self.scope
        if isinstance(scopes, str):
            return scopes.split()
        return scopes or []

# Stored records
class OAuthClient(BaseModel):
    """A registered OAuth client"""
    client_id: str
    client_secret: Optional[str] = None
    client_name: Optional[str] = None
    redirect_uris: List[str]
    grant_types: List[str] = ["authorization_code", "refresh_token"]
    response_types: List[str] = ["code"]
    scope: str = ""
    client_id_issued_at: int = 0
    client_secret_expires_at: int = 0  # 0 = never

    @property
    def scopes(self) -> List[str]:
        return self.scope.split()

    @property
    def token_endpoint_auth_method(self) -> str:
        return "client_secret_post" if self.client_secret else "none"

    def to_registration_response(self) -> ClientRegistrationResponse:
        return ClientRegistrationResponse(
            token_endpoint_auth_method=self.token_endpoint_auth_method,
            **self.model_dump()
        )

class AuthorizationCode(BaseModel):
    """A pending authorization code bound to a PKCE challenge"""
    client_id: str
    user_id: int
    code_challenge: str
    redirect_uri: str
    scopes: List[str]
    created_at: float
    expires_at: float

class IssuedToken(BaseModel):
    """An access or refresh token as kept by the token store"""
    client_id: str
    user_id: int
    scopes: List[str]
    created_at: float
    expires_at: float

class TokenIdentity(BaseModel):
    """The identity a verified access token resolves to"""
    client_id: str
    user_id: int
    scopes: List[str]
    expires_at: int

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes

# MCP Models
class MCPRequest(BaseModel):
    """MCP JSON-RPC Request"""
    jsonrpc: str = Field("2.0", description="JSON-RPC version")
    method: str = Field(..., description="Method name")
    params: Optional[Dict[str, Any]] = Field(None, description="Method parameters")
    id: Optional[Union[str, int]] = Field(None, description="Request identifier")

    @property
    def is_notification(self) -> bool:
        return self.id is None

class MCPServerInfo(BaseModel):
    """MCP Server Information"""
    name: str
    version: str

class MCPTool(BaseModel):
    """MCP Tool Definition"""
    name: str
    description: str
    inputSchema: Dict[str, Any]

class MCPToolCallParams(BaseModel):
    """MCP Tool Call Parameters"""
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)

class MCPContentItem(BaseModel):
    """MCP Content Item"""
    type: str = "text"
    text: Optional[str] = None

class MCPToolCallResult(BaseModel):
    """MCP Tool Call Result"""
    content: List[MCPContentItem]
    isError: bool = False

# Record Models
class UserRecord(BaseModel):
    """A user as exposed to tools (no credential material)"""
    id: int
    email: str
    name: Optional[str] = None

class PostRecord(BaseModel):
    """A post record"""
    id: int
    title: str
    content: Optional[str] = None
    published: bool = False
    viewCount: int = 0
    authorId: int
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None

# API Response Models
class HealthCheckResponse(BaseModel):
    """Health Check Response"""
    status: str
    service: str
    version: str
    timestamp: str
    components: Dict[str, str]
    sessions: int
    environment: str
