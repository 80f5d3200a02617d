import os
from typing import List

class Config:
    """Configuration management for the MCP server"""

    def __init__(self):
        # Server configuration
        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = int(os.getenv("PORT", 8000))
        self.environment = os.getenv("ENVIRONMENT", "development")
        self.base_url = os.getenv("BASE_URL", "http://localhost:8000").rstrip("/")

        # Security configuration
        self.allowed_origins = self._parse_allowed_origins()

        # Rate limiting configuration
        self.rate_limit_enabled = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
        self.rate_limit_requests = int(os.getenv("RATE_LIMIT_REQUESTS", 100))
        self.rate_limit_window = int(os.getenv("RATE_LIMIT_WINDOW", 3600))  # 1 hour

        # OAuth configuration
        self.oauth_code_expiry = int(os.getenv("OAUTH_CODE_EXPIRY", 600))  # 10 minutes
        self.oauth_token_expiry = int(os.getenv("OAUTH_TOKEN_EXPIRY", 3600))  # 1 hour
        self.oauth_refresh_token_expiry = int(os.getenv("OAUTH_REFRESH_TOKEN_EXPIRY", 86400 * 30))  # 30 days
        self.client_secret_expiry = int(os.getenv("CLIENT_SECRET_EXPIRY", 86400 * 365))  # 1 year
        self.oauth_scopes = os.getenv("OAUTH_SCOPES", "read write").split()
        self.login_response_mode = os.getenv("LOGIN_RESPONSE_MODE", "redirect").lower()

        # Static client created at startup
        self.bootstrap_client_id = os.getenv("BOOTSTRAP_CLIENT_ID")
        self.bootstrap_client_secret = os.getenv("BOOTSTRAP_CLIENT_SECRET")
        self.bootstrap_redirect_uris = [
            uri.strip() for uri in os.getenv("BOOTSTRAP_REDIRECT_URIS", "").split(",") if uri.strip()
        ]

        # Storage configuration
        self.database_url = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./records_mcp.db")
        self.token_store = os.getenv("TOKEN_STORE", "database").lower()

        # Cleanup and session lifecycle configuration
        self.cleanup_interval = int(os.getenv("CLEANUP_INTERVAL", 300))  # 5 minutes
        self.session_idle_timeout = int(os.getenv("SESSION_IDLE_TIMEOUT", 0))  # 0 disables
        self.shutdown_drain_timeout = float(os.getenv("SHUTDOWN_DRAIN_TIMEOUT", 10))

        # MCP configuration
        self.mcp_protocol_version = os.getenv("MCP_PROTOCOL_VERSION", "2025-03-26")
        self.mcp_server_name = os.getenv("MCP_SERVER_NAME", "records-remote-mcp")
        self.mcp_server_version = os.getenv("MCP_SERVER_VERSION", "1.0.0")

        # Logging configuration
        self.log_level = os.getenv("LOG_LEVEL", "INFO")
        self.log_format = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        self._validate_config()

    def _parse_allowed_origins(self) -> List[str]:
        """Parse allowed origins from environment variable"""
        origins_str = os.getenv("ALLOWED_ORIGINS", "*")
        if origins_str == "*":
            return ["*"]
        return [origin.strip() for origin in origins_str.split(",")]

    def _validate_config(self):
        """Validate configuration values"""
        if self.environment == "production":
            if not self.base_url.startswith("https://"):
                raise ValueError("BASE_URL must use HTTPS in production")

        if self.oauth_code_expiry < 30 or self.oauth_code_expiry > 600:
            raise ValueError("OAUTH_CODE_EXPIRY must be between 30 and 600 seconds")

        if self.oauth_token_expiry < 300:  # 5 minutes minimum
            raise ValueError("OAUTH_TOKEN_EXPIRY must be at least 300 seconds")

        if self.oauth_refresh_token_expiry <= self.oauth_token_expiry:
            raise ValueError("OAUTH_REFRESH_TOKEN_EXPIRY must exceed OAUTH_TOKEN_EXPIRY")

        if self.token_store not in ("database", "memory"):
            raise ValueError("TOKEN_STORE must be 'database' or 'memory'")

        if self.login_response_mode not in ("redirect", "json"):
            raise ValueError("LOGIN_RESPONSE_MODE must be 'redirect' or 'json'")

        if self.bootstrap_client_id and not self.bootstrap_redirect_uris:
            raise ValueError("BOOTSTRAP_REDIRECT_URIS is required when BOOTSTRAP_CLIENT_ID is set")

        if self.shutdown_drain_timeout <= 0:
            raise ValueError("SHUTDOWN_DRAIN_TIMEOUT must be positive")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode"""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode"""
        return self.environment == "production"

    @property
    def protected_resource_metadata_url(self) -> str:
        return f"{self.base_url}/.well-known/oauth-protected-resource"

