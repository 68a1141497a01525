from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------
    APP_NAME: str = "Upstream MCP Bridge"
    DEBUG: bool = False
    ENV: str = "development"
    PROTOCOL: str = "http"
    HOST: str = "127.0.0.1"
    PORT: int = 8000

    @property
    def BASE_URL(self) -> str:
        return f"{self.PROTOCOL}://{self.HOST}:{self.PORT}"

    # ------------------------------------------------------------------
    # Database
    # ------------------------------------------------------------------
    DATABASE_URL: str = "sqlite+aiosqlite:///./bridge.db"

    # ------------------------------------------------------------------
    # Upstream OAuth (we are the client)
    # ------------------------------------------------------------------
    UPSTREAM_CLIENT_ID: str
    UPSTREAM_CLIENT_SECRET: str
    UPSTREAM_AUTH_URL: str
    UPSTREAM_TOKEN_URL: str
    UPSTREAM_SCOPE: str = "public_api"
    UPSTREAM_TIMEOUT_SECONDS: float = 30.0

    @property
    def UPSTREAM_REDIRECT_URI(self) -> str:
        return f"{self.BASE_URL}/callback/upstream"

    # ------------------------------------------------------------------
    # OAuth Broker (we are the provider)
    # ------------------------------------------------------------------
    DEFAULT_SCOPE: str = "upstream:read"
    SUPPORTED_SCOPES: List[str] = ["upstream:read"]

    RESPONSE_TYPES_SUPPORTED: List[str] = ["code"]
    GRANT_TYPES_SUPPORTED: List[str] = ["authorization_code"]
    CODE_CHALLENGE_METHODS_SUPPORTED: List[str] = ["S256", "plain"]
    TOKEN_ENDPOINT_AUTH_METHOD: str = "none"

    TOKEN_BYTES: int = 32
    STATE_BYTES: int = 16

    OAUTH_STATE_TTL: int = 600  # 10 minutes
    AUTH_CODE_TTL: int = 300  # 5 minutes
    ACCESS_TOKEN_TTL: int = 2592000  # 30 days

    # ------------------------------------------------------------------
    # Token encryption
    # ------------------------------------------------------------------
    TOKEN_ENCRYPTION_KEY: str

    @field_validator("TOKEN_ENCRYPTION_KEY")
    @classmethod
    def _check_encryption_key(cls, value: str) -> str:
        if len(value) != 64:
            raise ValueError("TOKEN_ENCRYPTION_KEY must be exactly 64 hex characters (32 bytes)")
        try:
            bytes.fromhex(value)
        except ValueError:
            raise ValueError("TOKEN_ENCRYPTION_KEY must be a hex string")
        return value

    @property
    def ENCRYPTION_KEY(self) -> bytes:
        return bytes.fromhex(self.TOKEN_ENCRYPTION_KEY)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    SESSION_TTL: int = 86400  # 24 hours
    SESSION_CLEANUP_INTERVAL: int = 3600  # 1 hour
    STALE_TERMINATION_CUTOFF: int = 86400  # 24 hours
    IDLE_TRANSPORT_TTL: int = 300  # 5 minutes
    IDLE_TRANSPORT_REAP_INTERVAL: int = 60
    MAX_ACTIVE_TRANSPORTS_WARN: int = 100
    GRACEFUL_SHUTDOWN_TIMEOUT: float = 10.0

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # ------------------------------------------------------------------
    # Hosts / CORS
    # ------------------------------------------------------------------
    ALLOWED_HOSTS: str = "*"
    ALLOWED_ORIGINS: str = ""
    CORS_ALLOW_ORIGINS: List[str] = ["*"]
    CORS_ALLOW_METHODS: List[str] = ["*"]
    CORS_ALLOW_HEADERS: List[str] = ["*"]

    # ------------------------------------------------------------------
    # Meta
    # ------------------------------------------------------------------
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


# Singleton settings object (import this everywhere)
settings = Settings()
