"""Configuration management for the relay."""

from enum import StrEnum
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CLIENT_STATE = "change-me-in-production"  # noqa: S105


class RelayMode(StrEnum):
    """How broadcast events are routed to live connections."""

    ROOM = "room"
    ALL = "all"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Identity provider
    oauth_client_id: str = Field(default="")
    oauth_client_secret: str = Field(default="")
    oauth_tenant_id: str = Field(default="common")
    oauth_authority: str = Field(default="https://login.microsoftonline.com")
    oauth_scopes: str = Field(default="User.Read,Mail.Read")

    # Subscriptions
    subscription_client_state: str = Field(default=DEFAULT_CLIENT_STATE)
    app_only_resource: str = Field(default="/teams/getAllMessages")
    user_resource: str = Field(default="me/mailFolders/inbox/messages")
    subscription_lifetime_minutes: int = Field(default=60)
    subscription_store: str = Field(default="memory")
    redis_url: str = Field(default="redis://localhost:6381/0")

    # Certificates
    certificate_path: str | None = Field(default=None)
    private_key_path: str | None = Field(default=None)
    private_key_password: str | None = Field(default=None)
    certificate_id: str | None = Field(default=None)
    oaep_hash: str = Field(default="sha1")

    # Remote API
    graph_base_url: str = Field(default="https://graph.microsoft.com/v1.0")
    message_select_fields: str = Field(default="subject,id,from,bodyPreview")
    fetch_timeout_seconds: float = Field(default=10.0)
    enrich_encrypted_notifications: bool = Field(default=False)

    # Validation tokens
    jwks_url: str = Field(default="https://login.microsoftonline.com/common/discovery/v2.0/keys")
    token_issuer_template: str = Field(default="https://sts.windows.net/{tenant_id}/")
    token_leeway_seconds: int = Field(default=30)
    jwks_cache_seconds: int = Field(default=3600)

    # Webhook + realtime
    public_base_url: str = Field(default="https://localhost:3000")
    webhook_response_timeout_seconds: float = Field(default=3.0)
    relay_mode: RelayMode = Field(default=RelayMode.ROOM)
    host: str = Field(default="0.0.0.0")  # noqa: S104
    port: int = Field(default=3000)

    # API
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Validate that production has secure settings."""
        if self.environment == "production":
            if self.subscription_client_state == DEFAULT_CLIENT_STATE:
                raise ValueError("SUBSCRIPTION_CLIENT_STATE must be changed in production")
            if "localhost" in self.public_base_url:
                raise ValueError("PUBLIC_BASE_URL should not use localhost in production")
        return self

    @property
    def scopes(self) -> list[str]:
        """OAuth scopes as a list."""
        return [scope.strip() for scope in self.oauth_scopes.split(",") if scope.strip()]

    @property
    def notification_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/listen"

    @property
    def lifecycle_notification_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/lifecycle"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
