"""Chat Relay Service Configuration using Pydantic Settings.

Provides centralized configuration for the relay service including:
- Upstream provider settings (base URL, API key, models, timeouts)
- Transcript settings (context window, placeholder title, database URL)
- Relay policy (client disconnect handling)
- Logging and CORS

Configuration is loaded from environment variables and .env files using
Pydantic Settings. The @lru_cache decorator ensures a single settings
instance is shared across the application.

Last Grunted: 10/18/2026 10:00:00 AM UTC
"""
from typing import Optional, Literal
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache

DEFAULT_SYSTEM_PROMPT: str = (
    "You are a knowledgeable, precise assistant. Keep responses "
    "appropriately concise and stay consistent with the conversation so far."
)


class RelaySettings(BaseSettings):
    """Core service configuration for chat-relay.

    Settings are grouped by category:
    - Upstream: OpenAI-compatible endpoint, credentials, models
    - HTTP client: pool limits and per-phase timeouts
    - Transcript: context window size, placeholder title, storage backend
    - Relay: what to do with the upstream stream when the client leaves
    - Service: logging, CORS, shutdown

    Example:
        >>> settings = get_settings()
        >>> settings.default_model
        'gpt-4o-mini'
        >>> settings.chat_completions_url
        'https://api.openai.com/v1/chat/completions'

    Last Grunted: 10/18/2026 10:00:00 AM UTC
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Upstream provider
    upstream_base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI-compatible API base URL")
    upstream_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("upstream_api_key", "openai_api_key"),
        description="Bearer key for the upstream provider",
    )
    default_model: str = Field(default="gpt-4o-mini", description="Model used when a conversation does not pin one")
    title_model: str = Field(default="gpt-4o-mini", description="Cheap model used for auto-titles")
    default_system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, description="System prompt when a conversation has no override")

    # HTTP client pool and timeouts (seconds)
    http_max_connections: int = Field(default=100, description="Maximum total connections in pool")
    http_max_keepalive: int = Field(default=20, description="Maximum keep-alive connections")
    http_timeout_connect: float = Field(default=5.0, description="Upstream connect timeout")
    http_timeout_read: float = Field(default=60.0, description="Upstream per-read timeout")
    http_timeout_write: float = Field(default=30.0, description="Upstream write timeout")
    http_timeout_pool: float = Field(default=10.0, description="Wait for a pooled connection")
    title_timeout: float = Field(default=10.0, description="Timeout for the auto-title completion")

    # Transcript
    context_turns: int = Field(default=20, description="Prior turns sent upstream (oldest dropped first)")
    default_title: str = Field(default="New Mission", description="Placeholder title replaced by auto-title")
    database_url: Optional[str] = Field(default=None, description="Async SQLAlchemy URL; unset uses the in-memory store")
    sql_echo: bool = Field(default=False, description="Log SQL statements")

    # Relay policy
    disconnect_policy: Literal["drain", "abort"] = Field(
        default="drain",
        description="drain: finish reading upstream after a client disconnect; abort: stop upstream and persist partial text",
    )

    # Service
    client_url: str = Field(default="http://localhost:5173", description="Comma-separated CORS origins")
    log_level: str = Field(default="INFO", description="Root log level")
    log_format: Literal["json", "console"] = Field(default="json", description="structlog renderer")
    audit_event_buffer: int = Field(default=1000, description="Audit events kept in memory")
    shutdown_grace_seconds: float = Field(default=10.0, description="Wait for in-flight relays on shutdown")

    @property
    def chat_completions_url(self) -> str:
        """Full upstream chat-completions endpoint."""
        return f"{self.upstream_base_url.rstrip('/')}/chat/completions"

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.client_url.split(",") if o.strip()]


@lru_cache()
def get_settings() -> RelaySettings:
    """Get cached singleton settings instance.

    Returns:
        RelaySettings: Cached configuration instance.

    Note:
        To reload settings (e.g., after env changes), call get_settings.cache_clear()
        before calling get_settings() again.

    Last Grunted: 10/18/2026 10:00:00 AM UTC
    """
    return RelaySettings()
