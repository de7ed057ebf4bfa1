from __future__ import annotations

import os
from dataclasses import dataclass

from pydantic import BaseModel, Field, model_validator

from .errors import UnsupportedProviderError
from .handlers import MISTRAL_API_BASE, OPENROUTER_API_BASE, Handler, parse_handler

DEFAULT_PREFILL = "[Continue.]"
DEFAULT_POSTFILL = (
    "[Write the next reply as instructed, taking the thoughts in the chain_of_thought block into account.]"
)
DEFAULT_COT_PROMPT = (
    "[Pause the roleplay. Think step by step about how {character} should answer {username}'s last "
    "message: what {character} knows, feels and wants right now, and what would move the scene forward. "
    "Reply only with these thoughts.]"
)


def _parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class ProviderEndpoint:
    handler: Handler
    base_url: str
    api_key: str | None


class ProxyConfig(BaseModel):
    # Primary backend
    primary_endpoint: str = Field(
        default_factory=lambda: os.getenv("PRIMARY_ENDPOINT", "http://127.0.0.1:5000")
    )
    liveness_path: str = Field(default_factory=lambda: os.getenv("LIVENESS_PATH", "/health"))
    liveness_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("LIVENESS_TIMEOUT_SECONDS", "5"))
    )

    # Message framing
    prefill: str = Field(default_factory=lambda: os.getenv("PREFILL", DEFAULT_PREFILL))
    postfill: str = Field(default_factory=lambda: os.getenv("POSTFILL", DEFAULT_POSTFILL))
    cot_prompt: str = Field(default_factory=lambda: os.getenv("COT_PROMPT", DEFAULT_COT_PROMPT))
    character: str = Field(default_factory=lambda: os.getenv("COT_CHARACTER", "Character"))
    username: str = Field(default_factory=lambda: os.getenv("COT_USERNAME", "user"))
    cot_rotation: int = Field(default_factory=lambda: int(os.getenv("COT_ROTATION", "0")), ge=0)
    honor_extension_settings: bool = Field(
        default_factory=lambda: _env_bool("HONOR_EXTENSION_SETTINGS", "true")
    )

    # Auxiliary chain-of-thought model (OpenAI-compatible)
    cot_base_url: str = Field(default_factory=lambda: os.getenv("COT_BASE_URL", MISTRAL_API_BASE))
    cot_api_key: str | None = Field(
        default_factory=lambda: os.getenv("COT_API_KEY") or os.getenv("MISTRAL_API_KEY")
    )
    cot_model: str = Field(default_factory=lambda: os.getenv("COT_MODEL", "mistral-large-latest"))
    cot_max_tokens: int | None = Field(
        default_factory=lambda: int(os.getenv("COT_MAX_TOKENS")) if os.getenv("COT_MAX_TOKENS") else None
    )
    cot_temperature: float | None = Field(
        default_factory=lambda: float(os.getenv("COT_TEMPERATURE")) if os.getenv("COT_TEMPERATURE") else None
    )

    # Fallback providers
    use_fallback: bool = Field(default_factory=lambda: _env_bool("USE_FALLBACK", "false"))
    fallback_handler: Handler = Field(
        default_factory=lambda: parse_handler(os.getenv("FALLBACK_HANDLER", "mistralai"))
    )
    fallback_models: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("FALLBACK_MODELS")))
    tabbyapi_base_url: str | None = Field(default_factory=lambda: os.getenv("TABBYAPI_BASE_URL"))
    tabbyapi_api_key: str | None = Field(default_factory=lambda: os.getenv("TABBYAPI_API_KEY"))
    mistral_base_url: str = Field(default_factory=lambda: os.getenv("MISTRAL_BASE_URL", MISTRAL_API_BASE))
    mistral_api_key: str | None = Field(default_factory=lambda: os.getenv("MISTRAL_API_KEY"))
    openrouter_base_url: str = Field(
        default_factory=lambda: os.getenv("OPENROUTER_BASE_URL", OPENROUTER_API_BASE)
    )
    openrouter_api_key: str | None = Field(default_factory=lambda: os.getenv("OPENROUTER_API_KEY"))

    # Encrypted provider credentials
    credentials_path: str | None = Field(default_factory=lambda: os.getenv("CREDENTIALS_PATH"))
    fernet_key: str | None = Field(default_factory=lambda: os.getenv("CREDENTIALS_FERNET_KEY"))

    # Audit logging
    log_cot: bool = Field(default_factory=lambda: _env_bool("LOG_COT", "false"))
    log_full: bool = Field(default_factory=lambda: _env_bool("LOG_FULL", "false"))
    database_url: str = Field(
        default_factory=lambda: os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./cot_proxy.db")
    )
    tracker_snapshot_dir: str | None = Field(default_factory=lambda: os.getenv("TRACKER_SNAPSHOT_DIR"))

    # Observability
    enable_metrics: bool = Field(default_factory=lambda: _env_bool("ENABLE_METRICS", "false"))
    metrics_bind: str = Field(default_factory=lambda: os.getenv("METRICS_BIND", "127.0.0.1"))
    metrics_port: int = Field(default_factory=lambda: int(os.getenv("METRICS_PORT", "9109")))
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = Field(default_factory=lambda: os.getenv("LOG_FORMAT", "json"))
    log_max_field_chars: int = Field(default_factory=lambda: int(os.getenv("LOG_MAX_FIELD_CHARS", "512")))

    # Server hardening
    enable_api_docs: bool = Field(default_factory=lambda: _env_bool("ENABLE_API_DOCS", "false"))
    allowed_hosts: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("ALLOWED_HOSTS")))
    cors_allow_origins: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("CORS_ALLOW_ORIGINS")))
    cors_allow_credentials: bool = Field(default_factory=lambda: _env_bool("CORS_ALLOW_CREDENTIALS", "false"))
    max_request_body_bytes: int = Field(
        default_factory=lambda: int(os.getenv("MAX_REQUEST_BODY_BYTES", str(4 * 1024 * 1024)))
    )
    disconnect_poll_seconds: float = Field(
        default_factory=lambda: float(os.getenv("DISCONNECT_POLL_SECONDS", "0.5"))
    )

    # Outbound pool
    upstream_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("UPSTREAM_TIMEOUT_SECONDS", "300"))
    )
    upstream_max_connections: int = Field(
        default_factory=lambda: int(os.getenv("UPSTREAM_MAX_CONNECTIONS", "100"))
    )
    upstream_keepalive_expiry_seconds: float = Field(
        default_factory=lambda: float(os.getenv("UPSTREAM_KEEPALIVE_EXPIRY_SECONDS", "600"))
    )
    upstream_max_attempts: int = Field(default_factory=lambda: int(os.getenv("UPSTREAM_MAX_ATTEMPTS", "3")))
    upstream_backoff_initial_seconds: float = Field(
        default_factory=lambda: float(os.getenv("UPSTREAM_BACKOFF_INITIAL_SECONDS", "0.5"))
    )
    upstream_backoff_max_seconds: float = Field(
        default_factory=lambda: float(os.getenv("UPSTREAM_BACKOFF_MAX_SECONDS", "8.0"))
    )
    cot_timeout_seconds: float = Field(default_factory=lambda: float(os.getenv("COT_TIMEOUT_SECONDS", "120")))

    @model_validator(mode="after")
    def _validate_fallback(self) -> "ProxyConfig":
        if self.use_fallback and not self.fallback_models:
            raise ValueError("FALLBACK_MODELS must list at least one model when USE_FALLBACK=true.")
        if self.use_fallback and self.fallback_handler is Handler.TABBYAPI and not self.tabbyapi_base_url:
            raise ValueError("TABBYAPI_BASE_URL is required when FALLBACK_HANDLER=tabbyapi.")
        return self

    def endpoint_for(self, handler: Handler) -> ProviderEndpoint:
        if handler is Handler.MISTRALAI:
            return ProviderEndpoint(handler, self.mistral_base_url, self.mistral_api_key)
        if handler is Handler.OPENROUTER:
            return ProviderEndpoint(handler, self.openrouter_base_url, self.openrouter_api_key)
        if handler is Handler.TABBYAPI and self.tabbyapi_base_url:
            return ProviderEndpoint(handler, self.tabbyapi_base_url, self.tabbyapi_api_key)
        raise UnsupportedProviderError(f"No endpoint configured for fallback handler {handler.value!r}.")

    def secrets(self) -> list[str]:
        return [
            s
            for s in (
                self.cot_api_key,
                self.mistral_api_key,
                self.openrouter_api_key,
                self.tabbyapi_api_key,
                self.fernet_key,
            )
            if s
        ]
