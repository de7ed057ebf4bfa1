from __future__ import annotations

import logging
import re
from collections.abc import MutableMapping
from typing import Any, cast

import structlog
from structlog.typing import Processor

_SENSITIVE_KEYS = frozenset(
    {
        "authorization",
        "x-api-key",
        "api_key",
        "apikey",
        "token",
        "secret",
        "fernet_key",
        "credentials",
    }
)

# Structural fields stay intact whatever their length.
_NEVER_TRUNCATE = frozenset({"event", "timestamp", "level", "request_id", "path"})

_BEARER_RE = re.compile(r"(?i)\bBearer\s+([A-Za-z0-9._-]{6,})")
REDACTED = "[REDACTED]"


def _is_sensitive_key(key: Any) -> bool:
    name = str(key).lower()
    return name in _SENSITIVE_KEYS or name.endswith("_api_key")


class SecretRedactor:
    """Masks configured secrets, bearer tokens and credential-named fields anywhere in an event."""

    def __init__(self, secrets: list[str] | None = None):
        self.secrets = [s for s in secrets or [] if s]

    def _scrub(self, value: Any) -> Any:
        if isinstance(value, str):
            for secret in self.secrets:
                value = value.replace(secret, REDACTED)
            return _BEARER_RE.sub(f"Bearer {REDACTED}", value)
        if isinstance(value, (list, tuple)):
            return type(value)(self._scrub(v) for v in value)
        if isinstance(value, dict):
            return {k: REDACTED if _is_sensitive_key(k) else self._scrub(v) for k, v in value.items()}
        return value

    def __call__(self, _logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]) -> Any:
        return self._scrub(dict(event_dict))


def truncate_value(value: str, max_chars: int) -> str:
    if max_chars <= 0 or len(value) <= max_chars:
        return value
    return f"{value[:max_chars]}...[{len(value) - max_chars} more chars]"


class FieldTruncator:
    """Conversation and chain-of-thought text can be long; keep log lines bounded."""

    def __init__(self, max_chars: int):
        self.max_chars = max_chars

    def __call__(self, _logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]) -> Any:
        for key, value in event_dict.items():
            if key not in _NEVER_TRUNCATE and isinstance(value, str):
                event_dict[key] = truncate_value(value, self.max_chars)
        return event_dict


def configure_logging(
    level: str = "INFO",
    fmt: str = "json",
    *,
    secrets: list[str] | None = None,
    max_field_chars: int = 512,
) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        cast(Processor, SecretRedactor(secrets)),
    ]
    if max_field_chars > 0:
        processors.append(cast(Processor, FieldTruncator(max_field_chars)))
    processors.append(structlog.processors.JSONRenderer() if fmt == "json" else structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=True,
    )
