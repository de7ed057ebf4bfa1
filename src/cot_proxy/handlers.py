from __future__ import annotations

from enum import Enum

from .errors import UnsupportedProviderError

MISTRAL_API_BASE = "https://api.mistral.ai/v1"
OPENROUTER_API_BASE = "https://openrouter.ai/api/v1"


class Handler(str, Enum):
    TABBYAPI = "tabbyapi"
    MISTRALAI = "mistralai"
    OPENROUTER = "openrouter"


def parse_handler(value: str | Handler) -> Handler:
    if isinstance(value, Handler):
        return value
    try:
        return Handler(value.strip().lower())
    except ValueError as e:
        raise UnsupportedProviderError(f"Unknown fallback handler: {value!r}") from e
