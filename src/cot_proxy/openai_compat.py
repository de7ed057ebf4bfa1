from __future__ import annotations

import random
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .config import ProxyConfig
from .handlers import Handler

Role = Literal["system", "user", "assistant"]


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v


class ChatCompletionRequest(BaseModel):
    """Inbound completion request; unknown fields are kept for the primary backend."""

    model_config = ConfigDict(extra="allow")

    model: str | None = None
    messages: list[Message] = Field(min_length=1)
    stream: bool = False

    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    top_p: float | None = Field(default=None, gt=0.0, le=1.0)
    max_tokens: int | None = Field(default=None, gt=0)
    presence_penalty: float | None = Field(default=None, ge=-2.0, le=2.0)
    frequency_penalty: float | None = Field(default=None, ge=-2.0, le=2.0)
    stop: str | list[str] | None = None

    @field_validator("stop")
    @classmethod
    def _validate_stop(cls, v: str | list[str] | None) -> str | list[str] | None:
        if v is None or isinstance(v, str):
            return v
        if any(not s for s in v):
            raise ValueError("stop sequences must be non-empty strings.")
        return v

    def last_user_message(self) -> Message | None:
        for message in reversed(self.messages):
            if message.role == "user":
                return message
        return None

    def sampling_params(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for name in ("temperature", "top_p", "max_tokens", "presence_penalty", "frequency_penalty"):
            value = getattr(self, name)
            if value is not None:
                out[name] = value
        return out


class ExtensionSettings(BaseModel):
    """Per-request overrides sent inline with the completion payload."""

    model_config = ConfigDict(extra="ignore")

    username: str | None = None
    character: str | None = None
    cot_prompt: str | None = Field(default=None, validation_alias=AliasChoices("cot_prompt", "cotPrompt"))
    cot_rotation: int | None = Field(default=None, ge=0)
    fallback_handler: str | None = None
    fallback_model: list[str] | None = None
    force_cot: bool = False

    @field_validator("fallback_model", mode="before")
    @classmethod
    def _coerce_fallback_model(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v] if v.strip() else None
        return v

    @field_validator("fallback_model")
    @classmethod
    def _validate_fallback_model(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return None
        models = [m.strip() for m in v if m and m.strip()]
        return models or None

    def apply(self, cfg: ProxyConfig) -> ProxyConfig:
        """
        Return a copy of `cfg` shadowed by these overrides; `cfg` itself is untouched.

        `fallback_handler` stays a raw string here. It only matters once a request
        is routed to fallback, so `FallbackRouter` parses it there.
        """
        updates: dict[str, Any] = {}
        for name in ("username", "character", "cot_prompt", "cot_rotation"):
            value = getattr(self, name)
            if value is not None:
                updates[name] = value
        if self.fallback_model:
            updates["fallback_models"] = list(self.fallback_model)
        if not updates:
            return cfg
        return cfg.model_copy(update=updates)


def _random_seed() -> int:
    return random.randint(0, 2**31 - 1)


class BaseCompletionRequest(BaseModel):
    provider: Literal["tabbyapi"] = Field(default="tabbyapi", exclude=True)

    model: str
    messages: list[Message]
    stream: bool = True
    max_tokens: int = 1024
    temperature: float = 0.0
    top_p: float = 1.0
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class MistralCompletionRequest(BaseCompletionRequest):
    provider: Literal["mistralai"] = Field(default="mistralai", exclude=True)

    random_seed: int = Field(default_factory=_random_seed)
    safe_prompt: bool = False


class OpenRouterCompletionRequest(BaseCompletionRequest):
    provider: Literal["openrouter"] = Field(default="openrouter", exclude=True)

    seed: int = Field(default_factory=_random_seed)
    min_p: float | None = 0.05


ProviderRequest = Annotated[
    Union[BaseCompletionRequest, MistralCompletionRequest, OpenRouterCompletionRequest],
    Field(discriminator="provider"),
]

_REQUEST_SHAPES: dict[Handler, type[BaseCompletionRequest]] = {
    Handler.TABBYAPI: BaseCompletionRequest,
    Handler.MISTRALAI: MistralCompletionRequest,
    Handler.OPENROUTER: OpenRouterCompletionRequest,
}


def request_shape_for(handler: Handler) -> type[BaseCompletionRequest] | None:
    return _REQUEST_SHAPES.get(handler)


class ThoughtResponse(BaseModel):
    content: str


class OpenAIError(BaseModel):
    message: str
    type: str = "api_error"
    param: str | None = None
    code: str | None = None


class OpenAIErrorResponse(BaseModel):
    error: OpenAIError


def make_openai_error_response(
    *,
    message: str,
    type: str = "api_error",
    param: str | None = None,
    code: str | None = None,
) -> OpenAIErrorResponse:
    return OpenAIErrorResponse(error=OpenAIError(message=message, type=type, param=param, code=code))


def messages_to_payload(messages: list[Message]) -> list[dict[str, str]]:
    return [{"role": m.role, "content": m.content} for m in messages]
