from __future__ import annotations

import time
from typing import Protocol

import structlog

from .config import ProxyConfig
from .errors import AuthenticationError, ChainOfThoughtError, RateLimitError
from .metrics import cot_generations_total, cot_latency_seconds
from .openai_compat import Message, messages_to_payload
from .tracker import Tracker

log = structlog.get_logger()

COT_OPEN_TAG = "<chain_of_thought>"
COT_CLOSE_TAG = "</chain_of_thought>"


class ChatCompleter(Protocol):
    async def complete(
        self,
        *,
        model: str,
        messages: list[dict[str, str]],
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str: ...

    async def close(self) -> None: ...


def wrap_cot(text: str) -> str:
    return f"{COT_OPEN_TAG}{text}{COT_CLOSE_TAG}"


def render_cot_prompt(template: str, *, character: str, username: str) -> str:
    return template.replace("{character}", character).replace("{username}", username)


class ChainOfThoughtGenerator:
    def __init__(self, tracker: Tracker, session: ChatCompleter):
        self.tracker = tracker
        self.session = session

    def build_cot_messages(self, messages: list[Message], cfg: ProxyConfig) -> list[Message]:
        prompt = render_cot_prompt(cfg.cot_prompt, character=cfg.character, username=cfg.username)
        return [*messages, Message(role="user", content=prompt)]

    async def resolve(
        self,
        messages: list[Message],
        user_message: str,
        cfg: ProxyConfig,
        *,
        force: bool = False,
    ) -> str:
        """Return the wrapped chain of thought for this request, regenerating it when the policy says so."""
        decision = await self.tracker.decide_cot(user_message, rotation_limit=cfg.cot_rotation, force=force)
        if not decision.regenerate:
            cot_generations_total.labels(outcome="cached").inc()
            log.debug("cot_reused", cot_round=decision.cot_round, is_new_message=decision.is_new_message)
            return decision.cached_cot

        started = time.monotonic()
        try:
            text = await self.session.complete(
                model=cfg.cot_model,
                messages=messages_to_payload(self.build_cot_messages(messages, cfg)),
                max_tokens=cfg.cot_max_tokens,
                temperature=cfg.cot_temperature,
            )
        except ChainOfThoughtError:
            cot_generations_total.labels(outcome="empty").inc()
            raise
        except (AuthenticationError, RateLimitError) as e:
            # The caller's own credentials are not involved; report a server-side failure.
            cot_generations_total.labels(outcome="error").inc()
            log.error("cot_model_refused", model=cfg.cot_model, error_type=type(e).__name__, reason=str(e))
            raise ChainOfThoughtError(f"Chain-of-thought synthesis failed: {e}") from e
        except Exception:
            cot_generations_total.labels(outcome="error").inc()
            raise
        finally:
            cot_latency_seconds.observe(max(0.0, time.monotonic() - started))

        cot = wrap_cot(text)
        await self.tracker.store_cot(user_message, cot, cot_round=decision.cot_round)
        cot_generations_total.labels(outcome="generated").inc()
        log.info("cot_regenerated", model=cfg.cot_model, chars=len(cot), forced=force)
        return cot
