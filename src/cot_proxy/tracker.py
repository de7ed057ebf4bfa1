"""
Process-wide tracker for cached chain of thought and rotation counters.

Every read-decide-write sequence runs under one `asyncio.Lock`, so the
regeneration decision and its bookkeeping are a single step even when many
requests arrive together. The auxiliary model call itself happens outside the
lock; its result and the decided rotation round are stored with `store_cot`.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from pathlib import Path

import structlog

log = structlog.get_logger()


@dataclass(frozen=True)
class TrackerState:
    last_user_message: str = ""
    last_cot_message: str = ""
    cot_round: int = 0
    response_round: int = 0


@dataclass(frozen=True)
class CoTDecision:
    regenerate: bool
    cached_cot: str
    is_new_message: bool
    cot_round: int


def _same_message(a: str, b: str) -> bool:
    return a.casefold() == b.casefold()


class Tracker:
    def __init__(self, state: TrackerState | None = None, *, store: "TrackerSnapshotStore | None" = None):
        self._state = state or TrackerState()
        self._lock = asyncio.Lock()
        self._store = store

    def snapshot(self) -> TrackerState:
        return self._state

    async def decide_cot(self, user_message: str, *, rotation_limit: int, force: bool = False) -> CoTDecision:
        """
        Decide whether this message needs a fresh chain of thought.

        A reuse is committed here: the message becomes the last one seen and the
        rotation round moves, so a resent message is not counted twice. A
        regeneration is committed by `store_cot` once the new text exists, which
        leaves the tracker untouched when the auxiliary call fails.
        """
        async with self._lock:
            state = self._state
            is_new = not _same_message(user_message, state.last_user_message)
            window_elapsed = rotation_limit <= 0 or state.cot_round >= rotation_limit

            cot_round = state.cot_round
            if is_new:
                cot_round = 0 if window_elapsed else cot_round + 1

            regenerate = (is_new and window_elapsed) or not state.last_cot_message.strip() or force
            if not regenerate:
                self._state = replace(state, last_user_message=user_message, cot_round=cot_round)
            saved = self._state if not regenerate and is_new else None
        if saved is not None and self._store is not None:
            await self._store.save(saved)
        return CoTDecision(
            regenerate=regenerate,
            cached_cot=state.last_cot_message,
            is_new_message=is_new,
            cot_round=cot_round,
        )

    async def store_cot(self, user_message: str, cot_message: str, *, cot_round: int = 0) -> None:
        async with self._lock:
            self._state = replace(
                self._state,
                last_user_message=user_message,
                last_cot_message=cot_message,
                cot_round=cot_round,
            )
            state = self._state
        if self._store is not None:
            await self._store.save(state)

    async def next_fallback_model(self, models: list[str]) -> str:
        """Pick the model at the response round and advance it, wrapping at the end of `models`."""
        if not models:
            raise ValueError("models must not be empty.")
        async with self._lock:
            index = self._state.response_round % len(models)
            next_round = 0 if index >= len(models) - 1 else index + 1
            self._state = replace(self._state, response_round=next_round)
        return models[index]

    async def restore(self) -> None:
        if self._store is None:
            return
        loaded = await self._store.load()
        async with self._lock:
            self._state = replace(
                self._state,
                last_user_message=loaded.last_user_message,
                last_cot_message=loaded.last_cot_message,
            )
        log.info("tracker_restored", has_cot=bool(loaded.last_cot_message.strip()))


class TrackerSnapshotStore:
    """Keeps the last user message and chain of thought as plain UTF-8 files."""

    USER_MESSAGE_FILE = "last_user_message.txt"
    COT_MESSAGE_FILE = "last_cot_message.txt"

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def _read(self, name: str) -> str:
        path = self.directory / name
        if not path.exists():
            return ""
        return path.read_text(encoding="utf-8")

    def _write(self, state: TrackerState) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        (self.directory / self.USER_MESSAGE_FILE).write_text(state.last_user_message, encoding="utf-8")
        (self.directory / self.COT_MESSAGE_FILE).write_text(state.last_cot_message, encoding="utf-8")

    async def load(self) -> TrackerState:
        user_message, cot_message = await asyncio.gather(
            asyncio.to_thread(self._read, self.USER_MESSAGE_FILE),
            asyncio.to_thread(self._read, self.COT_MESSAGE_FILE),
        )
        return TrackerState(last_user_message=user_message, last_cot_message=cot_message)

    async def save(self, state: TrackerState) -> None:
        await asyncio.to_thread(self._write, state)
