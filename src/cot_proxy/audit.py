"""
Audit persistence for generated chains of thought and forwarded conversations.

`LOG_COT` stores each chain of thought sent downstream, `LOG_FULL` stores the
whole augmented conversation. The schema is created on first use so the log
works without a migration step.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import structlog
from sqlalchemy import DateTime, ForeignKey, String, Text, select
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .openai_compat import Message

log = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ChainOfThoughtRecord(Base):
    __tablename__ = "chain_of_thoughts"

    id: Mapped[int] = mapped_column(primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)
    content: Mapped[str] = mapped_column(Text)


class ChatRecord(Base):
    __tablename__ = "chats"

    id: Mapped[int] = mapped_column(primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    messages: Mapped[list["ChatMessageRecord"]] = relationship(
        back_populates="chat",
        cascade="all, delete-orphan",
        order_by="ChatMessageRecord.id",
    )


class ChatMessageRecord(Base):
    __tablename__ = "chat_messages"

    id: Mapped[int] = mapped_column(primary_key=True)
    chat_id: Mapped[int] = mapped_column(ForeignKey("chats.id"))
    role: Mapped[str] = mapped_column(String(16))
    content: Mapped[str] = mapped_column(Text)
    chat: Mapped["ChatRecord"] = relationship(back_populates="messages")


class AuditLog:
    def __init__(self, database_url: str, *, engine: AsyncEngine | None = None):
        self._engine = engine or create_async_engine(database_url, pool_pre_ping=True)
        self._sessions = async_sessionmaker(self._engine, expire_on_commit=False)
        self._schema_ready = False
        self._schema_lock = asyncio.Lock()

    async def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        async with self._schema_lock:
            if self._schema_ready:
                return
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            self._schema_ready = True

    async def record(self, *, cot: str | None = None, messages: list[Message] | None = None) -> None:
        if cot is None and messages is None:
            return
        await self._ensure_schema()
        async with self._sessions() as session:
            async with session.begin():
                if cot is not None:
                    session.add(ChainOfThoughtRecord(content=cot))
                if messages is not None:
                    session.add(
                        ChatRecord(messages=[ChatMessageRecord(role=m.role, content=m.content) for m in messages])
                    )
        log.debug("audit_recorded", cot=cot is not None, messages=len(messages) if messages is not None else 0)

    async def latest_thought(self) -> str | None:
        await self._ensure_schema()
        async with self._sessions() as session:
            result = await session.execute(
                select(ChainOfThoughtRecord.content)
                .order_by(ChainOfThoughtRecord.timestamp.desc(), ChainOfThoughtRecord.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def close(self) -> None:
        await self._engine.dispose()
