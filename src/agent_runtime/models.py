"""
Database models for agent-runtime

Uses SQLAlchemy 2.0 async ORM for the SQL session backend.
"""

from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import JSON, DateTime, Integer, String, Text, func
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncAttrs, AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""
    pass


class SessionRecord(Base):
    """One stored conversation session.

    Timestamps are kept as the ISO-8601 strings the session manager produced
    so that a save/resume round trip is lossless.
    """

    __tablename__ = "agent_sessions"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(100))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[str] = mapped_column(String(40))
    last_activity_at: Mapped[str] = mapped_column(String(40), index=True)

    # Summary metadata
    message_count: Mapped[int] = mapped_column(Integer, default=0)
    first_message: Mapped[str] = mapped_column(Text, default="")
    provider: Mapped[str] = mapped_column(String(50), default="unknown")
    model: Mapped[str] = mapped_column(String(100), default="unknown")
    input_tokens: Mapped[int] = mapped_column(Integer, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, default=0)

    # Body
    first_index: Mapped[int] = mapped_column(Integer, default=0)
    messages: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    context_pointers: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    context_summary: Mapped[str | None] = mapped_column(Text, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


METADATA_COLUMNS = (
    SessionRecord.id,
    SessionRecord.name,
    SessionRecord.description,
    SessionRecord.created_at,
    SessionRecord.last_activity_at,
    SessionRecord.message_count,
    SessionRecord.first_message,
    SessionRecord.provider,
    SessionRecord.model,
    SessionRecord.input_tokens,
    SessionRecord.output_tokens,
)


async def init_database(database_url: str) -> tuple[AsyncEngine, async_sessionmaker]:
    """Initialize the database and return the engine and session maker."""
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(database_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return engine, async_sessionmaker(engine, expire_on_commit=False)
