"""
Session persistence for save/resume.

A session record holds the conversation messages, the context pointers of
the last window and summary metadata. Two storage backends are provided:

- FileSessionStore: one JSON file per session plus an ``index.json`` for
  fast listing and a ``last_session`` marker; every file is written to a
  temporary name and renamed into place, so readers never see a partial
  write
- SqlSessionStore: one row per session through the SQLAlchemy async ORM
"""

import asyncio
import json
import os
import re
import secrets
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Protocol, TypeVar

import structlog
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from ..config import AgentConfig, Settings
from ..errors import ErrorKind, SessionError
from ..llm.base import Message
from ..models import METADATA_COLUMNS, SessionRecord, init_database
from .context import SUMMARY_INDEX, ContextPointer

logger = structlog.get_logger()

T = TypeVar("T")

INDEX_VERSION = "1.0"
INDEX_FILE = "index.json"
LAST_SESSION_FILE = "last_session"
SESSION_NAME_MAX_LENGTH = 64
FIRST_MESSAGE_MAX_LENGTH = 200

RESERVED_NAMES = frozenset({
    "index", "metadata", "last_session",
    "con", "prn", "aux", "nul",
    "com1", "com2", "com3", "com4",
    "lpt1", "lpt2", "lpt3", "lpt4",
})

_SESSION_ID_RE = re.compile(r"^[a-zA-Z0-9_.-]+$")


class SessionMetadata(BaseModel):
    """Lightweight description of a session, kept in the index."""

    id: str = ""
    name: str = ""
    description: str | None = None
    created_at: str = ""
    last_activity_at: str = ""
    message_count: int = 0
    first_message: str = ""
    provider: str = "unknown"
    model: str = "unknown"
    input_tokens: int = 0
    output_tokens: int = 0


class StoredSession(BaseModel):
    """Everything needed to resume a conversation.

    ``first_index`` is the absolute history position of ``messages[0]``, so
    context pointers keep referring to the same messages after a resume.
    """

    metadata: SessionMetadata = Field(default_factory=SessionMetadata)
    first_index: int = 0
    messages: list[Message] = Field(default_factory=list)
    context_pointers: list[ContextPointer] = Field(default_factory=list)
    context_summary: str | None = None

    def check_integrity(self) -> None:
        """Raise ``ValueError`` when pointers do not match the stored messages."""
        stop = self.first_index + len(self.messages)
        previous = None
        for pointer in self.context_pointers:
            if pointer.index == SUMMARY_INDEX:
                if previous is not None:
                    raise ValueError("summary pointer must come first")
                continue
            if not self.first_index <= pointer.index < stop:
                raise ValueError(f"context pointer {pointer.index} is outside the stored messages")
            if previous is not None and pointer.index <= previous:
                raise ValueError("context pointers are not increasing")
            previous = pointer.index


class SessionStore(Protocol):
    """Storage backend used by ``SessionManager``."""

    async def write(self, session: StoredSession) -> None: ...

    async def read(self, session_id: str) -> StoredSession: ...

    async def remove(self, session_id: str) -> bool: ...

    async def get_metadata(self, session_id: str) -> SessionMetadata | None: ...

    async def list_metadata(self) -> list[SessionMetadata]: ...

    async def get_last(self) -> str | None: ...

    async def exists(self, session_id: str) -> bool: ...

    async def close(self) -> None: ...


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_session(raw: bytes | str | dict[str, Any], session_id: str) -> StoredSession:
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        if isinstance(raw, str):
            session = StoredSession.model_validate_json(raw)
        else:
            session = StoredSession.model_validate(raw)
        session.check_integrity()
    except (ValidationError, ValueError) as e:
        logger.warning("Corrupt session record", session_id=session_id, error=str(e))
        raise SessionError(ErrorKind.IO_ERROR, f"Session '{session_id}' is corrupt: {e}",
                           {"session_id": session_id}) from e
    return session


# ---------------------------------------------------------------------------
# File backend
# ---------------------------------------------------------------------------


def atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` to a unique temp file next to ``path`` and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}-{secrets.token_hex(4)}.tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    finally:
        tmp.unlink(missing_ok=True)


class FileSessionStore:
    """JSON files in a directory. Blocking I/O runs in a worker thread."""

    def __init__(self, session_dir: str | Path):
        self.session_dir = Path(session_dir).expanduser()
        self._index_lock = asyncio.Lock()

    @property
    def index_path(self) -> Path:
        return self.session_dir / INDEX_FILE

    @property
    def last_session_path(self) -> Path:
        return self.session_dir / LAST_SESSION_FILE

    def session_path(self, session_id: str) -> Path:
        return self.session_dir / f"{session_id}.json"

    # -- public -------------------------------------------------------------

    async def write(self, session: StoredSession) -> None:
        session_id = session.metadata.id
        content = session.model_dump_json(indent=2)
        try:
            await asyncio.to_thread(atomic_write_text, self.session_path(session_id), content)
            async with self._index_lock:
                await asyncio.to_thread(self._update_index, session_id, session.metadata)
                await asyncio.to_thread(atomic_write_text, self.last_session_path, session_id)
        except OSError as e:
            raise SessionError(ErrorKind.IO_ERROR, f"Failed to save session '{session_id}': {e}",
                               {"session_id": session_id}) from e

    async def read(self, session_id: str) -> StoredSession:
        path = self.session_path(session_id)
        try:
            content = await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise SessionError(ErrorKind.NOT_FOUND, f"Session '{session_id}' not found",
                               {"session_id": session_id}) from e
        except OSError as e:
            raise SessionError(ErrorKind.IO_ERROR, f"Failed to read session '{session_id}': {e}",
                               {"session_id": session_id}) from e
        return _parse_session(content, session_id)

    async def remove(self, session_id: str) -> bool:
        path = self.session_path(session_id)
        async with self._index_lock:
            if not await asyncio.to_thread(path.exists):
                return False
            try:
                await asyncio.to_thread(path.unlink)
                index = await asyncio.to_thread(self._load_index)
                index["sessions"].pop(session_id, None)
                await asyncio.to_thread(self._save_index, index)
                if await asyncio.to_thread(self._read_last) == session_id:
                    await asyncio.to_thread(self._repoint_last, index)
            except OSError as e:
                raise SessionError(ErrorKind.IO_ERROR, f"Failed to delete session '{session_id}': {e}",
                                   {"session_id": session_id}) from e
        return True

    async def get_metadata(self, session_id: str) -> SessionMetadata | None:
        index = await self._index_io(self._load_index)
        raw = index["sessions"].get(session_id)
        return SessionMetadata.model_validate(raw) if raw else None

    async def list_metadata(self) -> list[SessionMetadata]:
        index = await self._index_io(self._load_index)
        result = []
        for session_id, raw in index["sessions"].items():
            try:
                result.append(SessionMetadata.model_validate(raw))
            except ValidationError:
                logger.warning("Skipping invalid index entry", session_id=session_id)
        return result

    async def get_last(self) -> str | None:
        session_id = await self._index_io(self._read_last)
        if session_id and await self.exists(session_id):
            return session_id
        return None

    async def exists(self, session_id: str) -> bool:
        return await asyncio.to_thread(self.session_path(session_id).exists)

    async def close(self) -> None:
        pass

    async def _index_io(self, func: Callable[[], T]) -> T:
        """Run an index operation in a worker thread, reporting OS failures as ``IO_ERROR``."""
        try:
            return await asyncio.to_thread(func)
        except OSError as e:
            raise SessionError(ErrorKind.IO_ERROR, f"Session storage unavailable: {e}",
                               {"session_dir": str(self.session_dir)}) from e

    # -- index --------------------------------------------------------------

    def _empty_index(self) -> dict[str, Any]:
        return {"version": INDEX_VERSION, "sessions": {}, "updated_at": _now()}

    def _load_index(self) -> dict[str, Any]:
        if not self.index_path.exists():
            if self.session_dir.exists():
                return self._rebuild_index()
            return self._empty_index()
        try:
            index = json.loads(self.index_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Failed to load session index, rebuilding", error=str(e))
            return self._rebuild_index()
        if (
            not isinstance(index, dict)
            or not isinstance(index.get("version"), str)
            or not isinstance(index.get("sessions"), dict)
        ):
            logger.warning("Invalid session index structure, rebuilding")
            return self._rebuild_index()
        return index

    def _save_index(self, index: dict[str, Any]) -> None:
        index["updated_at"] = _now()
        atomic_write_text(self.index_path, json.dumps(index, indent=2))

    def _update_index(self, session_id: str, metadata: SessionMetadata) -> None:
        index = self._load_index()
        index["sessions"][session_id] = metadata.model_dump()
        self._save_index(index)

    def _rebuild_index(self) -> dict[str, Any]:
        """Recreate the index from the session files on disk."""
        index = self._empty_index()
        for path in sorted(self.session_dir.glob("*.json")):
            if path.name == INDEX_FILE or path.name.startswith("."):
                continue
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
                metadata = SessionMetadata.model_validate(raw["metadata"])
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning("Failed to read session file during rebuild", file=path.name, error=str(e))
                continue
            index["sessions"][path.stem] = metadata.model_dump()
        self._save_index(index)
        logger.info("Session index rebuilt", sessions=len(index["sessions"]))
        return index

    # -- last session marker ------------------------------------------------

    def _read_last(self) -> str | None:
        try:
            return self.last_session_path.read_text(encoding="utf-8").strip() or None
        except (FileNotFoundError, UnicodeDecodeError):
            return None

    def _repoint_last(self, index: dict[str, Any]) -> None:
        remaining = sort_sessions(SessionMetadata.model_validate(raw) for raw in index["sessions"].values())
        if remaining:
            atomic_write_text(self.last_session_path, remaining[0].id)
        else:
            self.last_session_path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# SQL backend
# ---------------------------------------------------------------------------


class SqlSessionStore:
    """Sessions as rows of ``agent_sessions`` through SQLAlchemy async."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self._engine = None
        self._sessionmaker = None
        self._init_lock = asyncio.Lock()

    async def _db(self):
        if self._sessionmaker is None:
            async with self._init_lock:
                if self._sessionmaker is None:
                    self._engine, self._sessionmaker = await init_database(self.database_url)
        return self._sessionmaker()

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessionmaker = None

    async def write(self, session: StoredSession) -> None:
        data = session.model_dump(mode="json")
        meta = data["metadata"]
        try:
            async with await self._db() as db:
                record = await db.get(SessionRecord, meta["id"])
                if record is None:
                    record = SessionRecord(id=meta["id"])
                    db.add(record)
                for key, value in meta.items():
                    if key != "id":
                        setattr(record, key, value)
                record.first_index = data["first_index"]
                record.messages = data["messages"]
                record.context_pointers = data["context_pointers"]
                record.context_summary = data["context_summary"]
                await db.commit()
        except SQLAlchemyError as e:
            raise SessionError(ErrorKind.IO_ERROR, f"Failed to save session '{meta['id']}': {e}",
                               {"session_id": meta["id"]}) from e

    async def read(self, session_id: str) -> StoredSession:
        try:
            async with await self._db() as db:
                record = await db.get(SessionRecord, session_id)
        except SQLAlchemyError as e:
            raise SessionError(ErrorKind.IO_ERROR, f"Failed to read session '{session_id}': {e}",
                               {"session_id": session_id}) from e
        if record is None:
            raise SessionError(ErrorKind.NOT_FOUND, f"Session '{session_id}' not found",
                               {"session_id": session_id})

        raw = {
            "metadata": {column.key: getattr(record, column.key) for column in METADATA_COLUMNS},
            "first_index": record.first_index,
            "messages": record.messages,
            "context_pointers": record.context_pointers,
            "context_summary": record.context_summary,
        }
        return _parse_session(raw, session_id)

    async def remove(self, session_id: str) -> bool:
        try:
            async with await self._db() as db:
                result = await db.execute(delete(SessionRecord).where(SessionRecord.id == session_id))
                await db.commit()
        except SQLAlchemyError as e:
            raise SessionError(ErrorKind.IO_ERROR, f"Failed to delete session '{session_id}': {e}",
                               {"session_id": session_id}) from e
        return result.rowcount > 0

    async def _select_metadata(self, *criteria) -> list[SessionMetadata]:
        try:
            async with await self._db() as db:
                rows = (await db.execute(select(*METADATA_COLUMNS).where(*criteria))).all()
        except SQLAlchemyError as e:
            raise SessionError(ErrorKind.IO_ERROR, f"Failed to list sessions: {e}") from e
        return [SessionMetadata.model_validate(dict(row._mapping)) for row in rows]

    async def get_metadata(self, session_id: str) -> SessionMetadata | None:
        found = await self._select_metadata(SessionRecord.id == session_id)
        return found[0] if found else None

    async def list_metadata(self) -> list[SessionMetadata]:
        return await self._select_metadata()

    async def get_last(self) -> str | None:
        sessions = sort_sessions(await self.list_metadata())
        return sessions[0].id if sessions else None

    async def exists(self, session_id: str) -> bool:
        return await self.get_metadata(session_id) is not None


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


def sort_sessions(sessions) -> list[SessionMetadata]:
    """Newest activity first; ties broken by id, descending."""
    return sorted(sessions, key=lambda s: (s.last_activity_at, s.id), reverse=True)


def sanitize_session_name(name: str) -> str:
    """Lowercase and reduce a display name to filename-safe characters."""
    sanitized = re.sub(r"[^a-z0-9_.-]", "-", name.lower())
    sanitized = re.sub(r"-+", "-", sanitized).strip("-")
    return sanitized[:SESSION_NAME_MAX_LENGTH]


def generate_session_id() -> str:
    """Timestamp id with milliseconds and a random suffix, e.g. ``2025-01-31-14-05-09-123-Ab3x``."""
    now = datetime.now()
    return f"{now:%Y-%m-%d-%H-%M-%S}-{now.microsecond // 1000:03d}-{secrets.token_urlsafe(3)[:4]}"


def validate_session_id(session_id: str) -> None:
    """Reject empty ids, path traversal and characters unsafe in filenames."""
    if not session_id:
        raise SessionError(ErrorKind.VALIDATION_ERROR, "Session ID cannot be empty")
    if ".." in session_id or "/" in session_id or "\\" in session_id or "\0" in session_id:
        raise SessionError(ErrorKind.VALIDATION_ERROR, "Invalid session ID: path traversal not allowed",
                           {"session_id": session_id})
    if not _SESSION_ID_RE.match(session_id):
        raise SessionError(ErrorKind.VALIDATION_ERROR, "Invalid session ID: contains invalid characters",
                           {"session_id": session_id})
    if session_id.lower() in RESERVED_NAMES:
        raise SessionError(ErrorKind.VALIDATION_ERROR, f"Session name '{session_id}' is reserved",
                           {"session_id": session_id})


def generate_context_summary(messages: list[Message], metadata: SessionMetadata) -> str:
    """Preamble that tells the model it is resuming an earlier conversation."""
    user_messages = [m for m in messages if m.role == "user"]
    assistant_count = sum(1 for m in messages if m.role == "assistant")

    lines = [
        "You are resuming a previous conversation session.",
        f"Session: {metadata.name}",
        f"Created: {metadata.created_at}",
        f"Last activity: {metadata.last_activity_at}",
        f"Total messages: {len(messages)} ({len(user_messages)} from user, {assistant_count} from assistant)",
    ]
    if metadata.description:
        lines.append(f"Description: {metadata.description}")
    if user_messages:
        lines.append(f"First topic: {user_messages[0].content[:100]}...")

    lines.append("")
    lines.append("The conversation history follows. Continue naturally from where you left off.")
    return "\n".join(lines)


class SessionManager:
    """Saves, lists and resumes sessions on top of a ``SessionStore``."""

    def __init__(self, store: SessionStore, max_sessions: int = 50):
        self.store = store
        self.max_sessions = max_sessions

    @classmethod
    def from_config(cls, config: AgentConfig, settings: Settings | None = None) -> "SessionManager":
        if settings is not None and settings.session_backend == "sql":
            store: SessionStore = SqlSessionStore(settings.database_url)
        else:
            store = FileSessionStore(config.session_dir)
        return cls(store, max_sessions=config.max_sessions)

    async def save(self, session: StoredSession, name: str | None = None) -> SessionMetadata:
        """Persist ``session`` and return its final metadata.

        An id is assigned when the session has none: the sanitized ``name``
        if given, otherwise a timestamp id. ``created_at`` survives
        overwrites of the same id. Sessions beyond ``max_sessions`` are
        purged afterwards, oldest activity first.
        """
        session_id = session.metadata.id
        if not session_id:
            if name is not None:
                if "/" in name or "\\" in name or ".." in name:
                    raise SessionError(ErrorKind.VALIDATION_ERROR, "Session name contains invalid characters")
                session_id = sanitize_session_name(name)
            else:
                session_id = generate_session_id()
        validate_session_id(session_id)

        now = _now()
        existing = await self.store.get_metadata(session_id)
        first_user = next((m for m in session.messages if m.role == "user"), None)

        metadata = session.metadata.model_copy(update={
            "id": session_id,
            "name": name or session.metadata.name or session_id,
            "created_at": existing.created_at if existing else (session.metadata.created_at or now),
            "last_activity_at": now,
            "message_count": len(session.messages),
            "first_message": first_user.content[:FIRST_MESSAGE_MAX_LENGTH] if first_user else "",
        })
        stored = session.model_copy(update={
            "metadata": metadata,
            "context_summary": generate_context_summary(session.messages, metadata),
        })

        await self.store.write(stored)
        logger.info("Session saved", session_id=session_id, message_count=metadata.message_count)

        await self.purge()
        return metadata

    async def resume(self, session_id: str) -> StoredSession:
        """Load a complete session or raise ``SessionError`` (``NOT_FOUND`` / ``IO_ERROR``)."""
        validate_session_id(session_id)
        session = await self.store.read(session_id)
        logger.info("Session loaded", session_id=session_id, message_count=len(session.messages))
        return session

    async def list(self) -> list[SessionMetadata]:
        return sort_sessions(await self.store.list_metadata())

    async def delete(self, session_id: str) -> bool:
        validate_session_id(session_id)
        deleted = await self.store.remove(session_id)
        if deleted:
            logger.info("Session deleted", session_id=session_id)
        return deleted

    async def purge(self, keep: int | None = None) -> int:
        """Delete the oldest sessions beyond ``keep`` (default ``max_sessions``)."""
        limit = self.max_sessions if keep is None else keep
        sessions = await self.list()
        deleted = 0
        for metadata in sessions[limit:]:
            if await self.store.remove(metadata.id):
                deleted += 1
        if deleted:
            logger.info("Sessions purged", deleted=deleted, kept=limit)
        return deleted

    async def last_session_id(self) -> str | None:
        return await self.store.get_last()

    async def exists(self, session_id: str) -> bool:
        validate_session_id(session_id)
        return await self.store.exists(session_id)

    async def close(self) -> None:
        await self.store.close()
