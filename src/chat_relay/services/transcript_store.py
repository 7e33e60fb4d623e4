"""
Append-only transcript storage.

The relay needs very little from persistence: read one conversation
(owner-checked), list its turns in order, append a turn, and replace the
placeholder title. ``TranscriptStore`` captures exactly that; two
implementations are provided:

    - InMemoryTranscriptStore: reference implementation, used when no
      DATABASE_URL is configured and in tests
    - SqlTranscriptStore: SQLModel tables on an async SQLAlchemy engine

Ordering:
    Appends to the same conversation are serialized by one asyncio.Lock
    per conversation id, dropped once no append holds or awaits it. Every
    turn gets the next ``seq`` for its conversation plus a ``created_at``
    that never goes backwards. Appends to different conversations do not
    contend. Turns are never edited.

Last Grunted: 10/18/2026 10:00:00 AM UTC
"""
import asyncio
import uuid
import structlog
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from chat_relay.db.engine import (
    create_engine,
    create_session_factory,
    init_db,
    session_scope,
)
from chat_relay.db.models import Conversation, Turn
from chat_relay.errors import PersistenceError

logger = structlog.get_logger(__name__)

ROLES = frozenset({"user", "assistant", "system"})

DEFAULT_TITLE: str = "New Mission"


# ============================================================================
# Records
# ============================================================================

@dataclass(frozen=True)
class TurnRecord:
    id: str
    conversation_id: str
    seq: int
    role: str
    content: str
    created_at: datetime


@dataclass(frozen=True)
class ConversationRecord:
    id: str
    owner_id: str
    title: str
    model: Optional[str] = None
    system_prompt_override: Optional[str] = None


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _next_timestamp(previous: Optional[datetime]) -> datetime:
    now = datetime.now(timezone.utc)
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


def _check_role(role: str) -> None:
    if role not in ROLES:
        raise PersistenceError(detail=f"invalid role '{role}'")


@dataclass
class _ConversationLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


# ============================================================================
# Interface
# ============================================================================

class TranscriptStore(ABC):
    """
    Ordered, append-only log of turns per conversation.

    All methods raise ``PersistenceError`` when the backend fails.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, _ConversationLock] = {}

    @asynccontextmanager
    async def _conversation_lock(self, conversation_id: str) -> AsyncIterator[None]:
        """Serialize appends to one conversation; the lock lives only while held or awaited."""
        entry = self._locks.get(conversation_id)
        if entry is None:
            entry = self._locks[conversation_id] = _ConversationLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[conversation_id]

    @abstractmethod
    async def get_conversation(self, conversation_id: str, owner_id: str) -> Optional[ConversationRecord]:
        """Return the conversation if it exists and belongs to owner_id."""

    @abstractmethod
    async def append(self, conversation_id: str, role: str, content: str) -> TurnRecord:
        """Append one immutable turn after every existing turn."""

    @abstractmethod
    async def list_ordered(self, conversation_id: str) -> List[TurnRecord]:
        """All turns of the conversation, oldest first."""

    @abstractmethod
    async def update_title(self, conversation_id: str, title: str) -> None:
        ...

    @abstractmethod
    async def create_conversation(
        self,
        owner_id: str,
        title: str = DEFAULT_TITLE,
        model: Optional[str] = None,
        system_prompt_override: Optional[str] = None,
    ) -> ConversationRecord:
        ...

    async def init(self) -> None:
        """Prepare the backend (create tables, etc.)."""

    async def close(self) -> None:
        """Release backend resources."""


# ============================================================================
# In-memory implementation
# ============================================================================

class InMemoryTranscriptStore(TranscriptStore):
    """
    Reference store keeping everything in process memory.

    Example:
        store = InMemoryTranscriptStore()
        conv = await store.create_conversation("user-1")
        await store.append(conv.id, "user", "Hello")
        turns = await store.list_ordered(conv.id)

    Last Grunted: 10/18/2026 10:00:00 AM UTC
    """

    def __init__(self) -> None:
        super().__init__()
        self._conversations: Dict[str, ConversationRecord] = {}
        self._turns: Dict[str, List[TurnRecord]] = defaultdict(list)

    async def get_conversation(self, conversation_id: str, owner_id: str) -> Optional[ConversationRecord]:
        conversation = self._conversations.get(conversation_id)
        if conversation is None or conversation.owner_id != owner_id:
            return None
        return conversation

    async def append(self, conversation_id: str, role: str, content: str) -> TurnRecord:
        _check_role(role)
        async with self._conversation_lock(conversation_id):
            if conversation_id not in self._conversations:
                raise PersistenceError(detail=f"conversation '{conversation_id}' does not exist")
            turns = self._turns[conversation_id]
            last = turns[-1] if turns else None
            record = TurnRecord(
                id=uuid.uuid4().hex,
                conversation_id=conversation_id,
                seq=(last.seq + 1) if last else 1,
                role=role,
                content=content,
                created_at=_next_timestamp(last.created_at if last else None),
            )
            turns.append(record)
        return record

    async def list_ordered(self, conversation_id: str) -> List[TurnRecord]:
        return list(self._turns.get(conversation_id, ()))

    async def update_title(self, conversation_id: str, title: str) -> None:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise PersistenceError(detail=f"conversation '{conversation_id}' does not exist")
        self._conversations[conversation_id] = replace(conversation, title=title)

    async def create_conversation(
        self,
        owner_id: str,
        title: str = DEFAULT_TITLE,
        model: Optional[str] = None,
        system_prompt_override: Optional[str] = None,
    ) -> ConversationRecord:
        record = ConversationRecord(
            id=uuid.uuid4().hex,
            owner_id=owner_id,
            title=title,
            model=model,
            system_prompt_override=system_prompt_override,
        )
        self._conversations[record.id] = record
        return record


# ============================================================================
# SQL implementation
# ============================================================================

def _turn_record(row: Turn) -> TurnRecord:
    return TurnRecord(
        id=row.id,
        conversation_id=row.conversation_id,
        seq=row.seq,
        role=row.role,
        content=row.content,
        created_at=_as_utc(row.created_at),
    )


def _conversation_record(row: Conversation) -> ConversationRecord:
    return ConversationRecord(
        id=row.id,
        owner_id=row.owner_id,
        title=row.title,
        model=row.model,
        system_prompt_override=row.system_prompt_override,
    )


class SqlTranscriptStore(TranscriptStore):
    """
    Transcript store on SQLModel tables.

    ``seq`` is computed under the per-conversation lock, and the
    ``(conversation_id, seq)`` unique constraint rejects any concurrent
    writer outside this process instead of silently reordering turns.

    Args:
        database_url: Async (or normalisable) SQLAlchemy URL
        echo: Log SQL statements

    Last Grunted: 10/18/2026 10:00:00 AM UTC
    """

    def __init__(self, database_url: str, echo: bool = False) -> None:
        super().__init__()
        self._engine = create_engine(database_url, echo=echo)
        self._sessions = create_session_factory(self._engine)

    async def init(self) -> None:
        try:
            await init_db(self._engine)
        except SQLAlchemyError as e:
            raise PersistenceError(detail=str(e)) from e

    async def close(self) -> None:
        await self._engine.dispose()

    async def get_conversation(self, conversation_id: str, owner_id: str) -> Optional[ConversationRecord]:
        try:
            async with self._sessions() as session:
                row = await session.get(Conversation, conversation_id)
        except SQLAlchemyError as e:
            raise PersistenceError(detail=str(e)) from e
        if row is None or row.owner_id != owner_id:
            return None
        return _conversation_record(row)

    async def append(self, conversation_id: str, role: str, content: str) -> TurnRecord:
        _check_role(role)
        async with self._conversation_lock(conversation_id):
            try:
                async with session_scope(self._sessions) as session:
                    if await session.get(Conversation, conversation_id) is None:
                        raise PersistenceError(detail=f"conversation '{conversation_id}' does not exist")
                    result = await session.execute(
                        select(Turn)
                        .where(Turn.conversation_id == conversation_id)
                        .order_by(Turn.seq.desc())
                        .limit(1)
                    )
                    last = result.scalars().first()
                    row = Turn(
                        conversation_id=conversation_id,
                        seq=(last.seq + 1) if last else 1,
                        role=role,
                        content=content,
                        created_at=_next_timestamp(_as_utc(last.created_at) if last else None),
                    )
                    session.add(row)
                    await session.flush()
                    record = _turn_record(row)
            except SQLAlchemyError as e:
                raise PersistenceError(detail=str(e)) from e
        return record

    async def list_ordered(self, conversation_id: str) -> List[TurnRecord]:
        try:
            async with self._sessions() as session:
                result = await session.execute(
                    select(Turn)
                    .where(Turn.conversation_id == conversation_id)
                    .order_by(Turn.seq)
                )
                return [_turn_record(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise PersistenceError(detail=str(e)) from e

    async def update_title(self, conversation_id: str, title: str) -> None:
        try:
            async with session_scope(self._sessions) as session:
                row = await session.get(Conversation, conversation_id)
                if row is None:
                    raise PersistenceError(detail=f"conversation '{conversation_id}' does not exist")
                row.title = title
                session.add(row)
        except SQLAlchemyError as e:
            raise PersistenceError(detail=str(e)) from e

    async def create_conversation(
        self,
        owner_id: str,
        title: str = DEFAULT_TITLE,
        model: Optional[str] = None,
        system_prompt_override: Optional[str] = None,
    ) -> ConversationRecord:
        row = Conversation(
            owner_id=owner_id,
            title=title,
            model=model,
            system_prompt_override=system_prompt_override,
        )
        try:
            async with session_scope(self._sessions) as session:
                session.add(row)
                await session.flush()
                record = _conversation_record(row)
        except SQLAlchemyError as e:
            raise PersistenceError(detail=str(e)) from e
        return record


def create_transcript_store(database_url: Optional[str], echo: bool = False) -> TranscriptStore:
    """Pick the SQL store when a database URL is configured, else in-memory."""
    if database_url:
        return SqlTranscriptStore(database_url, echo=echo)
    logger.warning("transcript_store.in_memory", reason="DATABASE_URL not set")
    return InMemoryTranscriptStore()
