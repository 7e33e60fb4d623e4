"""
SQLModel database models for the chat relay transcript.

Defines the database schema for:
    - Conversation: Conversation owned by one user, with model/prompt settings
    - Turn: Immutable message within a conversation, ordered by ``seq``

String primary keys (uuid4 hex) and UTC timestamps.

Last Grunted: 10/18/2026 10:00:00 AM UTC
"""
import uuid
from datetime import datetime, timezone
from typing import Optional, List
from sqlalchemy import Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel, Relationship


def _new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Conversation(SQLModel, table=True):
    """
    Conversation model.

    Attributes:
        id: Unique conversation identifier
        owner_id: User who owns this conversation (from the auth layer)
        title: Display title; starts as the configured placeholder
        model: Upstream model pinned for this conversation (nullable)
        system_prompt_override: Replaces the default system prompt (nullable)
        created_at: UTC timestamp of creation
        turns: Related Turn objects (relationship)

    Table: conversation

    Last Grunted: 10/18/2026 10:00:00 AM UTC
    """
    id: str = Field(default_factory=_new_id, primary_key=True)
    owner_id: str = Field(index=True)
    title: str
    model: Optional[str] = Field(default=None)
    system_prompt_override: Optional[str] = Field(default=None)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )

    turns: List["Turn"] = Relationship(back_populates="conversation")


class Turn(SQLModel, table=True):
    """
    Transcript turn model.

    Rows are only ever inserted. ``seq`` is assigned per conversation
    under the store's append lock and is unique with the conversation id.

    Attributes:
        id: Unique turn identifier
        conversation_id: Parent conversation ID (foreign key)
        seq: 1-based position in the conversation
        role: 'user', 'assistant' or 'system'
        content: Message text
        created_at: UTC timestamp of creation
        conversation: Parent Conversation object (relationship)

    Table: turn

    Last Grunted: 10/18/2026 10:00:00 AM UTC
    """
    __table_args__ = (UniqueConstraint("conversation_id", "seq", name="uq_turn_conversation_seq"),)

    id: str = Field(default_factory=_new_id, primary_key=True)
    conversation_id: str = Field(foreign_key="conversation.id", index=True)
    seq: int
    role: str
    content: str
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )

    conversation: Optional[Conversation] = Relationship(back_populates="turns")
