"""
Database models for the agent orchestration core

Persisted state owned by this core and nothing else:
- Threads and their append-only message log
- Memories distilled from conversations (embedding stored as JSON)
- Approvals for human-in-the-loop gates
- Checkpoints: durable suspended continuations waiting on an approval
"""

from datetime import datetime
from typing import Optional, List
import uuid

from sqlalchemy import (
    String, Text, DateTime, Float, Integer, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship, Mapped, mapped_column, declarative_base

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class Thread(Base):
    """A persisted conversation between one user and one agent"""
    __tablename__ = "agent_threads"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    agent_slug: Mapped[str] = mapped_column(String(50), index=True)

    # Visibility scope: global | project
    scope: Mapped[str] = mapped_column(String(20), default="global")
    project_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Metadata (JSON stored as text)
    metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Stats / concurrency
    message_count: Mapped[int] = mapped_column(Integer, default=0)
    version: Mapped[int] = mapped_column(Integer, default=0)  # Bumped on every committed turn

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    # Relationships
    messages: Mapped[List["Message"]] = relationship(
        "Message", back_populates="thread", order_by="Message.sequence",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_agent_threads_user_updated", "user_id", "updated_at"),
    )


class Message(Base):
    """One immutable turn in a thread"""
    __tablename__ = "agent_messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    thread_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("agent_threads.id", ondelete="CASCADE"), index=True
    )
    sequence: Mapped[int] = mapped_column(Integer)  # 1-based, strictly increasing per thread
    role: Mapped[str] = mapped_column(String(20))  # "user", "assistant", "system"
    content: Mapped[str] = mapped_column(Text)
    metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    thread: Mapped["Thread"] = relationship("Thread", back_populates="messages")

    __table_args__ = (
        UniqueConstraint("thread_id", "sequence", name="uq_agent_messages_thread_sequence"),
    )


class Memory(Base):
    """
    A durable fact, decision or insight extracted from a conversation.
    Never updated after creation; corrections are new memories.
    """
    __tablename__ = "agent_memories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    thread_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("agent_threads.id", ondelete="CASCADE"), index=True
    )
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    agent_slug: Mapped[str] = mapped_column(String(50), index=True)

    memory_type: Mapped[str] = mapped_column(String(20), index=True)  # MemoryType enum value
    content: Mapped[str] = mapped_column(Text)
    context: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Independent axes
    confidence: Mapped[float] = mapped_column(Float, default=0.7)
    importance: Mapped[float] = mapped_column(Float, default=0.5)

    # Embedding for semantic search (JSON array)
    embedding_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        Index("ix_agent_memories_user_type", "user_id", "memory_type"),
        Index("ix_agent_memories_user_importance", "user_id", "importance"),
    )


class Approval(Base):
    """A human-in-the-loop decision point for a risky tool invocation"""
    __tablename__ = "agent_approvals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    thread_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("agent_threads.id", ondelete="CASCADE"), index=True
    )
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    agent_slug: Mapped[str] = mapped_column(String(50))

    action_type: Mapped[str] = mapped_column(String(50))  # ApprovalActionType enum value
    risk_level: Mapped[str] = mapped_column(String(20))  # RiskLevel enum value
    description: Mapped[str] = mapped_column(Text)
    details_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # pending → approved | rejected | expired
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)

    reviewed_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    review_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_agent_approvals_user_status", "user_id", "status"),
    )


class Checkpoint(Base):
    """
    Durable snapshot of a suspended orchestration step.
    Holds enough state (agent, messages so far, tool call) to re-enter the
    delegating stage after a process restart.
    """
    __tablename__ = "agent_checkpoints"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    thread_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("agent_threads.id", ondelete="CASCADE"), index=True
    )
    approval_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, unique=True)
    stage: Mapped[str] = mapped_column(String(30), default="awaiting_approval")
    state_json: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default="suspended")  # suspended → resuming → resumed | failed; or discarded
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
