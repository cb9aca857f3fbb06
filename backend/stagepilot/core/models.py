"""
StagePilot - Database Models
============================

SQLAlchemy models for chats, pipeline stages and stage messages.

A Chat owns its PipelineStages; a PipelineStage owns its Messages.
Messages are append-only: nothing in the service updates one after it
is written, and they are removed only together with their chat.
"""

import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from stagepilot.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


# ==========================================================================
# Enums
# ==========================================================================

class StageStatus(str, enum.Enum):
    """Lifecycle of a single pipeline stage."""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    WAITING_FOR_APPROVAL = "waiting_for_approval"
    COMPLETED = "completed"
    ERROR = "error"


class MessageRole(str, enum.Enum):
    """Author of a stage message."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


# Canonical pipeline, in order: (name, agent endpoint)
DEFAULT_STAGES: list[tuple[str, str]] = [
    ("Requirements Gathering", "/api/pipeline/requirements-gatherer"),
    ("Technical Specification", "/api/pipeline/tech-spec-generator"),
    ("Implementation", "/api/pipeline/implementation"),
    ("Code Review", "/api/pipeline/code-review"),
]

REQUIREMENTS_STAGE_NAME = DEFAULT_STAGES[0][0]


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


# ==========================================================================
# Models
# ==========================================================================

class Chat(Base, TimestampMixin):
    """
    One end-to-end pipeline run.

    Its stages are created in the same transaction as the chat itself.
    """

    __tablename__ = "chats"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Chat {self.id}>"


class PipelineStage(Base, TimestampMixin):
    """
    One step of a chat's pipeline, with its own conversation thread.

    Successor is next_stage_id when set, otherwise the stage at
    position + 1 within the same chat.
    """

    __tablename__ = "pipeline_stages"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )
    chat_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("chats.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    status: Mapped[StageStatus] = mapped_column(
        Enum(
            StageStatus,
            native_enum=False,
            length=32,
            values_callable=_enum_values,
        ),
        default=StageStatus.NOT_STARTED,
        nullable=False,
        index=True,
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    requirements_summary: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    pipeline_endpoint: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
    )
    next_stage_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("pipeline_stages.id", ondelete="SET NULL"),
        nullable=True,
    )

    @property
    def is_requirements_stage(self) -> bool:
        return self.name == REQUIREMENTS_STAGE_NAME

    def __repr__(self) -> str:
        return f"<PipelineStage {self.id} {self.name!r} [{self.status.value}]>"


class Message(Base):
    """
    A single chat turn on a stage.

    The autoincrement id is the ordering key: creation order, never
    reordered.
    """

    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )
    stage_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("pipeline_stages.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: Mapped[MessageRole] = mapped_column(
        Enum(
            MessageRole,
            native_enum=False,
            length=16,
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Message {self.id} stage={self.stage_id} {self.role.value}>"
