"""
Stage and Message stores.

Thin persistence contracts over an AsyncSession. Stores only flush;
the caller decides where a unit of work is committed.
"""

import logging
from typing import Any, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from stagepilot.core.exceptions import NotFoundError, ValidationError
from stagepilot.core.models import Message, MessageRole, PipelineStage, StageStatus

logger = logging.getLogger(__name__)


class StageStore:
    """Pipeline stage records with partial update."""

    UPDATABLE_FIELDS = frozenset({
        "name",
        "status",
        "description",
        "requirements_summary",
        "pipeline_endpoint",
        "next_stage_id",
    })

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        chat_id: int,
        name: str,
        position: Optional[int] = None,
        description: Optional[str] = None,
        pipeline_endpoint: Optional[str] = None,
    ) -> PipelineStage:
        """
        Create a stage in NOT_STARTED.

        Without an explicit position the stage is appended after the
        chat's current last stage.
        """
        if position is None:
            result = await self.db.execute(
                select(func.max(PipelineStage.position)).where(
                    PipelineStage.chat_id == chat_id
                )
            )
            last = result.scalar()
            position = 0 if last is None else last + 1

        stage = PipelineStage(
            chat_id=chat_id,
            name=name,
            position=position,
            status=StageStatus.NOT_STARTED,
            description=description,
            pipeline_endpoint=pipeline_endpoint,
        )
        self.db.add(stage)
        await self.db.flush()
        return stage

    async def get(self, stage_id: int) -> Optional[PipelineStage]:
        result = await self.db.execute(
            select(PipelineStage).where(PipelineStage.id == stage_id)
        )
        return result.scalar_one_or_none()

    async def get_or_raise(self, stage_id: int) -> PipelineStage:
        stage = await self.get(stage_id)
        if stage is None:
            raise NotFoundError(f"Stage {stage_id} not found")
        return stage

    async def update(self, stage_id: int, **fields: Any) -> PipelineStage:
        """Merge the given fields into the stage record."""
        unknown = set(fields) - self.UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update stage fields: {', '.join(sorted(unknown))}")
        for required in ("name", "status"):
            if required in fields and fields[required] is None:
                raise ValidationError(f"Stage {required} cannot be null")

        stage = await self.get_or_raise(stage_id)

        if fields.get("next_stage_id") is not None:
            await self._validate_successor(stage, fields["next_stage_id"])

        for field, value in fields.items():
            setattr(stage, field, value)

        await self.db.flush()
        return stage

    async def set_status(self, stage: PipelineStage, status: StageStatus) -> PipelineStage:
        if stage.status != status:
            logger.info(
                f"Stage {stage.id} status {stage.status.value} -> {status.value}"
            )
            stage.status = status
            await self.db.flush()
        return stage

    async def list_all(self) -> Sequence[PipelineStage]:
        result = await self.db.execute(
            select(PipelineStage).order_by(PipelineStage.chat_id, PipelineStage.position)
        )
        return result.scalars().all()

    async def list_by_chat(self, chat_id: int) -> list[PipelineStage]:
        """
        Stages of a chat in pipeline order.

        Follows the next_stage_id chain from its head; stages the chain
        does not reach keep their position order at the end.
        """
        result = await self.db.execute(
            select(PipelineStage)
            .where(PipelineStage.chat_id == chat_id)
            .order_by(PipelineStage.position, PipelineStage.id)
        )
        return order_by_successor_chain(list(result.scalars().all()))

    async def successor(self, stage: PipelineStage) -> Optional[PipelineStage]:
        """Next stage via next_stage_id, falling back to position + 1."""
        if stage.next_stage_id is not None:
            return await self.get(stage.next_stage_id)

        result = await self.db.execute(
            select(PipelineStage).where(
                PipelineStage.chat_id == stage.chat_id,
                PipelineStage.position == stage.position + 1,
            )
        )
        return result.scalars().first()

    async def _validate_successor(self, stage: PipelineStage, next_stage_id: int) -> None:
        if next_stage_id == stage.id:
            raise ValidationError("A stage cannot be its own successor")
        target = await self.get(next_stage_id)
        if target is None or target.chat_id != stage.chat_id:
            raise ValidationError(
                f"Stage {next_stage_id} is not a stage of chat {stage.chat_id}"
            )


class MessageStore:
    """Append-only message log keyed by stage."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(self, stage_id: int, role: MessageRole, content: str) -> Message:
        """Persist a new message on an existing stage."""
        exists = await self.db.execute(
            select(PipelineStage.id).where(PipelineStage.id == stage_id)
        )
        if exists.scalar_one_or_none() is None:
            raise NotFoundError(f"Stage {stage_id} not found")

        message = Message(
            stage_id=stage_id,
            role=MessageRole(role),
            content=content,
        )
        self.db.add(message)
        await self.db.flush()
        return message

    async def list_by_stage(self, stage_id: int) -> list[Message]:
        """All messages of a stage in creation order."""
        result = await self.db.execute(
            select(Message)
            .where(Message.stage_id == stage_id)
            .order_by(Message.id)
        )
        return list(result.scalars().all())


def order_by_successor_chain(stages: list[PipelineStage]) -> list[PipelineStage]:
    """
    Order stages by walking next_stage_id links.

    The input is expected in position order. The head is the first stage
    no other stage points to; cycles and dangling links end the walk.
    """
    if not stages:
        return []

    by_id = {stage.id: stage for stage in stages}
    pointed_to = {s.next_stage_id for s in stages if s.next_stage_id in by_id}
    heads = [s for s in stages if s.id not in pointed_to]
    if not heads:
        return stages

    ordered: list[PipelineStage] = []
    seen: set[int] = set()
    current: Optional[PipelineStage] = heads[0]
    while current is not None and current.id not in seen:
        ordered.append(current)
        seen.add(current.id)
        current = by_id.get(current.next_stage_id) if current.next_stage_id else None

    ordered.extend(s for s in stages if s.id not in seen)
    return ordered
