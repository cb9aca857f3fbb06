"""
Pipeline Orchestrator - stage conversation and approval state machine.

Per stage:
NOT_STARTED → IN_PROGRESS → WAITING_FOR_APPROVAL → COMPLETED
with ERROR when a stage could not be started; a new submission
resumes it.
"""

import asyncio
from contextlib import asynccontextmanager, nullcontext
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Iterable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from stagepilot.core.exceptions import ConflictError, GatewayError, ValidationError
from stagepilot.core.models import Message, MessageRole, PipelineStage, StageStatus
from stagepilot.core.pipeline.approval import (
    build_requirements_summary,
    resolve_approval_needed,
)
from stagepilot.core.pipeline.gateway import AgentGateway
from stagepilot.core.pipeline.notifications import NotificationChannel
from stagepilot.core.pipeline.stores import MessageStore, StageStore

logger = structlog.get_logger()


# Statuses from which the next message (or an approval upstream) restarts work
RESUMABLE = (StageStatus.NOT_STARTED, StageStatus.ERROR)


@dataclass
class ExchangeResult:
    """Messages written by one submission and the stage afterwards."""
    stage: PipelineStage
    messages: list[Message]
    approval_needed: bool = False


@dataclass
class TransitionResult:
    """Outcome of an approve or reject action."""
    stage: PipelineStage
    next_stage: Optional[PipelineStage] = None
    next_stage_messages: list[Message] = field(default_factory=list)
    pipeline_complete: bool = False


class StageLockRegistry:
    """
    One asyncio.Lock per stage id.

    Serializes read-history → call-agent → write-reply sequences on the
    same stage within this process.
    """

    def __init__(self):
        self._locks: dict[int, asyncio.Lock] = {}

    def lock_for(self, stage_id: int) -> asyncio.Lock:
        lock = self._locks.get(stage_id)
        if lock is None:
            lock = self._locks[stage_id] = asyncio.Lock()
        return lock

    def discard(self, stage_ids: Iterable[int]) -> None:
        for stage_id in stage_ids:
            self._locks.pop(stage_id, None)

    def __len__(self) -> int:
        return len(self._locks)


class PipelineOrchestrator:
    """
    Runs message exchanges and stage transitions.

    Stores, gateway, notifier and lock registry are injected; the
    orchestrator owns the commit points. A failed agent call leaves the
    already-committed user message in place and changes nothing else.
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway: AgentGateway,
        notifier: Optional[NotificationChannel] = None,
        locks: Optional[StageLockRegistry] = None,
        sentinel_fallback: bool = True,
    ):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier
        self.locks = locks
        self.sentinel_fallback = sentinel_fallback
        self.stages = StageStore(db)
        self.messages = MessageStore(db)

    @asynccontextmanager
    async def _stage_guard(self, stage_id: int) -> AsyncIterator[None]:
        guard = self.locks.lock_for(stage_id) if self.locks is not None else nullcontext()
        async with guard:
            yield

    # ==========================================================================
    # Submissions
    # ==========================================================================

    async def submit_message(self, stage_id: int, content: str) -> ExchangeResult:
        """
        Handle a user turn: persist it, ask the agent, persist the reply.

        Raises:
            NotFoundError: stage does not exist
            ConflictError: stage is already completed
            GatewayError: agent call failed; the user message stays stored
        """
        async with self._stage_guard(stage_id):
            stage = await self.stages.get_or_raise(stage_id)
            if stage.status == StageStatus.COMPLETED:
                raise ConflictError(f"Stage {stage_id} is already completed")

            user_message = await self.messages.append(stage.id, MessageRole.USER, content)
            await self.db.commit()

            history = await self.messages.list_by_stage(stage.id)

            try:
                reply = await self.gateway.respond(stage, history)
            except GatewayError as e:
                logger.warning(
                    "agent_call_failed",
                    stage_id=stage.id,
                    error=e.message,
                    timeout=e.timeout,
                )
                await self._notify_messages(stage.id, [user_message])
                raise

            agent_message = await self.messages.append(stage.id, reply.role, reply.content)
            approval_needed = resolve_approval_needed(
                reply.approval_needed,
                reply.content,
                sentinel_fallback=self.sentinel_fallback,
            )

            previous = stage.status
            if stage.status in RESUMABLE:
                await self.stages.set_status(stage, StageStatus.IN_PROGRESS)
            if approval_needed:
                await self.stages.set_status(stage, StageStatus.WAITING_FOR_APPROVAL)
            await self.db.commit()

        logger.info(
            "stage_exchange_completed",
            stage_id=stage.id,
            status=stage.status.value,
            approval_needed=approval_needed,
        )

        created = [user_message, agent_message]
        await self._notify_messages(stage.id, created)
        if stage.status != previous:
            await self._notify_stage(stage)

        return ExchangeResult(stage=stage, messages=created, approval_needed=approval_needed)

    async def record_message(
        self,
        stage_id: int,
        role: MessageRole,
        content: str,
    ) -> ExchangeResult:
        """
        Store a message as-is, without calling the agent.

        For clients that talk to the agent themselves and post its reply.
        """
        if role == MessageRole.USER:
            raise ValidationError("User messages go through submit_message")

        async with self._stage_guard(stage_id):
            stage = await self.stages.get_or_raise(stage_id)
            message = await self.messages.append(stage.id, role, content)

            previous = stage.status
            if stage.status == StageStatus.NOT_STARTED:
                await self.stages.set_status(stage, StageStatus.IN_PROGRESS)
            await self.db.commit()

        await self._notify_messages(stage.id, [message])
        if stage.status != previous:
            await self._notify_stage(stage)

        return ExchangeResult(stage=stage, messages=[message])

    # ==========================================================================
    # Approval Gate
    # ==========================================================================

    async def approve(self, stage_id: int) -> TransitionResult:
        """
        Complete a stage waiting for approval and start its successor.

        The approval is committed before the successor is kicked off; if
        the agent cannot open the next stage, that stage goes to ERROR
        and a later submission on it resumes the pipeline.
        """
        async with self._stage_guard(stage_id):
            stage = await self.stages.get_or_raise(stage_id)
            if stage.status != StageStatus.WAITING_FOR_APPROVAL:
                raise ConflictError(
                    f"Stage {stage_id} is {stage.status.value}, not waiting for approval"
                )

            await self.stages.set_status(stage, StageStatus.COMPLETED)

            if stage.is_requirements_stage:
                history = await self.messages.list_by_stage(stage.id)
                stage.requirements_summary = build_requirements_summary(history)

            next_stage = await self.stages.successor(stage)
            start_next = next_stage is not None and next_stage.status in RESUMABLE
            if start_next:
                await self.stages.set_status(next_stage, StageStatus.IN_PROGRESS)

            await self.db.commit()

        logger.info(
            "stage_approved",
            stage_id=stage.id,
            next_stage_id=next_stage.id if next_stage else None,
        )
        await self._notify_stage(stage)

        if next_stage is None:
            logger.info("pipeline_completed", chat_id=stage.chat_id)
            return TransitionResult(stage=stage, pipeline_complete=True)

        kickoff_messages: list[Message] = []
        if start_next:
            kickoff_messages = await self._kickoff(next_stage, seed_stage=stage)

        return TransitionResult(
            stage=stage,
            next_stage=next_stage,
            next_stage_messages=kickoff_messages,
        )

    async def reject(self, stage_id: int) -> TransitionResult:
        """Send a stage waiting for approval back to IN_PROGRESS."""
        async with self._stage_guard(stage_id):
            stage = await self.stages.get_or_raise(stage_id)
            if stage.status != StageStatus.WAITING_FOR_APPROVAL:
                raise ConflictError(
                    f"Stage {stage_id} is {stage.status.value}, not waiting for approval"
                )

            await self.stages.set_status(stage, StageStatus.IN_PROGRESS)
            await self.db.commit()

        logger.info("stage_rejected", stage_id=stage.id)
        await self._notify_stage(stage)
        return TransitionResult(stage=stage)

    async def _kickoff(self, stage: PipelineStage, seed_stage: PipelineStage) -> list[Message]:
        """Ask the agent for a stage's opening message."""
        async with self._stage_guard(stage.id):
            seed = await self.messages.list_by_stage(seed_stage.id)

            try:
                reply = await self.gateway.kickoff(stage, seed)
            except GatewayError as e:
                logger.warning("stage_kickoff_failed", stage_id=stage.id, error=e.message)
                await self.stages.set_status(stage, StageStatus.ERROR)
                await self.db.commit()
                await self._notify_stage(stage)
                return []

            message = await self.messages.append(stage.id, reply.role, reply.content)
            if resolve_approval_needed(
                reply.approval_needed,
                reply.content,
                sentinel_fallback=self.sentinel_fallback,
            ):
                await self.stages.set_status(stage, StageStatus.WAITING_FOR_APPROVAL)
            await self.db.commit()

        await self._notify_stage(stage)
        await self._notify_messages(stage.id, [message])
        return [message]

    # ==========================================================================
    # Direct Updates
    # ==========================================================================

    async def update_stage(self, stage_id: int, **fields: Any) -> PipelineStage:
        """Merge fields into a stage and tell viewers."""
        async with self._stage_guard(stage_id):
            stage = await self.stages.update(stage_id, **fields)
            await self.db.commit()

        await self._notify_stage(stage)
        return stage

    # ==========================================================================
    # Notifications
    # ==========================================================================

    async def _notify_messages(self, stage_id: int, messages: list[Message]) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.publish(stage_id, messages)
        except Exception as e:
            # Push is advisory; the REST state is already committed
            logger.warning("notification_failed", stage_id=stage_id, error=str(e))

    async def _notify_stage(self, stage: PipelineStage) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.publish_stage(stage)
        except Exception as e:
            logger.warning("notification_failed", stage_id=stage.id, error=str(e))
