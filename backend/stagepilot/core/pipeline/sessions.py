"""
Chat Session Manager - chat CRUD in front of the stage and message stores.

A chat and its default stages are written in one transaction; deleting a
chat removes its stages and their messages in one transaction.
"""

from typing import Optional, Sequence

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from stagepilot.core.exceptions import NotFoundError
from stagepilot.core.models import DEFAULT_STAGES, Chat, Message, PipelineStage
from stagepilot.core.pipeline.orchestrator import StageLockRegistry
from stagepilot.core.pipeline.stores import StageStore

logger = structlog.get_logger()


class ChatSessionManager:
    """Creates, lists, updates and deletes chats."""

    def __init__(self, db: AsyncSession, locks: Optional[StageLockRegistry] = None):
        self.db = db
        self.locks = locks
        self.stages = StageStore(db)

    async def create_chat(
        self,
        description: Optional[str] = None,
        create_default_stages: bool = True,
    ) -> tuple[Chat, list[PipelineStage]]:
        """
        Create a chat, optionally with the four canonical stages.

        Stages are linked through next_stage_id in pipeline order. Nothing
        is visible to other sessions until the single commit at the end.
        """
        try:
            chat = Chat(description=description)
            self.db.add(chat)
            await self.db.flush()

            stages: list[PipelineStage] = []
            if create_default_stages:
                for position, (name, endpoint) in enumerate(DEFAULT_STAGES):
                    stage = await self.stages.create(
                        chat_id=chat.id,
                        name=name,
                        position=position,
                        pipeline_endpoint=endpoint,
                    )
                    stages.append(stage)

                for current, following in zip(stages, stages[1:]):
                    current.next_stage_id = following.id
                await self.db.flush()

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("chat_created", chat_id=chat.id, stages=len(stages))
        return chat, stages

    async def get_chat(self, chat_id: int) -> Chat:
        chat = await self.db.get(Chat, chat_id)
        if chat is None:
            raise NotFoundError(f"Chat {chat_id} not found")
        return chat

    async def list_chats(self) -> Sequence[Chat]:
        """All chats, newest first."""
        result = await self.db.execute(
            select(Chat).order_by(Chat.created_at.desc(), Chat.id.desc())
        )
        return result.scalars().all()

    async def update_chat(self, chat_id: int, description: Optional[str]) -> Chat:
        chat = await self.get_chat(chat_id)
        chat.description = description
        await self.db.commit()
        return chat

    async def delete_chat(self, chat_id: int) -> None:
        """
        Delete a chat with all its stages and messages.

        Raises:
            NotFoundError: chat does not exist
        """
        await self.get_chat(chat_id)

        stage_ids = list(
            (
                await self.db.execute(
                    select(PipelineStage.id).where(PipelineStage.chat_id == chat_id)
                )
            ).scalars().all()
        )

        try:
            if stage_ids:
                await self.db.execute(delete(Message).where(Message.stage_id.in_(stage_ids)))
                await self.db.execute(
                    delete(PipelineStage).where(PipelineStage.chat_id == chat_id)
                )
            await self.db.execute(delete(Chat).where(Chat.id == chat_id))
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if self.locks is not None:
            self.locks.discard(stage_ids)

        logger.info("chat_deleted", chat_id=chat_id, stages=len(stage_ids))

    # ==========================================================================
    # Stages
    # ==========================================================================

    async def list_stages(self, chat_id: int) -> list[PipelineStage]:
        """Stages of an existing chat in pipeline order."""
        await self.get_chat(chat_id)
        return await self.stages.list_by_chat(chat_id)

    async def add_stage(
        self,
        chat_id: int,
        name: str,
        description: Optional[str] = None,
        pipeline_endpoint: Optional[str] = None,
    ) -> PipelineStage:
        """Append a stage after the chat's current last stage."""
        existing = await self.list_stages(chat_id)

        stage = await self.stages.create(
            chat_id=chat_id,
            name=name,
            description=description,
            pipeline_endpoint=pipeline_endpoint,
        )

        if existing and existing[-1].next_stage_id is None:
            existing[-1].next_stage_id = stage.id
        await self.db.commit()

        logger.info("stage_added", chat_id=chat_id, stage_id=stage.id, position=stage.position)
        return stage
