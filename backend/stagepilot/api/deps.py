"""
StagePilot - API Dependencies
=============================

Shared dependencies for FastAPI endpoints.
"""

from functools import lru_cache
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from stagepilot.core.config import settings
from stagepilot.core.database import get_db
from stagepilot.core.pipeline import (
    AgentGateway,
    ChatSessionManager,
    ConnectionManager,
    PipelineOrchestrator,
    StageLockRegistry,
    create_agent_gateway,
    get_connection_manager,
)


# ==========================================================================
# Process-wide Components
# ==========================================================================

@lru_cache
def get_agent_gateway() -> AgentGateway:
    """Agent gateway selected by configuration, built once."""
    return create_agent_gateway(settings)


@lru_cache
def get_stage_locks() -> StageLockRegistry:
    return StageLockRegistry()


def get_notifier() -> ConnectionManager:
    return get_connection_manager()


# ==========================================================================
# Request-scoped Components
# ==========================================================================

DbSession = Annotated[AsyncSession, Depends(get_db)]


def get_orchestrator(
    db: DbSession,
    gateway: Annotated[AgentGateway, Depends(get_agent_gateway)],
    notifier: Annotated[ConnectionManager, Depends(get_notifier)],
    locks: Annotated[StageLockRegistry, Depends(get_stage_locks)],
) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        db,
        gateway=gateway,
        notifier=notifier,
        locks=locks if settings.SERIALIZE_STAGE_WRITES else None,
        sentinel_fallback=settings.APPROVAL_SENTINEL_FALLBACK,
    )


def get_session_manager(
    db: DbSession,
    locks: Annotated[StageLockRegistry, Depends(get_stage_locks)],
) -> ChatSessionManager:
    return ChatSessionManager(db, locks=locks)


Orchestrator = Annotated[PipelineOrchestrator, Depends(get_orchestrator)]
SessionManager = Annotated[ChatSessionManager, Depends(get_session_manager)]
