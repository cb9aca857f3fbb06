"""
StagePilot - Stage API
======================

Stage inspection, message submission and the approval gate.
"""

from fastapi import APIRouter, status

from stagepilot.api.deps import Orchestrator
from stagepilot.core.models import MessageRole
from stagepilot.core.pipeline.orchestrator import ExchangeResult, TransitionResult
from stagepilot.core.schemas import (
    MessageCreate,
    MessageResponse,
    StageExchangeResponse,
    StageResponse,
    StageTransitionResponse,
    StageUpdate,
)

router = APIRouter(prefix="/stages", tags=["Stages"])


def _exchange_response(result: ExchangeResult) -> StageExchangeResponse:
    return StageExchangeResponse(
        stage=StageResponse.model_validate(result.stage),
        messages=[MessageResponse.model_validate(m) for m in result.messages],
        approval_needed=result.approval_needed,
    )


def _transition_response(result: TransitionResult) -> StageTransitionResponse:
    return StageTransitionResponse(
        stage=StageResponse.model_validate(result.stage),
        next_stage=(
            StageResponse.model_validate(result.next_stage) if result.next_stage else None
        ),
        next_stage_messages=[
            MessageResponse.model_validate(m) for m in result.next_stage_messages
        ],
        pipeline_complete=result.pipeline_complete,
    )


@router.get(
    "",
    response_model=list[StageResponse],
    summary="List all stages",
)
async def list_stages(orchestrator: Orchestrator) -> list[StageResponse]:
    stages = await orchestrator.stages.list_all()
    return [StageResponse.model_validate(s) for s in stages]


@router.get(
    "/{stage_id}",
    response_model=StageResponse,
    summary="Get stage",
    responses={404: {"description": "Stage not found"}},
)
async def get_stage(stage_id: int, orchestrator: Orchestrator) -> StageResponse:
    stage = await orchestrator.stages.get_or_raise(stage_id)
    return StageResponse.model_validate(stage)


@router.patch(
    "/{stage_id}",
    response_model=StageResponse,
    summary="Update stage",
    responses={
        400: {"description": "Invalid successor"},
        404: {"description": "Stage not found"},
    },
)
async def update_stage(
    stage_id: int,
    data: StageUpdate,
    orchestrator: Orchestrator,
) -> StageResponse:
    """
    Update a stage (partial update).

    Writes the given fields as-is; use approve/reject for gated
    transitions.
    """
    stage = await orchestrator.update_stage(stage_id, **data.model_dump(exclude_unset=True))
    return StageResponse.model_validate(stage)


# ==========================================================================
# Messages
# ==========================================================================

@router.get(
    "/{stage_id}/messages",
    response_model=list[MessageResponse],
    summary="List stage messages",
    responses={404: {"description": "Stage not found"}},
)
async def list_stage_messages(stage_id: int, orchestrator: Orchestrator) -> list[MessageResponse]:
    """Messages of a stage in creation order."""
    await orchestrator.stages.get_or_raise(stage_id)
    messages = await orchestrator.messages.list_by_stage(stage_id)
    return [MessageResponse.model_validate(m) for m in messages]


@router.post(
    "/{stage_id}/messages",
    response_model=StageExchangeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit message",
    responses={
        201: {"description": "Message stored (and answered, for user messages)"},
        404: {"description": "Stage not found"},
        409: {"description": "Stage already completed"},
        502: {"description": "Agent service failed"},
        504: {"description": "Agent service timed out"},
    },
)
async def submit_message(
    stage_id: int,
    data: MessageCreate,
    orchestrator: Orchestrator,
) -> StageExchangeResponse:
    """
    Post a message to a stage.

    A user message is answered by the agent and may move the stage to
    waiting_for_approval. Assistant and system messages are stored
    verbatim.
    """
    if data.role == MessageRole.USER:
        result = await orchestrator.submit_message(stage_id, data.content)
    else:
        result = await orchestrator.record_message(stage_id, data.role, data.content)
    return _exchange_response(result)


# ==========================================================================
# Approval Gate
# ==========================================================================

@router.post(
    "/{stage_id}/approve",
    response_model=StageTransitionResponse,
    summary="Approve stage",
    responses={
        404: {"description": "Stage not found"},
        409: {"description": "Stage is not waiting for approval"},
    },
)
async def approve_stage(stage_id: int, orchestrator: Orchestrator) -> StageTransitionResponse:
    """Complete the stage and start the next one."""
    return _transition_response(await orchestrator.approve(stage_id))


@router.post(
    "/{stage_id}/reject",
    response_model=StageTransitionResponse,
    summary="Reject stage",
    responses={
        404: {"description": "Stage not found"},
        409: {"description": "Stage is not waiting for approval"},
    },
)
async def reject_stage(stage_id: int, orchestrator: Orchestrator) -> StageTransitionResponse:
    """Send the stage back to the agent for changes."""
    return _transition_response(await orchestrator.reject(stage_id))
