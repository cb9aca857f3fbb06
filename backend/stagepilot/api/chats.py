"""
StagePilot - Chat API
=====================

Chat sessions and the stages they own.
"""

from fastapi import APIRouter, Response, status

from stagepilot.api.deps import SessionManager
from stagepilot.core.schemas import (
    ChatCreate,
    ChatDetailResponse,
    ChatResponse,
    ChatUpdate,
    StageCreate,
    StageResponse,
)

router = APIRouter(prefix="/chats", tags=["Chats"])


@router.get(
    "",
    response_model=list[ChatResponse],
    summary="List chats",
)
async def list_chats(manager: SessionManager) -> list[ChatResponse]:
    """List all chats, newest first."""
    chats = await manager.list_chats()
    return [ChatResponse.model_validate(chat) for chat in chats]


@router.post(
    "",
    response_model=ChatDetailResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create chat",
    responses={
        201: {"description": "Chat created"},
        400: {"description": "Invalid request body"},
    },
)
async def create_chat(data: ChatCreate, manager: SessionManager) -> ChatDetailResponse:
    """
    Create a chat.

    With create_default_stages the four canonical stages are created with
    it, in pipeline order.
    """
    chat, stages = await manager.create_chat(
        description=data.description,
        create_default_stages=data.create_default_stages,
    )
    return ChatDetailResponse(
        **ChatResponse.model_validate(chat).model_dump(),
        stages=[StageResponse.model_validate(s) for s in stages],
    )


@router.get(
    "/{chat_id}",
    response_model=ChatDetailResponse,
    summary="Get chat",
    responses={404: {"description": "Chat not found"}},
)
async def get_chat(chat_id: int, manager: SessionManager) -> ChatDetailResponse:
    chat = await manager.get_chat(chat_id)
    stages = await manager.list_stages(chat_id)
    return ChatDetailResponse(
        **ChatResponse.model_validate(chat).model_dump(),
        stages=[StageResponse.model_validate(s) for s in stages],
    )


@router.patch(
    "/{chat_id}",
    response_model=ChatResponse,
    summary="Update chat",
    responses={404: {"description": "Chat not found"}},
)
async def update_chat(chat_id: int, data: ChatUpdate, manager: SessionManager) -> ChatResponse:
    chat = await manager.update_chat(chat_id, data.description)
    return ChatResponse.model_validate(chat)


@router.delete(
    "/{chat_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete chat",
    responses={
        204: {"description": "Chat, stages and messages deleted"},
        404: {"description": "Chat not found"},
    },
)
async def delete_chat(chat_id: int, manager: SessionManager) -> Response:
    """Delete a chat together with its stages and their messages."""
    await manager.delete_chat(chat_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ==========================================================================
# Chat Stages
# ==========================================================================

@router.get(
    "/{chat_id}/stages",
    response_model=list[StageResponse],
    summary="List chat stages",
    responses={404: {"description": "Chat not found"}},
)
async def list_chat_stages(chat_id: int, manager: SessionManager) -> list[StageResponse]:
    """Stages of a chat in pipeline order."""
    stages = await manager.list_stages(chat_id)
    return [StageResponse.model_validate(s) for s in stages]


@router.post(
    "/{chat_id}/stages",
    response_model=StageResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Append stage",
    responses={404: {"description": "Chat not found"}},
)
async def add_chat_stage(chat_id: int, data: StageCreate, manager: SessionManager) -> StageResponse:
    """Append a stage to the end of a chat's pipeline."""
    stage = await manager.add_stage(
        chat_id,
        name=data.name,
        description=data.description,
        pipeline_endpoint=data.pipeline_endpoint,
    )
    return StageResponse.model_validate(stage)
