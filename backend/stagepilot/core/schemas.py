"""
StagePilot - Pydantic Schemas
=============================

Request and response schemas for API validation.
"""

from datetime import datetime
from typing import Annotated, Optional
from urllib.parse import urlsplit

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from stagepilot.core.models import MessageRole, StageStatus


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class TimestampSchema(BaseSchema):
    """Schema with timestamp fields."""

    created_at: datetime
    updated_at: datetime


# ==========================================================================
# Message Schemas
# ==========================================================================

class MessageCreate(BaseSchema):
    """Schema for submitting a message to a stage."""

    role: MessageRole = MessageRole.USER
    content: str = Field(min_length=1)


class MessageResponse(BaseSchema):
    """Schema for a stored stage message."""

    id: int
    stage_id: int
    role: MessageRole
    content: str
    created_at: datetime


# ==========================================================================
# Stage Schemas
# ==========================================================================

def check_pipeline_endpoint(value: Optional[str]) -> Optional[str]:
    """Accept a path on the agent service or an absolute http(s) URL."""
    if value is None:
        return value
    if value.startswith("/") and not value.startswith("//"):
        return value
    parts = urlsplit(value)
    if parts.scheme in ("http", "https") and parts.hostname:
        return value
    raise ValueError("pipeline_endpoint must be a path starting with '/' or an http(s) URL")


PipelineEndpoint = Annotated[
    Optional[str],
    Field(max_length=500),
    AfterValidator(check_pipeline_endpoint),
]


class StageCreate(BaseSchema):
    """Schema for appending a single stage to a chat."""

    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    pipeline_endpoint: PipelineEndpoint = None


class StageUpdate(BaseSchema):
    """Schema for updating a stage (partial)."""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    status: Optional[StageStatus] = None
    description: Optional[str] = None
    requirements_summary: Optional[str] = None
    pipeline_endpoint: PipelineEndpoint = None
    next_stage_id: Optional[int] = None


class StageResponse(TimestampSchema):
    """Schema for a pipeline stage in responses."""

    id: int
    chat_id: int
    name: str
    position: int
    status: StageStatus
    description: Optional[str]
    requirements_summary: Optional[str]
    pipeline_endpoint: Optional[str]
    next_stage_id: Optional[int]


class StageExchangeResponse(BaseSchema):
    """Result of a submission or transition on a stage."""

    stage: StageResponse
    messages: list[MessageResponse]
    approval_needed: bool = False


class StageTransitionResponse(BaseSchema):
    """Result of an approve or reject action."""

    stage: StageResponse
    next_stage: Optional[StageResponse] = None
    next_stage_messages: list[MessageResponse] = []
    pipeline_complete: bool = False


# ==========================================================================
# Chat Schemas
# ==========================================================================

class ChatCreate(BaseSchema):
    """Schema for creating a chat."""

    description: Optional[str] = None
    create_default_stages: bool = True


class ChatUpdate(BaseSchema):
    """Schema for updating a chat."""

    description: Optional[str] = None


class ChatResponse(TimestampSchema):
    """Schema for a chat in responses."""

    id: int
    description: Optional[str]


class ChatDetailResponse(ChatResponse):
    """Chat with its stages in pipeline order."""

    stages: list[StageResponse] = []


# ==========================================================================
# Generic Schemas
# ==========================================================================

class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
    agent_gateway: str
