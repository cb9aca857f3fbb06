"""
Agent Gateway - outbound calls to the LLM/agent service.

Sends a stage's message history to the agent and returns one reply plus
the agent's approval signal. Two implementations:

- HttpAgentGateway: POSTs to the external agent service
- SimulatedAgentGateway: canned per-stage replies, no network
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence

import httpx
import structlog
from pydantic import BaseModel, field_validator
from pydantic import ValidationError as PydanticValidationError

from stagepilot.core.config import Settings
from stagepilot.core.exceptions import GatewayError
from stagepilot.core.models import Message, MessageRole, PipelineStage

logger = structlog.get_logger()


# ==========================================================================
# Wire Models
# ==========================================================================

class AgentTurn(BaseModel):
    """One {role, content} entry as the agent service speaks it."""
    role: str
    content: str


class AgentServiceRequest(BaseModel):
    prompt_model_name: str
    message_history: list[AgentTurn]
    stage_id: Optional[int] = None


# Roles an agent may answer with; a "user" reply would pose as a human turn
AGENT_REPLY_ROLES = frozenset({MessageRole.ASSISTANT.value, MessageRole.SYSTEM.value})


class AgentServiceResponse(BaseModel):
    response: AgentTurn
    approval_needed: Optional[bool] = None

    @field_validator("response")
    @classmethod
    def validate_role(cls, v: AgentTurn) -> AgentTurn:
        # Older agents answer as "agent"
        if v.role == "agent":
            v.role = MessageRole.ASSISTANT.value
        if v.role not in AGENT_REPLY_ROLES:
            raise ValueError(f"Agent cannot reply as {v.role!r}")
        return v


@dataclass
class AgentReply:
    """A reply from the agent, ready to be persisted."""
    role: MessageRole
    content: str
    approval_needed: Optional[bool] = None


def to_history(messages: Sequence[Message]) -> list[AgentTurn]:
    return [AgentTurn(role=m.role.value, content=m.content) for m in messages]


# ==========================================================================
# Gateway Interface
# ==========================================================================

class AgentGateway(ABC):
    """Request/response contract with the agent service."""

    name: str = "abstract"

    @abstractmethod
    async def respond(
        self,
        stage: PipelineStage,
        history: Sequence[Message],
    ) -> AgentReply:
        """Reply to the latest turn of a stage conversation."""

    @abstractmethod
    async def kickoff(
        self,
        stage: PipelineStage,
        seed_history: Sequence[Message],
    ) -> AgentReply:
        """Opening message for a stage, seeded with the previous stage's thread."""

    async def close(self) -> None:
        return None


# ==========================================================================
# HTTP Gateway
# ==========================================================================

class HttpAgentGateway(AgentGateway):
    """
    Calls the external agent service.

    Each stage names its agent behaviour through pipeline_endpoint, a path
    relative to the service base URL or an absolute URL. The whole call is
    bounded by `timeout`; no retries happen here.
    """

    name = "http"

    def __init__(
        self,
        base_url: str,
        default_endpoint: str,
        model_name: str,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.default_endpoint = default_endpoint
        self.model_name = model_name
        self.timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def endpoint_url(self, stage: PipelineStage) -> str:
        endpoint = stage.pipeline_endpoint or self.default_endpoint
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    async def respond(
        self,
        stage: PipelineStage,
        history: Sequence[Message],
    ) -> AgentReply:
        return await self._call(stage, to_history(history))

    async def kickoff(
        self,
        stage: PipelineStage,
        seed_history: Sequence[Message],
    ) -> AgentReply:
        return await self._call(stage, to_history(seed_history))

    async def _call(self, stage: PipelineStage, history: list[AgentTurn]) -> AgentReply:
        url = self.endpoint_url(stage)
        request = AgentServiceRequest(
            prompt_model_name=self.model_name,
            message_history=history,
            stage_id=stage.id,
        )

        logger.debug("agent_call_started", url=url, stage_id=stage.id, turns=len(history))

        try:
            response = await asyncio.wait_for(
                self._client.post(url, json=request.model_dump()),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.warning("agent_call_timeout", url=url, stage_id=stage.id)
            raise GatewayError(
                f"Agent service timed out after {self.timeout}s", timeout=True
            ) from e
        except httpx.HTTPError as e:
            logger.warning("agent_call_failed", url=url, stage_id=stage.id, error=str(e))
            raise GatewayError(f"Agent service unreachable: {e}") from e
        except (httpx.InvalidURL, ValueError) as e:
            logger.warning("agent_call_failed", url=url, stage_id=stage.id, error=str(e))
            raise GatewayError(f"Invalid agent endpoint {url!r}: {e}") from e

        if response.status_code >= 400:
            logger.warning(
                "agent_call_failed",
                url=url,
                stage_id=stage.id,
                status_code=response.status_code,
            )
            raise GatewayError(f"Agent service returned HTTP {response.status_code}")

        try:
            payload = AgentServiceResponse.model_validate(response.json())
        except (ValueError, PydanticValidationError) as e:
            raise GatewayError(f"Malformed agent response: {e}") from e

        return AgentReply(
            role=MessageRole(payload.response.role),
            content=payload.response.content,
            approval_needed=payload.approval_needed,
        )

    async def close(self) -> None:
        # An injected client belongs to the caller
        if self._owns_client:
            await self._client.aclose()


# ==========================================================================
# Simulated Gateway
# ==========================================================================

class SimulatedAgentGateway(AgentGateway):
    """Canned agent used for local development and demos."""

    name = "simulated"

    CONFIRMATIONS = ("yes", "that's correct")

    STAGE_REPLIES = {
        "Technical Specification": (
            "Based on the requirements, I suggest using the following technical "
            "approach. Let me know if you'd like me to adjust any part of this "
            "specification."
        ),
        "Implementation": (
            "I'm working on implementing the changes according to the technical "
            "specification. Would you like me to explain any part of the "
            "implementation?"
        ),
        "Code Review": (
            "I've reviewed the code changes. Everything looks good, but please let "
            "me know if you'd like me to focus on any specific aspects."
        ),
    }

    async def respond(
        self,
        stage: PipelineStage,
        history: Sequence[Message],
    ) -> AgentReply:
        last_user = next(
            (m.content for m in reversed(history) if m.role == MessageRole.USER),
            "",
        ).lower()

        if stage.is_requirements_stage:
            if any(phrase in last_user for phrase in self.CONFIRMATIONS):
                return AgentReply(
                    role=MessageRole.ASSISTANT,
                    content=(
                        "Great! I think I have gathered all the necessary requirements. "
                        "Please review them and approve if everything looks correct."
                    ),
                    approval_needed=True,
                )
            return AgentReply(
                role=MessageRole.ASSISTANT,
                content=(
                    "Could you please provide more details about the specific "
                    "functionality you need? This will help me better understand "
                    "the requirements."
                ),
                approval_needed=False,
            )

        return AgentReply(
            role=MessageRole.ASSISTANT,
            content=self.STAGE_REPLIES.get(stage.name, "How can I help you with this stage?"),
            approval_needed=False,
        )

    async def kickoff(
        self,
        stage: PipelineStage,
        seed_history: Sequence[Message],
    ) -> AgentReply:
        return AgentReply(
            role=MessageRole.ASSISTANT,
            content=f"Starting {stage.name}. How would you like to proceed?",
            approval_needed=False,
        )


# ==========================================================================
# Factory
# ==========================================================================

def create_agent_gateway(settings: Settings) -> AgentGateway:
    """Build the gateway selected by AGENT_GATEWAY_MODE."""
    if settings.AGENT_GATEWAY_MODE == "http":
        gateway: AgentGateway = HttpAgentGateway(
            base_url=settings.AGENT_SERVICE_URL,
            default_endpoint=settings.AGENT_DEFAULT_ENDPOINT,
            model_name=settings.AGENT_MODEL_NAME,
            timeout=settings.AGENT_TIMEOUT_SECONDS,
        )
    else:
        gateway = SimulatedAgentGateway()

    logger.info("agent_gateway_initialized", mode=gateway.name)
    return gateway
