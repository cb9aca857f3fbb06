"""
StagePilot - Test Fixtures
==========================

Shared pytest fixtures for all tests.
"""

from collections.abc import AsyncGenerator
from typing import Optional, Sequence, Union

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from stagepilot.api.deps import get_agent_gateway, get_notifier, get_stage_locks
from stagepilot.api.main import app
from stagepilot.core.database import Base, enable_sqlite_foreign_keys, get_db
from stagepilot.core.models import Chat, Message, MessageRole, PipelineStage
from stagepilot.core.pipeline import (
    AgentGateway,
    AgentReply,
    ChatSessionManager,
    PipelineOrchestrator,
    StageLockRegistry,
)


# ==========================================================================
# Test Database Setup
# ==========================================================================

# Use in-memory SQLite for tests (fast)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# ==========================================================================
# Test Doubles
# ==========================================================================

class ScriptedAgentGateway(AgentGateway):
    """
    Agent that replays queued replies or raises queued errors.

    With an empty script every call gets DEFAULT_REPLY.
    """

    name = "scripted"

    DEFAULT_REPLY = "Tell me more about what you need."

    def __init__(self):
        self.script: list[Union[AgentReply, Exception]] = []
        self.calls: list[tuple[str, int, list[tuple[str, str]]]] = []

    def queue(
        self,
        content: str,
        approval_needed: Optional[bool] = None,
        role: MessageRole = MessageRole.ASSISTANT,
    ) -> None:
        self.script.append(AgentReply(role=role, content=content, approval_needed=approval_needed))

    def fail_next(self, error: Exception) -> None:
        self.script.append(error)

    async def _next(self, kind: str, stage: PipelineStage, history: Sequence[Message]) -> AgentReply:
        self.calls.append((kind, stage.id, [(m.role.value, m.content) for m in history]))
        if not self.script:
            return AgentReply(
                role=MessageRole.ASSISTANT,
                content=self.DEFAULT_REPLY,
                approval_needed=False,
            )
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def respond(self, stage, history):
        return await self._next("respond", stage, history)

    async def kickoff(self, stage, seed_history):
        return await self._next("kickoff", stage, seed_history)


class RecordingNotifier:
    """Notification channel that keeps everything it was asked to publish."""

    def __init__(self):
        self.message_events: list[tuple[int, list[int]]] = []
        self.stage_events: list[tuple[int, str]] = []

    async def publish(self, stage_id: int, messages: Sequence[Message]) -> None:
        self.message_events.append((stage_id, [m.id for m in messages]))

    async def publish_stage(self, stage: PipelineStage) -> None:
        self.stage_events.append((stage.id, stage.status.value))


# ==========================================================================
# Database Fixtures
# ==========================================================================

@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a clean database session for each test.

    Each test gets its own in-memory database.
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    async with session_factory() as session:
        yield session

    await engine.dispose()


# ==========================================================================
# Pipeline Fixtures
# ==========================================================================

@pytest.fixture
def gateway() -> ScriptedAgentGateway:
    return ScriptedAgentGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def locks() -> StageLockRegistry:
    return StageLockRegistry()


@pytest.fixture
def orchestrator(
    db_session: AsyncSession,
    gateway: ScriptedAgentGateway,
    notifier: RecordingNotifier,
    locks: StageLockRegistry,
) -> PipelineOrchestrator:
    return PipelineOrchestrator(db_session, gateway=gateway, notifier=notifier, locks=locks)


@pytest.fixture
def session_manager(db_session: AsyncSession, locks: StageLockRegistry) -> ChatSessionManager:
    return ChatSessionManager(db_session, locks=locks)


@pytest_asyncio.fixture
async def chat_with_stages(
    session_manager: ChatSessionManager,
) -> tuple[Chat, list[PipelineStage]]:
    """A chat with the four default stages."""
    return await session_manager.create_chat(description="Expense tracker")


@pytest_asyncio.fixture
async def waiting_stage(
    orchestrator: PipelineOrchestrator,
    gateway: ScriptedAgentGateway,
    chat_with_stages: tuple[Chat, list[PipelineStage]],
) -> PipelineStage:
    """Requirements stage after the agent asked for approval."""
    _, stages = chat_with_stages
    gateway.queue("Categories, receipts and monthly reports. Approve?", approval_needed=True)
    result = await orchestrator.submit_message(stages[0].id, "I need an expense tracker")
    return result.stage


# ==========================================================================
# HTTP Client
# ==========================================================================

@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    gateway: ScriptedAgentGateway,
    notifier: RecordingNotifier,
    locks: StageLockRegistry,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide test HTTP client with per-test database, agent and notifier.
    """
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_agent_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_stage_locks] = lambda: locks

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ==========================================================================
# Helper Functions
# ==========================================================================

async def create_chat(client: AsyncClient, **body) -> dict:
    """Create a chat through the API and return its JSON."""
    body.setdefault("create_default_stages", True)
    response = await client.post("/api/chats", json=body)
    assert response.status_code == 201, response.text
    return response.json()
