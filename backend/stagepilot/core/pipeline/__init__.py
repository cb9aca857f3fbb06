"""
StagePilot Pipeline
===================

Stage conversations and the approval-gated pipeline.

Components:
- StageStore / MessageStore: persistence contracts
- AgentGateway: outbound agent calls (HTTP or simulated)
- PipelineOrchestrator: submissions, approve/reject transitions
- ChatSessionManager: chat CRUD with atomic stage bundles
- ConnectionManager: WebSocket notification channel
"""

from stagepilot.core.pipeline.gateway import (
    AgentGateway,
    AgentReply,
    HttpAgentGateway,
    SimulatedAgentGateway,
    create_agent_gateway,
)
from stagepilot.core.pipeline.notifications import ConnectionManager, get_connection_manager
from stagepilot.core.pipeline.orchestrator import (
    ExchangeResult,
    PipelineOrchestrator,
    StageLockRegistry,
    TransitionResult,
)
from stagepilot.core.pipeline.sessions import ChatSessionManager
from stagepilot.core.pipeline.stores import MessageStore, StageStore

__all__ = [
    "AgentGateway",
    "AgentReply",
    "ChatSessionManager",
    "ConnectionManager",
    "ExchangeResult",
    "HttpAgentGateway",
    "MessageStore",
    "PipelineOrchestrator",
    "SimulatedAgentGateway",
    "StageLockRegistry",
    "StageStore",
    "TransitionResult",
    "create_agent_gateway",
    "get_connection_manager",
]
