"""
StagePilot - Notification Channel
=================================

Best-effort WebSocket push telling live viewers that a stage changed.
Payloads are invalidation hints: clients re-fetch through the REST API.
No persistence, no replay, no acknowledgement.

Client frames:  {"type": "ping"}, {"type": "subscribe", "stage_id": 3},
                {"type": "unsubscribe", "stage_id": 3}
Server frames:  connected, pong, error, messages, stage
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Sequence, Set
from uuid import uuid4

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from stagepilot.core.models import Message, PipelineStage
from stagepilot.core.schemas import MessageResponse, StageResponse

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ==========================================================================
# Frames
# ==========================================================================

class WSMessageType(str, Enum):
    # from viewers
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    PING = "ping"

    # to viewers
    CONNECTED = "connected"
    PONG = "pong"
    ERROR = "error"
    MESSAGES = "messages"
    STAGE = "stage"


@dataclass
class WSMessage:
    """
    One frame on the socket.

    Payload keys sit next to `type` on the wire, so a messages event reads
    {"type": "messages", "stageId": 3, "messages": [...], "timestamp": ...}.
    """
    type: WSMessageType
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_now)

    def to_json(self) -> str:
        frame = {"type": self.type.value}
        frame.update(self.payload)
        frame["timestamp"] = self.timestamp
        return json.dumps(frame)

    @classmethod
    def from_json(cls, data: str) -> "WSMessage":
        """Parse a viewer frame; raises KeyError or ValueError on garbage."""
        frame = json.loads(data)
        if not isinstance(frame, dict):
            raise ValueError("Frame must be a JSON object")
        frame_type = WSMessageType(frame.pop("type"))
        timestamp = frame.pop("timestamp", None) or _now()
        return cls(type=frame_type, payload=frame, timestamp=timestamp)

    @classmethod
    def error(cls, text: str) -> "WSMessage":
        return cls(type=WSMessageType.ERROR, payload={"error": text})


class NotificationChannel(Protocol):
    """What the orchestrator needs from a push channel."""

    async def publish(self, stage_id: int, messages: Sequence[Message]) -> None:
        ...

    async def publish_stage(self, stage: PipelineStage) -> None:
        ...


# ==========================================================================
# Viewers
# ==========================================================================

@dataclass
class Viewer:
    """A connected socket and the stages it follows."""
    id: str
    websocket: WebSocket
    connected_at: str = field(default_factory=_now)
    subscribed_stages: Set[int] = field(default_factory=set)
    is_active: bool = True

    def wants(self, stage_id: int) -> bool:
        # An empty subscription set follows every stage
        return not self.subscribed_stages or stage_id in self.subscribed_stages


class ConnectionManager:
    """
    Fans stage events out to connected viewers.

    Frames to a single viewer are sent one after another, so a viewer sees
    a stage's events in publish order. A viewer whose send fails is
    dropped after the current broadcast.
    """

    def __init__(self):
        self.connections: Dict[str, Viewer] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        viewer = Viewer(id=str(uuid4()), websocket=websocket)
        async with self._lock:
            self.connections[viewer.id] = viewer

        await self.send(viewer.id, WSMessage(
            type=WSMessageType.CONNECTED,
            payload={"client_id": viewer.id},
        ))
        logger.info(f"Viewer {viewer.id} connected ({len(self.connections)} online)")
        return viewer.id

    async def disconnect(self, client_id: str):
        async with self._lock:
            viewer = self.connections.pop(client_id, None)
        if viewer is not None:
            viewer.is_active = False
            logger.info(f"Viewer {client_id} left ({len(self.connections)} online)")

    async def handle_message(self, client_id: str, message: WSMessage):
        """Apply one viewer frame."""
        viewer = self.connections.get(client_id)
        if viewer is None:
            return

        if message.type == WSMessageType.PING:
            await self.send(client_id, WSMessage(
                type=WSMessageType.PONG,
                payload={"received": message.timestamp},
            ))
            return

        if message.type not in (WSMessageType.SUBSCRIBE, WSMessageType.UNSUBSCRIBE):
            await self.send(client_id, WSMessage.error(
                f"Unsupported message type: {message.type.value}"
            ))
            return

        stage_id = message.payload.get("stage_id")
        # bool is an int subclass
        if not isinstance(stage_id, int) or isinstance(stage_id, bool):
            await self.send(client_id, WSMessage.error("stage_id must be an integer"))
            return

        if message.type == WSMessageType.SUBSCRIBE:
            viewer.subscribed_stages.add(stage_id)
        else:
            viewer.subscribed_stages.discard(stage_id)

    async def send(self, client_id: str, message: WSMessage):
        """Deliver one frame; a failed send marks the viewer inactive."""
        viewer = self.connections.get(client_id)
        if viewer is None or not viewer.is_active:
            return
        if viewer.websocket.client_state != WebSocketState.CONNECTED:
            return

        try:
            await viewer.websocket.send_text(message.to_json())
        except Exception as e:
            logger.warning(f"Send to viewer {client_id} failed: {e}")
            viewer.is_active = False

    async def _broadcast(self, stage_id: int, message: WSMessage):
        for viewer in list(self.connections.values()):
            if viewer.is_active and viewer.wants(stage_id):
                await self.send(viewer.id, message)

        for client_id in [v.id for v in self.connections.values() if not v.is_active]:
            await self.disconnect(client_id)

    # ==========================================================================
    # NotificationChannel
    # ==========================================================================

    async def publish(self, stage_id: int, messages: Sequence[Message]) -> None:
        """New messages exist on a stage."""
        if not messages:
            return
        await self._broadcast(stage_id, WSMessage(
            type=WSMessageType.MESSAGES,
            payload={
                "stageId": stage_id,
                "messages": [
                    MessageResponse.model_validate(m).model_dump(mode="json")
                    for m in messages
                ],
            },
        ))

    async def publish_stage(self, stage: PipelineStage) -> None:
        """A stage's status or fields changed."""
        await self._broadcast(stage.id, WSMessage(
            type=WSMessageType.STAGE,
            payload={
                "stageId": stage.id,
                "stage": StageResponse.model_validate(stage).model_dump(mode="json"),
            },
        ))


_connection_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> ConnectionManager:
    """Process-wide manager shared by the /ws route and the orchestrator."""
    global _connection_manager
    if _connection_manager is None:
        _connection_manager = ConnectionManager()
    return _connection_manager


async def websocket_endpoint(websocket: WebSocket, manager: Optional[ConnectionManager] = None):
    """Serve one viewer until its socket closes."""
    manager = manager or get_connection_manager()
    client_id = await manager.connect(websocket)

    try:
        async for data in _frames(websocket):
            try:
                message = WSMessage.from_json(data)
            except (KeyError, ValueError):
                await manager.send(client_id, WSMessage.error("Invalid message"))
                continue
            await manager.handle_message(client_id, message)
    except Exception as e:
        logger.error(f"Socket error for viewer {client_id}: {e}")
    finally:
        await manager.disconnect(client_id)


async def _frames(websocket: WebSocket):
    while True:
        try:
            yield await websocket.receive_text()
        except WebSocketDisconnect:
            return
