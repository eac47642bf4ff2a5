"""WebSocket rooms that stream live segment events to project members."""
from __future__ import annotations

import asyncio
import json
from typing import Dict, List, Optional, Set

import structlog
from fastapi import WebSocket

from .models import Segment
from .state import State

logger = structlog.get_logger(__name__)


class ConnectionManager:
    """Manages WebSocket connections grouped into project rooms."""

    def __init__(self) -> None:
        # Store active connections by user ID
        self.active_connections: Dict[str, WebSocket] = {}
        # Store project rooms (user IDs in each project)
        self.project_rooms: Dict[str, Set[str]] = {}

    async def connect(self, websocket: WebSocket, user_id: str) -> None:
        await websocket.accept()
        self.active_connections[user_id] = websocket

    def disconnect(self, user_id: str) -> None:
        """Remove a connection and drop the user from every room."""
        self.active_connections.pop(user_id, None)
        for members in self.project_rooms.values():
            members.discard(user_id)

    def join(self, project_id: str, user_id: str) -> None:
        self.project_rooms.setdefault(project_id, set()).add(user_id)

    def leave(self, project_id: str, user_id: str) -> None:
        if project_id in self.project_rooms:
            self.project_rooms[project_id].discard(user_id)

    async def send_personal_message(self, message: dict, user_id: str) -> None:
        websocket = self.active_connections.get(user_id)
        if websocket is None:
            return
        try:
            await websocket.send_text(json.dumps(message))
        except Exception:
            # Connection might be closed
            self.disconnect(user_id)

    async def broadcast_to_project(self, project_id: str, message: dict, exclude_user: Optional[str] = None) -> None:
        for user_id in list(self.project_rooms.get(project_id, ())):
            if user_id != exclude_user:
                await self.send_personal_message(message, user_id)

    async def broadcast_segment_update(self, event: str, segment: Segment) -> None:
        """Push a segment event to everyone watching the segment's project."""
        await self.broadcast_to_project(
            segment.project_id,
            {
                "type": event,
                "segment_id": segment.id,
                "file_id": segment.file_id,
                "status": segment.status.value,
                "quality_score": segment.quality_score,
                "timestamp": asyncio.get_event_loop().time(),
            },
        )

    def get_project_users(self, project_id: str) -> List[str]:
        return sorted(self.project_rooms.get(project_id, ()))

    def get_user_count(self) -> int:
        return len(self.active_connections)


class WebSocketHandler:
    """Handles room membership messages sent by connected clients."""

    def __init__(self, connection_manager: ConnectionManager, state: State) -> None:
        self.manager = connection_manager
        self._state = state

    async def handle_message(self, user_id: str, message: dict) -> None:
        message_type = message.get("type")

        if message_type == "join_project":
            await self._handle_join_project(user_id, message)
        elif message_type == "leave_project":
            await self._handle_leave_project(user_id, message)
        else:
            await self.manager.send_personal_message(
                {"type": "error", "message": f"Unknown message type: {message_type}"}, user_id
            )

    async def _handle_join_project(self, user_id: str, message: dict) -> None:
        project_id = message.get("project_id")
        if not project_id:
            await self.manager.send_personal_message({"type": "error", "message": "Project ID required"}, user_id)
            return

        try:
            project = self._state.get_project(project_id)
        except KeyError:
            await self.manager.send_personal_message({"type": "error", "message": "Project not found"}, user_id)
            return
        if not project.is_member(user_id):
            await self.manager.send_personal_message(
                {"type": "error", "message": "Not a member of this project"}, user_id
            )
            return

        self.manager.join(project_id, user_id)
        logger.info("User joined project room", user_id=user_id, project_id=project_id)
        await self.manager.broadcast_to_project(
            project_id,
            {"type": "user_joined", "user_id": user_id, "project_id": project_id},
            exclude_user=user_id,
        )
        await self.manager.send_personal_message(
            {"type": "project_users", "project_id": project_id, "users": self.manager.get_project_users(project_id)},
            user_id,
        )

    async def _handle_leave_project(self, user_id: str, message: dict) -> None:
        project_id = message.get("project_id")
        if not project_id:
            return
        self.manager.leave(project_id, user_id)
        await self.manager.broadcast_to_project(
            project_id, {"type": "user_left", "user_id": user_id, "project_id": project_id}
        )
