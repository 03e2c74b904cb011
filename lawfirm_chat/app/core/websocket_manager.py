"""
WebSocket connection and room manager for the case chat service.

This module owns every live chat connection and the rooms they belong to.

Key Features:
- Connection pool keyed by connection id, grouped per user
- Per-user connection limit
- Explicit room membership in both directions (room -> connections and
  connection -> rooms), so membership can be listed, audited and revoked
- Room broadcast with per-recipient failure isolation
- Eviction of a user's connections from a room
- Connection metrics for the status endpoint

A room is named by its case id. Empty rooms are removed as soon as their
last member leaves or disconnects.
"""

import asyncio
import json
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from .exceptions import ErrorCode, WebSocketError
from ..models.api.chat_schemas import ServerEvent
from ..models.domain.user import ConnectionIdentity
from ..utils.logging import get_logger, websocket_logger

logger = get_logger(__name__)


@dataclass
class ConnectionInfo:
    """A gated chat connection and the rooms it has joined."""
    connection_id: str
    websocket: WebSocket
    identity: ConnectionIdentity
    client_ip: str
    user_agent: Optional[str]
    connected_at: datetime
    rooms: Set[str] = field(default_factory=set)
    message_count: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def user_id(self) -> str:
        return self.identity.user_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "user_id": self.identity.user_id,
            "name": self.identity.name,
            "role": self.identity.role,
            "client_ip": self.client_ip,
            "connected_at": self.connected_at.isoformat(),
            "rooms": sorted(self.rooms),
        }


class ConnectionMetrics(BaseModel):
    """Connection pool metrics."""
    total_connections: int = 0
    active_users: int = 0
    active_rooms: int = 0
    room_memberships: int = 0
    messages_sent_total: int = 0
    messages_received_total: int = 0
    bytes_sent_total: int = 0
    bytes_received_total: int = 0
    broadcasts_total: int = 0
    send_failures_total: int = 0
    evictions_total: int = 0
    average_connection_duration_seconds: float = 0.0
    peak_concurrent_connections: int = 0


class WebSocketManager:
    """
    Manages gated chat connections and their case rooms.

    Every method that mutates membership is synchronous, so a membership
    change is never interleaved with another coroutine's view of it.
    """

    def __init__(self, max_connections_per_user: int = 10):
        self.max_connections_per_user = max_connections_per_user

        self.connections: Dict[str, ConnectionInfo] = {}
        self.user_connections: Dict[str, Set[str]] = defaultdict(set)
        self.rooms: Dict[str, Set[str]] = {}

        self.metrics = ConnectionMetrics()

        logger.info(
            "WebSocketManager initialized",
            max_connections_per_user=max_connections_per_user
        )

    # Connection lifecycle

    def connect(
        self,
        websocket: WebSocket,
        identity: ConnectionIdentity,
        client_ip: str = "unknown",
        user_agent: Optional[str] = None
    ) -> str:
        """
        Register an accepted, gated connection.

        Returns:
            Connection ID for the new connection

        Raises:
            WebSocketError: If the user already holds the maximum number of
                connections
        """
        user_connections = self.user_connections.get(identity.user_id, set())
        if len(user_connections) >= self.max_connections_per_user:
            logger.warning(
                "User connection limit exceeded",
                user_id=identity.user_id,
                current_connections=len(user_connections),
                limit=self.max_connections_per_user
            )
            raise WebSocketError(
                f"User {identity.user_id} exceeded {self.max_connections_per_user} connections",
                error_code=ErrorCode.WEBSOCKET_CONNECTION_LIMIT,
                user_id=identity.user_id,
                user_message="Too many open chat connections"
            )

        connection_id = str(uuid.uuid4())
        self.connections[connection_id] = ConnectionInfo(
            connection_id=connection_id,
            websocket=websocket,
            identity=identity,
            client_ip=client_ip,
            user_agent=user_agent,
            connected_at=datetime.now(timezone.utc)
        )

        if identity.user_id not in self.user_connections:
            self.metrics.active_users += 1
        self.user_connections[identity.user_id].add(connection_id)

        self.metrics.total_connections += 1
        if self.metrics.total_connections > self.metrics.peak_concurrent_connections:
            self.metrics.peak_concurrent_connections = self.metrics.total_connections

        websocket_logger.connection_established(
            connection_id=connection_id,
            user_id=identity.user_id,
            role=identity.role
        )
        return connection_id

    async def disconnect(
        self,
        connection_id: str,
        reason: str = "Unknown",
        close: bool = True
    ) -> None:
        """
        Remove a connection from the pool and from every room it joined.

        Args:
            connection_id: Connection to disconnect
            reason: Reason for disconnection
            close: Also close the underlying socket
        """
        connection = self.connections.pop(connection_id, None)
        if connection is None:
            return

        for case_id in list(connection.rooms):
            self._remove_member(case_id, connection_id)
        connection.rooms.clear()

        user_connections = self.user_connections.get(connection.user_id)
        if user_connections is not None:
            user_connections.discard(connection_id)
            if not user_connections:
                del self.user_connections[connection.user_id]
                self.metrics.active_users -= 1

        self.metrics.total_connections -= 1

        if close:
            try:
                await connection.websocket.close()
            except Exception as e:
                # Socket already closed by the peer
                logger.debug(
                    "WebSocket close failed",
                    connection_id=connection_id,
                    error=str(e)
                )

        duration = (datetime.now(timezone.utc) - connection.connected_at).total_seconds()
        logger.info(
            "WebSocket connection disconnected",
            connection_id=connection_id,
            user_id=connection.user_id,
            reason=reason,
            duration_seconds=round(duration, 3),
            messages_sent=connection.message_count
        )
        websocket_logger.connection_closed(connection_id=connection_id, reason=reason)

    async def close_all(self, reason: str = "Server shutdown") -> None:
        """Disconnect every connection."""
        for connection_id in list(self.connections):
            await self.disconnect(connection_id, reason)

    def get_connection(self, connection_id: str) -> Optional[ConnectionInfo]:
        return self.connections.get(connection_id)

    def record_received(self, connection_id: str, size: int) -> None:
        connection = self.connections.get(connection_id)
        if connection is None:
            return
        connection.bytes_received += size
        self.metrics.messages_received_total += 1
        self.metrics.bytes_received_total += size

    # Room membership

    def join_room(self, connection_id: str, case_id: str) -> bool:
        """
        Add a connection to a case room.

        Returns:
            True if the connection is a member afterwards
        """
        connection = self.connections.get(connection_id)
        if connection is None:
            return False

        members = self.rooms.get(case_id)
        if members is None:
            members = self.rooms[case_id] = set()
        if connection_id not in members:
            members.add(connection_id)
            connection.rooms.add(case_id)

        logger.debug(
            "Connection joined room",
            connection_id=connection_id,
            user_id=connection.user_id,
            case_id=case_id,
            room_size=len(members)
        )
        return True

    def leave_room(self, connection_id: str, case_id: str) -> bool:
        """
        Remove a connection from a case room.

        Returns:
            True if the connection was a member
        """
        connection = self.connections.get(connection_id)
        if connection is None or case_id not in connection.rooms:
            return False

        connection.rooms.discard(case_id)
        self._remove_member(case_id, connection_id)

        logger.debug(
            "Connection left room",
            connection_id=connection_id,
            user_id=connection.user_id,
            case_id=case_id
        )
        return True

    def _remove_member(self, case_id: str, connection_id: str) -> None:
        members = self.rooms.get(case_id)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self.rooms[case_id]

    async def evict_user_from_room(self, case_id: str, user_id: str) -> int:
        """
        Remove every connection of a user from a room and tell them so.

        Returns:
            Number of connections evicted
        """
        evicted = [
            connection_id
            for connection_id in list(self.rooms.get(case_id, ()))
            if self.connections[connection_id].user_id == user_id
        ]

        for connection_id in evicted:
            self.leave_room(connection_id, case_id)

        for connection_id in evicted:
            await self.send_to_connection(
                connection_id,
                ServerEvent.ROOM_EVICTED,
                {"caseId": case_id}
            )

        if evicted:
            self.metrics.evictions_total += len(evicted)
            logger.info(
                "User evicted from room",
                case_id=case_id,
                user_id=user_id,
                evicted_connections=len(evicted)
            )
        return len(evicted)

    def is_member(self, connection_id: str, case_id: str) -> bool:
        return connection_id in self.rooms.get(case_id, ())

    def get_room_members(self, case_id: str) -> List[Dict[str, Any]]:
        """Describe every connection currently in a room."""
        return [
            self.connections[connection_id].to_dict()
            for connection_id in sorted(self.rooms.get(case_id, ()))
        ]

    def get_rooms_for_connection(self, connection_id: str) -> Set[str]:
        connection = self.connections.get(connection_id)
        return set(connection.rooms) if connection else set()

    # Delivery

    async def send_to_connection(
        self,
        connection_id: str,
        event: str,
        data: Any
    ) -> bool:
        """
        Send one event envelope to a connection.

        Returns:
            True if the message was written to the socket
        """
        connection = self.connections.get(connection_id)
        if connection is None:
            return False

        message_json = json.dumps({"type": event, "data": data}, default=str)

        try:
            async with connection.send_lock:
                await connection.websocket.send_text(message_json)
        except WebSocketDisconnect:
            await self.disconnect(connection_id, "WebSocket disconnect", close=False)
            return False
        except Exception as e:
            self.metrics.send_failures_total += 1
            logger.error(
                "Failed to send message to connection",
                connection_id=connection_id,
                message_type=event,
                error=str(e)
            )
            return False

        size = len(message_json.encode())
        connection.message_count += 1
        connection.bytes_sent += size
        self.metrics.messages_sent_total += 1
        self.metrics.bytes_sent_total += size
        websocket_logger.message_sent(
            connection_id=connection_id,
            message_type=event,
            message_size=size
        )
        return True

    async def broadcast_to_room(self, case_id: str, event: str, data: Any) -> int:
        """
        Send an event to every connection in a room.

        A recipient whose send fails is dropped from the pool; the others
        still receive the event.

        Returns:
            Number of connections the event was delivered to
        """
        sent_count = 0
        failed_connections = []

        for connection_id in list(self.rooms.get(case_id, ())):
            if await self.send_to_connection(connection_id, event, data):
                sent_count += 1
            else:
                failed_connections.append(connection_id)

        for connection_id in failed_connections:
            await self.disconnect(connection_id, "Send failure")

        self.metrics.broadcasts_total += 1
        logger.debug(
            "Message broadcast to room",
            case_id=case_id,
            message_type=event,
            sent_count=sent_count,
            failed_count=len(failed_connections)
        )
        return sent_count

    # Monitoring

    def get_connection_count(self, user_id: Optional[str] = None) -> int:
        if user_id:
            return len(self.user_connections.get(user_id, ()))
        return len(self.connections)

    def get_metrics(self) -> ConnectionMetrics:
        """Get current connection metrics."""
        now = datetime.now(timezone.utc)
        if self.connections:
            total_duration = sum(
                (now - conn.connected_at).total_seconds()
                for conn in self.connections.values()
            )
            self.metrics.average_connection_duration_seconds = total_duration / len(self.connections)
        else:
            self.metrics.average_connection_duration_seconds = 0.0

        self.metrics.active_rooms = len(self.rooms)
        self.metrics.room_memberships = sum(len(members) for members in self.rooms.values())
        return self.metrics
