"""
Connection Registry

Holds one send handle per connected client, keyed by a server-assigned
connection id. Delivery is best effort: a message for an unknown or broken
connection is dropped and logged, never raised to the sender.
"""

import uuid
from typing import Any, Dict, Iterator, Optional, Protocol

from syncmeet.managers.logging_manager import get_logger
from syncmeet.webrtc.schemas import SignalingMessage

logger = get_logger(prefix="[Connection-Registry]")


class JsonSender(Protocol):
    """Anything that can push a JSON frame to a client (Starlette WebSocket)."""

    async def send_json(self, data: Any) -> None:
        ...


class ConnectionRegistry:
    """Maps connection ids to live transport handles."""

    def __init__(self):
        self._connections: Dict[str, JsonSender] = {}

    def register(self, sender: JsonSender, connection_id: Optional[str] = None) -> str:
        """
        Register a transport handle.

        Args:
            sender: Object with an async ``send_json``
            connection_id: Explicit id, generated when omitted

        Returns:
            The connection id assigned to this transport session
        """
        connection_id = connection_id or uuid.uuid4().hex
        self._connections[connection_id] = sender
        logger.debug(f"Connection registered: {connection_id}", extra={"active_connections": len(self)})
        return connection_id

    def unregister(self, connection_id: str) -> None:
        if self._connections.pop(connection_id, None) is not None:
            logger.debug(f"Connection unregistered: {connection_id}", extra={"active_connections": len(self)})

    def get(self, connection_id: str) -> Optional[JsonSender]:
        return self._connections.get(connection_id)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._connections))

    async def send(self, connection_id: str, message: SignalingMessage) -> bool:
        """
        Deliver a message to one connection.

        Returns:
            True when the frame was handed to the transport, False when dropped
        """
        sender = self._connections.get(connection_id)
        if sender is None:
            logger.debug(
                f"Dropping {message.type.value} for unknown connection {connection_id}",
                extra={"connection_id": connection_id, "message_type": message.type.value},
            )
            return False
        try:
            await sender.send_json(message.to_wire())
        except Exception as e:
            logger.warning(
                f"Failed to deliver {message.type.value} to {connection_id}: {e}",
                extra={"connection_id": connection_id, "message_type": message.type.value},
            )
            return False
        return True
