"""
Signaling Hub

Dispatches every inbound frame to the room directory or the relay router and
delivers the resulting messages. State changes for a room happen while its
asyncio lock is held, so concurrent admissions, promotions and departures of
the same room are linearizable; different rooms proceed independently and
relays take no lock at all.
"""

import asyncio
import json
import weakref
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from syncmeet.config import settings
from syncmeet.managers.logging_manager import get_logger
from syncmeet.webrtc.errors import (
    InvalidMessageTypeError,
    InvalidPayloadError,
    SignalingError,
    SignalingErrorCode,
)
from syncmeet.webrtc.rate_limiter import SlidingWindowRateLimiter
from syncmeet.webrtc.registry import ConnectionRegistry, JsonSender
from syncmeet.webrtc.relay import RelayRouter
from syncmeet.webrtc.rooms import AdmissionStatus, Delivery, PendingJoinRequest, RoomDirectory
from syncmeet.webrtc.schemas import (
    CLIENT_MESSAGE_TYPES,
    DIRECTED_MESSAGE_TYPES,
    JoinRoomPayload,
    LeaveRoomPayload,
    MessageType,
    RequestJoinPayload,
    ResolveJoinRequestPayload,
    SignalingMessage,
    parse_payload,
)

logger = get_logger(prefix="[Signaling-Hub]")

Handler = Callable[[str, SignalingMessage], Awaitable[None]]


class RoomLocks:
    """One asyncio lock per room, acquired in sorted order for multi-room operations."""

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, room_id: str) -> asyncio.Lock:
        lock = self._locks.get(room_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[room_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, room_ids: Iterable[str]) -> AsyncIterator[None]:
        locks = [self._lock_for(room_id) for room_id in sorted(set(room_ids))]
        acquired: List[asyncio.Lock] = []
        try:
            for lock in locks:
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


class SignalingHub:
    """
    Coordination point for all signaling connections.

    Args:
        registry: Connection registry; a fresh one when omitted
        directory: Room directory; a fresh one when omitted
        rate_limiter: Limiter for room broadcasts
        rate_limit_enabled: Apply the limiter at all
        join_request_timeout: Seconds a join request may wait, None for no limit
    """

    def __init__(
        self,
        registry: Optional[ConnectionRegistry] = None,
        directory: Optional[RoomDirectory] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        rate_limit_enabled: Optional[bool] = None,
        join_request_timeout: Optional[float] = None,
    ):
        self.registry = registry or ConnectionRegistry()
        self.directory = directory or RoomDirectory(honor_host_claims=settings.SIGNALING_HONOR_HOST_CLAIMS)
        self.relay = RelayRouter(self.directory)
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.rate_limit_enabled = (
            settings.SIGNALING_RATE_LIMIT_ENABLED if rate_limit_enabled is None else rate_limit_enabled
        )
        self.join_request_timeout = join_request_timeout
        self._locks = RoomLocks()
        self._timers: Set[asyncio.Task] = set()
        self._handlers: Dict[MessageType, Handler] = {
            MessageType.REQUEST_JOIN: self._handle_request_join,
            MessageType.RESOLVE_JOIN_REQUEST: self._handle_resolve_join_request,
            MessageType.JOIN_ROOM: self._handle_join_room,
            MessageType.LEAVE_ROOM: self._handle_leave_room,
            MessageType.CHAT_MESSAGE: self._handle_broadcast,
            MessageType.SEND_REACTION: self._handle_broadcast,
            MessageType.TOGGLE_HAND: self._handle_broadcast,
            MessageType.TOGGLE_MEDIA: self._handle_broadcast,
        }
        self._handlers.update(dict.fromkeys(DIRECTED_MESSAGE_TYPES, self._handle_directed))

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self, sender: JsonSender, connection_id: Optional[str] = None) -> str:
        """Register a transport and greet it with its connection id."""
        connection_id = self.registry.register(sender, connection_id)
        await self.registry.send(connection_id, SignalingMessage.create_connected(connection_id))
        logger.info(f"Client connected: {connection_id}", extra={"active_connections": len(self.registry)})
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        """Run the departure path for every room the connection touched."""
        async with self._locks.hold(self.directory.room_ids_for(connection_id)):
            deliveries = self.directory.leave(connection_id)
            self.registry.unregister(connection_id)
            await self._deliver(deliveries)
        self.rate_limiter.reset(connection_id)
        logger.info(f"Client disconnected: {connection_id}", extra={"active_connections": len(self.registry)})

    async def shutdown(self) -> None:
        """Cancel outstanding join-request timers."""
        timers = list(self._timers)
        for task in timers:
            task.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)

    # ------------------------------------------------------------------
    # Inbound frames
    # ------------------------------------------------------------------

    async def handle_text(self, connection_id: str, text: str) -> None:
        """Decode one JSON text frame and dispatch it."""
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            await self._send_error(connection_id, InvalidPayloadError(f"Malformed JSON: {e.msg}"))
            return
        await self.handle_message(connection_id, data)

    async def handle_message(self, connection_id: str, data: Any) -> None:
        """
        Dispatch one decoded frame.

        Errors are reported to the originating connection only.
        """
        try:
            message = self._parse_message(data)
            if self.rate_limit_enabled:
                self.rate_limiter.check_message(message.type, connection_id)
            await self._handlers[message.type](connection_id, message)
        except SignalingError as e:
            logger.info(
                f"Rejected frame from {connection_id}: {e.error_code.value} {e.message}",
                extra={"connection_id": connection_id, "error_code": e.error_code.value},
            )
            await self._send_error(connection_id, e)
        except Exception as e:
            logger.error(f"Error handling frame from {connection_id}: {e}", exc_info=True)
            await self.registry.send(
                connection_id,
                SignalingMessage.create_error(SignalingErrorCode.INTERNAL_ERROR.value, "Internal server error"),
            )

    def _parse_message(self, data: Any) -> SignalingMessage:
        if not isinstance(data, dict):
            raise InvalidPayloadError("Frame must be a JSON object")
        raw_type = data.get("type")
        try:
            message_type = MessageType(raw_type)
        except ValueError:
            raise InvalidMessageTypeError(str(raw_type))
        if message_type not in CLIENT_MESSAGE_TYPES:
            raise InvalidMessageTypeError(message_type.value)
        try:
            return SignalingMessage.model_validate(data)
        except ValueError as e:
            raise InvalidPayloadError(f"Invalid envelope: {e}")

    # ------------------------------------------------------------------
    # Admission and membership
    # ------------------------------------------------------------------

    async def _handle_request_join(self, connection_id: str, message: SignalingMessage) -> None:
        payload = parse_payload(RequestJoinPayload, message)
        room_ids = {payload.room_id}
        previous = self.directory.pending_request(connection_id)
        if previous is not None:
            room_ids.add(previous.room_id)

        async with self._locks.hold(room_ids):
            result, deliveries = self.directory.request_join(
                connection_id,
                payload.room_id,
                payload.user_id,
                payload.display_name,
                payload.claims_host_priority,
            )
            await self._deliver(deliveries)

        if result.status == AdmissionStatus.PENDING_APPROVAL and self.join_request_timeout:
            request = self.directory.pending_request(connection_id)
            if request is not None:
                self._schedule_expiry(request)

    async def _handle_resolve_join_request(self, connection_id: str, message: SignalingMessage) -> None:
        payload = parse_payload(ResolveJoinRequestPayload, message)
        request = self.directory.pending_request(payload.requester_connection_id)
        if request is None:
            logger.debug(f"Resolution for unknown request {payload.requester_connection_id} ignored")
            return
        async with self._locks.hold([request.room_id]):
            deliveries = self.directory.resolve_join_request(
                connection_id, payload.requester_connection_id, payload.approved
            )
            await self._deliver(deliveries)

    async def _handle_join_room(self, connection_id: str, message: SignalingMessage) -> None:
        payload = parse_payload(JoinRoomPayload, message)
        async with self._locks.hold([payload.room_id]):
            deliveries = self.directory.finalize_join(
                connection_id, payload.room_id, payload.user_id, payload.display_name
            )
            await self._deliver(deliveries)

    async def _handle_leave_room(self, connection_id: str, message: SignalingMessage) -> None:
        payload = parse_payload(LeaveRoomPayload, message)
        if payload.room_id is None:
            room_ids = self.directory.room_ids_for(connection_id)
        else:
            room_ids = {payload.room_id}
        async with self._locks.hold(room_ids):
            deliveries = self.directory.leave(connection_id, payload.room_id)
            await self._deliver(deliveries)

    def _schedule_expiry(self, request: PendingJoinRequest) -> None:
        task = asyncio.create_task(self._expire_later(request))
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)

    async def _expire_later(self, request: PendingJoinRequest) -> None:
        await asyncio.sleep(self.join_request_timeout)
        async with self._locks.hold([request.room_id]):
            deliveries = self.directory.expire_join_request(request)
            await self._deliver(deliveries)

    # ------------------------------------------------------------------
    # Relay
    # ------------------------------------------------------------------

    async def _handle_directed(self, connection_id: str, message: SignalingMessage) -> None:
        await self._deliver(self.relay.route_directed(connection_id, message))

    async def _handle_broadcast(self, connection_id: str, message: SignalingMessage) -> None:
        await self._deliver(self.relay.route_broadcast(connection_id, message))

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _deliver(self, deliveries: List[Delivery]) -> None:
        for delivery in deliveries:
            await self.registry.send(delivery.connection_id, delivery.message)

    async def _send_error(self, connection_id: str, error: SignalingError) -> None:
        await self.registry.send(
            connection_id,
            SignalingMessage.create_error(error.error_code.value, error.message, error.details or None),
        )

    def get_stats(self) -> Dict[str, Any]:
        """Counts for the health and stats endpoints."""
        rooms = self.directory.rooms()
        return {
            "connections": len(self.registry),
            "rooms": len(rooms),
            "participants": sum(len(room.participants) for room in rooms),
            "pending_requests": sum(len(self.directory.pending_for_room(room.room_id)) for room in rooms),
        }


# Global signaling hub instance
signaling_hub = SignalingHub(join_request_timeout=settings.SIGNALING_JOIN_REQUEST_TIMEOUT)
