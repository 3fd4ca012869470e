"""
Room Directory and Admission Coordinator

Owns every room, its participant set, its host pointer and the join requests
waiting for host approval. All operations are synchronous and return the
messages they produce as a list of ``Delivery`` objects; the caller (the
signaling hub) sends them while still holding the room lock, so each room
observes a single ordered history of admissions, promotions and departures.

Room invariant: a room either has no participants and no host, or has at
least one participant and exactly one host who is one of them. A host
reservation (an admitted host that has not sent join-room yet) is kept apart
from the host pointer so the invariant holds at every step.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from syncmeet.managers.logging_manager import get_logger
from syncmeet.webrtc.errors import (
    AlreadyInRoomError,
    HostDeclinedError,
    HostUnavailableError,
    JoinRequestExpiredError,
    NotAdmittedError,
    NotHostError,
    SignalingError,
)
from syncmeet.webrtc.schemas import ParticipantInfo, RoomSummary, SignalingMessage

logger = get_logger(prefix="[Room-Directory]")

def lowest_connection_id(candidates: Iterable[str]) -> str:
    """Deterministic host election: the smallest remaining connection id."""
    return min(candidates)


@dataclass(frozen=True)
class Participant:
    connection_id: str
    user_id: str
    display_name: str

    def to_info(self) -> ParticipantInfo:
        return ParticipantInfo(
            connection_id=self.connection_id, user_id=self.user_id, display_name=self.display_name
        )


@dataclass
class Room:
    """Participants of one room plus its host pointer."""
    room_id: str
    participants: Dict[str, Participant] = field(default_factory=dict)
    host_connection_id: Optional[str] = None
    reserved_host_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    @property
    def authority(self) -> Optional[str]:
        """Connection allowed to approve requests: the host, else the reservation holder."""
        return self.host_connection_id or self.reserved_host_id

    @property
    def is_occupied(self) -> bool:
        return bool(self.participants) or self.authority is not None


@dataclass(frozen=True)
class PendingJoinRequest:
    requesting_connection_id: str
    room_id: str
    user_id: str
    display_name: str
    requested_at: float = field(default_factory=time.monotonic)


class AdmissionStatus(str, Enum):
    ADMITTED_AS_HOST = "admitted-as-host"
    ADMITTED = "admitted"
    PENDING_APPROVAL = "pending-approval"
    REJECTED = "rejected"


@dataclass(frozen=True)
class AdmissionResult:
    status: AdmissionStatus
    reason: Optional[str] = None


@dataclass(frozen=True)
class Delivery:
    """One outbound message addressed to one connection."""
    connection_id: str
    message: SignalingMessage


def rejection(connection_id: str, error: SignalingError, room_id: str) -> Delivery:
    """join-rejected carrying the error's message and code."""
    return Delivery(
        connection_id, SignalingMessage.create_join_rejected(error.message, error.error_code.value, room_id)
    )


class RoomDirectory:
    """
    Room state and the join-request workflow.

    Args:
        honor_host_claims: Let requesters that claim host priority skip approval
        elect_host: Picks the next host from the remaining connection ids
    """

    def __init__(
        self,
        honor_host_claims: bool = True,
        elect_host: Callable[[Iterable[str]], str] = lowest_connection_id,
    ):
        self.honor_host_claims = honor_host_claims
        self._elect_host = elect_host
        self._rooms: Dict[str, Room] = {}
        self._pending: Dict[str, PendingJoinRequest] = {}
        self._grants: Dict[str, Set[str]] = {}
        self._memberships: Dict[str, Set[str]] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_room(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def rooms(self) -> List[Room]:
        return list(self._rooms.values())

    def is_participant(self, room_id: str, connection_id: str) -> bool:
        room = self._rooms.get(room_id)
        return room is not None and connection_id in room.participants

    def participant_ids(self, room_id: str) -> List[str]:
        room = self._rooms.get(room_id)
        return list(room.participants) if room else []

    def pending_request(self, connection_id: str) -> Optional[PendingJoinRequest]:
        return self._pending.get(connection_id)

    def pending_for_room(self, room_id: str) -> List[PendingJoinRequest]:
        return sorted(
            (r for r in self._pending.values() if r.room_id == room_id),
            key=lambda r: r.requested_at,
        )

    def room_ids_for(self, connection_id: str) -> Set[str]:
        """Every room whose state a departure of this connection can touch."""
        room_ids = set(self._memberships.get(connection_id, ()))
        room_ids.update(r.room_id for r in self._rooms.values() if r.reserved_host_id == connection_id)
        request = self._pending.get(connection_id)
        if request is not None:
            room_ids.add(request.room_id)
        return room_ids

    def summary(self, room: Room) -> RoomSummary:
        return RoomSummary(
            room_id=room.room_id,
            participant_count=len(room.participants),
            host_connection_id=room.host_connection_id,
            pending_requests=len(self.pending_for_room(room.room_id)),
            created_at=room.created_at,
        )

    def consistency_violations(self) -> List[str]:
        """Describe every room that breaks the host invariant (empty when healthy)."""
        problems = []
        for room in self._rooms.values():
            if room.participants and room.host_connection_id not in room.participants:
                problems.append(f"room {room.room_id} has participants but no current host")
            if not room.participants and room.host_connection_id is not None:
                problems.append(f"room {room.room_id} is empty but has host {room.host_connection_id}")
        return problems

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def request_join(
        self,
        connection_id: str,
        room_id: str,
        user_id: str,
        display_name: str,
        claims_host_priority: bool = False,
    ) -> Tuple[AdmissionResult, List[Delivery]]:
        """
        Decide whether a connection may enter a room.

        Args:
            connection_id: Requesting connection
            room_id: Target room, created on first attempt
            user_id: Client-generated user id
            display_name: Name shown to the host
            claims_host_priority: Requester created this room earlier

        Returns:
            The admission outcome and the messages it produces

        Raises:
            AlreadyInRoomError: The connection is already a participant of the room
        """
        if room_id in self._memberships.get(connection_id, ()):
            raise AlreadyInRoomError(room_id)

        deliveries: List[Delivery] = []
        previous = self._pending.pop(connection_id, None)
        if previous is not None:
            deliveries.extend(self._cancellation_notice(previous, "superseded"))

        room = self._rooms.get(room_id)
        if room is None or not room.is_occupied:
            room = room or self._create_room(room_id)
            room.reserved_host_id = connection_id
            self._grant(connection_id, room_id)
            logger.info(f"{connection_id} admitted as host of {room_id}", extra={"room_id": room_id})
            deliveries.append(
                Delivery(connection_id, SignalingMessage.create_join_approved(room_id, user_id, display_name, True))
            )
            return AdmissionResult(AdmissionStatus.ADMITTED_AS_HOST), deliveries

        if claims_host_priority and self.honor_host_claims:
            becomes_host = room.authority is None
            if becomes_host:
                room.reserved_host_id = connection_id
            self._grant(connection_id, room_id)
            logger.info(
                f"{connection_id} admitted to {room_id} by host priority claim (host={becomes_host})",
                extra={"room_id": room_id},
            )
            deliveries.append(
                Delivery(
                    connection_id,
                    SignalingMessage.create_join_approved(room_id, user_id, display_name, becomes_host),
                )
            )
            status = AdmissionStatus.ADMITTED_AS_HOST if becomes_host else AdmissionStatus.ADMITTED
            return AdmissionResult(status), deliveries

        authority = room.authority
        if authority is None:
            logger.warning(
                f"Room {room_id} has participants but no host; rejecting {connection_id}",
                extra={"room_id": room_id},
            )
            error = HostUnavailableError(room_id)
            deliveries.append(rejection(connection_id, error, room_id))
            return AdmissionResult(AdmissionStatus.REJECTED, error.message), deliveries

        self._pending[connection_id] = PendingJoinRequest(
            requesting_connection_id=connection_id,
            room_id=room_id,
            user_id=user_id,
            display_name=display_name,
        )
        logger.info(f"{connection_id} waiting for approval in {room_id}", extra={"room_id": room_id})
        deliveries.append(
            Delivery(
                authority,
                SignalingMessage.create_join_request_received(connection_id, user_id, display_name, room_id),
            )
        )
        deliveries.append(Delivery(connection_id, SignalingMessage.create_waiting_for_approval(room_id)))
        return AdmissionResult(AdmissionStatus.PENDING_APPROVAL), deliveries

    def resolve_join_request(self, host_connection_id: str, requester_connection_id: str, approved: bool) -> List[Delivery]:
        """
        Apply the host's decision on a pending request.

        Resolving a request that no longer exists is a no-op.

        Raises:
            NotHostError: The caller is not the host of the request's room
        """
        request = self._pending.get(requester_connection_id)
        if request is None:
            logger.debug(f"Ignoring resolution of vanished request {requester_connection_id}")
            return []

        room = self._rooms.get(request.room_id)
        if room is None or room.authority != host_connection_id:
            raise NotHostError(host_connection_id, request.room_id)

        del self._pending[requester_connection_id]
        if not approved:
            logger.info(f"{requester_connection_id} declined for {request.room_id}", extra={"room_id": request.room_id})
            return [rejection(requester_connection_id, HostDeclinedError(request.room_id), request.room_id)]

        self._grant(requester_connection_id, request.room_id)
        logger.info(f"{requester_connection_id} approved for {request.room_id}", extra={"room_id": request.room_id})
        message = SignalingMessage.create_join_approved(request.room_id, request.user_id, request.display_name, False)
        return [Delivery(requester_connection_id, message)]

    def expire_join_request(self, request: PendingJoinRequest) -> List[Delivery]:
        """Reject a request that waited too long, unless it was already resolved."""
        if self._pending.get(request.requesting_connection_id) is not request:
            return []
        del self._pending[request.requesting_connection_id]
        logger.info(
            f"Join request of {request.requesting_connection_id} for {request.room_id} expired",
            extra={"room_id": request.room_id},
        )
        deliveries = [
            rejection(request.requesting_connection_id, JoinRequestExpiredError(request.room_id), request.room_id)
        ]
        deliveries.extend(self._cancellation_notice(request, "expired"))
        return deliveries

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def finalize_join(self, connection_id: str, room_id: str, user_id: str, display_name: str) -> List[Delivery]:
        """
        Add an admitted connection to its room.

        The other participants learn about the arrival first; the newcomer then
        receives the roster of everyone else.

        Raises:
            AlreadyInRoomError: The connection is already in the room
            NotAdmittedError: No admission was granted for this room
        """
        if room_id in self._memberships.get(connection_id, ()):
            raise AlreadyInRoomError(room_id)
        grants = self._grants.get(connection_id, set())
        if room_id not in grants:
            raise NotAdmittedError(room_id)
        grants.discard(room_id)
        if not grants:
            self._grants.pop(connection_id, None)

        room = self._rooms.get(room_id) or self._create_room(room_id)
        others = list(room.participants.values())
        participant = Participant(connection_id=connection_id, user_id=user_id, display_name=display_name)
        room.participants[connection_id] = participant
        self._memberships.setdefault(connection_id, set()).add(room_id)

        deliveries: List[Delivery] = []
        for other in others:
            deliveries.append(
                Delivery(
                    other.connection_id,
                    SignalingMessage.create_user_connected(room_id, connection_id, user_id, display_name),
                )
            )
        deliveries.append(
            Delivery(
                connection_id,
                SignalingMessage.create_room_participants(room_id, [p.to_info() for p in others]),
            )
        )

        if room.host_connection_id is None:
            reserved_for_joiner = room.reserved_host_id == connection_id
            room.host_connection_id = connection_id
            if reserved_for_joiner or room.reserved_host_id is None:
                room.reserved_host_id = None
            if not reserved_for_joiner:
                deliveries.extend(self._announce_new_host(room))
            logger.info(f"{connection_id} is host of {room_id}", extra={"room_id": room_id})
        elif room.reserved_host_id == connection_id:
            room.reserved_host_id = None
            logger.info(
                f"{connection_id} held a host reservation for {room_id} but {room.host_connection_id} got there first",
                extra={"room_id": room_id},
            )

        logger.info(
            f"{connection_id} joined {room_id}",
            extra={"room_id": room_id, "participant_count": len(room.participants)},
        )
        return deliveries

    def leave(self, connection_id: str, room_id: Optional[str] = None) -> List[Delivery]:
        """
        Remove a connection from one room, or from every room when room_id is None.

        Empty rooms are destroyed; a departing host is replaced by the elected
        remaining participant; the connection's pending request and unused
        admissions are dropped; remaining participants learn of the departure.
        """
        deliveries: List[Delivery] = []

        request = self._pending.get(connection_id)
        if request is not None and (room_id is None or request.room_id == room_id):
            del self._pending[connection_id]
            deliveries.extend(self._cancellation_notice(request, "requester-left"))

        grants = self._grants.get(connection_id)
        if grants:
            if room_id is None:
                grants.clear()
            else:
                grants.discard(room_id)
            if not grants:
                self._grants.pop(connection_id, None)

        affected = set(self._memberships.get(connection_id, ()))
        affected.update(r.room_id for r in self._rooms.values() if r.reserved_host_id == connection_id)
        if room_id is not None:
            affected &= {room_id}

        for affected_id in sorted(affected):
            room = self._rooms.get(affected_id)
            if room is not None:
                deliveries.extend(self._remove_from_room(room, connection_id))
        return deliveries

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _create_room(self, room_id: str) -> Room:
        room = Room(room_id=room_id)
        self._rooms[room_id] = room
        logger.debug(f"Room created: {room_id}", extra={"room_id": room_id})
        return room

    def _grant(self, connection_id: str, room_id: str) -> None:
        self._grants.setdefault(connection_id, set()).add(room_id)

    def _remove_from_room(self, room: Room, connection_id: str) -> List[Delivery]:
        participant = room.participants.pop(connection_id, None)
        memberships = self._memberships.get(connection_id)
        if memberships is not None:
            memberships.discard(room.room_id)
            if not memberships:
                del self._memberships[connection_id]
        if room.reserved_host_id == connection_id:
            room.reserved_host_id = None
        was_host = room.host_connection_id == connection_id
        if was_host:
            room.host_connection_id = None

        deliveries: List[Delivery] = []
        if not room.participants:
            if room.reserved_host_id is None:
                deliveries.extend(self._destroy_room(room))
            return deliveries

        if was_host:
            room.host_connection_id = self._elect_host(room.participants)
            logger.info(
                f"Host of {room.room_id} left; promoted {room.host_connection_id}",
                extra={"room_id": room.room_id},
            )
            deliveries.extend(self._announce_new_host(room))

        if participant is not None:
            notice = SignalingMessage.create_user_disconnected(room.room_id, connection_id, participant.user_id)
            deliveries.extend(Delivery(other_id, notice) for other_id in room.participants)
        return deliveries

    def _announce_new_host(self, room: Room) -> List[Delivery]:
        host_id = room.host_connection_id
        deliveries = [Delivery(host_id, SignalingMessage.create_you_are_host(room.room_id))]
        for request in self.pending_for_room(room.room_id):
            deliveries.append(
                Delivery(
                    host_id,
                    SignalingMessage.create_join_request_received(
                        request.requesting_connection_id, request.user_id, request.display_name, room.room_id
                    ),
                )
            )
        return deliveries

    def _destroy_room(self, room: Room) -> List[Delivery]:
        del self._rooms[room.room_id]
        deliveries = []
        for request in self.pending_for_room(room.room_id):
            del self._pending[request.requesting_connection_id]
            deliveries.append(
                rejection(request.requesting_connection_id, HostUnavailableError(room.room_id), room.room_id)
            )
        logger.info(f"Room destroyed: {room.room_id}", extra={"room_id": room.room_id})
        return deliveries

    def _cancellation_notice(self, request: PendingJoinRequest, reason: str) -> List[Delivery]:
        room = self._rooms.get(request.room_id)
        if room is None or room.authority is None:
            return []
        return [
            Delivery(
                room.authority,
                SignalingMessage.create_join_request_cancelled(
                    request.requesting_connection_id, reason, request.room_id
                ),
            )
        ]
