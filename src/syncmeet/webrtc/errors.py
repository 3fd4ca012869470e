"""
Signaling Error Handling

Error codes and structured error responses for admission, relay and
negotiation failures. Every error is local to the connection (or peer link)
that caused it; none of them is fatal to the server or to the session.
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class SignalingErrorCode(str, Enum):
    """Standard error codes for signaling operations."""

    # Admission (403, 404, 409)
    HOST_UNAVAILABLE = "host_unavailable"
    HOST_DECLINED = "host_declined"
    JOIN_REQUEST_EXPIRED = "join_request_expired"
    NOT_HOST = "not_host"
    NOT_ADMITTED = "not_admitted"
    ALREADY_IN_ROOM = "already_in_room"
    ROOM_NOT_FOUND = "room_not_found"

    # Rate Limiting (429)
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"

    # Protocol (400, 422)
    INVALID_MESSAGE_TYPE = "invalid_message_type"
    INVALID_PAYLOAD = "invalid_payload"

    # Media & Negotiation (client side)
    MEDIA_UNAVAILABLE = "media_unavailable"
    CAMERA_UNAVAILABLE = "camera_unavailable"
    SCREEN_SHARE_UNAVAILABLE = "screen_share_unavailable"
    NEGOTIATION_FAILED = "negotiation_failed"

    # General (500)
    INTERNAL_ERROR = "internal_error"


class SignalingErrorResponse(BaseModel):
    """Structured error response for signaling operations."""

    error_code: SignalingErrorCode = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
    retry_after: Optional[int] = Field(None, description="Seconds to wait before retrying (for rate limits)")
    recovery_suggestion: Optional[str] = Field(None, description="Suggested action to resolve the error")


class SignalingError(Exception):
    """Base exception for signaling errors."""

    def __init__(
        self,
        error_code: SignalingErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        retry_after: Optional[int] = None,
        recovery_suggestion: Optional[str] = None,
        status_code: int = 400,
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        self.retry_after = retry_after
        self.recovery_suggestion = recovery_suggestion
        self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> SignalingErrorResponse:
        """Convert exception to error response model."""
        return SignalingErrorResponse(
            error_code=self.error_code,
            message=self.message,
            details=self.details or None,
            retry_after=self.retry_after,
            recovery_suggestion=self.recovery_suggestion,
        )

    def to_dict(self) -> dict:
        """Convert exception to dictionary."""
        return self.to_response().model_dump(mode="json", exclude_none=True)


# Admission errors

class HostUnavailableError(SignalingError):
    """The room has participants but nobody can approve the request."""

    def __init__(self, room_id: str):
        super().__init__(
            error_code=SignalingErrorCode.HOST_UNAVAILABLE,
            message="Room host is no longer available.",
            details={"room_id": room_id},
            recovery_suggestion="Try joining again in a moment",
            status_code=409,
        )


class HostDeclinedError(SignalingError):
    def __init__(self, room_id: str):
        super().__init__(
            error_code=SignalingErrorCode.HOST_DECLINED,
            message="The host declined your request to join.",
            details={"room_id": room_id},
            status_code=403,
        )


class JoinRequestExpiredError(SignalingError):
    """Nobody answered the join request in time."""

    def __init__(self, room_id: str):
        super().__init__(
            error_code=SignalingErrorCode.JOIN_REQUEST_EXPIRED,
            message="Your request to join timed out.",
            details={"room_id": room_id},
            recovery_suggestion="Ask the host to watch for your request and try again",
            status_code=408,
        )


class NotHostError(SignalingError):
    """A non-host tried to resolve a join request."""

    def __init__(self, connection_id: str, room_id: str):
        super().__init__(
            error_code=SignalingErrorCode.NOT_HOST,
            message="Only the room host can resolve join requests.",
            details={"connection_id": connection_id, "room_id": room_id},
            status_code=403,
        )


class NotAdmittedError(SignalingError):
    """join-room without a prior admission for that room."""

    def __init__(self, room_id: str):
        super().__init__(
            error_code=SignalingErrorCode.NOT_ADMITTED,
            message=f"Not admitted to room {room_id}",
            details={"room_id": room_id},
            recovery_suggestion="Send request-join and wait for join-approved",
            status_code=403,
        )


class AlreadyInRoomError(SignalingError):
    def __init__(self, room_id: str):
        super().__init__(
            error_code=SignalingErrorCode.ALREADY_IN_ROOM,
            message=f"Already a participant of room {room_id}",
            details={"room_id": room_id},
            status_code=409,
        )


class RoomNotFoundError(SignalingError):
    """Room not found error."""

    def __init__(self, room_id: str):
        super().__init__(
            error_code=SignalingErrorCode.ROOM_NOT_FOUND,
            message=f"Room not found: {room_id}",
            details={"room_id": room_id},
            recovery_suggestion="Verify the room ID is correct or create a new room",
            status_code=404,
        )


class RateLimitError(SignalingError):
    """Rate limit exceeded error."""

    def __init__(self, limit_type: str, current: int, max_allowed: int, retry_after: int):
        super().__init__(
            error_code=SignalingErrorCode.RATE_LIMIT_EXCEEDED,
            message=f"Rate limit exceeded for {limit_type}",
            details={
                "limit_type": limit_type,
                "current": current,
                "max_allowed": max_allowed,
                "retry_after": retry_after,
            },
            retry_after=retry_after,
            recovery_suggestion=f"Wait {retry_after} seconds before retrying",
            status_code=429,
        )


class InvalidPayloadError(SignalingError):
    """Malformed frame or payload."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            error_code=SignalingErrorCode.INVALID_PAYLOAD,
            message=message,
            details=details,
            status_code=422,
        )


class InvalidMessageTypeError(SignalingError):
    def __init__(self, message_type: str):
        super().__init__(
            error_code=SignalingErrorCode.INVALID_MESSAGE_TYPE,
            message=f"Message type not accepted from clients: {message_type}",
            details={"type": message_type},
            status_code=400,
        )


# Client-side errors

class MediaAcquisitionError(SignalingError):
    """Camera, microphone or display capture denied or unavailable."""

    def __init__(
        self,
        message: str,
        error_code: SignalingErrorCode = SignalingErrorCode.MEDIA_UNAVAILABLE,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            error_code=error_code,
            message=message,
            details=details,
            recovery_suggestion="Check device permissions and that no other application holds the device",
            status_code=503,
        )


class NegotiationError(SignalingError):
    """SDP or ICE failure on a single peer link."""

    def __init__(self, remote_connection_id: str, message: str):
        super().__init__(
            error_code=SignalingErrorCode.NEGOTIATION_FAILED,
            message=message,
            details={"remote_connection_id": remote_connection_id},
            status_code=500,
        )

