"""
Signaling Router

FastAPI router providing the WebSocket signaling endpoint and the REST API
for ICE configuration and room introspection.
"""

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from starlette.requests import HTTPConnection

from syncmeet.managers.logging_manager import get_logger
from syncmeet.webrtc.errors import RoomNotFoundError
from syncmeet.webrtc.hub import SignalingHub, signaling_hub
from syncmeet.webrtc.ice import build_webrtc_config
from syncmeet.webrtc.schemas import RoomSummary, WebRtcConfig

logger = get_logger(prefix="[Signaling-Router]")

router = APIRouter(prefix="/signaling", tags=["Signaling"])


def get_hub(connection: HTTPConnection) -> SignalingHub:
    """The hub bound to the application, or the process-wide instance."""
    return getattr(connection.app.state, "signaling_hub", signaling_hub)


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for meeting signaling.

    **Message Flow**:
    1. Server accepts the socket and sends `connected{connectionId}`
    2. Client sends `request-join`, then `join-room` once approved
    3. Negotiation messages are relayed to their `target`; room signals are
       broadcast to the room
    4. Closing the socket runs the departure path (host promotion, room cleanup)
    """
    hub = get_hub(websocket)
    await websocket.accept()
    connection_id = await hub.connect(websocket)
    try:
        while True:
            text = await websocket.receive_text()
            await hub.handle_text(connection_id, text)
    except WebSocketDisconnect:
        logger.info(f"WebSocket closed by client {connection_id}")
    except Exception as e:
        logger.error(f"WebSocket error for {connection_id}: {e}", exc_info=True)
    finally:
        await hub.disconnect(connection_id)


@router.get("/config", response_model=WebRtcConfig, response_model_by_alias=True)
async def get_webrtc_config():
    """
    Get WebRTC configuration including STUN/TURN servers.

    Clients should call this endpoint before creating peer connections.
    """
    config = build_webrtc_config()
    logger.debug("Provided WebRTC config", extra={"ice_server_count": len(config.ice_servers)})
    return config


@router.get("/rooms/{room_id}", response_model=RoomSummary, response_model_by_alias=True)
async def get_room(room_id: str, request: Request):
    """Summary of one room: participant count, host and queued requests."""
    hub = get_hub(request)
    room = hub.directory.get_room(room_id)
    if room is None:
        error = RoomNotFoundError(room_id)
        raise HTTPException(status_code=error.status_code, detail=error.to_dict())
    return hub.directory.summary(room)


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint.

    Reports `degraded` when any room breaks the host invariant; the service
    keeps serving in that case.
    """
    hub = get_hub(request)
    violations = hub.directory.consistency_violations()
    health = {"status": "degraded" if violations else "healthy", **hub.get_stats()}
    if violations:
        health["violations"] = violations

    status_code_map = {
        "healthy": status.HTTP_200_OK,
        "degraded": status.HTTP_200_OK,  # Still operational
    }
    return JSONResponse(status_code=status_code_map[health["status"]], content=health)


@router.get("/stats")
async def get_stats(request: Request):
    """Per-room statistics."""
    hub = get_hub(request)
    return {
        **hub.get_stats(),
        "room_details": [
            hub.directory.summary(room).model_dump(by_alias=True) for room in hub.directory.rooms()
        ],
    }
