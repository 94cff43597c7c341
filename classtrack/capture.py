from fastapi import APIRouter, WebSocket, WebSocketDisconnect, HTTPException
from classtrack.config import settings
from classtrack.models import CaptureRequest, ScanStartRequest
from classtrack.state import service
from classtrack.ws_manager import manager
import uuid
from datetime import datetime, timezone
from typing import Dict, Any, Optional
import logging

router = APIRouter()
logger = logging.getLogger("classtrack")

# In-memory storage for active scan sessions
# token -> { "class_id": str, "created_at": datetime, "busy": bool }
scan_sessions: Dict[str, Dict[str, Any]] = {}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _cleanup_sessions() -> None:
    if not scan_sessions:
        return

    now = _now()
    expired = [
        token
        for token, data in scan_sessions.items()
        if (now - data["created_at"]).total_seconds() > settings.SCAN_SESSION_TTL
    ]
    for token in expired:
        logger.info("Expiring scan session %s", token)
        scan_sessions.pop(token, None)


def get_scan_session(token: str) -> Optional[Dict[str, Any]]:
    _cleanup_sessions()
    return scan_sessions.get(token)


def is_scan_token_active(token: str) -> bool:
    return get_scan_session(token) is not None


async def notify_scan_watchers(token: str, payload: Dict[str, Any]) -> None:
    if get_scan_session(token) is None:
        raise ValueError("Invalid or expired scan token")
    await manager.send_message(payload, token)


@router.post("/scan/start")
async def start_scan_session(request: ScanStartRequest):
    if service.snapshot.get_class(request.class_id) is None:
        raise HTTPException(status_code=404, detail=f"Class '{request.class_id}' not found")

    _cleanup_sessions()
    token = str(uuid.uuid4())
    scan_sessions[token] = {
        "class_id": request.class_id,
        "created_at": _now(),
        "busy": False,
    }
    logger.info("Scan session %s started for class %s", token, request.class_id)
    return {"token": token, "class_id": request.class_id, "expires_in": settings.SCAN_SESSION_TTL}


@router.get("/scan/session/{token}")
async def fetch_scan_session(token: str):
    session = get_scan_session(token)
    if session is None:
        raise HTTPException(status_code=404, detail="Invalid or expired session")
    return {"class_id": session["class_id"], "busy": session["busy"]}


@router.websocket("/ws/scan/{token}")
async def websocket_endpoint(websocket: WebSocket, token: str):
    """
    The operator's screen connects here to receive uploaded captures and scan results.
    """
    logger.info(f"WebSocket connection attempt for token: {token}")
    if get_scan_session(token) is None:
        logger.warning(f"WebSocket rejected - token {token} not found")
        await websocket.close(code=4003)  # Forbidden/Invalid
        return

    await manager.connect(websocket, token)
    try:
        while True:
            # Keep alive / Heartbeat
            msg = await websocket.receive_text()
            logger.debug(f"WebSocket heartbeat received: {msg}")
    except WebSocketDisconnect:
        manager.disconnect(token, websocket)
    except Exception as e:
        logger.error(f"WebSocket error for token {token}: {e}")
        manager.disconnect(token, websocket)


@router.post("/scan/upload/{token}")
async def upload_capture(token: str, request: CaptureRequest):
    """
    A phone camera uploads a capture here; it is relayed to the operator's screen.
    """
    session = get_scan_session(token)
    if session is None:
        logger.warning(f"Upload failed - token {token} not found")
        raise HTTPException(status_code=404, detail="Session expired or invalid")
    if not request.image.strip():
        raise HTTPException(status_code=422, detail="Capture is empty")

    delivered = await manager.send_message({
        "type": "image_received",
        "image": request.image,
        "timestamp": _now().isoformat(),
    }, token)
    logger.info(f"Capture relayed to {delivered} watcher(s) for token: {token}")

    return {"status": "success", "delivered": delivered}


@router.get("/scan/validate/{token}")
async def validate_token(token: str):
    session = get_scan_session(token)
    if session is None:
        logger.warning(f"Token {token} not found in active sessions")
        raise HTTPException(status_code=404, detail="Invalid token")
    remaining = settings.SCAN_SESSION_TTL - int((_now() - session["created_at"]).total_seconds())
    return {"valid": True, "expires_in": max(0, remaining)}


@router.delete("/scan/session/{token}")
async def end_scan_session(token: str):
    session = scan_sessions.pop(token, None)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")

    manager.disconnect(token)
    # Reference embeddings are only worth keeping while a session is scanning
    clear_cache = getattr(service.oracle, "clear_cache", None)
    if clear_cache is not None:
        clear_cache()
    logger.info("Scan session %s ended by operator", token)
    return {"status": "ended"}
