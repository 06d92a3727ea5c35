"""WebSocket endpoint: scan requests in, scan progress out."""

import json
import uuid

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
import structlog

from overachiever.auth.jwt import verify_token
from overachiever.sync.models import ScanReason

logger = structlog.get_logger()

router = APIRouter()


def _as_user_id(value: object) -> int | None:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(...),
) -> None:
    """Single WebSocket endpoint with JWT authentication.

    Protocol:
        Client -> Server:
            {"action": "start_scan", "user_id": 7656..., "force": false}
            {"action": "cancel_scan", "user_id": 7656...}
            {"action": "ping"}

        Server -> Client:
            {"type": "scan_queued", "ticket_id": "...", "outcome": "admitted"}
            {"ticket_id": "...", "type": "progress" | "result" | "error", "payload": {...}}
            {"type": "pong"}
            {"type": "error", "message": "..."}
    """
    # Authenticate via JWT token in query param
    try:
        payload = verify_token(token, expected_type="access")
        user_id = int(payload["sub"])
    except Exception as e:
        await websocket.close(code=4001, reason=f"Authentication failed: {e}")
        return

    hub = websocket.app.state.hub
    engine = websocket.app.state.sync_engine

    conn_id = str(uuid.uuid4())
    if not await hub.connect(websocket, conn_id, user_id):
        return

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                await hub.send_to_connection(conn_id, {"type": "error", "message": "Invalid JSON"})
                continue
            if not isinstance(msg, dict):
                await hub.send_to_connection(conn_id, {"type": "error", "message": "Expected a JSON object"})
                continue

            action = msg.get("action")

            if action == "ping":
                await hub.send_to_connection(conn_id, {"type": "pong"})
                continue

            if action not in ("start_scan", "cancel_scan"):
                await hub.send_to_connection(conn_id, {"type": "error", "message": f"Unknown action: {action}"})
                continue

            requested = _as_user_id(msg.get("user_id", user_id))
            if requested != user_id:
                await hub.send_to_connection(
                    conn_id, {"type": "error", "message": "user_id does not match the authenticated user"}
                )
                continue

            if action == "start_scan":
                admission = engine.request_scan(
                    user_id,
                    ScanReason.MANUAL,
                    subscriber=conn_id,
                    force=bool(msg.get("force", False)),
                )
                await hub.send_to_connection(
                    conn_id,
                    {
                        "type": "scan_queued",
                        "ticket_id": admission.ticket.id if admission.ticket else None,
                        "outcome": admission.outcome.value,
                        "reason": admission.reason,
                    },
                )

            else:
                try:
                    ticket = engine.cancel(user_id)
                except (LookupError, ValueError) as e:
                    await hub.send_to_connection(conn_id, {"type": "error", "message": str(e)})
                else:
                    await hub.send_to_connection(
                        conn_id, {"type": "cancel_requested", "ticket_id": ticket.id}
                    )

    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("ws_error", conn_id=conn_id)
    finally:
        await hub.disconnect(conn_id)
        engine.detach(conn_id)
