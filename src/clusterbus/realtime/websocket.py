"""WebSocket endpoint — attach every client socket to the dispatcher.

Learn: Each client connects to /ws and drives its own subscriptions:

  → {"type": "subscribe", "event": "user_20ea5dc5"}
  ← {"type": "subscribed", "event": "user_20ea5dc5"}
  ← {"type": "event", "event": "user_20ea5dc5"}      (on every publish)
  → {"type": "unsubscribe", "event": "user_20ea5dc5"}
  ← {"type": "unsubscribed", "event": "user_20ea5dc5"}
  → {"type": "ping"}
  ← {"type": "pong"}

The socket itself is the attached context, so one callback serves every
client: it is invoked with the socket as receiver. On disconnect the
socket is detached, which closes its subscriber connection.
"""

import json

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

logger = structlog.get_logger()
router = APIRouter()


async def forward_event(websocket: WebSocket, event: str) -> None:
    """Dispatcher callback: tell the client which event fired."""
    if websocket.client_state != WebSocketState.CONNECTED:
        return
    await websocket.send_text(json.dumps({"type": "event", "event": event}))


@router.websocket("/ws")
async def events_websocket(websocket: WebSocket):
    """Let a client subscribe to cluster events over a WebSocket."""
    dispatcher = websocket.app.state.dispatcher
    await websocket.accept()
    registry = dispatcher.attach(websocket)

    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                continue
            if not isinstance(msg, dict):
                continue

            kind = msg.get("type")
            event = msg.get("event")
            if kind == "ping":
                await websocket.send_text(json.dumps({"type": "pong"}))
            elif kind == "subscribe" and isinstance(event, str) and event:
                registry.subscribe(event, forward_event)
                await websocket.send_text(json.dumps({"type": "subscribed", "event": event}))
            elif kind == "unsubscribe" and isinstance(event, str) and event:
                registry.unsubscribe(event, forward_event)
                await websocket.send_text(json.dumps({"type": "unsubscribed", "event": event}))
    except WebSocketDisconnect:
        pass
    finally:
        dispatcher.detach(websocket)
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()
