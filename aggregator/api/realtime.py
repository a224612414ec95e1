# aggregator/api/realtime.py
from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from aggregator.services.broadcast import BroadcastGateway, event_frame

logger = logging.getLogger("token_aggregator.broadcast")

router = APIRouter(tags=["realtime"])


async def _handle_frame(gateway: BroadcastGateway, client_id: str, websocket: WebSocket, text: str) -> None:
    try:
        frame: Any = json.loads(text)
    except ValueError:
        await websocket.send_json(event_frame("error", {"message": "frames must be JSON"}))
        return

    if not isinstance(frame, dict):
        await websocket.send_json(event_frame("error", {"message": "frames must be JSON objects"}))
        return

    event = frame.get("event")
    try:
        if event == "subscribe":
            topic = gateway.join(client_id, frame.get("data"))
            await websocket.send_json(event_frame("subscribed", {"topic": topic}))
        elif event == "unsubscribe":
            topic = gateway.leave(client_id, frame.get("data"))
            await websocket.send_json(event_frame("unsubscribed", {"topic": topic}))
        else:
            await websocket.send_json(event_frame("error", {"message": f"unknown event: {event}"}))
    except ValueError as e:
        await websocket.send_json(event_frame("error", {"message": str(e)}))


@router.websocket("/ws")
async def realtime(websocket: WebSocket) -> None:
    """
    Push channel for ``priceUpdate`` events.

    Client frames: {"event": "subscribe" | "unsubscribe", "data": "<symbol>"}
    """
    gateway: BroadcastGateway = websocket.app.state.gateway
    await websocket.accept()
    client_id = gateway.connect(websocket)
    try:
        while True:
            text = await websocket.receive_text()
            await _handle_frame(gateway, client_id, websocket, text)
    except WebSocketDisconnect:
        pass
    except KeyError:
        # the gateway already dropped this client after a failed push
        logger.info("Closing socket of dropped client | id=%s", client_id)
        try:
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        except (RuntimeError, OSError) as e:
            logger.debug("socket already closed | id=%s | err=%s", client_id, e)
    finally:
        gateway.disconnect(client_id)
