"""
Real-Time Communication
Live log viewers over WebSocket, sharing the single upstream log subscription
"""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from typing import Set
import json
import logging

from errors import DashboardError
from log_session import fetch_snapshot

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


# ==================== WebSocket Connection Manager ====================

class ConnectionManager:
    def __init__(self):
        self.active_connections: Set[WebSocket] = set()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.add(websocket)

    def subscribe(self, websocket: WebSocket):
        self.active_connections.add(websocket)

    def disconnect(self, websocket: WebSocket):
        self.active_connections.discard(websocket)

    async def broadcast(self, message: dict):
        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.debug(f"Dropping log viewer after failed send: {e}")
                self.disconnect(connection)

    def __len__(self):
        return len(self.active_connections)


# ==================== WebSocket Endpoints ====================

async def _send_snapshot(websocket: WebSocket, message: dict):
    services = websocket.app.state.services
    tail = message.get("tail")
    try:
        tail = int(tail) if tail is not None else None
    except (TypeError, ValueError):
        await websocket.send_json({"type": "error", "message": "tail must be an integer"})
        return
    try:
        snapshot = await fetch_snapshot(services.docker_manager, tail, services.max_frame_bytes)
    except DashboardError as e:
        await websocket.send_json({"type": "error", "message": str(e)})
        return
    for item in snapshot.framed():
        await websocket.send_json(item)


@router.websocket("/logs/ws")
async def logs_websocket(websocket: WebSocket):
    """Attach to the live log fan-out; viewers never open their own Docker stream"""
    manager: ConnectionManager = websocket.app.state.services.connections
    await manager.connect(websocket)
    try:
        while True:
            try:
                message = json.loads(await websocket.receive_text())
            except ValueError:
                await websocket.send_json({'type': 'error', 'message': 'invalid JSON'})
                continue
            if not isinstance(message, dict):
                continue

            if message.get('type') == 'ping':
                await websocket.send_json({'type': 'pong'})

            elif message.get('type') == 'refresh':
                await _send_snapshot(websocket, message)

            elif message.get('type') == 'subscribe':
                manager.subscribe(websocket)
                await websocket.send_json({'type': 'subscribed'})

            elif message.get('type') == 'unsubscribe':
                manager.disconnect(websocket)
                await websocket.send_json({'type': 'unsubscribed'})

    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket)
