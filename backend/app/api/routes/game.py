"""
WebSocket API for real-time lobby state and player commands.
"""

import json
import logging
from typing import Callable, Dict, Optional, Set
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query

from app.core.game_service import CommandError, get_game_service
from app.core.join_code import build_join_url, is_valid_room_code
from app.core.lobby import lobby_path
from app.core.lobby_manager import LobbyFullError, LobbyNotFoundError
from app.core.store import StoreError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/game", tags=["game"])

CLOSE_LOBBY_NOT_FOUND = 4404
CLOSE_LOBBY_FULL = 4409


class ConnectionManager:
    """
    Manages WebSocket connections per lobby.

    The first connection to a lobby subscribes to its store subtree; every
    change is pushed to all of the lobby's sockets as a `lobby_state`
    message. The subscription is dropped with the last connection.
    Each socket remembers the player it belongs to.
    """

    def __init__(self):
        self.active_connections: Dict[str, Set[WebSocket]] = {}
        self._unsubscribers: Dict[str, Callable[[], None]] = {}
        self._players: Dict[WebSocket, str] = {}

    async def connect(self, websocket: WebSocket, room_code: str, player_id: Optional[str] = None) -> None:
        """Register an accepted WebSocket connection."""
        if room_code not in self.active_connections:
            self.active_connections[room_code] = set()
            service = get_game_service()

            async def on_change(snapshot):
                await self.broadcast_state(room_code)

            self._unsubscribers[room_code] = service.store.subscribe(lobby_path(room_code), on_change)

        self.active_connections[room_code].add(websocket)
        if player_id is not None:
            self._players[websocket] = player_id

    def disconnect(self, websocket: WebSocket, room_code: str) -> None:
        """Remove a WebSocket connection."""
        self._players.pop(websocket, None)
        if room_code in self.active_connections:
            self.active_connections[room_code].discard(websocket)

            # Clean up empty rooms
            if not self.active_connections[room_code]:
                del self.active_connections[room_code]
                unsubscribe = self._unsubscribers.pop(room_code, None)
                if unsubscribe is not None:
                    unsubscribe()

    def connection_count(self, room_code: str) -> int:
        return len(self.active_connections.get(room_code, ()))

    def is_player_connected(self, room_code: str, player_id: str) -> bool:
        """Whether the player still has an open socket in the lobby."""
        return any(
            self._players.get(connection) == player_id
            for connection in self.active_connections.get(room_code, ())
        )

    async def broadcast(self, message: dict, room_code: str) -> None:
        """Broadcast a message to all connections in a lobby."""
        if room_code not in self.active_connections:
            return

        # Convert message to JSON once
        json_message = json.dumps(message)

        # Send to all connected clients
        disconnected = []
        for connection in list(self.active_connections[room_code]):
            try:
                await connection.send_text(json_message)
            except Exception as e:
                logger.debug(f"Dropping connection in lobby {room_code}: {e}")
                disconnected.append(connection)

        # Remove disconnected clients
        for connection in disconnected:
            self.disconnect(connection, room_code)

    async def broadcast_state(self, room_code: str) -> None:
        """Push the current lobby view to every connection."""
        view = await get_game_service().lobby_view(room_code)
        if view is None:
            await self.broadcast({"type": "lobby_closed", "data": {"room_code": room_code}}, room_code)
            return
        await self.broadcast({"type": "lobby_state", "data": view}, room_code)


manager = ConnectionManager()


async def _reject(websocket: WebSocket, code: int, message: str) -> None:
    await websocket.send_json({"type": "error", "data": {"message": message}})
    await websocket.close(code=code)


@router.websocket("/ws/{room_code}")
async def lobby_websocket(
    websocket: WebSocket,
    room_code: str,
    uid: Optional[str] = Query(default=None),
    name: Optional[str] = Query(default=None),
):
    """
    WebSocket endpoint for one player in one lobby.

    Connect with ?uid=<player id>&name=<display name>. Without uid the
    player joins as a new member.

    Message format (client -> server):
    {"type": "vote", "candidateId": "..."}
    {"type": "input", "puzzle": "keypad", "action": "append", "char": "2"}
    {"type": "file", "action": "open", "path": "/Core/SystemLogs/legacy_user_error.log"}

    Message format (server -> client):
    {"type": "connected", "data": {"room_code", "player_id", "join_url"}}
    {"type": "lobby_state", "data": {...lobby view...}}
    {"type": "ack", "data": {"command": "vote", "result": ...}}
    {"type": "error", "data": {"message": "..."}}
    """
    service = get_game_service()
    room_code = room_code.upper()
    await websocket.accept()

    name = (name or "").strip() or "Anonymous"
    if not is_valid_room_code(room_code):
        await _reject(websocket, CLOSE_LOBBY_NOT_FOUND, f"Lobby {room_code} not found")
        return

    try:
        if uid:
            await service.lobbies.rejoin_lobby(room_code, uid, name)
            player_id = uid
        else:
            player_id = await service.lobbies.join_lobby(room_code, name)
    except LobbyNotFoundError:
        logger.info(f"WebSocket for unknown lobby {room_code} rejected")
        await _reject(websocket, CLOSE_LOBBY_NOT_FOUND, f"Lobby {room_code} not found")
        return
    except LobbyFullError as e:
        await _reject(websocket, CLOSE_LOBBY_FULL, str(e))
        return

    await manager.connect(websocket, room_code, player_id)
    logger.info(f"Player {player_id} connected to lobby {room_code}")

    try:
        await websocket.send_json({
            "type": "connected",
            "data": {
                "room_code": room_code,
                "player_id": player_id,
                "join_url": build_join_url(room_code, player_id, name),
            },
        })
        view = await service.lobby_view(room_code)
        await websocket.send_json({"type": "lobby_state", "data": view})

        # Listen for player commands
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "data": {"message": "Invalid JSON"}})
                continue

            try:
                result = await service.dispatch(room_code, player_id, message)
            except CommandError as e:
                await websocket.send_json({"type": "error", "data": {"message": str(e)}})
                continue
            except StoreError as e:
                logger.error(f"Store error handling {message.get('type')} in lobby {room_code}: {e}")
                await websocket.send_json({"type": "error", "data": {"message": "Temporarily unavailable, retry", "retry": True}})
                continue
            except LobbyNotFoundError:
                await _reject(websocket, CLOSE_LOBBY_NOT_FOUND, f"Lobby {room_code} no longer exists")
                break

            await websocket.send_json({
                "type": "ack",
                "data": {"command": message.get("type"), "result": result},
            })

    except WebSocketDisconnect:
        logger.info(f"Player {player_id} disconnected from lobby {room_code}")
        manager.disconnect(websocket, room_code)
        # Closing the last tab is an unload: the player leaves the lobby
        if not manager.is_player_connected(room_code, player_id):
            await service.leave_lobby(room_code, player_id)
    finally:
        manager.disconnect(websocket, room_code)
