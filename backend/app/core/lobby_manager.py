"""
Lobby manager for escape room lobbies.

This module creates and destroys lobby documents in the shared store,
tracks player membership, host hand-over and heartbeats, and handles the
lobby -> playing transition.
"""

import asyncio
import logging
from typing import List, Optional, Tuple

from app.config import get_settings
from app.core.join_code import generate_player_id, generate_room_code
from app.core.lobby import (
    LOBBIES_ROOT,
    GameState,
    LobbySettings,
    LobbySnapshot,
    Player,
    lobby_path,
    player_path,
)
from app.core.store import SERVER_TIMESTAMP, SharedStore, get_store
from app.core.timer import initial_timer

logger = logging.getLogger(__name__)


class LobbyNotFoundError(Exception):
    """Raised when a room code does not resolve to a lobby."""

    def __init__(self, room_code: str):
        super().__init__(f"Lobby {room_code} not found")
        self.room_code = room_code


class LobbyFullError(Exception):
    """Raised when a lobby has no free slots."""

    def __init__(self, room_code: str, max_players: int):
        super().__init__(f"Lobby {room_code} is full ({max_players} players)")
        self.room_code = room_code
        self.max_players = max_players


class LobbyManager:
    """
    Manages lobby documents in the shared store.
    Tracks membership, host designation and readiness.
    """

    def __init__(self, store: Optional[SharedStore] = None):
        """Initialize lobby manager."""
        self._store = store or get_store()
        self._settings = get_settings()
        self._lock = asyncio.Lock()

    @property
    def store(self) -> SharedStore:
        return self._store

    async def create_lobby(
        self,
        host_name: str,
        settings: Optional[LobbySettings] = None
    ) -> Tuple[str, str]:
        """
        Create new lobby with its host.

        Args:
            host_name: Display name of the creating player
            settings: Lobby settings (uses defaults if None)

        Returns:
            Tuple of (room_code, host_player_id)
        """
        settings = settings or LobbySettings(
            time_limit_minutes=self._settings.timer.DEFAULT_TIME_LIMIT_MINUTES
        )

        # Generate unique room code (retry if collision)
        room_code = None
        for _ in range(10):
            code = generate_room_code(self._settings.game.ROOM_CODE_LENGTH)
            if not await self._store.exists(lobby_path(code)):
                room_code = code
                break
        if not room_code:
            room_code = generate_room_code(self._settings.game.ROOM_CODE_LENGTH + 2)

        now = self._store.server_time()
        host = Player(
            id=generate_player_id(self._settings.game.PLAYER_ID_LENGTH),
            name=host_name,
            is_host=True,
            joined_at=now,
            last_active=now,
        )

        await self._store.set(lobby_path(room_code), {
            "createdAt": SERVER_TIMESTAMP,
            "gameState": GameState.LOBBY.value,
            "gamePhase": 0,
            "settings": settings.to_store(),
            "timer": initial_timer(settings.time_limit_minutes * 60),
            "selectedLeader": None,
            "players": {host.id: host.to_store()},
        })
        logger.info(f"Created lobby {room_code} (host: {host.id} '{host_name}')")
        return room_code, host.id

    async def get_lobby(self, room_code: str) -> Optional[LobbySnapshot]:
        """
        Get lobby snapshot by room code.

        Args:
            room_code: Lobby room code

        Returns:
            LobbySnapshot if found, None otherwise
        """
        data = await self._store.get(lobby_path(room_code))
        if not data:
            return None
        return LobbySnapshot.from_store(room_code, data, self._store.server_time())

    async def require_lobby(self, room_code: str) -> LobbySnapshot:
        """Like get_lobby but raises LobbyNotFoundError."""
        lobby = await self.get_lobby(room_code)
        if lobby is None:
            raise LobbyNotFoundError(room_code)
        return lobby

    async def list_room_codes(self) -> List[str]:
        """List the room codes of all lobbies."""
        return self._store.child_keys(LOBBIES_ROOT)

    async def join_lobby(self, room_code: str, name: str) -> str:
        """
        Add player to lobby.

        Args:
            room_code: Lobby to join
            name: Display name

        Returns:
            The new player's ID

        Raises:
            LobbyNotFoundError: If the lobby does not exist
            LobbyFullError: If the lobby is at capacity
        """
        lobby = await self.get_lobby(room_code)
        if not lobby:
            logger.warning(f"Tried to join non-existent lobby {room_code}")
            raise LobbyNotFoundError(room_code)

        max_players = self._settings.game.MAX_PLAYERS
        if lobby.get_player_count() >= max_players:
            logger.warning(f"'{name}' tried to join full lobby {room_code}")
            raise LobbyFullError(room_code, max_players)

        now = self._store.server_time()
        player = Player(
            id=generate_player_id(self._settings.game.PLAYER_ID_LENGTH),
            name=name,
            joined_at=now,
            last_active=now,
        )
        await self._store.set(player_path(room_code, player.id), player.to_store())
        logger.info(
            f"Player {player.id} '{name}' joined lobby {room_code} "
            f"({lobby.get_player_count() + 1}/{max_players})"
        )
        return player.id

    async def rejoin_lobby(self, room_code: str, player_id: str, name: str) -> bool:
        """
        Restore a player record for a returning client.

        A client that still holds its ID in the URL but whose record was
        removed (tab reload, idle pruning) is re-added as a regular player.
        Becomes host if the lobby has none.

        Returns:
            True if the player is present afterwards
        """
        lobby = await self.get_lobby(room_code)
        if not lobby:
            raise LobbyNotFoundError(room_code)

        if player_id in lobby.players:
            await self.heartbeat(room_code, player_id)
            return True

        now = self._store.server_time()
        player = Player(
            id=player_id,
            name=name,
            is_host=lobby.host() is None,
            joined_at=now,
            last_active=now,
        )
        await self._store.set(player_path(room_code, player_id), player.to_store())
        logger.info(f"Player {player_id} '{name}' rejoined lobby {room_code}")
        return True

    async def leave_lobby(self, room_code: str, player_id: str) -> bool:
        """
        Remove player from lobby.

        Removes the whole lobby when the roster becomes empty; otherwise
        promotes the earliest-joined survivor if the host left.

        Args:
            room_code: Lobby to leave
            player_id: Player identifier

        Returns:
            True if successful, False otherwise
        """
        lobby = await self.get_lobby(room_code)
        if not lobby or player_id not in lobby.players:
            return False

        await self._store.remove(player_path(room_code, player_id))
        remaining = {pid: p for pid, p in lobby.players.items() if pid != player_id}
        logger.info(f"Player {player_id} left lobby {room_code} ({len(remaining)} remaining)")

        if not remaining:
            logger.info(f"Lobby {room_code} empty, removing")
            await self._store.remove(lobby_path(room_code))
            return True

        updates = {}
        if not any(p.is_host for p in remaining.values()):
            new_host = sorted(remaining.values(), key=lambda p: (p.joined_at, p.id))[0]
            updates[f"players/{new_host.id}/isHost"] = True
            logger.info(f"Host transferred from {player_id} to {new_host.id} in lobby {room_code}")

        if self._settings.game.PRUNE_DEPARTED_VOTES:
            updates.update(self._departed_vote_updates(lobby, player_id, remaining))

        if updates:
            await self._store.update(lobby_path(room_code), updates)
        return True

    def _departed_vote_updates(self, lobby: LobbySnapshot, player_id: str, remaining) -> dict:
        """Store updates dropping a departed player's ballots and candidacy."""
        updates = {f"leaderVotes/{player_id}": None}
        for candidate_id, voters in lobby.leader_votes.items():
            if player_id in (voters or {}):
                updates[f"leaderVotes/{candidate_id}/{player_id}"] = None
        for pid, player in remaining.items():
            if player.voted_for == player_id:
                updates[f"players/{pid}/votedFor"] = None
        return updates

    async def heartbeat(self, room_code: str, player_id: str) -> bool:
        """
        Refresh a player's lastActive timestamp.

        Returns:
            False if the player is not in the lobby
        """
        if not await self._store.exists(player_path(room_code, player_id)):
            return False
        await self._store.set(player_path(room_code, player_id, "lastActive"), SERVER_TIMESTAMP)
        return True

    async def set_ready(self, room_code: str, player_id: str, ready: bool) -> bool:
        """
        Set a player's readiness flag.

        Returns:
            False if the player is not in the lobby
        """
        if not await self._store.exists(player_path(room_code, player_id)):
            logger.warning(f"Unknown player {player_id} tried to toggle ready in lobby {room_code}")
            return False

        await self._store.update(player_path(room_code, player_id), {
            "isReady": bool(ready),
            "lastActive": SERVER_TIMESTAMP,
        })
        logger.info(f"Player {player_id} in lobby {room_code} ready={bool(ready)}")
        return True

    async def start_game(self, room_code: str, player_id: str) -> bool:
        """
        Start the game (host only).

        Moves the lobby to playing and schedules the intro video.

        Args:
            room_code: Lobby to start
            player_id: Player attempting start (must be host)

        Returns:
            True if successful, False otherwise
        """
        lobby = await self.require_lobby(room_code)

        if not lobby.is_host(player_id):
            logger.warning(f"Player {player_id} tried to start game in lobby {room_code} (not host)")
            return False

        if lobby.game_state != GameState.LOBBY:
            logger.warning(f"Cannot start lobby {room_code} in state {lobby.game_state.value}")
            return False

        start_time = self._store.server_time()
        await self._store.update(lobby_path(room_code), {
            "gameState": GameState.PLAYING.value,
            "startTime": start_time,
            "videoStartTime": start_time + self._settings.game.INTRO_DELAY_MS,
            "videoEnded": False,
        })
        logger.info(f"Starting game for lobby {room_code} with {lobby.get_player_count()} players")
        return True

    async def prune_inactive_players(self, room_code: str, max_idle_seconds: Optional[int] = None) -> List[str]:
        """
        Remove players whose heartbeat has lapsed.

        Args:
            room_code: Lobby to check
            max_idle_seconds: Idle limit (defaults to PLAYER_IDLE_TIMEOUT)

        Returns:
            IDs of removed players
        """
        limit = max_idle_seconds or self._settings.game.PLAYER_IDLE_TIMEOUT
        lobby = await self.get_lobby(room_code)
        if not lobby:
            return []

        now = self._store.server_time()
        idle = [
            p.id for p in lobby.players.values()
            if now - p.last_active > limit * 1000
        ]
        for pid in idle:
            await self.leave_lobby(room_code, pid)

        if idle:
            logger.info(f"Pruned {len(idle)} idle players from lobby {room_code}")
        return idle

    async def cleanup_stale_lobbies(self, max_age_seconds: Optional[int] = None) -> int:
        """
        Remove lobbies older than max_age_seconds or left without players.

        Args:
            max_age_seconds: Maximum age before cleanup (default: LOBBY_MAX_AGE)

        Returns:
            Number of lobbies cleaned up
        """
        max_age = max_age_seconds or self._settings.game.LOBBY_MAX_AGE
        async with self._lock:
            now = self._store.server_time()
            to_cleanup = []

            for room_code in await self.list_room_codes():
                lobby = await self.get_lobby(room_code)
                if lobby is None:
                    continue
                age = (now - lobby.created_at) / 1000
                if age > max_age or not lobby.players:
                    to_cleanup.append(room_code)

            for room_code in to_cleanup:
                await self._store.remove(lobby_path(room_code))

            if to_cleanup:
                logger.info(f"Cleaned up {len(to_cleanup)} stale lobbies")

            return len(to_cleanup)
