"""
Lobby data structures and store path layout.

All lobby state lives in the shared store under lobbies/{roomCode}.
The dataclasses here convert between the camelCase documents held in the
store and the Python objects used by the managers.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from app.core.store import join_path

LOBBIES_ROOT = "lobbies"


def lobby_path(room_code: str, *parts: str) -> str:
    """
    Build a path inside a lobby.

    Example: lobby_path("ABCD1", "players", "p1") -> "lobbies/ABCD1/players/p1"
    """
    return join_path(LOBBIES_ROOT, room_code, *parts)


def player_path(room_code: str, player_id: str, *parts: str) -> str:
    """Build a path inside a player record."""
    return lobby_path(room_code, "players", player_id, *parts)


class GameState(Enum):
    """Lobby state machine."""
    LOBBY = "lobby"      # Waiting room, accepting players
    PLAYING = "playing"  # Game started


@dataclass
class LobbySettings:
    """Configurable lobby settings."""
    time_limit_minutes: int = 30

    def to_store(self) -> Dict[str, Any]:
        return {"timeLimitMinutes": self.time_limit_minutes}

    @classmethod
    def from_store(cls, data: Optional[Dict[str, Any]]) -> "LobbySettings":
        data = data or {}
        # Older documents used "timeLimit"
        minutes = data.get("timeLimitMinutes", data.get("timeLimit", 30))
        return cls(time_limit_minutes=int(minutes))


@dataclass
class Player:
    """Individual player in a lobby."""
    id: str
    name: str = "Anonymous"
    is_host: bool = False
    is_leader: bool = False
    is_ready: bool = False
    voted_for: Optional[str] = None
    joined_at: int = 0
    last_active: int = 0

    def to_store(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "isHost": self.is_host,
            "isLeader": self.is_leader,
            "isReady": self.is_ready,
            "votedFor": self.voted_for,
            "joinedAt": self.joined_at,
            "lastActive": self.last_active,
        }

    @classmethod
    def from_store(cls, player_id: str, data: Optional[Dict[str, Any]], now: int = 0) -> "Player":
        """
        Build a Player from a store record, filling defaults.

        The store key is always used as the ID.
        """
        data = data or {}
        return cls(
            id=player_id,
            name=data.get("name") or "Anonymous",
            is_host=bool(data.get("isHost")),
            is_leader=bool(data.get("isLeader")),
            is_ready=bool(data.get("isReady")),
            voted_for=data.get("votedFor") or None,
            joined_at=int(data.get("joinedAt") or now),
            last_active=int(data.get("lastActive") or now),
        )


@dataclass
class LobbySnapshot:
    """Read-only view of one lobby document."""
    room_code: str
    created_at: int
    game_state: GameState
    game_phase: int
    settings: LobbySettings
    players: Dict[str, Player] = field(default_factory=dict)
    leader_votes: Dict[str, Dict[str, bool]] = field(default_factory=dict)
    selected_leader: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_store(cls, room_code: str, data: Dict[str, Any], now: int = 0) -> "LobbySnapshot":
        players = {
            pid: Player.from_store(pid, pdata, now)
            for pid, pdata in (data.get("players") or {}).items()
            if isinstance(pdata, dict)
        }
        try:
            game_state = GameState(data.get("gameState", GameState.LOBBY.value))
        except ValueError:
            game_state = GameState.LOBBY

        return cls(
            room_code=room_code,
            created_at=int(data.get("createdAt") or 0),
            game_state=game_state,
            game_phase=int(data.get("gamePhase") or 0),
            settings=LobbySettings.from_store(data.get("settings")),
            players=players,
            leader_votes=data.get("leaderVotes") or {},
            selected_leader=data.get("selectedLeader") or None,
            raw=data,
        )

    def get_player_count(self) -> int:
        """Get number of players in lobby."""
        return len(self.players)

    def host(self) -> Optional[Player]:
        """Get the host player, if any."""
        return next((p for p in self.players.values() if p.is_host), None)

    def leader(self) -> Optional[Player]:
        """Get the elected leader, if any."""
        return next((p for p in self.players.values() if p.is_leader), None)

    def is_host(self, player_id: str) -> bool:
        """Check if player is the lobby host."""
        player = self.players.get(player_id)
        return bool(player and player.is_host)

    def is_leader(self, player_id: str) -> bool:
        """Check if player is the elected leader."""
        player = self.players.get(player_id)
        return bool(player and player.is_leader)

    def players_by_join_order(self) -> List[Player]:
        """Players sorted by joinedAt (earliest first)."""
        return sorted(self.players.values(), key=lambda p: (p.joined_at, p.id))

    def all_players_ready(self, min_players: int = 2) -> bool:
        """
        Check whether the host may start the game.

        The host always counts as ready; everyone else must have
        toggled ready.
        """
        if len(self.players) < min_players:
            return False
        guests = [p for p in self.players.values() if not p.is_host]
        return bool(guests) and all(p.is_ready for p in guests)
