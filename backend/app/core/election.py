"""
Leader election by majority vote.

Votes are kept twice: on the voter (`players/{id}/votedFor`) and in a
presence map (`leaderVotes/{candidateId}/{voterId}: true`) used for
tallying. The first candidate backed by half of the players (rounded up)
becomes the `selectedLeader` and the only player with `isLeader=true`.
Once chosen, the leader stays until the host resets the vote.
"""

import logging
import math
from typing import Dict, Optional

from app.config import Settings, get_settings
from app.core.lobby import LobbySnapshot, lobby_path
from app.core.lobby_manager import LobbyManager
from app.core.store import ABORT, SharedStore

logger = logging.getLogger(__name__)


def majority_threshold(player_count: int, strict: bool = False) -> int:
    """
    Votes needed to win, at least 1.

    By default half of the players rounded up, so an even split elects.
    With strict=True more than half is needed.

    Example: 2 players -> 1, 3 -> 2, 4 -> 2 (strict: 2 -> 2, 4 -> 3)
    """
    if strict:
        return max(1, player_count // 2 + 1)
    return max(1, math.ceil(player_count / 2))


def tally(leader_votes: Dict[str, Dict[str, bool]]) -> Dict[str, int]:
    """Count voters per candidate from the presence map."""
    return {
        candidate_id: len([v for v, present in (voters or {}).items() if present])
        for candidate_id, voters in (leader_votes or {}).items()
    }


def find_majority(
    leader_votes: Dict[str, Dict[str, bool]],
    player_count: int,
    strict: bool = False,
) -> Optional[str]:
    """
    Find a candidate at or over the majority threshold.

    Candidates are checked in presence-map order, so the earliest
    candidate to be voted for wins when several qualify.
    """
    threshold = majority_threshold(player_count, strict)
    for candidate_id, count in tally(leader_votes).items():
        if count >= threshold:
            return candidate_id
    return None


class LeaderElection:
    """Casts votes, selects and resets the lobby leader."""

    def __init__(self, store: SharedStore, lobby_manager: LobbyManager, settings: Optional[Settings] = None):
        self._store = store
        self._lobbies = lobby_manager
        self._settings = settings or get_settings()

    @property
    def strict(self) -> bool:
        return self._settings.game.STRICT_MAJORITY_VOTE

    def threshold(self, player_count: int) -> int:
        return majority_threshold(player_count, self.strict)

    async def cast_vote(self, room_code: str, voter_id: str, candidate_id: Optional[str]) -> Optional[str]:
        """
        Cast, change or withdraw a vote.

        Voting again for the current choice (or for None) withdraws the
        vote. Changing the vote moves it from the old candidate.

        Args:
            room_code: Lobby room code
            voter_id: Player casting the vote
            candidate_id: Player voted for, or None to withdraw

        Returns:
            The selected leader's ID after the vote (None if no leader yet)
        """
        lobby = await self._lobbies.require_lobby(room_code)
        voter = lobby.players.get(voter_id)
        if voter is None:
            logger.warning(f"Unknown player {voter_id} tried to vote in lobby {room_code}")
            return lobby.selected_leader

        if candidate_id is not None and candidate_id not in lobby.players:
            logger.warning(f"Player {voter_id} voted for unknown candidate {candidate_id} in lobby {room_code}")
            return lobby.selected_leader

        previous = voter.voted_for
        if candidate_id == previous:
            candidate_id = None  # Re-voting for the same candidate withdraws

        updates = {f"players/{voter_id}/votedFor": candidate_id}
        for other_candidate, voters in lobby.leader_votes.items():
            if voter_id in (voters or {}) and other_candidate != candidate_id:
                updates[f"leaderVotes/{other_candidate}/{voter_id}"] = None
        if candidate_id is not None:
            updates[f"leaderVotes/{candidate_id}/{voter_id}"] = True

        await self._store.update(lobby_path(room_code), updates)
        logger.info(f"Player {voter_id} in lobby {room_code} voted for {candidate_id or 'nobody'}")

        return await self._select_if_majority(room_code)

    async def _select_if_majority(self, room_code: str) -> Optional[str]:
        lobby = await self._lobbies.require_lobby(room_code)
        if lobby.selected_leader:
            return lobby.selected_leader

        winner = find_majority(lobby.leader_votes, lobby.get_player_count(), self.strict)
        if winner is None:
            logger.debug(f"No majority yet in lobby {room_code}: {tally(lobby.leader_votes)}")
            return None

        def select_once(current):
            if current:
                return ABORT
            return winner

        result = await self._store.transaction(lobby_path(room_code, "selectedLeader"), select_once)
        if not result.committed:
            return result.snapshot

        # Every other flag is cleared in the same write that sets the winner
        updates = {f"players/{pid}/isLeader": False for pid in lobby.players if pid != winner}
        updates[f"players/{winner}/isLeader"] = True
        await self._store.update(lobby_path(room_code), updates)

        logger.info(
            f"Leader {winner} selected in lobby {room_code} with "
            f"{tally(lobby.leader_votes)[winner]}/{lobby.get_player_count()} votes"
        )
        return winner

    async def reset_votes(self, room_code: str, player_id: str) -> bool:
        """
        Clear all votes and the selected leader (host only).

        Args:
            room_code: Lobby room code
            player_id: Player requesting the reset (must be host)

        Returns:
            True if votes were reset, False otherwise
        """
        lobby = await self._lobbies.require_lobby(room_code)
        if not lobby.is_host(player_id):
            logger.warning(f"Player {player_id} tried to reset votes in lobby {room_code} (not host)")
            return False

        updates = {"leaderVotes": None, "selectedLeader": None}
        for pid in lobby.players:
            updates[f"players/{pid}/votedFor"] = None
            updates[f"players/{pid}/isLeader"] = False
        await self._store.update(lobby_path(room_code), updates)

        logger.info(f"Leader votes reset in lobby {room_code} by host {player_id}")
        return True

    def summary(self, lobby: LobbySnapshot) -> Dict[str, object]:
        """Vote tallies, threshold and leader for display."""
        return {
            "tallies": tally(lobby.leader_votes),
            "threshold": self.threshold(lobby.get_player_count()),
            "selectedLeader": lobby.selected_leader,
        }
