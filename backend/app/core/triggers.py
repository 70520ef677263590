"""
One-shot event triggers.

Every client observes the same trigger conditions (a puzzle solved, a phase
entered) and races to act on them. A scripted global effect such as a
narrative chat message must still happen exactly once per lobby. Each event
has a named flag document `{sent|played: bool, timestamp}` at the lobby root
that acts as a compare-and-set guard.

Local effects (playing a sound on one device) are gated separately by a
LocalReplayGuard held by each client.
"""

import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from app.core.lobby import lobby_path, player_path
from app.core.store import ABORT, SERVER_TIMESTAMP, SharedStore

logger = logging.getLogger(__name__)

# Named events
FIRST_HACKER_MESSAGE = "firstHackerMessage"
HACKER_LOGIN_AUDIO = "hackerLoginAudio"
HACKER_DESKTOP_MESSAGE = "hackerDesktopMessage"


def phase_advance_key(completed_phase: int) -> str:
    return f"phaseAdvance_{completed_phase}"


def stage_unlock_key(stage: str) -> str:
    return f"stageUnlock_{stage}"


def clue_key(clue_id: str) -> str:
    return f"clue_{clue_id}"


class TriggerOutcome(Enum):
    """Result of attempting to fire a trigger."""
    CLAIMED = "claimed"            # This caller ran the global effect
    ALREADY_DONE = "already_done"  # Someone else got there first
    DENIED = "denied"              # Caller may not fire this event


GlobalEffect = Callable[[], Union[Any, Awaitable[Any]]]


def flag_is_done(flag: Optional[Dict[str, Any]], done_field: Optional[str] = None) -> bool:
    """Check a trigger flag document."""
    if not flag:
        return False
    if done_field:
        return bool(flag.get(done_field))
    return bool(flag.get("sent") or flag.get("played"))


class OneShotTrigger:
    """
    Idempotent lobby-wide action tagged by a unique event key.

    Usage:
        trigger = OneShotTrigger(store, "ABCD1", HACKER_DESKTOP_MESSAGE)
        await trigger.fire(player_id, post_taunt)
    """

    def __init__(self, store: SharedStore, room_code: str, key: str, done_field: str = "sent"):
        self._store = store
        self.room_code = room_code
        self.key = key
        self.done_field = done_field

    @property
    def path(self) -> str:
        return lobby_path(self.room_code, self.key)

    async def is_done(self) -> bool:
        """Check whether the event already fired."""
        return flag_is_done(await self._store.get(self.path), self.done_field)

    async def fire(
        self,
        actor_id: Optional[str],
        global_effect: Optional[GlobalEffect] = None,
        leader_only: bool = True,
    ) -> TriggerOutcome:
        """
        Attempt to perform the global effect.

        1. Read the flag; if done, stop.
        2. If leader_only, only the elected leader may continue.
        3. Claim the flag with a transaction; only the winner of the
           claim runs global_effect.

        Args:
            actor_id: Player observing the trigger (None for server-side timers)
            global_effect: Callable (sync or async) run once lobby-wide
            leader_only: Restrict firing to the current leader

        Returns:
            TriggerOutcome
        """
        if await self.is_done():
            return TriggerOutcome.ALREADY_DONE

        if leader_only:
            is_leader = actor_id is not None and bool(
                await self._store.get(player_path(self.room_code, actor_id, "isLeader"))
            )
            if not is_leader:
                logger.debug(f"Player {actor_id} may not fire '{self.key}' in lobby {self.room_code}")
                return TriggerOutcome.DENIED

        done_field = self.done_field

        def claim(current):
            if flag_is_done(current, done_field):
                return ABORT
            return {done_field: True, "timestamp": SERVER_TIMESTAMP}

        result = await self._store.transaction(self.path, claim)
        if not result.committed:
            return TriggerOutcome.ALREADY_DONE

        logger.info(f"Trigger '{self.key}' fired in lobby {self.room_code} by {actor_id or 'server'}")
        if global_effect is not None:
            outcome = global_effect()
            if inspect.isawaitable(outcome):
                await outcome
        return TriggerOutcome.CLAIMED


class LocalReplayGuard:
    """
    Per-client memory of local effects already played.

    Repeated snapshot deliveries of a done flag replay nothing.
    """

    def __init__(self):
        self._played = set()

    def should_play(self, key: str, flag: Optional[Dict[str, Any]], done_field: Optional[str] = None) -> bool:
        """
        True exactly once, the first time the flag is seen done.

        Args:
            key: Event key
            flag: Flag document from the latest snapshot
            done_field: "sent" or "played" (either if None)
        """
        if key in self._played or not flag_is_done(flag, done_field):
            return False
        self._played.add(key)
        return True

    def has_played(self, key: str) -> bool:
        return key in self._played
