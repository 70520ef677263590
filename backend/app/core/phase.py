"""
Game phase progression.

`gamePhase` selects which stage every client renders. It only moves
forward, one step at a time, and each step is guarded by a one-shot
trigger so near-simultaneous completions advance it once.
"""

import inspect
import logging
from typing import Awaitable, Callable, List, Optional, Union

from app.core.lobby import lobby_path
from app.core.store import ABORT, SharedStore
from app.core.triggers import OneShotTrigger, TriggerOutcome, phase_advance_key

logger = logging.getLogger(__name__)

EnterHook = Callable[[str, int], Union[None, Awaitable[None]]]


class PhaseController:
    """Advances a lobby's gamePhase."""

    def __init__(self, store: SharedStore):
        self._store = store
        self._on_enter: List[EnterHook] = []

    def on_enter(self, hook: EnterHook) -> None:
        """Register a hook called with (room_code, phase) after each advance."""
        self._on_enter.append(hook)

    async def current_phase(self, room_code: str) -> int:
        return int(await self._store.get(lobby_path(room_code, "gamePhase")) or 0)

    async def advance_phase(self, room_code: str, completed_phase: int, actor_id: Optional[str] = None) -> bool:
        """
        Move from completed_phase to completed_phase + 1.

        Writing a phase equal to or below the current one is a no-op.

        Args:
            room_code: Lobby room code
            completed_phase: Phase that was just completed
            actor_id: Player whose action completed the phase

        Returns:
            True if this call advanced the phase
        """
        target = completed_phase + 1
        if await self.current_phase(room_code) != completed_phase:
            logger.debug(f"Lobby {room_code} is not in phase {completed_phase}, not advancing")
            return False

        advanced = False

        async def bump():
            nonlocal advanced

            def forward_only(current):
                if int(current or 0) != completed_phase:
                    return ABORT
                return target

            result = await self._store.transaction(lobby_path(room_code, "gamePhase"), forward_only)
            advanced = result.committed

        trigger = OneShotTrigger(self._store, room_code, phase_advance_key(completed_phase))
        outcome = await trigger.fire(actor_id, bump, leader_only=False)

        if outcome == TriggerOutcome.CLAIMED and advanced:
            logger.info(f"Lobby {room_code} advanced to phase {target}")
            for hook in self._on_enter:
                result = hook(room_code, target)
                if inspect.isawaitable(result):
                    await result
            return True

        logger.debug(f"Phase {completed_phase} -> {target} already handled in lobby {room_code}")
        return False
