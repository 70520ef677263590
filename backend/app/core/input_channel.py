"""
Leader-arbitrated shared input channel.

One implementation backs every puzzle input (login form, firewall code,
keypad). Only the elected leader may type, erase or submit; every change
is republished to the puzzle's subtree so the other players can mirror it
read-only ("X is typing..."). Actions from anyone else are no-ops.

Store shape at lobbies/{code}/{config.key}:
    {<field>: str, ..., ownerName, isInputActive, activeField,
     error, attempts, <solved_field>: bool}
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from app.core.lobby import lobby_path, player_path
from app.core.store import ABORT, SharedStore
from app.core.timer import TimerService

logger = logging.getLogger(__name__)


class Charset(Enum):
    """Characters a puzzle input accepts."""
    ANY = "any"
    DIGITS = "digits"
    LETTERS = "letters"


@dataclass
class PuzzleConfig:
    """
    Per-puzzle parameters for an input channel.

    `penalize_from_attempt` is the first failed attempt that costs time
    (1 = every failure, 2 = from the second failure on, None = never).

    `active_phase` is the game phase in which the puzzle can be worked on;
    outside it the puzzle is locked and every action is a no-op
    (None = always available).
    """
    key: str
    solution: Union[str, Dict[str, str]]
    active_phase: Optional[int] = None
    fields: Tuple[str, ...] = ("value",)
    max_length: Optional[int] = None
    charset: Charset = Charset.ANY
    uppercase: bool = False
    error_message: str = "Access denied. Invalid code."
    clear_delay_seconds: float = 1.0
    penalty_seconds: int = 0
    penalize_from_attempt: Optional[int] = None
    solved_field: str = "solved"
    auto_submit_on_full: bool = False
    check_on_input: bool = False

    def expected(self) -> Dict[str, str]:
        """Solution keyed by field."""
        if isinstance(self.solution, dict):
            return dict(self.solution)
        return {self.fields[0]: self.solution}

    def normalize_char(self, ch: str) -> Optional[str]:
        """
        Apply the character filter.

        Returns:
            The character to append, or None if it is rejected
        """
        if not isinstance(ch, str) or len(ch) != 1:
            return None
        if self.uppercase:
            ch = ch.upper()
        if self.charset == Charset.DIGITS and not ch.isdigit():
            return None
        if self.charset == Charset.LETTERS and not ch.isalpha():
            return None
        if not ch.isprintable():
            return None
        return ch

    def penalizes(self, attempt: int) -> bool:
        """Whether the given failed attempt number costs time."""
        return (
            self.penalty_seconds > 0
            and self.penalize_from_attempt is not None
            and self.penalize_from_attempt > 0
            and attempt >= self.penalize_from_attempt
        )


@dataclass
class SubmitResult:
    """Outcome of a submit."""
    accepted: bool  # False if the caller was not allowed to submit
    solved: bool = False
    attempts: int = 0
    penalty_applied: bool = False
    error: str = ""


Hook = Callable[["ArbitratedInputChannel", Optional[str], SubmitResult], Union[None, Awaitable[None]]]


def typing_indicator(state: Optional[Dict[str, Any]]) -> Optional[str]:
    """
    Text shown to read-only observers while the leader types.

    Example: "Alice is typing..."
    """
    if not state or not state.get("isInputActive") or not state.get("ownerName"):
        return None
    return f"{state['ownerName']} is typing..."


class ChannelObserver:
    """
    Read-only mirror of a channel for players who are not the leader.

    Password-like fields are masked; everything else is shown as typed.
    """

    def __init__(self, config: PuzzleConfig, masked_fields: Tuple[str, ...] = ()):
        self.config = config
        self.masked_fields = masked_fields

    def render(self, state: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        state = state or {}
        values = {}
        for name in self.config.fields:
            value = state.get(name) or ""
            values[name] = "*" * len(value) if name in self.masked_fields else value
        return {
            "values": values,
            "indicator": typing_indicator(state),
            "error": state.get("error") or "",
            "solved": bool(state.get(self.config.solved_field)),
        }


class ArbitratedInputChannel:
    """Shared input for one puzzle in one lobby."""

    def __init__(
        self,
        store: SharedStore,
        room_code: str,
        config: PuzzleConfig,
        timer: Optional[TimerService] = None,
    ):
        self._store = store
        self.room_code = room_code
        self.config = config
        self._timer = timer
        self._on_solved: List[Hook] = []
        self._on_failed: List[Hook] = []
        self._pending: Set[asyncio.Task] = set()

    @property
    def path(self) -> str:
        return lobby_path(self.room_code, self.config.key)

    def on_solved(self, hook: Hook) -> None:
        """Register a hook run once when the puzzle is solved."""
        self._on_solved.append(hook)

    def on_failed(self, hook: Hook) -> None:
        """Register a hook run after every failed submit."""
        self._on_failed.append(hook)

    # ===== State =====

    async def get_state(self) -> Dict[str, Any]:
        """Current channel state with defaults filled in."""
        data = await self._store.get(self.path) or {}
        state = {name: data.get(name) or "" for name in self.config.fields}
        state.update({
            "ownerName": data.get("ownerName"),
            "isInputActive": bool(data.get("isInputActive")),
            "activeField": data.get("activeField") or self.config.fields[0],
            "error": data.get("error") or "",
            "attempts": int(data.get("attempts") or 0),
            self.config.solved_field: bool(data.get(self.config.solved_field)),
        })
        return state

    async def is_solved(self) -> bool:
        return bool(await self._store.get(f"{self.path}/{self.config.solved_field}"))

    async def is_unlocked(self) -> bool:
        """Whether the lobby is in the phase this puzzle belongs to."""
        if self.config.active_phase is None:
            return True
        phase = await self._store.get(lobby_path(self.room_code, "gamePhase"))
        return phase == self.config.active_phase

    async def _is_leader(self, player_id: Optional[str]) -> bool:
        if not player_id:
            return False
        return bool(await self._store.get(player_path(self.room_code, player_id, "isLeader")))

    async def _can_mutate(self, player_id: str, require_active: bool = True) -> Optional[Dict[str, Any]]:
        """Return the state if player_id may mutate the channel, else None."""
        if not await self._is_leader(player_id):
            logger.debug(f"Ignoring input from non-leader {player_id} on {self.config.key} in lobby {self.room_code}")
            return None
        if not await self.is_unlocked():
            logger.debug(f"Puzzle {self.config.key} is locked in lobby {self.room_code}")
            return None
        state = await self.get_state()
        if state[self.config.solved_field]:
            return None
        if require_active and not state["isInputActive"]:
            logger.debug(f"Input on {self.config.key} in lobby {self.room_code} is not active")
            return None
        return state

    # ===== Leader actions =====

    async def activate(self, player_id: str, owner_name: str, field_name: Optional[str] = None) -> bool:
        """
        Take the input focus.

        Args:
            player_id: Caller (must be the leader)
            owner_name: Name shown to observers
            field_name: Field to type into (multi-field puzzles)

        Returns:
            True if the channel was activated
        """
        state = await self._can_mutate(player_id, require_active=False)
        if state is None:
            return False

        active_field = field_name if field_name in self.config.fields else state["activeField"]
        await self._store.update(self.path, {
            "isInputActive": True,
            "ownerName": owner_name,
            "activeField": active_field,
            "error": "",
        })
        logger.debug(f"{owner_name} activated {self.config.key} in lobby {self.room_code}")
        return True

    async def append_char(self, player_id: str, ch: str, field_name: Optional[str] = None) -> bool:
        """
        Type one character.

        Rejected characters (wrong class, over max length) are ignored.

        Returns:
            True if the value changed
        """
        state = await self._can_mutate(player_id)
        if state is None:
            return False

        ch = self.config.normalize_char(ch)
        target = field_name if field_name in self.config.fields else state["activeField"]
        value = state[target]
        if ch is None:
            return False
        if self.config.max_length is not None and len(value) >= self.config.max_length:
            return False

        value += ch
        await self._publish(target, value, state["ownerName"])

        if self.config.check_on_input and self._matches({**state, target: value}):
            await self._mark_solved(player_id, state["attempts"])
        elif (
            self.config.auto_submit_on_full
            and self.config.max_length is not None
            and len(value) >= self.config.max_length
        ):
            await self.submit(player_id)
        return True

    async def backspace(self, player_id: str, field_name: Optional[str] = None) -> bool:
        """Erase the last character. Returns True if the value changed."""
        state = await self._can_mutate(player_id)
        if state is None:
            return False

        target = field_name if field_name in self.config.fields else state["activeField"]
        if not state[target]:
            return False
        await self._publish(target, state[target][:-1], state["ownerName"])
        return True

    async def clear(self, player_id: str) -> bool:
        """Erase every field."""
        state = await self._can_mutate(player_id)
        if state is None:
            return False

        updates = {name: "" for name in self.config.fields}
        updates["ownerName"] = state["ownerName"]
        await self._store.update(self.path, updates)
        return True

    async def deactivate(self, player_id: str) -> bool:
        """Release the input focus without side effects."""
        state = await self._can_mutate(player_id, require_active=False)
        if state is None:
            return False

        await self._store.update(self.path, {"isInputActive": False, "ownerName": None})
        return True

    async def submit(self, player_id: str) -> SubmitResult:
        """
        Validate the current value against the solution.

        On a match the puzzle is marked solved and the solved hooks run.
        On a mismatch the error is shown, attempts is incremented, the
        value is cleared after the display delay, and a penalty is applied
        if the puzzle's policy says so.

        Args:
            player_id: Caller (must be the leader)

        Returns:
            SubmitResult
        """
        state = await self._can_mutate(player_id, require_active=False)
        if state is None:
            return SubmitResult(accepted=False)

        if self._matches(state):
            solved = await self._mark_solved(player_id, state["attempts"])
            return SubmitResult(accepted=True, solved=solved, attempts=state["attempts"])

        return await self._record_failure(player_id)

    # ===== Internals =====

    def _matches(self, state: Dict[str, Any]) -> bool:
        expected = self.config.expected()
        return all(state.get(name, "") == value for name, value in expected.items())

    async def _publish(self, field_name: str, value: str, owner_name: Optional[str]) -> None:
        await self._store.update(self.path, {field_name: value, "ownerName": owner_name})

    async def _mark_solved(self, player_id: str, attempts: int) -> bool:
        solved_field = self.config.solved_field

        def solve_once(current):
            current = current or {}
            if current.get(solved_field):
                return ABORT
            current.update({
                solved_field: True,
                "error": "",
                "isInputActive": False,
                "ownerName": None,
            })
            return current

        result = await self._store.transaction(self.path, solve_once)
        if not result.committed:
            return False

        logger.info(f"Puzzle {self.config.key} solved in lobby {self.room_code} by {player_id}")
        outcome = SubmitResult(accepted=True, solved=True, attempts=attempts)
        await self._run_hooks(self._on_solved, player_id, outcome)
        return True

    async def _record_failure(self, player_id: str) -> SubmitResult:
        error_message = self.config.error_message

        def fail(current):
            current = current or {}
            current["attempts"] = int(current.get("attempts") or 0) + 1
            current["error"] = error_message
            return current

        result = await self._store.transaction(self.path, fail)
        attempts = result.snapshot["attempts"]
        logger.info(f"Wrong entry on {self.config.key} in lobby {self.room_code} (attempt {attempts})")

        penalty_applied = False
        if self._timer is not None and self.config.penalizes(attempts):
            penalty_applied = await self._timer.apply_penalty(self.room_code, self.config.penalty_seconds)

        outcome = SubmitResult(
            accepted=True,
            solved=False,
            attempts=attempts,
            penalty_applied=penalty_applied,
            error=error_message,
        )

        if self.config.clear_delay_seconds > 0:
            task = asyncio.create_task(self._clear_after_delay(attempts))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        else:
            await self._clear_failed_entry(attempts)

        await self._run_hooks(self._on_failed, player_id, outcome)
        return outcome

    async def _clear_after_delay(self, attempts: int) -> None:
        await asyncio.sleep(self.config.clear_delay_seconds)
        await self._clear_failed_entry(attempts)

    async def _clear_failed_entry(self, attempts: int) -> None:
        """Clear the wrong entry unless a newer attempt or a solve happened."""
        fields = self.config.fields
        solved_field = self.config.solved_field

        def reset(current):
            if not current or current.get(solved_field) or int(current.get("attempts") or 0) != attempts:
                return ABORT
            for name in fields:
                current[name] = ""
            current["error"] = ""
            return current

        await self._store.transaction(self.path, reset)

    async def _run_hooks(self, hooks: List[Hook], player_id: Optional[str], outcome: SubmitResult) -> None:
        for hook in hooks:
            result = hook(self, player_id, outcome)
            if inspect.isawaitable(result):
                await result

    async def wait_pending(self) -> None:
        """Wait for scheduled clears to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def cancel_pending(self) -> None:
        """Cancel scheduled clears (lobby shutdown)."""
        for task in list(self._pending):
            task.cancel()
