"""
Countdown timer with penalty adjustment.

The timer is anchored on a server timestamp: while running, every observer
derives the remaining time locally as

    duration - floor((now - startTime) / 1000), clamped to >= 0

instead of trusting a per-second write. Penalties shorten `duration` in a
single atomic write; observers acknowledge the penalty cue by clearing
`penalty.active`, which is safe to do any number of times.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import logging

from app.core.lobby import lobby_path
from app.core.store import ABORT, SharedStore

logger = logging.getLogger(__name__)


def format_mmss(seconds: int) -> str:
    """
    Format whole seconds as zero-padded MM:SS.

    Example: 125 -> "02:05"
    """
    seconds = max(0, int(seconds))
    minutes, secs = divmod(seconds, 60)
    return f"{minutes:02d}:{secs:02d}"


@dataclass
class PenaltyState:
    """Bookkeeping for time penalties."""
    active: bool = False
    amount: int = 0
    formatted_amount: str = "00:00"
    count: int = 0
    last_applied: Optional[int] = None
    time_remaining: Optional[int] = None

    def to_store(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "amount": self.amount,
            "formattedAmount": self.formatted_amount,
            "count": self.count,
            "lastApplied": self.last_applied,
            "timeRemaining": self.time_remaining,
        }

    @classmethod
    def from_store(cls, data: Optional[Dict[str, Any]]) -> "PenaltyState":
        data = data or {}
        amount = int(data.get("amount") or 0)
        return cls(
            active=bool(data.get("active")),
            amount=amount,
            formatted_amount=data.get("formattedAmount") or format_mmss(amount),
            count=int(data.get("count") or 0),
            last_applied=data.get("lastApplied"),
            time_remaining=data.get("timeRemaining"),
        )


@dataclass
class TimerState:
    """Timer document stored at lobbies/{code}/timer."""
    duration: int
    remaining_time: int
    start_time: Optional[int] = None
    is_running: bool = False
    has_started: bool = False
    penalty: PenaltyState = field(default_factory=PenaltyState)

    def to_store(self) -> Dict[str, Any]:
        return {
            "duration": self.duration,
            "remainingTime": self.remaining_time,
            "startTime": self.start_time,
            "isRunning": self.is_running,
            "hasStarted": self.has_started,
            "penalty": self.penalty.to_store(),
        }

    @classmethod
    def from_store(cls, data: Optional[Dict[str, Any]]) -> Optional["TimerState"]:
        if not data:
            return None
        duration = int(data.get("duration") or 0)
        remaining = data.get("remainingTime")
        return cls(
            duration=duration,
            remaining_time=int(duration if remaining is None else remaining),
            start_time=data.get("startTime"),
            is_running=bool(data.get("isRunning")),
            has_started=bool(data.get("hasStarted")),
            penalty=PenaltyState.from_store(data.get("penalty")),
        )

    def remaining(self, now_ms: int) -> int:
        """
        Remaining whole seconds as seen at now_ms.

        Args:
            now_ms: Observer's current time in milliseconds

        Returns:
            Seconds left, never negative
        """
        if self.is_running and self.start_time is not None:
            elapsed = (int(now_ms) - int(self.start_time)) // 1000
            return max(0, self.duration - max(0, elapsed))
        return max(0, self.remaining_time)

    def is_expired(self, now_ms: int) -> bool:
        """True once a started timer has reached zero."""
        return self.has_started and self.remaining(now_ms) == 0

    def display(self, now_ms: int) -> str:
        """Remaining time formatted as MM:SS."""
        return format_mmss(self.remaining(now_ms))


def displayed_remaining(timer: Optional[Dict[str, Any]], now_ms: int) -> int:
    """Derive remaining seconds from a raw timer document."""
    state = TimerState.from_store(timer)
    if state is None:
        return 0
    return state.remaining(now_ms)


def initial_timer(duration_seconds: int) -> Dict[str, Any]:
    """Timer document for a lobby that has not started yet."""
    return TimerState(duration=duration_seconds, remaining_time=duration_seconds).to_store()


class TimerService:
    """Starts, pauses and penalises a lobby's countdown."""

    def __init__(self, store: SharedStore):
        self._store = store

    def _path(self, room_code: str) -> str:
        return lobby_path(room_code, "timer")

    async def get_state(self, room_code: str) -> Optional[TimerState]:
        """Read the current timer document."""
        return TimerState.from_store(await self._store.get(self._path(room_code)))

    async def remaining(self, room_code: str) -> int:
        """Remaining seconds as seen by the server right now."""
        state = await self.get_state(room_code)
        if state is None:
            return 0
        return state.remaining(self._store.server_time())

    async def start(self, room_code: str, default_duration: int = 30 * 60) -> bool:
        """
        Start the countdown exactly once.

        Any number of callers may race here; `hasStarted` makes the
        NotStarted -> Running transition a compare-and-set.

        Args:
            room_code: Lobby room code
            default_duration: Used if the lobby has no timer document

        Returns:
            True only for the caller that started the timer
        """
        now = self._store.server_time()

        def start_once(current):
            state = TimerState.from_store(current)
            if state is not None and state.has_started:
                return ABORT
            if state is None:
                state = TimerState(duration=default_duration, remaining_time=default_duration)
            state.start_time = now
            state.is_running = True
            state.has_started = True
            state.remaining_time = state.duration
            return state.to_store()

        result = await self._store.transaction(self._path(room_code), start_once)
        if result.committed:
            logger.info(f"Timer started for lobby {room_code} ({result.snapshot['duration']}s)")
        else:
            logger.debug(f"Timer for lobby {room_code} already started")
        return result.committed

    async def pause(self, room_code: str) -> bool:
        """
        Freeze the countdown, snapshotting the remaining time.

        Returns:
            True if the timer was running
        """
        now = self._store.server_time()

        def freeze(current):
            state = TimerState.from_store(current)
            if state is None or not state.is_running:
                return ABORT
            state.remaining_time = state.remaining(now)
            state.is_running = False
            return state.to_store()

        result = await self._store.transaction(self._path(room_code), freeze)
        if result.committed:
            logger.info(f"Timer paused for lobby {room_code} at {format_mmss(result.snapshot['remainingTime'])}")
        return result.committed

    async def resume(self, room_code: str) -> bool:
        """
        Resume a paused countdown by re-anchoring on the current time.

        Returns:
            True if the timer was paused after having started
        """
        now = self._store.server_time()

        def unfreeze(current):
            state = TimerState.from_store(current)
            if state is None or state.is_running or not state.has_started:
                return ABORT
            state.duration = state.remaining_time
            state.start_time = now
            state.is_running = True
            return state.to_store()

        result = await self._store.transaction(self._path(room_code), unfreeze)
        if result.committed:
            logger.info(f"Timer resumed for lobby {room_code}")
        return result.committed

    async def apply_penalty(self, room_code: str, seconds: int) -> bool:
        """
        Deduct a penalty from the countdown.

        Decrements `duration`, increments `penalty.count` and raises
        `penalty.active` in one atomic write.

        Args:
            room_code: Lobby room code
            seconds: Penalty size in whole seconds

        Returns:
            False (soft failure) if the timer is not running
        """
        seconds = int(seconds)
        if seconds <= 0:
            return False

        now = self._store.server_time()

        def deduct(current):
            state = TimerState.from_store(current)
            if state is None or not state.is_running:
                return ABORT
            state.duration = state.duration - seconds
            count = state.penalty.count + 1
            state.penalty = PenaltyState(
                active=True,
                amount=seconds,
                formatted_amount=format_mmss(seconds),
                count=count,
                last_applied=now,
                time_remaining=state.remaining(now),
            )
            return state.to_store()

        result = await self._store.transaction(self._path(room_code), deduct)
        if not result.committed:
            logger.warning(f"Penalty of {seconds}s not applied in lobby {room_code}: timer not running")
            return False

        penalty = result.snapshot["penalty"]
        logger.info(
            f"Penalty {penalty['count']} applied in lobby {room_code}: "
            f"-{penalty['formattedAmount']}, {format_mmss(penalty['timeRemaining'])} left"
        )
        return True

    async def acknowledge_penalty(self, room_code: str) -> None:
        """
        Clear the penalty cue.

        Only `penalty.active` is written, so concurrent observers can all
        call this without touching the penalty count.
        """
        if await self._store.exists(lobby_path(room_code, "timer", "penalty")):
            await self._store.update(self._path(room_code), {"penalty/active": False})


class PenaltyObserver:
    """
    Per-client gate for the penalty cue.

    Returns True once for each penalty application seen with
    `active=true`, no matter how many snapshots repeat it.
    """

    def __init__(self):
        self._seen = set()

    def observe(self, timer: Optional[Dict[str, Any]]) -> bool:
        state = TimerState.from_store(timer)
        if state is None or not state.penalty.active:
            return False
        marker = (state.penalty.count, state.penalty.last_applied)
        if marker in self._seen:
            return False
        self._seen.add(marker)
        return True
