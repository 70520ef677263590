"""
Puzzle stage controllers.

Wires the generic input channel, one-shot triggers and phase controller
into the concrete escape room stages:

    phase 0  intro video
    phase 1  login terminal   (leaderInput)
    phase 2  system desktop   (firewallState, file explorer, keypadState)
    phase 3  escaped

Each puzzle is a PuzzleConfig; the stage behaviour lives in the solved and
failed hooks registered on its channel.
"""

import asyncio
import logging
from typing import Dict, Optional, Tuple

from app.config import Settings, get_settings
from app.core.chat import HackerChat
from app.core.input_channel import ArbitratedInputChannel, Charset, PuzzleConfig, SubmitResult
from app.core.lobby import lobby_path, player_path
from app.core.phase import PhaseController
from app.core.store import SharedStore
from app.core.timer import TimerService
from app.core.triggers import (
    FIRST_HACKER_MESSAGE,
    HACKER_DESKTOP_MESSAGE,
    HACKER_LOGIN_AUDIO,
    OneShotTrigger,
    TriggerOutcome,
    stage_unlock_key,
)

logger = logging.getLogger(__name__)

LOGIN = "login"
FIREWALL = "firewall"
KEYPAD = "keypad"

LOGIN_PHASE = 1
DESKTOP_PHASE = 2
ESCAPED_PHASE = 3

LOGIN_HINT_AFTER = 3
LOGIN_HINT = "HINT: Check the page source and Elements tab in Dev Tools (F12)"

FIRST_MESSAGE = (
    "Knock knock… Locked out already? Your shiny security system is mine now.\n\n"
    "Keep guessing passwords if it makes you feel useful. I'll be watching."
)

DESKTOP_TAUNT = (
    "Well well… you finally made it in\n\n"
    "Took you long enough. I was starting to think the whole team was just a group of "
    "overpaid coffee addicts with fancy job titles\n\n"
    "But hey, congrats – you've managed to log in. Cute\n\n"
    "Don't get too excited though. You're still playing in my system\n\n"
    "The bomb is armed, the clock is ticking, and every second you waste brings your "
    "precious data closer to oblivion\n\n"
    "Let's see if your \"rockstar team\" can actually do something for once\n\n"
    "Tick tock"
)

DESKTOP_MESSAGE_DELAY = 2.0  # Seconds between the login audio and the taunt


def default_puzzles(settings: Optional[Settings] = None) -> Dict[str, PuzzleConfig]:
    """
    Build the puzzle registry from settings.

    Returns:
        Mapping of puzzle name -> PuzzleConfig
    """
    settings = settings or get_settings()
    defaults = settings.puzzles
    penalty = settings.timer.DEFAULT_PENALTY_SECONDS

    return {
        LOGIN: PuzzleConfig(
            key="leaderInput",
            active_phase=LOGIN_PHASE,
            fields=("username", "password"),
            solution={"username": "sysadmin", "password": "F1r3w4ll#2023"},
            max_length=32,
            error_message="Authentication failed. Invalid credentials.",
            clear_delay_seconds=defaults.INPUT_CLEAR_DELAY,
            penalty_seconds=penalty,
            penalize_from_attempt=defaults.LOGIN_PENALIZE_FROM_ATTEMPT or None,
            solved_field="solved",
        ),
        FIREWALL: PuzzleConfig(
            key="firewallState",
            active_phase=DESKTOP_PHASE,
            solution="ISGNORSAET",
            max_length=10,
            charset=Charset.LETTERS,
            uppercase=True,
            error_message="Access denied. Invalid code.",
            clear_delay_seconds=defaults.INPUT_CLEAR_DELAY,
            penalty_seconds=penalty,
            penalize_from_attempt=defaults.FIREWALL_PENALIZE_FROM_ATTEMPT or None,
            solved_field="active",
            check_on_input=True,
        ),
        KEYPAD: PuzzleConfig(
            key="keypadState",
            active_phase=DESKTOP_PHASE,
            solution="2004",
            max_length=4,
            charset=Charset.DIGITS,
            error_message="Incorrect code. Try again.",
            clear_delay_seconds=defaults.INPUT_CLEAR_DELAY,
            penalty_seconds=penalty,
            penalize_from_attempt=defaults.KEYPAD_PENALIZE_FROM_ATTEMPT or None,
            solved_field="unlocked",
            auto_submit_on_full=True,
        ),
    }


class StageController:
    """
    Owns the puzzle channels of every lobby and their stage behaviour.

    Channels are created on first use and cached per (room, puzzle) so that
    their pending clears survive between commands.
    """

    def __init__(
        self,
        store: SharedStore,
        timer: TimerService,
        phases: PhaseController,
        chat: HackerChat,
        puzzles: Optional[Dict[str, PuzzleConfig]] = None,
        desktop_message_delay: float = DESKTOP_MESSAGE_DELAY,
    ):
        self._store = store
        self._timer = timer
        self._phases = phases
        self._chat = chat
        self.puzzles = puzzles if puzzles is not None else default_puzzles()
        self.desktop_message_delay = desktop_message_delay
        self._channels: Dict[Tuple[str, str], ArbitratedInputChannel] = {}
        self._taunts: Dict[str, asyncio.Task] = {}

    def channel(self, room_code: str, puzzle: str) -> ArbitratedInputChannel:
        """
        Get the input channel for a puzzle.

        Raises:
            KeyError: If the puzzle is not registered
        """
        cache_key = (room_code, puzzle)
        channel = self._channels.get(cache_key)
        if channel is None:
            channel = ArbitratedInputChannel(self._store, room_code, self.puzzles[puzzle], self._timer)
            self._wire(puzzle, channel)
            self._channels[cache_key] = channel
        return channel

    def _wire(self, puzzle: str, channel: ArbitratedInputChannel) -> None:
        if puzzle == LOGIN:
            channel.on_solved(self._login_solved)
            channel.on_failed(self._login_failed)
        elif puzzle == FIREWALL:
            channel.on_solved(self._firewall_solved)
        elif puzzle == KEYPAD:
            channel.on_solved(self._keypad_solved)

    # ===== Login =====

    async def _login_solved(self, channel: ArbitratedInputChannel, player_id: Optional[str], result: SubmitResult) -> None:
        await self._phases.advance_phase(channel.room_code, LOGIN_PHASE, player_id)

    async def _login_failed(self, channel: ArbitratedInputChannel, player_id: Optional[str], result: SubmitResult) -> None:
        if result.attempts == 1:
            trigger = OneShotTrigger(self._store, channel.room_code, FIRST_HACKER_MESSAGE)
            await trigger.fire(
                player_id,
                lambda: self._chat.post_message(channel.room_code, FIRST_MESSAGE, is_first_message=True),
            )
        if result.attempts >= LOGIN_HINT_AFTER:
            await self._store.update(channel.path, {"hint": LOGIN_HINT})

    # ===== Desktop =====

    async def _firewall_solved(self, channel: ArbitratedInputChannel, player_id: Optional[str], result: SubmitResult) -> None:
        room_code = channel.room_code

        async def unlock_explorer():
            await self._store.update(lobby_path(room_code, "desktopState"), {"fileExplorerUnlocked": True})

        trigger = OneShotTrigger(self._store, room_code, stage_unlock_key(FIREWALL))
        await trigger.fire(player_id, unlock_explorer, leader_only=False)

    async def _keypad_solved(self, channel: ArbitratedInputChannel, player_id: Optional[str], result: SubmitResult) -> None:
        room_code = channel.room_code
        trigger = OneShotTrigger(self._store, room_code, stage_unlock_key(KEYPAD))
        outcome = await trigger.fire(player_id, leader_only=False)
        if outcome == TriggerOutcome.CLAIMED:
            await self._phases.advance_phase(room_code, DESKTOP_PHASE, player_id)

    async def enter_desktop(self, room_code: str, actor_id: Optional[str]) -> bool:
        """
        Run the desktop entry sequence: login audio, then the taunt.

        Both steps are one-shots, so every client may call this when it
        renders the desktop; the leader's call performs them. The taunt
        follows the audio after desktop_message_delay in a background task.

        Returns:
            True if this call posted or scheduled the taunt
        """
        audio = OneShotTrigger(self._store, room_code, HACKER_LOGIN_AUDIO, done_field="played")
        await audio.fire(actor_id)

        if not await audio.is_done():
            return False

        message = OneShotTrigger(self._store, room_code, HACKER_DESKTOP_MESSAGE)
        if self.desktop_message_delay <= 0:
            return await self._post_taunt(message, actor_id)

        if room_code in self._taunts or await message.is_done():
            return False
        is_leader = bool(actor_id) and bool(await self._store.get(player_path(room_code, actor_id, "isLeader")))
        if not is_leader:
            return False

        task = asyncio.create_task(self._post_taunt_later(message, actor_id))
        self._taunts[room_code] = task
        task.add_done_callback(lambda _: self._taunts.pop(room_code, None))
        return True

    async def _post_taunt(self, message: OneShotTrigger, actor_id: Optional[str]) -> bool:
        room_code = message.room_code
        outcome = await message.fire(
            actor_id,
            lambda: self._chat.post_message(room_code, DESKTOP_TAUNT),
        )
        return outcome == TriggerOutcome.CLAIMED

    async def _post_taunt_later(self, message: OneShotTrigger, actor_id: Optional[str]) -> None:
        await asyncio.sleep(self.desktop_message_delay)
        await self._post_taunt(message, actor_id)

    async def wait_pending(self, room_code: str) -> None:
        """Wait for a scheduled taunt to be posted."""
        task = self._taunts.get(room_code)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def release(self, room_code: str) -> None:
        """Drop a lobby's channels and cancel their pending work."""
        for cache_key in [k for k in self._channels if k[0] == room_code]:
            self._channels.pop(cache_key).cancel_pending()
        task = self._taunts.pop(room_code, None)
        if task is not None:
            task.cancel()

    def release_all(self) -> None:
        for room_code in {key[0] for key in self._channels} | set(self._taunts):
            self.release(room_code)


class DesktopController:
    """Window state of the shared system desktop (desktopState subtree)."""

    def __init__(self, store: SharedStore, room_code: str):
        self._store = store
        self.room_code = room_code

    @property
    def path(self) -> str:
        return lobby_path(self.room_code, "desktopState")

    async def get_state(self) -> Dict[str, bool]:
        data = await self._store.get(self.path) or {}
        return {
            "fileExplorerOpen": bool(data.get("fileExplorerOpen")),
            "firewallWindowOpen": bool(data.get("firewallWindowOpen")),
            "fileExplorerUnlocked": bool(data.get("fileExplorerUnlocked")),
        }

    async def _is_leader(self, player_id: Optional[str]) -> bool:
        if not player_id:
            return False
        return bool(await self._store.get(player_path(self.room_code, player_id, "isLeader")))

    async def firewall_active(self) -> bool:
        return bool(await self._store.get(lobby_path(self.room_code, "firewallState", "active")))

    async def set_file_explorer_open(self, player_id: str, is_open: bool) -> bool:
        """
        Open or close the file explorer window (leader only).

        The explorer only opens once the firewall has been taken down.
        """
        if not await self._is_leader(player_id):
            return False
        if is_open and not await self.firewall_active():
            logger.debug(f"File explorer still firewalled in lobby {self.room_code}")
            return False
        await self._store.update(self.path, {"fileExplorerOpen": bool(is_open)})
        return True

    async def set_firewall_window_open(self, player_id: str, is_open: bool) -> bool:
        """Open or close the firewall window (leader only)."""
        if not await self._is_leader(player_id):
            return False
        await self._store.update(self.path, {"firewallWindowOpen": bool(is_open)})
        return True
