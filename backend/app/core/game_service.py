"""
Game service.

Single entry point used by the REST and WebSocket layers. Composes the
store with the lobby manager, election, timer, phase, puzzle stages, chat
and file browser, and turns client commands into calls on them.
"""

import logging
from dataclasses import asdict
from typing import Any, Awaitable, Callable, Dict, List, Optional

from app.config import Settings, get_settings
from app.core.chat import ClueScheduler, HackerChat, default_clues
from app.core.election import LeaderElection
from app.core.file_browser import FileExplorerController
from app.core.input_channel import PuzzleConfig, SubmitResult
from app.core.lobby import GameState, LobbySnapshot, lobby_path
from app.core.lobby_manager import LobbyManager
from app.core.phase import PhaseController
from app.core.stages import DESKTOP_PHASE, DesktopController, StageController, default_puzzles
from app.core.store import SharedStore, get_store
from app.core.timer import TimerService, format_mmss

logger = logging.getLogger(__name__)

INTRO_PHASE = 0


class CommandError(Exception):
    """Raised for malformed or unknown client commands."""


class GameService:
    """
    Facade over every lobby operation.

    Usage:
        service = get_game_service()
        room_code, host_id = await service.lobbies.create_lobby("Alice")
        await service.cast_vote(room_code, host_id, host_id)
    """

    def __init__(
        self,
        store: Optional[SharedStore] = None,
        settings: Optional[Settings] = None,
        puzzles: Optional[Dict[str, PuzzleConfig]] = None,
        clues: Optional[list] = None,
        desktop_message_delay: Optional[float] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or get_store()
        self.lobbies = LobbyManager(self.store)
        self.election = LeaderElection(self.store, self.lobbies, self.settings)
        self.timer = TimerService(self.store)
        self.phases = PhaseController(self.store)
        self.chat = HackerChat(self.store)
        self.clues = ClueScheduler(
            self.store,
            self.chat,
            clues if clues is not None else default_clues(self.settings.puzzles.CLUE_DELAYS),
        )

        stage_kwargs = {}
        if desktop_message_delay is not None:
            stage_kwargs["desktop_message_delay"] = desktop_message_delay
        self.stages = StageController(
            self.store,
            self.timer,
            self.phases,
            self.chat,
            puzzles if puzzles is not None else default_puzzles(self.settings),
            **stage_kwargs,
        )

        self.phases.on_enter(self._on_phase_enter)
        self._commands: Dict[str, Callable[[str, str, Dict[str, Any]], Awaitable[Any]]] = {
            "heartbeat": self._cmd_heartbeat,
            "set_ready": self._cmd_set_ready,
            "start_game": self._cmd_start_game,
            "vote": self._cmd_vote,
            "reset_votes": self._cmd_reset_votes,
            "intro_finished": self._cmd_intro_finished,
            "enter_desktop": self._cmd_enter_desktop,
            "pause_timer": self._cmd_pause_timer,
            "resume_timer": self._cmd_resume_timer,
            "acknowledge_penalty": self._cmd_acknowledge_penalty,
            "input": self._cmd_input,
            "file": self._cmd_file,
            "desktop": self._cmd_desktop,
        }

    # ===== Phase =====

    async def _on_phase_enter(self, room_code: str, phase: int) -> None:
        if phase == self.settings.timer.START_PHASE:
            lobby = await self.lobbies.get_lobby(room_code)
            minutes = lobby.settings.time_limit_minutes if lobby else self.settings.timer.DEFAULT_TIME_LIMIT_MINUTES
            await self.timer.start(room_code, default_duration=minutes * 60)
        self.clues.schedule_phase(room_code, phase)

    async def mark_intro_finished(self, room_code: str, player_id: Optional[str] = None) -> bool:
        """
        Record that the intro video ended and enter phase 1.

        Safe to call from every client; only the first call advances.

        Returns:
            True if this call advanced the phase
        """
        lobby = await self.lobbies.require_lobby(room_code)
        if lobby.game_state != GameState.PLAYING:
            logger.debug(f"Intro finished ignored, lobby {room_code} not playing")
            return False

        if not lobby.raw.get("videoEnded"):
            await self.store.update(lobby_path(room_code), {"videoEnded": True})
        return await self.phases.advance_phase(room_code, INTRO_PHASE, player_id)

    # ===== Membership =====

    async def leave_lobby(self, room_code: str, player_id: str) -> bool:
        """Remove a player and release lobby resources if the lobby closed."""
        left = await self.lobbies.leave_lobby(room_code, player_id)
        if left and not await self.store.exists(lobby_path(room_code)):
            self.release_lobby(room_code)
        return left

    def release_lobby(self, room_code: str) -> None:
        """Cancel background work for a lobby that no longer exists."""
        self.stages.release(room_code)
        self.clues.cancel(room_code)

    async def cleanup(self) -> int:
        """Prune idle players and stale lobbies. Returns lobbies removed."""
        for room_code in await self.lobbies.list_room_codes():
            await self.lobbies.prune_inactive_players(room_code)
        before = set(await self.lobbies.list_room_codes())
        removed = await self.lobbies.cleanup_stale_lobbies()
        for room_code in before - set(await self.lobbies.list_room_codes()):
            self.release_lobby(room_code)
        return removed

    # ===== Election / timer (host and leader rules) =====

    async def cast_vote(self, room_code: str, voter_id: str, candidate_id: Optional[str]) -> Optional[str]:
        return await self.election.cast_vote(room_code, voter_id, candidate_id)

    async def reset_votes(self, room_code: str, player_id: str) -> bool:
        return await self.election.reset_votes(room_code, player_id)

    async def pause_timer(self, room_code: str, player_id: str) -> bool:
        """Pause the countdown (host only)."""
        lobby = await self.lobbies.require_lobby(room_code)
        if not lobby.is_host(player_id):
            return False
        return await self.timer.pause(room_code)

    async def resume_timer(self, room_code: str, player_id: str) -> bool:
        """Resume the countdown (host only)."""
        lobby = await self.lobbies.require_lobby(room_code)
        if not lobby.is_host(player_id):
            return False
        return await self.timer.resume(room_code)

    # ===== Stages =====

    def file_explorer(self, room_code: str) -> FileExplorerController:
        return FileExplorerController(self.store, room_code)

    def desktop(self, room_code: str) -> DesktopController:
        return DesktopController(self.store, room_code)

    async def enter_desktop(self, room_code: str, player_id: str) -> bool:
        """Run the desktop entry sequence once the lobby reached the desktop."""
        if await self.phases.current_phase(room_code) < DESKTOP_PHASE:
            return False
        return await self.stages.enter_desktop(room_code, player_id)

    async def puzzle_input(
        self,
        room_code: str,
        player_id: str,
        puzzle: str,
        action: str,
        char: Optional[str] = None,
        field_name: Optional[str] = None,
    ) -> Any:
        """
        Apply an input action to a puzzle channel.

        Args:
            room_code: Lobby room code
            player_id: Acting player
            puzzle: Puzzle name ("login", "firewall", "keypad")
            action: activate, append, backspace, clear, submit or deactivate
            char: Character for "append"
            field_name: Target field for multi-field puzzles

        Returns:
            bool for edits, SubmitResult for submit

        Raises:
            CommandError: Unknown puzzle or action
        """
        if puzzle not in self.stages.puzzles:
            raise CommandError(f"Unknown puzzle '{puzzle}'")
        await self.lobbies.require_lobby(room_code)
        channel = self.stages.channel(room_code, puzzle)

        if action == "activate":
            lobby = await self.lobbies.require_lobby(room_code)
            player = lobby.players.get(player_id)
            owner_name = player.name if player else "Unknown"
            return await channel.activate(player_id, owner_name, field_name)
        if action == "append":
            if not char:
                raise CommandError("Missing 'char' for append")
            return await channel.append_char(player_id, char, field_name)
        if action == "backspace":
            return await channel.backspace(player_id, field_name)
        if action == "clear":
            return await channel.clear(player_id)
        if action == "submit":
            return await channel.submit(player_id)
        if action == "deactivate":
            return await channel.deactivate(player_id)
        raise CommandError(f"Unknown input action '{action}'")

    # ===== Views =====

    async def lobby_view(self, room_code: str) -> Optional[Dict[str, Any]]:
        """
        Lobby document plus values derived on the server.

        Returns:
            View dict, or None if the lobby does not exist
        """
        lobby = await self.lobbies.get_lobby(room_code)
        if lobby is None:
            return None
        return await self._build_view(lobby)

    async def _build_view(self, lobby: LobbySnapshot) -> Dict[str, Any]:
        now = self.store.server_time()
        remaining = await self.timer.remaining(lobby.room_code)
        messages = await self.chat.list_messages(lobby.room_code)
        return {
            "roomCode": lobby.room_code,
            "serverTime": now,
            "lobby": lobby.raw,
            "allPlayersReady": lobby.all_players_ready(self.settings.game.MIN_PLAYERS_TO_START),
            "votes": self.election.summary(lobby),
            "timer": {
                "remainingSeconds": remaining,
                "display": format_mmss(remaining),
            },
            "chat": [message.to_dict() for message in messages],
            "fileExplorer": await self.file_explorer(lobby.room_code).get_state(),
        }

    # ===== Command dispatch =====

    def command_names(self) -> List[str]:
        return sorted(self._commands)

    async def dispatch(self, room_code: str, player_id: str, command: Dict[str, Any]) -> Any:
        """
        Run a client command.

        Args:
            room_code: Lobby room code
            player_id: Player sending the command
            command: {"type": <name>, ...payload}

        Returns:
            The command's result (bool, leader ID, SubmitResult, ...)

        Raises:
            CommandError: Unknown or malformed command
            LobbyNotFoundError: Lobby no longer exists
        """
        if not isinstance(command, dict):
            raise CommandError("Command must be an object")
        handler = self._commands.get(command.get("type"))
        if handler is None:
            raise CommandError(f"Unknown command '{command.get('type')}'")
        return await handler(room_code, player_id, command)

    async def _cmd_heartbeat(self, room_code, player_id, command):
        return await self.lobbies.heartbeat(room_code, player_id)

    async def _cmd_set_ready(self, room_code, player_id, command):
        return await self.lobbies.set_ready(room_code, player_id, bool(command.get("ready", True)))

    async def _cmd_start_game(self, room_code, player_id, command):
        return await self.lobbies.start_game(room_code, player_id)

    async def _cmd_vote(self, room_code, player_id, command):
        return await self.cast_vote(room_code, player_id, command.get("candidateId"))

    async def _cmd_reset_votes(self, room_code, player_id, command):
        return await self.reset_votes(room_code, player_id)

    async def _cmd_intro_finished(self, room_code, player_id, command):
        return await self.mark_intro_finished(room_code, player_id)

    async def _cmd_enter_desktop(self, room_code, player_id, command):
        return await self.enter_desktop(room_code, player_id)

    async def _cmd_pause_timer(self, room_code, player_id, command):
        return await self.pause_timer(room_code, player_id)

    async def _cmd_resume_timer(self, room_code, player_id, command):
        return await self.resume_timer(room_code, player_id)

    async def _cmd_acknowledge_penalty(self, room_code, player_id, command):
        await self.timer.acknowledge_penalty(room_code)
        return True

    async def _cmd_input(self, room_code, player_id, command):
        result = await self.puzzle_input(
            room_code,
            player_id,
            command.get("puzzle"),
            command.get("action"),
            char=command.get("char"),
            field_name=command.get("field"),
        )
        if isinstance(result, SubmitResult):
            return asdict(result)
        return result

    async def _cmd_file(self, room_code, player_id, command):
        explorer = self.file_explorer(room_code)
        action = command.get("action")
        if action == "select":
            return await explorer.select(player_id, command.get("path"))
        if action == "open":
            return await explorer.open(player_id, command.get("path") or "")
        if action == "navigate":
            return await explorer.navigate(player_id, command.get("path") or "/")
        if action == "back":
            return await explorer.back(player_id)
        if action == "close":
            return await explorer.close_file(player_id)
        if action == "unlock":
            return await explorer.unlock_prerequisite(
                player_id, command.get("name") or "", command.get("credential") or ""
            )
        raise CommandError(f"Unknown file action '{action}'")

    async def _cmd_desktop(self, room_code, player_id, command):
        desktop = self.desktop(room_code)
        window = command.get("window")
        is_open = bool(command.get("open", True))
        if window == "fileExplorer":
            return await desktop.set_file_explorer_open(player_id, is_open)
        if window == "firewall":
            return await desktop.set_firewall_window_open(player_id, is_open)
        raise CommandError(f"Unknown desktop window '{window}'")

    def shutdown(self) -> None:
        """Cancel all background work."""
        self.stages.release_all()
        self.clues.cancel_all()


# Global game service instance
_game_service: Optional[GameService] = None


def get_game_service() -> GameService:
    """Get global game service instance."""
    global _game_service
    if _game_service is None:
        _game_service = GameService()
    return _game_service


def reset_game_service(**kwargs) -> GameService:
    """Replace the global service with a fresh one (new empty store)."""
    global _game_service
    if _game_service is not None:
        _game_service.shutdown()
    kwargs.setdefault("store", SharedStore())
    _game_service = GameService(**kwargs)
    return _game_service
