"""
Tests for puzzle stages and the game service (stages.py + game_service.py).

Drives full lobby flows through the service: intro -> login -> desktop,
firewall and keypad solutions, penalties and the one-shot narrative
messages.
"""

import asyncio

import pytest

from app.core.chat import HackerChat
from app.core.game_service import CommandError, GameService
from app.core.input_channel import Charset, PuzzleConfig
from app.core.lobby import GameState, lobby_path
from app.core.lobby_manager import LobbyNotFoundError
from app.core.stages import (
    DESKTOP_TAUNT,
    FIREWALL,
    FIRST_MESSAGE,
    KEYPAD,
    LOGIN,
    LOGIN_HINT,
    default_puzzles,
)
from app.core.timer import initial_timer
from app.core.triggers import HACKER_DESKTOP_MESSAGE, stage_unlock_key


def quick_puzzles():
    """Default puzzles without the wrong-entry display delay."""
    puzzles = default_puzzles()
    for config in puzzles.values():
        config.clear_delay_seconds = 0
    return puzzles


@pytest.fixture
def service(store):
    service = GameService(store, puzzles=quick_puzzles(), clues=[], desktop_message_delay=0)
    yield service
    service.shutdown()


async def seed_room(store, room_code, phase, leader="p1"):
    """Write a started lobby with three players directly to the store."""
    await store.set(lobby_path(room_code), {
        "createdAt": 1,
        "gameState": GameState.PLAYING.value,
        "gamePhase": phase,
        "settings": {"timeLimitMinutes": 30},
        "players": {
            "p1": {"name": "Alice", "isHost": True, "isLeader": leader == "p1", "joinedAt": 1},
            "p2": {"name": "Bob", "isLeader": leader == "p2", "joinedAt": 2},
            "p3": {"name": "Carol", "isLeader": leader == "p3", "joinedAt": 3},
        },
        "selectedLeader": leader,
        "timer": initial_timer(1800),
    })


async def type_code(service, room_code, player_id, puzzle, text, field_name=None):
    await service.puzzle_input(room_code, player_id, puzzle, "activate", field_name=field_name)
    for ch in text:
        await service.puzzle_input(room_code, player_id, puzzle, "append", char=ch, field_name=field_name)


class TestFirewallScenario:
    """Three players in room ABCD1 crack a three-digit firewall code."""

    @pytest.mark.asyncio
    async def test_wrong_then_right(self, store):
        firewall = PuzzleConfig(
            key="firewallState",
            solution="876",
            max_length=3,
            charset=Charset.DIGITS,
            penalty_seconds=120,
            penalize_from_attempt=1,
            solved_field="active",
            clear_delay_seconds=0,
        )
        service = GameService(store, puzzles={FIREWALL: firewall}, clues=[], desktop_message_delay=0)
        await seed_room(store, "ABCD1", phase=2)
        await service.timer.start("ABCD1")

        # Non-leaders cannot type
        assert await service.puzzle_input("ABCD1", "p2", FIREWALL, "activate") is False

        await type_code(service, "ABCD1", "p1", FIREWALL, "123")
        result = await service.puzzle_input("ABCD1", "p1", FIREWALL, "submit")

        assert result.solved is False
        assert result.attempts == 1
        state = await store.get(lobby_path("ABCD1", "firewallState"))
        assert state["attempts"] == 1
        timer = await service.timer.get_state("ABCD1")
        assert timer.duration == 1800 - 120
        assert timer.penalty.count == 1

        await type_code(service, "ABCD1", "p1", FIREWALL, "876")
        result = await service.puzzle_input("ABCD1", "p1", FIREWALL, "submit")

        assert result.solved is True
        assert await store.get(lobby_path("ABCD1", "firewallState", "active")) is True
        assert await store.get(lobby_path("ABCD1", stage_unlock_key(FIREWALL), "sent")) is True
        assert await store.get(lobby_path("ABCD1", "desktopState", "fileExplorerUnlocked")) is True
        assert (await service.timer.get_state("ABCD1")).penalty.count == 1

        # Solved is terminal
        assert await service.puzzle_input("ABCD1", "p1", FIREWALL, "activate") is False
        service.shutdown()


class TestIntroAndLogin:
    """Phase 0 -> 1 -> 2 through the service."""

    @pytest.mark.asyncio
    async def test_intro_finished_starts_timer(self, service, store):
        room_code, host_id = await service.lobbies.create_lobby("Alice")
        guest = await service.lobbies.join_lobby(room_code, "Bob")

        # Not playing yet
        assert await service.mark_intro_finished(room_code, host_id) is False

        await service.lobbies.start_game(room_code, host_id)
        assert await service.mark_intro_finished(room_code, guest) is True
        assert await service.mark_intro_finished(room_code, host_id) is False

        lobby = await service.lobbies.get_lobby(room_code)
        assert lobby.game_phase == 1
        assert lobby.raw["videoEnded"] is True
        timer = await service.timer.get_state(room_code)
        assert timer.is_running is True
        assert timer.duration == 30 * 60

    @pytest.mark.asyncio
    async def test_login_flow(self, service, store):
        await seed_room(store, "LOGIN1", phase=1)
        await service.timer.start("LOGIN1")

        await type_code(service, "LOGIN1", "p1", LOGIN, "guest", field_name="username")
        first = await service.puzzle_input("LOGIN1", "p1", LOGIN, "submit")
        second = await service.puzzle_input("LOGIN1", "p1", LOGIN, "submit")
        third = await service.puzzle_input("LOGIN1", "p1", LOGIN, "submit")

        # First failure is free and opens the chat; penalties from the second
        assert first.penalty_applied is False
        assert second.penalty_applied is True
        assert third.penalty_applied is True
        messages = await HackerChat(store).list_messages("LOGIN1")
        assert [m.text for m in messages] == [FIRST_MESSAGE]
        assert messages[0].is_first_message is True
        assert await store.get(lobby_path("LOGIN1", "leaderInput", "hint")) == LOGIN_HINT

        await type_code(service, "LOGIN1", "p1", LOGIN, "sysadmin", field_name="username")
        await type_code(service, "LOGIN1", "p1", LOGIN, "F1r3w4ll#2023", field_name="password")
        result = await service.puzzle_input("LOGIN1", "p1", LOGIN, "submit")

        assert result.solved is True
        assert await service.phases.current_phase("LOGIN1") == 2

    @pytest.mark.asyncio
    async def test_login_locked_during_intro(self, service, store):
        """Credentials typed during the intro are ignored; the game still progresses."""
        room_code, host_id = await service.lobbies.create_lobby("Alice")
        await service.lobbies.join_lobby(room_code, "Bob")
        assert await service.cast_vote(room_code, host_id, host_id) == host_id
        await service.lobbies.start_game(room_code, host_id)

        await type_code(service, room_code, host_id, LOGIN, "sysadmin", field_name="username")
        await type_code(service, room_code, host_id, LOGIN, "F1r3w4ll#2023", field_name="password")
        early = await service.puzzle_input(room_code, host_id, LOGIN, "submit")

        assert early.accepted is False
        assert await service.stages.channel(room_code, LOGIN).is_solved() is False
        assert await service.phases.current_phase(room_code) == 0

        await service.mark_intro_finished(room_code, host_id)
        await type_code(service, room_code, host_id, LOGIN, "sysadmin", field_name="username")
        await type_code(service, room_code, host_id, LOGIN, "F1r3w4ll#2023", field_name="password")
        result = await service.puzzle_input(room_code, host_id, LOGIN, "submit")

        assert result.solved is True
        assert await service.phases.current_phase(room_code) == 2

    @pytest.mark.asyncio
    async def test_desktop_puzzles_locked_during_login(self, service, store):
        await seed_room(store, "LOGIN2", phase=1)

        await type_code(service, "LOGIN2", "p1", KEYPAD, "2004")
        await type_code(service, "LOGIN2", "p1", FIREWALL, "isgnorsaet")

        assert await store.get(lobby_path("LOGIN2", "keypadState")) is None
        assert await store.get(lobby_path("LOGIN2", "firewallState")) is None
        assert await service.phases.current_phase("LOGIN2") == 1


class TestDesktop:
    """Desktop stage: taunt, firewall, explorer window and keypad."""

    @pytest.mark.asyncio
    async def test_enter_desktop_posts_taunt_once(self, service, store):
        await seed_room(store, "DESK1", phase=2)

        results = [await service.enter_desktop("DESK1", pid) for pid in ("p2", "p1", "p3", "p1")]

        assert results == [False, True, False, False]
        messages = await service.chat.list_messages("DESK1")
        assert [m.text for m in messages] == [DESKTOP_TAUNT]
        assert await store.get(lobby_path("DESK1", HACKER_DESKTOP_MESSAGE, "sent")) is True

    @pytest.mark.asyncio
    async def test_taunt_is_scheduled_not_awaited(self, store):
        """With a delay the leader's call returns at once and the taunt follows."""
        service = GameService(store, puzzles=quick_puzzles(), clues=[], desktop_message_delay=0.05)
        await seed_room(store, "DESK6", phase=2)

        assert await service.enter_desktop("DESK6", "p2") is False
        assert await service.enter_desktop("DESK6", "p1") is True
        assert await service.enter_desktop("DESK6", "p1") is False
        assert await service.chat.list_messages("DESK6") == []

        await service.stages.wait_pending("DESK6")

        messages = await service.chat.list_messages("DESK6")
        assert [m.text for m in messages] == [DESKTOP_TAUNT]
        service.shutdown()

    @pytest.mark.asyncio
    async def test_scheduled_taunt_cancelled_on_release(self, store):
        service = GameService(store, puzzles=quick_puzzles(), clues=[], desktop_message_delay=0.05)
        await seed_room(store, "DESK7", phase=2)

        assert await service.enter_desktop("DESK7", "p1") is True
        service.release_lobby("DESK7")
        await asyncio.sleep(0.1)

        assert await service.chat.list_messages("DESK7") == []
        assert await store.get(lobby_path("DESK7", HACKER_DESKTOP_MESSAGE)) is None

    @pytest.mark.asyncio
    async def test_enter_desktop_before_phase(self, service, store):
        await seed_room(store, "DESK2", phase=1)
        assert await service.enter_desktop("DESK2", "p1") is False
        assert await service.chat.list_messages("DESK2") == []

    @pytest.mark.asyncio
    async def test_firewall_letters_solve_on_input(self, service, store):
        await seed_room(store, "DESK3", phase=2)
        desktop = service.desktop("DESK3")

        assert await desktop.set_file_explorer_open("p1", True) is False

        await type_code(service, "DESK3", "p1", FIREWALL, "isgnorsaet")

        assert await desktop.firewall_active() is True
        assert await desktop.set_file_explorer_open("p2", True) is False
        assert await desktop.set_file_explorer_open("p1", True) is True
        state = await desktop.get_state()
        assert state == {
            "fileExplorerOpen": True,
            "firewallWindowOpen": False,
            "fileExplorerUnlocked": True,
        }

    @pytest.mark.asyncio
    async def test_firewall_window(self, service, store):
        await seed_room(store, "DESK4", phase=2)
        desktop = service.desktop("DESK4")
        assert await desktop.set_firewall_window_open("p3", True) is False
        assert await desktop.set_firewall_window_open("p1", True) is True
        assert (await desktop.get_state())["firewallWindowOpen"] is True

    @pytest.mark.asyncio
    async def test_keypad_escape(self, service, store):
        """Four digits auto-submit; the right code ends the game."""
        await seed_room(store, "DESK5", phase=2)
        await service.timer.start("DESK5")

        await type_code(service, "DESK5", "p1", KEYPAD, "1111")
        state = await store.get(lobby_path("DESK5", "keypadState"))
        assert state["attempts"] == 1
        assert (await service.timer.get_state("DESK5")).penalty.count == 0

        await type_code(service, "DESK5", "p1", KEYPAD, "2004")

        assert await store.get(lobby_path("DESK5", "keypadState", "unlocked")) is True
        assert await service.phases.current_phase("DESK5") == 3


class TestDispatch:
    """Client command dispatch."""

    @pytest.mark.asyncio
    async def test_unknown_command(self, service, store):
        await seed_room(store, "CMD1", phase=0)
        with pytest.raises(CommandError):
            await service.dispatch("CMD1", "p1", {"type": "explode"})
        with pytest.raises(CommandError):
            await service.dispatch("CMD1", "p1", ["not", "a", "dict"])

    @pytest.mark.asyncio
    async def test_unknown_puzzle_and_action(self, service, store):
        await seed_room(store, "CMD2", phase=2)
        with pytest.raises(CommandError):
            await service.dispatch("CMD2", "p1", {"type": "input", "puzzle": "nope", "action": "submit"})
        with pytest.raises(CommandError):
            await service.dispatch("CMD2", "p1", {"type": "input", "puzzle": KEYPAD, "action": "dance"})
        with pytest.raises(CommandError):
            await service.dispatch("CMD2", "p1", {"type": "input", "puzzle": KEYPAD, "action": "append"})

    @pytest.mark.asyncio
    async def test_missing_lobby(self, service):
        with pytest.raises(LobbyNotFoundError):
            await service.dispatch("GONE1", "p1", {"type": "vote", "candidateId": "p1"})

    @pytest.mark.asyncio
    async def test_submit_result_is_serialisable(self, service, store):
        await seed_room(store, "CMD3", phase=2)
        await service.dispatch("CMD3", "p1", {"type": "input", "puzzle": KEYPAD, "action": "activate"})
        result = await service.dispatch("CMD3", "p1", {"type": "input", "puzzle": KEYPAD, "action": "submit"})
        assert result["accepted"] is True
        assert result["attempts"] == 1

    @pytest.mark.asyncio
    async def test_vote_and_timer_commands(self, service, store):
        room_code, host_id = await service.lobbies.create_lobby("Alice")
        guest = await service.lobbies.join_lobby(room_code, "Bob")

        await service.dispatch(room_code, host_id, {"type": "vote", "candidateId": guest})
        leader = await service.dispatch(room_code, guest, {"type": "vote", "candidateId": guest})
        assert leader == guest

        assert await service.dispatch(room_code, guest, {"type": "reset_votes"}) is False
        assert await service.dispatch(room_code, host_id, {"type": "reset_votes"}) is True

        await service.timer.start(room_code)
        assert await service.dispatch(room_code, guest, {"type": "pause_timer"}) is False
        assert await service.dispatch(room_code, host_id, {"type": "pause_timer"}) is True
        assert await service.dispatch(room_code, host_id, {"type": "resume_timer"}) is True

    @pytest.mark.asyncio
    async def test_file_and_desktop_commands(self, service, store):
        await seed_room(store, "CMD4", phase=2)
        # Firewall still up
        assert await service.dispatch("CMD4", "p1", {"type": "file", "action": "navigate", "path": "/Core"}) is False
        await store.set(lobby_path("CMD4", "desktopState", "fileExplorerUnlocked"), True)
        assert await service.dispatch("CMD4", "p1", {"type": "file", "action": "navigate", "path": "/Core"}) is True
        assert await service.dispatch("CMD4", "p2", {"type": "file", "action": "select", "path": "/Core/SystemLogs"}) == "/Core/SystemLogs"
        with pytest.raises(CommandError):
            await service.dispatch("CMD4", "p1", {"type": "file", "action": "delete"})
        with pytest.raises(CommandError):
            await service.dispatch("CMD4", "p1", {"type": "desktop", "window": "terminal"})

    @pytest.mark.asyncio
    async def test_lobby_view(self, service, store, clock):
        await seed_room(store, "VIEW1", phase=2)
        await service.timer.start("VIEW1")
        clock.advance(65)
        await service.chat.post_message("VIEW1", "hello [FILE: a.txt]")

        view = await service.lobby_view("VIEW1")

        assert view["roomCode"] == "VIEW1"
        assert view["serverTime"] == clock.now
        assert view["timer"] == {"remainingSeconds": 1735, "display": "28:55"}
        assert view["votes"]["threshold"] == 2
        assert view["chat"][0]["displayText"] == "hello"
        assert view["fileExplorer"]["currentPath"] == "/"
        assert await service.lobby_view("NOPE1") is None

    @pytest.mark.asyncio
    async def test_leave_releases_lobby(self, service, store):
        room_code, host_id = await service.lobbies.create_lobby("Alice")
        service.stages.channel(room_code, KEYPAD)

        assert await service.leave_lobby(room_code, host_id) is True
        assert await store.exists(lobby_path(room_code)) is False
        assert (room_code, KEYPAD) not in service.stages._channels
