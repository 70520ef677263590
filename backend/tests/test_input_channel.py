"""
Unit tests for the leader-arbitrated input channel (input_channel.py).

Covers leader exclusivity, character filtering, submit outcomes,
penalty policy and the read-only observer view.
"""

import pytest

from app.core.input_channel import (
    ArbitratedInputChannel,
    ChannelObserver,
    Charset,
    PuzzleConfig,
    typing_indicator,
)
from app.core.lobby import lobby_path, player_path
from app.core.timer import TimerService, initial_timer

ROOM = "CHAN1"
LEADER = "leader1"
OTHER = "player2"


def code_config(**overrides):
    """Three-digit code puzzle with immediate clearing."""
    params = dict(
        key="codeState",
        solution="876",
        max_length=3,
        charset=Charset.DIGITS,
        clear_delay_seconds=0,
    )
    params.update(overrides)
    return PuzzleConfig(**params)


async def type_text(channel, player_id, text):
    for ch in text:
        await channel.append_char(player_id, ch)


@pytest.fixture
def timer(store):
    return TimerService(store)


@pytest.fixture
def make_channel(store, timer):
    def _make(config):
        return ArbitratedInputChannel(store, ROOM, config, timer)
    return _make


async def seed_lobby(store):
    await store.set(player_path(ROOM, LEADER), {"name": "Alice", "isLeader": True})
    await store.set(player_path(ROOM, OTHER), {"name": "Bob", "isLeader": False})


class TestPuzzleConfig:
    """Test character filtering and penalty policy."""

    def test_digits_only(self):
        config = code_config()
        assert config.normalize_char("7") == "7"
        assert config.normalize_char("a") is None
        assert config.normalize_char("12") is None

    def test_letters_uppercased(self):
        config = PuzzleConfig(key="k", solution="ABC", charset=Charset.LETTERS, uppercase=True)
        assert config.normalize_char("q") == "Q"
        assert config.normalize_char("1") is None

    def test_penalty_policy(self):
        """penalize_from_attempt selects which failures cost time."""
        every = code_config(penalty_seconds=120, penalize_from_attempt=1)
        from_second = code_config(penalty_seconds=120, penalize_from_attempt=2)
        never = code_config(penalty_seconds=120, penalize_from_attempt=None)

        assert every.penalizes(1) is True
        assert from_second.penalizes(1) is False
        assert from_second.penalizes(2) is True
        assert never.penalizes(5) is False

    def test_expected_multi_field(self):
        config = PuzzleConfig(key="k", solution={"username": "u", "password": "p"}, fields=("username", "password"))
        assert config.expected() == {"username": "u", "password": "p"}


class TestLeaderExclusivity:
    """Only the leader can change the channel."""

    @pytest.mark.asyncio
    async def test_non_leader_actions_are_noops(self, store, make_channel):
        """Every mutation from a non-leader leaves the state untouched."""
        await seed_lobby(store)
        channel = make_channel(code_config())
        await channel.activate(LEADER, "Alice")
        await channel.append_char(LEADER, "8")
        before = await store.get(channel.path)

        assert await channel.activate(OTHER, "Bob") is False
        assert await channel.append_char(OTHER, "7") is False
        assert await channel.backspace(OTHER) is False
        assert await channel.clear(OTHER) is False
        assert await channel.deactivate(OTHER) is False
        assert (await channel.submit(OTHER)).accepted is False

        assert await store.get(channel.path) == before

    @pytest.mark.asyncio
    async def test_unknown_player_rejected(self, store, make_channel):
        await seed_lobby(store)
        channel = make_channel(code_config())
        assert await channel.activate("ghost", "Ghost") is False
        assert await store.get(channel.path) is None

    @pytest.mark.asyncio
    async def test_typing_requires_activation(self, store, make_channel):
        """Characters are ignored until the leader activates the input."""
        await seed_lobby(store)
        channel = make_channel(code_config())

        assert await channel.append_char(LEADER, "8") is False
        await channel.activate(LEADER, "Alice")
        assert await channel.append_char(LEADER, "8") is True


class TestLockedPhase:
    """A puzzle bound to a phase ignores input outside it."""

    @pytest.mark.asyncio
    async def test_locked_before_its_phase(self, store, make_channel):
        await seed_lobby(store)
        await store.set(lobby_path(ROOM, "gamePhase"), 1)
        channel = make_channel(code_config(active_phase=2))

        assert await channel.is_unlocked() is False
        assert await channel.activate(LEADER, "Alice") is False
        result = await channel.submit(LEADER)
        assert result.accepted is False
        assert await store.get(channel.path) is None

        await store.set(lobby_path(ROOM, "gamePhase"), 2)
        assert await channel.activate(LEADER, "Alice") is True
        await type_text(channel, LEADER, "876")
        assert (await channel.submit(LEADER)).solved is True

    @pytest.mark.asyncio
    async def test_locked_again_after_its_phase(self, store, make_channel):
        await seed_lobby(store)
        await store.set(lobby_path(ROOM, "gamePhase"), 3)
        channel = make_channel(code_config(active_phase=2))

        assert await channel.activate(LEADER, "Alice") is False

    @pytest.mark.asyncio
    async def test_unbound_puzzle_always_open(self, store, make_channel):
        await seed_lobby(store)
        channel = make_channel(code_config())
        assert await channel.is_unlocked() is True


class TestTyping:
    """Test append, backspace and clear."""

    @pytest.mark.asyncio
    async def test_value_is_published(self, store, make_channel):
        """Each keystroke is visible to observers with the owner name."""
        await seed_lobby(store)
        channel = make_channel(code_config())
        await channel.activate(LEADER, "Alice")

        await type_text(channel, LEADER, "8x7")

        state = await channel.get_state()
        assert state["value"] == "87"
        assert state["ownerName"] == "Alice"
        assert state["isInputActive"] is True

    @pytest.mark.asyncio
    async def test_max_length(self, store, make_channel):
        await seed_lobby(store)
        channel = make_channel(code_config(max_length=2))
        await channel.activate(LEADER, "Alice")

        await type_text(channel, LEADER, "123")

        assert (await channel.get_state())["value"] == "12"

    @pytest.mark.asyncio
    async def test_backspace_and_clear(self, store, make_channel):
        await seed_lobby(store)
        channel = make_channel(code_config())
        await channel.activate(LEADER, "Alice")
        await type_text(channel, LEADER, "12")

        assert await channel.backspace(LEADER) is True
        assert (await channel.get_state())["value"] == "1"

        assert await channel.clear(LEADER) is True
        assert (await channel.get_state())["value"] == ""
        assert await channel.backspace(LEADER) is False

    @pytest.mark.asyncio
    async def test_multi_field_typing(self, store, make_channel):
        """Characters go to the field that was activated."""
        await seed_lobby(store)
        config = PuzzleConfig(
            key="leaderInput",
            solution={"username": "ab", "password": "cd"},
            fields=("username", "password"),
            clear_delay_seconds=0,
        )
        channel = make_channel(config)

        await channel.activate(LEADER, "Alice", "username")
        await type_text(channel, LEADER, "ab")
        await channel.activate(LEADER, "Alice", "password")
        await type_text(channel, LEADER, "cd")

        state = await channel.get_state()
        assert state["username"] == "ab"
        assert state["password"] == "cd"
        result = await channel.submit(LEADER)
        assert result.solved is True

    @pytest.mark.asyncio
    async def test_deactivate(self, store, make_channel):
        await seed_lobby(store)
        channel = make_channel(code_config())
        await channel.activate(LEADER, "Alice")

        assert await channel.deactivate(LEADER) is True

        state = await channel.get_state()
        assert state["isInputActive"] is False
        assert state["ownerName"] is None


class TestSubmit:
    """Test submit outcomes."""

    @pytest.mark.asyncio
    async def test_wrong_entry(self, store, make_channel):
        """Mismatch increments attempts and clears the entry."""
        await seed_lobby(store)
        channel = make_channel(code_config())
        await channel.activate(LEADER, "Alice")
        await type_text(channel, LEADER, "123")

        result = await channel.submit(LEADER)

        assert result.accepted is True
        assert result.solved is False
        assert result.attempts == 1
        assert result.error == "Access denied. Invalid code."
        state = await channel.get_state()
        assert state["attempts"] == 1
        assert state["value"] == ""
        assert state["error"] == ""
        assert state["solved"] is False

    @pytest.mark.asyncio
    async def test_delayed_clear_shows_error_first(self, store, make_channel):
        """With a display delay the error stays until the clear runs."""
        await seed_lobby(store)
        channel = make_channel(code_config(clear_delay_seconds=0.01))
        await channel.activate(LEADER, "Alice")
        await type_text(channel, LEADER, "123")

        await channel.submit(LEADER)
        state = await channel.get_state()
        assert state["error"] == "Access denied. Invalid code."
        assert state["value"] == "123"

        await channel.wait_pending()
        state = await channel.get_state()
        assert state["error"] == ""
        assert state["value"] == ""

    @pytest.mark.asyncio
    async def test_correct_entry_is_terminal(self, store, make_channel):
        """A solved channel ignores further input."""
        await seed_lobby(store)
        channel = make_channel(code_config())
        solved_hooks = []
        channel.on_solved(lambda ch, pid, outcome: solved_hooks.append(pid))
        await channel.activate(LEADER, "Alice")
        await type_text(channel, LEADER, "876")

        result = await channel.submit(LEADER)

        assert result.solved is True
        assert await channel.is_solved() is True
        assert solved_hooks == [LEADER]

        assert await channel.activate(LEADER, "Alice") is False
        assert await channel.append_char(LEADER, "1") is False
        assert (await channel.submit(LEADER)).accepted is False
        assert solved_hooks == [LEADER]

    @pytest.mark.asyncio
    async def test_auto_submit_when_full(self, store, make_channel):
        await seed_lobby(store)
        channel = make_channel(code_config(auto_submit_on_full=True))
        await channel.activate(LEADER, "Alice")

        await type_text(channel, LEADER, "876")

        assert await channel.is_solved() is True

    @pytest.mark.asyncio
    async def test_check_on_input_solves_without_submit(self, store, make_channel):
        await seed_lobby(store)
        channel = make_channel(code_config(check_on_input=True, max_length=None))
        await channel.activate(LEADER, "Alice")

        await type_text(channel, LEADER, "87")
        assert await channel.is_solved() is False
        await channel.append_char(LEADER, "6")
        assert await channel.is_solved() is True

    @pytest.mark.asyncio
    async def test_failed_hook_receives_outcome(self, store, make_channel):
        await seed_lobby(store)
        channel = make_channel(code_config())
        failures = []

        async def on_failed(ch, pid, outcome):
            failures.append(outcome.attempts)

        channel.on_failed(on_failed)
        await channel.activate(LEADER, "Alice")
        await channel.submit(LEADER)
        await channel.submit(LEADER)

        assert failures == [1, 2]


class TestPenalties:
    """Test timer penalties on wrong entries."""

    @pytest.mark.asyncio
    async def test_penalty_every_attempt(self, store, make_channel, timer):
        await seed_lobby(store)
        await store.set(lobby_path(ROOM, "timer"), initial_timer(1800))
        await timer.start(ROOM)
        channel = make_channel(code_config(penalty_seconds=120, penalize_from_attempt=1))
        await channel.activate(LEADER, "Alice")
        await type_text(channel, LEADER, "123")

        result = await channel.submit(LEADER)

        assert result.penalty_applied is True
        state = await timer.get_state(ROOM)
        assert state.duration == 1680
        assert state.penalty.count == 1

    @pytest.mark.asyncio
    async def test_penalty_from_second_attempt(self, store, make_channel, timer):
        await seed_lobby(store)
        await store.set(lobby_path(ROOM, "timer"), initial_timer(1800))
        await timer.start(ROOM)
        channel = make_channel(code_config(penalty_seconds=120, penalize_from_attempt=2))
        await channel.activate(LEADER, "Alice")

        first = await channel.submit(LEADER)
        second = await channel.submit(LEADER)

        assert first.penalty_applied is False
        assert second.penalty_applied is True
        assert (await timer.get_state(ROOM)).penalty.count == 1

    @pytest.mark.asyncio
    async def test_no_penalty_when_timer_stopped(self, store, make_channel, timer):
        await seed_lobby(store)
        await store.set(lobby_path(ROOM, "timer"), initial_timer(1800))
        channel = make_channel(code_config(penalty_seconds=120, penalize_from_attempt=1))
        await channel.activate(LEADER, "Alice")

        result = await channel.submit(LEADER)

        assert result.attempts == 1
        assert result.penalty_applied is False


class TestObservers:
    """Test the read-only view for other players."""

    def test_typing_indicator(self):
        assert typing_indicator({"isInputActive": True, "ownerName": "Alice"}) == "Alice is typing..."
        assert typing_indicator({"isInputActive": False, "ownerName": "Alice"}) is None
        assert typing_indicator(None) is None

    @pytest.mark.asyncio
    async def test_observer_sees_masked_mirror(self, store, make_channel):
        """Observers see the leader's entry with password fields masked."""
        await seed_lobby(store)
        config = PuzzleConfig(
            key="leaderInput",
            solution={"username": "admin", "password": "secret"},
            fields=("username", "password"),
        )
        channel = make_channel(config)
        await channel.activate(LEADER, "Alice", "username")
        await type_text(channel, LEADER, "adm")
        await channel.activate(LEADER, "Alice", "password")
        await type_text(channel, LEADER, "sec")

        view = ChannelObserver(config, masked_fields=("password",)).render(await store.get(channel.path))

        assert view["values"] == {"username": "adm", "password": "***"}
        assert view["indicator"] == "Alice is typing..."
        assert view["solved"] is False
