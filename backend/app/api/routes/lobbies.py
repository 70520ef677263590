"""
REST API endpoints for lobby management.

Provides the lobby command surface:
- Create, join, rejoin and leave lobbies
- Heartbeat and readiness
- Start game (host only), intro finished
- Leader votes and vote reset (host only)
- Timer status, pause/resume (host only), penalty acknowledgement
- Chat feed and puzzle input
"""

from typing import Dict, List, Optional
from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field
import logging

from app.config import get_settings
from app.core.game_service import CommandError, get_game_service
from app.core.join_code import build_join_url, is_valid_room_code
from app.core.lobby import LobbySettings, LobbySnapshot
from app.core.lobby_manager import LobbyFullError, LobbyNotFoundError
from app.core.store import StoreError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/lobbies")
settings = get_settings()

NAME_FIELD = dict(min_length=settings.game.MIN_NAME_LENGTH, max_length=settings.game.MAX_NAME_LENGTH)


# ===== Pydantic Models =====

class CreateLobbyRequest(BaseModel):
    """Request to create a new lobby."""
    name: str = Field(..., description="Host display name", **NAME_FIELD)
    time_limit_minutes: int = Field(
        default=settings.timer.DEFAULT_TIME_LIMIT_MINUTES, ge=1, le=180,
        description="Countdown length in minutes",
    )


class JoinLobbyRequest(BaseModel):
    """Request to join a lobby."""
    name: str = Field(..., description="Player display name", **NAME_FIELD)


class RejoinLobbyRequest(BaseModel):
    """Request from a returning client that still holds its ID."""
    player_id: str = Field(..., min_length=1)
    name: str = Field(..., description="Player display name", **NAME_FIELD)


class PlayerRequest(BaseModel):
    """Request carrying only the acting player."""
    player_id: str = Field(..., min_length=1)


class ReadyRequest(BaseModel):
    """Request to toggle readiness."""
    player_id: str = Field(..., min_length=1)
    ready: bool = True


class VoteRequest(BaseModel):
    """Request to cast, change or withdraw a leader vote."""
    voter_id: str = Field(..., min_length=1)
    candidate_id: Optional[str] = Field(default=None, description="Null withdraws the vote")


class InputRequest(BaseModel):
    """Puzzle input action."""
    player_id: str = Field(..., min_length=1)
    action: str = Field(..., description="activate, append, backspace, clear, submit or deactivate")
    char: Optional[str] = Field(default=None, max_length=1)
    field: Optional[str] = None


class JoinResponse(BaseModel):
    """Identity handed to a player entering a lobby."""
    room_code: str
    player_id: str
    join_url: str


class PlayerResponse(BaseModel):
    """Player information in a lobby."""
    id: str
    name: str
    is_host: bool
    is_leader: bool
    is_ready: bool
    voted_for: Optional[str] = None


class LobbyResponse(BaseModel):
    """Lobby summary."""
    room_code: str
    game_state: str
    game_phase: int
    time_limit_minutes: int
    players: List[PlayerResponse]
    selected_leader: Optional[str] = None
    all_players_ready: bool


class VoteResponse(BaseModel):
    """Vote tallies after a vote."""
    selected_leader: Optional[str] = None
    tallies: Dict[str, int]
    threshold: int


class TimerResponse(BaseModel):
    """Timer status as seen by the server."""
    remaining_seconds: int
    display: str
    is_running: bool
    has_started: bool
    penalty_count: int
    penalty_active: bool


class ChatMessageResponse(BaseModel):
    """Chat message."""
    id: str
    sender: str
    text: str
    display_text: str
    timestamp: int
    is_file: bool = False
    file_name: Optional[str] = None
    is_first_message: bool = False


class SubmitResponse(BaseModel):
    """Result of a puzzle input action."""
    accepted: bool
    solved: bool = False
    attempts: int = 0
    penalty_applied: bool = False
    error: str = ""


# ===== Helper Functions =====

def _lobby_to_response(lobby: LobbySnapshot) -> LobbyResponse:
    """Convert LobbySnapshot to API response."""
    return LobbyResponse(
        room_code=lobby.room_code,
        game_state=lobby.game_state.value,
        game_phase=lobby.game_phase,
        time_limit_minutes=lobby.settings.time_limit_minutes,
        players=[
            PlayerResponse(
                id=p.id,
                name=p.name,
                is_host=p.is_host,
                is_leader=p.is_leader,
                is_ready=p.is_ready,
                voted_for=p.voted_for,
            )
            for p in lobby.players_by_join_order()
        ],
        selected_leader=lobby.selected_leader,
        all_players_ready=lobby.all_players_ready(settings.game.MIN_PLAYERS_TO_START),
    )


def _normalize_code(room_code: str) -> str:
    if not is_valid_room_code(room_code):
        raise HTTPException(status_code=404, detail=f"Lobby {room_code} not found")
    return room_code.upper()


async def _require_lobby(room_code: str) -> LobbySnapshot:
    try:
        return await get_game_service().lobbies.require_lobby(_normalize_code(room_code))
    except LobbyNotFoundError:
        raise HTTPException(status_code=404, detail=f"Lobby {room_code} not found")


def _store_unavailable(e: StoreError) -> HTTPException:
    logger.error(f"Store error on {e.path}: {e}")
    return HTTPException(
        status_code=503,
        detail="Shared state temporarily unavailable, please retry",
        headers={"Retry-After": "1"},
    )


# ===== API Endpoints =====

@router.post("", response_model=JoinResponse, status_code=201)
async def create_lobby(request: CreateLobbyRequest):
    """
    Create a new lobby.

    The creator becomes the host.
    """
    service = get_game_service()
    try:
        room_code, player_id = await service.lobbies.create_lobby(
            request.name,
            LobbySettings(time_limit_minutes=request.time_limit_minutes),
        )
    except StoreError as e:
        raise _store_unavailable(e)

    return JoinResponse(
        room_code=room_code,
        player_id=player_id,
        join_url=build_join_url(room_code, player_id, request.name),
    )


@router.get("/{room_code}", response_model=LobbyResponse)
async def get_lobby(room_code: str):
    """Get lobby details."""
    return _lobby_to_response(await _require_lobby(room_code))


@router.get("/{room_code}/state")
async def get_lobby_state(room_code: str) -> dict:
    """Full lobby document plus server-derived values (same payload as the WebSocket push)."""
    view = await get_game_service().lobby_view(_normalize_code(room_code))
    if view is None:
        raise HTTPException(status_code=404, detail=f"Lobby {room_code} not found")
    return view


@router.post("/{room_code}/join", response_model=JoinResponse)
async def join_lobby(room_code: str, request: JoinLobbyRequest):
    """
    Join a lobby.

    Raises:
        404: Lobby not found
        409: Lobby full
    """
    room_code = _normalize_code(room_code)
    try:
        player_id = await get_game_service().lobbies.join_lobby(room_code, request.name)
    except LobbyNotFoundError:
        raise HTTPException(status_code=404, detail=f"Lobby {room_code} not found")
    except LobbyFullError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except StoreError as e:
        raise _store_unavailable(e)

    return JoinResponse(
        room_code=room_code,
        player_id=player_id,
        join_url=build_join_url(room_code, player_id, request.name),
    )


@router.post("/{room_code}/rejoin", response_model=LobbyResponse)
async def rejoin_lobby(room_code: str, request: RejoinLobbyRequest):
    """Restore a returning player's record."""
    lobby = await _require_lobby(room_code)
    await get_game_service().lobbies.rejoin_lobby(lobby.room_code, request.player_id, request.name)
    return _lobby_to_response(await _require_lobby(room_code))


@router.post("/{room_code}/leave", status_code=204)
async def leave_lobby(room_code: str, request: PlayerRequest):
    """Leave a lobby. The lobby is removed with its last player."""
    lobby = await _require_lobby(room_code)
    if not await get_game_service().leave_lobby(lobby.room_code, request.player_id):
        raise HTTPException(status_code=404, detail="Player not in lobby")


@router.post("/{room_code}/heartbeat")
async def heartbeat(room_code: str, request: PlayerRequest) -> dict:
    """Refresh a player's lastActive timestamp."""
    lobby = await _require_lobby(room_code)
    if not await get_game_service().lobbies.heartbeat(lobby.room_code, request.player_id):
        raise HTTPException(status_code=404, detail="Player not in lobby")
    return {"ok": True}


@router.post("/{room_code}/ready", response_model=LobbyResponse)
async def set_ready(room_code: str, request: ReadyRequest):
    """Set a player's readiness."""
    lobby = await _require_lobby(room_code)
    if not await get_game_service().lobbies.set_ready(lobby.room_code, request.player_id, request.ready):
        raise HTTPException(status_code=404, detail="Player not in lobby")
    return _lobby_to_response(await _require_lobby(room_code))


@router.post("/{room_code}/start", response_model=LobbyResponse)
async def start_game(room_code: str, request: PlayerRequest):
    """
    Start the game (host only).

    Raises:
        403: Not the host
        409: Game already started
    """
    lobby = await _require_lobby(room_code)
    if not lobby.is_host(request.player_id):
        raise HTTPException(status_code=403, detail="Only the host can start the game")
    if not await get_game_service().lobbies.start_game(lobby.room_code, request.player_id):
        raise HTTPException(status_code=409, detail="Game already started")
    return _lobby_to_response(await _require_lobby(room_code))


@router.post("/{room_code}/intro-finished")
async def intro_finished(room_code: str, request: PlayerRequest) -> dict:
    """Report that the intro video ended. Enters phase 1 and starts the timer once."""
    lobby = await _require_lobby(room_code)
    service = get_game_service()
    advanced = await service.mark_intro_finished(lobby.room_code, request.player_id)
    return {
        "advanced": advanced,
        "game_phase": await service.phases.current_phase(lobby.room_code),
    }


@router.post("/{room_code}/votes", response_model=VoteResponse)
async def cast_vote(room_code: str, request: VoteRequest):
    """Cast, change or withdraw a leader vote."""
    lobby = await _require_lobby(room_code)
    if request.voter_id not in lobby.players:
        raise HTTPException(status_code=404, detail="Player not in lobby")
    if request.candidate_id is not None and request.candidate_id not in lobby.players:
        raise HTTPException(status_code=404, detail="Candidate not in lobby")

    service = get_game_service()
    try:
        await service.cast_vote(lobby.room_code, request.voter_id, request.candidate_id)
    except StoreError as e:
        raise _store_unavailable(e)

    summary = service.election.summary(await _require_lobby(room_code))
    return VoteResponse(
        selected_leader=summary["selectedLeader"],
        tallies=summary["tallies"],
        threshold=summary["threshold"],
    )


@router.delete("/{room_code}/votes", response_model=LobbyResponse)
async def reset_votes(room_code: str, player_id: str):
    """
    Reset all leader votes (host only).

    Raises:
        403: Not the host
    """
    lobby = await _require_lobby(room_code)
    if not await get_game_service().reset_votes(lobby.room_code, player_id):
        raise HTTPException(status_code=403, detail="Only the host can reset votes")
    return _lobby_to_response(await _require_lobby(room_code))


@router.get("/{room_code}/timer", response_model=TimerResponse)
async def get_timer(room_code: str):
    """Get the countdown as seen by the server."""
    lobby = await _require_lobby(room_code)
    service = get_game_service()
    state = await service.timer.get_state(lobby.room_code)
    if state is None:
        raise HTTPException(status_code=404, detail="Timer not found")

    now = service.store.server_time()
    return TimerResponse(
        remaining_seconds=state.remaining(now),
        display=state.display(now),
        is_running=state.is_running,
        has_started=state.has_started,
        penalty_count=state.penalty.count,
        penalty_active=state.penalty.active,
    )


@router.post("/{room_code}/timer/pause")
async def pause_timer(room_code: str, request: PlayerRequest) -> dict:
    """Pause the countdown (host only)."""
    lobby = await _require_lobby(room_code)
    if not lobby.is_host(request.player_id):
        raise HTTPException(status_code=403, detail="Only the host can pause the timer")
    return {"paused": await get_game_service().pause_timer(lobby.room_code, request.player_id)}


@router.post("/{room_code}/timer/resume")
async def resume_timer(room_code: str, request: PlayerRequest) -> dict:
    """Resume the countdown (host only)."""
    lobby = await _require_lobby(room_code)
    if not lobby.is_host(request.player_id):
        raise HTTPException(status_code=403, detail="Only the host can resume the timer")
    return {"resumed": await get_game_service().resume_timer(lobby.room_code, request.player_id)}


@router.post("/{room_code}/timer/penalty/ack")
async def acknowledge_penalty(room_code: str) -> dict:
    """Clear the penalty cue. Safe to call from every client."""
    lobby = await _require_lobby(room_code)
    await get_game_service().timer.acknowledge_penalty(lobby.room_code)
    return {"ok": True}


@router.get("/{room_code}/chat", response_model=List[ChatMessageResponse])
async def list_chat(room_code: str):
    """Chat messages in server-timestamp order."""
    lobby = await _require_lobby(room_code)
    messages = await get_game_service().chat.list_messages(lobby.room_code)
    return [
        ChatMessageResponse(
            id=m.id,
            sender=m.sender,
            text=m.text,
            display_text=m.to_dict()["displayText"],
            timestamp=m.timestamp,
            is_file=m.is_file,
            file_name=m.file_name,
            is_first_message=m.is_first_message,
        )
        for m in messages
    ]


@router.get("/{room_code}/puzzles/{puzzle}")
async def get_puzzle(room_code: str, puzzle: str) -> dict:
    """Current state of a puzzle's input channel."""
    lobby = await _require_lobby(room_code)
    service = get_game_service()
    if puzzle not in service.stages.puzzles:
        raise HTTPException(status_code=404, detail=f"Unknown puzzle '{puzzle}'")
    return await service.stages.channel(lobby.room_code, puzzle).get_state()


@router.post("/{room_code}/puzzles/{puzzle}/input", response_model=SubmitResponse)
async def puzzle_input(room_code: str, puzzle: str, request: InputRequest):
    """
    Apply an input action (leader only).

    Raises:
        403: Not the leader
        404: Unknown puzzle
        409: Puzzle not reachable in the current phase
        422: Unknown action
    """
    lobby = await _require_lobby(room_code)
    service = get_game_service()
    if puzzle not in service.stages.puzzles:
        raise HTTPException(status_code=404, detail=f"Unknown puzzle '{puzzle}'")
    if not lobby.is_leader(request.player_id):
        raise HTTPException(status_code=403, detail="Only the leader can type")
    if not await service.stages.channel(lobby.room_code, puzzle).is_unlocked():
        raise HTTPException(status_code=409, detail=f"Puzzle '{puzzle}' is locked")

    try:
        result = await service.puzzle_input(
            lobby.room_code, request.player_id, puzzle, request.action,
            char=request.char, field_name=request.field,
        )
    except CommandError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except StoreError as e:
        raise _store_unavailable(e)

    if isinstance(result, bool):
        return SubmitResponse(accepted=result)
    return SubmitResponse(
        accepted=result.accepted,
        solved=result.solved,
        attempts=result.attempts,
        penalty_applied=result.penalty_applied,
        error=result.error,
    )
