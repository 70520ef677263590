"""
Room code and player identity generation.

Room codes are short, human-typeable strings shared out of band.
Player IDs are opaque random tokens; the ID is the only credential a
client holds and travels in the lobby URL (?uid=...&name=...).
"""

import random
import string
from urllib.parse import urlencode

# No 0/O or 1/I to keep codes readable aloud
ROOM_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
PLAYER_ID_ALPHABET = string.ascii_letters + string.digits

_rng = random.SystemRandom()


def generate_room_code(length: int = 6) -> str:
    """
    Generate a random room code.

    Example: K7MRQ2

    Args:
        length: Number of characters

    Returns:
        A random room code string
    """
    return "".join(_rng.choice(ROOM_CODE_ALPHABET) for _ in range(length))


def is_valid_room_code(code: str) -> bool:
    """
    Validate room code format.

    Args:
        code: Code to validate

    Returns:
        True if code is 4-8 characters from the room code alphabet
    """
    if not code:
        return False

    code = code.upper()
    if len(code) < 4 or len(code) > 8:
        return False

    return all(ch in ROOM_CODE_ALPHABET for ch in code)


def generate_player_id(length: int = 20) -> str:
    """Generate an opaque player token."""
    return "".join(_rng.choice(PLAYER_ID_ALPHABET) for _ in range(length))


def build_join_url(room_code: str, player_id: str, name: str) -> str:
    """
    Build the lobby URL a client keeps for the rest of the session.

    Args:
        room_code: Lobby room code
        player_id: Player token
        name: Display name

    Returns:
        Relative URL such as /lobby/K7MRQ2?uid=...&name=...
    """
    return f"/lobby/{room_code}?{urlencode({'uid': player_id, 'name': name})}"
