"""
Hacker chat feed.

An append-only log of narrative messages at lobbies/{code}/hackerChat.
Messages are pushed with a server timestamp; readers fetch the unordered
key map and re-order it by (timestamp, key). File-bearing messages embed a
bracketed marker in their text that is stripped for display.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from app.core.lobby import lobby_path
from app.core.store import SERVER_TIMESTAMP, SharedStore
from app.core.triggers import OneShotTrigger, TriggerOutcome, clue_key

logger = logging.getLogger(__name__)

FILE_MARKER = re.compile(r"\s*\[FILE:[^\]]*\]\s*")

HACKER = "hacker"
PLAYER = "player"


@dataclass
class ChatMessage:
    """One chat entry."""
    id: str
    sender: str
    text: str
    timestamp: int
    is_file: bool = False
    file_name: Optional[str] = None
    decrypted_content: Optional[str] = None
    is_first_message: bool = False

    @classmethod
    def from_store(cls, message_id: str, data: Dict[str, Any]) -> "ChatMessage":
        return cls(
            id=message_id,
            sender=data.get("sender", HACKER),
            text=data.get("text", ""),
            timestamp=int(data.get("timestamp") or 0),
            is_file=bool(data.get("isFile")),
            file_name=data.get("fileName"),
            decrypted_content=data.get("decryptedContent"),
            is_first_message=bool(data.get("isFirstMessage")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sender": self.sender,
            "text": self.text,
            "displayText": display_text(self.text),
            "timestamp": self.timestamp,
            "isFile": self.is_file,
            "fileName": self.file_name,
            "decryptedContent": self.decrypted_content,
            "isFirstMessage": self.is_first_message,
        }


def display_text(text: str) -> str:
    """Strip [FILE: ...] markers from message text."""
    return FILE_MARKER.sub(" ", text or "").strip()


def order_messages(data: Optional[Dict[str, Dict[str, Any]]]) -> List[ChatMessage]:
    """Turn the stored key map into a list ordered by server timestamp."""
    messages = [
        ChatMessage.from_store(message_id, message)
        for message_id, message in (data or {}).items()
        if message
    ]
    return sorted(messages, key=lambda m: (m.timestamp, m.id))


class HackerChat:
    """Posts and reads a lobby's chat feed."""

    def __init__(self, store: SharedStore):
        self._store = store

    def _path(self, room_code: str) -> str:
        return lobby_path(room_code, "hackerChat")

    async def post_message(
        self,
        room_code: str,
        text: str,
        sender: str = HACKER,
        is_file: bool = False,
        file_name: Optional[str] = None,
        decrypted_content: Optional[str] = None,
        is_first_message: bool = False,
    ) -> str:
        """
        Append a message.

        Args:
            room_code: Lobby room code
            text: Message text (file messages carry a [FILE: name] marker)
            sender: "hacker" or "player"
            is_file: Message represents an unlockable file
            file_name: Name of the attached file
            decrypted_content: Content revealed once the file is decrypted
            is_first_message: Marks the message that opens the chat

        Returns:
            The message ID
        """
        message = {
            "sender": sender,
            "text": text,
            "timestamp": SERVER_TIMESTAMP,
        }
        if is_file:
            message["isFile"] = True
            message["fileName"] = file_name
            message["decryptedContent"] = decrypted_content
        if is_first_message:
            message["isFirstMessage"] = True

        message_id = await self._store.push(self._path(room_code), message)
        logger.info(f"Posted {sender} message {message_id} in lobby {room_code}")
        return message_id

    async def list_messages(self, room_code: str) -> List[ChatMessage]:
        """All messages in server-timestamp order."""
        return order_messages(await self._store.get(self._path(room_code)))


@dataclass
class Clue:
    """A hint posted some time after a phase begins."""
    id: str
    phase: int
    delay_seconds: float
    text: str


class ClueScheduler:
    """
    Posts phase-timed hints.

    Each clue goes through a one-shot trigger so it is posted once per
    lobby even if scheduled again after a restart or reconnect.
    """

    def __init__(self, store: SharedStore, chat: HackerChat, clues: List[Clue]):
        self._store = store
        self._chat = chat
        self._clues = clues
        self._tasks: Dict[str, Set[asyncio.Task]] = {}

    def clues_for_phase(self, phase: int) -> List[Clue]:
        return [clue for clue in self._clues if clue.phase == phase]

    async def post_clue(self, room_code: str, clue: Clue) -> bool:
        """Post a clue now unless it was already posted. Returns True if posted."""
        trigger = OneShotTrigger(self._store, room_code, clue_key(clue.id))
        outcome = await trigger.fire(
            None,
            lambda: self._chat.post_message(room_code, clue.text),
            leader_only=False,
        )
        return outcome == TriggerOutcome.CLAIMED

    def schedule_phase(self, room_code: str, phase: int) -> int:
        """
        Schedule every clue for a phase that was just entered.

        Returns:
            Number of clues scheduled
        """
        clues = self.clues_for_phase(phase)
        tasks = self._tasks.setdefault(room_code, set())
        for clue in clues:
            task = asyncio.create_task(self._post_later(room_code, clue))
            tasks.add(task)
            task.add_done_callback(tasks.discard)
        if clues:
            logger.debug(f"Scheduled {len(clues)} clues for phase {phase} in lobby {room_code}")
        return len(clues)

    async def _post_later(self, room_code: str, clue: Clue) -> None:
        await asyncio.sleep(clue.delay_seconds)
        # Phase may have moved on, or the lobby may be gone
        phase = await self._store.get(lobby_path(room_code, "gamePhase"))
        if phase != clue.phase:
            return
        await self.post_clue(room_code, clue)

    def cancel(self, room_code: str) -> None:
        """Cancel pending clues for a lobby."""
        for task in list(self._tasks.pop(room_code, set())):
            task.cancel()

    def cancel_all(self) -> None:
        for room_code in list(self._tasks):
            self.cancel(room_code)


CLUE_TEXTS = {
    1: "Did you find the welcome_admin.txt file? Try accessing it directly in your "
       "browser by adding it to the end of the URL.",
    2: "Binary, Base64, ROT13... different layers of encoding for different layers "
       "of security. Decrypt them all to proceed.",
}


def default_clues(delays) -> List[Clue]:
    """
    Build the clue list from (phase, delay_seconds) pairs.

    Phases without a clue text are skipped.
    """
    return [
        Clue(id=f"phase{phase}", phase=phase, delay_seconds=delay, text=CLUE_TEXTS[phase])
        for phase, delay in delays
        if phase in CLUE_TEXTS
    ]
