"""
Lobby document persistence.

Keeps the lobbies subtree of the shared store mirrored in the database:
writes mark a lobby dirty, `flush()` saves dirty lobbies (or deletes rows
for lobbies that were removed) and `restore()` loads everything back into
the store at startup.
"""

import logging
from typing import Callable, Dict, Optional, Set, Tuple

from sqlalchemy.orm import Session

from app.core.lobby import LOBBIES_ROOT, lobby_path
from app.core.store import SharedStore
from app.models.lobby_document import LobbyDocument

logger = logging.getLogger(__name__)


def save_lobby_document(db: Session, room_code: str, data: dict) -> LobbyDocument:
    """
    Insert or replace a lobby snapshot.

    Args:
        db: Database session
        room_code: Lobby room code
        data: Lobby subtree

    Returns:
        The saved LobbyDocument
    """
    document = db.get(LobbyDocument, room_code)
    if document is None:
        document = LobbyDocument(room_code=room_code, data=data)
        db.add(document)
    else:
        document.data = data
    db.commit()
    return document


def delete_lobby_document(db: Session, room_code: str) -> bool:
    """
    Delete a lobby snapshot.

    Returns:
        True if a row was deleted
    """
    document = db.get(LobbyDocument, room_code)
    if document is None:
        return False
    db.delete(document)
    db.commit()
    return True


def load_lobby_documents(db: Session) -> Dict[str, dict]:
    """Load every lobby snapshot keyed by room code."""
    return {document.room_code: document.data for document in db.query(LobbyDocument).all()}


class LobbyPersistence:
    """
    Mirrors lobby documents from a store into the database.

    Usage:
        persistence = LobbyPersistence(store, SessionLocal)
        await persistence.restore()
        ...
        await persistence.flush()
    """

    def __init__(self, store: SharedStore, session_factory: Callable[[], Session]):
        self._store = store
        self._session_factory = session_factory
        self._dirty: Set[str] = set()
        self._all_dirty = False
        store.add_write_hook(self._on_write)

    def _on_write(self, parts: Tuple[str, ...]) -> None:
        if not parts or parts[0] != LOBBIES_ROOT:
            return
        if len(parts) == 1:
            self._all_dirty = True
        else:
            self._dirty.add(parts[1])

    @property
    def dirty_rooms(self) -> Set[str]:
        return set(self._dirty)

    async def flush(self) -> int:
        """
        Save dirty lobbies.

        Returns:
            Number of lobbies written or deleted
        """
        rooms = set(self._dirty)
        self._dirty.clear()

        db = self._session_factory()
        try:
            if self._all_dirty:
                self._all_dirty = False
                rooms |= set(load_lobby_documents(db)) | set(self._store.child_keys(LOBBIES_ROOT))

            for room_code in rooms:
                data: Optional[dict] = await self._store.get(lobby_path(room_code))
                if data is None:
                    delete_lobby_document(db, room_code)
                else:
                    save_lobby_document(db, room_code, data)
        except Exception:
            # Put the rooms back so the next flush retries them
            self._dirty |= rooms
            db.rollback()
            raise
        finally:
            db.close()

        if rooms:
            logger.debug(f"Persisted {len(rooms)} lobby documents")
        return len(rooms)

    async def restore(self) -> int:
        """
        Load saved lobbies into the store.

        Returns:
            Number of lobbies restored
        """
        db = self._session_factory()
        try:
            documents = load_lobby_documents(db)
        finally:
            db.close()

        for room_code, data in documents.items():
            await self._store.set(lobby_path(room_code), data)
        self._dirty.clear()

        if documents:
            logger.info(f"Restored {len(documents)} lobbies from the database")
        return len(documents)
