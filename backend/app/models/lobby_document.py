"""
Lobby document model.

One row per lobby holding the full lobbies/{code} subtree as JSON.
"""

from sqlalchemy import Column, String, DateTime, JSON
from datetime import datetime

from app.database import Base


class LobbyDocument(Base):
    """
    Persisted snapshot of a lobby.

    Attributes:
        room_code: Primary key, the lobby's room code
        data: The lobby subtree as stored in the shared store
        updated_at: Last time the snapshot was written
    """
    __tablename__ = "lobby_documents"

    room_code = Column(String(16), primary_key=True, index=True)
    data = Column(JSON, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<LobbyDocument(room_code='{self.room_code}')>"
