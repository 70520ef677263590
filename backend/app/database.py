"""
Database configuration and session management.

This module sets up SQLAlchemy with SQLite (or the URL in
ESCAPE_DATABASE_URL) and provides database session management for the
application. Lobby documents are snapshotted here so a restart does not
lose running games.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from pathlib import Path

from app.config import get_settings

settings = get_settings()

# Get the backend directory path (parent of app directory)
BACKEND_DIR = Path(__file__).parent.parent
DATA_DIR = BACKEND_DIR / "data"

if settings.database.DATABASE_URL:
    DATABASE_URL = settings.database.DATABASE_URL
else:
    # Ensure the data directory exists
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    DATABASE_URL = f"sqlite:///{DATA_DIR / 'escaperoom.db'}"

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

# Create SQLAlchemy engine
engine = create_engine(
    DATABASE_URL,
    connect_args=connect_args,  # Needed for SQLite
    echo=settings.database.ECHO_SQL,
)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for all models (using SQLAlchemy 2.0 style)
Base = declarative_base()


def get_db() -> Session:
    """
    Dependency function to get database session.

    Yields:
        Session: Database session that will be automatically closed.

    Usage:
        @router.get("/health")
        async def health_check(db: Session = Depends(get_db)):
            db.execute(text("SELECT 1"))
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """
    Initialise the database.

    Creates all tables defined in the models if they don't exist.
    This is called on application startup.
    """
    # Import all models here so they are registered with Base
    from app.models import lobby_document  # noqa: F401

    Base.metadata.create_all(bind=engine)
    print(f"Database initialised at {DATABASE_URL}")
