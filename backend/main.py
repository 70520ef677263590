"""
EscapeRoom FastAPI Application

Main entry point for the escape room game server.
Configures FastAPI with CORS, routes, database and lobby persistence.
"""

import asyncio
import logging
import time

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from app.config import get_settings
from app.database import SessionLocal, init_db
from app.api.routes import game, health, lobbies
from app.core.game_service import get_game_service
from app.services.document_service import LobbyPersistence

settings = get_settings()

logging.basicConfig(
    level=settings.server.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def maintenance_loop(persistence: LobbyPersistence) -> None:
    """
    Background task flushing lobby documents and pruning idle players.

    Args:
        persistence: Lobby persistence bound to the game service store
    """
    service = get_game_service()
    last_cleanup = time.monotonic()

    while True:
        await asyncio.sleep(settings.database.PERSIST_INTERVAL)
        try:
            if time.monotonic() - last_cleanup >= settings.game.HEARTBEAT_INTERVAL:
                last_cleanup = time.monotonic()
                await service.cleanup()
            await persistence.flush()
        except Exception as e:
            logger.error(f"Maintenance pass failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.

    Handles:
    - Database initialisation and lobby restore on startup
    - Periodic persistence and cleanup while running
    - Final flush on shutdown
    """
    # Startup
    print(f"Starting {settings.APP_NAME} v{settings.VERSION}")
    init_db()
    service = get_game_service()
    persistence = LobbyPersistence(service.store, SessionLocal)
    await persistence.restore()
    task = asyncio.create_task(maintenance_loop(persistence))
    print(f"Server ready on {settings.server.HOST}:{settings.server.PORT}")

    yield

    # Shutdown
    print("Shutting down server...")
    task.cancel()
    service.shutdown()
    await persistence.flush()


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    description="Shared-state backend for a cooperative multiplayer escape room",
    lifespan=lifespan,
    debug=settings.DEBUG,
)

# Configure CORS
# Allow specific origins for security in development
# In production, this should be even more restrictive
origins = [
    "http://localhost:5173",  # Vite default port
    "http://localhost:3000",  # Alternative React port
    "http://127.0.0.1:5173",
    "http://127.0.0.1:3000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(lobbies.router, tags=["lobbies"])
app.include_router(game.router)


@app.get("/")
async def root() -> dict:
    """
    Root endpoint.

    Returns:
        dict: Welcome message and API information.
    """
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.VERSION,
        "docs": "/docs",
        "health": "/health",
    }
