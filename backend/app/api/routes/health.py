"""
Health check endpoints.

Provides basic health and status information about the server.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from sqlalchemy import text
from datetime import datetime

from app.database import get_db
from app.config import get_settings
from app.core.game_service import get_game_service

router = APIRouter()
settings = get_settings()


@router.get("/health")
async def health_check(db: Session = Depends(get_db)) -> dict:
    """
    Basic health check endpoint.

    Returns:
        dict: Server status information including version and lobby count.

    Example response:
        {
            "status": "healthy",
            "version": "0.1.0",
            "timestamp": "2024-12-11T23:00:00Z",
            "database": "connected",
            "lobbies": 2
        }
    """
    # Test database connection
    try:
        db.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception as e:
        db_status = f"error: {str(e)}"

    return {
        "status": "healthy",
        "app_name": settings.APP_NAME,
        "version": settings.VERSION,
        "timestamp": datetime.utcnow().isoformat() + "Z",
        "database": db_status,
        "lobbies": len(await get_game_service().lobbies.list_room_codes()),
    }


@router.get("/health/ready")
async def readiness_check(db: Session = Depends(get_db)) -> dict:
    """
    Readiness check for the service.

    Verifies that the service is ready to accept requests by checking
    the database connection and the shared state store.

    Returns:
        dict: Readiness status.
    """
    checks = {}
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        checks["database"] = f"failed: {str(e)}"

    store = get_game_service().store
    checks["store"] = "ok"
    checks["listeners"] = store.listener_count()

    return {
        "ready": checks["database"] == "ok",
        "checks": checks,
    }
