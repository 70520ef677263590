"""
Tests for health check endpoints.
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from main import app
from app.core.game_service import reset_game_service
from app.database import get_db, Base
from app.models import lobby_document  # noqa: F401

# File-backed test database shared by every request
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(
    TEST_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def override_get_db():
    """Override database dependency for testing."""
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


# Override the dependency
app.dependency_overrides[get_db] = override_get_db

# Create test client
client = TestClient(app)


@pytest.fixture(autouse=True)
def setup_database():
    """Set up test database before each test."""
    reset_game_service(clues=[])
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


def test_root_endpoint():
    """Test the root endpoint returns welcome message."""
    response = client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert "message" in data
    assert "EscapeRoom" in data["message"]
    assert "version" in data
    assert "docs" in data
    assert "health" in data


def test_health_check():
    """Test the health check endpoint."""
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    
    # Check required fields
    assert data["status"] == "healthy"
    assert "version" in data
    assert "timestamp" in data
    assert "app_name" in data
    assert data["app_name"] == "EscapeRoom"
    assert data["database"] == "connected"
    assert data["lobbies"] == 0


def test_readiness_check():
    """Test the readiness check endpoint."""
    response = client.get("/health/ready")
    assert response.status_code == 200
    data = response.json()
    
    # Check response structure
    assert "ready" in data
    assert "checks" in data
    assert "database" in data["checks"]
    
    # Database should be OK
    assert data["ready"] is True
    assert data["checks"]["database"] == "ok"
    assert data["checks"]["store"] == "ok"


def test_health_endpoints_cors():
    """Test that CORS headers are properly set."""
    response = client.options(
        "/health",
        headers={
            "Origin": "http://localhost:5173",
            "Access-Control-Request-Method": "GET",
        }
    )
    assert response.status_code == 200
    assert "access-control-allow-origin" in response.headers


def test_health_counts_lobbies():
    """Lobby count reflects lobbies in the shared store."""
    client.post("/lobbies", json={"name": "Alice"})
    client.post("/lobbies", json={"name": "Bob"})

    response = client.get("/health")
    assert response.json()["lobbies"] == 2


def test_readiness_reports_listeners():
    """Readiness includes the number of store subscriptions."""
    response = client.get("/health/ready")
    assert response.json()["checks"]["listeners"] == 0
