"""Tests for health endpoint."""

from unittest.mock import AsyncMock

from sqlalchemy.exc import OperationalError

from app.main import app
from app.models import get_session


async def test_health_check(client):
    """Test health endpoint returns OK."""
    response = await client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["database"] == "ok"
    assert data["service"] == "pnl-ledger"


async def test_health_check_degraded(client):
    """Unreachable database is reported, not raised."""
    broken = AsyncMock()
    broken.execute = AsyncMock(side_effect=OperationalError("SELECT 1", {}, Exception("locked")))

    async def broken_session():
        yield broken

    app.dependency_overrides[get_session] = broken_session

    response = await client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["status"] == "degraded"
    assert response.json()["database"] == "unavailable"


async def test_root(client):
    response = await client.get("/")
    assert response.json()["docs"] == "/docs"
