"""
Tests for health check endpoints.
"""
import pytest
from collections import namedtuple
from unittest.mock import patch
from fastapi.testclient import TestClient
from helpdesk.config import Settings
from helpdesk.health import HealthChecker
from helpdesk.main import create_app


@pytest.fixture
def app():
    settings = Settings(SERVICE_NAME="status", BROKER_CONNECT_RETRIES=0, REDIS_URL=None)
    return create_app(settings=settings)


def test_health_liveness(app):
    """Test liveness health check."""
    with TestClient(app) as client:
        r = client.get("/health")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "ok"
    assert data["service"] == "status"
    assert data["version"] == "0.1.0"
    assert data["timestamp"].endswith("Z")


def test_health_readiness(app):
    """Test readiness health check once the runtime is started."""
    with TestClient(app) as client:
        r = client.get("/health/ready")
    # Disk or memory pressure on the host can still make it 503
    assert r.status_code in [200, 503]
    data = r.json()
    assert data["service"] == "status"
    assert data["checks"]["broker"]["status"] == "ok"
    assert data["checks"]["broker"]["connections"] == {"endpoint": True}
    assert data["checks"]["redis"]["status"] == "skipped"
    assert "disk_space" in data["checks"]
    assert "memory" in data["checks"]


def test_health_readiness_before_start(app):
    """Test readiness fails while the service runtime is not started."""
    # Without the context manager the startup handler never runs
    client = TestClient(app)
    r = client.get("/health/ready")
    assert r.status_code == 503
    data = r.json()
    assert data["status"] == "not_ready"
    assert data["checks"]["broker"]["status"] == "error"


def test_health_readiness_reports_dropped_client():
    """Test readiness names a broker connection that went down."""
    settings = Settings(SERVICE_NAME="notification", BROKER_CONNECT_RETRIES=0, REDIS_URL=None)
    app = create_app(settings=settings)
    with TestClient(app) as client:
        client.portal.call(app.state.runtime.clients["user"].close)
        r = client.get("/health/ready")
    assert r.status_code == 503
    broker = r.json()["checks"]["broker"]
    assert broker["connections"]["user"] is False
    assert "user" in broker["error"]


@pytest.mark.asyncio
async def test_low_disk_space_is_not_ready():
    """Test the disk check fails below its minimum and warns below twice it."""
    usage = namedtuple("usage", "total used free percent")
    checker = HealthChecker(service_name="user", settings=Settings(REDIS_URL=None), min_disk_gb=1.0)

    with patch("helpdesk.health.psutil.disk_usage", return_value=usage(10 * 1024**3, 0, 512 * 1024**2, 95.0)):
        result = await checker.readiness()
    assert result["status"] == "not_ready"
    assert result["checks"]["disk_space"]["status"] == "error"
    assert result["checks"]["broker"]["status"] == "skipped"

    with patch("helpdesk.health.psutil.disk_usage", return_value=usage(10 * 1024**3, 0, 1536 * 1024**2, 85.0)):
        result = await checker.readiness()
    assert result["checks"]["disk_space"]["status"] == "warning"
