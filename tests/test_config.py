"""Tests for settings loading."""
import pytest
from pydantic import ValidationError
from helpdesk.config import Settings


def test_defaults():
    settings = Settings(_env_file=None)

    assert settings.BROKER_ADAPTER == "memory"
    assert settings.rpc_timeout == 5.0
    assert settings.status_changed_subscribers == ["notification", "satisfaction"]
    assert settings.supporter_role_ids == [5, 6, 7, 8, 9, 10, 13]
    assert settings.CLOSED_STATUS_ID == 5


def test_environment_overrides(monkeypatch):
    """Test values come from the environment."""
    monkeypatch.setenv("BROKER_ADAPTER", "redis")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/1")
    monkeypatch.setenv("RPC_TIMEOUT_MS", "250")
    monkeypatch.setenv("STATUS_CHANGED_SUBSCRIBERS", " notification , ,audit ")

    settings = Settings(_env_file=None)

    assert settings.BROKER_ADAPTER == "redis"
    assert str(settings.REDIS_URL) == "redis://cache:6379/1"
    assert settings.rpc_timeout == 0.25
    assert settings.status_changed_subscribers == ["notification", "audit"]


def test_unknown_broker_rejected():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, BROKER_ADAPTER="kafka")
