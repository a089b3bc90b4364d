from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from wormhole_web.config import Settings


def test_defaults(monkeypatch):
    monkeypatch.delenv("PORT", raising=False)
    monkeypatch.delenv("WORMHOLE_WEB_PORT", raising=False)
    settings = Settings()
    assert settings.port == 8080
    assert settings.transfer_ttl_seconds == 3600
    assert settings.cleanup_interval_seconds == 300
    assert settings.shutdown_timeout_seconds == 30
    assert settings.ws_write_timeout_seconds == 5
    assert settings.static_dir is None


def test_env_prefix(monkeypatch, tmp_path):
    monkeypatch.setenv("WORMHOLE_WEB_STORAGE_DIR", str(tmp_path))
    monkeypatch.setenv("WORMHOLE_WEB_TRANSFER_TTL_SECONDS", "60")
    monkeypatch.setenv("WORMHOLE_WEB_WORMHOLE_RELAY_URL", "ws://relay:4000/v1")
    settings = Settings()
    assert settings.storage_dir == Path(tmp_path)
    assert settings.transfer_ttl_seconds == 60
    assert settings.wormhole_relay_url == "ws://relay:4000/v1"


def test_plain_port_variable(monkeypatch):
    monkeypatch.delenv("WORMHOLE_WEB_PORT", raising=False)
    monkeypatch.setenv("PORT", "9090")
    assert Settings().port == 9090


def test_prefixed_port_wins(monkeypatch):
    monkeypatch.setenv("WORMHOLE_WEB_PORT", "7000")
    monkeypatch.setenv("PORT", "9090")
    assert Settings().port == 7000


@pytest.mark.parametrize(
    ("field", "value", "message"),
    [
        ("transfer_ttl_seconds", 0, "WORMHOLE_WEB_TRANSFER_TTL_SECONDS"),
        ("chunk_size", -1, "WORMHOLE_WEB_CHUNK_SIZE"),
        ("port", 70000, "WORMHOLE_WEB_PORT"),
    ],
)
def test_rejects_bad_values(field, value, message):
    with pytest.raises(ValidationError, match=message):
        Settings(**{field: value})
