"""Application settings."""

import tempfile
from pathlib import Path

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_storage_dir() -> Path:
    return Path(tempfile.gettempdir()) / "wormhole-web"


class Settings(BaseSettings):
    """Runtime settings loaded from ``WORMHOLE_WEB_*`` environment variables."""

    host: str = "0.0.0.0"
    port: int = Field(
        default=8080,
        validation_alias=AliasChoices("WORMHOLE_WEB_PORT", "PORT", "port"),
    )
    storage_dir: Path = Field(default_factory=_default_storage_dir)
    static_dir: Path | None = None
    transfer_ttl_seconds: float = 3600.0
    cleanup_interval_seconds: float = 300.0
    shutdown_timeout_seconds: float = 30.0
    ws_write_timeout_seconds: float = 5.0
    ws_queue_size: int = 64
    max_upload_bytes: int = 500 * 1024 * 1024
    chunk_size: int = 64 * 1024
    wormhole_executable: str = "wormhole"
    wormhole_appid: str | None = None
    wormhole_relay_url: str | None = None

    @model_validator(mode="after")
    def validate_limits(self) -> "Settings":
        """Reject values that would stall or disable the service."""

        positive = {
            "transfer_ttl_seconds": self.transfer_ttl_seconds,
            "cleanup_interval_seconds": self.cleanup_interval_seconds,
            "shutdown_timeout_seconds": self.shutdown_timeout_seconds,
            "ws_write_timeout_seconds": self.ws_write_timeout_seconds,
            "ws_queue_size": self.ws_queue_size,
            "max_upload_bytes": self.max_upload_bytes,
            "chunk_size": self.chunk_size,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"WORMHOLE_WEB_{name.upper()} must be > 0.")
        if not 0 < self.port < 65536:
            raise ValueError("WORMHOLE_WEB_PORT must be between 1 and 65535.")
        return self

    model_config = SettingsConfigDict(
        env_prefix="WORMHOLE_WEB_", extra="ignore", populate_by_name=True,
    )


__all__ = ["Settings"]
