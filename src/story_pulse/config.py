"""Centralised application settings loaded from environment / .env file."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


def _resolve_db_dir() -> Path:
    """Return (and create) the directory that holds the SQLite file."""
    d = _PROJECT_ROOT / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


_DEFAULT_DB_URL = f"sqlite+aiosqlite:///{_resolve_db_dir() / 'story_pulse.db'}"


class Settings(BaseSettings):
    """Runtime configuration for the biofeedback core.

    Values are read from environment variables first, then from a *.env*
    file located at the project root.  Every variable lives in the flat
    ``STORY_PULSE_`` namespace.

    These are process-level knobs.  User-tunable thresholds (gesture
    sensitivity, heart-rate target, ...) are *not* here: they live in
    :class:`~story_pulse.models.DeviceSettings` and are persisted through
    the settings store.
    """

    model_config = SettingsConfigDict(
        env_prefix="STORY_PULSE_",
        env_file=str(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Logging ───────────────────────────────────────────────
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # ── Database (settings store) ─────────────────────────────
    database_url: str = _DEFAULT_DB_URL

    # ── Local UI bridge ───────────────────────────────────────
    api_host: str = "127.0.0.1"
    api_port: int = 8765

    # ── Device transport ──────────────────────────────────────
    reconnect_delay_seconds: float = 5.0
    websocket_port: int = 81
    websocket_open_timeout: float = 5.0
    serial_read_timeout: float = 1.0


@lru_cache
def get_settings() -> Settings:
    """Return a cached :class:`Settings` singleton."""
    return Settings()
