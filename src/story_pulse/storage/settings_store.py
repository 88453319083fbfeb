"""Key-value settings store used to persist device thresholds."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

import structlog
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from story_pulse.models import DeviceSettings
from story_pulse.storage.database import SettingRow, get_session_factory

logger = structlog.get_logger(__name__)

DEVICE_SETTINGS_KEY = "device_settings"


class SettingsStore(ABC):
    """Minimal async key-value contract (values are JSON-serialisable)."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the stored value, or ``None`` when absent."""

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Insert or replace *key*."""


class MemorySettingsStore(SettingsStore):
    """Process-local store; values are round-tripped through JSON like the SQL store."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, str] = {k: json.dumps(v) for k, v in (initial or {}).items()}

    async def get(self, key: str) -> Any | None:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)


class SqlSettingsStore(SettingsStore):
    """Settings persisted in the ``settings`` table (SQLite via aiosqlite by default)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def get(self, key: str) -> Any | None:
        async with self._sessions()() as session:
            row = await session.get(SettingRow, key)
            return json.loads(row.value_json) if row is not None else None

    async def set(self, key: str, value: Any) -> None:
        async with self._sessions()() as session:
            row = await session.get(SettingRow, key)
            payload = json.dumps(value)
            if row is None:
                session.add(SettingRow(key=key, value_json=payload))
            else:
                row.value_json = payload
            await session.commit()


# ── DeviceSettings helpers ────────────────────────────────────


async def load_device_settings(store: SettingsStore) -> DeviceSettings:
    """Load persisted device settings, falling back to defaults field by field.

    Unknown keys are ignored; a field whose stored value fails validation
    keeps its default and is logged.
    """
    try:
        stored = await store.get(DEVICE_SETTINGS_KEY)
    except Exception:
        logger.exception("settings.load_failed")
        return DeviceSettings()

    if not isinstance(stored, dict):
        return DeviceSettings()

    settings = DeviceSettings()
    for name in DeviceSettings.model_fields:
        if name not in stored:
            continue
        try:
            setattr(settings, name, stored[name])
        except ValidationError:
            logger.warning("settings.invalid_value", field=name, value=stored[name])
    return settings


async def save_device_settings(store: SettingsStore, settings: DeviceSettings) -> None:
    await store.set(DEVICE_SETTINGS_KEY, settings.model_dump(mode="json"))
