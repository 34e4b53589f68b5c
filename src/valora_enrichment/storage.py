"""Persistence helpers for the generic keyed settings store.

Values are JSON documents keyed by a string. Raw values are only handled
here; callers go through the validated accessors on ``AppSettings``.
"""
from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

from .constants import (
    ALLOWED_BASE_CURRENCIES,
    CURRENCY_CODE_PATTERN,
    MEMORY_DSN,
    SQLITE_DSN_PREFIX,
    SettingKeys,
)
from .exceptions import StorageUnavailableError, UnsupportedCurrencyError
from .models import CategoryFreshness, EnrichmentCategory, ReconciliationState

logger = logging.getLogger("valora.storage")

JsonValue = Union[str, int, float, bool, None, list, dict]


def path_from_dsn(dsn: str) -> Path:
    if not dsn.startswith(SQLITE_DSN_PREFIX):
        raise ValueError(f"unsupported DSN: {dsn}")
    path = Path(dsn.removeprefix(SQLITE_DSN_PREFIX))
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


class SettingsStore(ABC):
    """Generic keyed settings store: get(key) -> value | None, set(key, value)."""

    @abstractmethod
    async def get(self, key: str) -> Optional[JsonValue]:
        ...

    @abstractmethod
    async def set(self, key: str, value: JsonValue) -> None:
        ...


class InMemorySettingsStore(SettingsStore):
    """Process-local settings store (dev/tests)."""

    def __init__(self, initial: Optional[dict[str, JsonValue]] = None) -> None:
        # Values are kept serialized so reads never alias caller objects.
        self._values: dict[str, str] = {
            key: json.dumps(value) for key, value in (initial or {}).items()
        }
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[JsonValue]:
        raw = self._values.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: JsonValue) -> None:
        async with self._lock:
            self._values[key] = json.dumps(value)


class SqliteSettingsStore(SettingsStore):
    """Durable settings store backed by sqlite, one upsert per key."""

    def __init__(self, dsn: str) -> None:
        if not dsn.startswith(SQLITE_DSN_PREFIX):
            raise ValueError("SqliteSettingsStore requires sqlite DSN")
        path = path_from_dsn(dsn)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS app_settings (
                key TEXT PRIMARY KEY,
                json_value TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    def _get(self, key: str) -> Optional[JsonValue]:
        with self._lock:
            try:
                row = self._conn.execute(
                    "SELECT json_value FROM app_settings WHERE key = ?",
                    (key,),
                ).fetchone()
            except sqlite3.Error as e:
                raise StorageUnavailableError(str(e), operation="settings.get") from e
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed JSON stored under setting %s", key)
            return None

    def _set(self, key: str, value: JsonValue) -> None:
        payload = json.dumps(value)
        with self._lock:
            try:
                self._conn.execute(
                    """
                    INSERT INTO app_settings (key, json_value) VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET json_value = excluded.json_value
                    """,
                    (key, payload),
                )
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StorageUnavailableError(str(e), operation="settings.set") from e

    async def get(self, key: str) -> Optional[JsonValue]:
        return self._get(key)

    async def set(self, key: str, value: JsonValue) -> None:
        self._set(key, value)

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def create_settings_store(dsn: str) -> SettingsStore:
    if dsn == MEMORY_DSN:
        return InMemorySettingsStore()
    return SqliteSettingsStore(dsn)


def is_allowed_base_currency(value: Any) -> bool:
    return (
        isinstance(value, str)
        and bool(CURRENCY_CODE_PATTERN.match(value))
        and value in ALLOWED_BASE_CURRENCIES
    )


class AppSettings:
    """Validated accessors for the known settings keys."""

    def __init__(self, store: SettingsStore) -> None:
        self._store = store

    @property
    def store(self) -> SettingsStore:
        return self._store

    async def get_raw(self, key: str) -> Optional[JsonValue]:
        return await self._store.get(key)

    async def set_raw(self, key: str, value: JsonValue) -> None:
        await self._store.set(key, value)

    # -- base currency -------------------------------------------------------

    async def get_base_currency(self) -> Optional[str]:
        """Configured base currency, or None when unset or invalid."""
        value = await self._store.get(SettingKeys.BASE_CURRENCY)
        return value if is_allowed_base_currency(value) else None

    async def write_base_currency(self, currency: str) -> None:
        if not is_allowed_base_currency(currency):
            raise UnsupportedCurrencyError(currency, field="baseCurrency")
        await self._store.set(SettingKeys.BASE_CURRENCY, currency)

    @staticmethod
    def allowed_base_currencies() -> tuple[str, ...]:
        return ALLOWED_BASE_CURRENCIES

    # -- reconciliation ------------------------------------------------------

    async def get_reconciliation_state(self) -> Optional[ReconciliationState]:
        value = await self._store.get(SettingKeys.RECONCILIATION_STATE)
        return ReconciliationState.from_dict(value)

    async def write_reconciliation_state(self, state: ReconciliationState) -> None:
        existing = await self.get_reconciliation_state()
        if existing == state:
            return
        await self._store.set(SettingKeys.RECONCILIATION_STATE, state.to_dict())

    # -- freshness -----------------------------------------------------------

    async def get_category_freshness(self) -> CategoryFreshness:
        value = await self._store.get(SettingKeys.CATEGORY_FRESHNESS)
        return CategoryFreshness.from_dict(value)

    async def stamp_category_freshness(
        self,
        categories: list[EnrichmentCategory],
        refreshed_at: datetime,
    ) -> CategoryFreshness:
        if not categories:
            return await self.get_category_freshness()
        current = (await self.get_category_freshness()).to_dict()
        for category in categories:
            current[category.freshness_key] = refreshed_at.isoformat()
        await self._store.set(SettingKeys.CATEGORY_FRESHNESS, current)
        return CategoryFreshness.from_dict(current)
