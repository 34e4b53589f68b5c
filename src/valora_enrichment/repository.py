"""
Market data persistence: security metadata, daily closes and FX observations.

All three tables are keyed by natural keys. Daily closes and FX observations
are insert-missing only: an existing key is never updated or deleted.
"""
from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .constants import MEMORY_DSN, SQLITE_DSN_PREFIX
from .exceptions import StorageUnavailableError
from .models import FxObservation, parse_market_date, to_decimal, utc_now
from .storage import path_from_dsn

logger = logging.getLogger("valora.repository")


@dataclass(frozen=True)
class SecurityKey:
    ticker: str
    market: str

    @property
    def identifier(self) -> str:
        return f"{self.ticker}/{self.market}"


@dataclass(frozen=True)
class FxKey:
    source_currency: str
    target_currency: str

    @property
    def identifier(self) -> str:
        return f"{self.source_currency}/{self.target_currency}"


@dataclass
class SecurityMetadataRecord:
    ticker: str
    market: str
    display_name: Optional[str] = None
    asset_type: Optional[str] = None
    quote_currency: Optional[str] = None
    last_fetched_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class PricePoint:
    market_date: date
    close: Decimal


@dataclass(frozen=True)
class RatePoint:
    market_date: date
    rate: Decimal


class FxObservationStore(ABC):
    """Append-only FX history keyed by (source, target, date)."""

    @abstractmethod
    async def insert_missing_fx_rates(self, key: FxKey, points: Sequence[RatePoint]) -> int:
        """Insert observations whose key is absent; returns how many were added."""

    @abstractmethod
    async def list_fx_observations(
        self,
        currencies: Optional[Iterable[str]] = None,
    ) -> List[FxObservation]:
        """All observations, or those touching any of ``currencies`` (either side)."""

    @abstractmethod
    async def latest_fx_date(self, key: FxKey) -> Optional[date]:
        ...


class MarketDataRepository(FxObservationStore):
    """Security metadata and prices alongside the FX history."""

    @abstractmethod
    async def upsert_security_metadata_fill_missing(
        self,
        record: SecurityMetadataRecord,
    ) -> SecurityMetadataRecord:
        """Create, or fill only the fields that are still empty."""

    @abstractmethod
    async def get_security_metadata(self, key: SecurityKey) -> Optional[SecurityMetadataRecord]:
        ...

    @abstractmethod
    async def insert_missing_security_prices(
        self,
        key: SecurityKey,
        points: Sequence[PricePoint],
    ) -> int:
        ...

    @abstractmethod
    async def latest_price_date(self, key: SecurityKey) -> Optional[date]:
        ...


def _merge_metadata(
    existing: Optional[SecurityMetadataRecord],
    incoming: SecurityMetadataRecord,
) -> SecurityMetadataRecord:
    if existing is None:
        return replace(incoming, last_fetched_at=utc_now())
    return SecurityMetadataRecord(
        ticker=existing.ticker,
        market=existing.market,
        display_name=existing.display_name or incoming.display_name,
        asset_type=existing.asset_type or incoming.asset_type,
        quote_currency=existing.quote_currency or incoming.quote_currency,
        last_fetched_at=utc_now(),
    )


def _touches(observation: FxObservation, currencies: Optional[set[str]]) -> bool:
    if currencies is None:
        return True
    return observation.source_currency in currencies or observation.target_currency in currencies


class InMemoryMarketDataRepository(MarketDataRepository):
    """In-memory repository (swap for SqliteMarketDataRepository when durable)."""

    def __init__(self) -> None:
        self._metadata: Dict[SecurityKey, SecurityMetadataRecord] = {}
        self._prices: Dict[Tuple[SecurityKey, date], Decimal] = {}
        self._fx: Dict[Tuple[str, str, date], FxObservation] = {}
        self._sequence = 0
        self._lock = asyncio.Lock()

    async def upsert_security_metadata_fill_missing(
        self,
        record: SecurityMetadataRecord,
    ) -> SecurityMetadataRecord:
        key = SecurityKey(record.ticker, record.market)
        async with self._lock:
            merged = _merge_metadata(self._metadata.get(key), record)
            self._metadata[key] = merged
            return merged

    async def get_security_metadata(self, key: SecurityKey) -> Optional[SecurityMetadataRecord]:
        return self._metadata.get(key)

    async def insert_missing_security_prices(
        self,
        key: SecurityKey,
        points: Sequence[PricePoint],
    ) -> int:
        inserted = 0
        async with self._lock:
            for point in points:
                slot = (key, point.market_date)
                if slot not in self._prices:
                    self._prices[slot] = to_decimal(point.close)
                    inserted += 1
        return inserted

    async def latest_price_date(self, key: SecurityKey) -> Optional[date]:
        dates = [d for (k, d) in self._prices if k == key]
        return max(dates) if dates else None

    async def insert_missing_fx_rates(self, key: FxKey, points: Sequence[RatePoint]) -> int:
        candidates = [
            FxObservation(key.source_currency, key.target_currency, p.market_date, to_decimal(p.rate))
            for p in points
        ]
        inserted = 0
        async with self._lock:
            for observation in candidates:
                slot = (observation.source_currency, observation.target_currency, observation.date)
                if slot in self._fx:
                    continue
                self._sequence += 1
                self._fx[slot] = replace(observation, sequence=self._sequence)
                inserted += 1
        return inserted

    async def list_fx_observations(
        self,
        currencies: Optional[Iterable[str]] = None,
    ) -> List[FxObservation]:
        wanted = set(currencies) if currencies is not None else None
        observations = [o for o in self._fx.values() if _touches(o, wanted)]
        return sorted(observations, key=lambda o: o.sequence)

    async def latest_fx_date(self, key: FxKey) -> Optional[date]:
        dates = [
            d for (source, target, d) in self._fx
            if source == key.source_currency and target == key.target_currency
        ]
        return max(dates) if dates else None


class SqliteMarketDataRepository(MarketDataRepository):
    """Durable repository backed by sqlite.

    Decimals are stored as TEXT so rates round-trip exactly.
    """

    def __init__(self, dsn: str) -> None:
        if not dsn.startswith(SQLITE_DSN_PREFIX):
            raise ValueError("SqliteMarketDataRepository requires sqlite DSN")
        path = path_from_dsn(dsn)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS security_metadata (
                ticker TEXT NOT NULL,
                market TEXT NOT NULL,
                display_name TEXT,
                asset_type TEXT,
                quote_currency TEXT,
                last_fetched_at TEXT NOT NULL,
                PRIMARY KEY (ticker, market)
            );
            CREATE TABLE IF NOT EXISTS security_daily_prices (
                ticker TEXT NOT NULL,
                market TEXT NOT NULL,
                market_date TEXT NOT NULL,
                close TEXT NOT NULL,
                fetched_at TEXT NOT NULL,
                PRIMARY KEY (ticker, market, market_date)
            );
            CREATE TABLE IF NOT EXISTS fx_daily_rates (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                source_currency TEXT NOT NULL,
                target_currency TEXT NOT NULL,
                market_date TEXT NOT NULL,
                rate TEXT NOT NULL,
                fetched_at TEXT NOT NULL,
                UNIQUE (source_currency, target_currency, market_date)
            );
            """
        )
        self._conn.commit()

    def _write(self, operation: str, sql: str, rows: Sequence[tuple]) -> int:
        with self._lock:
            try:
                before = self._conn.total_changes
                self._conn.executemany(sql, rows)
                self._conn.commit()
                return self._conn.total_changes - before
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StorageUnavailableError(str(e), operation=operation) from e

    def _read(self, operation: str, sql: str, params: tuple = ()) -> list:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StorageUnavailableError(str(e), operation=operation) from e

    async def upsert_security_metadata_fill_missing(
        self,
        record: SecurityMetadataRecord,
    ) -> SecurityMetadataRecord:
        key = SecurityKey(record.ticker, record.market)
        with self._lock:
            merged = _merge_metadata(self._get_metadata(key), record)
            self._write(
                "metadata.upsert",
                """
                INSERT INTO security_metadata
                    (ticker, market, display_name, asset_type, quote_currency, last_fetched_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(ticker, market) DO UPDATE SET
                    display_name = excluded.display_name,
                    asset_type = excluded.asset_type,
                    quote_currency = excluded.quote_currency,
                    last_fetched_at = excluded.last_fetched_at
                """,
                [(
                    merged.ticker,
                    merged.market,
                    merged.display_name,
                    merged.asset_type,
                    merged.quote_currency,
                    merged.last_fetched_at.isoformat(),
                )],
            )
        return merged

    async def get_security_metadata(self, key: SecurityKey) -> Optional[SecurityMetadataRecord]:
        return self._get_metadata(key)

    def _get_metadata(self, key: SecurityKey) -> Optional[SecurityMetadataRecord]:
        rows = self._read(
            "metadata.get",
            """
            SELECT display_name, asset_type, quote_currency, last_fetched_at
            FROM security_metadata WHERE ticker = ? AND market = ?
            """,
            (key.ticker, key.market),
        )
        if not rows:
            return None
        display_name, asset_type, quote_currency, last_fetched_at = rows[0]
        return SecurityMetadataRecord(
            ticker=key.ticker,
            market=key.market,
            display_name=display_name,
            asset_type=asset_type,
            quote_currency=quote_currency,
            last_fetched_at=datetime.fromisoformat(last_fetched_at),
        )

    async def insert_missing_security_prices(
        self,
        key: SecurityKey,
        points: Sequence[PricePoint],
    ) -> int:
        if not points:
            return 0
        fetched_at = utc_now().isoformat()
        return self._write(
            "prices.insert",
            """
            INSERT OR IGNORE INTO security_daily_prices
                (ticker, market, market_date, close, fetched_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            [
                (key.ticker, key.market, p.market_date.isoformat(), str(p.close), fetched_at)
                for p in points
            ],
        )

    async def latest_price_date(self, key: SecurityKey) -> Optional[date]:
        rows = self._read(
            "prices.latest",
            "SELECT MAX(market_date) FROM security_daily_prices WHERE ticker = ? AND market = ?",
            (key.ticker, key.market),
        )
        value = rows[0][0] if rows else None
        return parse_market_date(value) if value else None

    async def insert_missing_fx_rates(self, key: FxKey, points: Sequence[RatePoint]) -> int:
        if not points:
            return 0
        for point in points:
            # Validates codes and rate > 0 before anything is written
            FxObservation(key.source_currency, key.target_currency, point.market_date, to_decimal(point.rate))
        fetched_at = utc_now().isoformat()
        return self._write(
            "fx.insert",
            """
            INSERT OR IGNORE INTO fx_daily_rates
                (source_currency, target_currency, market_date, rate, fetched_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            [
                (
                    key.source_currency,
                    key.target_currency,
                    p.market_date.isoformat(),
                    str(p.rate),
                    fetched_at,
                )
                for p in points
            ],
        )

    async def list_fx_observations(
        self,
        currencies: Optional[Iterable[str]] = None,
    ) -> List[FxObservation]:
        sql = "SELECT seq, source_currency, target_currency, market_date, rate FROM fx_daily_rates"
        params: tuple = ()
        if currencies is not None:
            wanted = sorted(set(currencies))
            if not wanted:
                return []
            marks = ", ".join("?" for _ in wanted)
            sql += f" WHERE source_currency IN ({marks}) OR target_currency IN ({marks})"
            params = tuple(wanted) * 2
        sql += " ORDER BY seq"
        return [
            FxObservation(
                source_currency=source,
                target_currency=target,
                date=parse_market_date(market_date),
                rate=Decimal(rate),
                sequence=seq,
            )
            for seq, source, target, market_date, rate in self._read("fx.list", sql, params)
        ]

    async def latest_fx_date(self, key: FxKey) -> Optional[date]:
        rows = self._read(
            "fx.latest",
            """
            SELECT MAX(market_date) FROM fx_daily_rates
            WHERE source_currency = ? AND target_currency = ?
            """,
            (key.source_currency, key.target_currency),
        )
        value = rows[0][0] if rows else None
        return parse_market_date(value) if value else None

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def create_market_data_repository(dsn: str) -> MarketDataRepository:
    if dsn == MEMORY_DSN:
        return InMemoryMarketDataRepository()
    return SqliteMarketDataRepository(dsn)
