"""Storage backend: Protocol definition, SQLite implementation, factory."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from datetime import date, datetime
from typing import ClassVar, Protocol, runtime_checkable

import aiosqlite

from supply_tracker.core.config import StorageConfig
from supply_tracker.core.exceptions import PersistenceError, StorageError
from supply_tracker.core.models import (
    ChangeResult,
    CoinRecord,
    Observation,
    Snapshot,
    StorageBackend as StorageBackendEnum,
    SupplySeries,
    as_utc,
    normalize_symbol,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class StorageProtocol(Protocol):
    """Abstract storage interface for supply series and snapshot batches."""

    async def has_observation_on_day(self, symbol: str, day: date) -> bool: ...
    async def append_observation(self, symbol: str, observation: Observation) -> None: ...
    async def append_observations(
        self, batch: Mapping[str, Observation]
    ) -> dict[str, PersistenceError]: ...
    async def replace_observation_on_day(
        self, symbol: str, day: date, observation: Observation
    ) -> None: ...
    async def all_observations(self, symbol: str) -> list[Observation]: ...
    async def observations_between(
        self, symbol: str, start: datetime | None = None, end: datetime | None = None
    ) -> list[Observation]: ...
    async def get_series(self, symbol: str) -> SupplySeries | None: ...
    async def get_series_bulk(self, symbols: Iterable[str]) -> dict[str, SupplySeries]: ...
    async def get_all_series(self) -> dict[str, SupplySeries]: ...
    async def list_symbols(self) -> list[str]: ...
    async def symbols_observed_on_day(self, day: date) -> set[str]: ...
    async def delete_series(self, symbol: str) -> bool: ...
    async def snapshot_exists_for_day(self, day: date) -> bool: ...
    async def save_snapshot(self, snapshot: Snapshot) -> int: ...
    async def replace_snapshot(self, snapshot: Snapshot) -> int: ...
    async def get_latest_snapshot(self) -> Snapshot | None: ...
    async def get_snapshots(
        self, start_day: date | None = None, end_day: date | None = None
    ) -> list[Snapshot]: ...
    async def delete_snapshots(self) -> int: ...
    async def get_statistics(self) -> dict: ...
    async def initialize(self) -> None: ...
    async def close(self) -> None: ...
    async def health_check(self) -> bool: ...


def _ts(value: datetime) -> str:
    return as_utc(value).isoformat(timespec="microseconds")


class SqliteStore:
    """SQLite implementation of the storage protocol.

    Uses aiosqlite for async access, WAL mode for concurrent reads,
    and a version-tracked migration system.

    The observations table deliberately has no (symbol, day) uniqueness
    constraint: one-per-day is the caller's gate (`has_observation_on_day`).
    """

    _MIGRATIONS: ClassVar[dict[int, tuple[str, list[str]]]] = {
        1: (
            "Initial schema",
            [
                """CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT DEFAULT (datetime('now'))
                )""",
                """CREATE TABLE IF NOT EXISTS supply_series (
                    symbol TEXT PRIMARY KEY,
                    created_at TEXT DEFAULT (datetime('now'))
                )""",
                """CREATE TABLE IF NOT EXISTS supply_observations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    symbol TEXT NOT NULL REFERENCES supply_series(symbol) ON DELETE CASCADE,
                    value REAL NOT NULL,
                    observed_at TEXT NOT NULL,
                    observed_day TEXT NOT NULL,
                    created_at TEXT DEFAULT (datetime('now'))
                )""",
                """CREATE TABLE IF NOT EXISTS snapshots (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    snapshot_day TEXT NOT NULL,
                    captured_at TEXT NOT NULL,
                    created_at TEXT DEFAULT (datetime('now'))
                )""",
                """CREATE TABLE IF NOT EXISTS snapshot_coins (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    snapshot_id INTEGER NOT NULL REFERENCES snapshots(id) ON DELETE CASCADE,
                    rank INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    icon TEXT,
                    price REAL,
                    volume_24h REAL,
                    market_cap REAL,
                    circulating_supply REAL NOT NULL,
                    total_supply REAL,
                    max_supply REAL,
                    changes_json TEXT
                )""",
                # Indexes
                "CREATE INDEX IF NOT EXISTS idx_obs_symbol_day ON supply_observations(symbol, observed_day)",
                "CREATE INDEX IF NOT EXISTS idx_obs_day ON supply_observations(observed_day)",
                "CREATE INDEX IF NOT EXISTS idx_snapshots_day ON snapshots(snapshot_day)",
                "CREATE INDEX IF NOT EXISTS idx_snapshot_coins_snapshot ON snapshot_coins(snapshot_id)",
                "CREATE INDEX IF NOT EXISTS idx_snapshot_coins_symbol ON snapshot_coins(symbol)",
            ],
        ),
    }

    def __init__(self, config: StorageConfig) -> None:
        self._path = config.sqlite_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open connection, enable WAL + FK, run migrations."""
        try:
            self._db = await aiosqlite.connect(self._path)
            self._db.row_factory = aiosqlite.Row
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute("PRAGMA foreign_keys=ON")
            current = await self._get_schema_version()
            await self._apply_migrations(current)
            await self._db.commit()
        except Exception as e:
            raise StorageError(
                f"Failed to initialize SQLite store: {e}",
                context={"operation": "initialize", "path": self._path},
            ) from e

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def health_check(self) -> bool:
        if self._db is None:
            return False
        try:
            async with self._db.execute("SELECT 1") as cursor:
                row = await cursor.fetchone()
            return row is not None
        except aiosqlite.Error:
            return False

    # --- Schema Migration ---

    async def _get_schema_version(self) -> int:
        try:
            async with self._db.execute(
                "SELECT MAX(version) FROM schema_version"
            ) as cursor:
                row = await cursor.fetchone()
            return row[0] if row[0] is not None else 0
        except aiosqlite.OperationalError:
            return 0

    async def _apply_migrations(self, current_version: int) -> None:
        for version in sorted(self._MIGRATIONS.keys()):
            if version <= current_version:
                continue
            desc, statements = self._MIGRATIONS[version]
            logger.info("Applying migration %d: %s", version, desc)
            for sql in statements:
                await self._db.execute(sql)
            await self._db.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )

    # --- Series Operations ---

    async def has_observation_on_day(self, symbol: str, day: date) -> bool:
        try:
            async with self._db.execute(
                "SELECT 1 FROM supply_observations WHERE symbol = ? AND observed_day = ? LIMIT 1",
                (normalize_symbol(symbol), day.isoformat()),
            ) as cursor:
                row = await cursor.fetchone()
            return row is not None
        except Exception as e:
            raise StorageError(
                f"Failed to check observation existence: {e}",
                context={"operation": "query", "table": "supply_observations", "symbol": symbol},
            ) from e

    async def append_observation(self, symbol: str, observation: Observation) -> None:
        try:
            await self._insert_observation(normalize_symbol(symbol), observation)
            await self._db.commit()
        except Exception as e:
            raise StorageError(
                f"Failed to append observation: {e}",
                context={"operation": "insert", "table": "supply_observations", "symbol": symbol},
            ) from e

    async def append_observations(
        self, batch: Mapping[str, Observation]
    ) -> dict[str, PersistenceError]:
        """Grouped write of one observation per symbol, committed together.

        A symbol whose insert fails is reported in the returned mapping;
        every other symbol in the batch is still committed.
        """
        failures: dict[str, PersistenceError] = {}
        for symbol, observation in batch.items():
            canonical = normalize_symbol(symbol)
            try:
                await self._insert_observation(canonical, observation)
            except aiosqlite.Error as e:
                logger.error("Failed to write observation for %s: %s", canonical, e)
                failures[canonical] = PersistenceError(
                    f"Failed to write observation for {canonical}: {e}",
                    context={"operation": "insert", "table": "supply_observations", "symbol": canonical},
                )
        try:
            await self._db.commit()
        except Exception as e:
            raise StorageError(
                f"Failed to commit observation batch: {e}",
                context={"operation": "insert", "table": "supply_observations", "size": len(batch)},
            ) from e
        return failures

    async def replace_observation_on_day(
        self, symbol: str, day: date, observation: Observation
    ) -> None:
        canonical = normalize_symbol(symbol)
        try:
            await self._db.execute(
                "DELETE FROM supply_observations WHERE symbol = ? AND observed_day = ?",
                (canonical, day.isoformat()),
            )
            await self._insert_observation(canonical, observation)
            await self._db.commit()
        except Exception as e:
            await self._db.rollback()
            raise StorageError(
                f"Failed to replace observation: {e}",
                context={
                    "operation": "replace",
                    "table": "supply_observations",
                    "symbol": canonical,
                    "day": day.isoformat(),
                },
            ) from e

    async def all_observations(self, symbol: str) -> list[Observation]:
        try:
            async with self._db.execute(
                "SELECT value, observed_at FROM supply_observations WHERE symbol = ? ORDER BY id",
                (normalize_symbol(symbol),),
            ) as cursor:
                rows = await cursor.fetchall()
            return [self._row_to_observation(r) for r in rows]
        except Exception as e:
            raise StorageError(
                f"Failed to read observations: {e}",
                context={"operation": "query", "table": "supply_observations", "symbol": symbol},
            ) from e

    async def observations_between(
        self,
        symbol: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Observation]:
        """Observations for a symbol with start <= timestamp <= end, in insertion order."""
        query = "SELECT value, observed_at FROM supply_observations WHERE symbol = ?"
        params: list = [normalize_symbol(symbol)]
        if start is not None:
            query += " AND observed_at >= ?"
            params.append(_ts(start))
        if end is not None:
            query += " AND observed_at <= ?"
            params.append(_ts(end))
        query += " ORDER BY id"
        try:
            async with self._db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
            return [self._row_to_observation(r) for r in rows]
        except Exception as e:
            raise StorageError(
                f"Failed to read observations: {e}",
                context={"operation": "query", "table": "supply_observations", "symbol": symbol},
            ) from e

    async def get_series(self, symbol: str) -> SupplySeries | None:
        canonical = normalize_symbol(symbol)
        series = await self.get_series_bulk([canonical])
        return series.get(canonical)

    async def get_series_bulk(self, symbols: Iterable[str]) -> dict[str, SupplySeries]:
        wanted = sorted({normalize_symbol(s) for s in symbols if s.strip()})
        if not wanted:
            return {}
        placeholders = ",".join("?" for _ in wanted)
        return await self._load_series(
            f"SELECT symbol FROM supply_series WHERE symbol IN ({placeholders})",
            f"""SELECT symbol, value, observed_at FROM supply_observations
                WHERE symbol IN ({placeholders}) ORDER BY id""",
            wanted,
        )

    async def get_all_series(self) -> dict[str, SupplySeries]:
        return await self._load_series(
            "SELECT symbol FROM supply_series",
            "SELECT symbol, value, observed_at FROM supply_observations ORDER BY id",
            [],
        )

    async def list_symbols(self) -> list[str]:
        try:
            async with self._db.execute(
                "SELECT symbol FROM supply_series ORDER BY symbol"
            ) as cursor:
                rows = await cursor.fetchall()
            return [r["symbol"] for r in rows]
        except Exception as e:
            raise StorageError(
                f"Failed to list symbols: {e}",
                context={"operation": "query", "table": "supply_series"},
            ) from e

    async def symbols_observed_on_day(self, day: date) -> set[str]:
        try:
            async with self._db.execute(
                "SELECT DISTINCT symbol FROM supply_observations WHERE observed_day = ?",
                (day.isoformat(),),
            ) as cursor:
                rows = await cursor.fetchall()
            return {r["symbol"] for r in rows}
        except Exception as e:
            raise StorageError(
                f"Failed to list symbols for day: {e}",
                context={"operation": "query", "table": "supply_observations"},
            ) from e

    async def delete_series(self, symbol: str) -> bool:
        """Maintenance only: remove a symbol's series and all its observations."""
        canonical = normalize_symbol(symbol)
        try:
            await self._db.execute(
                "DELETE FROM supply_observations WHERE symbol = ?", (canonical,)
            )
            cursor = await self._db.execute(
                "DELETE FROM supply_series WHERE symbol = ?", (canonical,)
            )
            await self._db.commit()
            return cursor.rowcount > 0
        except Exception as e:
            raise StorageError(
                f"Failed to delete series: {e}",
                context={"operation": "delete", "table": "supply_series", "symbol": canonical},
            ) from e

    # --- Snapshot Operations ---

    async def snapshot_exists_for_day(self, day: date) -> bool:
        try:
            async with self._db.execute(
                "SELECT 1 FROM snapshots WHERE snapshot_day = ? LIMIT 1",
                (day.isoformat(),),
            ) as cursor:
                row = await cursor.fetchone()
            return row is not None
        except Exception as e:
            raise StorageError(
                f"Failed to check snapshot existence: {e}",
                context={"operation": "query", "table": "snapshots"},
            ) from e

    async def save_snapshot(self, snapshot: Snapshot) -> int:
        try:
            snapshot_id = await self._insert_snapshot(snapshot)
            await self._db.commit()
            return snapshot_id
        except Exception as e:
            await self._db.rollback()
            raise StorageError(
                f"Failed to save snapshot: {e}",
                context={"operation": "insert", "table": "snapshots", "day": snapshot.day.isoformat()},
            ) from e

    async def replace_snapshot(self, snapshot: Snapshot) -> int:
        """Swap out every batch saved for the snapshot's day, wholesale."""
        try:
            await self._db.execute(
                """DELETE FROM snapshot_coins WHERE snapshot_id IN
                   (SELECT id FROM snapshots WHERE snapshot_day = ?)""",
                (snapshot.day.isoformat(),),
            )
            await self._db.execute(
                "DELETE FROM snapshots WHERE snapshot_day = ?",
                (snapshot.day.isoformat(),),
            )
            snapshot_id = await self._insert_snapshot(snapshot)
            await self._db.commit()
            return snapshot_id
        except Exception as e:
            await self._db.rollback()
            raise StorageError(
                f"Failed to replace snapshot: {e}",
                context={"operation": "replace", "table": "snapshots", "day": snapshot.day.isoformat()},
            ) from e

    async def get_latest_snapshot(self) -> Snapshot | None:
        try:
            async with self._db.execute(
                "SELECT * FROM snapshots ORDER BY captured_at DESC, id DESC LIMIT 1"
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                return None
            return await self._load_snapshot(row)
        except Exception as e:
            raise StorageError(
                f"Failed to get latest snapshot: {e}",
                context={"operation": "query", "table": "snapshots"},
            ) from e

    async def get_snapshots(
        self, start_day: date | None = None, end_day: date | None = None
    ) -> list[Snapshot]:
        try:
            query = "SELECT * FROM snapshots WHERE 1=1"
            params: list = []
            if start_day is not None:
                query += " AND snapshot_day >= ?"
                params.append(start_day.isoformat())
            if end_day is not None:
                query += " AND snapshot_day <= ?"
                params.append(end_day.isoformat())
            query += " ORDER BY captured_at ASC, id ASC"
            async with self._db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
            return [await self._load_snapshot(r) for r in rows]
        except Exception as e:
            raise StorageError(
                f"Failed to get snapshots: {e}",
                context={"operation": "query", "table": "snapshots"},
            ) from e

    async def delete_snapshots(self) -> int:
        """Maintenance only: drop every saved snapshot batch."""
        try:
            await self._db.execute("DELETE FROM snapshot_coins")
            cursor = await self._db.execute("DELETE FROM snapshots")
            await self._db.commit()
            return cursor.rowcount
        except Exception as e:
            raise StorageError(
                f"Failed to delete snapshots: {e}",
                context={"operation": "delete", "table": "snapshots"},
            ) from e

    # --- Statistics ---

    async def get_statistics(self) -> dict:
        try:
            stats: dict = {}
            for key, sql in (
                ("series", "SELECT COUNT(*) FROM supply_series"),
                ("observations", "SELECT COUNT(*) FROM supply_observations"),
                ("snapshots", "SELECT COUNT(*) FROM snapshots"),
                ("latest_observation_day", "SELECT MAX(observed_day) FROM supply_observations"),
                ("latest_snapshot_day", "SELECT MAX(snapshot_day) FROM snapshots"),
            ):
                async with self._db.execute(sql) as cursor:
                    row = await cursor.fetchone()
                stats[key] = row[0]
            return stats
        except Exception as e:
            raise StorageError(
                f"Failed to gather statistics: {e}",
                context={"operation": "query", "table": "*"},
            ) from e

    # --- Row Mapping Helpers ---

    async def _insert_observation(self, symbol: str, observation: Observation) -> None:
        await self._db.execute(
            "INSERT OR IGNORE INTO supply_series (symbol) VALUES (?)", (symbol,)
        )
        await self._db.execute(
            """INSERT INTO supply_observations (symbol, value, observed_at, observed_day)
               VALUES (?, ?, ?, ?)""",
            (
                symbol,
                observation.value,
                _ts(observation.timestamp),
                observation.day.isoformat(),
            ),
        )

    async def _insert_snapshot(self, snapshot: Snapshot) -> int:
        cursor = await self._db.execute(
            "INSERT INTO snapshots (snapshot_day, captured_at) VALUES (?, ?)",
            (snapshot.day.isoformat(), _ts(snapshot.captured_at)),
        )
        snapshot_id = cursor.lastrowid
        await self._db.executemany(
            """INSERT INTO snapshot_coins
               (snapshot_id, rank, name, symbol, icon, price, volume_24h,
                market_cap, circulating_supply, total_supply, max_supply, changes_json)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            [
                (
                    snapshot_id,
                    coin.rank,
                    coin.name,
                    coin.symbol,
                    coin.icon,
                    coin.price,
                    coin.volume_24h,
                    coin.market_cap,
                    coin.circulating_supply,
                    coin.total_supply,
                    coin.max_supply,
                    json.dumps(
                        {
                            "1d": coin.supply_change_1d.model_dump(mode="json"),
                            "1w": coin.supply_change_1w.model_dump(mode="json"),
                            "1m": coin.supply_change_1m.model_dump(mode="json"),
                        }
                    ),
                )
                for coin in snapshot.coins
            ],
        )
        return snapshot_id

    async def _load_snapshot(self, row: aiosqlite.Row) -> Snapshot:
        async with self._db.execute(
            "SELECT * FROM snapshot_coins WHERE snapshot_id = ? ORDER BY rank",
            (row["id"],),
        ) as cursor:
            coin_rows = await cursor.fetchall()
        return Snapshot(
            day=date.fromisoformat(row["snapshot_day"]),
            captured_at=datetime.fromisoformat(row["captured_at"]),
            coins=[self._row_to_coin(r) for r in coin_rows],
        )

    async def _load_series(
        self, series_sql: str, observations_sql: str, params: list
    ) -> dict[str, SupplySeries]:
        try:
            async with self._db.execute(series_sql, params) as cursor:
                symbols = [r["symbol"] for r in await cursor.fetchall()]
            grouped: dict[str, list[Observation]] = {s: [] for s in symbols}
            async with self._db.execute(observations_sql, params) as cursor:
                for r in await cursor.fetchall():
                    grouped.setdefault(r["symbol"], []).append(self._row_to_observation(r))
            return {
                symbol: SupplySeries(symbol=symbol, observations=observations)
                for symbol, observations in grouped.items()
            }
        except Exception as e:
            raise StorageError(
                f"Failed to load series: {e}",
                context={"operation": "query", "table": "supply_observations"},
            ) from e

    @staticmethod
    def _row_to_observation(row: aiosqlite.Row) -> Observation:
        return Observation(
            value=row["value"],
            timestamp=datetime.fromisoformat(row["observed_at"]),
        )

    @staticmethod
    def _row_to_coin(row: aiosqlite.Row) -> CoinRecord:
        changes = json.loads(row["changes_json"]) if row["changes_json"] else {}
        return CoinRecord(
            rank=row["rank"],
            name=row["name"],
            symbol=row["symbol"],
            icon=row["icon"],
            price=row["price"],
            volume_24h=row["volume_24h"],
            market_cap=row["market_cap"],
            circulating_supply=row["circulating_supply"],
            total_supply=row["total_supply"],
            max_supply=row["max_supply"],
            supply_change_1d=ChangeResult.model_validate(changes.get("1d", {})),
            supply_change_1w=ChangeResult.model_validate(changes.get("1w", {})),
            supply_change_1m=ChangeResult.model_validate(changes.get("1m", {})),
        )


async def create_store(config: StorageConfig) -> SqliteStore:
    """Create and initialize a storage backend based on configuration."""
    if config.backend == StorageBackendEnum.SQLITE:
        store = SqliteStore(config)
        await store.initialize()
        return store
    raise StorageError(
        f"Unsupported storage backend: {config.backend}",
        context={"operation": "create_store", "backend": str(config.backend)},
    )
