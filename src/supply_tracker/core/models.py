"""Pydantic data models: the system's type contracts."""

from __future__ import annotations

from datetime import UTC, date, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, computed_field, field_validator

# --- Type Aliases ---

Symbol = str
ProviderId = str

# --- Enumerations ---


class StorageBackend(StrEnum):
    """Supported storage backends."""

    SQLITE = "sqlite"


class CycleState(StrEnum):
    """States of one ingestion cycle."""

    IDLE = "idle"
    PAGINATING = "paginating"
    RESOLVING = "resolving"
    BACKFILLING = "backfilling"
    PERSISTING = "persisting"
    DONE = "done"
    SKIPPED = "skipped"


def as_utc(value: datetime) -> datetime:
    """Return a tz-aware UTC datetime; naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def normalize_symbol(value: str) -> Symbol:
    """Canonical ticker form: stripped and upper-cased."""
    return value.strip().upper()


# --- Supply Series Models ---


class Observation(BaseModel):
    """One circulating-supply reading for one symbol at one moment."""

    model_config = ConfigDict(frozen=True)

    value: float
    timestamp: datetime

    @field_validator("value")
    @classmethod
    def value_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"supply value cannot be negative, got {v}")
        return v

    @field_validator("timestamp")
    @classmethod
    def timestamp_utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    @property
    def day(self) -> date:
        """UTC calendar day of the observation."""
        return self.timestamp.date()


class SupplySeries(BaseModel):
    """The observation history of one symbol, in insertion order."""

    model_config = ConfigDict(frozen=True)

    symbol: Symbol
    observations: list[Observation] = []

    @field_validator("symbol")
    @classmethod
    def symbol_canonical(cls, v: str) -> str:
        v = normalize_symbol(v)
        if not v:
            raise ValueError("symbol cannot be empty")
        return v

    def sorted_desc(self) -> list[Observation]:
        """Observations newest first."""
        return sorted(self.observations, key=lambda o: o.timestamp, reverse=True)

    def latest(self) -> Observation | None:
        if not self.observations:
            return None
        return max(self.observations, key=lambda o: o.timestamp)

    def has_observation_on(self, day: date) -> bool:
        return any(o.day == day for o in self.observations)

    def daily(self) -> list[Observation]:
        """One observation per UTC day (the latest of that day), newest first."""
        by_day: dict[date, Observation] = {}
        for obs in self.observations:
            current = by_day.get(obs.day)
            if current is None or obs.timestamp > current.timestamp:
                by_day[obs.day] = obs
        return sorted(by_day.values(), key=lambda o: o.timestamp, reverse=True)

    def __len__(self) -> int:
        return len(self.observations)


class ChangeResult(BaseModel):
    """Supply change against a historical reference.

    Both fields are None when no usable reference exists within policy.
    """

    model_config = ConfigDict(frozen=True)

    change: int | None = None
    reference_value: float | None = None
    reference_timestamp: datetime | None = None
    is_estimated: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def percent_change(self) -> float | None:
        if self.change is None or not self.reference_value:
            return None
        return self.change / self.reference_value * 100

    @property
    def is_empty(self) -> bool:
        return self.change is None and self.reference_value is None

    @classmethod
    def empty(cls) -> ChangeResult:
        return cls()


# --- Provider Payload Models ---


class RawAsset(BaseModel):
    """One ranked record from the provider's markets listing."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: ProviderId
    symbol: str
    name: str = ""
    image: str | None = None
    current_price: float | None = None
    market_cap: float | None = None
    market_cap_rank: int | None = None
    total_volume: float | None = None
    circulating_supply: float | None = None
    total_supply: float | None = None
    max_supply: float | None = None

    @property
    def has_valid_supply(self) -> bool:
        return self.circulating_supply is not None and self.circulating_supply > 0


class RawAssetDetail(BaseModel):
    """Supply fields from the provider's per-asset detail endpoint."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: ProviderId
    symbol: str
    name: str = ""
    circulating_supply: float | None = None
    total_supply: float | None = None
    max_supply: float | None = None

    @classmethod
    def from_payload(cls, payload: dict) -> RawAssetDetail:
        """Flatten the provider's nested `market_data` block."""
        market = payload.get("market_data") or {}
        return cls(
            id=payload["id"],
            symbol=payload["symbol"],
            name=payload.get("name", ""),
            circulating_supply=market.get("circulating_supply"),
            total_supply=market.get("total_supply"),
            max_supply=market.get("max_supply"),
        )

    @property
    def has_valid_supply(self) -> bool:
        return self.circulating_supply is not None and self.circulating_supply > 0


class MarketPage(BaseModel):
    """One listing page: the validated assets and how many records the provider sent."""

    model_config = ConfigDict(frozen=True)

    page: int
    received: int
    assets: list[RawAsset] = []

    @property
    def dropped(self) -> int:
        return self.received - len(self.assets)


# --- Snapshot Models ---


class CoinRecord(BaseModel):
    """Denormalized daily view of one asset with computed supply changes."""

    model_config = ConfigDict(frozen=True)

    rank: int
    name: str
    symbol: Symbol
    icon: str | None = None
    price: float | None = None
    volume_24h: float | None = None
    market_cap: float | None = None
    circulating_supply: float
    total_supply: float | None = None
    max_supply: float | None = None
    supply_change_1d: ChangeResult = ChangeResult()
    supply_change_1w: ChangeResult = ChangeResult()
    supply_change_1m: ChangeResult = ChangeResult()

    @field_validator("symbol")
    @classmethod
    def symbol_canonical(cls, v: str) -> str:
        return normalize_symbol(v)

    @field_validator("rank")
    @classmethod
    def rank_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("rank must be >= 1")
        return v


class Snapshot(BaseModel):
    """One collection cycle's batch of CoinRecords."""

    model_config = ConfigDict(frozen=True)

    day: date
    captured_at: datetime
    coins: list[CoinRecord]

    @field_validator("captured_at")
    @classmethod
    def captured_at_utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    def get_coin(self, symbol: str) -> CoinRecord | None:
        wanted = normalize_symbol(symbol)
        for coin in self.coins:
            if coin.symbol == wanted:
                return coin
        return None


# --- Cycle Result ---


class CycleSummary(BaseModel):
    """Structured outcome of one ingestion cycle."""

    model_config = ConfigDict(frozen=True)

    success: bool
    message: str
    state: CycleState
    day: date
    pages_fetched: int = 0
    pages_failed: int = 0
    assets_fetched: int = 0
    backfill_attempted: int = 0
    backfill_recovered: int = 0
    written: int = 0
    already_present: int = 0
    corrected: int = 0
    failed: dict[Symbol, str] = {}
    snapshot_coins: int = 0
    started_at: datetime
    finished_at: datetime
