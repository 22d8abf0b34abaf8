"""supply_tracker.core: foundation types, config, and exceptions."""

from supply_tracker.core.config import (
    ChangesConfig,
    IngestionConfig,
    LoggingConfig,
    ProviderConfig,
    StorageConfig,
    TrackerConfig,
    load_config,
)
from supply_tracker.core.exceptions import (
    ConfigError,
    DuplicateObservationError,
    ExhaustedError,
    IngestionError,
    NotFoundError,
    PersistenceError,
    RateLimitError,
    StorageError,
    SupplyTrackerError,
    TransientError,
)
from supply_tracker.core.models import (
    ChangeResult,
    CoinRecord,
    CycleState,
    CycleSummary,
    Observation,
    MarketPage,
    ProviderId,
    RawAsset,
    RawAssetDetail,
    Snapshot,
    StorageBackend,
    SupplySeries,
    Symbol,
)

__all__ = [
    # Type aliases
    "Symbol",
    "ProviderId",
    # Enums
    "StorageBackend",
    "CycleState",
    # Series models
    "Observation",
    "SupplySeries",
    "ChangeResult",
    # Provider payloads
    "RawAsset",
    "RawAssetDetail",
    "MarketPage",
    # Snapshot models
    "CoinRecord",
    "Snapshot",
    "CycleSummary",
    # Config
    "TrackerConfig",
    "ProviderConfig",
    "IngestionConfig",
    "ChangesConfig",
    "StorageConfig",
    "LoggingConfig",
    "load_config",
    # Exceptions
    "SupplyTrackerError",
    "ConfigError",
    "IngestionError",
    "RateLimitError",
    "TransientError",
    "ExhaustedError",
    "StorageError",
    "PersistenceError",
    "NotFoundError",
    "DuplicateObservationError",
]
