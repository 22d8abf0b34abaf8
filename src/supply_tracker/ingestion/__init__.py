"""Market-data ingestion: client, symbol resolution, storage, and the cycle."""

from supply_tracker.ingestion.client import MarketDataClient
from supply_tracker.ingestion.orchestrator import IngestionOrchestrator
from supply_tracker.ingestion.resolver import SymbolMap, SymbolResolver
from supply_tracker.ingestion.store import SqliteStore, StorageProtocol, create_store

__all__ = [
    "MarketDataClient",
    "IngestionOrchestrator",
    "SymbolMap",
    "SymbolResolver",
    "SqliteStore",
    "StorageProtocol",
    "create_store",
]
