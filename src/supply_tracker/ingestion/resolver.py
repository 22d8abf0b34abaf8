"""Provider identifier to canonical symbol reconciliation."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from supply_tracker.core.models import ProviderId, RawAsset, Symbol, normalize_symbol

logger = logging.getLogger(__name__)


class SymbolMap:
    """Resolved `provider id -> symbol` mapping with reverse lookups.

    Several provider identifiers may share one symbol (wrapped or bridged
    assets). The first identifier seen for a symbol is its canonical id.
    """

    def __init__(self) -> None:
        self._by_id: dict[ProviderId, Symbol] = {}
        self._by_symbol: dict[Symbol, list[ProviderId]] = {}

    def assign(self, provider_id: ProviderId, symbol: Symbol) -> None:
        previous = self._by_id.get(provider_id)
        if previous == symbol:
            return
        if previous is not None:
            logger.warning(
                "Identifier %s re-resolved from %s to %s (last seen wins)",
                provider_id, previous, symbol,
            )
            ids = self._by_symbol[previous]
            ids.remove(provider_id)
            if not ids:
                del self._by_symbol[previous]
        self._by_id[provider_id] = symbol
        self._by_symbol.setdefault(symbol, []).append(provider_id)

    def symbol_for(self, provider_id: ProviderId) -> Symbol | None:
        return self._by_id.get(provider_id)

    def ids_for(self, symbol: str) -> list[ProviderId]:
        return list(self._by_symbol.get(normalize_symbol(symbol), []))

    def id_for(self, symbol: str) -> ProviderId | None:
        ids = self._by_symbol.get(normalize_symbol(symbol))
        return ids[0] if ids else None

    def symbols(self) -> list[Symbol]:
        """Distinct symbols in first-resolved order."""
        return list(self._by_symbol)

    def as_dict(self) -> dict[ProviderId, Symbol]:
        return dict(self._by_id)

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._by_id

    def __len__(self) -> int:
        return len(self._by_id)


class SymbolResolver:
    """Builds a SymbolMap from listing pages.

    The authoritative markets listing wins over an asset's own symbol field
    whenever it knows the identifier.
    """

    def resolve(
        self,
        assets: Iterable[RawAsset],
        listing: Mapping[ProviderId, str] | None = None,
    ) -> SymbolMap:
        listing = listing or {}
        result = SymbolMap()
        overridden = 0

        for asset in assets:
            own = normalize_symbol(asset.symbol)
            authoritative = listing.get(asset.id)
            symbol = normalize_symbol(authoritative) if authoritative else own
            if not symbol:
                logger.warning("Asset %s has no usable symbol, skipping", asset.id)
                continue
            if symbol != own:
                overridden += 1
                logger.debug("Listing maps %s to %s (asset says %s)", asset.id, symbol, own)
            result.assign(asset.id, symbol)

        logger.info(
            "Resolved %d identifiers to %d symbols (%d listing overrides)",
            len(result), len(result.symbols()), overridden,
        )
        return result
