"""Rate-limited async HTTP client for the market-data provider."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx
from aiolimiter import AsyncLimiter
from pydantic import ValidationError

from supply_tracker.core.config import ProviderConfig
from supply_tracker.core.exceptions import (
    ExhaustedError,
    IngestionError,
    RateLimitError,
    TransientError,
)
from supply_tracker.core.models import MarketPage, RawAsset, RawAssetDetail, normalize_symbol

logger = logging.getLogger(__name__)

_MARKETS_PATH = "/coins/markets"
_DETAIL_PATH = "/coins/{asset_id}"

_RETRYABLE_STATUS = frozenset({500, 502, 503, 504})

_DETAIL_PARAMS = {
    "localization": "false",
    "tickers": "false",
    "market_data": "true",
    "community_data": "false",
    "developer_data": "false",
}


class MarketDataClient:
    """Rate-limited async client for a CoinGecko-compatible markets API.

    Provider policy (public tier):
    - Strict per-minute request budget; 429 responses carry Retry-After
    - Listings are ranked and paged (`per_page` <= 250)

    All methods are async. Use via `async with MarketDataClient(...) as client:`.
    """

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config
        self._limiter = AsyncLimiter(max_rate=config.rate_limit_per_minute, time_period=60.0)
        headers = {"Accept": "application/json", "User-Agent": config.user_agent}
        if config.api_key:
            headers["x-cg-demo-api-key"] = config.api_key
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            headers=headers,
            timeout=httpx.Timeout(config.request_timeout),
            follow_redirects=True,
        )

    async def __aenter__(self) -> MarketDataClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client. Called automatically by __aexit__."""
        await self._client.aclose()

    # --- Listings ---

    async def fetch_page(self, page: int) -> list[RawAsset]:
        """Fetch one page of assets ranked by market cap.

        Args:
            page: 1-based page number.

        Returns:
            Up to `per_page` RawAsset records in provider rank order.
            Records that fail validation are dropped with a warning.

        Raises:
            ValueError: If page < 1.
            ExhaustedError: If every attempt failed.
            IngestionError: Non-retryable HTTP error.
        """
        return (await self.fetch_listing_page(page)).assets

    async def fetch_listing_page(self, page: int) -> MarketPage:
        """Like fetch_page, but also reports how many records the provider sent.

        `received` counts malformed records too, so callers can tell a short
        page from a full page with dropped entries.
        """
        if page < 1:
            raise ValueError(f"page must be >= 1, got {page}")

        payload = await self._get_json(
            _MARKETS_PATH, params=self._markets_params(self._config.per_page, page)
        )
        if not isinstance(payload, list):
            raise IngestionError(
                f"Expected a list of assets for page {page}",
                context={"url": _MARKETS_PATH, "page": page},
            )

        assets: list[RawAsset] = []
        for raw in payload:
            try:
                assets.append(RawAsset.model_validate(raw))
            except ValidationError as e:
                logger.warning(
                    "Dropping malformed asset on page %d: %s",
                    page, raw.get("id") if isinstance(raw, dict) else raw,
                )
                logger.debug("Validation detail: %s", e)
        logger.info("Page %d fetched: %d assets", page, len(assets))
        return MarketPage(page=page, received=len(payload), assets=assets)

    async def fetch_symbol_listing(self) -> dict[str, str]:
        """Fetch the wide markets listing as an {asset_id: SYMBOL} mapping.

        This listing is authoritative for symbol reconciliation. Failure is
        not fatal: an empty mapping is returned and the provider's per-asset
        symbols are used instead.
        """
        try:
            payload = await self._get_json(
                _MARKETS_PATH,
                params=self._markets_params(self._config.listing_size, 1),
            )
        except IngestionError as e:
            logger.warning("Symbol listing unavailable, using asset symbols: %s", e)
            return {}

        mapping: dict[str, str] = {}
        if not isinstance(payload, list):
            return mapping
        for entry in payload:
            if isinstance(entry, dict) and entry.get("id") and entry.get("symbol"):
                mapping[str(entry["id"])] = normalize_symbol(str(entry["symbol"]))
        return mapping

    # --- Detail ---

    async def fetch_detail(self, asset_id: str) -> RawAssetDetail:
        """Fetch supply fields for a single asset.

        Raises:
            ExhaustedError: If every attempt failed.
            IngestionError: Non-retryable HTTP error or unusable payload.
        """
        url = _DETAIL_PATH.format(asset_id=asset_id)
        payload = await self._get_json(url, params=dict(_DETAIL_PARAMS))
        try:
            return RawAssetDetail.from_payload(payload)
        except (KeyError, TypeError, AttributeError, ValidationError) as e:
            raise IngestionError(
                f"Malformed detail payload for {asset_id!r}",
                context={"url": url, "asset_id": asset_id, "error": str(e)},
            ) from e

    # --- Rate Limiting & Retry ---

    def _markets_params(self, per_page: int, page: int) -> dict[str, Any]:
        return {
            "vs_currency": self._config.vs_currency,
            "order": self._config.order,
            "per_page": per_page,
            "page": page,
            "sparkline": "false",
        }

    async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        """GET a JSON document with rate limiting and retry logic.

        Retry policy (max_attempts total, default 3):
            - HTTP 429: sleep Retry-After (or default_retry_after), retry.
            - HTTP 5xx, timeouts, connection errors, bad JSON: sleep
              transient_backoff_seconds, retry.
            - Other HTTP errors: raise IngestionError immediately.
            - No sleep after the final attempt.

        Raises:
            ExhaustedError: If every attempt failed with a retryable error.
            IngestionError: On a non-retryable HTTP status.
        """
        max_attempts = self._config.max_attempts
        last_exc: IngestionError | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                return await self._attempt(url, params)
            except RateLimitError as e:
                last_exc = e
                delay = e.retry_after
                reason = "Rate limited (429)"
            except TransientError as e:
                last_exc = e
                delay = self._config.transient_backoff_seconds
                reason = f"Transient failure ({e})"

            if attempt < max_attempts:
                logger.warning(
                    "%s on %s, waiting %ss (attempt %d/%d)",
                    reason, url, delay, attempt, max_attempts,
                )
                await asyncio.sleep(delay)

        raise ExhaustedError(
            f"Request failed after {max_attempts} attempts: {url}",
            context={"url": url, "attempts": max_attempts, "cause": str(last_exc)},
        ) from last_exc

    async def _attempt(self, url: str, params: dict[str, Any] | None) -> Any:
        """One request; classifies every failure as retryable or not."""
        try:
            await self._limiter.acquire()
            response = await self._client.get(url, params=params)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientError(
                f"{type(e).__name__}: {e}",
                context={"url": url, "error": str(e)},
            ) from e

        if response.status_code == 429:
            raise RateLimitError(
                f"Rate limit exceeded: {url}",
                retry_after=self._retry_after(response),
                context={"url": url, "status_code": 429},
            )

        if response.status_code in _RETRYABLE_STATUS:
            raise TransientError(
                f"Server error {response.status_code}",
                context={"url": url, "status_code": response.status_code},
            )

        if response.status_code != 200:
            raise IngestionError(
                f"HTTP {response.status_code} from {url}",
                context={"url": url, "status_code": response.status_code},
            )

        try:
            return response.json()
        except ValueError as e:
            raise TransientError(
                "Undecodable JSON body",
                context={"url": url, "error": str(e)},
            ) from e

    def _retry_after(self, response: httpx.Response) -> float:
        raw = response.headers.get("Retry-After")
        if raw is None:
            return self._config.default_retry_after
        try:
            return max(0.0, float(raw))
        except ValueError:
            return self._config.default_retry_after
