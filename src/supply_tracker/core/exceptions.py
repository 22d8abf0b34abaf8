"""Custom exception hierarchy for supply-tracker."""

from typing import Any


class SupplyTrackerError(Exception):
    """Base exception for all supply-tracker errors.

    All exceptions carry an optional `context` dict for structured error
    metadata that can be logged or serialized without parsing the message.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.context = context or {}


class ConfigError(SupplyTrackerError):
    """Invalid or missing configuration.

    Raised by load_config() during startup. Should be treated as fatal.

    Context keys:
        field (str): the config field that failed validation
        value (Any): the invalid value (redacted for secrets)
    """


class IngestionError(SupplyTrackerError):
    """Failed to fetch or decode market data.

    Policy: log and skip the page or asset. Do not abort the cycle.

    Context keys:
        url (str): the URL that was being fetched
        status_code (int | None): HTTP status if a response arrived
    """


class RateLimitError(IngestionError):
    """Provider rate limit hit (HTTP 429).

    Policy: sleep for the provider-specified interval and retry
    (handled by MarketDataClient internally).

    Context keys:
        retry_after (float): seconds to wait
    """

    def __init__(
        self,
        message: str,
        retry_after: float,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context={**(context or {}), "retry_after": retry_after})
        self.retry_after = retry_after


class TransientError(IngestionError):
    """Retryable failure: server error, timeout, connection drop, bad payload.

    Policy: sleep a fixed backoff and retry (handled by MarketDataClient).
    """


class ExhaustedError(IngestionError):
    """All attempts for one call failed.

    Policy: non-fatal to the cycle. The caller skips the page or asset.

    Context keys:
        attempts (int): how many attempts were made
        cause (str): the last underlying failure
    """


class StorageError(SupplyTrackerError):
    """Database operation failed.

    Policy: raise immediately. Data integrity is critical.

    Context keys:
        operation (str): "insert", "query", "migrate", etc.
        table (str): the table involved
    """


class PersistenceError(StorageError):
    """A single symbol's write failed inside a grouped write.

    Policy: report per symbol. Never rolls back symbols already written.

    Context keys:
        symbol (str): the symbol whose write failed
    """


class NotFoundError(SupplyTrackerError):
    """Nothing stored for the requested symbol or day.

    Context keys:
        symbol (str): the symbol that was looked up
    """


class DuplicateObservationError(SupplyTrackerError):
    """A manual observation was refused because the day already has one.

    Context keys:
        symbol: str
        day (str): ISO date of the existing observation
    """
