"""Tests for supply_tracker.core.config."""

import pytest
from pydantic import ValidationError

from supply_tracker.core.config import (
    ChangesConfig,
    IngestionConfig,
    LoggingConfig,
    ProviderConfig,
    TrackerConfig,
    _deep_merge,
    _env_overrides,
    _parse_env_value,
    load_config,
)
from supply_tracker.core.exceptions import ConfigError
from supply_tracker.core.models import StorageBackend

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    """Isolate tests from a developer's environment and working directory."""
    import os

    for key in list(os.environ):
        if key.startswith("SUPPLY_TRACKER_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)


class TestProviderConfig:
    def test_defaults_match_provider_policy(self):
        c = ProviderConfig()
        assert c.base_url == "https://api.coingecko.com/api/v3"
        assert c.per_page == 100
        assert c.listing_size == 250
        assert c.max_attempts == 3
        assert c.default_retry_after == 15
        assert c.request_timeout == 10

    def test_trailing_slash_stripped(self):
        assert ProviderConfig(base_url="https://x.test/api/").base_url == "https://x.test/api"

    def test_base_url_must_be_http(self):
        with pytest.raises(ValidationError, match="http"):
            ProviderConfig(base_url="ftp://x.test")

    def test_page_size_limit(self):
        with pytest.raises(ValidationError, match="between 1 and 250"):
            ProviderConfig(per_page=500)

    def test_max_attempts_min(self):
        with pytest.raises(ValidationError, match=">= 1"):
            ProviderConfig(max_attempts=0)


class TestIngestionConfig:
    def test_defaults(self):
        c = IngestionConfig()
        assert c.page_count == 5
        assert c.backfill_cap == 100
        assert c.page_delay_seconds == 15
        assert c.detail_delay_seconds == 10
        assert c.priority_symbols == ("BTC", "ETH", "BNB", "SOL", "XRP")
        assert c.priority_fallback_ids["BNB"] == "binancecoin"

    def test_priority_symbols_canonicalized(self):
        c = IngestionConfig(priority_symbols=(" btc", "eth "), priority_fallback_ids={"btc": "bitcoin"})
        assert c.priority_symbols == ("BTC", "ETH")
        assert c.priority_fallback_ids == {"BTC": "bitcoin"}

    def test_negative_delay_rejected(self):
        with pytest.raises(ValidationError, match=">= 0"):
            IngestionConfig(page_delay_seconds=-1)

    def test_schedule_interval_hourly_by_default(self):
        assert IngestionConfig().schedule_interval_seconds == 3600

    def test_schedule_interval_must_be_positive(self):
        with pytest.raises(ValidationError, match="> 0"):
            IngestionConfig(schedule_interval_seconds=0)


class TestChangesConfig:
    def test_default_windows(self):
        assert ChangesConfig().windows == {"1d": 1, "1w": 7, "1m": 30}

    def test_snapshot_windows_required(self):
        with pytest.raises(ValidationError, match="windows must define"):
            ChangesConfig(windows={"1d": 1})

    def test_window_must_be_positive(self):
        with pytest.raises(ValidationError, match=">= 1 day"):
            ChangesConfig(windows={"1d": 0, "1w": 7, "1m": 30})


class TestLoggingConfig:
    def test_level_upper_cased(self):
        assert LoggingConfig(level="debug").level == "DEBUG"

    def test_unknown_level(self):
        with pytest.raises(ValidationError, match="unknown log level"):
            LoggingConfig(level="chatty")


class TestLoadConfig:
    def test_defaults_without_file(self):
        config = load_config()
        assert isinstance(config, TrackerConfig)
        assert config.storage.backend == StorageBackend.SQLITE

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "custom.yml"
        path.write_text("ingestion:\n  backfill_cap: 20\nprovider:\n  per_page: 50\n")
        config = load_config(str(path))
        assert config.ingestion.backfill_cap == 20
        assert config.provider.per_page == 50

    def test_default_file_in_cwd(self, tmp_path):
        (tmp_path / "supply-tracker.yml").write_text("logging:\n  level: warning\n")
        assert load_config().logging.level == "WARNING"

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.yml"
        path.write_text("ingestion:\n  backfill_cap: 20\n")
        monkeypatch.setenv("SUPPLY_TRACKER_INGESTION__BACKFILL_CAP", "40")
        assert load_config(str(path)).ingestion.backfill_cap == 40

    def test_config_env_var(self, tmp_path, monkeypatch):
        path = tmp_path / "env.yml"
        path.write_text("storage:\n  sqlite_path: /tmp/x.db\n")
        monkeypatch.setenv("SUPPLY_TRACKER_CONFIG", str(path))
        assert load_config().storage.sqlite_path == "/tmp/x.db"

    def test_missing_explicit_file(self):
        with pytest.raises(ConfigError, match="not found"):
            load_config("/nonexistent/supply-tracker.yml")

    def test_missing_file_from_env_var(self, monkeypatch):
        monkeypatch.setenv("SUPPLY_TRACKER_CONFIG", "/nonexistent/env.yml")
        with pytest.raises(ConfigError, match="from SUPPLY_TRACKER_CONFIG"):
            load_config()

    def test_empty_yaml_uses_defaults(self, tmp_path):
        path = tmp_path / "empty.yml"
        path.write_text("")
        assert load_config(str(path)).ingestion.backfill_cap == 100

    def test_non_mapping_yaml(self, tmp_path):
        path = tmp_path / "list.yml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="must be a mapping"):
            load_config(str(path))

    def test_validation_error_wrapped(self, monkeypatch):
        monkeypatch.setenv("SUPPLY_TRACKER_PROVIDER__PER_PAGE", "999")
        with pytest.raises(ConfigError):
            load_config()


class TestEnvHelpers:
    def test_overrides_nested(self, monkeypatch):
        monkeypatch.setenv("T_PROVIDER__API_KEY", "secret")
        monkeypatch.setenv("T_INGESTION__BACKFILL_CAP", "20")
        monkeypatch.setenv("T_CONFIG", "/etc/t.yml")
        assert _env_overrides("T_") == {
            "provider": {"api_key": "secret"},
            "ingestion": {"backfill_cap": 20},
        }

    def test_deep_merge_keeps_sibling_keys(self):
        merged = _deep_merge(
            {"provider": {"per_page": 50, "api_key": "a"}, "logging": {"level": "INFO"}},
            {"provider": {"api_key": "b"}},
        )
        assert merged == {"provider": {"per_page": 50, "api_key": "b"}, "logging": {"level": "INFO"}}

    def test_deep_merge_does_not_mutate_base(self):
        base = {"provider": {"per_page": 50}}
        _deep_merge(base, {"provider": {"per_page": 25}})
        assert base == {"provider": {"per_page": 50}}

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("true", True),
            ("FALSE", False),
            ("42", 42),
            ("1.5", 1.5),
            ("abc", "abc"),
            ("[BTC, ETH]", ["BTC", "ETH"]),
            ("", ""),
            ("key: value", "key: value"),
        ],
    )
    def test_parse_env_value(self, raw, expected):
        assert _parse_env_value(raw) == expected

    def test_list_override_reaches_model(self, monkeypatch):
        monkeypatch.setenv("SUPPLY_TRACKER_INGESTION__PRIORITY_SYMBOLS", "[btc, eth]")
        assert load_config().ingestion.priority_symbols == ("BTC", "ETH")

    def test_custom_prefix_config_path(self, tmp_path, monkeypatch):
        path = tmp_path / "other.yml"
        path.write_text("ingestion:\n  backfill_cap: 7\n")
        monkeypatch.setenv("OTHER_CONFIG", str(path))
        assert load_config(env_prefix="OTHER_").ingestion.backfill_cap == 7
