"""
Tests for Settings loading and ConfigValidator.
"""

import dataclasses
import logging

import pytest

from floorguard.config.config import (
    DEFAULT_DEEPBOOK_PACKAGE_ID,
    FULLNODE_URLS,
    Settings,
    env_bool,
)
from floorguard.config.config_validator import (
    ConfigValidator,
    ValidationIssue,
    ValidationSeverity,
    validate_and_log,
    validate_config,
)

ENV_KEYS = [
    "NETWORK", "SUI_RPC_URL", "BUYBACK_ENABLED", "BUYBACK_MIN_AMOUNT",
    "BUYBACK_BALANCE_MANAGER_ID", "BUYBACK_PRICE_MULTIPLIER", "BUYBACK_DRY_RUN",
    "EXECUTOR_PRIVATE_KEY", "SUI_PRIVATE_KEY", "SIGNER_URL", "AUTO_START_LISTENER",
    "LISTENER_POLL_INTERVAL", "LISTENER_EVENT_LIMIT", "DEEPBOOK_PACKAGE_ID",
    "QUOTE_COIN_TYPE", "ORDER_CACHE_MAX_AGE_MS", "HTTP_TIMEOUT", "METRICS_PORT",
    "METRICS_TOKEN", "ALERT_WEBHOOK_URL", "ALERT_WEBHOOK_TYPE", "ALERT_ENABLED",
    "LOG_FILE", "LOG_LEVEL",
]


@pytest.fixture
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


@pytest.fixture
def settings(clean_env):
    return Settings.load()


class TestSettings:
    def test_defaults(self, settings):
        """An empty environment yields a safe testnet configuration."""
        assert settings.network == "testnet"
        assert settings.rpc_url == FULLNODE_URLS["testnet"]
        assert settings.buyback_enabled is False
        assert settings.buyback_min_amount is None
        assert settings.buyback_price_multiplier == 2.0
        assert settings.listener_poll_interval_ms == 5000
        assert settings.listener_poll_interval_sec == 5.0
        assert settings.deepbook_package_id == DEFAULT_DEEPBOOK_PACKAGE_ID
        assert settings.private_key is None

    def test_network_selects_fullnode(self, clean_env):
        """The RPC URL follows the network unless overridden."""
        clean_env.setenv("NETWORK", "mainnet")
        assert Settings.load().rpc_url == FULLNODE_URLS["mainnet"]

        clean_env.setenv("SUI_RPC_URL", "http://node:9000")
        assert Settings.load().rpc_url == "http://node:9000"

    def test_private_key_fallback(self, clean_env):
        """SUI_PRIVATE_KEY is used when EXECUTOR_PRIVATE_KEY is absent."""
        clean_env.setenv("SUI_PRIVATE_KEY", "fallback")
        assert Settings.load().private_key == "fallback"

        clean_env.setenv("EXECUTOR_PRIVATE_KEY", "primary")
        assert Settings.load().private_key == "primary"

    def test_overrides(self, clean_env):
        """Numeric and boolean settings are parsed from the environment."""
        clean_env.setenv("BUYBACK_ENABLED", "yes")
        clean_env.setenv("BUYBACK_MIN_AMOUNT", "2.5")
        clean_env.setenv("LISTENER_POLL_INTERVAL", "1500")
        clean_env.setenv("LOG_LEVEL", "debug")

        cfg = Settings.load()

        assert cfg.buyback_enabled is True
        assert cfg.buyback_min_amount == 2.5
        assert cfg.listener_poll_interval_sec == 1.5
        assert cfg.log_level == "DEBUG"

    @pytest.mark.parametrize("key,value", [
        ("LISTENER_POLL_INTERVAL", "0"),
        ("LISTENER_EVENT_LIMIT", "5000"),
        ("BUYBACK_PRICE_MULTIPLIER", "0.5"),
        ("BUYBACK_MIN_AMOUNT", "-1"),
        ("HTTP_TIMEOUT", "0"),
    ])
    def test_invalid_values_raise(self, clean_env, key, value):
        """Out-of-range values fail fast."""
        clean_env.setenv(key, value)
        with pytest.raises(ValueError):
            Settings.load()

    def test_dump_masks_secrets(self, clean_env):
        """Secrets never appear in the dump."""
        clean_env.setenv("EXECUTOR_PRIVATE_KEY", "ab" * 32)
        clean_env.setenv("METRICS_TOKEN", "token")

        dumped = Settings.load().dump()

        assert dumped["private_key"] == "***"
        assert dumped["metrics_token"] == "***"

    @pytest.mark.parametrize("raw,expected", [
        ("1", True), ("true", True), ("Y", True), ("no", False), ("0", False),
    ])
    def test_env_bool(self, monkeypatch, raw, expected):
        """Common truthy spellings are accepted."""
        monkeypatch.setenv("FG_TEST_FLAG", raw)
        assert env_bool("FG_TEST_FLAG", not expected) is expected


class TestConfigValidator:
    def test_default_settings_valid(self, settings):
        """Defaults pass validation."""
        result = validate_config(settings)

        assert result.valid is True
        assert not result.has_errors()

    def test_live_buyback_without_signer_is_error(self, settings):
        """Live execution needs a signer endpoint."""
        cfg = dataclasses.replace(settings, buyback_enabled=True, private_key="k", buyback_min_amount=1.0)

        result = validate_config(cfg)

        assert result.valid is False
        assert [i.field for i in result.get_errors()] == ["signer_url"]

    def test_dry_run_needs_no_signer(self, settings):
        """Dry runs are valid without a signer, with an informational note."""
        cfg = dataclasses.replace(
            settings, buyback_enabled=True, buyback_dry_run=True, private_key="k", buyback_min_amount=1.0,
        )

        result = validate_config(cfg)

        assert result.valid is True
        assert any(i.severity == ValidationSeverity.INFO for i in result.issues)

    def test_enabled_without_key_or_minimum_warns(self, settings):
        """Missing key and minimum are warnings, not errors."""
        cfg = dataclasses.replace(settings, buyback_enabled=True, signer_url="http://signer")

        result = validate_config(cfg)

        assert result.valid is True
        assert {i.field for i in result.get_warnings()} == {"private_key", "buyback_min_amount"}

    def test_mainnet_execution_warns(self, settings):
        """Spending on mainnet is flagged."""
        cfg = dataclasses.replace(
            settings, network="mainnet", buyback_enabled=True, private_key="k",
            signer_url="http://signer", buyback_min_amount=1.0,
        )

        warnings = validate_config(cfg).get_warnings()

        assert any("mainnet" in w.message for w in warnings)

    def test_range_violation(self, settings):
        """Poll intervals under 500 ms are rejected."""
        cfg = dataclasses.replace(settings, listener_poll_interval_ms=100)

        result = validate_config(cfg)

        assert result.get_errors()[0].field == "listener_poll_interval_ms"

    def test_missing_required_string(self, settings):
        """Empty required strings are errors."""
        cfg = dataclasses.replace(settings, rpc_url="")

        assert validate_config(cfg).get_errors()[0].field == "rpc_url"

    def test_custom_validator(self, settings):
        """Registered validators contribute issues."""
        validator = ConfigValidator()
        validator.register_validator(lambda cfg: [
            ValidationIssue(field="x", message="custom", severity=ValidationSeverity.ERROR),
        ])

        assert validator.validate(settings).valid is False

    def test_validate_and_log(self, settings, caplog):
        """Errors are logged with the CONFIG ERROR prefix."""
        logger = logging.getLogger("floorguard.test.config")
        cfg = dataclasses.replace(settings, buyback_enabled=True, private_key="k", buyback_min_amount=1.0)

        with caplog.at_level(logging.INFO, logger="floorguard.test.config"):
            ok = validate_and_log(cfg, logger)

        assert ok is False
        assert any(r.getMessage().startswith("CONFIG ERROR:") for r in caplog.records)
