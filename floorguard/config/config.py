"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

FULLNODE_URLS = {
    "mainnet": "https://fullnode.mainnet.sui.io:443",
    "testnet": "https://fullnode.testnet.sui.io:443",
    "devnet": "https://fullnode.devnet.sui.io:443",
    "localnet": "http://127.0.0.1:9000",
}

# DeepBook v3 package and DBUSDC quote coin on testnet.
DEFAULT_DEEPBOOK_PACKAGE_ID = "0xfb28c4cbc6865bd1c897d26aecbe1f8792d1509a20ffec692c800660cbec6982"
DEFAULT_QUOTE_COIN_TYPE = (
    "0xf7152c05930480cd740d7311b5b8b45c6f488e3a53a11c3f74a6fac36a52e0d7::DBUSDC::DBUSDC"
)


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None or val == "":
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


def _optional_float_env(key: str) -> Optional[float]:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return None
    return float(raw)


@dataclass(frozen=True)
class Settings:
    network: str
    rpc_url: str
    buyback_enabled: bool
    buyback_min_amount: Optional[float]
    buyback_balance_manager_id: Optional[str]
    buyback_price_multiplier: float
    buyback_dry_run: bool
    private_key: Optional[str]
    signer_url: Optional[str]
    auto_start_listener: bool
    listener_poll_interval_ms: int
    listener_event_limit: int
    deepbook_package_id: str
    quote_coin_type: str
    order_cache_max_age_ms: int
    http_timeout: float
    metrics_port: int
    metrics_token: Optional[str]
    alert_webhook_url: Optional[str]
    alert_webhook_type: str  # generic, slack, discord
    alert_enabled: bool
    log_file: Optional[str]
    log_level: str

    def dump(self) -> dict:
        """Return a dict of settings for logging, with secrets masked."""
        data = self.__dict__.copy()
        for key in ("private_key", "metrics_token"):
            if data.get(key):
                data[key] = "***"
        return data

    @property
    def listener_poll_interval_sec(self) -> float:
        return self.listener_poll_interval_ms / 1000.0

    @classmethod
    def load(cls) -> "Settings":
        network = os.getenv("NETWORK", "testnet")
        cfg = cls(
            network=network,
            rpc_url=os.getenv("SUI_RPC_URL") or FULLNODE_URLS.get(network, FULLNODE_URLS["testnet"]),
            buyback_enabled=env_bool("BUYBACK_ENABLED", False),
            buyback_min_amount=_optional_float_env("BUYBACK_MIN_AMOUNT"),
            buyback_balance_manager_id=os.getenv("BUYBACK_BALANCE_MANAGER_ID") or None,
            buyback_price_multiplier=_float_env("BUYBACK_PRICE_MULTIPLIER", 2.0),
            buyback_dry_run=env_bool("BUYBACK_DRY_RUN", False),
            private_key=os.getenv("EXECUTOR_PRIVATE_KEY") or os.getenv("SUI_PRIVATE_KEY") or None,
            signer_url=os.getenv("SIGNER_URL") or None,
            auto_start_listener=env_bool("AUTO_START_LISTENER", False),
            listener_poll_interval_ms=_int_env("LISTENER_POLL_INTERVAL", 5000),
            listener_event_limit=_int_env("LISTENER_EVENT_LIMIT", 50),
            deepbook_package_id=os.getenv("DEEPBOOK_PACKAGE_ID", DEFAULT_DEEPBOOK_PACKAGE_ID),
            quote_coin_type=os.getenv("QUOTE_COIN_TYPE", DEFAULT_QUOTE_COIN_TYPE),
            order_cache_max_age_ms=_int_env("ORDER_CACHE_MAX_AGE_MS", 24 * 60 * 60 * 1000),
            http_timeout=_float_env("HTTP_TIMEOUT", 10.0),
            metrics_port=_int_env("METRICS_PORT", 9095),
            metrics_token=os.getenv("METRICS_TOKEN") or None,
            alert_webhook_url=os.getenv("ALERT_WEBHOOK_URL") or None,
            alert_webhook_type=os.getenv("ALERT_WEBHOOK_TYPE", "generic"),
            alert_enabled=env_bool("ALERT_ENABLED", True),
            log_file=os.getenv("LOG_FILE", "floorguard.log") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
        _sanity_check(cfg)
        cfg._validate()
        return cfg

    def _validate(self) -> None:
        if self.listener_poll_interval_ms <= 0:
            raise ValueError("LISTENER_POLL_INTERVAL must be > 0")
        if not 1 <= self.listener_event_limit <= 1000:
            raise ValueError("LISTENER_EVENT_LIMIT must be between 1 and 1000")
        if self.buyback_price_multiplier < 1.0:
            raise ValueError("BUYBACK_PRICE_MULTIPLIER must be >= 1.0")
        if self.buyback_min_amount is not None and self.buyback_min_amount < 0:
            raise ValueError("BUYBACK_MIN_AMOUNT must be >= 0")
        if self.http_timeout <= 0:
            raise ValueError("HTTP_TIMEOUT must be > 0")

        if self.buyback_enabled and not self.private_key:
            logging.getLogger("floorguard").warning(
                "WARNING: BUYBACK_ENABLED is true but no EXECUTOR_PRIVATE_KEY/SUI_PRIVATE_KEY is set. "
                "Every buyback trigger will be rejected."
            )


def _sanity_check(cfg: Settings) -> None:
    """
    Log critical settings once at startup so overrides are obvious.
    """
    logger = logging.getLogger("floorguard")
    payload = {
        "event": "config_loaded",
        "network": cfg.network,
        "rpc_url": cfg.rpc_url,
        "buyback_enabled": cfg.buyback_enabled,
        "buyback_dry_run": cfg.buyback_dry_run,
        "buyback_min_amount": cfg.buyback_min_amount,
        "listener_poll_interval_ms": cfg.listener_poll_interval_ms,
        "has_private_key": bool(cfg.private_key),
    }
    logger.info(json.dumps(payload))
