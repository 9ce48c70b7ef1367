"""
Entry point wiring all components.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from typing import Optional, Tuple

from floorguard.config.config import Settings
from floorguard.config.config_validator import validate_and_log
from floorguard.core.errors import ConfigurationError
from floorguard.exchange.client import SuiExchangeClient
from floorguard.exchange.credentials import SigningCredential
from floorguard.exchange.signers import RemoteSigner, SimulatedSigner, TransactionSigner
from floorguard.execution.buyback_executor import ExecutorConfig
from floorguard.execution.market_listener import ListenerConfig
from floorguard.infra.logging_cfg import build_logger, make_event_logger
from floorguard.monitoring.alerting import AlertConfig, AlertManager, AlertSeverity
from floorguard.monitoring.metrics import DefenseMetrics
from floorguard.monitoring.server import HealthChecker, start_metrics_server
from floorguard.orchestrator.defense import PriceFloorDefense

log = logging.getLogger("floorguard")

CACHE_SWEEP_INTERVAL_SEC = 3600.0


def build_signer(cfg: Settings) -> Optional[TransactionSigner]:
    if cfg.buyback_dry_run:
        return SimulatedSigner()
    if cfg.signer_url:
        return RemoteSigner(cfg.signer_url, timeout=cfg.http_timeout)
    return None


def load_credential(cfg: Settings) -> Optional[SigningCredential]:
    """A malformed key is logged and treated as absent; the executor then rejects with 'no keypair'."""
    try:
        return SigningCredential.try_load(cfg.private_key)
    except ConfigurationError as exc:
        log.error(json.dumps({"event": "credential_load_failed", "error": str(exc)}))
        return None


def build_defense(
    cfg: Settings,
    metrics: Optional[DefenseMetrics] = None,
    alerts: Optional[AlertManager] = None,
    health: Optional[HealthChecker] = None,
) -> Tuple[PriceFloorDefense, SuiExchangeClient]:
    """Compose the service from settings. Caller owns closing the client."""
    client = SuiExchangeClient(cfg.rpc_url, timeout=cfg.http_timeout, signer=build_signer(cfg))
    event_log = make_event_logger(log)
    defense = PriceFloorDefense.create(
        client=client,
        listener_config=ListenerConfig(
            network=cfg.network,
            poll_interval_sec=cfg.listener_poll_interval_sec,
            event_page_limit=cfg.listener_event_limit,
            deepbook_package_id=cfg.deepbook_package_id,
            log_event_callback=event_log,
        ),
        executor_config=ExecutorConfig(
            network=cfg.network,
            enabled=cfg.buyback_enabled,
            min_amount=cfg.buyback_min_amount,
            balance_manager_id=cfg.buyback_balance_manager_id,
            quote_coin_type=cfg.quote_coin_type,
            price_multiplier=cfg.buyback_price_multiplier,
            log_event_callback=event_log,
        ),
        credential=load_credential(cfg),
        metrics=metrics,
        alerts=alerts,
        health=health,
        order_cache_max_age_ms=cfg.order_cache_max_age_ms,
        log_event=event_log,
    )
    return defense, client


async def _sweep_cache(defense: PriceFloorDefense, interval_sec: float = CACHE_SWEEP_INTERVAL_SEC) -> None:
    while True:
        await asyncio.sleep(interval_sec)
        try:
            defense.clean_order_cache()
        except Exception as exc:
            log.warning(json.dumps({"event": "cache_sweep_error", "error": str(exc)}))


async def main() -> None:
    cfg = Settings.load()
    build_logger(
        "floorguard",
        level=getattr(logging, cfg.log_level, logging.INFO),
        file_path=cfg.log_file,
    )

    if not validate_and_log(cfg, log):
        log.error("Configuration validation failed, exiting")
        sys.exit(1)

    alert_manager = AlertManager(AlertConfig(
        webhook_url=cfg.alert_webhook_url,
        webhook_type=cfg.alert_webhook_type,
        min_severity=AlertSeverity.INFO,
        enabled=cfg.alert_enabled,
        timeout=cfg.http_timeout,
    ))
    health_checker = HealthChecker()
    health_checker.set_component_health("config", True, "Configuration validated")
    metrics = DefenseMetrics()

    defense, client = build_defense(cfg, metrics=metrics, alerts=alert_manager, health=health_checker)
    srv = await start_metrics_server(
        metrics,
        cfg.metrics_port,
        status_provider=defense.get_status,
        auth_token=cfg.metrics_token,
        health_checker=health_checker,
    )

    log.info(json.dumps({"event": "startup", **cfg.dump()}, default=str))
    await alert_manager.alert_startup(len(defense.registry.get_all_pools()), network=cfg.network)

    if cfg.auto_start_listener:
        await defense.start_listener()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    sweeper = asyncio.create_task(_sweep_cache(defense), name="order-cache-sweeper")
    try:
        await stop_event.wait()
        log.info("Shutdown signal received, cleaning up...")
        await alert_manager.alert_shutdown("signal_received")
    finally:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
        await defense.stop_listener()
        srv.close()
        await srv.wait_closed()
        await client.close()
        await alert_manager.close()
        log.info(json.dumps({"event": "shutdown_complete", **defense.get_stats()["registry"]}))


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
