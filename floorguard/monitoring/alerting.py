"""
Webhook alerting for defense events.

- Send alerts to webhooks (Slack, Discord, generic HTTP)
- Rate limiting per alert type and pool to prevent alert storms
- Alert batching for related events
- Async non-blocking delivery over httpx
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, List, Optional, Tuple

import httpx

logger = logging.getLogger("floorguard")


class AlertSeverity(Enum):
    """Alert severity levels."""
    CRITICAL = auto()  # Immediate attention required
    WARNING = auto()   # Potential issue
    INFO = auto()      # Informational


class AlertType(Enum):
    BUYBACK_EXECUTED = auto()
    BUYBACK_FAILED = auto()
    FLOOR_BREACH = auto()
    STARTUP = auto()
    SHUTDOWN = auto()
    CUSTOM = auto()


@dataclass
class Alert:
    """An alert to be sent."""
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    details: Dict[str, Any] = field(default_factory=dict)
    pool_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.alert_type.name,
            "severity": self.severity.name,
            "title": self.title,
            "message": self.message,
            "timestamp_ms": self.timestamp_ms,
            "timestamp_iso": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.timestamp_ms / 1000)),
            "details": self.details,
            "pool_id": self.pool_id,
        }


@dataclass
class AlertConfig:
    """Configuration for alerting."""
    webhook_url: Optional[str] = None
    webhook_type: str = "generic"  # generic, slack, discord
    min_severity: AlertSeverity = AlertSeverity.WARNING
    rate_limit_seconds: int = 60  # Min seconds between same alert type per pool
    batch_window_ms: int = 5000
    enabled: bool = True
    include_details: bool = True
    service_name: str = "floorguard"
    timeout: float = 10.0


class WebhookFormatter:
    """Formats alerts for different webhook types."""

    @staticmethod
    def format_generic(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        return alert.to_dict()

    @staticmethod
    def format_slack(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        color = {
            AlertSeverity.CRITICAL: "#FF0000",
            AlertSeverity.WARNING: "#FFA500",
            AlertSeverity.INFO: "#0000FF",
        }.get(alert.severity, "#808080")

        fields = []
        if alert.pool_id:
            fields.append({"title": "Pool", "value": alert.pool_id, "short": True})
        fields.append({"title": "Type", "value": alert.alert_type.name, "short": True})

        if config.include_details and alert.details:
            for key, value in list(alert.details.items())[:5]:  # Limit to 5 fields
                fields.append({"title": key, "value": str(value), "short": True})

        return {
            "username": config.service_name,
            "attachments": [{
                "color": color,
                "title": alert.title,
                "text": alert.message,
                "fields": fields,
                "footer": f"{config.service_name} | {alert.severity.name}",
                "ts": alert.timestamp_ms // 1000,
            }]
        }

    @staticmethod
    def format_discord(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        color = {
            AlertSeverity.CRITICAL: 0xFF0000,
            AlertSeverity.WARNING: 0xFFA500,
            AlertSeverity.INFO: 0x0000FF,
        }.get(alert.severity, 0x808080)

        fields = []
        if alert.pool_id:
            fields.append({"name": "Pool", "value": alert.pool_id, "inline": True})
        fields.append({"name": "Type", "value": alert.alert_type.name, "inline": True})

        if config.include_details and alert.details:
            for key, value in list(alert.details.items())[:5]:
                fields.append({"name": key, "value": str(value), "inline": True})

        return {
            "username": config.service_name,
            "embeds": [{
                "title": alert.title,
                "description": alert.message,
                "color": color,
                "fields": fields,
                "footer": {"text": f"{config.service_name} | {alert.severity.name}"},
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(alert.timestamp_ms / 1000)),
            }]
        }


class AlertManager:
    """
    Manages alert delivery with rate limiting and batching.

    Alerts queued within batch_window_ms are delivered in one webhook call.
    Delivery failures are logged and never raised to the caller.
    """

    def __init__(
        self,
        config: Optional[AlertConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.config = config or AlertConfig()
        self._last_alert_times: Dict[Tuple[AlertType, Optional[str]], int] = {}
        self._pending_alerts: List[Alert] = []
        self._batch_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        if client is not None:
            self._client = client
            self._owns_client = False
        else:
            self._client = httpx.AsyncClient(timeout=self.config.timeout)
            self._owns_client = True

    async def send_alert(self, alert: Alert) -> bool:
        """
        Queue an alert for delivery.

        Returns:
            True if alert was queued, False if rate limited or disabled
        """
        if not self.config.enabled:
            return False

        if not self.config.webhook_url:
            logger.debug(f"Alert not sent (no webhook): {alert.title}")
            return False

        if alert.severity.value > self.config.min_severity.value:
            return False

        now_ms = int(time.time() * 1000)
        key = (alert.alert_type, alert.pool_id)
        last_time = self._last_alert_times.get(key, 0)
        if now_ms - last_time < self.config.rate_limit_seconds * 1000:
            logger.debug(f"Alert rate limited: {alert.alert_type.name}")
            return False

        async with self._lock:
            self._pending_alerts.append(alert)
            self._last_alert_times[key] = now_ms

            if self._batch_task is None or self._batch_task.done():
                self._batch_task = asyncio.create_task(self._batch_deliver())

        return True

    async def _batch_deliver(self) -> None:
        await asyncio.sleep(self.config.batch_window_ms / 1000)
        await self.flush()

    async def flush(self) -> bool:
        """Deliver everything pending now."""
        async with self._lock:
            alerts = self._pending_alerts.copy()
            self._pending_alerts.clear()

        if not alerts:
            return True
        if len(alerts) == 1:
            return await self._http_post(self._format_alert(alerts[0]))
        return await self._deliver_batch(alerts)

    async def close(self) -> None:
        if self._batch_task is not None and not self._batch_task.done():
            self._batch_task.cancel()
            try:
                await self._batch_task
            except asyncio.CancelledError:
                pass
        await self.flush()
        if self._owns_client:
            await self._client.aclose()

    async def _deliver_batch(self, alerts: List[Alert]) -> bool:
        if self.config.webhook_type == "slack":
            payload = self._format_alert(alerts[0])
            for alert in alerts[1:]:
                payload["attachments"].extend(self._format_alert(alert)["attachments"])
        elif self.config.webhook_type == "discord":
            payload = self._format_alert(alerts[0])
            for alert in alerts[1:]:
                payload["embeds"].extend(self._format_alert(alert)["embeds"])
        else:
            payload = {"alerts": [alert.to_dict() for alert in alerts]}

        return await self._http_post(payload)

    def _format_alert(self, alert: Alert) -> Dict[str, Any]:
        formatters = {
            "generic": WebhookFormatter.format_generic,
            "slack": WebhookFormatter.format_slack,
            "discord": WebhookFormatter.format_discord,
        }
        formatter = formatters.get(self.config.webhook_type, WebhookFormatter.format_generic)
        return formatter(alert, self.config)

    async def _http_post(self, payload: Dict[str, Any], retries: int = 2) -> bool:
        if not self.config.webhook_url:
            return False

        for attempt in range(retries + 1):
            try:
                resp = await self._client.post(self.config.webhook_url, json=payload)
                if resp.status_code < 300:
                    logger.debug("Alert delivered successfully")
                    return True
                logger.warning(f"Alert delivery failed: HTTP {resp.status_code}")
            except httpx.TimeoutException:
                logger.warning(f"Alert delivery timeout (attempt {attempt + 1})")
            except httpx.HTTPError as e:
                logger.warning(f"Alert delivery error: {e}")

            if attempt < retries:
                await asyncio.sleep(1 * (attempt + 1))  # Backoff

        return False

    # ─────────────────────────────────────────────────────────────────────
    # Convenience Methods for Common Alerts
    # ─────────────────────────────────────────────────────────────────────

    async def alert_buyback_executed(self, pool_id: str, status: str, **details) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.BUYBACK_EXECUTED,
            severity=AlertSeverity.INFO if status == "executed" else AlertSeverity.WARNING,
            title="Floor Defense Buyback",
            message=f"Buyback {status} for pool {pool_id}",
            pool_id=pool_id,
            details={"status": status, **details},
        ))

    async def alert_buyback_failed(self, pool_id: str, error: str, **details) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.BUYBACK_FAILED,
            severity=AlertSeverity.CRITICAL,
            title="Buyback Failed",
            message=error,
            pool_id=pool_id,
            details=details,
        ))

    async def alert_startup(self, pools: int, **details) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.STARTUP,
            severity=AlertSeverity.INFO,
            title="Defense Started",
            message=f"{self.config.service_name} started with {pools} registered pool(s)",
            details={"pools": pools, **details},
        ))

    async def alert_shutdown(self, reason: str = "normal", **details) -> bool:
        severity = AlertSeverity.INFO if reason == "normal" else AlertSeverity.WARNING
        return await self.send_alert(Alert(
            alert_type=AlertType.SHUTDOWN,
            severity=severity,
            title="Defense Shutdown",
            message=f"{self.config.service_name} shutting down: {reason}",
            details=details,
        ))
