"""
Health checks and the HTTP server for metrics, status and probes.

- /metrics - Prometheus exposition
- /status - Defense status JSON
- /health - Liveness
- /ready - Readiness (listener running)
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional
from urllib.parse import parse_qs, urlparse

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from floorguard.monitoring.metrics import DefenseMetrics

log = logging.getLogger("floorguard")


@dataclass
class HealthStatus:
    """Health status for the service."""
    healthy: bool = True
    ready: bool = False
    last_heartbeat_ms: int = 0
    components: Dict[str, bool] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)


class HealthChecker:
    """
    Centralized health checker.

    Tracks component health and provides endpoints for:
    - /health - Basic liveness (is the process running?)
    - /ready - Readiness (is the listener watching pools?)
    """

    def __init__(self) -> None:
        self._components: Dict[str, bool] = {}
        self._details: Dict[str, Any] = {}
        self._ready = False
        self._last_heartbeat = int(time.time() * 1000)

    def set_component_health(self, name: str, healthy: bool, detail: Optional[str] = None) -> None:
        """Set health status for a component."""
        self._components[name] = healthy
        if detail:
            self._details[name] = detail
        self._last_heartbeat = int(time.time() * 1000)

    def set_ready(self, ready: bool) -> None:
        self._ready = ready
        self._last_heartbeat = int(time.time() * 1000)

    def is_healthy(self) -> bool:
        if not self._components:
            return True
        return all(self._components.values())

    def is_ready(self) -> bool:
        return self._ready and self.is_healthy()

    def get_status(self) -> HealthStatus:
        return HealthStatus(
            healthy=self.is_healthy(),
            ready=self.is_ready(),
            last_heartbeat_ms=self._last_heartbeat,
            components=dict(self._components),
            details=dict(self._details),
        )

    def to_dict(self) -> Dict[str, Any]:
        status = self.get_status()
        return {
            "healthy": status.healthy,
            "ready": status.ready,
            "last_heartbeat_ms": status.last_heartbeat_ms,
            "components": status.components,
            "details": status.details,
        }


def _response(status: bytes, body: bytes, content_type: bytes = b"application/json") -> bytes:
    return (
        b"HTTP/1.1 " + status + b"\r\n"
        b"Content-Type: " + content_type + b"\r\n"
        b"Connection: close\r\n\r\n"
        + body
    )


async def start_metrics_server(
    metrics: DefenseMetrics,
    port: int,
    status_provider: Optional[Callable[[], Dict[str, Any]]] = None,
    auth_token: Optional[str] = None,
    health_checker: Optional[HealthChecker] = None,
    host: str = "0.0.0.0",
) -> asyncio.AbstractServer:
    """
    Start HTTP server for metrics, status, and health endpoints.

    Endpoints:
    - GET /metrics - Prometheus metrics (auth required if token set)
    - GET /status - Defense status JSON (auth required if token set)
    - GET /health - Liveness probe (no auth)
    - GET /ready - Readiness probe (no auth)
    """
    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        req = await reader.read(2048)
        path_raw = b"/"
        header_lines = req.split(b"\r\n") if b"\r\n" in req else []
        if header_lines and b" " in header_lines[0]:
            parts = header_lines[0].split(b" ")
            if len(parts) > 1:
                path_raw = parts[1]
        headers = {}
        for line in header_lines[1:]:
            if b":" in line:
                k, v = line.split(b":", 1)
                headers[k.strip().lower()] = v.strip()

        parsed = urlparse(path_raw.decode("utf-8", errors="ignore"))
        query = parse_qs(parsed.query)

        try:
            # Probes - no auth required for load balancers
            if parsed.path == "/health":
                if health_checker:
                    ok = health_checker.is_healthy()
                    body = json.dumps(health_checker.to_dict())
                else:
                    ok = True
                    body = json.dumps({"healthy": True, "ready": True})
                status = b"200 OK" if ok else b"503 Service Unavailable"
                writer.write(_response(status, body.encode()))
                return

            if parsed.path == "/ready":
                ready = health_checker.is_ready() if health_checker else True
                status = b"200 OK" if ready else b"503 Service Unavailable"
                writer.write(_response(status, json.dumps({"ready": ready}).encode()))
                return

            if auth_token:
                header_auth = headers.get(b"authorization", b"").decode("utf-8", errors="ignore")
                token_ok = (
                    header_auth == f"Bearer {auth_token}"
                    or query.get("token", [""])[0] == auth_token
                )
                if not token_ok:
                    writer.write(b"HTTP/1.1 401 Unauthorized\r\nConnection: close\r\n\r\n")
                    return

            if parsed.path.startswith("/status") and status_provider is not None:
                try:
                    body = json.dumps(status_provider(), default=str)
                    writer.write(_response(b"200 OK", body.encode()))
                except Exception as exc:
                    log.warning(json.dumps({"event": "status_render_error", "error": str(exc)}))
                    writer.write(b"HTTP/1.1 500 Internal Server Error\r\nConnection: close\r\n\r\n")
                return

            # default Prometheus text
            writer.write(_response(
                b"200 OK",
                generate_latest(metrics.get_registry()),
                CONTENT_TYPE_LATEST.encode(),
            ))
        finally:
            await writer.drain()
            writer.close()

    return await asyncio.start_server(handle, host, port)
