"""
Prometheus metrics for the defense service.

Organized into: listener, execution, registry.
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from typing import Optional


class DefenseMetrics:
    """Metrics for price-floor defense observability."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Listener Metrics ===
        self.events_processed = Counter(
            'floorguard_events_processed_total',
            'Venue events processed',
            labelnames=['event_type'],
            registry=reg
        )
        self.triggers_raised = Counter(
            'floorguard_triggers_total',
            'Buyback triggers raised by the listener',
            labelnames=['pool', 'source'],
            registry=reg
        )
        self.poll_errors = Counter(
            'floorguard_poll_errors_total',
            'Event query errors',
            labelnames=['event_type'],
            registry=reg
        )
        self.poll_duration_ms = Histogram(
            'floorguard_poll_duration_ms',
            'Event poll duration (milliseconds)',
            buckets=[50, 100, 250, 500, 1000, 2500, 5000, 10000],
            registry=reg
        )
        self.listener_running = Gauge(
            'floorguard_listener_running',
            'Listener state (1=running, 0=stopped)',
            registry=reg
        )
        self.monitored_pools = Gauge(
            'floorguard_monitored_pools',
            'Pools currently monitored (registered + manual)',
            registry=reg
        )

        # === Execution Metrics ===
        self.buyback_executions = Counter(
            'floorguard_buyback_executions_total',
            'Buyback submissions by outcome',
            labelnames=['pool', 'status'],
            registry=reg
        )
        self.buyback_rejections = Counter(
            'floorguard_buyback_rejections_total',
            'Buyback triggers rejected before submission',
            labelnames=['pool', 'reason'],
            registry=reg
        )
        self.quote_spent = Counter(
            'floorguard_quote_spent_total',
            'Quote asset spent on buybacks (human units)',
            labelnames=['pool'],
            registry=reg
        )
        self.execution_latency_ms = Histogram(
            'floorguard_execution_latency_ms',
            'Time from submission to transaction result (milliseconds)',
            labelnames=['pool'],
            buckets=[100, 250, 500, 1000, 2000, 5000, 10000, 30000],
            registry=reg
        )
        self.executions_in_flight = Gauge(
            'floorguard_executions_in_flight',
            'Buyback executions currently awaiting a result',
            registry=reg
        )

        # === Registry Metrics ===
        self.registered_pools = Gauge(
            'floorguard_registered_pools',
            'Pools bound to a vault',
            registry=reg
        )
        self.cached_orders = Gauge(
            'floorguard_cached_orders',
            'Orders held in the order cache',
            registry=reg
        )

        self.registry = reg

    def get_registry(self):
        """Return the Prometheus registry for export."""
        return self.registry
