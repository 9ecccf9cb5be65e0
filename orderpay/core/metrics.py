"""
Prometheus counters for order creation and webhook outcomes.

One ``OrderMetrics`` per process, created at startup and handed to the
services that record into it. Counters only go up; they are reset by a new
process, never by code.
"""
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, generate_latest

WEBHOOK_OUTCOMES = (
    "applied",
    "duplicate",
    "ignored",
    "retry_scheduled",
    "dead_lettered",
    "rejected",
)


class OrderMetrics:
    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._orders_created = Counter(
            "orders_created",
            "Orders inserted (idempotent replays excluded)",
            registry=self.registry,
        )
        self._webhook_events = Counter(
            "webhook_events",
            "Payment webhook deliveries by outcome",
            ["outcome"],
            registry=self.registry,
        )

    def record_order_created(self) -> None:
        self._orders_created.inc()

    def record_webhook_outcome(self, outcome: str) -> None:
        if outcome not in WEBHOOK_OUTCOMES:
            raise ValueError(f"Unknown webhook outcome: {outcome}")
        self._webhook_events.labels(outcome=outcome).inc()

    def orders_created(self) -> int:
        value = self.registry.get_sample_value("orders_created_total")
        return int(value or 0)

    def webhook_outcomes(self, outcome: str) -> int:
        value = self.registry.get_sample_value(
            "webhook_events_total", {"outcome": outcome}
        )
        return int(value or 0)

    def render(self) -> bytes:
        """Prometheus text exposition format"""
        return generate_latest(self.registry)
