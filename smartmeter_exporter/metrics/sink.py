"""
Metrics sink for scrape results.

Owns an explicit Prometheus registry holding the exporter's metrics.
The scrape cycle writes through the narrow update methods below while
the HTTP endpoint renders the registry concurrently. Each metric child
guards its value with its own lock, so every update is atomic on its
own and readers never wait on unrelated fields.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from ..models import CURRENT_AMPERES, POWER_WATTS, Reading, ScrapeOutcome

logger = logging.getLogger(__name__)

METRIC_PREFIX = "smartmeter"


@dataclass
class MetricsSnapshot:
    """Point-in-time view of the sink, for health checks and tests."""
    readings: Dict[str, float] = field(default_factory=dict)
    last_success_timestamp: Optional[float] = None
    errors: Dict[str, float] = field(default_factory=dict)
    scrape_count: float = 0.0
    scrape_duration_sum: float = 0.0


class MetricsSink:
    """
    Write-only surface for readings and scrape outcomes.

    Constructed once at startup and shared by reference between the
    scrape orchestrator (writer) and the metrics endpoint (reader).
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """
        Initialize the sink and register all metrics.

        Args:
            registry: Registry to register into. A fresh one is created
                if not provided; the global default registry is never used.
        """
        self.registry = registry or CollectorRegistry(auto_describe=True)

        self.power = Gauge(
            f"{METRIC_PREFIX}_power_watts",
            "Instantaneous electric power consumption in Watts",
            registry=self.registry,
        )
        self.current = Gauge(
            f"{METRIC_PREFIX}_current_amperes",
            "Instantaneous electric current in Amperes",
            ["phase"],
            registry=self.registry,
        )
        self.last_success = Gauge(
            f"{METRIC_PREFIX}_last_scrape_timestamp_seconds",
            "Unix timestamp of the last successful scrape",
            registry=self.registry,
        )
        self.scrape_duration = Histogram(
            f"{METRIC_PREFIX}_scrape_duration_seconds",
            "Scrape duration in seconds",
            registry=self.registry,
        )
        self.scrape_errors = Counter(
            f"{METRIC_PREFIX}_scrape_errors_total",
            "Total number of failed scrapes, labeled by error type",
            ["type"],
            registry=self.registry,
        )

        # Export every error type at 0 so rate() works before the first failure
        for outcome in ScrapeOutcome.failures():
            self.scrape_errors.labels(type=outcome.error_type)

    def set_reading(self, reading: Reading) -> None:
        """
        Store the latest value of a reading (last write wins).

        Args:
            reading: Decoded reading.

        Raises:
            KeyError: If the reading name is not an exported metric.
        """
        if reading.name == POWER_WATTS:
            self.power.set(reading.value)
        elif reading.name == CURRENT_AMPERES:
            self.current.labels(**reading.label_dict).set(reading.value)
        else:
            raise KeyError(f"Unknown reading: {reading.name}")

    def record_success(self, timestamp: float) -> None:
        """Record the unix time of the last successful scrape."""
        self.last_success.set(timestamp)

    def record_duration(self, seconds: float) -> None:
        """Observe the wall-clock duration of one scrape cycle."""
        self.scrape_duration.observe(seconds)

    def increment_outcome(self, outcome: ScrapeOutcome) -> None:
        """
        Count a failed scrape by kind.

        Success is not counted here; it advances the last-success
        timestamp instead.
        """
        if not outcome.is_failure:
            return
        self.scrape_errors.labels(type=outcome.error_type).inc()

    def render(self) -> bytes:
        """Render the registry in the Prometheus text format."""
        return generate_latest(self.registry)

    def snapshot(self) -> MetricsSnapshot:
        """Read current values without touching the write path."""
        snap = MetricsSnapshot()
        get = self.registry.get_sample_value

        for metric in self.registry.collect():
            for sample in metric.samples:
                if sample.name == f"{METRIC_PREFIX}_power_watts":
                    snap.readings[POWER_WATTS] = sample.value
                elif sample.name == f"{METRIC_PREFIX}_current_amperes":
                    phase = sample.labels.get("phase")
                    snap.readings[f"{CURRENT_AMPERES}{{phase={phase}}}"] = sample.value
                elif sample.name == f"{METRIC_PREFIX}_scrape_errors_total":
                    snap.errors[sample.labels["type"]] = sample.value

        last_success = get(f"{METRIC_PREFIX}_last_scrape_timestamp_seconds")
        snap.last_success_timestamp = last_success or None
        snap.scrape_count = get(f"{METRIC_PREFIX}_scrape_duration_seconds_count") or 0.0
        snap.scrape_duration_sum = get(f"{METRIC_PREFIX}_scrape_duration_seconds_sum") or 0.0

        return snap
