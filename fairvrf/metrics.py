import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


@dataclass
class ServiceMetrics:
    """In-process counters reported by OracleService.metrics()."""
    total_requests: int = 0
    successful_fulfillments: int = 0
    failed_fulfillments: int = 0
    average_response_time: float = 0.0  # milliseconds
    uptime: float = 0.0  # seconds
    last_health_check: Optional[str] = None
    retry_queue_size: int = 0
    dropped_requests: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class OracleMetrics:
    """Prometheus collectors plus the running ServiceMetrics snapshot.

    Each instance owns its registry so several services (or tests) can
    coexist in one process.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.snapshot = ServiceMetrics()
        self.start_time = time.monotonic()

        # Request metrics
        self.requests_detected = Counter(
            'fairvrf_requests_detected_total',
            'Randomness requests detected on the ledger',
            ['source'],
            registry=self.registry
        )
        self.fulfillments = Counter(
            'fairvrf_fulfillments_total',
            'Fulfillment attempts by outcome',
            ['outcome'],
            registry=self.registry
        )
        self.retries = Counter(
            'fairvrf_retries_total',
            'Fulfillment retries attempted',
            registry=self.registry
        )
        self.dropped = Counter(
            'fairvrf_requests_dropped_total',
            'Requests abandoned after retry exhaustion or history horizon',
            ['reason'],
            registry=self.registry
        )
        self.fulfillment_latency = Histogram(
            'fairvrf_fulfillment_latency_seconds',
            'Time from resolution start to accepted fulfillment',
            buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60],
            registry=self.registry
        )

        # Chain metrics
        self.rotations = Counter(
            'fairvrf_chain_rotations_total',
            'Hash chain rotations performed',
            registry=self.registry
        )
        self.chain_utilization = Gauge(
            'fairvrf_chain_utilization_percent',
            'Share of the hash chain consumed',
            registry=self.registry
        )
        self.chain_remaining = Gauge(
            'fairvrf_chain_remaining_seeds',
            'Seeds left before the chain is exhausted',
            registry=self.registry
        )
        self.retry_queue = Gauge(
            'fairvrf_retry_queue_size',
            'Requests waiting to be retried',
            registry=self.registry
        )

    def start_exporter(self, port: int) -> None:
        """Expose the registry over HTTP."""
        start_http_server(port, registry=self.registry)

    def record_detected(self, source: str) -> None:
        self.requests_detected.labels(source=source).inc()
        self.snapshot.total_requests += 1

    def record_success(self, latency_seconds: float) -> None:
        self.fulfillments.labels(outcome="success").inc()
        self.fulfillment_latency.observe(latency_seconds)
        self.snapshot.successful_fulfillments += 1
        # Running mean over successful fulfillments only
        n = self.snapshot.successful_fulfillments
        previous_total = self.snapshot.average_response_time * (n - 1)
        self.snapshot.average_response_time = (previous_total + latency_seconds * 1000) / n

    def record_failure(self) -> None:
        self.fulfillments.labels(outcome="failure").inc()
        self.snapshot.failed_fulfillments += 1

    def record_retry(self) -> None:
        self.retries.inc()

    def record_dropped(self, reason: str) -> None:
        self.dropped.labels(reason=reason).inc()
        self.snapshot.dropped_requests += 1

    def record_rotation(self) -> None:
        self.rotations.inc()

    def update_retry_queue(self, size: int) -> None:
        self.retry_queue.set(size)
        self.snapshot.retry_queue_size = size

    def update_chain(self, utilization: float, remaining: int) -> None:
        self.chain_utilization.set(utilization)
        self.chain_remaining.set(remaining)

    def refresh(self) -> ServiceMetrics:
        """Update uptime and health-check time; return a copy of the snapshot."""
        self.snapshot.uptime = time.monotonic() - self.start_time
        self.snapshot.last_health_check = datetime.now(timezone.utc).isoformat()
        return ServiceMetrics(**self.snapshot.to_dict())
