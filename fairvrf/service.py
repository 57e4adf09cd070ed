"""Oracle service: composes the chain, watcher and fulfillment layers.

Runs four independent loops, each on its own interval:

    poll        fast request detection and fulfillment
    retry       retry queue and pending anchor publication
    deep_scan   wide re-scan for requests the fast poll missed
    health      periodic status log and gauge refresh

``stop()`` sets a shutdown event that every loop checks between cycles; a
cycle in progress is allowed to finish.
"""

import asyncio
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

import structlog

from fairvrf.chain.rotator import ChainRotator
from fairvrf.chain.store import ChainStore
from fairvrf.config.base import OracleSettings, RotationPolicy
from fairvrf.core.types import ChainHealth, ConsumptionState, FulfillmentOutcome, HealthStatus
from fairvrf.error_handling.circuit_breaker import CircuitBreaker
from fairvrf.errors import ChainNotLoaded
from fairvrf.fulfillment import FulfillmentCoordinator
from fairvrf.ledger.base import Ledger, make_anchor_publisher
from fairvrf.metrics import OracleMetrics, ServiceMetrics
from fairvrf.watcher import LedgerWatcher

logger = structlog.get_logger()


class OracleService:
    def __init__(
        self,
        ledger: Ledger,
        store: ChainStore,
        settings: Optional[OracleSettings] = None,
        policy: Optional[RotationPolicy] = None,
        metrics: Optional[OracleMetrics] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.settings = settings or OracleSettings()
        self.policy = policy or store.policy
        self.ledger = ledger
        self.store = store
        self.metrics_collector = metrics or OracleMetrics()

        self.rotator = ChainRotator(
            store,
            policy=self.policy,
            publish_anchor=make_anchor_publisher(ledger),
            default_length=self.settings.chain_length,
            metrics=self.metrics_collector,
        )
        self.watcher = LedgerWatcher(
            ledger,
            metrics=self.metrics_collector,
            **self.settings.get_watcher_settings()
        )
        self.coordinator = FulfillmentCoordinator(
            ledger,
            store,
            rotator=self.rotator,
            metrics=self.metrics_collector,
            breaker=breaker,
            **self.settings.get_fulfillment_settings()
        )

        self.is_running = False
        self._stop_event: Optional[asyncio.Event] = None

    @classmethod
    def from_settings(cls, settings: OracleSettings, ledger: Optional[Ledger] = None) -> "OracleService":
        """Build the service against the configured contract and chain file."""
        if ledger is None:
            from fairvrf.ledger.web3_ledger import Web3Ledger
            ledger = Web3Ledger.from_settings(settings)

        policy = settings.rotation_policy()
        chain_path = Path(settings.chain_path)
        if chain_path.exists():
            store = ChainStore.load(chain_path, policy)
        elif settings.auto_generate_chain:
            store = ChainStore(chain_path=chain_path, policy=policy)
        else:
            raise ChainNotLoaded(
                f"Chain DB not found at {chain_path}. Run generate-chain first "
                "or set AUTO_GENERATE_CHAIN=true."
            )
        return cls(ledger, store, settings=settings, policy=policy)

    # ------------------------------------------------------------------
    # Public API for monitoring
    # ------------------------------------------------------------------

    def metrics(self) -> ServiceMetrics:
        return self.metrics_collector.refresh()

    def chain_stats(self) -> ConsumptionState:
        return self.store.stats()

    def chain_health(self) -> ChainHealth:
        """Chain utilization health, escalated by outstanding faults."""
        health = self.store.health()
        status = health.status
        recommendations = list(health.recommendations)

        fault = self.coordinator.structural_fault
        if fault is not None:
            status = HealthStatus.CRITICAL
            recommendations.append(f"Check anchor sync: {fault}")
        if self.rotator.pending_publication is not None:
            status = HealthStatus.CRITICAL
            recommendations.append(
                f"Publish anchor {self.rotator.pending_publication} via setAnchor"
            )

        return ChainHealth(
            status=status,
            chain_length=health.chain_length,
            current_utilization=health.current_utilization,
            estimated_requests_remaining=health.estimated_requests_remaining,
            recommendations=recommendations,
        )

    async def rotate_now(self, length: Optional[int] = None) -> str:
        """Manual rotation; waits for any in-flight fulfillment to finish."""
        logger.info("manual_chain_rotation_triggered", length=length)
        async with self.coordinator.exclusive():
            return await self.rotator.rotate(length)

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def ensure_chain(self) -> None:
        """Generate and publish a chain if none is installed."""
        if self.store.loaded:
            return
        logger.warning("chain_missing_generating", length=self.settings.chain_length)
        await self.rotate_now(self.settings.chain_length)

    async def poll_once(self) -> List[FulfillmentOutcome]:
        outcomes = []
        async for record in self.watcher.poll():
            outcomes.append(await self.coordinator.handle(record))
        return outcomes

    async def deep_scan_once(self) -> List[FulfillmentOutcome]:
        outcomes = []
        async for record in self.watcher.deep_scan():
            outcomes.append(await self.coordinator.handle(record))
        return outcomes

    async def retry_once(self) -> List[FulfillmentOutcome]:
        await self.coordinator.publish_pending_anchor()
        return await self.coordinator.process_retries()

    def log_health(self) -> None:
        metrics = self.metrics()
        stats = self.store.stats()
        health = self.chain_health()
        self.metrics_collector.update_chain(stats.utilization_percentage, stats.remaining_seeds)

        log_method = logger.info
        if health.status == HealthStatus.WARNING:
            log_method = logger.warning
        elif health.status == HealthStatus.CRITICAL:
            log_method = logger.error
        log_method("service_status",
                   uptime_minutes=round(metrics.uptime / 60),
                   requests=metrics.total_requests,
                   successful=metrics.successful_fulfillments,
                   failed=metrics.failed_fulfillments,
                   retry_queue=metrics.retry_queue_size,
                   seeds_used=stats.current_index + 1,
                   total_seeds=stats.total_seeds,
                   utilization=round(stats.utilization_percentage, 1),
                   health=health.status.value,
                   recommendations=health.recommendations)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Run all loops until ``stop()`` is called."""
        if self.is_running:
            return
        self.is_running = True
        self._stop_event = asyncio.Event()

        await self.ensure_chain()
        if self.settings.metrics_port:
            self.metrics_collector.start_exporter(self.settings.metrics_port)

        logger.info("oracle_service_started",
                    rpc=self.settings.rpc_url,
                    contract=self.settings.contract_address,
                    health=self.chain_health().status.value)

        async def health_cycle():
            self.log_health()

        try:
            await asyncio.gather(
                self._loop("poll", self.settings.poll_interval, self.poll_once),
                self._loop("retry", self.settings.retry_interval, self.retry_once),
                self._loop("deep_scan", self.settings.deep_scan_interval, self.deep_scan_once),
                self._loop("health", self.settings.health_log_interval, health_cycle),
            )
        finally:
            self.is_running = False
            logger.info("oracle_service_stopped")

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def _loop(self, name: str, interval: float,
                    cycle: Callable[[], Awaitable[object]]) -> None:
        while not self._stop_event.is_set():
            try:
                await cycle()
            except Exception as e:
                logger.error("cycle_failed", loop=name, error_type=type(e).__name__, error=str(e))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
