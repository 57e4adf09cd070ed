"""Fulfillment coordinator: turns detected requests into reveals.

Reading the ledger anchor, resolving the reveal and submitting the
transaction form one critical section guarded by a single asyncio lock:
the ledger anchor is one global pointer, so only one fulfillment may be in
flight at a time. Failed requests land in the retry queue; the anchor is
re-read on every attempt so a retry never uses a stale one.
"""

import asyncio
import time
from typing import Callable, Dict, List, Optional

import structlog

from fairvrf import constants
from fairvrf.chain.rotator import ChainRotator
from fairvrf.chain.store import ChainStore
from fairvrf.core.types import (
    FulfillmentOutcome,
    FulfillmentState,
    RequestKey,
    RequestRecord,
    RetryEntry,
)
from fairvrf.error_handling.circuit_breaker import CircuitBreaker
from fairvrf.errors import (
    AlreadyFulfilled,
    AnchorNotFound,
    ChainExhausted,
    ChainStateError,
    RetryExhausted,
    SubmissionFailed,
)
from fairvrf.ledger.base import Ledger

logger = structlog.get_logger()


class FulfillmentCoordinator:
    def __init__(
        self,
        ledger: Ledger,
        store: ChainStore,
        rotator: Optional[ChainRotator] = None,
        metrics=None,
        breaker: Optional[CircuitBreaker] = None,
        retry_delay: float = constants.RETRY_DELAY,
        max_retry_attempts: int = constants.MAX_RETRY_ATTEMPTS,
        check_already_fulfilled: bool = True,
        confirmation_timeout: float = constants.CONFIRMATION_TIMEOUT,
        confirmation_poll_interval: float = constants.CONFIRMATION_POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ledger = ledger
        self.store = store
        self.rotator = rotator
        self.metrics = metrics
        self.breaker = breaker or CircuitBreaker(
            name="fulfillment", ignored_exceptions=(AlreadyFulfilled,)
        )
        self.retry_delay = retry_delay
        self.max_retry_attempts = max_retry_attempts
        self.check_already_fulfilled = check_already_fulfilled
        self.confirmation_timeout = confirmation_timeout
        self.confirmation_poll_interval = confirmation_poll_interval
        self.clock = clock

        self.retry_queue: Dict[RequestKey, RetryEntry] = {}
        self.structural_fault: Optional[ChainStateError] = None
        self._lock = asyncio.Lock()

    def exclusive(self) -> asyncio.Lock:
        """The fulfillment critical section, for callers that swap the chain."""
        return self._lock

    # ------------------------------------------------------------------
    # Request handling
    # ------------------------------------------------------------------

    async def handle(self, record: RequestRecord) -> FulfillmentOutcome:
        """Fulfill one request; failures are queued for retry."""
        outcome = await self._attempt(record)
        if outcome.state == FulfillmentState.FULFILLED:
            self.retry_queue.pop(record.key, None)
        self._refresh_gauges()
        return outcome

    async def _attempt(self, record: RequestRecord) -> FulfillmentOutcome:
        request_id = record.request_id
        log = logger.bind(request_id=request_id, block_number=record.block_number)

        try:
            await self._await_confirmations(record)

            async with self._lock:
                if self.check_already_fulfilled and await self.ledger.is_fulfilled(request_id):
                    raise AlreadyFulfilled(request_id)

                started = time.monotonic()
                current_anchor = await self.ledger.current_anchor()
                try:
                    reveal = self.store.resolve_reveal(current_anchor)
                except ChainExhausted:
                    await self._rotate_after_exhaustion()
                    raise
                log.info("reveal_resolved", anchor=current_anchor, reveal=reveal)

                try:
                    tx_hash = await self.breaker.call(
                        self.ledger.fulfill_randomness, request_id, reveal
                    )
                except CircuitBreaker.CircuitBreakerError as e:
                    raise SubmissionFailed(str(e)) from e
                latency = time.monotonic() - started

                self.structural_fault = None
                await self._maybe_rotate()

        except AlreadyFulfilled:
            log.info("request_already_fulfilled")
            return FulfillmentOutcome(request_id, FulfillmentState.FULFILLED)
        except ChainExhausted as e:
            log.critical("chain_exhausted",
                         anchor=e.anchor,
                         action="operator must reset the anchor or rotate the chain")
            return self._record_failure(record, e, structural=True)
        except AnchorNotFound as e:
            log.critical("anchor_not_found",
                         anchor=e.anchor,
                         action="check anchor sync between ledger and local chain")
            return self._record_failure(record, e, structural=True)
        except SubmissionFailed as e:
            log.error("fulfillment_submission_failed",
                      error=str(e),
                      revert_reason=e.revert_reason)
            return self._record_failure(record, e)
        except Exception as e:
            log.error("fulfillment_failed", error_type=type(e).__name__, error=str(e))
            return self._record_failure(record, e)

        if self.metrics:
            self.metrics.record_success(latency)
        log.info("request_fulfilled",
                 tx_hash=tx_hash,
                 response_time_ms=round(latency * 1000, 1))
        return FulfillmentOutcome(
            request_id,
            FulfillmentState.FULFILLED,
            reveal=reveal,
            tx_hash=tx_hash,
            latency_ms=latency * 1000,
        )

    async def _await_confirmations(self, record: RequestRecord) -> None:
        """Wait until the request block has ``min_confirmations`` blocks on top."""
        if record.min_confirmations <= 0:
            return
        target = record.block_number + record.min_confirmations
        deadline = time.monotonic() + self.confirmation_timeout
        while True:
            head = await self.ledger.block_number()
            if head >= target:
                return
            if time.monotonic() >= deadline:
                raise SubmissionFailed(
                    f"Request {record.request_id} not confirmed "
                    f"(head {head}, need {target})"
                )
            await asyncio.sleep(self.confirmation_poll_interval)

    async def _maybe_rotate(self) -> None:
        if self.rotator is None or not self.rotator.policy.auto_rotate:
            return
        stats = self.store.stats()
        if not stats.should_rotate:
            return
        logger.warning("chain_rotation_needed",
                       utilization=round(stats.utilization_percentage, 1),
                       remaining_seeds=stats.remaining_seeds,
                       total_seeds=stats.total_seeds)
        try:
            await self.rotator.rotate()
        except OSError as e:
            # The fulfillment already landed; the next success retries rotation
            logger.error("auto_rotation_failed", error=str(e))

    async def _rotate_after_exhaustion(self) -> None:
        if self.rotator is None or not self.rotator.policy.auto_rotate:
            return
        logger.warning("auto_rotating_exhausted_chain")
        try:
            await self.rotator.rotate()
        except OSError as e:
            # Still reported as exhausted; the next exhausted request tries again
            logger.error("auto_rotation_failed", error=str(e))

    def _record_failure(self, record: RequestRecord, error: Exception,
                        structural: bool = False) -> FulfillmentOutcome:
        if self.metrics:
            self.metrics.record_failure()
        if structural:
            self.structural_fault = error

        entry = self.retry_queue.get(record.key)
        if entry is None:
            entry = RetryEntry(key=record.key, record=record, attempts=0,
                               last_attempt_time=self.clock())
            self.retry_queue[record.key] = entry
        entry.attempts += 1
        entry.last_attempt_time = self.clock()
        entry.last_error = str(error)
        entry.structural = structural
        entry.failed_anchor = getattr(error, "anchor", None)
        entry.chain_generation = self.store.generation
        self._drop_if_exhausted(entry)

        return FulfillmentOutcome(record.request_id, FulfillmentState.FAILED, error=str(error))

    def _drop_if_exhausted(self, entry: RetryEntry) -> bool:
        if entry.attempts < self.max_retry_attempts:
            return False
        del self.retry_queue[entry.key]
        exhausted = RetryExhausted(entry.record.request_id, entry.attempts)
        logger.error("request_permanently_failed",
                     request_id=entry.record.request_id,
                     block_number=entry.record.block_number,
                     attempts=entry.attempts,
                     last_error=entry.last_error,
                     error=str(exhausted))
        if self.metrics:
            self.metrics.record_dropped("retry_exhausted")
        return True

    # ------------------------------------------------------------------
    # Retry queue
    # ------------------------------------------------------------------

    async def process_retries(self) -> List[FulfillmentOutcome]:
        """Retry entries whose delay has elapsed."""
        now = self.clock()
        due = [
            entry for entry in self.retry_queue.values()
            if now - entry.last_attempt_time >= self.retry_delay
        ]
        outcomes = []
        ledger_anchor: Optional[str] = None
        anchor_read = False

        for entry in due:
            if entry.key not in self.retry_queue:
                continue
            if entry.structural and entry.chain_generation == self.store.generation:
                # Same chain: only worth retrying if the ledger anchor moved
                if not anchor_read:
                    anchor_read = True
                    try:
                        ledger_anchor = await self.ledger.current_anchor()
                    except Exception as e:
                        logger.warning("retry_anchor_read_failed", error=str(e))
                if ledger_anchor is None or ledger_anchor == entry.failed_anchor:
                    # A skipped cycle costs an attempt so desynced entries age out
                    entry.attempts += 1
                    entry.last_attempt_time = now
                    logger.debug("retry_skipped_unchanged_state",
                                 request_id=entry.record.request_id,
                                 attempts=entry.attempts)
                    self._drop_if_exhausted(entry)
                    continue

            logger.info("retrying_request",
                        request_id=entry.record.request_id,
                        block_number=entry.record.block_number,
                        attempt=entry.attempts + 1)
            if self.metrics:
                self.metrics.record_retry()
            outcomes.append(await self.handle(entry.record))

        self._refresh_gauges()
        return outcomes

    async def publish_pending_anchor(self) -> bool:
        """Re-publish an anchor left pending by a failed rotation publication."""
        if self.rotator is None or self.rotator.pending_publication is None:
            return True
        async with self._lock:
            return await self.rotator.publish_pending()

    def _refresh_gauges(self) -> None:
        if not self.metrics:
            return
        self.metrics.update_retry_queue(len(self.retry_queue))
        if self.store.loaded:
            stats = self.store.stats()
            self.metrics.update_chain(stats.utilization_percentage, stats.remaining_seeds)
