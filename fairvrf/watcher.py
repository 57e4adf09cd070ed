"""Ledger watcher: detects randomness requests by polling event logs.

Two independent cycles share one dedup set keyed by (block, request id):

* the fast poll walks forward from the last seen head, re-reading a few
  blocks of overlap to tolerate reorganizations;
* the deep scan re-reads a wide historical window to recover anything the
  fast poll missed, dropping requests older than the blockhash horizon.

Each cycle is an async generator; a cycle started while the same kind of
cycle is still running yields nothing.
"""

from typing import AsyncIterator, Dict, List, Optional

import structlog

from fairvrf import constants
from fairvrf.core.types import RequestKey, RequestRecord
from fairvrf.ledger.base import Ledger

logger = structlog.get_logger()


class LedgerWatcher:
    def __init__(
        self,
        ledger: Ledger,
        overlap_blocks: int = constants.POLL_OVERLAP_BLOCKS,
        initial_lookback_blocks: int = constants.INITIAL_LOOKBACK_BLOCKS,
        deep_scan_window: int = constants.DEEP_SCAN_WINDOW,
        blockhash_horizon: int = constants.BLOCKHASH_HORIZON,
        metrics=None,
    ):
        self.ledger = ledger
        self.overlap_blocks = overlap_blocks
        self.initial_lookback_blocks = initial_lookback_blocks
        self.deep_scan_window = deep_scan_window
        self.blockhash_horizon = blockhash_horizon
        self.metrics = metrics

        self.last_to_block: Optional[int] = None
        self._seen: Dict[RequestKey, int] = {}
        self.polling = False
        self.deep_scanning = False

    @property
    def seen_count(self) -> int:
        return len(self._seen)

    def is_seen(self, key: RequestKey) -> bool:
        return key in self._seen

    async def poll(self) -> AsyncIterator[RequestRecord]:
        """Fast poll cycle: yield requests not seen before."""
        if self.polling:
            logger.warning("poll_already_in_progress")
            return
        self.polling = True
        try:
            head = await self.ledger.block_number()
            if self.last_to_block is None:
                from_block = max(0, head - self.initial_lookback_blocks)
            else:
                from_block = max(0, self.last_to_block - self.overlap_blocks)
            if from_block > head:
                return

            events = await self.ledger.get_request_events(from_block, head)
            self.last_to_block = head

            for record in self._filter_new(events):
                if not self._claim(record):
                    continue
                logger.info("request_detected",
                            request_id=record.request_id,
                            block_number=record.block_number,
                            min_confirmations=record.min_confirmations)
                if self.metrics:
                    self.metrics.record_detected("poll")
                yield record
        finally:
            self.polling = False

    async def deep_scan(self) -> AsyncIterator[RequestRecord]:
        """Slow cycle over the last ``deep_scan_window`` blocks."""
        if self.deep_scanning:
            logger.warning("deep_scan_already_in_progress")
            return
        self.deep_scanning = True
        try:
            head = await self.ledger.block_number()
            from_block = max(0, head - self.deep_scan_window)
            events = await self.ledger.get_request_events(from_block, head)
            logger.debug("deep_scan_completed",
                         from_block=from_block,
                         to_block=head,
                         events=len(events))

            for record in self._filter_new(events):
                if not self._claim(record):
                    continue
                age = head - record.block_number
                if age > self.blockhash_horizon:
                    logger.error("request_beyond_history_horizon",
                                 request_id=record.request_id,
                                 block_number=record.block_number,
                                 age_blocks=age,
                                 horizon=self.blockhash_horizon)
                    if self.metrics:
                        self.metrics.record_dropped("history_horizon")
                    continue
                logger.warning("request_recovered_by_deep_scan",
                               request_id=record.request_id,
                               block_number=record.block_number)
                if self.metrics:
                    self.metrics.record_detected("deep_scan")
                yield record

            self._prune(from_block)
        finally:
            self.deep_scanning = False

    def _filter_new(self, events: List[RequestRecord]) -> List[RequestRecord]:
        """Records whose key has not been seen, in block order.

        Keys are claimed one at a time as records are handed out, so a
        cycle that stops early leaves the rest for the deep scan.
        """
        fresh = {}
        for record in sorted(events, key=lambda r: (r.block_number, r.request_id)):
            if record.key not in self._seen:
                fresh.setdefault(record.key, record)
        return list(fresh.values())

    def _claim(self, record: RequestRecord) -> bool:
        """Mark the key as seen; False if another cycle already took it."""
        if record.key in self._seen:
            return False
        self._seen[record.key] = record.block_number
        return True

    def _prune(self, below_block: int) -> None:
        """Forget keys older than any window that could return them again."""
        stale = [key for key, block in self._seen.items() if block < below_block]
        for key in stale:
            del self._seen[key]
