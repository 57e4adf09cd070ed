"""Tests for request fulfillment, the retry queue and auto-rotation."""
import asyncio
from unittest.mock import AsyncMock

import pytest

from fairvrf.chain.rotator import ChainRotator
from fairvrf.chain.store import ChainStore
from fairvrf.config.base import RotationPolicy
from fairvrf.core.types import FulfillmentState
from fairvrf.error_handling.circuit_breaker import CircuitBreaker
from fairvrf.errors import AnchorNotFound, ChainExhausted
from fairvrf.fulfillment import FulfillmentCoordinator
from fairvrf.ledger.base import make_anchor_publisher
from tests.mock_ledger import MockLedger


@pytest.fixture
def coordinator(ledger, store, metrics, clock):
    return FulfillmentCoordinator(
        ledger,
        store,
        metrics=metrics,
        retry_delay=30,
        max_retry_attempts=3,
        confirmation_timeout=1,
        confirmation_poll_interval=0,
        clock=clock,
    )


def test_end_to_end_reveals_in_order(coordinator, ledger, chain, metrics):
    first = ledger.request()
    assert first.block_number == 100

    outcome = asyncio.run(coordinator.handle(first))
    assert outcome.success
    assert outcome.reveal == chain.seeds[1]
    assert outcome.tx_hash
    assert ledger.anchor == chain.seeds[1]
    assert ledger.fulfilled[first.request_id] == chain.seeds[1]

    second = ledger.request()
    outcome = asyncio.run(coordinator.handle(second))
    assert outcome.reveal == chain.seeds[2]
    assert ledger.anchor == chain.seeds[2]

    snapshot = metrics.refresh()
    assert snapshot.successful_fulfillments == 2
    assert snapshot.failed_fulfillments == 0
    assert snapshot.average_response_time >= 0


def test_chain_runs_out_after_last_reveal(coordinator, ledger, chain):
    for i in range(1, len(chain)):
        outcome = asyncio.run(coordinator.handle(ledger.request()))
        assert outcome.reveal == chain.seeds[i]

    outcome = asyncio.run(coordinator.handle(ledger.request()))
    assert outcome.state == FulfillmentState.FAILED
    assert isinstance(coordinator.structural_fault, ChainExhausted)
    assert ledger.anchor == chain.secret


def test_transient_failure_is_retried_after_delay(coordinator, ledger, chain, clock, metrics):
    ledger.fail_submissions = 1
    record = ledger.request()

    outcome = asyncio.run(coordinator.handle(record))
    assert outcome.state == FulfillmentState.FAILED
    assert record.key in coordinator.retry_queue
    assert metrics.refresh().retry_queue_size == 1

    # Not due yet
    assert asyncio.run(coordinator.process_retries()) == []
    assert coordinator.retry_queue[record.key].attempts == 1

    clock.advance(31)
    outcomes = asyncio.run(coordinator.process_retries())
    assert [o.reveal for o in outcomes] == [chain.seeds[1]]
    assert coordinator.retry_queue == {}
    assert metrics.registry.get_sample_value("fairvrf_retries_total") == 1.0


def test_request_dropped_after_max_attempts(coordinator, ledger, clock, metrics):
    ledger.fail_submissions = 10
    record = ledger.request()

    asyncio.run(coordinator.handle(record))
    for _ in range(2):
        clock.advance(31)
        asyncio.run(coordinator.process_retries())

    assert record.key not in coordinator.retry_queue
    assert ledger.submit_calls == 3
    snapshot = metrics.refresh()
    assert snapshot.failed_fulfillments == 3
    assert snapshot.dropped_requests == 1
    assert metrics.registry.get_sample_value(
        "fairvrf_requests_dropped_total", {"reason": "retry_exhausted"}
    ) == 1.0


def test_structural_failure_waits_for_anchor_change(coordinator, ledger, chain, clock):
    ledger.anchor = "0x" + "77" * 32
    record = ledger.request()

    outcome = asyncio.run(coordinator.handle(record))
    assert outcome.state == FulfillmentState.FAILED
    assert isinstance(coordinator.structural_fault, AnchorNotFound)
    entry = coordinator.retry_queue[record.key]
    assert entry.structural
    assert entry.failed_anchor == ledger.anchor

    # Same ledger anchor, same chain: skipped, but the cycle costs an attempt
    clock.advance(31)
    assert asyncio.run(coordinator.process_retries()) == []
    assert coordinator.retry_queue[record.key].attempts == 2
    assert ledger.submit_calls == 0

    # Operator resets the contract anchor
    ledger.anchor = chain.anchor
    clock.advance(31)
    outcomes = asyncio.run(coordinator.process_retries())
    assert outcomes[0].reveal == chain.seeds[1]
    assert coordinator.structural_fault is None
    assert coordinator.retry_queue == {}


def test_structural_failure_retried_after_new_chain(coordinator, ledger, store, clock):
    ledger.anchor = "0x" + "77" * 32
    record = ledger.request()
    asyncio.run(coordinator.handle(record))

    replacement = ChainRotator.generate(5)
    store.install(replacement)
    ledger.anchor = replacement.anchor

    clock.advance(31)
    outcomes = asyncio.run(coordinator.process_retries())
    assert outcomes[0].reveal == replacement.seeds[1]


def test_already_fulfilled_is_not_resubmitted(coordinator, ledger, store):
    record = ledger.request()
    ledger.fulfilled[record.request_id] = "0x" + "01" * 32

    outcome = asyncio.run(coordinator.handle(record))
    assert outcome.success
    assert outcome.reveal is None
    assert ledger.submit_calls == 0
    assert store.stats().current_index == -1


def test_already_fulfilled_revert_counts_as_done(ledger, store, chain):
    coordinator = FulfillmentCoordinator(ledger, store, check_already_fulfilled=False)
    record = ledger.request()
    ledger.fulfilled[record.request_id] = "0x" + "01" * 32

    outcome = asyncio.run(coordinator.handle(record))
    assert outcome.success
    assert ledger.submit_calls == 1
    assert coordinator.retry_queue == {}
    assert ledger.anchor == chain.anchor


def test_waits_for_confirmations(coordinator, ledger, chain):
    ledger.auto_mine = True
    record = ledger.request(min_confirmations=3)

    outcome = asyncio.run(coordinator.handle(record))
    assert outcome.reveal == chain.seeds[1]
    assert ledger.head >= record.block_number + 3


def test_confirmation_timeout_is_retryable(ledger, store):
    coordinator = FulfillmentCoordinator(
        ledger, store, confirmation_timeout=0, confirmation_poll_interval=0
    )
    record = ledger.request(min_confirmations=5)

    outcome = asyncio.run(coordinator.handle(record))
    assert outcome.state == FulfillmentState.FAILED
    assert "not confirmed" in outcome.error
    assert not coordinator.retry_queue[record.key].structural
    assert ledger.submit_calls == 0


def test_circuit_breaker_stops_submissions(ledger, store):
    breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60)
    coordinator = FulfillmentCoordinator(ledger, store, breaker=breaker)
    ledger.fail_submissions = 5

    for _ in range(3):
        outcome = asyncio.run(coordinator.handle(ledger.request()))
        assert outcome.state == FulfillmentState.FAILED

    assert breaker.state == CircuitBreaker.STATE_OPEN
    assert ledger.submit_calls == 2
    assert len(coordinator.retry_queue) == 3


def test_auto_rotation_after_threshold(ledger, chain, metrics):
    policy = RotationPolicy(threshold_percentage=50, min_remaining_seeds=0, auto_rotate=True)
    store = ChainStore(policy=policy, chain=chain)
    rotator = ChainRotator(
        store,
        publish_anchor=make_anchor_publisher(ledger),
        default_length=10,
        metrics=metrics,
    )
    coordinator = FulfillmentCoordinator(ledger, store, rotator=rotator, metrics=metrics)

    for i in range(1, 6):
        outcome = asyncio.run(coordinator.handle(ledger.request()))
        assert outcome.reveal == chain.seeds[i]

    # Fifth reveal crossed 50%; the contract now holds the new anchor
    assert rotator.rotations == 1
    new_chain = store.chain
    assert new_chain.anchor != chain.anchor
    assert ledger.anchor == new_chain.anchor
    assert ledger.anchor_updates == [new_chain.anchor]

    outcome = asyncio.run(coordinator.handle(ledger.request()))
    assert outcome.reveal == new_chain.seeds[1]


def test_auto_rotation_on_exhaustion(ledger, chain):
    policy = RotationPolicy(enabled=False, auto_rotate=True)
    store = ChainStore(policy=policy, chain=chain)
    rotator = ChainRotator(store, publish_anchor=make_anchor_publisher(ledger), default_length=4)
    coordinator = FulfillmentCoordinator(ledger, store, rotator=rotator)
    ledger.anchor = chain.secret

    record = ledger.request()
    outcome = asyncio.run(coordinator.handle(record))
    assert outcome.state == FulfillmentState.FAILED
    assert rotator.rotations == 1
    assert ledger.anchor == store.current_anchor()

    # The ledger anchor moved, so the retry goes through against the new chain
    coordinator.clock = lambda: 10 ** 9
    outcomes = asyncio.run(coordinator.process_retries())
    assert outcomes[0].reveal == store.chain.seeds[1]


def test_failed_exhaustion_rotation_stays_structural(ledger, chain):
    policy = RotationPolicy(enabled=False, auto_rotate=True)
    store = ChainStore(policy=policy, chain=chain)
    rotator = ChainRotator(store, publish_anchor=make_anchor_publisher(ledger), default_length=4)
    rotator.rotate = AsyncMock(side_effect=OSError("No space left on device"))
    coordinator = FulfillmentCoordinator(ledger, store, rotator=rotator)
    ledger.anchor = chain.secret

    record = ledger.request()
    outcome = asyncio.run(coordinator.handle(record))

    assert outcome.state == FulfillmentState.FAILED
    assert rotator.rotate.await_count == 1
    assert isinstance(coordinator.structural_fault, ChainExhausted)
    assert coordinator.retry_queue[record.key].structural
    assert ledger.anchor == chain.secret


def test_desynced_entries_are_dropped_after_max_attempts(coordinator, ledger, clock, metrics):
    ledger.anchor = "0x" + "77" * 32
    records = [ledger.request() for _ in range(5)]
    for record in records:
        asyncio.run(coordinator.handle(record))
    assert len(coordinator.retry_queue) == 5

    clock.advance(31)
    asyncio.run(coordinator.process_retries())
    assert {e.attempts for e in coordinator.retry_queue.values()} == {2}

    clock.advance(31)
    asyncio.run(coordinator.process_retries())
    assert coordinator.retry_queue == {}
    assert ledger.submit_calls == 0

    snapshot = metrics.refresh()
    assert snapshot.dropped_requests == 5
    assert snapshot.retry_queue_size == 0
    assert metrics.registry.get_sample_value(
        "fairvrf_requests_dropped_total", {"reason": "retry_exhausted"}
    ) == 5.0


class YieldingLedger(MockLedger):
    """Hands control back to the event loop inside every contract call."""

    async def is_fulfilled(self, request_id):
        await asyncio.sleep(0)
        return await super().is_fulfilled(request_id)

    async def current_anchor(self):
        await asyncio.sleep(0)
        return await super().current_anchor()

    async def fulfill_randomness(self, request_id, reveal):
        await asyncio.sleep(0)
        return await super().fulfill_randomness(request_id, reveal)


def test_concurrent_requests_reveal_one_index_each(store, chain):
    ledger = YieldingLedger(anchor=chain.anchor, head=99)
    coordinator = FulfillmentCoordinator(ledger, store)
    records = [ledger.request() for _ in range(4)]

    async def handle_all():
        return await asyncio.gather(*(coordinator.handle(r) for r in records))

    outcomes = asyncio.run(handle_all())

    assert [o.success for o in outcomes] == [True] * 4
    assert [o.reveal for o in outcomes] == list(chain.seeds[1:5])
    assert ledger.submit_calls == 4
    assert ledger.anchor == chain.seeds[4]
    assert store.stats().current_index == 3
