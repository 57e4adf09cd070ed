import pytest

from fairvrf.chain.rotator import ChainRotator
from fairvrf.chain.store import ChainStore
from fairvrf.config.base import RotationPolicy
from fairvrf.metrics import OracleMetrics
from tests.mock_ledger import MockLedger

KNOWN_SECRET = "0x" + "ab" * 32


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def chain():
    """Ten-seed chain built from a fixed secret."""
    return ChainRotator.generate(10, secret=KNOWN_SECRET)


@pytest.fixture
def policy():
    return RotationPolicy(threshold_percentage=80, min_remaining_seeds=2, auto_rotate=False)


@pytest.fixture
def store(chain, policy):
    return ChainStore(policy=policy, chain=chain)


@pytest.fixture
def ledger(chain):
    return MockLedger(anchor=chain.anchor, head=99)


@pytest.fixture
def metrics():
    return OracleMetrics()


@pytest.fixture
def clock():
    return FakeClock()
