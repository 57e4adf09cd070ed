"""Core types for the FairVRF oracle."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional

from fairvrf.constants import UNSTARTED_INDEX


class HealthStatus(Enum):
    """Chain health levels."""
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class FulfillmentState(Enum):
    """Per-request fulfillment states."""
    FULFILLED = "fulfilled"
    FAILED = "failed"


class RequestKey(NamedTuple):
    """Dedup and retry key for a ledger request."""
    block_number: int
    request_id: int

    def __str__(self) -> str:
        return f"{self.block_number}-{self.request_id}"


@dataclass(frozen=True)
class RequestRecord:
    """Read-only view of a RandomWordsRequested event."""
    request_id: int
    block_number: int
    min_confirmations: int = 0
    sender: Optional[str] = None
    pre_seed: Optional[int] = None
    callback_gas_limit: Optional[int] = None
    num_words: Optional[int] = None
    tx_hash: Optional[str] = None

    @property
    def key(self) -> RequestKey:
        return RequestKey(self.block_number, self.request_id)


@dataclass(frozen=True)
class ConsumptionState:
    """Snapshot of chain consumption."""
    current_index: int
    total_seeds: int
    should_rotate: bool = False
    rotation_threshold: float = 0.0

    @property
    def remaining_seeds(self) -> int:
        return self.total_seeds - self.current_index - 1

    @property
    def utilization_percentage(self) -> float:
        if self.total_seeds == 0 or self.current_index == UNSTARTED_INDEX:
            return 0.0
        return (self.current_index + 1) / self.total_seeds * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_seeds": self.total_seeds,
            "current_index": self.current_index,
            "remaining_seeds": self.remaining_seeds,
            "utilization_percentage": self.utilization_percentage,
            "should_rotate": self.should_rotate,
            "rotation_threshold": self.rotation_threshold,
        }


@dataclass(frozen=True)
class ChainHealth:
    """Health report for the hash chain."""
    status: HealthStatus
    chain_length: int
    current_utilization: float
    estimated_requests_remaining: int
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "chain_length": self.chain_length,
            "current_utilization": self.current_utilization,
            "estimated_requests_remaining": self.estimated_requests_remaining,
            "recommendations": list(self.recommendations),
        }


@dataclass
class RetryEntry:
    """A failed request waiting to be retried."""
    key: RequestKey
    record: RequestRecord
    attempts: int
    last_attempt_time: float
    last_error: str = ""
    structural: bool = False
    # Ledger anchor and chain generation seen when a structural failure occurred
    failed_anchor: Optional[str] = None
    chain_generation: int = 0


@dataclass(frozen=True)
class FulfillmentOutcome:
    """Result of handling one request."""
    request_id: int
    state: FulfillmentState
    reveal: Optional[str] = None
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    latency_ms: Optional[float] = None

    @property
    def success(self) -> bool:
        return self.state == FulfillmentState.FULFILLED
