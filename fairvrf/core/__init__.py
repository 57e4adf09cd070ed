"""Core types for the FairVRF oracle."""

from .types import (
    ChainHealth,
    ConsumptionState,
    FulfillmentOutcome,
    FulfillmentState,
    HealthStatus,
    RequestKey,
    RequestRecord,
    RetryEntry,
)

__all__ = [
    "ChainHealth",
    "ConsumptionState",
    "FulfillmentOutcome",
    "FulfillmentState",
    "HealthStatus",
    "RequestKey",
    "RequestRecord",
    "RetryEntry",
]
