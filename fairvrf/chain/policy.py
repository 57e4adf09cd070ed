from fairvrf.config.base import RotationPolicy
from fairvrf.core.types import ConsumptionState


def should_rotate(policy: RotationPolicy, state: ConsumptionState) -> bool:
    """Advisory rotation decision for a consumption snapshot."""
    if not policy.enabled:
        return False
    return (
        state.utilization_percentage >= policy.threshold_percentage
        or state.remaining_seeds <= policy.min_remaining_seeds
    )
