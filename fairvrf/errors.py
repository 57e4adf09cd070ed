"""Exception hierarchy for the FairVRF oracle.

Structural errors (``ChainStateError`` subclasses) mean the local chain and
the ledger disagree and retrying against the same state cannot help.
``SubmissionFailed`` covers transient network, gas and nonce problems and is
retried through the fulfillment retry queue.
"""

from typing import Optional


class OracleError(Exception):
    """Base class for all oracle errors."""


class ConfigurationError(OracleError):
    """Raised when required configuration is missing or invalid."""


class ChainNotLoaded(OracleError):
    """Raised when the chain store has no chain installed."""


class InvalidChain(OracleError):
    """Raised when a chain violates hash(chain[i+1]) == chain[i]."""


class ChainStateError(OracleError):
    """Local chain cannot serve the ledger's current anchor."""

    def __init__(self, message: str, anchor: Optional[str] = None):
        super().__init__(message)
        self.anchor = anchor


class AnchorNotFound(ChainStateError):
    """The ledger anchor is not part of the local chain (desync)."""

    def __init__(self, anchor: str):
        super().__init__(
            f"Current anchor {anchor} not found in local chain. Sync issue?",
            anchor=anchor,
        )


class ChainExhausted(ChainStateError):
    """The ledger anchor is the last element of the local chain."""

    def __init__(self, anchor: Optional[str] = None):
        super().__init__(
            "Chain exhausted! A new anchor must be committed.",
            anchor=anchor,
        )


class SubmissionFailed(OracleError):
    """A fulfillment transaction could not be submitted or was reverted."""

    def __init__(self, message: str, revert_reason: Optional[str] = None):
        super().__init__(message)
        self.revert_reason = revert_reason


class AlreadyFulfilled(OracleError):
    """The ledger reports the request as already fulfilled."""

    def __init__(self, request_id: int):
        super().__init__(f"Request {request_id} already fulfilled")
        self.request_id = request_id


class RotationPublicationFailed(OracleError):
    """The local chain rotated but the new anchor was not published."""

    def __init__(self, anchor: str, cause: Exception):
        super().__init__(f"Failed to publish anchor {anchor}: {cause}")
        self.anchor = anchor
        self.cause = cause


class RetryExhausted(OracleError):
    """A request failed more than the allowed number of attempts."""

    def __init__(self, request_id: int, attempts: int):
        super().__init__(
            f"Request {request_id} abandoned after {attempts} attempts"
        )
        self.request_id = request_id
        self.attempts = attempts
