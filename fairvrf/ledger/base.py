"""Abstract ledger interface consumed by the oracle."""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List

import structlog

from fairvrf.core.types import RequestRecord

logger = structlog.get_logger()


class Ledger(ABC):
    """The FairVRF contract as seen by the oracle.

    Writes wait for the transaction receipt. Implementations raise
    ``SubmissionFailed`` for transient failures and ``AlreadyFulfilled``
    when the contract reports the request as done.
    """

    @abstractmethod
    async def block_number(self) -> int:
        """Current head block."""

    @abstractmethod
    async def get_request_events(self, from_block: int, to_block: int) -> List[RequestRecord]:
        """RandomWordsRequested events in the inclusive block range."""

    @abstractmethod
    async def current_anchor(self) -> str:
        """The contract's committed anchor as 0x-hex."""

    @abstractmethod
    async def fulfill_randomness(self, request_id: int, reveal: str) -> str:
        """Submit fulfillRandomness and return the transaction hash."""

    @abstractmethod
    async def set_anchor(self, new_anchor: str) -> str:
        """Submit the privileged setAnchor and return the transaction hash."""

    async def is_fulfilled(self, request_id: int) -> bool:
        """Whether the contract already fulfilled ``request_id``."""
        return False


def make_anchor_publisher(ledger: Ledger) -> Callable[[str], Awaitable[str]]:
    """Anchor-publication callback for ChainRotator backed by setAnchor."""

    async def publish(new_anchor: str) -> str:
        logger.info("updating_contract_anchor", new_anchor=new_anchor)
        tx_hash = await ledger.set_anchor(new_anchor)
        logger.info("contract_anchor_updated", new_anchor=new_anchor, tx_hash=tx_hash)
        return tx_hash

    return publish
