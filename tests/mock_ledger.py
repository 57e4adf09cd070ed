"""In-memory stand-in for the FairVRF contract."""
from typing import Dict, List, Optional, Set

from fairvrf.chain.hashing import keccak_hex, normalize_hex
from fairvrf.core.types import RequestRecord
from fairvrf.errors import AlreadyFulfilled, SubmissionFailed
from fairvrf.ledger.base import Ledger


class MockLedger(Ledger):
    """Emulates currentAnchor/fulfillRandomness/setAnchor and event logs.

    ``hidden_blocks`` makes log queries silently skip events in those blocks,
    simulating an RPC node that returned an incomplete range.
    """

    def __init__(self, anchor: Optional[str] = None, head: int = 0):
        self.anchor = normalize_hex(anchor) if anchor else None
        self.head = head
        self.requests: Dict[int, RequestRecord] = {}
        self.fulfilled: Dict[int, str] = {}
        self.hidden_blocks: Set[int] = set()
        self.fail_submissions = 0
        self.fail_set_anchor = False
        self.auto_mine = False
        self.submit_calls = 0
        self.anchor_updates: List[str] = []
        self._next_request_id = 1

    # Test helpers

    def mine(self, blocks: int = 1) -> int:
        self.head += blocks
        return self.head

    def request(self, request_id: Optional[int] = None, min_confirmations: int = 0,
                block_number: Optional[int] = None) -> RequestRecord:
        """Emit a RandomWordsRequested event in a new block."""
        if request_id is None:
            request_id = self._next_request_id
        self._next_request_id = max(self._next_request_id, request_id) + 1
        if block_number is None:
            block_number = self.mine()
        record = RequestRecord(
            request_id=request_id,
            block_number=block_number,
            min_confirmations=min_confirmations,
            sender="0x000000000000000000000000000000000000c0de",
            num_words=1,
        )
        self.requests[request_id] = record
        return record

    # Ledger interface

    async def block_number(self) -> int:
        if self.auto_mine:
            self.mine()
        return self.head

    async def get_request_events(self, from_block: int, to_block: int) -> List[RequestRecord]:
        return [
            r for r in self.requests.values()
            if from_block <= r.block_number <= to_block
            and r.block_number not in self.hidden_blocks
        ]

    async def current_anchor(self) -> str:
        if self.anchor is None:
            return "0x" + "00" * 32
        return self.anchor

    async def is_fulfilled(self, request_id: int) -> bool:
        return request_id in self.fulfilled

    async def fulfill_randomness(self, request_id: int, reveal: str) -> str:
        self.submit_calls += 1
        if self.fail_submissions > 0:
            self.fail_submissions -= 1
            raise SubmissionFailed("connection refused")
        if request_id in self.fulfilled:
            raise AlreadyFulfilled(request_id)
        if request_id not in self.requests:
            raise SubmissionFailed("fulfillRandomness reverted: RequestNotFound",
                                   revert_reason="RequestNotFound")
        if keccak_hex(reveal) != self.anchor:
            raise SubmissionFailed("fulfillRandomness reverted: InvalidSeedProof",
                                   revert_reason="InvalidSeedProof")
        self.anchor = normalize_hex(reveal)
        self.fulfilled[request_id] = self.anchor
        self.mine()
        return "0x%064x" % self.submit_calls

    async def set_anchor(self, new_anchor: str) -> str:
        if self.fail_set_anchor:
            raise SubmissionFailed("setAnchor submission failed: nonce too low")
        self.anchor = normalize_hex(new_anchor)
        self.anchor_updates.append(self.anchor)
        self.mine()
        return "0x%064x" % (len(self.anchor_updates) + 1000)
