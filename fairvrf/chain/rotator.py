"""Chain rotator: generates fresh chains and swaps them in.

Rotation order: archive the old chain, install the new one with the pointer
reset, then hand the new anchor to the publication callback. A failed
publication does not roll the local chain back; the anchor is kept as
pending and re-published by ``publish_pending`` until the ledger accepts it.
"""

import secrets
from typing import Any, Awaitable, Callable, List, Optional, Union

import structlog

from fairvrf import constants
from fairvrf.chain.hashing import HashChain, keccak_hex, normalize_hex
from fairvrf.chain.policy import should_rotate
from fairvrf.chain.store import ChainStore
from fairvrf.config.base import RotationPolicy
from fairvrf.errors import RotationPublicationFailed

logger = structlog.get_logger()

AnchorPublisher = Callable[[str], Awaitable[Any]]


class ChainRotator:
    def __init__(
        self,
        store: ChainStore,
        policy: Optional[RotationPolicy] = None,
        publish_anchor: Optional[AnchorPublisher] = None,
        default_length: int = constants.DEFAULT_CHAIN_LENGTH,
        metrics=None,
    ):
        self.store = store
        self.policy = policy or store.policy
        self.publish_anchor = publish_anchor
        self.default_length = default_length
        self.metrics = metrics
        self.rotations = 0
        self.pending_publication: Optional[str] = None
        self.last_publication_error: Optional[RotationPublicationFailed] = None

    @staticmethod
    def generate(length: int, secret: Optional[Union[str, bytes]] = None) -> HashChain:
        """Build a chain of ``length`` seeds ending in ``secret``.

        Hashes forward from the secret, keeping every intermediate value,
        then reverses so index 0 is the anchor.
        """
        if length < 2:
            raise ValueError("Chain length must be at least 2")
        if secret is None:
            secret = secrets.token_bytes(constants.SEED_SIZE_BYTES)
        current = normalize_hex(secret)

        forward: List[str] = [current]
        for _ in range(length - 1):
            current = keccak_hex(current)
            forward.append(current)
        forward.reverse()
        return HashChain(tuple(forward))

    def should_rotate(self) -> bool:
        return should_rotate(self.policy, self.store.stats())

    async def rotate(self, length: Optional[int] = None,
                     secret: Optional[Union[str, bytes]] = None) -> str:
        """Replace the current chain and publish the new anchor.

        Returns the new anchor. Publication failures are logged and kept
        pending rather than raised; the local rotation stands.
        """
        length = length or self.default_length
        logger.info("chain_rotation_started", length=length)

        chain = self.generate(length, secret)
        self.store.archive()
        self.store.install(chain)
        self.rotations += 1
        if self.metrics:
            self.metrics.record_rotation()

        new_anchor = chain.anchor
        logger.warning("chain_rotated", new_anchor=new_anchor, seeds=len(chain))

        if self.publish_anchor is None:
            logger.warning("anchor_update_required", new_anchor=new_anchor)
            return new_anchor

        self.pending_publication = new_anchor
        await self.publish_pending()
        return new_anchor

    async def publish_pending(self) -> bool:
        """Publish a pending anchor. Returns True when nothing is left pending."""
        anchor = self.pending_publication
        if anchor is None:
            return True
        if self.publish_anchor is None:
            return False
        try:
            await self.publish_anchor(anchor)
        except Exception as e:
            self.last_publication_error = RotationPublicationFailed(anchor, e)
            logger.error("anchor_publication_failed",
                         anchor=anchor,
                         error=str(e),
                         action="call setAnchor manually or wait for retry")
            return False

        if self.pending_publication == anchor:
            self.pending_publication = None
        self.last_publication_error = None
        logger.info("anchor_published", anchor=anchor)
        return True
