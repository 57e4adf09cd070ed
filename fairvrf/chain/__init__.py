"""Hash chain ownership, consumption and rotation."""

from .hashing import HashChain, keccak_hex, normalize_hex
from .policy import should_rotate
from .rotator import ChainRotator
from .store import ChainStore

__all__ = [
    "ChainRotator",
    "ChainStore",
    "HashChain",
    "keccak_hex",
    "normalize_hex",
    "should_rotate",
]
