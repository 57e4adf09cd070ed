"""Keccak hash chain primitives.

A chain is stored anchor-first: ``seeds[0]`` is the public commitment and
``keccak(seeds[i + 1]) == seeds[i]`` for every ``i``. Values are lowercase
``0x``-prefixed hex of 32 bytes, matching the contract's ``bytes32``.
"""

from dataclasses import dataclass
from typing import Dict, Sequence, Tuple, Union

from web3 import Web3

from fairvrf.errors import InvalidChain


def normalize_hex(value: Union[str, bytes]) -> str:
    """Return a lowercase 0x-prefixed hex string."""
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(bytes(value))
    value = value.strip().lower()
    if not value.startswith("0x"):
        value = "0x" + value
    return value


def keccak_hex(value: Union[str, bytes]) -> str:
    """keccak256 over the raw bytes of a hex value, as hex."""
    return Web3.to_hex(Web3.keccak(hexstr=normalize_hex(value)))


@dataclass(frozen=True)
class HashChain:
    """Immutable anchor-first hash chain."""
    seeds: Tuple[str, ...]

    @classmethod
    def from_seeds(cls, seeds: Sequence[str], verify: bool = True) -> "HashChain":
        chain = cls(tuple(normalize_hex(s) for s in seeds))
        if verify:
            chain.verify()
        return chain

    @property
    def anchor(self) -> str:
        return self.seeds[0]

    @property
    def secret(self) -> str:
        """The deepest element, revealed last."""
        return self.seeds[-1]

    def __len__(self) -> int:
        return len(self.seeds)

    def index_map(self) -> Dict[str, int]:
        return {seed: i for i, seed in enumerate(self.seeds)}

    def verify(self) -> None:
        """Raise InvalidChain unless every link hashes to its predecessor."""
        if not self.seeds:
            raise InvalidChain("Chain is empty")
        for i in range(len(self.seeds) - 1):
            if keccak_hex(self.seeds[i + 1]) != self.seeds[i]:
                raise InvalidChain(f"Broken link at index {i}")
