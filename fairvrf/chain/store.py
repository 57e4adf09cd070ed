"""Chain store: owns the active hash chain and its consumption pointer.

The store answers one question for the fulfillment path: given the anchor
the ledger currently holds, which chain element must be revealed next. The
lookup and the pointer advance happen under a single lock, so two callers
can never both consume the same index.

State is persisted as JSON next to the chain:

    {"seeds": ["0x..anchor", "0x..", ...], "current_index": -1}

A bare JSON array (the format produced by the chain generation scripts) is
accepted on load and starts unconsumed.
"""

import json
import math
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from fairvrf import constants
from fairvrf.chain.hashing import HashChain, keccak_hex, normalize_hex
from fairvrf.chain.policy import should_rotate
from fairvrf.config.base import RotationPolicy
from fairvrf.core.types import ChainHealth, ConsumptionState, HealthStatus
from fairvrf.errors import AnchorNotFound, ChainExhausted, ChainNotLoaded, InvalidChain

logger = structlog.get_logger()


class ChainStore:
    """Single owner of the chain and the consumption pointer."""

    def __init__(
        self,
        chain_path: Optional[Path] = None,
        policy: Optional[RotationPolicy] = None,
        chain: Optional[HashChain] = None,
        current_index: int = constants.UNSTARTED_INDEX,
    ):
        self.chain_path = Path(chain_path) if chain_path else None
        self.policy = policy or RotationPolicy()
        self._lock = threading.RLock()
        self._chain: Optional[HashChain] = None
        self._index: Dict[str, int] = {}
        self._current_index = constants.UNSTARTED_INDEX
        self._generation = 0
        if chain is not None:
            self._set_chain(chain, current_index)

    @classmethod
    def load(cls, chain_path: Path, policy: Optional[RotationPolicy] = None) -> "ChainStore":
        """Load a persisted chain, verifying every link."""
        chain_path = Path(chain_path)
        if not chain_path.exists():
            raise ChainNotLoaded(
                f"Chain DB not found at {chain_path}. Generate a chain first."
            )
        with chain_path.open("r", encoding="utf-8") as f:
            data = json.load(f)

        if isinstance(data, list):
            seeds, current_index = data, constants.UNSTARTED_INDEX
        elif isinstance(data, dict) and "seeds" in data:
            seeds = data["seeds"]
            current_index = int(data.get("current_index", constants.UNSTARTED_INDEX))
        else:
            raise InvalidChain(f"Unrecognized chain file format: {chain_path}")

        chain = HashChain.from_seeds(seeds)
        if not constants.UNSTARTED_INDEX <= current_index < len(chain):
            raise InvalidChain(f"Stored index {current_index} out of range")

        store = cls(chain_path=chain_path, policy=policy)
        store._set_chain(chain, current_index)
        logger.info("chain_loaded",
                    path=str(chain_path),
                    seeds=len(chain),
                    current_index=current_index)
        return store

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_reveal(self, current_anchor: str) -> str:
        """Return the element whose hash is ``current_anchor`` and advance.

        Raises:
            AnchorNotFound: the anchor is not in the local chain
            ChainExhausted: the anchor is the last element of the chain
        """
        with self._lock:
            chain = self._require_chain()
            normalized = normalize_hex(current_anchor)
            index = self._index.get(normalized)
            if index is None:
                raise AnchorNotFound(current_anchor)
            if index >= len(chain) - 1:
                raise ChainExhausted(current_anchor)

            if index < self._current_index:
                # Ledger showed an older anchor (e.g. reorg); the pointer never moves back
                logger.warning("stale_anchor_resolved",
                               anchor=normalized,
                               index=index,
                               current_index=self._current_index)
            elif index > self._current_index:
                self._current_index = index
                self._persist()
            return chain.seeds[index + 1]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def loaded(self) -> bool:
        return self._chain is not None

    @property
    def generation(self) -> int:
        """Incremented every time a chain is installed."""
        return self._generation

    @property
    def chain(self) -> HashChain:
        return self._require_chain()

    def current_anchor(self) -> str:
        """The public commitment of the installed chain (chain[0])."""
        return self._require_chain().anchor

    def stats(self) -> ConsumptionState:
        with self._lock:
            total = len(self._chain) if self._chain is not None else 0
            state = ConsumptionState(
                current_index=self._current_index,
                total_seeds=total,
                rotation_threshold=self.policy.threshold_percentage,
            )
            return ConsumptionState(
                current_index=state.current_index,
                total_seeds=state.total_seeds,
                should_rotate=total > 0 and should_rotate(self.policy, state),
                rotation_threshold=state.rotation_threshold,
            )

    def health(self) -> ChainHealth:
        """Classify chain utilization into healthy, warning or critical."""
        stats = self.stats()
        status = HealthStatus.HEALTHY
        recommendations: List[str] = []

        if stats.total_seeds == 0:
            return ChainHealth(
                status=HealthStatus.CRITICAL,
                chain_length=0,
                current_utilization=0.0,
                estimated_requests_remaining=0,
                recommendations=["Generate a hash chain and publish its anchor"],
            )

        utilization = stats.utilization_percentage
        if utilization >= constants.CRITICAL_UTILIZATION:
            status = HealthStatus.CRITICAL
            recommendations.append("Immediate chain rotation required")
            recommendations.append("Update contract anchor ASAP")
        elif (utilization >= self.policy.threshold_percentage
              or stats.remaining_seeds <= self.policy.min_remaining_seeds):
            status = HealthStatus.WARNING
            recommendations.append("Chain rotation recommended")
            recommendations.append("Prepare new anchor for contract update")

        floor = max(
            constants.CRITICAL_REMAINING_FLOOR,
            math.floor(stats.total_seeds * constants.CRITICAL_REMAINING_FRACTION),
        )
        if stats.remaining_seeds <= floor:
            status = HealthStatus.CRITICAL
            recommendations.append(f"Less than {floor} seeds remaining - URGENT")

        return ChainHealth(
            status=status,
            chain_length=stats.total_seeds,
            current_utilization=utilization,
            estimated_requests_remaining=stats.remaining_seeds,
            recommendations=recommendations,
        )

    def chain_segment(self, start: int, end: int) -> List[str]:
        """Slice of the chain for inspection."""
        return list(self._require_chain().seeds[start:end])

    @staticmethod
    def verify_seed(seed: str, expected_hash: str) -> bool:
        """Check that ``seed`` hashes to ``expected_hash``."""
        return keccak_hex(seed) == normalize_hex(expected_hash)

    # ------------------------------------------------------------------
    # Installation and persistence (used by the rotator)
    # ------------------------------------------------------------------

    def install(self, chain: HashChain) -> None:
        """Replace the current chain and reset the pointer to unstarted."""
        with self._lock:
            self._set_chain(chain, constants.UNSTARTED_INDEX)
            self._persist()
            logger.info("chain_installed",
                        seeds=len(chain),
                        anchor=chain.anchor,
                        generation=self._generation)

    def archive(self) -> Optional[Path]:
        """Write a timestamped backup of the current chain, if any."""
        with self._lock:
            if self._chain is None or self.chain_path is None:
                return None
            timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
            backup_path = self.chain_path.with_name(
                f"{self.chain_path.stem}_backup_{timestamp}{self.chain_path.suffix or '.json'}"
            )
            self._write_json(backup_path, self._snapshot())
            logger.info("chain_archived", path=str(backup_path))
            return backup_path

    def _persist(self) -> None:
        if self.chain_path is None:
            return
        self._write_json(self.chain_path, self._snapshot())

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "seeds": list(self._chain.seeds) if self._chain else [],
            "current_index": self._current_index,
        }

    @staticmethod
    def _write_json(path: Path, data: Dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)

    def _set_chain(self, chain: HashChain, current_index: int) -> None:
        self._chain = chain
        self._index = chain.index_map()
        self._current_index = current_index
        self._generation += 1

    def _require_chain(self) -> HashChain:
        if self._chain is None:
            raise ChainNotLoaded("No hash chain installed")
        return self._chain
