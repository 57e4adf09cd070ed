"""Ledger adapters: the contract surface the oracle reads and writes."""

from .base import Ledger, make_anchor_publisher

__all__ = ["Ledger", "make_anchor_publisher"]
