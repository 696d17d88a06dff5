"""Transactional store — path mapping, indexes, provenance, transactions."""

from gitstate.store.index import IndexEntry, IndexMaintainer, IndexReport
from gitstate.store.provenance import ProvenanceDetector, SourceInfo
from gitstate.store.transaction import Transaction, TransactionEngine, TransactionState

__all__ = [
    "IndexEntry",
    "IndexMaintainer",
    "IndexReport",
    "ProvenanceDetector",
    "SourceInfo",
    "Transaction",
    "TransactionEngine",
    "TransactionState",
]
