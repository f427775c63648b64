"""
Costbook Costing Engine — Persistence Boundary
================================================
The engine treats its store as transactional: every public operation
hands over ONE CommitBatch (transactions + resulting pair state) and
the store writes all of it or none of it.

Rules:
- commit() either succeeds completely or raises
- commit() is refused while replay is active on the thread
- Records are upserted, never deleted; ids in batch.inserted are
  refused when already stored

Implementations:
- InMemoryCostingRepository (tests / bootstrap)
- DjangoCostingRepository (engines.costing.persistence.django_store)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Dict, FrozenSet, List, Optional, Protocol, Tuple

from core.replay.context import is_replay_active
from core.replay.errors import ReplayIsolationError
from engines.costing.state import PairKey, PairSnapshot
from engines.costing.transactions import Transaction

logger = logging.getLogger("costbook.persistence")


@dataclass(frozen=True)
class CommitBatch:
    """
    Everything one operation changes, committed together.

    touched_lots names the FIFO lots the operation created or drew
    from. None means every lot of the listed pairs (after a replay
    or a method changeover).

    inserted names the transactions that must not exist yet; the
    store refuses the whole batch if one does.
    """

    transactions: Tuple[Transaction, ...] = ()
    states: Tuple[PairSnapshot, ...] = ()
    touched_lots: Optional[FrozenSet[str]] = None
    inserted: FrozenSet[str] = frozenset()


class CostingRepository(Protocol):
    def commit(self, batch: CommitBatch) -> None:
        """Write the batch atomically or raise."""
        ...  # pragma: no cover

    def load_transactions(self) -> List[Transaction]:
        """Every stored transaction, ordered by sequence."""
        ...  # pragma: no cover


def guard_replay_isolation() -> None:
    if is_replay_active():
        raise ReplayIsolationError()


# ══════════════════════════════════════════════════════════════
# IN-MEMORY REPOSITORY (for testing / bootstrap)
# ══════════════════════════════════════════════════════════════

class InMemoryCostingRepository:
    """
    Keeps committed copies in dictionaries.

    fail_next_commit() makes the next commit raise, to exercise the
    engine's rollback path.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._transactions: Dict[str, Transaction] = {}
        self._states: Dict[PairKey, PairSnapshot] = {}
        self._fail_with: Optional[Exception] = None
        self.commit_count = 0

    def fail_next_commit(self, exc: Optional[Exception] = None) -> None:
        self._fail_with = exc or RuntimeError("Simulated store failure.")

    def commit(self, batch: CommitBatch) -> None:
        guard_replay_isolation()
        with self._lock:
            if self._fail_with is not None:
                exc, self._fail_with = self._fail_with, None
                raise exc
            clash = batch.inserted.intersection(self._transactions)
            if clash:
                raise ValueError(f"Transactions already stored: {sorted(clash)}.")
            transactions = dict(self._transactions)
            states = dict(self._states)
            for tx in batch.transactions:
                transactions[tx.transaction_id] = tx
            for snapshot in batch.states:
                states[snapshot.key] = snapshot
            self._transactions = transactions
            self._states = states
            self.commit_count += 1
        logger.debug(
            f"Committed {len(batch.transactions)} transactions, "
            f"{len(batch.states)} pair states."
        )

    def load_transactions(self) -> List[Transaction]:
        with self._lock:
            return sorted(self._transactions.values(), key=lambda tx: tx.sequence)

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        with self._lock:
            return self._transactions.get(transaction_id)

    def get_state(self, key: PairKey) -> Optional[PairSnapshot]:
        with self._lock:
            return self._states.get(key)
