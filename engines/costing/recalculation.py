"""
Costbook Costing Engine — Recalculation (Replay)
==================================================
Re-derives cost history for one pair after a back-dated correction.

Replay doctrine:
- Start from the last checkpoint strictly before from_timestamp
  (or the empty genesis state)
- Re-apply every later transaction in (occurred_at, sequence) order,
  through the same strategy.apply() path as live movements, under
  the method recorded on each transaction
- Work on a scratch PairState; live state is never touched here
- Rewrite cost fields only; quantity and reference are never altered
- Any transaction that cannot be satisfied aborts the whole replay
  (ReplayDivergenceError); the caller commits all-or-nothing

Checkpoints are optimisation artifacts: always rebuildable from the
transaction log, invalidated by back-dated inserts and corrections.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from core.replay.context import ReplayContext
from engines.costing.configuration import CostingSettings
from engines.costing.errors import CostingError, ReplayDivergenceError
from engines.costing.state import PairKey, PairSnapshot, PairState
from engines.costing.strategies import strategy_for
from engines.costing.transactions import SortKey, Transaction

logger = logging.getLogger("costbook.replay")


# ══════════════════════════════════════════════════════════════
# CHECKPOINTS
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Checkpoint:
    """Pair state right after the transaction at sort key `at`."""
    key: PairKey
    at: SortKey
    snapshot: PairSnapshot


class CheckpointStore:
    """
    Ordered checkpoints per pair.

    Live operations call note_applied() after each commit; every
    `interval` in-order transactions a checkpoint is taken. A
    back-dated movement marks the pair stale from its timestamp:
    the live state then differs from canonical replay order, so no
    further live checkpoints are taken until a recalculation covers it.
    """

    def __init__(self, interval: int = 50) -> None:
        self._interval = interval
        self._lock = Lock()
        self._checkpoints: Dict[PairKey, List[Checkpoint]] = {}
        self._since_last: Dict[PairKey, int] = {}
        self._last_key: Dict[PairKey, SortKey] = {}
        self._stale_from: Dict[PairKey, datetime] = {}

    def note_applied(self, key: PairKey, at: SortKey, snapshot_fn: Callable[[], PairSnapshot]) -> bool:
        """
        Record that a live transaction was applied to the pair.

        Returns True when the transaction arrived out of order.
        """
        with self._lock:
            last = self._last_key.get(key)
            if last is not None and at < last:
                self._drop_after(key, at)
                stale = self._stale_from.get(key)
                if stale is None or at[0] < stale:
                    self._stale_from[key] = at[0]
                return True

            self._last_key[key] = at
            if key in self._stale_from:
                return False
            count = self._since_last.get(key, 0) + 1
            if count >= self._interval:
                self._insert(Checkpoint(key, at, snapshot_fn()))
                count = 0
            self._since_last[key] = count
            return False

    def latest_before(self, key: PairKey, timestamp: datetime) -> Optional[Checkpoint]:
        with self._lock:
            chain = self._checkpoints.get(key, [])
            for checkpoint in reversed(chain):
                if checkpoint.at[0] < timestamp:
                    return checkpoint
            return None

    def _drop_after(self, key: PairKey, at: SortKey) -> None:
        chain = self._checkpoints.get(key, [])
        self._checkpoints[key] = [c for c in chain if c.at < at]

    def _insert(self, checkpoint: Checkpoint) -> None:
        chain = self._checkpoints.setdefault(checkpoint.key, [])
        keys = [c.at for c in chain]
        index = bisect.bisect_left(keys, checkpoint.at)
        if index < len(chain) and chain[index].at == checkpoint.at:
            chain[index] = checkpoint
        else:
            chain.insert(index, checkpoint)

    def commit_replay(
        self,
        key: PairKey,
        from_timestamp: datetime,
        checkpoints: Sequence[Checkpoint],
        last_key: Optional[SortKey],
    ) -> None:
        """Install checkpoints produced by a committed replay."""
        with self._lock:
            chain = self._checkpoints.get(key, [])
            self._checkpoints[key] = [c for c in chain if c.at[0] < from_timestamp]
            for checkpoint in checkpoints:
                self._insert(checkpoint)
            stale = self._stale_from.get(key)
            if stale is not None and stale >= from_timestamp:
                del self._stale_from[key]
            if last_key is not None:
                self._last_key[key] = last_key
            self._since_last[key] = 0

    def mark_stale(self, key: PairKey, timestamp: datetime) -> None:
        """Flag a pair whose live costs differ from replay order."""
        with self._lock:
            stale = self._stale_from.get(key)
            if stale is None or timestamp < stale:
                self._stale_from[key] = timestamp
            chain = self._checkpoints.get(key, [])
            self._checkpoints[key] = [c for c in chain if c.at[0] < timestamp]

    def stale_from(self, key: PairKey) -> Optional[datetime]:
        with self._lock:
            return self._stale_from.get(key)

    def stale_pairs(self) -> Dict[PairKey, datetime]:
        with self._lock:
            return dict(self._stale_from)

    def checkpoints(self, key: PairKey) -> List[Checkpoint]:
        with self._lock:
            return list(self._checkpoints.get(key, []))


# ══════════════════════════════════════════════════════════════
# RECALCULATION RESULT
# ══════════════════════════════════════════════════════════════

@dataclass
class RecalculationResult:
    """Outcome of a replay, not yet committed."""

    key: PairKey
    from_timestamp: datetime
    started_after: Optional[SortKey]
    replayed: List[Transaction] = field(default_factory=list)
    changed: List[Transaction] = field(default_factory=list)
    checkpoints: List[Checkpoint] = field(default_factory=list)
    final_state: Optional[PairState] = None

    @property
    def transactions_replayed(self) -> int:
        return len(self.replayed)

    @property
    def transactions_changed(self) -> int:
        return len(self.changed)

    def changed_transfer_outs(self) -> List[Transaction]:
        return [
            tx for tx in self.changed
            if tx.transfer_id is not None and tx.quantity < 0
        ]


# ══════════════════════════════════════════════════════════════
# RECALCULATOR
# ══════════════════════════════════════════════════════════════

class Recalculator:
    """
    Deterministic re-execution over an explicit list of transactions.

    Pure with respect to engine state: it reads a checkpoint, builds
    a scratch PairState and returns the result. Committing (state
    swap, log rewrite, repository write) is the service's job.
    """

    def __init__(self, settings: CostingSettings, checkpoints: CheckpointStore):
        self._settings = settings
        self._checkpoints = checkpoints

    def replay(
        self,
        key: PairKey,
        from_timestamp: datetime,
        transactions: Sequence[Transaction],
        recalculated_at: datetime,
        fallback_state: Optional[PairState] = None,
    ) -> RecalculationResult:
        """
        Replay `transactions` (all of the pair's, in replay order, with
        any corrections already applied to their inputs).

        Raises ReplayDivergenceError on the first failing transaction.
        """
        checkpoint = self._checkpoints.latest_before(key, from_timestamp)
        started_after: Optional[Tuple] = checkpoint.at if checkpoint else None
        state = (
            PairState.restore(checkpoint.snapshot, self._settings)
            if checkpoint is not None
            else None
        )

        pending = [
            tx for tx in transactions
            if started_after is None or tx.sort_key > started_after
        ]
        allow_negative = self._settings.negative_stock_allowed(key.product_id)
        result = RecalculationResult(key=key, from_timestamp=from_timestamp, started_after=started_after)

        logger.info(
            f"Recalculating {key} from {from_timestamp.isoformat()}: "
            f"{len(pending)} transactions after "
            f"{'genesis' if started_after is None else started_after[0].isoformat()}."
        )

        with ReplayContext(scope=key):
            for position, tx in enumerate(pending, start=1):
                if state is None:
                    state = PairState.empty(key, tx.method, self._settings)
                elif state.method != tx.method:
                    state.convert(tx.method, at=tx.occurred_at, sequence=tx.sequence)

                try:
                    replayed = strategy_for(tx.method).apply(state, tx.movement(), allow_negative)
                except CostingError as exc:
                    logger.warning(
                        f"Recalculation of {key} diverged at {tx.transaction_id}: {exc}"
                    )
                    raise ReplayDivergenceError(tx.transaction_id, exc) from exc

                rewritten = tx.with_costs_from(replayed, recalculated_at)
                result.replayed.append(rewritten)
                if not tx.same_costs(rewritten):
                    result.changed.append(rewritten)

                if position % self._settings.checkpoint_interval == 0:
                    result.checkpoints.append(Checkpoint(key, tx.sort_key, state.snapshot()))

        if state is None:
            state = fallback_state
        result.final_state = state
        return result
