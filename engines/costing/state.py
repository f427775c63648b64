"""
Costbook Costing Engine — Pair State
======================================
The mutable costing state of one (product_id, warehouse_id) pair.

A pair is owned by exactly one method at a time:
- FIFO             → LotLedger
- WEIGHTED_AVERAGE → BalanceAccumulator

Switching a product's method happens at a period boundary and
carries quantity and value across (convert); transactions recorded
under the old method keep their costs.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from threading import Lock
from typing import Dict, List, NamedTuple, Optional, Union

from engines.costing.balance_engine import Balance, BalanceAccumulator
from engines.costing.configuration import CostingMethod, CostingSettings
from engines.costing.lot_engine import LotLedger, LotLedgerSnapshot
from engines.costing.numeric import ZERO, quantize_cost


class PairKey(NamedTuple):
    product_id: str
    warehouse_id: str

    def __str__(self) -> str:
        return f"{self.product_id}@{self.warehouse_id}"


@dataclass(frozen=True)
class PairSnapshot:
    """Value copy of a PairState (rollback point / replay checkpoint)."""
    key: PairKey
    method: CostingMethod
    data: Union[LotLedgerSnapshot, Balance]


class PairState:
    """Costing state of one pair under its current method."""

    def __init__(self, key: PairKey, method: CostingMethod, settings: CostingSettings):
        self.key = key
        self.settings = settings
        self.method = method
        self.ledger: Optional[LotLedger] = None
        self.accumulator: Optional[BalanceAccumulator] = None
        if method == CostingMethod.FIFO:
            self.ledger = LotLedger(key.product_id, key.warehouse_id, settings.currency_places)
        else:
            self.accumulator = self._new_accumulator()

    def _new_accumulator(self) -> BalanceAccumulator:
        return BalanceAccumulator(
            self.key.product_id,
            self.key.warehouse_id,
            self.settings.currency_places,
            self.settings.cost_places,
        )

    # ── Queries ───────────────────────────────────────────────

    def quantity_on_hand(self) -> Decimal:
        if self.method == CostingMethod.FIFO:
            return self.ledger.total_quantity()
        return self.accumulator.quantity_on_hand

    def total_value(self) -> Decimal:
        if self.method == CostingMethod.FIFO:
            return self.ledger.total_value()
        return self.accumulator.total_value

    def unit_cost_estimate(self) -> Decimal:
        """Current per-unit carrying cost (average, or FIFO weighted)."""
        if self.method == CostingMethod.FIFO:
            return quantize_cost(self.ledger.weighted_average_cost(), self.settings.cost_places)
        return self.accumulator.average_cost

    # ── Snapshots ─────────────────────────────────────────────

    def snapshot(self) -> PairSnapshot:
        if self.method == CostingMethod.FIFO:
            return PairSnapshot(self.key, self.method, self.ledger.snapshot())
        return PairSnapshot(self.key, self.method, self.accumulator.snapshot())

    @classmethod
    def restore(cls, snapshot: PairSnapshot, settings: CostingSettings) -> "PairState":
        state = cls.__new__(cls)
        state.key = snapshot.key
        state.settings = settings
        state.method = snapshot.method
        state.ledger = None
        state.accumulator = None
        if snapshot.method == CostingMethod.FIFO:
            state.ledger = LotLedger.restore(snapshot.data)
        else:
            state.accumulator = BalanceAccumulator.restore(
                snapshot.data, settings.currency_places, settings.cost_places,
            )
        return state

    @classmethod
    def empty(cls, key: PairKey, method: CostingMethod, settings: CostingSettings) -> "PairState":
        return cls(key, method, settings)

    # ── Method changeover ─────────────────────────────────────

    def convert(self, method: CostingMethod, at: datetime, sequence: int) -> bool:
        """
        Carry quantity and value into a new method's state.

        FIFO → WEIGHTED_AVERAGE: one balance holding the ledger's
        quantity and value. WEIGHTED_AVERAGE → FIFO: one opening lot
        at the current average cost carrying the balance's exact
        value, or a deficit when the balance is negative.

        Returns False when already under method.
        """
        if method == self.method:
            return False

        quantity = self.quantity_on_hand()
        value = self.total_value()

        if method == CostingMethod.WEIGHTED_AVERAGE:
            acc = self._new_accumulator()
            if quantity != 0:
                acc.open_balance(quantity, value, at)
            self.accumulator = acc
            self.ledger = None
        else:
            ledger = LotLedger(self.key.product_id, self.key.warehouse_id, self.settings.currency_places)
            if quantity > 0:
                ledger.receive(
                    lot_id=f"OPEN-{self.key.product_id}-{self.key.warehouse_id}-{sequence:08d}",
                    quantity=quantity,
                    unit_cost=quantize_cost(value / quantity, self.settings.cost_places),
                    purchased_at=at,
                    creation_sequence=sequence,
                    created_at=at,
                    total_value=value,
                )
            elif quantity < 0:
                ledger.open_deficit(-quantity, -value)
            self.ledger = ledger
            self.accumulator = None

        self.method = method
        return True


# ══════════════════════════════════════════════════════════════
# STATE STORE (multi-product, multi-warehouse)
# ══════════════════════════════════════════════════════════════

class CostingStateStore:
    """
    Holds PairState for every pair seen so far.

    The store's own lock only guards the dictionary; mutation of a
    pair's state is serialized by the pair lock in the service.
    """

    def __init__(self, settings: CostingSettings):
        self._settings = settings
        self._states: Dict[PairKey, PairState] = {}
        self._lock = Lock()

    def get(self, key: PairKey) -> Optional[PairState]:
        with self._lock:
            return self._states.get(key)

    def get_or_create(self, key: PairKey, method: CostingMethod) -> PairState:
        with self._lock:
            state = self._states.get(key)
            if state is None:
                state = PairState.empty(key, method, self._settings)
                self._states[key] = state
            return state

    def put(self, state: PairState) -> None:
        with self._lock:
            self._states[state.key] = state

    def discard(self, key: PairKey) -> None:
        """Forget a pair created by an operation that was rolled back."""
        with self._lock:
            self._states.pop(key, None)

    def keys(self) -> List[PairKey]:
        with self._lock:
            return sorted(self._states)

    def total_value(self) -> Decimal:
        with self._lock:
            states = list(self._states.values())
        return sum((s.total_value() for s in states), ZERO)
