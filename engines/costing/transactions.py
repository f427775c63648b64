"""
Costbook Costing Engine — Transactions and Transaction Log
============================================================
Every inventory movement becomes exactly one Transaction.

RULES (NON-NEGOTIABLE):
- Transactions are frozen; the log replaces records, never mutates them
- quantity, reference, type and occurred_at never change after write
- Only recalculation rewrites cost fields (replace_costs)
- Only an explicit correction rewrites inputs (apply_correction),
  and it bumps the revision
- Nothing is ever deleted
- Replay order is (occurred_at, sequence); sequence is a global
  monotonic creation counter

quantity is the signed change to on-hand stock: positive for
receipts, transfer-ins, customer returns and positive adjustments;
negative for issues, transfer-outs, supplier returns and negative
adjustments. total_cost is always the non-negative magnitude.
"""

from __future__ import annotations

import bisect
import itertools
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from threading import Lock
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from engines.costing.configuration import CostingMethod
from engines.costing.lot_engine import ConsumedLot
from engines.costing.numeric import ZERO


# ══════════════════════════════════════════════════════════════
# ENUMS
# ══════════════════════════════════════════════════════════════

class TransactionType(Enum):
    RECEIVE = "RECEIVE"             # purchase / production receipt
    ISSUE = "ISSUE"                 # sale / consumption (COGS)
    ADJUST = "ADJUST"               # count correction, damage, found stock
    TRANSFER_OUT = "TRANSFER_OUT"   # source half of a transfer
    TRANSFER_IN = "TRANSFER_IN"     # destination half of a transfer
    RETURN_IN = "RETURN_IN"         # customer return (stock back in)
    RETURN_OUT = "RETURN_OUT"       # return to supplier

    @property
    def is_inbound(self) -> bool:
        return self in _INBOUND_TYPES

    @property
    def is_outbound(self) -> bool:
        return self in _OUTBOUND_TYPES


_INBOUND_TYPES = frozenset({
    TransactionType.RECEIVE,
    TransactionType.TRANSFER_IN,
    TransactionType.RETURN_IN,
})
_OUTBOUND_TYPES = frozenset({
    TransactionType.ISSUE,
    TransactionType.TRANSFER_OUT,
    TransactionType.RETURN_OUT,
})

SortKey = Tuple[datetime, int]


# ══════════════════════════════════════════════════════════════
# MOVEMENT (input record)
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Movement:
    """
    The inputs of one movement, as recorded (or as corrected).

    unit_cost is the caller-supplied cost: required for receipts,
    optional for positive adjustments and returns, None for issues.
    """

    transaction_id: str
    sequence: int
    product_id: str
    warehouse_id: str
    transaction_type: TransactionType
    quantity: Decimal
    unit_cost: Optional[Decimal]
    reference: str
    occurred_at: datetime
    created_at: datetime
    actor_id: Optional[str] = None
    transfer_id: Optional[str] = None
    total_cost: Optional[Decimal] = None    # exact inbound value (transfer-in)

    @property
    def sort_key(self) -> SortKey:
        return (self.occurred_at, self.sequence)

    @property
    def magnitude(self) -> Decimal:
        return abs(self.quantity)


# ══════════════════════════════════════════════════════════════
# TRANSACTION (costed record)
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Transaction:
    """Immutable record of one movement and its resolved cost."""

    # ── inputs ────────────────────────────────────────────────
    transaction_id: str
    sequence: int
    product_id: str
    warehouse_id: str
    transaction_type: TransactionType
    quantity: Decimal
    input_unit_cost: Optional[Decimal]
    input_total_cost: Optional[Decimal]
    reference: str
    occurred_at: datetime
    created_at: datetime
    actor_id: Optional[str]
    transfer_id: Optional[str]

    # ── resolved cost ─────────────────────────────────────────
    method: CostingMethod
    unit_cost: Decimal
    total_cost: Decimal
    consumed_lots: Tuple[ConsumedLot, ...] = ()
    created_lot_id: Optional[str] = None
    quantity_after: Decimal = ZERO
    value_after: Decimal = ZERO

    # ── history ───────────────────────────────────────────────
    revision: int = 0
    recalculated_at: Optional[datetime] = None

    @classmethod
    def from_movement(
        cls,
        movement: Movement,
        *,
        method: CostingMethod,
        unit_cost: Decimal,
        total_cost: Decimal,
        quantity_after: Decimal,
        value_after: Decimal,
        consumed_lots: Sequence[ConsumedLot] = (),
        created_lot_id: Optional[str] = None,
    ) -> "Transaction":
        return cls(
            transaction_id=movement.transaction_id,
            sequence=movement.sequence,
            product_id=movement.product_id,
            warehouse_id=movement.warehouse_id,
            transaction_type=movement.transaction_type,
            quantity=movement.quantity,
            input_unit_cost=movement.unit_cost,
            input_total_cost=movement.total_cost,
            reference=movement.reference,
            occurred_at=movement.occurred_at,
            created_at=movement.created_at,
            actor_id=movement.actor_id,
            transfer_id=movement.transfer_id,
            method=method,
            unit_cost=unit_cost,
            total_cost=total_cost,
            consumed_lots=tuple(consumed_lots),
            created_lot_id=created_lot_id,
            quantity_after=quantity_after,
            value_after=value_after,
        )

    def movement(self) -> Movement:
        return Movement(
            transaction_id=self.transaction_id,
            sequence=self.sequence,
            product_id=self.product_id,
            warehouse_id=self.warehouse_id,
            transaction_type=self.transaction_type,
            quantity=self.quantity,
            unit_cost=self.input_unit_cost,
            reference=self.reference,
            occurred_at=self.occurred_at,
            created_at=self.created_at,
            actor_id=self.actor_id,
            transfer_id=self.transfer_id,
            total_cost=self.input_total_cost,
        )

    @property
    def sort_key(self) -> SortKey:
        return (self.occurred_at, self.sequence)

    @property
    def pair(self) -> Tuple[str, str]:
        return (self.product_id, self.warehouse_id)

    @property
    def direction(self) -> int:
        return 1 if self.quantity > 0 else -1

    def same_costs(self, other: "Transaction") -> bool:
        return (
            self.unit_cost == other.unit_cost
            and self.total_cost == other.total_cost
            and self.consumed_lots == other.consumed_lots
            and self.quantity_after == other.quantity_after
            and self.value_after == other.value_after
        )

    def with_costs_from(self, replayed: "Transaction", at: datetime) -> "Transaction":
        """Copy the cost fields of a replayed twin onto this record."""
        return replace(
            self,
            method=replayed.method,
            unit_cost=replayed.unit_cost,
            total_cost=replayed.total_cost,
            consumed_lots=replayed.consumed_lots,
            created_lot_id=replayed.created_lot_id,
            quantity_after=replayed.quantity_after,
            value_after=replayed.value_after,
            recalculated_at=at,
        )

    def to_dict(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "sequence": self.sequence,
            "product_id": self.product_id,
            "warehouse_id": self.warehouse_id,
            "transaction_type": self.transaction_type.value,
            "quantity": str(self.quantity),
            "input_unit_cost": None if self.input_unit_cost is None else str(self.input_unit_cost),
            "reference": self.reference,
            "occurred_at": self.occurred_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "actor_id": self.actor_id,
            "transfer_id": self.transfer_id,
            "method": self.method.value,
            "unit_cost": str(self.unit_cost),
            "total_cost": str(self.total_cost),
            "consumed_lots": [c.to_dict() for c in self.consumed_lots],
            "quantity_after": str(self.quantity_after),
            "value_after": str(self.value_after),
            "revision": self.revision,
        }


_IMMUTABLE_FIELDS = (
    "product_id",
    "warehouse_id",
    "transaction_type",
    "quantity",
    "input_unit_cost",
    "input_total_cost",
    "reference",
    "occurred_at",
    "sequence",
    "revision",
)


# ══════════════════════════════════════════════════════════════
# TRANSACTION LOG (append-only arena)
# ══════════════════════════════════════════════════════════════

class TransactionLog:
    """
    Append-only, time-ordered record of every movement.

    In-memory arena; the repository is the durable copy.
    Thread-safe.
    """

    def __init__(self, start_sequence: int = 0) -> None:
        self._lock = Lock()
        self._counter = itertools.count(start_sequence + 1)
        self._records: Dict[str, Transaction] = {}
        self._by_pair: Dict[Tuple[str, str], List[Tuple[SortKey, str]]] = {}
        self._reserved: Set[str] = set()

    def next_sequence(self) -> int:
        with self._lock:
            return next(self._counter)

    def advance_sequence(self, floor: int) -> None:
        """Make sure future sequences are above floor (after hydration)."""
        with self._lock:
            current = next(self._counter)
            self._counter = itertools.count(max(current, floor + 1))

    # ── Writes ────────────────────────────────────────────────

    def reserve(self, transaction_id: str) -> None:
        """
        Claim an id for an operation still in flight. Raises
        ValueError when the id is recorded or already claimed.
        """
        with self._lock:
            if transaction_id in self._records or transaction_id in self._reserved:
                raise ValueError(f"Transaction {transaction_id} already recorded.")
            self._reserved.add(transaction_id)

    def release(self, transaction_id: str) -> None:
        """Drop an unused claim. No-op once the id is appended."""
        with self._lock:
            self._reserved.discard(transaction_id)

    def append(self, tx: Transaction) -> None:
        with self._lock:
            if tx.transaction_id in self._records:
                raise ValueError(f"Transaction {tx.transaction_id} already recorded.")
            self._reserved.discard(tx.transaction_id)
            self._records[tx.transaction_id] = tx
            index = self._by_pair.setdefault(tx.pair, [])
            bisect.insort(index, (tx.sort_key, tx.transaction_id))

    def replace_costs(self, tx: Transaction) -> None:
        """Overwrite the cost fields of an existing record."""
        with self._lock:
            current = self._require(tx.transaction_id)
            for name in _IMMUTABLE_FIELDS:
                if getattr(current, name) != getattr(tx, name):
                    raise ValueError(
                        f"Recalculation may not change {name} of "
                        f"transaction {tx.transaction_id}."
                    )
            self._records[tx.transaction_id] = tx

    def apply_correction(self, tx: Transaction) -> None:
        """Store a corrected revision (inputs and costs both rewritten)."""
        with self._lock:
            current = self._require(tx.transaction_id)
            if tx.revision != current.revision + 1:
                raise ValueError(
                    f"Correction of {tx.transaction_id} must be revision "
                    f"{current.revision + 1}, got {tx.revision}."
                )
            for name in ("product_id", "warehouse_id", "transaction_type",
                         "reference", "occurred_at", "sequence"):
                if getattr(current, name) != getattr(tx, name):
                    raise ValueError(f"A correction may not change {name}.")
            self._records[tx.transaction_id] = tx

    def _require(self, transaction_id: str) -> Transaction:
        try:
            return self._records[transaction_id]
        except KeyError:
            raise KeyError(f"Unknown transaction {transaction_id}.") from None

    # ── Reads ─────────────────────────────────────────────────

    def get(self, transaction_id: str) -> Optional[Transaction]:
        with self._lock:
            return self._records.get(transaction_id)

    def for_pair(self, product_id: str, warehouse_id: str) -> List[Transaction]:
        """All transactions of a pair in replay order."""
        with self._lock:
            index = self._by_pair.get((product_id, warehouse_id), [])
            return [self._records[tx_id] for _, tx_id in index]

    def last_key(self, product_id: str, warehouse_id: str) -> Optional[SortKey]:
        with self._lock:
            index = self._by_pair.get((product_id, warehouse_id))
            return index[-1][0] if index else None

    def by_transfer(self, transfer_id: str) -> List[Transaction]:
        with self._lock:
            return sorted(
                (tx for tx in self._records.values() if tx.transfer_id == transfer_id),
                key=lambda tx: tx.sequence,
            )

    def all(self) -> List[Transaction]:
        with self._lock:
            return sorted(self._records.values(), key=lambda tx: tx.sequence)

    def pairs(self) -> List[Tuple[str, str]]:
        with self._lock:
            return sorted(self._by_pair)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def cogs(
        self,
        product_id: str,
        warehouse_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        types: Iterable[TransactionType] = (TransactionType.ISSUE,),
    ) -> Decimal:
        """
        Cost of goods sold for a product over [start, end).

        Sums total_cost of issue transactions by default; pass types
        to include supplier returns or transfers.
        """
        wanted = frozenset(types)
        with self._lock:
            records = list(self._records.values())
        total = ZERO
        for tx in records:
            if tx.product_id != product_id or tx.transaction_type not in wanted:
                continue
            if warehouse_id is not None and tx.warehouse_id != warehouse_id:
                continue
            if start is not None and tx.occurred_at < start:
                continue
            if end is not None and tx.occurred_at >= end:
                continue
            total += tx.total_cost
        return total
