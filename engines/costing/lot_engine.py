"""
Costbook Lot Engine — FIFO Lot Ledger
=======================================
One LotLedger per (product_id, warehouse_id) pair.

RULES (NON-NEGOTIABLE):
- All arithmetic is Decimal (no floats)
- Consumption order is (purchased_at, creation_sequence) ascending;
  creation_sequence only breaks purchase-timestamp ties
- A lot's unit_cost never changes after creation
- A lot carries its remaining value at money precision; the last
  unit taken from a lot takes whatever value is left, so value
  in equals value out exactly
- quantity_remaining never exceeds quantity_original
- Lots with 0 remaining are retained (audit / aging) but skipped
- A consume that cannot be satisfied and may not go negative
  leaves the ledger untouched

Negative stock (when permitted) is carried as a deficit: the
unfulfilled quantity, costed at the most recent lot's unit cost.
The next receipt covers the deficit before it adds remaining stock.
"""

from __future__ import annotations

import bisect
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from engines.costing.errors import InsufficientStockError
from engines.costing.numeric import ZERO, DEFAULT_CURRENCY_PLACES, line_cost, quantize_money


# ══════════════════════════════════════════════════════════════
# DATA STRUCTURES
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Lot:
    """
    A purchased batch not yet fully consumed.

    Frozen: the ledger replaces a lot when its remaining
    quantity changes, so snapshots can share lot objects.
    """

    lot_id: str
    product_id: str
    warehouse_id: str
    purchased_at: datetime
    quantity_original: Decimal
    quantity_remaining: Decimal
    unit_cost: Decimal
    creation_sequence: int
    created_at: datetime
    source_transaction_id: Optional[str] = None
    value_remaining: Optional[Decimal] = None

    @property
    def order_key(self) -> Tuple[datetime, int]:
        return (self.purchased_at, self.creation_sequence)

    @property
    def is_exhausted(self) -> bool:
        return self.quantity_remaining <= 0

    @property
    def current_value(self) -> Decimal:
        """Carried value of remaining stock in this lot."""
        if self.value_remaining is not None:
            return self.value_remaining
        return self.quantity_remaining * self.unit_cost

    def to_dict(self) -> dict:
        return {
            "lot_id": self.lot_id,
            "product_id": self.product_id,
            "warehouse_id": self.warehouse_id,
            "purchased_at": self.purchased_at.isoformat(),
            "quantity_original": str(self.quantity_original),
            "quantity_remaining": str(self.quantity_remaining),
            "unit_cost": str(self.unit_cost),
            "creation_sequence": self.creation_sequence,
            "created_at": self.created_at.isoformat(),
            "source_transaction_id": self.source_transaction_id,
            "value_remaining": None if self.value_remaining is None else str(self.value_remaining),
        }


@dataclass(frozen=True)
class ConsumedLot:
    """Record of stock consumed from a specific lot."""
    lot_id: Optional[str]       # None for the negative-stock deficit portion
    quantity_consumed: Decimal
    unit_cost: Decimal
    total_cost: Decimal         # money precision; a lot's last units take its leftover value

    def to_dict(self) -> dict:
        return {
            "lot_id": self.lot_id,
            "quantity_consumed": str(self.quantity_consumed),
            "unit_cost": str(self.unit_cost),
            "total_cost": str(self.total_cost),
        }


@dataclass(frozen=True)
class LotConsumptionResult:
    """Result of a consumption against a lot ledger."""
    consumed: Tuple[ConsumedLot, ...]
    total_cost: Decimal
    quantity_consumed: Decimal      # from real lots
    quantity_unfulfilled: Decimal   # carried as deficit (0 = fully fulfilled)

    @property
    def fully_fulfilled(self) -> bool:
        return self.quantity_unfulfilled == 0

    @property
    def quantity_total(self) -> Decimal:
        return self.quantity_consumed + self.quantity_unfulfilled

    @property
    def cost_per_unit(self) -> Decimal:
        """Unrounded weighted cost of the units consumed."""
        if self.quantity_total == 0:
            return ZERO
        return self.total_cost / self.quantity_total


@dataclass(frozen=True)
class LotLedgerSnapshot:
    """Value copy of a ledger, used for rollback and replay checkpoints."""
    product_id: str
    warehouse_id: str
    lots: Tuple[Lot, ...]
    deficit_quantity: Decimal
    deficit_value: Decimal
    currency_places: int


# ══════════════════════════════════════════════════════════════
# LOT LEDGER
# ══════════════════════════════════════════════════════════════

class LotLedger:
    """
    Manages cost lots for a single (product_id, warehouse_id) pair.

    _lots is kept sorted by order_key; a back-dated receipt is
    inserted in place rather than appended.
    """

    def __init__(
        self,
        product_id: str,
        warehouse_id: str,
        currency_places: int = DEFAULT_CURRENCY_PLACES,
    ):
        self.product_id = product_id
        self.warehouse_id = warehouse_id
        self.currency_places = currency_places
        self._lots: List[Lot] = []
        self._keys: List[Tuple[datetime, int]] = []
        self._deficit_quantity: Decimal = ZERO
        self._deficit_value: Decimal = ZERO

    # ── Mutations ─────────────────────────────────────────────

    def receive(
        self,
        lot_id: str,
        quantity: Decimal,
        unit_cost: Decimal,
        purchased_at: datetime,
        creation_sequence: int,
        created_at: datetime,
        source_transaction_id: Optional[str] = None,
        total_value: Optional[Decimal] = None,
    ) -> Lot:
        """
        Add a new lot to the ledger. Returns the stored lot.

        total_value is the lot's exact value when it differs from
        quantity × unit_cost at money precision (transfer-ins and
        opening lots, whose unit_cost is a rounded quotient).
        """
        if quantity <= 0:
            raise ValueError(f"Lot quantity must be positive, got {quantity}.")
        if unit_cost < 0:
            raise ValueError(f"unit_cost cannot be negative, got {unit_cost}.")
        if total_value is None:
            total_value = line_cost(quantity, unit_cost, self.currency_places)
        elif total_value < 0:
            raise ValueError(f"total_value cannot be negative, got {total_value}.")

        remaining = quantity
        value = total_value
        if self._deficit_quantity > 0:
            covered = min(self._deficit_quantity, quantity)
            self._cover_deficit(covered)
            remaining = quantity - covered
            if remaining == 0:
                value = ZERO
            else:
                covered_value = line_cost(covered, unit_cost, self.currency_places)
                value = total_value - min(covered_value, total_value)

        lot = Lot(
            lot_id=lot_id,
            product_id=self.product_id,
            warehouse_id=self.warehouse_id,
            purchased_at=purchased_at,
            quantity_original=quantity,
            quantity_remaining=remaining,
            unit_cost=unit_cost,
            creation_sequence=creation_sequence,
            created_at=created_at,
            source_transaction_id=source_transaction_id,
            value_remaining=value,
        )
        index = bisect.bisect_right(self._keys, lot.order_key)
        self._keys.insert(index, lot.order_key)
        self._lots.insert(index, lot)
        return lot

    def consume(self, quantity: Decimal, allow_negative: bool = False) -> LotConsumptionResult:
        """
        Consume stock oldest-first.

        Raises InsufficientStockError (ledger untouched) when short
        and allow_negative is False.
        """
        if quantity <= 0:
            raise ValueError(f"Consume quantity must be positive, got {quantity}.")

        available = self.available_quantity()
        if available < quantity and not allow_negative:
            raise InsufficientStockError(
                self.product_id, self.warehouse_id, self.total_quantity(), quantity,
            )

        remaining = quantity
        consumed: List[ConsumedLot] = []

        for idx, lot in enumerate(self._lots):
            if remaining <= 0:
                break
            if lot.quantity_remaining <= 0:
                continue

            take = min(lot.quantity_remaining, remaining)
            carried = lot.current_value
            if take == lot.quantity_remaining:
                cost = carried
            else:
                cost = min(line_cost(take, lot.unit_cost, self.currency_places), carried)
            self._lots[idx] = replace(
                lot,
                quantity_remaining=lot.quantity_remaining - take,
                value_remaining=carried - cost,
            )
            remaining -= take

            consumed.append(ConsumedLot(
                lot_id=lot.lot_id,
                quantity_consumed=take,
                unit_cost=lot.unit_cost,
                total_cost=cost,
            ))

        if remaining > 0:
            deficit_cost = self.fallback_unit_cost()
            deficit_total = line_cost(remaining, deficit_cost, self.currency_places)
            self._deficit_quantity += remaining
            self._deficit_value += deficit_total
            consumed.append(ConsumedLot(
                lot_id=None,
                quantity_consumed=remaining,
                unit_cost=deficit_cost,
                total_cost=deficit_total,
            ))

        return LotConsumptionResult(
            consumed=tuple(consumed),
            total_cost=sum((c.total_cost for c in consumed), ZERO),
            quantity_consumed=quantity - remaining,
            quantity_unfulfilled=remaining,
        )

    def _cover_deficit(self, quantity: Decimal) -> None:
        if quantity == self._deficit_quantity:
            self._deficit_quantity = ZERO
            self._deficit_value = ZERO
            return
        share = quantize_money(
            self._deficit_value * quantity / self._deficit_quantity,
            self.currency_places,
        )
        self._deficit_quantity -= quantity
        self._deficit_value -= share

    def open_deficit(self, quantity: Decimal, value: Decimal) -> None:
        """Start an empty ledger short by quantity; total_value() becomes -value."""
        if self._lots or self._deficit_quantity:
            raise ValueError("open_deficit() requires an empty ledger.")
        if quantity <= 0:
            raise ValueError(f"Deficit quantity must be positive, got {quantity}.")
        self._deficit_quantity = quantity
        self._deficit_value = quantize_money(value, self.currency_places)

    # ── Queries ───────────────────────────────────────────────

    def available_quantity(self) -> Decimal:
        """Quantity held in lots (never negative)."""
        return sum((lot.quantity_remaining for lot in self._lots), ZERO)

    def total_quantity(self) -> Decimal:
        """On-hand quantity: lot stock minus any negative-stock deficit."""
        return self.available_quantity() - self._deficit_quantity

    def total_value(self) -> Decimal:
        """Carried value of live lots, less the deficit value."""
        gross = sum(
            (lot.current_value for lot in self._lots if lot.quantity_remaining > 0),
            ZERO,
        )
        return quantize_money(gross, self.currency_places) - self._deficit_value

    def weighted_average_cost(self) -> Decimal:
        """Unrounded value / quantity of live lots; 0 if no stock."""
        qty = self.available_quantity()
        if qty == 0:
            return ZERO
        gross = sum(
            (lot.current_value for lot in self._lots if lot.quantity_remaining > 0),
            ZERO,
        )
        return gross / qty

    def fallback_unit_cost(self) -> Decimal:
        """Cost used for units issued beyond stock: the newest lot's cost."""
        if not self._lots:
            return ZERO
        return self._lots[-1].unit_cost

    @property
    def deficit_quantity(self) -> Decimal:
        return self._deficit_quantity

    @property
    def deficit_value(self) -> Decimal:
        return self._deficit_value

    def lots(self) -> List[Lot]:
        """All lots (including exhausted ones) in consumption order."""
        return list(self._lots)

    def active_lots(self) -> List[Lot]:
        return [lot for lot in self._lots if not lot.is_exhausted]

    @property
    def lot_count(self) -> int:
        return len(self._lots)

    # ── Snapshots ─────────────────────────────────────────────

    def snapshot(self) -> LotLedgerSnapshot:
        return LotLedgerSnapshot(
            product_id=self.product_id,
            warehouse_id=self.warehouse_id,
            lots=tuple(self._lots),
            deficit_quantity=self._deficit_quantity,
            deficit_value=self._deficit_value,
            currency_places=self.currency_places,
        )

    @classmethod
    def restore(cls, snapshot: LotLedgerSnapshot) -> "LotLedger":
        ledger = cls(snapshot.product_id, snapshot.warehouse_id, snapshot.currency_places)
        ledger._lots = list(snapshot.lots)
        ledger._keys = [lot.order_key for lot in snapshot.lots]
        ledger._deficit_quantity = snapshot.deficit_quantity
        ledger._deficit_value = snapshot.deficit_value
        return ledger
