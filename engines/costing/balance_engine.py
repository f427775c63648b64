"""
Costbook Balance Engine — Weighted Average Accumulator
========================================================
One BalanceAccumulator per (product_id, warehouse_id) pair.

RULES (NON-NEGOTIABLE):
- O(1) per operation: quantity, average cost, total value only
- Average cost is recomputed on quantity-increasing events only
- Issues never touch the average; quantity and total value drop
  by exactly the cost charged
- Total value is maintained incrementally, never re-derived as
  quantity × rounded average
- Resulting quantity ≤ 0 after a receipt → average = incoming cost
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from engines.costing.errors import InsufficientStockError
from engines.costing.numeric import (
    DEFAULT_AVERAGE_COST_EXTRA_PLACES,
    DEFAULT_CURRENCY_PLACES,
    ZERO,
    line_cost,
    quantize_cost,
    quantize_money,
)


@dataclass(frozen=True)
class Balance:
    """Immutable view of a weighted-average balance."""

    product_id: str
    warehouse_id: str
    quantity_on_hand: Decimal
    average_cost: Decimal
    total_value: Decimal
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "warehouse_id": self.warehouse_id,
            "quantity_on_hand": str(self.quantity_on_hand),
            "average_cost": str(self.average_cost),
            "total_value": str(self.total_value),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class BalanceMovement:
    """Cost effect of one accumulator mutation."""
    quantity: Decimal
    unit_cost: Decimal
    total_cost: Decimal


class BalanceAccumulator:
    """
    Running weighted-average balance for a single pair.

    Created lazily with quantity 0, average 0; never deleted.
    """

    def __init__(
        self,
        product_id: str,
        warehouse_id: str,
        currency_places: int = DEFAULT_CURRENCY_PLACES,
        cost_places: int = DEFAULT_CURRENCY_PLACES + DEFAULT_AVERAGE_COST_EXTRA_PLACES,
    ):
        self.product_id = product_id
        self.warehouse_id = warehouse_id
        self.currency_places = currency_places
        self.cost_places = cost_places
        self._quantity: Decimal = ZERO
        self._average_cost: Decimal = ZERO
        self._total_value: Decimal = ZERO
        self._updated_at: Optional[datetime] = None

    def receive(
        self,
        quantity: Decimal,
        unit_cost: Decimal,
        at: datetime,
        total_cost: Optional[Decimal] = None,
    ) -> BalanceMovement:
        """
        Add stock and recompute the average.

        total_cost overrides quantity × unit_cost when the value arriving
        is already known exactly (transfer-in of consumed cost).
        """
        if quantity <= 0:
            raise ValueError(f"Receive quantity must be positive, got {quantity}.")
        if unit_cost < 0:
            raise ValueError(f"unit_cost cannot be negative, got {unit_cost}.")

        value_in = (
            quantize_money(total_cost, self.currency_places)
            if total_cost is not None
            else line_cost(quantity, unit_cost, self.currency_places)
        )
        new_quantity = self._quantity + quantity
        new_value = self._total_value + value_in

        if new_quantity <= 0:
            new_average = quantize_cost(unit_cost, self.cost_places)
        else:
            new_average = quantize_cost(new_value / new_quantity, self.cost_places)

        self._quantity = new_quantity
        self._total_value = new_value
        self._average_cost = new_average
        self._updated_at = at
        return BalanceMovement(quantity=quantity, unit_cost=unit_cost, total_cost=value_in)

    def issue(self, quantity: Decimal, at: datetime, allow_negative: bool = False) -> BalanceMovement:
        """
        Remove stock at the current average.

        Raises InsufficientStockError (balance untouched) when short
        and allow_negative is False.
        """
        if quantity <= 0:
            raise ValueError(f"Issue quantity must be positive, got {quantity}.")
        if self._quantity < quantity and not allow_negative:
            raise InsufficientStockError(
                self.product_id, self.warehouse_id, self._quantity, quantity,
            )

        cost = line_cost(quantity, self._average_cost, self.currency_places)
        self._quantity -= quantity
        self._total_value -= cost
        self._updated_at = at
        return BalanceMovement(quantity=quantity, unit_cost=self._average_cost, total_cost=cost)

    def open_balance(self, quantity: Decimal, total_value: Decimal, at: datetime) -> None:
        """Seed an empty balance carried over from another method."""
        if self._quantity != 0 or self._total_value != 0:
            raise ValueError("Opening balance requires an empty accumulator.")
        self._quantity = quantity
        self._total_value = quantize_money(total_value, self.currency_places)
        self._average_cost = (
            quantize_cost(total_value / quantity, self.cost_places) if quantity != 0 else ZERO
        )
        self._updated_at = at

    # ── Queries ───────────────────────────────────────────────

    @property
    def quantity_on_hand(self) -> Decimal:
        return self._quantity

    @property
    def average_cost(self) -> Decimal:
        return self._average_cost

    @property
    def total_value(self) -> Decimal:
        return self._total_value

    def balance(self) -> Balance:
        return Balance(
            product_id=self.product_id,
            warehouse_id=self.warehouse_id,
            quantity_on_hand=self._quantity,
            average_cost=self._average_cost,
            total_value=self._total_value,
            updated_at=self._updated_at,
        )

    # ── Snapshots ─────────────────────────────────────────────

    def snapshot(self) -> Balance:
        return self.balance()

    @classmethod
    def restore(
        cls,
        snapshot: Balance,
        currency_places: int = DEFAULT_CURRENCY_PLACES,
        cost_places: int = DEFAULT_CURRENCY_PLACES + DEFAULT_AVERAGE_COST_EXTRA_PLACES,
    ) -> "BalanceAccumulator":
        acc = cls(snapshot.product_id, snapshot.warehouse_id, currency_places, cost_places)
        acc._quantity = snapshot.quantity_on_hand
        acc._average_cost = snapshot.average_cost
        acc._total_value = snapshot.total_value
        acc._updated_at = snapshot.updated_at
        return acc
