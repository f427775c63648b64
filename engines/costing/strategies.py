"""
Costbook Costing Engine — Costing Strategies
==============================================
Closed set of exactly two strategies:

    FIFO             → FifoStrategy            (LotLedger)
    WEIGHTED_AVERAGE → WeightedAverageStrategy (BalanceAccumulator)

Strategies hold no state of their own. They mutate the PairState
they are handed and return the costed Transaction. The same apply()
path serves live operations and recalculation replay, so a replayed
movement is costed exactly like the original.

Errors raised here (InsufficientStockError, InvalidQuantityError,
InvalidCostError) are caught by the service, which rolls back and
returns a rejection.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, final

from engines.costing.configuration import CostingMethod
from engines.costing.errors import InvalidCostError, InvalidQuantityError
from engines.costing.numeric import ZERO, line_cost, quantize_cost
from engines.costing.state import PairState
from engines.costing.transactions import Movement, Transaction, TransactionType


class CostingStrategy(ABC):
    """Contract shared by the two costing methods."""

    method: CostingMethod

    # ── Dispatch ──────────────────────────────────────────────

    def apply(self, state: PairState, movement: Movement, allow_negative: bool) -> Transaction:
        """Cost one movement against state, by movement type."""
        self._check_state(state)
        kind = movement.transaction_type
        if kind == TransactionType.ADJUST:
            return self.adjust(state, movement, allow_negative)
        if kind.is_inbound:
            return self.receive(state, movement)
        return self.issue(state, movement, allow_negative)

    def adjust(self, state: PairState, movement: Movement, allow_negative: bool) -> Transaction:
        """
        Signed adjustment.

        Positive behaves like a receipt (at the given cost, else the
        current carrying cost); negative behaves like an issue.
        """
        if movement.quantity == 0:
            raise InvalidQuantityError(
                "Adjustment quantity must be non-zero.",
                details={"quantity": movement.quantity},
            )
        if movement.quantity > 0:
            return self.receive(state, movement)
        return self.issue(state, movement, allow_negative)

    @abstractmethod
    def receive(self, state: PairState, movement: Movement) -> Transaction:
        ...

    @abstractmethod
    def issue(self, state: PairState, movement: Movement, allow_negative: bool) -> Transaction:
        ...

    @abstractmethod
    def valuation(self, state: PairState) -> Decimal:
        ...

    # ── Shared checks ─────────────────────────────────────────

    def _check_state(self, state: PairState) -> None:
        if state.method != self.method:
            raise TypeError(
                f"{type(self).__name__} cannot cost pair {state.key} "
                f"held under {state.method.value}."
            )

    @staticmethod
    def _inbound_quantity(movement: Movement) -> Decimal:
        if movement.quantity <= 0:
            raise InvalidQuantityError(
                f"{movement.transaction_type.value} quantity must be positive, "
                f"got {movement.quantity}.",
                details={"quantity": movement.quantity},
            )
        return movement.quantity

    @staticmethod
    def _outbound_quantity(movement: Movement) -> Decimal:
        if movement.quantity >= 0:
            raise InvalidQuantityError(
                f"{movement.transaction_type.value} must remove a positive "
                f"quantity, got {-movement.quantity}.",
                details={"quantity": -movement.quantity},
            )
        return -movement.quantity

    def _inbound_unit_cost(self, state: PairState, movement: Movement) -> Decimal:
        """Given cost, else the pair's carrying cost (returns, found stock)."""
        if movement.unit_cost is None:
            if movement.transaction_type == TransactionType.RECEIVE:
                raise InvalidCostError("A receipt requires a unit cost.")
            return self._carrying_cost(state)
        if movement.unit_cost < 0:
            raise InvalidCostError(
                f"unit_cost cannot be negative, got {movement.unit_cost}.",
                details={"unit_cost": movement.unit_cost},
            )
        return movement.unit_cost

    @abstractmethod
    def _carrying_cost(self, state: PairState) -> Decimal:
        ...


# ══════════════════════════════════════════════════════════════
# FIFO
# ══════════════════════════════════════════════════════════════

@final
class FifoStrategy(CostingStrategy):
    """Receipts create lots; issues consume the oldest lots first."""

    method = CostingMethod.FIFO

    def receive(self, state: PairState, movement: Movement) -> Transaction:
        quantity = self._inbound_quantity(movement)
        unit_cost = self._inbound_unit_cost(state, movement)
        ledger = state.ledger

        lot = ledger.receive(
            lot_id=f"LOT-{movement.transaction_id}",
            quantity=quantity,
            unit_cost=unit_cost,
            purchased_at=movement.occurred_at,
            creation_sequence=movement.sequence,
            created_at=movement.created_at,
            source_transaction_id=movement.transaction_id,
            total_value=movement.total_cost,
        )
        total = (
            movement.total_cost
            if movement.total_cost is not None
            else line_cost(quantity, unit_cost, state.settings.currency_places)
        )
        return Transaction.from_movement(
            movement,
            method=self.method,
            unit_cost=unit_cost,
            total_cost=total,
            created_lot_id=lot.lot_id,
            quantity_after=ledger.total_quantity(),
            value_after=ledger.total_value(),
        )

    def issue(self, state: PairState, movement: Movement, allow_negative: bool) -> Transaction:
        quantity = self._outbound_quantity(movement)
        ledger = state.ledger

        result = ledger.consume(quantity, allow_negative=allow_negative)
        return Transaction.from_movement(
            movement,
            method=self.method,
            unit_cost=quantize_cost(result.cost_per_unit, state.settings.cost_places),
            total_cost=result.total_cost,
            consumed_lots=result.consumed,
            quantity_after=ledger.total_quantity(),
            value_after=ledger.total_value(),
        )

    def valuation(self, state: PairState) -> Decimal:
        self._check_state(state)
        return state.ledger.total_value()

    def _carrying_cost(self, state: PairState) -> Decimal:
        ledger = state.ledger
        if ledger.available_quantity() > 0:
            return quantize_cost(ledger.weighted_average_cost(), state.settings.cost_places)
        return ledger.fallback_unit_cost()


# ══════════════════════════════════════════════════════════════
# WEIGHTED AVERAGE
# ══════════════════════════════════════════════════════════════

@final
class WeightedAverageStrategy(CostingStrategy):
    """Receipts re-average; issues charge the average and leave it alone."""

    method = CostingMethod.WEIGHTED_AVERAGE

    def receive(self, state: PairState, movement: Movement) -> Transaction:
        quantity = self._inbound_quantity(movement)
        unit_cost = self._inbound_unit_cost(state, movement)
        acc = state.accumulator

        effect = acc.receive(
            quantity,
            unit_cost,
            at=movement.occurred_at,
            total_cost=movement.total_cost,
        )
        return Transaction.from_movement(
            movement,
            method=self.method,
            unit_cost=unit_cost,
            total_cost=effect.total_cost,
            quantity_after=acc.quantity_on_hand,
            value_after=acc.total_value,
        )

    def issue(self, state: PairState, movement: Movement, allow_negative: bool) -> Transaction:
        quantity = self._outbound_quantity(movement)
        acc = state.accumulator

        effect = acc.issue(quantity, at=movement.occurred_at, allow_negative=allow_negative)
        return Transaction.from_movement(
            movement,
            method=self.method,
            unit_cost=effect.unit_cost,
            total_cost=effect.total_cost,
            quantity_after=acc.quantity_on_hand,
            value_after=acc.total_value,
        )

    def valuation(self, state: PairState) -> Decimal:
        self._check_state(state)
        return state.accumulator.total_value

    def _carrying_cost(self, state: PairState) -> Decimal:
        return state.accumulator.average_cost if state.accumulator else ZERO


# ══════════════════════════════════════════════════════════════
# LOOKUP
# ══════════════════════════════════════════════════════════════

_STRATEGIES: Dict[CostingMethod, CostingStrategy] = {
    CostingMethod.FIFO: FifoStrategy(),
    CostingMethod.WEIGHTED_AVERAGE: WeightedAverageStrategy(),
}


def strategy_for(method: CostingMethod) -> CostingStrategy:
    return _STRATEGIES[method]
