"""
Costbook — Costing Strategy Tests
===================================
Strategies cost movements against a PairState; the same apply()
path serves live operations and replay.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from engines.costing.configuration import CostingMethod, CostingSettings
from engines.costing.errors import InsufficientStockError, InvalidCostError, InvalidQuantityError
from engines.costing.state import PairKey, PairState
from engines.costing.strategies import (
    FifoStrategy,
    WeightedAverageStrategy,
    strategy_for,
)
from engines.costing.transactions import Movement, TransactionType

NOW = datetime(2026, 1, 5, 8, 0, 0, tzinfo=timezone.utc)
KEY = PairKey("SKU-1", "WH-A")
SETTINGS = CostingSettings()
D = Decimal

_seq = iter(range(1, 10_000))


def movement(kind: TransactionType, quantity, unit_cost=None, at=NOW, total_cost=None) -> Movement:
    seq = next(_seq)
    return Movement(
        transaction_id=f"TX-{seq}",
        sequence=seq,
        product_id=KEY.product_id,
        warehouse_id=KEY.warehouse_id,
        transaction_type=kind,
        quantity=D(quantity),
        unit_cost=None if unit_cost is None else D(unit_cost),
        reference=f"DOC-{seq}",
        occurred_at=at,
        created_at=at,
        total_cost=None if total_cost is None else D(total_cost),
    )


def worked_example(method: CostingMethod):
    state = PairState.empty(KEY, method, SETTINGS)
    strategy = strategy_for(method)
    first = strategy.apply(state, movement(TransactionType.RECEIVE, 100, "10.00"), False)
    second = strategy.apply(state, movement(TransactionType.RECEIVE, 50, "12.00", at=NOW + timedelta(hours=1)), False)
    issue = strategy.apply(state, movement(TransactionType.ISSUE, -120, at=NOW + timedelta(hours=2)), False)
    return state, strategy, (first, second), issue


class TestStrategyLookup:
    def test_closed_set(self):
        assert isinstance(strategy_for(CostingMethod.FIFO), FifoStrategy)
        assert isinstance(strategy_for(CostingMethod.WEIGHTED_AVERAGE), WeightedAverageStrategy)

    def test_wrong_state_is_a_programming_error(self):
        state = PairState.empty(KEY, CostingMethod.WEIGHTED_AVERAGE, SETTINGS)
        with pytest.raises(TypeError):
            strategy_for(CostingMethod.FIFO).apply(
                state, movement(TransactionType.RECEIVE, 1, "1"), False,
            )


class TestFifoStrategy:
    def test_worked_example(self):
        state, strategy, receipts, issue = worked_example(CostingMethod.FIFO)
        assert issue.total_cost == D("1240.00")
        assert issue.unit_cost == D("10.333333")
        assert issue.quantity == D("-120")
        assert [c.lot_id for c in issue.consumed_lots] == [r.created_lot_id for r in receipts]
        assert strategy.valuation(state) == D("360.00")
        assert state.quantity_on_hand() == D("30")

        strategy.apply(state, movement(TransactionType.RECEIVE, 80, "11.50", at=NOW + timedelta(hours=3)), False)
        assert strategy.valuation(state) == D("1280.00")
        assert state.quantity_on_hand() == D("110")

    def test_receipt_records_lot(self):
        state = PairState.empty(KEY, CostingMethod.FIFO, SETTINGS)
        mv = movement(TransactionType.RECEIVE, 5, "2.00")
        tx = strategy_for(CostingMethod.FIFO).apply(state, mv, False)
        assert tx.created_lot_id == f"LOT-{mv.transaction_id}"
        assert tx.total_cost == D("10.00")
        assert tx.quantity_after == D("5")
        assert tx.value_after == D("10.00")
        assert tx.method == CostingMethod.FIFO

    def test_receipt_requires_cost(self):
        state = PairState.empty(KEY, CostingMethod.FIFO, SETTINGS)
        with pytest.raises(InvalidCostError):
            strategy_for(CostingMethod.FIFO).apply(
                state, movement(TransactionType.RECEIVE, 5), False,
            )

    def test_positive_adjustment_without_cost_uses_carrying_cost(self):
        state = PairState.empty(KEY, CostingMethod.FIFO, SETTINGS)
        strategy = strategy_for(CostingMethod.FIFO)
        strategy.apply(state, movement(TransactionType.RECEIVE, 10, "4.00"), False)
        strategy.apply(state, movement(TransactionType.RECEIVE, 10, "6.00"), False)

        tx = strategy.apply(state, movement(TransactionType.ADJUST, 2), False)
        assert tx.unit_cost == D("5.000000")
        assert tx.total_cost == D("10.00")
        assert state.quantity_on_hand() == D("22")

    def test_negative_adjustment_consumes_oldest(self):
        state = PairState.empty(KEY, CostingMethod.FIFO, SETTINGS)
        strategy = strategy_for(CostingMethod.FIFO)
        strategy.apply(state, movement(TransactionType.RECEIVE, 10, "4.00"), False)
        strategy.apply(state, movement(TransactionType.RECEIVE, 10, "6.00", at=NOW + timedelta(days=1)), False)

        tx = strategy.apply(state, movement(TransactionType.ADJUST, -12), False)
        assert tx.total_cost == D("52.00")

    def test_zero_adjustment_rejected(self):
        state = PairState.empty(KEY, CostingMethod.FIFO, SETTINGS)
        with pytest.raises(InvalidQuantityError):
            strategy_for(CostingMethod.FIFO).apply(
                state, movement(TransactionType.ADJUST, 0, "1"), False,
            )

    def test_insufficient_stock(self):
        state = PairState.empty(KEY, CostingMethod.FIFO, SETTINGS)
        strategy = strategy_for(CostingMethod.FIFO)
        strategy.apply(state, movement(TransactionType.RECEIVE, 3, "1.00"), False)
        with pytest.raises(InsufficientStockError):
            strategy.apply(state, movement(TransactionType.ISSUE, -4), False)
        assert state.quantity_on_hand() == D("3")

    def test_transfer_in_keeps_exact_total(self):
        state = PairState.empty(KEY, CostingMethod.FIFO, SETTINGS)
        tx = strategy_for(CostingMethod.FIFO).apply(
            state,
            movement(TransactionType.TRANSFER_IN, 3, "3.333333", total_cost="10.00"),
            False,
        )
        assert tx.total_cost == D("10.00")


class TestWeightedAverageStrategy:
    def test_worked_example(self):
        state, strategy, _, issue = worked_example(CostingMethod.WEIGHTED_AVERAGE)
        assert issue.total_cost == D("1280.00")
        assert issue.unit_cost == D("10.666667")
        assert issue.consumed_lots == ()
        assert strategy.valuation(state) == D("320.00")

        strategy.apply(state, movement(TransactionType.RECEIVE, 80, "11.50", at=NOW + timedelta(hours=3)), False)
        assert state.accumulator.average_cost == D("11.272727")
        assert state.quantity_on_hand() == D("110")

    def test_average_unchanged_by_issues(self):
        state = PairState.empty(KEY, CostingMethod.WEIGHTED_AVERAGE, SETTINGS)
        strategy = strategy_for(CostingMethod.WEIGHTED_AVERAGE)
        strategy.apply(state, movement(TransactionType.RECEIVE, 7, "3.00"), False)
        strategy.apply(state, movement(TransactionType.RECEIVE, 5, "4.00"), False)
        average = state.accumulator.average_cost

        for quantity in ("-1", "-2", "-3"):
            strategy.apply(state, movement(TransactionType.ISSUE, quantity), False)
            assert state.accumulator.average_cost == average
        strategy.apply(state, movement(TransactionType.RETURN_OUT, -1), False)
        assert state.accumulator.average_cost == average

    def test_customer_return_defaults_to_average(self):
        state = PairState.empty(KEY, CostingMethod.WEIGHTED_AVERAGE, SETTINGS)
        strategy = strategy_for(CostingMethod.WEIGHTED_AVERAGE)
        strategy.apply(state, movement(TransactionType.RECEIVE, 4, "2.50"), False)
        tx = strategy.apply(state, movement(TransactionType.RETURN_IN, 2), False)
        assert tx.unit_cost == D("2.500000")
        assert tx.total_cost == D("5.00")

    def test_valuation_matches_quantity_times_average(self):
        state = PairState.empty(KEY, CostingMethod.WEIGHTED_AVERAGE, SETTINGS)
        strategy = strategy_for(CostingMethod.WEIGHTED_AVERAGE)
        strategy.apply(state, movement(TransactionType.RECEIVE, 10, "2.00"), False)
        strategy.apply(state, movement(TransactionType.RECEIVE, 10, "4.00"), False)
        strategy.apply(state, movement(TransactionType.ISSUE, -5), False)
        acc = state.accumulator
        assert strategy.valuation(state) == acc.quantity_on_hand * acc.average_cost
