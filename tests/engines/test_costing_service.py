"""
Costbook — Costing Service Tests
==================================
Operations end to end on the in-memory repository:
worked example, conservation, rejections, transfers, returns,
method changeover, persistence failures and hydration.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from core.commands.rejection import ReasonCode
from engines.costing.configuration import CostingConfiguration, CostingMethod
from engines.costing.outcomes import OutcomeStatus
from engines.costing.services import CostingService
from engines.costing.state import PairKey
from engines.costing.transactions import TransactionType

T0 = datetime(2026, 1, 1, 9, 0, 0, tzinfo=timezone.utc)
D = Decimal


def day(n: float) -> datetime:
    return T0 + timedelta(days=n)


def run_worked_example(service: CostingService, product: str = "SKU-1", warehouse: str = "WH-A"):
    service.receive(product, warehouse, 100, "10.00", "PO-1", occurred_at=day(0))
    service.receive(product, warehouse, 50, "12.00", "PO-2", occurred_at=day(1))
    return service.issue(product, warehouse, 120, "SO-1", occurred_at=day(2))


# ══════════════════════════════════════════════════════════════
# WORKED EXAMPLE
# ══════════════════════════════════════════════════════════════

class TestWorkedExample:
    def test_fifo(self, service):
        outcome = run_worked_example(service)
        assert outcome.is_accepted
        assert outcome.total_cost == D("1240.00")
        assert service.valuation("SKU-1", "WH-A").total_value == D("360.00")
        assert service.quantity_on_hand("SKU-1", "WH-A") == D("30")

        service.receive("SKU-1", "WH-A", 80, "11.50", "PO-3", occurred_at=day(3))
        valuation = service.valuation("SKU-1", "WH-A")
        assert valuation.total_value == D("1280.00")
        assert valuation.quantity_on_hand == D("110")
        assert valuation.method == CostingMethod.FIFO

    def test_weighted_average(self, service, config):
        config.set_organization_default("WAC")
        outcome = run_worked_example(service)
        assert outcome.total_cost == D("1280.00")
        assert outcome.transaction.unit_cost == D("10.666667")
        assert service.valuation("SKU-1", "WH-A").total_value == D("320.00")

        service.receive("SKU-1", "WH-A", 80, "11.50", "PO-3", occurred_at=day(3))
        assert service.average_cost("SKU-1", "WH-A") == D("11.272727")
        assert service.valuation("SKU-1", "WH-A").total_value == D("1240.00")

    def test_transaction_record(self, service):
        outcome = run_worked_example(service)
        tx = outcome.transaction
        assert tx.transaction_type == TransactionType.ISSUE
        assert tx.quantity == D("-120")
        assert tx.reference == "SO-1"
        assert tx.method == CostingMethod.FIFO
        assert sum(c.quantity_consumed for c in tx.consumed_lots) == D("120")
        assert service.get_transaction(tx.transaction_id) == tx
        assert len(service.transactions("SKU-1", "WH-A")) == 3


# ══════════════════════════════════════════════════════════════
# CONSERVATION & QUERIES
# ══════════════════════════════════════════════════════════════

class TestConservation:
    @pytest.mark.parametrize("method", ["FIFO", "WEIGHTED_AVERAGE"])
    def test_quantity_is_conserved(self, service, config, method):
        config.set_organization_default(method)
        received = issued = D("0")
        plan = [("r", 40, "3.10"), ("i", 15), ("r", 25, "2.95"), ("i", 30),
                ("r", 10, "3.40"), ("i", 5), ("i", 20)]
        for n, step in enumerate(plan):
            if step[0] == "r":
                service.receive("SKU-9", "WH-A", step[1], step[2], f"PO-{n}", occurred_at=day(n))
                received += step[1]
            else:
                assert service.issue("SKU-9", "WH-A", step[1], f"SO-{n}", occurred_at=day(n)).is_accepted
                issued += step[1]
        assert service.quantity_on_hand("SKU-9", "WH-A") == received - issued

    def test_cogs_sums_issues_in_window(self, service):
        run_worked_example(service)
        service.receive("SKU-1", "WH-A", 10, "5.00", "PO-9", occurred_at=day(5))
        service.issue("SKU-1", "WH-A", 10, "SO-2", occurred_at=day(6))

        assert service.cogs("SKU-1") == D("1240.00") + D("120.00")
        assert service.cogs("SKU-1", start=day(3)) == D("120.00")
        assert service.cogs("SKU-1", end=day(3)) == D("1240.00")
        assert service.cogs("SKU-1", warehouse_id="WH-B") == D("0")

    def test_total_inventory_value_spans_pairs(self, service):
        service.receive("SKU-1", "WH-A", 10, "2.00", "PO-1", occurred_at=day(0))
        service.receive("SKU-1", "WH-B", 5, "3.00", "PO-2", occurred_at=day(0))
        service.receive("SKU-2", "WH-A", 1, "7.25", "PO-3", occurred_at=day(0))
        assert service.total_inventory_value() == D("42.25")

    def test_lots_query(self, service):
        run_worked_example(service)
        lots = service.lots("SKU-1", "WH-A")
        assert [lot.quantity_remaining for lot in lots] == [D("30")]
        assert len(service.lots("SKU-1", "WH-A", include_exhausted=True)) == 2
        assert service.lots("SKU-1", "WH-Z") == []

    def test_valuation_of_untouched_pair(self, service):
        outcome = service.valuation("SKU-NEW", "WH-A")
        assert outcome.is_accepted
        assert outcome.total_value == D("0")
        assert outcome.method == CostingMethod.FIFO


# ══════════════════════════════════════════════════════════════
# REJECTIONS
# ══════════════════════════════════════════════════════════════

class TestRejections:
    @pytest.mark.parametrize("method", ["FIFO", "WEIGHTED_AVERAGE"])
    def test_insufficient_stock_is_atomic(self, service, config, repository, method):
        config.set_organization_default(method)
        service.receive("SKU-1", "WH-A", 10, "4.00", "PO-1", occurred_at=day(0))
        commits = repository.commit_count
        before = service.valuation("SKU-1", "WH-A")

        outcome = service.issue("SKU-1", "WH-A", 11, "SO-1", occurred_at=day(1))
        assert outcome.status == OutcomeStatus.REJECTED
        assert outcome.code == ReasonCode.INSUFFICIENT_STOCK
        assert outcome.reason.details["available"] == D("10")
        assert outcome.reason.details["requested"] == D("11")
        assert service.valuation("SKU-1", "WH-A") == before
        assert len(service.transactions()) == 1
        assert repository.commit_count == commits

    def test_negative_stock_when_permitted(self, make_service):
        service = make_service(negative_stock_products=frozenset({"SKU-1"}))
        service.receive("SKU-1", "WH-A", 10, "4.00", "PO-1", occurred_at=day(0))
        outcome = service.issue("SKU-1", "WH-A", 12, "SO-1", occurred_at=day(1))
        assert outcome.is_accepted
        assert outcome.total_cost == D("48.00")
        assert service.quantity_on_hand("SKU-1", "WH-A") == D("-2")

        service.receive("SKU-1", "WH-A", 5, "5.00", "PO-2", occurred_at=day(2))
        assert service.quantity_on_hand("SKU-1", "WH-A") == D("3")
        assert service.valuation("SKU-1", "WH-A").total_value == D("15.00")

    def test_negative_stock_not_granted_to_other_products(self, make_service):
        service = make_service(negative_stock_products=frozenset({"SKU-1"}))
        outcome = service.issue("SKU-2", "WH-A", 1, "SO-1", occurred_at=day(0))
        assert outcome.code == ReasonCode.INSUFFICIENT_STOCK

    @pytest.mark.parametrize("quantity", [0, -5, "0.000"])
    def test_non_positive_receipt(self, service, quantity):
        outcome = service.receive("SKU-1", "WH-A", quantity, "1.00", "PO-1")
        assert outcome.code == ReasonCode.INVALID_QUANTITY
        assert outcome.reason.policy_name == "positive_quantity_policy"

    def test_negative_cost(self, service):
        outcome = service.receive("SKU-1", "WH-A", 1, "-0.01", "PO-1")
        assert outcome.code == ReasonCode.INVALID_COST

    def test_zero_adjustment(self, service):
        assert service.adjust("SKU-1", "WH-A", 0, "CNT-1").code == ReasonCode.INVALID_QUANTITY

    def test_missing_configuration(self, clock):
        service = CostingService(resolver=CostingConfiguration(), clock=clock)
        outcome = service.receive("SKU-1", "WH-A", 1, "1.00", "PO-1")
        assert outcome.code == ReasonCode.CONFIGURATION_CONFLICT
        assert service.valuation("SKU-1", "WH-A").code == ReasonCode.CONFIGURATION_CONFLICT

    def test_unrecognised_method(self, service, config):
        config.set_product_method("SKU-1", "LIFO")
        outcome = service.receive("SKU-1", "WH-A", 1, "1.00", "PO-1")
        assert outcome.code == ReasonCode.CONFIGURATION_CONFLICT

    def test_rejection_carries_no_transactions(self, service):
        outcome = service.issue("SKU-1", "WH-A", 1, "SO-1")
        assert outcome.is_rejected
        assert outcome.transactions == ()
        assert outcome.transaction is None

    def test_naive_timestamp_is_a_programming_error(self, service):
        with pytest.raises(ValueError, match="timezone-aware"):
            service.receive("SKU-1", "WH-A", 1, "1.00", "PO-1", occurred_at=datetime(2026, 1, 1))

    def test_duplicate_transaction_id(self, service):
        service.receive("SKU-1", "WH-A", 1, "1.00", "PO-1", transaction_id="TX-1")
        with pytest.raises(ValueError, match="already recorded"):
            service.receive("SKU-1", "WH-A", 1, "1.00", "PO-1", transaction_id="TX-1")

    def test_rejected_movement_frees_its_transaction_id(self, service):
        outcome = service.issue("SKU-1", "WH-A", 1, "SO-1", transaction_id="TX-1")
        assert outcome.code == ReasonCode.INSUFFICIENT_STOCK
        assert service.receive("SKU-1", "WH-A", 1, "1.00", "PO-1", transaction_id="TX-1").is_accepted


# ══════════════════════════════════════════════════════════════
# ADJUSTMENTS & RETURNS
# ══════════════════════════════════════════════════════════════

class TestAdjustmentsAndReturns:
    def test_positive_adjustment_creates_lot(self, service):
        outcome = service.adjust("SKU-1", "WH-A", 5, "CNT-1", unit_cost="2.00", occurred_at=day(0))
        assert outcome.transaction.created_lot_id is not None
        assert service.valuation("SKU-1", "WH-A").total_value == D("10.00")

    def test_negative_adjustment_like_issue(self, service):
        run_worked_example(service)
        outcome = service.adjust("SKU-1", "WH-A", -10, "DMG-1", occurred_at=day(3))
        assert outcome.total_cost == D("120.00")
        assert outcome.transaction.quantity == D("-10")
        assert service.quantity_on_hand("SKU-1", "WH-A") == D("20")

    def test_negative_adjustment_respects_stock(self, service):
        service.receive("SKU-1", "WH-A", 2, "1.00", "PO-1", occurred_at=day(0))
        outcome = service.adjust("SKU-1", "WH-A", -3, "DMG-1", occurred_at=day(1))
        assert outcome.code == ReasonCode.INSUFFICIENT_STOCK

    def test_customer_return_at_carrying_cost(self, service, config):
        config.set_organization_default(CostingMethod.WEIGHTED_AVERAGE)
        run_worked_example(service)
        outcome = service.return_in("SKU-1", "WH-A", 10, "RMA-1", occurred_at=day(3))
        assert outcome.transaction.transaction_type == TransactionType.RETURN_IN
        assert outcome.transaction.unit_cost == D("10.666667")
        assert outcome.total_cost == D("106.67")
        assert service.quantity_on_hand("SKU-1", "WH-A") == D("40")

    def test_customer_return_with_explicit_cost(self, service):
        service.receive("SKU-1", "WH-A", 1, "9.00", "PO-1", occurred_at=day(0))
        outcome = service.return_in("SKU-1", "WH-A", 2, "RMA-1", unit_cost="4.00", occurred_at=day(1))
        assert outcome.total_cost == D("8.00")
        assert service.valuation("SKU-1", "WH-A").total_value == D("17.00")

    def test_supplier_return_is_not_cogs(self, service):
        run_worked_example(service)
        outcome = service.return_out("SKU-1", "WH-A", 5, "RTV-1", occurred_at=day(3))
        assert outcome.total_cost == D("60.00")
        assert service.cogs("SKU-1") == D("1240.00")
        assert service.cogs("SKU-1", types=(TransactionType.ISSUE, TransactionType.RETURN_OUT)) == D("1300.00")


# ══════════════════════════════════════════════════════════════
# TRANSFERS
# ══════════════════════════════════════════════════════════════

class TestTransfer:
    @pytest.mark.parametrize("method", ["FIFO", "WEIGHTED_AVERAGE"])
    def test_transfer_preserves_total_value(self, service, config, method):
        config.set_organization_default(method)
        run_worked_example(service)
        total_before = service.total_inventory_value()
        source_before = service.valuation("SKU-1", "WH-A").total_value

        outcome = service.transfer("SKU-1", "WH-A", "WH-B", 10, "TR-1", occurred_at=day(3))
        assert outcome.is_accepted
        out_tx, in_tx = outcome.transactions
        moved = out_tx.total_cost

        assert out_tx.transaction_type == TransactionType.TRANSFER_OUT
        assert in_tx.transaction_type == TransactionType.TRANSFER_IN
        assert out_tx.transfer_id == in_tx.transfer_id
        assert in_tx.total_cost == moved
        assert service.valuation("SKU-1", "WH-A").total_value == source_before - moved
        assert service.valuation("SKU-1", "WH-B").total_value == moved
        assert service.total_inventory_value() == total_before
        assert service.quantity_on_hand("SKU-1", "WH-B") == D("10")

    def test_fifo_transfer_carries_source_cost(self, service):
        run_worked_example(service)
        outcome = service.transfer("SKU-1", "WH-A", "WH-B", 10, "TR-1", occurred_at=day(3))
        assert outcome.total_cost == D("120.00")
        lots = service.lots("SKU-1", "WH-B")
        assert len(lots) == 1
        assert lots[0].unit_cost == D("12.000000")

    def test_large_fifo_transfer_moves_exact_value(self, service):
        service.receive("SKU-1", "WH-A", 100000, "1.00", "PO-1", occurred_at=day(0))
        service.receive("SKU-1", "WH-A", 200000, "2.00", "PO-2", occurred_at=day(1))
        source_before = service.valuation("SKU-1", "WH-A").total_value

        outcome = service.transfer("SKU-1", "WH-A", "WH-B", 300000, "TR-1", occurred_at=day(2))
        assert outcome.is_accepted
        source_drop = source_before - service.valuation("SKU-1", "WH-A").total_value
        destination_gain = service.valuation("SKU-1", "WH-B").total_value

        assert source_drop == D("500000.00")
        assert destination_gain == source_drop
        assert service.total_inventory_value() == source_before

    def test_transferred_lot_issues_its_exact_value(self, service):
        service.receive("SKU-1", "WH-A", 1, "10.00", "PO-1", occurred_at=day(0))
        service.receive("SKU-1", "WH-A", 2, "0.00", "PO-2", occurred_at=day(0))
        service.transfer("SKU-1", "WH-A", "WH-B", 3, "TR-1", occurred_at=day(1))
        assert service.lots("SKU-1", "WH-B")[0].unit_cost == D("3.333333")

        first = service.issue("SKU-1", "WH-B", 2, "SO-1", occurred_at=day(2))
        second = service.issue("SKU-1", "WH-B", 1, "SO-2", occurred_at=day(3))
        assert first.total_cost == D("6.67")
        assert first.total_cost + second.total_cost == D("10.00")
        assert service.valuation("SKU-1", "WH-B").total_value == D("0.00")

    def test_same_location(self, service):
        outcome = service.transfer("SKU-1", "WH-A", "WH-A", 1, "TR-1")
        assert outcome.code == ReasonCode.SAME_LOCATION_TRANSFER

    def test_short_source_changes_neither_side(self, service, repository):
        service.receive("SKU-1", "WH-A", 3, "1.00", "PO-1", occurred_at=day(0))
        commits = repository.commit_count
        outcome = service.transfer("SKU-1", "WH-A", "WH-B", 4, "TR-1", occurred_at=day(1))
        assert outcome.code == ReasonCode.INSUFFICIENT_STOCK
        assert service.quantity_on_hand("SKU-1", "WH-A") == D("3")
        assert service.quantity_on_hand("SKU-1", "WH-B") == D("0")
        assert repository.commit_count == commits

    def test_transfers_excluded_from_cogs(self, service):
        run_worked_example(service)
        service.transfer("SKU-1", "WH-A", "WH-B", 10, "TR-1", occurred_at=day(3))
        assert service.cogs("SKU-1") == D("1240.00")


# ══════════════════════════════════════════════════════════════
# METHOD RESOLUTION & CHANGEOVER
# ══════════════════════════════════════════════════════════════

class TestMethodChangeover:
    def test_method_resolved_per_operation(self, service, config):
        run_worked_example(service)
        config.set_product_method("SKU-1", CostingMethod.WEIGHTED_AVERAGE)

        outcome = service.issue("SKU-1", "WH-A", 10, "SO-2", occurred_at=day(3))
        assert outcome.transaction.method == CostingMethod.WEIGHTED_AVERAGE
        assert outcome.total_cost == D("120.00")
        assert service.method_of("SKU-1", "WH-A") == CostingMethod.WEIGHTED_AVERAGE
        assert service.valuation("SKU-1", "WH-A").total_value == D("240.00")

    def test_prior_transactions_keep_their_method(self, service, config):
        first = run_worked_example(service)
        config.set_product_method("SKU-1", "WEIGHTED_AVERAGE")
        service.receive("SKU-1", "WH-A", 10, "13.00", "PO-3", occurred_at=day(3))

        prior = service.get_transaction(first.transaction.transaction_id)
        assert prior.method == CostingMethod.FIFO
        assert prior.total_cost == D("1240.00")

    def test_back_to_fifo_opens_single_lot(self, service, config):
        config.set_organization_default(CostingMethod.WEIGHTED_AVERAGE)
        run_worked_example(service)
        config.set_organization_default(CostingMethod.FIFO)

        service.receive("SKU-1", "WH-A", 10, "11.00", "PO-3", occurred_at=day(3))
        lots = service.lots("SKU-1", "WH-A")
        assert lots[0].lot_id.startswith("OPEN-SKU-1-WH-A-")
        assert lots[0].quantity_remaining == D("30")
        assert lots[0].unit_cost == D("10.666667")
        assert service.quantity_on_hand("SKU-1", "WH-A") == D("40")

    def test_back_to_fifo_keeps_exact_value(self, service, config):
        config.set_organization_default(CostingMethod.WEIGHTED_AVERAGE)
        service.receive("SKU-1", "WH-A", 100000, "1.00", "PO-1", occurred_at=day(0))
        service.receive("SKU-1", "WH-A", 200000, "2.00", "PO-2", occurred_at=day(1))
        assert service.valuation("SKU-1", "WH-A").total_value == D("500000.00")

        config.set_product_method("SKU-1", CostingMethod.FIFO)
        service.receive("SKU-1", "WH-A", 1, "0.00", "PO-3", occurred_at=day(2))
        assert service.valuation("SKU-1", "WH-A").total_value == D("500000.00")
        assert service.lots("SKU-1", "WH-A")[0].unit_cost == D("1.666667")

    def test_back_to_fifo_carries_negative_balance(self, make_service, config):
        config.set_organization_default(CostingMethod.WEIGHTED_AVERAGE)
        service = make_service(negative_stock_products=frozenset({"SKU-1"}))
        service.receive("SKU-1", "WH-A", 10, "4.00", "PO-1", occurred_at=day(0))
        service.issue("SKU-1", "WH-A", 12, "SO-1", occurred_at=day(1))
        assert service.valuation("SKU-1", "WH-A").total_value == D("-8.00")

        config.set_organization_default(CostingMethod.FIFO)
        service.receive("SKU-1", "WH-A", 5, "5.00", "PO-2", occurred_at=day(2))
        assert service.quantity_on_hand("SKU-1", "WH-A") == D("3")
        assert service.valuation("SKU-1", "WH-A").total_value == D("15.00")

    def test_category_mapping(self, service, config):
        config.set_category_method("BULK", CostingMethod.WEIGHTED_AVERAGE)
        config.assign_category("SKU-7", "BULK")
        outcome = service.receive("SKU-7", "WH-A", 1, "1.00", "PO-1")
        assert outcome.method == CostingMethod.WEIGHTED_AVERAGE


# ══════════════════════════════════════════════════════════════
# PERSISTENCE
# ══════════════════════════════════════════════════════════════

class TestPersistence:
    def test_store_failure_rolls_back(self, service, repository):
        service.receive("SKU-1", "WH-A", 10, "2.00", "PO-1", occurred_at=day(0))
        repository.fail_next_commit()

        outcome = service.issue("SKU-1", "WH-A", 4, "SO-1", occurred_at=day(1))
        assert outcome.code == ReasonCode.PERSISTENCE_FAILED
        assert service.quantity_on_hand("SKU-1", "WH-A") == D("10")
        assert len(service.transactions()) == 1

        assert service.issue("SKU-1", "WH-A", 4, "SO-1", occurred_at=day(1)).is_accepted
        assert service.quantity_on_hand("SKU-1", "WH-A") == D("6")

    def test_store_failure_on_first_movement_leaves_no_pair(self, service, repository):
        repository.fail_next_commit()
        outcome = service.receive("SKU-1", "WH-A", 10, "2.00", "PO-1")
        assert outcome.code == ReasonCode.PERSISTENCE_FAILED
        assert service.method_of("SKU-1", "WH-A") is None

    def test_store_refuses_known_transaction_id(self, service, repository, config, clock):
        service.receive("SKU-1", "WH-A", 10, "2.00", "PO-1", transaction_id="TX-1")
        other = CostingService(resolver=config, repository=repository, clock=clock)

        outcome = other.receive("SKU-1", "WH-B", 5, "3.00", "PO-2", transaction_id="TX-1")
        assert outcome.code == ReasonCode.PERSISTENCE_FAILED
        assert other.transactions() == []
        assert repository.get_transaction("TX-1").warehouse_id == "WH-A"

    def test_committed_copies_match(self, service, repository):
        outcome = service.receive("SKU-1", "WH-A", 10, "2.00", "PO-1")
        tx = outcome.transaction
        assert repository.get_transaction(tx.transaction_id) == tx
        assert repository.get_state(PairKey("SKU-1", "WH-A")).method == CostingMethod.FIFO

    def test_hydrate_rebuilds_state(self, service, repository, config, clock):
        run_worked_example(service)
        service.transfer("SKU-1", "WH-A", "WH-B", 10, "TR-1", occurred_at=day(3))

        rebuilt = CostingService(resolver=config, repository=repository, clock=clock)
        assert rebuilt.hydrate() == 5
        for warehouse in ("WH-A", "WH-B"):
            assert rebuilt.valuation("SKU-1", warehouse) == service.valuation("SKU-1", warehouse)
        assert rebuilt.cogs("SKU-1") == D("1240.00")
        assert rebuilt.pending_recalculation() == {}

        outcome = rebuilt.receive("SKU-1", "WH-A", 1, "1.00", "PO-9", occurred_at=day(4))
        assert outcome.transaction.sequence > max(tx.sequence for tx in service.transactions())

    def test_hydrate_requires_empty_engine(self, service):
        service.receive("SKU-1", "WH-A", 1, "1.00", "PO-1")
        with pytest.raises(RuntimeError):
            service.hydrate()


# ══════════════════════════════════════════════════════════════
# BACK-DATED MOVEMENTS
# ══════════════════════════════════════════════════════════════

class TestBackDated:
    def test_back_dated_movement_marks_pair_pending(self, service):
        service.receive("SKU-1", "WH-A", 10, "5.00", "PO-1", occurred_at=day(2))
        assert service.pending_recalculation() == {}

        service.receive("SKU-1", "WH-A", 10, "1.00", "PO-0", occurred_at=day(0))
        assert service.pending_recalculation() == {PairKey("SKU-1", "WH-A"): day(0)}

    def test_transactions_listed_in_replay_order(self, service):
        late = service.receive("SKU-1", "WH-A", 1, "5.00", "PO-1", occurred_at=day(2)).transaction
        early = service.receive("SKU-1", "WH-A", 1, "1.00", "PO-0", occurred_at=day(0)).transaction
        ids = [tx.transaction_id for tx in service.transactions("SKU-1", "WH-A")]
        assert ids == [early.transaction_id, late.transaction_id]
