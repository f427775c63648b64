"""
Costbook Costing — Django Repository
======================================
The transactional store behind CostingService, on the Django ORM.

commit() runs inside ONE transaction.atomic() block:
    1. Replay isolation guard (HARD BLOCK)
    2. Insert new transactions (batch.inserted), upsert the rest
    3. Upsert touched lots (all lots of a pair after a replay)
    4. Upsert the pair balance row
Any exception rolls the whole block back and propagates; the
service then discards its scratch state.

This function NEVER:
- Partially writes
- Silently retries
- Deletes records
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import FrozenSet, List, Optional

from django.db import transaction

from engines.costing.configuration import CostingMethod
from engines.costing.lot_engine import ConsumedLot, Lot, LotLedger, LotLedgerSnapshot
from engines.costing.models import CostBalance, CostLot, CostTransaction
from engines.costing.numeric import quantize_cost
from engines.costing.persistence import CommitBatch, guard_replay_isolation
from engines.costing.state import PairSnapshot
from engines.costing.transactions import Transaction, TransactionType

logger = logging.getLogger("costbook.persistence")


def _optional_decimal(value) -> Optional[Decimal]:
    return None if value is None else Decimal(str(value))


# ══════════════════════════════════════════════════════════════
# ROW ↔ RECORD
# ══════════════════════════════════════════════════════════════

def transaction_defaults(tx: Transaction) -> dict:
    return {
        "sequence": tx.sequence,
        "product_id": tx.product_id,
        "warehouse_id": tx.warehouse_id,
        "transaction_type": tx.transaction_type.value,
        "quantity": tx.quantity,
        "input_unit_cost": tx.input_unit_cost,
        "input_total_cost": tx.input_total_cost,
        "reference": tx.reference,
        "occurred_at": tx.occurred_at,
        "created_at": tx.created_at,
        "actor_id": tx.actor_id,
        "transfer_id": tx.transfer_id,
        "method": tx.method.value,
        "unit_cost": tx.unit_cost,
        "total_cost": tx.total_cost,
        "consumed_lots": [c.to_dict() for c in tx.consumed_lots],
        "created_lot_id": tx.created_lot_id,
        "quantity_after": tx.quantity_after,
        "value_after": tx.value_after,
        "revision": tx.revision,
        "recalculated_at": tx.recalculated_at,
    }


def transaction_from_row(row: CostTransaction) -> Transaction:
    return Transaction(
        transaction_id=row.transaction_id,
        sequence=row.sequence,
        product_id=row.product_id,
        warehouse_id=row.warehouse_id,
        transaction_type=TransactionType(row.transaction_type),
        quantity=Decimal(row.quantity),
        input_unit_cost=_optional_decimal(row.input_unit_cost),
        input_total_cost=_optional_decimal(row.input_total_cost),
        reference=row.reference,
        occurred_at=row.occurred_at,
        created_at=row.created_at,
        actor_id=row.actor_id,
        transfer_id=row.transfer_id,
        method=CostingMethod(row.method),
        unit_cost=Decimal(row.unit_cost),
        total_cost=Decimal(row.total_cost),
        consumed_lots=tuple(
            ConsumedLot(
                lot_id=item["lot_id"],
                quantity_consumed=Decimal(item["quantity_consumed"]),
                unit_cost=Decimal(item["unit_cost"]),
                total_cost=Decimal(item["total_cost"]),
            )
            for item in row.consumed_lots or []
        ),
        created_lot_id=row.created_lot_id,
        quantity_after=Decimal(row.quantity_after),
        value_after=Decimal(row.value_after),
        revision=row.revision,
        recalculated_at=row.recalculated_at,
    )


def lot_defaults(lot: Lot) -> dict:
    return {
        "product_id": lot.product_id,
        "warehouse_id": lot.warehouse_id,
        "purchased_at": lot.purchased_at,
        "quantity_original": lot.quantity_original,
        "quantity_remaining": lot.quantity_remaining,
        "unit_cost": lot.unit_cost,
        "value_remaining": lot.current_value,
        "creation_sequence": lot.creation_sequence,
        "created_at": lot.created_at,
        "source_transaction_id": lot.source_transaction_id,
    }


def balance_defaults(snapshot: PairSnapshot, cost_places: int) -> dict:
    if snapshot.method == CostingMethod.FIFO:
        ledger = LotLedger.restore(snapshot.data)
        quantity = ledger.total_quantity()
        value = ledger.total_value()
        average = (
            quantize_cost(ledger.weighted_average_cost(), cost_places)
            if ledger.available_quantity() > 0 else Decimal("0")
        )
        updated_at = max((lot.created_at for lot in ledger.lots()), default=None)
        return {
            "method": snapshot.method.value,
            "quantity_on_hand": quantity,
            "average_cost": average,
            "total_value": value,
            "deficit_quantity": ledger.deficit_quantity,
            "deficit_value": ledger.deficit_value,
            "updated_at": updated_at,
        }
    balance = snapshot.data
    return {
        "method": snapshot.method.value,
        "quantity_on_hand": balance.quantity_on_hand,
        "average_cost": balance.average_cost,
        "total_value": balance.total_value,
        "deficit_quantity": Decimal("0"),
        "deficit_value": Decimal("0"),
        "updated_at": balance.updated_at,
    }


# ══════════════════════════════════════════════════════════════
# REPOSITORY
# ══════════════════════════════════════════════════════════════

class DjangoCostingRepository:
    """CostingRepository backed by CostTransaction / CostLot / CostBalance."""

    def __init__(self, cost_places: int = 6, using: Optional[str] = None):
        self._cost_places = cost_places
        self._using = using

    def commit(self, batch: CommitBatch) -> None:
        guard_replay_isolation()
        touched = batch.touched_lots

        with transaction.atomic(using=self._using):
            for tx in batch.transactions:
                if tx.transaction_id in batch.inserted:
                    CostTransaction.objects.using(self._using).create(
                        transaction_id=tx.transaction_id,
                        **transaction_defaults(tx),
                    )
                    continue
                CostTransaction.objects.using(self._using).update_or_create(
                    transaction_id=tx.transaction_id,
                    defaults=transaction_defaults(tx),
                )
            for snapshot in batch.states:
                if snapshot.method == CostingMethod.FIFO:
                    self._write_lots(snapshot.data, touched)
                CostBalance.objects.using(self._using).update_or_create(
                    product_id=snapshot.key.product_id,
                    warehouse_id=snapshot.key.warehouse_id,
                    defaults=balance_defaults(snapshot, self._cost_places),
                )

        logger.debug(
            f"Committed {len(batch.transactions)} transactions, "
            f"{len(batch.states)} pair states."
        )

    def _write_lots(self, ledger: LotLedgerSnapshot, touched: Optional[FrozenSet[str]]) -> None:
        for lot in ledger.lots:
            if touched is not None and lot.lot_id not in touched:
                continue
            CostLot.objects.using(self._using).update_or_create(
                lot_id=lot.lot_id,
                defaults=lot_defaults(lot),
            )

    def load_transactions(self) -> List[Transaction]:
        rows = CostTransaction.objects.using(self._using).order_by("sequence")
        return [transaction_from_row(row) for row in rows]
