"""
Costbook Costing — Persistent Records
=======================================
Durable copies of the engine's three record kinds.

RULES (NON-NEGOTIABLE):
- No deletes. Lots persist after exhaustion, balances forever
- CostTransaction inputs never change except through a correction
  (revision increments); cost columns are rewritten by recalculation
- All amounts are DecimalField — NO floats

This file contains NO business logic.
"""

from django.db import models


class TransactionTypeChoices(models.TextChoices):
    RECEIVE = "RECEIVE", "Receive"
    ISSUE = "ISSUE", "Issue"
    ADJUST = "ADJUST", "Adjust"
    TRANSFER_OUT = "TRANSFER_OUT", "Transfer out"
    TRANSFER_IN = "TRANSFER_IN", "Transfer in"
    RETURN_IN = "RETURN_IN", "Customer return"
    RETURN_OUT = "RETURN_OUT", "Return to supplier"


class CostingMethodChoices(models.TextChoices):
    FIFO = "FIFO", "FIFO"
    WEIGHTED_AVERAGE = "WEIGHTED_AVERAGE", "Weighted average"


AMOUNT = {"max_digits": 28, "decimal_places": 10}


class CostTransaction(models.Model):
    transaction_id = models.CharField(max_length=64, primary_key=True)
    sequence = models.BigIntegerField(unique=True)
    product_id = models.CharField(max_length=128)
    warehouse_id = models.CharField(max_length=128)
    transaction_type = models.CharField(max_length=16, choices=TransactionTypeChoices.choices)
    quantity = models.DecimalField(**AMOUNT)
    input_unit_cost = models.DecimalField(null=True, blank=True, **AMOUNT)
    input_total_cost = models.DecimalField(null=True, blank=True, **AMOUNT)
    reference = models.CharField(max_length=255)
    occurred_at = models.DateTimeField()
    created_at = models.DateTimeField()
    actor_id = models.CharField(max_length=255, null=True, blank=True)
    transfer_id = models.CharField(max_length=64, null=True, blank=True)

    method = models.CharField(max_length=20, choices=CostingMethodChoices.choices)
    unit_cost = models.DecimalField(**AMOUNT)
    total_cost = models.DecimalField(**AMOUNT)
    consumed_lots = models.JSONField(default=list, blank=True)
    created_lot_id = models.CharField(max_length=80, null=True, blank=True)
    quantity_after = models.DecimalField(**AMOUNT)
    value_after = models.DecimalField(**AMOUNT)
    revision = models.IntegerField(default=0)
    recalculated_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "costbook_cost_transactions"
        ordering = ["occurred_at", "sequence"]
        indexes = [
            models.Index(
                fields=["product_id", "warehouse_id", "occurred_at", "sequence"],
                name="idx_cost_tx_pair_order",
            ),
            models.Index(fields=["transfer_id"], name="idx_cost_tx_transfer"),
        ]

    def __str__(self):
        return (
            f"{self.transaction_type} {self.quantity} "
            f"{self.product_id}@{self.warehouse_id} ({self.transaction_id})"
        )


class CostLot(models.Model):
    lot_id = models.CharField(max_length=80, primary_key=True)
    product_id = models.CharField(max_length=128)
    warehouse_id = models.CharField(max_length=128)
    purchased_at = models.DateTimeField()
    quantity_original = models.DecimalField(**AMOUNT)
    quantity_remaining = models.DecimalField(**AMOUNT)
    unit_cost = models.DecimalField(**AMOUNT)
    value_remaining = models.DecimalField(default=0, **AMOUNT)
    creation_sequence = models.BigIntegerField()
    created_at = models.DateTimeField()
    source_transaction_id = models.CharField(max_length=64, null=True, blank=True)

    class Meta:
        db_table = "costbook_cost_lots"
        ordering = ["product_id", "warehouse_id", "purchased_at", "creation_sequence"]
        indexes = [
            models.Index(
                fields=["product_id", "warehouse_id", "purchased_at", "creation_sequence"],
                name="idx_cost_lot_fifo_order",
            ),
        ]

    def __str__(self):
        return f"Lot({self.lot_id}, remaining={self.quantity_remaining} @ {self.unit_cost})"


class CostBalance(models.Model):
    """
    Per-pair summary. For WEIGHTED_AVERAGE this IS the state; for
    FIFO it mirrors the ledger totals and its negative-stock deficit.
    """

    product_id = models.CharField(max_length=128)
    warehouse_id = models.CharField(max_length=128)
    method = models.CharField(max_length=20, choices=CostingMethodChoices.choices)
    quantity_on_hand = models.DecimalField(**AMOUNT)
    average_cost = models.DecimalField(**AMOUNT)
    total_value = models.DecimalField(**AMOUNT)
    deficit_quantity = models.DecimalField(default=0, **AMOUNT)
    deficit_value = models.DecimalField(default=0, **AMOUNT)
    updated_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "costbook_cost_balances"
        ordering = ["product_id", "warehouse_id"]
        constraints = [
            models.UniqueConstraint(
                fields=["product_id", "warehouse_id"],
                name="uq_cost_balance_pair",
            ),
        ]

    def __str__(self):
        return f"Balance({self.product_id}@{self.warehouse_id}, {self.quantity_on_hand})"
