from django.db import migrations, models


TRANSACTION_TYPES = [
    ("RECEIVE", "Receive"),
    ("ISSUE", "Issue"),
    ("ADJUST", "Adjust"),
    ("TRANSFER_OUT", "Transfer out"),
    ("TRANSFER_IN", "Transfer in"),
    ("RETURN_IN", "Customer return"),
    ("RETURN_OUT", "Return to supplier"),
]

METHODS = [
    ("FIFO", "FIFO"),
    ("WEIGHTED_AVERAGE", "Weighted average"),
]


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="CostTransaction",
            fields=[
                ("transaction_id", models.CharField(max_length=64, primary_key=True, serialize=False)),
                ("sequence", models.BigIntegerField(unique=True)),
                ("product_id", models.CharField(max_length=128)),
                ("warehouse_id", models.CharField(max_length=128)),
                ("transaction_type", models.CharField(choices=TRANSACTION_TYPES, max_length=16)),
                ("quantity", models.DecimalField(decimal_places=10, max_digits=28)),
                ("input_unit_cost", models.DecimalField(blank=True, decimal_places=10, max_digits=28, null=True)),
                ("input_total_cost", models.DecimalField(blank=True, decimal_places=10, max_digits=28, null=True)),
                ("reference", models.CharField(max_length=255)),
                ("occurred_at", models.DateTimeField()),
                ("created_at", models.DateTimeField()),
                ("actor_id", models.CharField(blank=True, max_length=255, null=True)),
                ("transfer_id", models.CharField(blank=True, max_length=64, null=True)),
                ("method", models.CharField(choices=METHODS, max_length=20)),
                ("unit_cost", models.DecimalField(decimal_places=10, max_digits=28)),
                ("total_cost", models.DecimalField(decimal_places=10, max_digits=28)),
                ("consumed_lots", models.JSONField(blank=True, default=list)),
                ("created_lot_id", models.CharField(blank=True, max_length=80, null=True)),
                ("quantity_after", models.DecimalField(decimal_places=10, max_digits=28)),
                ("value_after", models.DecimalField(decimal_places=10, max_digits=28)),
                ("revision", models.IntegerField(default=0)),
                ("recalculated_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "db_table": "costbook_cost_transactions",
                "ordering": ["occurred_at", "sequence"],
                "indexes": [
                    models.Index(
                        fields=["product_id", "warehouse_id", "occurred_at", "sequence"],
                        name="idx_cost_tx_pair_order",
                    ),
                    models.Index(fields=["transfer_id"], name="idx_cost_tx_transfer"),
                ],
            },
        ),
        migrations.CreateModel(
            name="CostLot",
            fields=[
                ("lot_id", models.CharField(max_length=80, primary_key=True, serialize=False)),
                ("product_id", models.CharField(max_length=128)),
                ("warehouse_id", models.CharField(max_length=128)),
                ("purchased_at", models.DateTimeField()),
                ("quantity_original", models.DecimalField(decimal_places=10, max_digits=28)),
                ("quantity_remaining", models.DecimalField(decimal_places=10, max_digits=28)),
                ("unit_cost", models.DecimalField(decimal_places=10, max_digits=28)),
                ("creation_sequence", models.BigIntegerField()),
                ("created_at", models.DateTimeField()),
                ("source_transaction_id", models.CharField(blank=True, max_length=64, null=True)),
            ],
            options={
                "db_table": "costbook_cost_lots",
                "ordering": ["product_id", "warehouse_id", "purchased_at", "creation_sequence"],
                "indexes": [
                    models.Index(
                        fields=["product_id", "warehouse_id", "purchased_at", "creation_sequence"],
                        name="idx_cost_lot_fifo_order",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="CostBalance",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("product_id", models.CharField(max_length=128)),
                ("warehouse_id", models.CharField(max_length=128)),
                ("method", models.CharField(choices=METHODS, max_length=20)),
                ("quantity_on_hand", models.DecimalField(decimal_places=10, max_digits=28)),
                ("average_cost", models.DecimalField(decimal_places=10, max_digits=28)),
                ("total_value", models.DecimalField(decimal_places=10, max_digits=28)),
                ("deficit_quantity", models.DecimalField(decimal_places=10, default=0, max_digits=28)),
                ("deficit_value", models.DecimalField(decimal_places=10, default=0, max_digits=28)),
                ("updated_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "db_table": "costbook_cost_balances",
                "ordering": ["product_id", "warehouse_id"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=["product_id", "warehouse_id"],
                        name="uq_cost_balance_pair",
                    ),
                ],
            },
        ),
    ]
