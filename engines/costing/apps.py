"""
Costbook Costing — App Configuration
======================================
Registers the durable cost records (transactions, lots, balances).
No startup hooks — the service is wired explicitly.
"""

from django.apps import AppConfig


class CostingConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "engines.costing"
    label = "costing"
    verbose_name = "Costbook Costing Engine"
