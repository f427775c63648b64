"""
Costbook Costing Engine
=========================
COGS and ending inventory valuation under FIFO lot consumption or
weighted-average balance tracking, with back-dated correction replay.

Entry point: engines.costing.services.CostingService

Imports are deferred to avoid circular import during app loading.
"""
