"""
Costbook Costing Engine — Errors
==================================
Domain errors raised inside the engine.

They never cross the service boundary: CostingService converts each
one into a RejectionReason via to_rejection() after rolling back.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional

from core.commands.rejection import ReasonCode, RejectionReason
from core.replay.errors import ReplayError


class CostingError(Exception):
    """Base error for all costing operations."""

    code: str = ReasonCode.COSTING_FAILED
    policy_name: str = "costing_engine"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.details = details or {}
        super().__init__(message)

    def to_rejection(self) -> RejectionReason:
        return RejectionReason(
            code=self.code,
            message=str(self),
            policy_name=self.policy_name,
            details=dict(self.details),
        )


class InsufficientStockError(CostingError):
    """Requested quantity exceeds on-hand and negative stock is disallowed."""

    code = ReasonCode.INSUFFICIENT_STOCK
    policy_name = "negative_stock_policy"

    def __init__(
        self,
        product_id: str,
        warehouse_id: str,
        available: Decimal,
        requested: Decimal,
    ):
        self.product_id = product_id
        self.warehouse_id = warehouse_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock: {available} available, {requested} "
            f"requested for product {product_id} at warehouse {warehouse_id}.",
            details={"available": available, "requested": requested},
        )


class InvalidQuantityError(CostingError):
    """Zero, negative or non-numeric quantity where a positive one is required."""

    code = ReasonCode.INVALID_QUANTITY
    policy_name = "positive_quantity_policy"


class InvalidCostError(CostingError):
    code = ReasonCode.INVALID_COST
    policy_name = "non_negative_cost_policy"


class ConfigurationConflictError(CostingError):
    """Method resolution failed, or two methods would serve one product at once."""

    code = ReasonCode.CONFIGURATION_CONFLICT
    policy_name = "method_resolution"


class ReplayDivergenceError(CostingError, ReplayError):
    """A replayed transaction cannot be satisfied under the corrected history."""

    code = ReasonCode.REPLAY_DIVERGENCE
    policy_name = "recalculation"

    def __init__(self, transaction_id: str, cause: CostingError):
        self.transaction_id = transaction_id
        self.cause = cause
        details = {"transaction_id": transaction_id, "cause": cause.code}
        details.update(cause.details)
        super().__init__(
            f"Recalculation aborted at transaction {transaction_id}: {cause}",
            details=details,
        )


class PersistenceError(CostingError):
    """The store refused the commit; in-memory state was rolled back."""

    code = ReasonCode.PERSISTENCE_FAILED
    policy_name = "atomic_commit"
