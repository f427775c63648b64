"""
Costbook Costing Engine — Policies
====================================
Input validation run before any lock is taken or method resolved.

Each policy returns a RejectionReason or None. The engine trusts the
business legitimacy of its inputs (documents are validated upstream)
and only enforces arithmetic and stock invariants.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from core.commands.rejection import ReasonCode, RejectionReason


def positive_quantity_policy(quantity: Decimal) -> Optional[RejectionReason]:
    """Reject zero or negative quantities for receive / issue / transfer / returns."""
    if quantity <= 0:
        return RejectionReason(
            code=ReasonCode.INVALID_QUANTITY,
            message=f"Quantity must be positive, got {quantity}.",
            policy_name="positive_quantity_policy",
            details={"quantity": quantity},
        )
    return None


def non_zero_adjustment_policy(quantity: Decimal) -> Optional[RejectionReason]:
    if quantity == 0:
        return RejectionReason(
            code=ReasonCode.INVALID_QUANTITY,
            message="Adjustment quantity must be non-zero.",
            policy_name="non_zero_adjustment_policy",
            details={"quantity": quantity},
        )
    return None


def non_negative_cost_policy(unit_cost: Optional[Decimal]) -> Optional[RejectionReason]:
    if unit_cost is not None and unit_cost < 0:
        return RejectionReason(
            code=ReasonCode.INVALID_COST,
            message=f"Unit cost cannot be negative, got {unit_cost}.",
            policy_name="non_negative_cost_policy",
            details={"unit_cost": unit_cost},
        )
    return None


def same_location_transfer_policy(
    source_warehouse_id: str,
    destination_warehouse_id: str,
) -> Optional[RejectionReason]:
    """Reject transfers where source and destination are the same."""
    if source_warehouse_id == destination_warehouse_id:
        return RejectionReason(
            code=ReasonCode.SAME_LOCATION_TRANSFER,
            message="Cannot transfer stock to the same warehouse.",
            policy_name="same_location_transfer_policy",
        )
    return None


def first_rejection(*reasons: Optional[RejectionReason]) -> Optional[RejectionReason]:
    for reason in reasons:
        if reason is not None:
            return reason
    return None
