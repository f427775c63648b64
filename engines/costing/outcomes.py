"""
Costbook Costing Engine — Operation Outcomes
==============================================
Every public costing operation produces exactly one outcome.

ACCEPTED → state mutation and transaction record committed together.
REJECTED → nothing committed; reason is mandatory and auditable.

Rules:
- Outcome is immutable (frozen dataclass)
- REJECTED must contain reason (RejectionReason)
- ACCEPTED must NOT contain reason
- No exception crosses the commit boundary: errors become REJECTED
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple

from core.commands.rejection import RejectionReason
from engines.costing.configuration import CostingMethod
from engines.costing.transactions import Transaction


class OutcomeStatus(Enum):
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


def _check_reason(status: OutcomeStatus, reason: Optional[RejectionReason]) -> None:
    if not isinstance(status, OutcomeStatus):
        raise ValueError(f"status must be OutcomeStatus, got {type(status).__name__}.")
    if status == OutcomeStatus.REJECTED and reason is None:
        raise ValueError(
            "REJECTED outcome must include a RejectionReason. "
            "No silent rejections allowed."
        )
    if status == OutcomeStatus.ACCEPTED and reason is not None:
        raise ValueError("ACCEPTED outcome must NOT include a RejectionReason.")


class _OutcomeMixin:
    status: OutcomeStatus
    reason: Optional[RejectionReason]

    @property
    def is_accepted(self) -> bool:
        return self.status == OutcomeStatus.ACCEPTED

    @property
    def is_rejected(self) -> bool:
        return self.status == OutcomeStatus.REJECTED

    @property
    def code(self) -> Optional[str]:
        return self.reason.code if self.reason is not None else None


# ══════════════════════════════════════════════════════════════
# MOVEMENT OUTCOME
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CostingOutcome(_OutcomeMixin):
    """
    Result of receive / issue / adjust / return / transfer.

    transactions holds one record, or two for a transfer
    (TRANSFER_OUT first, TRANSFER_IN second).
    """

    status: OutcomeStatus
    transactions: Tuple[Transaction, ...] = ()
    reason: Optional[RejectionReason] = None
    method: Optional[CostingMethod] = None

    def __post_init__(self):
        _check_reason(self.status, self.reason)
        if self.status == OutcomeStatus.ACCEPTED and not self.transactions:
            raise ValueError("ACCEPTED outcome must carry its transactions.")

    @classmethod
    def accepted(cls, *transactions: Transaction) -> "CostingOutcome":
        return cls(
            status=OutcomeStatus.ACCEPTED,
            transactions=tuple(transactions),
            method=transactions[0].method,
        )

    @classmethod
    def rejected(
        cls, reason: RejectionReason, method: Optional[CostingMethod] = None,
    ) -> "CostingOutcome":
        return cls(status=OutcomeStatus.REJECTED, reason=reason, method=method)

    @property
    def transaction(self) -> Optional[Transaction]:
        return self.transactions[0] if self.transactions else None

    @property
    def total_cost(self) -> Optional[Decimal]:
        return self.transaction.total_cost if self.transactions else None


# ══════════════════════════════════════════════════════════════
# VALUATION OUTCOME
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ValuationOutcome(_OutcomeMixin):
    status: OutcomeStatus
    product_id: str
    warehouse_id: str
    total_value: Optional[Decimal] = None
    quantity_on_hand: Optional[Decimal] = None
    method: Optional[CostingMethod] = None
    reason: Optional[RejectionReason] = None

    def __post_init__(self):
        _check_reason(self.status, self.reason)


# ══════════════════════════════════════════════════════════════
# RECALCULATION OUTCOME
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RecalculationOutcome(_OutcomeMixin):
    """
    Result of recalculate / correct.

    cascaded holds the outcomes of destination pairs re-costed
    because a transfer-out they received from changed cost.
    """

    status: OutcomeStatus
    product_id: str
    warehouse_id: str
    from_timestamp: datetime
    transactions_replayed: int = 0
    changed: Tuple[Transaction, ...] = ()
    reason: Optional[RejectionReason] = None
    cascaded: Tuple["RecalculationOutcome", ...] = field(default_factory=tuple)

    def __post_init__(self):
        _check_reason(self.status, self.reason)

    @property
    def transactions_changed(self) -> int:
        return len(self.changed)
