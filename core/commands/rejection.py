"""
Costbook Command Layer — Rejection Model
==========================================
Structured reasons for refused costing operations.

A rejection is returned to the caller, never raised past the
service boundary. The calling document flow decides whether to
hold or reject its document.

Every rejection must be:
- Deterministic (same input → same rejection)
- Auditable (code + message + policy)
- Machine-readable (code, details)
- Human-readable (message)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# ══════════════════════════════════════════════════════════════
# REJECTION REASON (frozen explanation structure)
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RejectionReason:
    """
    Structured reason for a refused operation.

    Fields:
        code:        Machine-readable code (see ReasonCode).
        message:     Human-readable explanation.
        policy_name: Policy or component that refused.
        details:     Optional machine-readable context
                     (e.g. available / requested quantity).
    """

    code: str
    message: str
    policy_name: str
    details: Dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        for name in ("code", "message", "policy_name"):
            value = getattr(self, name)
            if not value or not isinstance(value, str):
                raise ValueError(f"{name} must be a non-empty string.")

    def to_dict(self) -> dict:
        data = {
            "code": self.code,
            "message": self.message,
            "policy_name": self.policy_name,
        }
        if self.details:
            data["details"] = {k: str(v) for k, v in self.details.items()}
        return data


# ══════════════════════════════════════════════════════════════
# STANDARD REJECTION CODES
# ══════════════════════════════════════════════════════════════

class ReasonCode:
    """
    Known rejection codes.

    Convention: SCREAMING_SNAKE_CASE.
    """

    # ── General ───────────────────────────────────────────────
    COSTING_FAILED = "COSTING_FAILED"

    # ── Stock / arithmetic ────────────────────────────────────
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    INVALID_COST = "INVALID_COST"
    SAME_LOCATION_TRANSFER = "SAME_LOCATION_TRANSFER"

    # ── Configuration ─────────────────────────────────────────
    CONFIGURATION_CONFLICT = "CONFIGURATION_CONFLICT"

    # ── Replay ────────────────────────────────────────────────
    REPLAY_DIVERGENCE = "REPLAY_DIVERGENCE"

    # ── Persistence ───────────────────────────────────────────
    PERSISTENCE_FAILED = "PERSISTENCE_FAILED"
