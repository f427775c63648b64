"""
Costbook Command Layer
========================
Every refused operation carries exactly one RejectionReason.
"""

from core.commands.rejection import (
    ReasonCode,
    RejectionReason,
)

__all__ = ["ReasonCode", "RejectionReason"]
