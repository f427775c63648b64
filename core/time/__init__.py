"""
Costbook Core Time — Public API
=================================
Explicit clock protocol.
Doctrine: NO datetime.now() in engine logic.
"""

from core.time.clock import (
    Clock,
    FixedClock,
    SystemClock,
    ensure_aware,
)

__all__ = [
    "Clock",
    "FixedClock",
    "SystemClock",
    "ensure_aware",
]
