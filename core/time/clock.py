"""
Costbook Core Time — Explicit Clock Protocol
==============================================
Doctrine: NO datetime.now() inside engine logic.

Movement timestamps are passed explicitly by the caller (they may be
back-dated). The Clock is injected for the one thing the engine stamps
itself: when a record was created or recalculated.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol


# ══════════════════════════════════════════════════════════════
# CLOCK PROTOCOL
# ══════════════════════════════════════════════════════════════

class Clock(Protocol):
    """Injectable time source."""

    def now_utc(self) -> datetime:
        """Return current UTC time."""
        ...  # pragma: no cover


# ══════════════════════════════════════════════════════════════
# IMPLEMENTATIONS
# ══════════════════════════════════════════════════════════════

class SystemClock:
    """Production clock — real system time."""

    def now_utc(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """
    Test clock — returns a fixed timestamp until advanced.

    Usage:
        clock = FixedClock(datetime(2026, 1, 1, tzinfo=timezone.utc))
        clock.advance(60)
    """

    def __init__(self, fixed_dt: datetime) -> None:
        self._fixed_dt = ensure_aware(fixed_dt, "FixedClock time")

    def now_utc(self) -> datetime:
        return self._fixed_dt

    def advance(self, seconds: float) -> datetime:
        self._fixed_dt = self._fixed_dt + timedelta(seconds=seconds)
        return self._fixed_dt


# ══════════════════════════════════════════════════════════════
# HELPERS
# ══════════════════════════════════════════════════════════════

def ensure_aware(value: datetime, field_name: str = "timestamp") -> datetime:
    """Reject naive datetimes; normalise aware ones to UTC."""
    if not isinstance(value, datetime):
        raise ValueError(f"{field_name} must be a datetime.")
    if value.tzinfo is None:
        raise ValueError(f"{field_name} must be timezone-aware.")
    return value.astimezone(timezone.utc)
