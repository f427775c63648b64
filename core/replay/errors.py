"""
Costbook Replay — Errors
==========================
Error types for the recalculation (replay) layer.
"""


class ReplayError(Exception):
    """Base error for all replay operations."""
    pass


class ReplayIsolationError(ReplayError):
    """Attempt to commit to the store while a replay is running."""

    def __init__(self, message: str = None):
        super().__init__(
            message or "Cannot commit while replay is active. "
            "Replay works on a scratch copy and commits once, after it ends."
        )
