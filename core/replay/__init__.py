"""
Costbook Replay - Public API
============================
Transaction log = truth archive.
Recalculation = time machine that re-derives costs, never inputs.
"""

from core.replay.context import ReplayContext, active_replay_scope, is_replay_active
from core.replay.errors import ReplayError, ReplayIsolationError

__all__ = [
    "ReplayContext",
    "ReplayError",
    "ReplayIsolationError",
    "active_replay_scope",
    "is_replay_active",
]
