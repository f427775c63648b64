"""
Costbook Replay — Replay Context
==================================
Thread-local replay isolation flag.

When replay is active on a thread:
- is_replay_active() returns True
- active_replay_scope() names what is being replayed
- repositories MUST refuse to commit (hard enforcement)

Replay re-derives costs on a scratch copy; the single commit
happens after the context has exited.
"""

import logging
import threading
from typing import Any, Optional

logger = logging.getLogger("costbook.replay")

_replay_state = threading.local()


def is_replay_active() -> bool:
    """Check if replay mode is currently active on this thread."""
    return getattr(_replay_state, "active", False)


def active_replay_scope() -> Optional[Any]:
    return getattr(_replay_state, "scope", None)


class ReplayContext:
    """
    Context manager that activates replay isolation mode.

    Usage:
        with ReplayContext(scope=pair):
            # is_replay_active() == True
            # repository.commit() will RAISE ReplayIsolationError

    Nested use keeps the outer scope active until the outermost exit.
    """

    def __init__(self, scope: Any = None):
        self._scope = scope
        self._previous_active = False
        self._previous_scope = None

    def __enter__(self):
        self._previous_active = is_replay_active()
        self._previous_scope = active_replay_scope()
        _replay_state.active = True
        _replay_state.scope = self._scope
        logger.debug(f"Replay mode ACTIVATED for {self._scope}.")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        _replay_state.active = self._previous_active
        _replay_state.scope = self._previous_scope
        logger.debug(f"Replay mode DEACTIVATED for {self._scope}.")
        return False
