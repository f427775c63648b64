"""
Tests for core.replay — thread-local replay isolation.
"""

import threading

import pytest

from core.replay import (
    ReplayContext,
    ReplayError,
    ReplayIsolationError,
    active_replay_scope,
    is_replay_active,
)
from engines.costing.persistence import CommitBatch, InMemoryCostingRepository, guard_replay_isolation


class TestReplayContext:
    def test_inactive_by_default(self):
        assert is_replay_active() is False
        assert active_replay_scope() is None

    def test_activates_and_restores(self):
        with ReplayContext(scope="SKU-1@WH-A"):
            assert is_replay_active() is True
            assert active_replay_scope() == "SKU-1@WH-A"
        assert is_replay_active() is False
        assert active_replay_scope() is None

    def test_nesting_restores_outer_scope(self):
        with ReplayContext(scope="outer"):
            with ReplayContext(scope="inner"):
                assert active_replay_scope() == "inner"
            assert is_replay_active() is True
            assert active_replay_scope() == "outer"
        assert is_replay_active() is False

    def test_restored_after_exception(self):
        with pytest.raises(RuntimeError):
            with ReplayContext(scope="failing"):
                raise RuntimeError("boom")
        assert is_replay_active() is False

    def test_flag_is_thread_local(self):
        seen = []
        with ReplayContext(scope="main"):
            worker = threading.Thread(target=lambda: seen.append(is_replay_active()))
            worker.start()
            worker.join(timeout=5)
        assert seen == [False]


class TestReplayIsolation:
    def test_guard_passes_outside_replay(self):
        guard_replay_isolation()

    def test_guard_blocks_inside_replay(self):
        with ReplayContext():
            with pytest.raises(ReplayIsolationError):
                guard_replay_isolation()

    def test_repository_refuses_commit_during_replay(self):
        repository = InMemoryCostingRepository()
        with ReplayContext(scope="SKU-1@WH-A"):
            with pytest.raises(ReplayError):
                repository.commit(CommitBatch(transactions=(), states=()))
        repository.commit(CommitBatch(transactions=(), states=()))
        assert repository.commit_count == 1
