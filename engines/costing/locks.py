"""
Costbook Costing Engine — Locks
=================================
Per-(product, warehouse) mutual exclusion.

- Mutations (receive / issue / adjust / transfer / recalculate) take
  the pair's write lock; unrelated pairs proceed independently
- valuation takes the read lock: readers share, never interleave
  with a half-applied mutation
- Multi-pair operations acquire in sorted key order (no deadlock)
- No cross-pair ordering guarantee
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from contextlib import ExitStack, contextmanager
from typing import Dict, Iterator

from engines.costing.configuration import CostingMethod
from engines.costing.errors import ConfigurationConflictError
from engines.costing.state import PairKey

logger = logging.getLogger("costbook.costing")


class ReadWriteLock:
    """
    Many readers or one writer. Writer-preferring: once a writer
    waits, new readers queue behind it.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class PairLockRegistry:
    """One ReadWriteLock per pair, created lazily."""

    def __init__(self) -> None:
        self._locks: Dict[PairKey, ReadWriteLock] = {}
        self._lock = threading.Lock()

    def _get(self, key: PairKey) -> ReadWriteLock:
        with self._lock:
            rw = self._locks.get(key)
            if rw is None:
                rw = ReadWriteLock()
                self._locks[key] = rw
            return rw

    @contextmanager
    def write(self, *keys: PairKey) -> Iterator[None]:
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self._get(key).write())
            yield

    @contextmanager
    def read(self, key: PairKey) -> Iterator[None]:
        with self._get(key).read():
            yield


class ProductMethodGuard:
    """
    A product may not be served by two methods at the same time.

    Operations register the method they resolved for the duration of
    the operation. An operation resolving a different method while
    others are in flight for the same product is refused; once they
    drain, the new method takes over at that boundary.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Dict[str, CostingMethod] = {}
        self._in_flight: Dict[str, int] = defaultdict(int)

    @contextmanager
    def hold(self, product_id: str, method: CostingMethod) -> Iterator[None]:
        with self._lock:
            current = self._active.get(product_id)
            if current is not None and current != method and self._in_flight[product_id]:
                logger.warning(
                    f"Method conflict for product {product_id}: "
                    f"{method.value} requested while {current.value} in flight."
                )
                raise ConfigurationConflictError(
                    f"Product {product_id} is being costed under {current.value}; "
                    f"cannot start a {method.value} operation concurrently.",
                    details={"product_id": product_id, "active": current.value,
                             "requested": method.value},
                )
            self._active[product_id] = method
            self._in_flight[product_id] += 1
        try:
            yield
        finally:
            with self._lock:
                self._in_flight[product_id] -= 1
                if self._in_flight[product_id] == 0:
                    del self._in_flight[product_id]

    def active_method(self, product_id: str):
        with self._lock:
            return self._active.get(product_id)
