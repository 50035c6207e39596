"""
In-process exclusion between subtree moves and full path rebuilds.

Moves share the guard with each other (the store serializes them through row
versions); a rebuild needs it exclusively. Neither side waits: the loser
gets RebuildInProgressError and may retry later.

The guard only sees the current process. Workers in other processes are not
excluded, but every row a rebuild or a move rewrites is version-checked, so
an overlap across processes ends with ConcurrentModificationError on one
side rather than mixed paths.
"""
import threading
from contextlib import contextmanager

from orgtree.core.exceptions import RebuildInProgressError


class StructureGuard:
    def __init__(self):
        self._lock = threading.Lock()
        self._active_moves = 0
        self._rebuilding = False

    @property
    def rebuilding(self) -> bool:
        return self._rebuilding

    @contextmanager
    def shared(self):
        with self._lock:
            if self._rebuilding:
                raise RebuildInProgressError("Department paths are being rebuilt; retry the move later")
            self._active_moves += 1
        try:
            yield
        finally:
            with self._lock:
                self._active_moves -= 1

    @contextmanager
    def exclusive(self):
        with self._lock:
            if self._rebuilding:
                raise RebuildInProgressError()
            if self._active_moves:
                raise RebuildInProgressError(
                    f"Cannot rebuild paths while {self._active_moves} move(s) are running"
                )
            self._rebuilding = True
        try:
            yield
        finally:
            with self._lock:
                self._rebuilding = False


# Shared by every service instance in the process
default_guard = StructureGuard()
