"""Per-task locks serializing lifecycle writes within a process."""

import threading
from contextlib import contextmanager

# Module-level registry of task locks (keyed by task ID)
_task_locks: dict[str, threading.RLock] = {}
_registry_lock = threading.Lock()


def _lock_for(task_id: str) -> threading.RLock:
    with _registry_lock:
        lock = _task_locks.get(task_id)
        if lock is None:
            lock = _task_locks[task_id] = threading.RLock()
        return lock


@contextmanager
def task_lock(task_id: str):
    """Hold the lock for `task_id` for the duration of the block.

    Re-entrant, so a comment that triggers a run can take it twice.
    """
    lock = _lock_for(task_id)
    with lock:
        yield
