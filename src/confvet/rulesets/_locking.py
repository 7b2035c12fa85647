from __future__ import annotations

import fcntl
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from confvet.core.errors import StoreError

_THREAD_MUTEXES: dict[str, threading.Lock] = {}


class LockTimeoutError(StoreError, TimeoutError):
    """Raised when the store lock cannot be acquired within the timeout."""


def _thread_mutex(path: Path) -> threading.Lock:
    key = str(path.resolve())
    lock = _THREAD_MUTEXES.get(key)
    if lock is None:
        lock = _THREAD_MUTEXES.setdefault(key, threading.Lock())
    return lock


@contextmanager
def exclusive_lock(
    file_path: Path,
    timeout: float = 30.0,
    *,
    poll_interval: float = 0.05,
) -> Iterator[None]:
    """Hold an exclusive lock on ``<file_path>.lock`` for the duration of the block.

    A process-local mutex serialises threads; ``fcntl.flock`` serialises
    processes.  Both are released on exit.
    """
    start = time.monotonic()
    lock_target = file_path.with_suffix(file_path.suffix + ".lock")
    lock_target.parent.mkdir(parents=True, exist_ok=True)

    mutex = _thread_mutex(lock_target)
    if not mutex.acquire(timeout=timeout):
        raise LockTimeoutError(f"Could not acquire lock on {file_path} within {timeout}s")

    try:
        with lock_target.open("a+") as fh:
            while True:
                try:
                    fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except OSError:
                    if time.monotonic() - start >= timeout:
                        raise LockTimeoutError(
                            f"Could not acquire lock on {file_path} within {timeout}s"
                        ) from None
                    time.sleep(poll_interval)
            try:
                yield
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
    finally:
        mutex.release()
