"""
Readers/writer lock for the stores.

Reads (get, list, count, search, stats, cache lookups) may run together;
writes (add, update, delete, prune, clear, close, cache writes) run alone.
Waiting writers block new readers so a steady read load cannot starve a
prune or close.
"""

import threading
from contextlib import contextmanager
from typing import Generator


class RWLock:
    """
    Writer-preferring readers/writer lock.

    Usage:
        lock = RWLock()
        with lock.read_lock():
            ...
        with lock.write_lock():
            ...
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writers_waiting = 0
        self._writer_active = False

    def acquire_read(self) -> None:
        """Acquire a shared hold."""
        with self._cond:
            while self._writer_active or self._writers_waiting > 0:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        """Release a shared hold."""
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        """Acquire the exclusive hold."""
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._readers > 0 or self._writer_active:
                    self._cond.wait()
                self._writer_active = True
            finally:
                self._writers_waiting -= 1

    def release_write(self) -> None:
        """Release the exclusive hold."""
        with self._cond:
            self._writer_active = False
            self._cond.notify_all()

    @contextmanager
    def read_lock(self) -> Generator[None, None, None]:
        """Context manager for a shared hold."""
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_lock(self) -> Generator[None, None, None]:
        """Context manager for the exclusive hold."""
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()
