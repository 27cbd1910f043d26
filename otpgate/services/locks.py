from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from otpgate.services.backends import Deadline, StorageTimeout


class IdentityLocks:
    """One lock per identity, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, identity: str, deadline: Optional[Deadline] = None) -> Iterator[None]:
        lock = self._checkout(identity)
        try:
            timeout = -1 if deadline is None else deadline.remaining()
            if not lock.acquire(timeout=timeout):
                raise StorageTimeout(f"Timed out waiting for OTP lock on {identity!r}")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(identity)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, identity: str) -> threading.Lock:
        with self._guard:
            lock, users = self._locks.get(identity, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[identity] = (lock, users + 1)
            return lock

    def _checkin(self, identity: str) -> None:
        with self._guard:
            lock, users = self._locks[identity]
            if users <= 1:
                del self._locks[identity]
            else:
                self._locks[identity] = (lock, users - 1)
