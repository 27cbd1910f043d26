"""Storage contract shared by the durable and fallback OTP backends.

Both implementations keep at most one record per identity and track
issuance events separately from record survival, so the rate-limit count
does not drop when a code is verified or expires.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


class StorageError(RuntimeError):
    pass


class SchemaMissingError(StorageError):
    """The durable store answered, but the OTP relations do not exist."""


class StorageTimeout(StorageError):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class OtpRecord:
    identity: str
    code: str
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class Deadline:
    expires_at: float

    @classmethod
    def after(cls, seconds: float) -> "Deadline":
        return cls(expires_at=time.monotonic() + seconds)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    def check(self, operation: str = "storage call") -> None:
        if time.monotonic() >= self.expires_at:
            raise StorageTimeout(f"Deadline exceeded before {operation}")


def check_deadline(deadline: Optional[Deadline], operation: str) -> None:
    if deadline is not None:
        deadline.check(operation)


class OtpBackend(ABC):
    name = "backend"

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return self._clock()

    @abstractmethod
    def probe(self, deadline: Optional[Deadline] = None) -> None:
        """Trivial read; raises SchemaMissingError when the store has no schema."""

    @abstractmethod
    def put(
        self,
        identity: str,
        code: str,
        ttl: timedelta,
        deadline: Optional[Deadline] = None,
    ) -> OtpRecord:
        """Replace any record for identity and log one issuance event."""

    @abstractmethod
    def get(
        self, identity: str, deadline: Optional[Deadline] = None
    ) -> Optional[OtpRecord]:
        ...

    @abstractmethod
    def delete(
        self,
        identity: str,
        expected: Optional[OtpRecord] = None,
        deadline: Optional[Deadline] = None,
    ) -> bool:
        """Remove the record for identity; with ``expected``, only that record.

        Returns True when a record was removed. Deleting nothing is not an error.
        """

    @abstractmethod
    def count_since(
        self,
        identity: str,
        window: timedelta,
        deadline: Optional[Deadline] = None,
    ) -> int:
        ...

    @abstractmethod
    def purge_expired(self, deadline: Optional[Deadline] = None) -> int:
        ...
