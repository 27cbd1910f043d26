from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Protocol

from otpgate.services.backends import (
    Clock,
    Deadline,
    OtpBackend,
    OtpRecord,
    StorageError,
    check_deadline,
)

CODE_KEY_PREFIX = "otp:"
RATE_LIMIT_KEY_PREFIX = "otp-ratelimit:"


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def keys(self) -> Iterable[str]:
        ...


class MemoryKeyValueStore:
    """Process-local string map, the server-side stand-in for browser storage."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._items[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._items)


def _to_epoch(value: datetime) -> float:
    return value.timestamp()


def _from_epoch(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class FallbackBackend(OtpBackend):
    name = "fallback"

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        clock: Optional[Clock] = None,
        rate_window: timedelta = timedelta(hours=24),
    ) -> None:
        super().__init__(clock)
        self._store = store if store is not None else MemoryKeyValueStore()
        self._rate_window = rate_window
        self._lock = threading.RLock()

    def probe(self, deadline: Optional[Deadline] = None) -> None:
        check_deadline(deadline, "probe")

    def put(
        self,
        identity: str,
        code: str,
        ttl: timedelta,
        deadline: Optional[Deadline] = None,
    ) -> OtpRecord:
        check_deadline(deadline, "put")
        now = self.now()
        record = OtpRecord(
            identity=identity, code=code, issued_at=now, expires_at=now + ttl
        )
        with self._lock:
            self._store.delete(CODE_KEY_PREFIX + identity)
            self._store.set(
                CODE_KEY_PREFIX + identity,
                json.dumps(
                    {
                        "code": record.code,
                        "expiry": _to_epoch(record.expires_at),
                        "issuedAt": _to_epoch(record.issued_at),
                    }
                ),
            )
            self._bump_counter(identity, now)
        return record

    def get(
        self, identity: str, deadline: Optional[Deadline] = None
    ) -> Optional[OtpRecord]:
        check_deadline(deadline, "get")
        with self._lock:
            return self._load(identity)

    def delete(
        self,
        identity: str,
        expected: Optional[OtpRecord] = None,
        deadline: Optional[Deadline] = None,
    ) -> bool:
        check_deadline(deadline, "delete")
        with self._lock:
            current = self._load(identity)
            if current is None:
                return False
            if expected is not None and current != expected:
                return False
            self._store.delete(CODE_KEY_PREFIX + identity)
            return True

    def count_since(
        self,
        identity: str,
        window: timedelta,
        deadline: Optional[Deadline] = None,
    ) -> int:
        check_deadline(deadline, "count")
        now = self.now()
        with self._lock:
            counter = self._load_counter(identity)
        if counter is None:
            return 0
        count, window_start = counter
        if now - window_start > window:
            return 0
        return count

    def purge_expired(self, deadline: Optional[Deadline] = None) -> int:
        check_deadline(deadline, "purge")
        now = self.now()
        removed = 0
        with self._lock:
            for key in list(self._store.keys()):
                if not key.startswith(CODE_KEY_PREFIX):
                    continue
                record = self._load(key[len(CODE_KEY_PREFIX):])
                if record is not None and record.is_expired(now):
                    self._store.delete(key)
                    removed += 1
        return removed

    def _load(self, identity: str) -> Optional[OtpRecord]:
        raw_value = self._store.get(CODE_KEY_PREFIX + identity)
        if raw_value is None:
            return None
        try:
            data = json.loads(raw_value)
            return OtpRecord(
                identity=identity,
                code=str(data["code"]),
                issued_at=_from_epoch(float(data["issuedAt"])),
                expires_at=_from_epoch(float(data["expiry"])),
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise StorageError(f"Corrupt OTP entry for {identity!r}") from exc

    def _load_counter(self, identity: str) -> Optional[tuple[int, datetime]]:
        raw_value = self._store.get(RATE_LIMIT_KEY_PREFIX + identity)
        if raw_value is None:
            return None
        try:
            data = json.loads(raw_value)
            return int(data["count"]), _from_epoch(float(data["windowStart"]))
        except (ValueError, KeyError, TypeError) as exc:
            raise StorageError(f"Corrupt rate-limit entry for {identity!r}") from exc

    def _bump_counter(self, identity: str, now: datetime) -> None:
        counter = self._load_counter(identity)
        if counter is None or now - counter[1] > self._rate_window:
            count, window_start = 1, now
        else:
            count, window_start = counter[0] + 1, counter[1]
        self._store.set(
            RATE_LIMIT_KEY_PREFIX + identity,
            json.dumps({"count": count, "windowStart": _to_epoch(window_start)}),
        )
