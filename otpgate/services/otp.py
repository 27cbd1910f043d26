"""Issue and verify one-time passcodes.

``request_code`` rate-limits, generates, stores and hands the code to the email
transport. ``confirm_code`` looks the record up, rejects expired ones, deletes
it and only then compares, so every completed attempt consumes the code.
Both run under a per-identity lock.
"""

from __future__ import annotations

import hmac
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional, TypeVar

from otpgate.config import settings
from otpgate.database import SessionLocal
from otpgate.services.backends import (
    Clock,
    Deadline,
    OtpBackend,
    OtpRecord,
    StorageError,
    utcnow,
)
from otpgate.services.codes import generate_code
from otpgate.services.durable import DurableBackend
from otpgate.services.email import EmailSendError, EmailTransport, resolve_transport
from otpgate.services.fallback import FallbackBackend
from otpgate.services.locks import IdentityLocks
from otpgate.services.rate_limit import RateLimiter
from otpgate.services.selector import BackendSelector, SelectorState

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class OtpError(Exception):
    error = "OtpError"


class RateLimited(OtpError):
    error = "RateLimited"

    def __init__(self, message: str, retry_after_seconds: int) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class TransportFailure(OtpError):
    error = "TransportFailure"


class StorageFailure(OtpError):
    error = "StorageFailure"


class NoPendingCode(OtpError):
    error = "NoPendingCode"


class Expired(OtpError):
    error = "Expired"


class Mismatch(OtpError):
    error = "Mismatch"


@dataclass(frozen=True)
class IssuedOtp:
    identity: str
    expires_at: datetime
    expires_in_seconds: int


@dataclass(frozen=True)
class VerifiedOtp:
    identity: str
    verified_at: datetime


class OtpService:
    def __init__(
        self,
        selector: BackendSelector,
        rate_limiter: RateLimiter,
        transport: EmailTransport,
        *,
        code_length: int = 6,
        ttl: timedelta = timedelta(minutes=10),
        code_generator: Callable[[int], str] = generate_code,
        clock: Optional[Clock] = None,
        io_timeout_seconds: float = 10.0,
    ) -> None:
        self._selector = selector
        self._rate_limiter = rate_limiter
        self._transport = transport
        self._code_length = code_length
        self._ttl = ttl
        self._generate = code_generator
        self._clock = clock or utcnow
        self._io_timeout_seconds = io_timeout_seconds
        self._locks = IdentityLocks()

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    @property
    def active_backend_name(self) -> str:
        return self._selector.active_backend_name

    def request_code(
        self, identity: str, deadline: Optional[Deadline] = None
    ) -> IssuedOtp:
        deadline = deadline or self._deadline()
        with _storage_failures("request"):
            with self._locks.hold(identity, deadline):
                if not self._rate_limiter.allow(identity, deadline):
                    window = self._rate_limiter.window
                    raise RateLimited(
                        "Too many verification codes requested. Please try again later.",
                        retry_after_seconds=int(window.total_seconds()),
                    )
                code = self._generate(self._code_length)
                record = self._run(
                    lambda backend: backend.put(identity, code, self._ttl, deadline),
                    deadline,
                )

        try:
            self._transport(identity, code)
        except EmailSendError as exc:
            LOGGER.error("OTP delivery to %s failed: %s", identity, exc)
            raise TransportFailure(
                "Verification code could not be delivered; request a new one"
            ) from exc
        LOGGER.info("Issued OTP for %s, expires at %s", identity, record.expires_at)
        return IssuedOtp(
            identity=identity,
            expires_at=record.expires_at,
            expires_in_seconds=int(self._ttl.total_seconds()),
        )

    def confirm_code(
        self, identity: str, code: str, deadline: Optional[Deadline] = None
    ) -> VerifiedOtp:
        deadline = deadline or self._deadline()
        supplied = code.strip()
        with _storage_failures("verify"):
            with self._locks.hold(identity, deadline):
                record = self._run(lambda backend: backend.get(identity, deadline), deadline)
                if record is None:
                    raise NoPendingCode("No verification code found")

                now = self._clock()
                if record.is_expired(now):
                    self._discard(identity, record, deadline)
                    raise Expired("Verification code has expired")

                if not self._discard(identity, record, deadline):
                    # Consumed by another process between our read and delete.
                    raise NoPendingCode("No verification code found")

        if not hmac.compare_digest(supplied.encode("utf-8"), record.code.encode("utf-8")):
            raise Mismatch("Invalid verification code")
        LOGGER.info("Verified OTP for %s", identity)
        return VerifiedOtp(identity=identity, verified_at=now)

    def clear(self, identity: str, deadline: Optional[Deadline] = None) -> bool:
        deadline = deadline or self._deadline()
        with _storage_failures("clear"):
            with self._locks.hold(identity, deadline):
                return self._run(
                    lambda backend: backend.delete(identity, None, deadline), deadline
                )

    def purge_expired(self, deadline: Optional[Deadline] = None) -> int:
        deadline = deadline or self._deadline()
        with _storage_failures("purge"):
            removed = self._run(lambda backend: backend.purge_expired(deadline), deadline)
        if removed:
            LOGGER.info("Purged %d expired OTP records", removed)
        return removed

    def _discard(
        self, identity: str, record: OtpRecord, deadline: Deadline
    ) -> bool:
        return self._run(
            lambda backend: backend.delete(identity, record, deadline), deadline
        )

    def _run(self, operation: Callable[[OtpBackend], T], deadline: Deadline) -> T:
        return self._selector.run(operation, deadline)

    def _deadline(self) -> Deadline:
        return Deadline.after(self._io_timeout_seconds)


@contextmanager
def _storage_failures(operation: str) -> Iterator[None]:
    try:
        yield
    except StorageError as exc:
        LOGGER.error("OTP storage failure during %s: %s", operation, exc)
        raise StorageFailure(
            "Verification code storage is temporarily unavailable"
        ) from exc


def build_otp_service(
    session_factory=None,
    state: Optional[SelectorState] = None,
    transport: Optional[EmailTransport] = None,
    clock: Optional[Clock] = None,
) -> OtpService:
    window = timedelta(seconds=settings.otp_rate_limit_window_seconds)
    durable = DurableBackend(
        session_factory or SessionLocal, clock=clock, issuance_retention=window
    )
    fallback = FallbackBackend(clock=clock, rate_window=window)
    selector = BackendSelector(durable, fallback, state or SelectorState())
    return OtpService(
        selector,
        RateLimiter(selector, settings.otp_rate_limit_max, window),
        transport or resolve_transport(settings.otp_email_backend),
        code_length=settings.otp_length,
        ttl=timedelta(seconds=settings.otp_ttl_seconds),
        clock=clock,
        io_timeout_seconds=settings.otp_io_timeout_seconds,
    )


otp_service = build_otp_service()
