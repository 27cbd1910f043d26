from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterator, Optional

from sqlalchemy import delete, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from otpgate.database import session_scope
from otpgate.models.otp import OtpEntry, OtpIssuanceEntry
from otpgate.services.backends import (
    Clock,
    Deadline,
    OtpBackend,
    OtpRecord,
    SchemaMissingError,
    StorageError,
    StorageTimeout,
    check_deadline,
)

LOGGER = logging.getLogger(__name__)

# PostgreSQL undefined_table, MySQL ER_NO_SUCH_TABLE.
_MISSING_RELATION_CODES = {"42P01", 1146}
# PostgreSQL query_canceled, raised when statement_timeout fires.
_QUERY_CANCELED = "57014"


def is_missing_relation(exc: SQLAlchemyError) -> bool:
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _MISSING_RELATION_CODES:
        return True
    args = getattr(orig, "args", ())
    if args and args[0] in _MISSING_RELATION_CODES:
        return True
    message = str(orig if orig is not None else exc).lower()
    if "no such table" in message:
        return True
    if "relation" in message and "does not exist" in message:
        return True
    return "table" in message and "doesn't exist" in message


def is_statement_timeout(exc: SQLAlchemyError) -> bool:
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return sqlstate == _QUERY_CANCELED


def bound_statement_time(session: Session, deadline: Optional[Deadline]) -> None:
    """Cap how long the database may spend on this session's statements."""
    if deadline is None:
        return
    millis = max(1, int(deadline.remaining() * 1000))
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        # Transaction-local; reset at commit or rollback.
        session.execute(select(func.set_config("statement_timeout", str(millis), True)))
    elif dialect == "sqlite":
        session.execute(text(f"PRAGMA busy_timeout = {millis}"))


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_record(entry: OtpEntry) -> OtpRecord:
    return OtpRecord(
        identity=entry.identity,
        code=entry.code,
        issued_at=_as_utc(entry.issued_at),
        expires_at=_as_utc(entry.expires_at),
    )


class DurableBackend(OtpBackend):
    name = "durable"

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        clock: Optional[Clock] = None,
        issuance_retention: timedelta = timedelta(hours=24),
    ) -> None:
        super().__init__(clock)
        self._session_factory = session_factory
        self._issuance_retention = issuance_retention

    @contextmanager
    def _session(
        self, operation: str, deadline: Optional[Deadline]
    ) -> Iterator[Session]:
        check_deadline(deadline, operation)
        try:
            with session_scope(self._session_factory) as session:
                bound_statement_time(session, deadline)
                yield session
        except SQLAlchemyError as exc:
            if is_missing_relation(exc):
                raise SchemaMissingError(
                    f"OTP tables are missing (during {operation})"
                ) from exc
            if is_statement_timeout(exc):
                raise StorageTimeout(
                    f"Durable OTP store timed out during {operation}"
                ) from exc
            LOGGER.error("Durable OTP store failed during %s: %s", operation, exc)
            raise StorageError(f"Durable OTP store failed during {operation}") from exc

    def probe(self, deadline: Optional[Deadline] = None) -> None:
        with self._session("probe", deadline) as session:
            session.execute(select(OtpEntry.id).limit(1)).all()
            session.execute(select(OtpIssuanceEntry.id).limit(1)).all()

    def put(
        self,
        identity: str,
        code: str,
        ttl: timedelta,
        deadline: Optional[Deadline] = None,
    ) -> OtpRecord:
        now = self.now()
        record = OtpRecord(
            identity=identity, code=code, issued_at=now, expires_at=now + ttl
        )
        with self._session("put", deadline) as session:
            session.execute(
                delete(OtpIssuanceEntry).where(
                    OtpIssuanceEntry.issued_at < now - self._issuance_retention
                )
            )
            session.execute(delete(OtpEntry).where(OtpEntry.identity == identity))
            session.add(
                OtpEntry(
                    identity=identity,
                    code=record.code,
                    issued_at=record.issued_at,
                    expires_at=record.expires_at,
                )
            )
            session.add(OtpIssuanceEntry(identity=identity, issued_at=now))
        return record

    def get(
        self, identity: str, deadline: Optional[Deadline] = None
    ) -> Optional[OtpRecord]:
        with self._session("get", deadline) as session:
            entry = session.execute(
                select(OtpEntry).where(OtpEntry.identity == identity)
            ).scalar_one_or_none()
            if entry is None:
                return None
            return _to_record(entry)

    def delete(
        self,
        identity: str,
        expected: Optional[OtpRecord] = None,
        deadline: Optional[Deadline] = None,
    ) -> bool:
        conditions = [OtpEntry.identity == identity]
        if expected is not None:
            conditions.append(OtpEntry.code == expected.code)
            conditions.append(OtpEntry.issued_at == expected.issued_at)
        with self._session("delete", deadline) as session:
            result = session.execute(delete(OtpEntry).where(*conditions))
            return result.rowcount > 0

    def count_since(
        self,
        identity: str,
        window: timedelta,
        deadline: Optional[Deadline] = None,
    ) -> int:
        cutoff = self.now() - window
        with self._session("count", deadline) as session:
            return session.execute(
                select(func.count())
                .select_from(OtpIssuanceEntry)
                .where(
                    OtpIssuanceEntry.identity == identity,
                    OtpIssuanceEntry.issued_at >= cutoff,
                )
            ).scalar_one()

    def purge_expired(self, deadline: Optional[Deadline] = None) -> int:
        now = self.now()
        with self._session("purge", deadline) as session:
            result = session.execute(delete(OtpEntry).where(OtpEntry.expires_at < now))
            session.execute(
                delete(OtpIssuanceEntry).where(
                    OtpIssuanceEntry.issued_at < now - self._issuance_retention
                )
            )
            return result.rowcount
