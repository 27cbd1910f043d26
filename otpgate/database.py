from contextlib import contextmanager
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from otpgate.config import settings


def _build_database_url(raw_url: str) -> str:
    if raw_url.startswith("postgres://"):
        return raw_url.replace("postgres://", "postgresql+psycopg://", 1)
    if raw_url.startswith("postgresql://"):
        return raw_url.replace("postgresql://", "postgresql+psycopg://", 1)
    return raw_url


def build_engine(raw_url: str) -> Engine:
    url = _build_database_url(raw_url)
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(
        url, pool_pre_ping=True, pool_timeout=settings.otp_io_timeout_seconds
    )


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(
        bind=bind, autoflush=False, autocommit=False, expire_on_commit=False
    )


DATABASE_URL = _build_database_url(settings.database_url)
engine = build_engine(DATABASE_URL)
SessionLocal = build_session_factory(engine)
Base = declarative_base()


def init_db(bind: Optional[Engine] = None) -> None:
    if not DATABASE_URL:
        raise RuntimeError("DATABASE_URL is not configured")
    from otpgate.models import otp as _otp  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None):
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
