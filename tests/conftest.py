import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DB_AUTO_CREATE"] = "false"
os.environ["OTP_EMAIL_BACKEND"] = "console"

from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402

from otpgate.database import build_engine, build_session_factory, init_db  # noqa: E402
from otpgate.services.durable import DurableBackend  # noqa: E402
from otpgate.services.email import EmailSendError  # noqa: E402
from otpgate.services.fallback import FallbackBackend  # noqa: E402
from otpgate.services.otp import OtpService  # noqa: E402
from otpgate.services.rate_limit import RateLimiter  # noqa: E402
from otpgate.services.selector import BackendSelector, SelectorState  # noqa: E402


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class Outbox:
    """Email transport double that remembers what it was asked to send."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    def __call__(self, identity: str, code: str) -> None:
        self.sent.append((identity, code))
        if self.fail:
            raise EmailSendError("SMTP relay refused the message")

    def last_code(self, identity: str) -> str:
        for sent_to, code in reversed(self.sent):
            if sent_to == identity:
                return code
        raise AssertionError(f"no code sent to {identity}")


class ScriptedCodes:
    def __init__(self, *codes: str) -> None:
        self._codes = list(codes)
        self.calls = 0

    def __call__(self, length: int) -> str:
        self.calls += 1
        code = self._codes.pop(0)
        assert len(code) == length
        return code


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def outbox():
    return Outbox()


@pytest.fixture
def db_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'otp.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    init_db(bind=db_engine)
    return build_session_factory(db_engine)


@pytest.fixture
def bare_session_factory(db_engine):
    """A reachable database that has never had the OTP tables created."""
    return build_session_factory(db_engine)


@pytest.fixture
def durable(session_factory, clock):
    return DurableBackend(session_factory, clock=clock)


@pytest.fixture
def fallback(clock):
    return FallbackBackend(clock=clock)


@pytest.fixture
def make_service(clock, outbox):
    def _make(
        durable_backend, fallback_backend=None, generator=None, transport=None, **kwargs
    ):
        fallback_backend = fallback_backend or FallbackBackend(clock=clock)
        selector = BackendSelector(durable_backend, fallback_backend, SelectorState())
        limiter = RateLimiter(selector, max_per_window=5, window=timedelta(hours=24))
        options = {"clock": clock}
        if generator is not None:
            options["code_generator"] = generator
        options.update(kwargs)
        return OtpService(selector, limiter, transport or outbox, **options)

    return _make


@pytest.fixture
def service(make_service, durable):
    return make_service(durable)


@pytest.fixture
def scripted_codes():
    return ScriptedCodes
