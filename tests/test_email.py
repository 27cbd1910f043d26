import base64
import dataclasses
import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from urllib.error import URLError

import pytest

from otpgate.services import email as email_service
from otpgate.services.email import (
    EmailSendError,
    build_body,
    build_raw_message,
    log_otp_email,
    resolve_transport,
    send_otp_email,
)
from otpgate.services.otp import TransportFailure


class _FakeResponse:
    def __init__(self, body=b"{}", read_error=None):
        self._body = body
        self._read_error = read_error

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def read(self):
        if self._read_error is not None:
            raise self._read_error
        return self._body


def _write_token(path, **overrides):
    data = {
        "token": "cached-access-token",
        "expiry": (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat(),
        "refresh_token": "refresh",
        "client_id": "client",
        "client_secret": "secret",
    }
    data.update(overrides)
    path.write_text(json.dumps(data), encoding="utf-8")


@pytest.fixture
def token_file(tmp_path):
    path = tmp_path / "token.json"
    _write_token(path)
    return path


@pytest.fixture
def gmail_settings(monkeypatch, token_file):
    configured = dataclasses.replace(
        email_service.settings,
        otp_email_sender="noreply@cosmic.example",
        gmail_token_file=str(token_file),
    )
    monkeypatch.setattr(email_service, "settings", configured)
    return configured


def test_body_mentions_code_and_lifetime():
    body = build_body("482913", 600)

    assert "482913" in body
    assert "10 minute(s)" in body


def test_raw_message_is_base64url_rfc2822():
    raw = build_raw_message("from@x.com", "to@x.com", "Subject line", "hello")

    decoded = base64.urlsafe_b64decode(raw.encode("ascii")).decode("utf-8")
    assert decoded.startswith("From: from@x.com\r\nTo: to@x.com\r\nSubject: Subject line")
    assert decoded.endswith("\r\n\r\nhello")


def test_resolve_transport():
    assert resolve_transport("gmail") is send_otp_email
    assert resolve_transport("console") is log_otp_email
    with pytest.raises(ValueError):
        resolve_transport("carrier-pigeon")


def test_gmail_transport_requires_sender(monkeypatch):
    monkeypatch.setattr(
        email_service,
        "settings",
        dataclasses.replace(email_service.settings, otp_email_sender=""),
    )

    with pytest.raises(EmailSendError):
        send_otp_email("a@x.com", "123456")


def test_gmail_transport_posts_message_with_cached_token(monkeypatch, gmail_settings):
    captured = {}

    def fake_urlopen(request, timeout):
        captured["request"] = request
        captured["timeout"] = timeout
        return _FakeResponse()

    monkeypatch.setattr(email_service, "urlopen", fake_urlopen)

    send_otp_email("a@x.com", "482913")

    request = captured["request"]
    assert request.full_url == email_service.GMAIL_SEND_ENDPOINT
    assert request.get_header("Authorization") == "Bearer cached-access-token"
    assert captured["timeout"] == gmail_settings.otp_io_timeout_seconds
    raw = json.loads(request.data.decode("utf-8"))["raw"]
    assert "482913" in base64.urlsafe_b64decode(raw).decode("utf-8")


def test_stale_token_is_refreshed_and_cached(monkeypatch, gmail_settings, token_file):
    _write_token(
        token_file,
        expiry=(datetime.now(timezone.utc) - timedelta(minutes=5)).isoformat(),
    )
    calls = []

    def fake_urlopen(request, timeout):
        calls.append(request)
        if request.full_url == email_service.GOOGLE_TOKEN_ENDPOINT:
            return _FakeResponse(b'{"access_token": "fresh-token", "expires_in": 1800}')
        return _FakeResponse()

    monkeypatch.setattr(email_service, "urlopen", fake_urlopen)

    send_otp_email("a@x.com", "482913")

    assert [call.full_url for call in calls] == [
        email_service.GOOGLE_TOKEN_ENDPOINT,
        email_service.GMAIL_SEND_ENDPOINT,
    ]
    assert calls[1].get_header("Authorization") == "Bearer fresh-token"
    assert json.loads(token_file.read_text(encoding="utf-8"))["token"] == "fresh-token"


def test_failed_token_cache_write_still_sends(monkeypatch, gmail_settings, token_file):
    _write_token(token_file, token=None)
    sent = []

    def fake_urlopen(request, timeout):
        if request.full_url == email_service.GOOGLE_TOKEN_ENDPOINT:
            return _FakeResponse(b'{"access_token": "fresh-token"}')
        sent.append(request)
        return _FakeResponse()

    def read_only(self, *args, **kwargs):
        raise PermissionError("read-only file system")

    monkeypatch.setattr(email_service, "urlopen", fake_urlopen)
    monkeypatch.setattr(Path, "write_text", read_only)

    send_otp_email("a@x.com", "482913")

    assert len(sent) == 1


@pytest.mark.parametrize(
    "failure",
    [
        URLError("connection refused"),
        TimeoutError("The read operation timed out"),
        ConnectionResetError("connection reset by peer"),
    ],
)
def test_gmail_transport_wraps_network_errors(monkeypatch, gmail_settings, failure):
    monkeypatch.setattr(
        email_service,
        "urlopen",
        lambda request, timeout: _FakeResponse(read_error=failure),
    )

    with pytest.raises(EmailSendError) as excinfo:
        send_otp_email("a@x.com", "482913")

    assert excinfo.value.__cause__ is failure


@pytest.mark.parametrize("contents", ["{not json", "[1, 2, 3]"])
def test_corrupt_token_file_is_a_send_error(gmail_settings, token_file, contents):
    token_file.write_text(contents, encoding="utf-8")

    with pytest.raises(EmailSendError):
        send_otp_email("a@x.com", "482913")


def test_malformed_token_grant_is_a_send_error(monkeypatch, gmail_settings, token_file):
    _write_token(token_file, token=None)
    monkeypatch.setattr(
        email_service,
        "urlopen",
        lambda request, timeout: _FakeResponse(b"<html>gateway error</html>"),
    )

    with pytest.raises(EmailSendError):
        send_otp_email("a@x.com", "482913")


def test_read_timeout_reaches_caller_as_transport_failure(
    monkeypatch, gmail_settings, make_service, durable, outbox
):
    monkeypatch.setattr(
        email_service,
        "urlopen",
        lambda request, timeout: _FakeResponse(
            read_error=TimeoutError("The read operation timed out")
        ),
    )
    service = make_service(durable, transport=send_otp_email)

    with pytest.raises(TransportFailure):
        service.request_code("a@x.com")

    assert durable.get("a@x.com") is not None


def test_console_transport_logs_message(caplog):
    with caplog.at_level(logging.INFO, logger="otpgate.services.email"):
        log_otp_email("a@x.com", "482913")

    assert "a@x.com" in caplog.text
    assert "482913" in caplog.text
