"""Email transports for verification codes.

A transport is any ``(identity, code)`` callable that raises ``EmailSendError``
when the message cannot be handed off. ``gmail`` posts through the Gmail API
with a stored OAuth refresh token; ``console`` only writes the message to the log.
"""

from __future__ import annotations

import base64
import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.error import HTTPError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from otpgate.config import Settings, settings

LOGGER = logging.getLogger(__name__)

GMAIL_SEND_ENDPOINT = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"
GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
CREDENTIALS_DIR = Path(__file__).resolve().parents[2] / "credentials"
TOKEN_REFRESH_MARGIN = timedelta(minutes=1)
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600

EmailTransport = Callable[[str, str], None]


class EmailSendError(RuntimeError):
    pass


def build_body(code: str, ttl_seconds: int) -> str:
    minutes = max(1, ttl_seconds // 60)
    return (
        "Thank you for registering with Cosmic Nexus!\n\n"
        f"Your verification code is {code}.\n\n"
        f"This code will expire in {minutes} minute(s).\n\n"
        "If you didn't request this code, please ignore this email."
    )


def build_raw_message(sender: str, recipient: str, subject: str, body: str) -> str:
    headers = {
        "From": sender,
        "To": recipient,
        "Subject": subject,
        "MIME-Version": "1.0",
        "Content-Type": "text/plain; charset=utf-8",
    }
    message = "".join(f"{name}: {value}\r\n" for name, value in headers.items())
    message += "\r\n" + body
    # Gmail wants the RFC 2822 text base64url-encoded.
    return base64.urlsafe_b64encode(message.encode("utf-8")).decode("ascii")


def _call_google(request: Request, action: str, timeout: float) -> bytes:
    try:
        with urlopen(request, timeout=timeout) as response:
            return response.read()
    except HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        LOGGER.error("Google rejected %s: %s", action, detail)
        raise EmailSendError(f"Google rejected {action}") from exc
    except OSError as exc:
        # URLError, socket timeouts and dropped connections.
        raise EmailSendError(f"Could not reach Google for {action}: {exc}") from exc


def _read_json(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise EmailSendError(f"Missing Gmail file: {path}") from exc
    except (OSError, ValueError) as exc:
        raise EmailSendError(f"Unreadable Gmail file: {path}") from exc
    if not isinstance(data, dict):
        raise EmailSendError(f"Gmail file {path} does not hold a JSON object")
    return data


def _parse_expiry(raw_value: Any) -> Optional[datetime]:
    if not isinstance(raw_value, str) or not raw_value:
        return None
    try:
        parsed = datetime.fromisoformat(raw_value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class GmailTokenFile:
    """The authorized-user JSON that holds the refresh token and a cached access token."""

    def __init__(self, path: Path, data: dict[str, Any]) -> None:
        self.path = path
        self.data = data

    @classmethod
    def load(cls, path: Path) -> "GmailTokenFile":
        return cls(path, _read_json(path))

    def cached_token(self, now: datetime) -> Optional[str]:
        token = self.data.get("token")
        expiry = _parse_expiry(self.data.get("expiry"))
        if token and expiry and expiry > now + TOKEN_REFRESH_MARGIN:
            return token
        return None

    def store(self, access_token: str, expires_at: datetime) -> None:
        self.data["token"] = access_token
        self.data["expiry"] = expires_at.isoformat()
        try:
            self.path.write_text(json.dumps(self.data), encoding="utf-8")
        except OSError as exc:
            # The refreshed token is still good for the current send.
            LOGGER.warning("Could not cache Gmail access token in %s: %s", self.path, exc)


class GmailSender:
    def __init__(
        self,
        sender: str,
        subject: str,
        ttl_seconds: int,
        token_path: Path,
        credentials_path: Path,
        timeout: float,
    ) -> None:
        self.sender = sender
        self.subject = subject
        self.ttl_seconds = ttl_seconds
        self.token_path = token_path
        self.credentials_path = credentials_path
        self.timeout = timeout

    @classmethod
    def from_settings(cls, config: Settings) -> "GmailSender":
        return cls(
            sender=config.otp_email_sender,
            subject=config.otp_email_subject,
            ttl_seconds=config.otp_ttl_seconds,
            token_path=Path(config.gmail_token_file or CREDENTIALS_DIR / "token.json"),
            credentials_path=Path(
                config.gmail_credentials_file or CREDENTIALS_DIR / "credentials.json"
            ),
            timeout=config.otp_io_timeout_seconds,
        )

    def __call__(self, to_email: str, code: str) -> None:
        if not self.sender:
            raise EmailSendError("OTP email sender is not configured")
        raw_message = build_raw_message(
            self.sender, to_email, self.subject, build_body(code, self.ttl_seconds)
        )
        request = Request(
            GMAIL_SEND_ENDPOINT,
            data=json.dumps({"raw": raw_message}).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self.access_token()}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        _call_google(request, "OTP email", self.timeout)

    def access_token(self) -> str:
        tokens = GmailTokenFile.load(self.token_path)
        now = datetime.now(timezone.utc)
        cached = tokens.cached_token(now)
        if cached:
            return cached

        refresh_token = tokens.data.get("refresh_token")
        if not refresh_token:
            raise EmailSendError("Gmail refresh token is missing")
        client_id, client_secret = self._client_credentials(tokens.data)
        request = Request(
            tokens.data.get("token_uri") or GOOGLE_TOKEN_ENDPOINT,
            data=urlencode(
                {
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                }
            ).encode("utf-8"),
            method="POST",
        )
        try:
            grant = json.loads(_call_google(request, "token refresh", self.timeout))
        except ValueError as exc:
            raise EmailSendError("Gmail token endpoint returned malformed JSON") from exc

        access_token = grant.get("access_token") if isinstance(grant, dict) else None
        if not access_token:
            raise EmailSendError("Gmail token refresh did not return an access token")
        try:
            lifetime = int(grant.get("expires_in", DEFAULT_TOKEN_LIFETIME_SECONDS))
        except (TypeError, ValueError):
            lifetime = DEFAULT_TOKEN_LIFETIME_SECONDS
        tokens.store(access_token, now + timedelta(seconds=lifetime))
        return access_token

    def _client_credentials(self, token_data: dict[str, Any]) -> tuple[str, str]:
        if token_data.get("client_id") and token_data.get("client_secret"):
            return token_data["client_id"], token_data["client_secret"]
        credentials = _read_json(self.credentials_path)
        # Desktop-app downloads nest the client under "installed".
        client = credentials.get("installed") or credentials
        client_id = client.get("client_id")
        client_secret = client.get("client_secret")
        if not client_id or not client_secret:
            raise EmailSendError("Gmail client credentials are missing")
        return client_id, client_secret


def send_otp_email(to_email: str, code: str) -> None:
    """Deliver a verification code through the Gmail API."""
    GmailSender.from_settings(settings)(to_email, code)


def log_otp_email(to_email: str, code: str) -> None:
    """Development transport: write the message to the log instead of sending it."""
    LOGGER.info(
        "OTP email (console transport) to=%s subject=%r\n%s",
        to_email,
        settings.otp_email_subject,
        build_body(code, settings.otp_ttl_seconds),
    )


_TRANSPORTS: dict[str, EmailTransport] = {
    "gmail": send_otp_email,
    "console": log_otp_email,
}


def resolve_transport(name: str) -> EmailTransport:
    try:
        return _TRANSPORTS[name]
    except KeyError:
        raise ValueError(f"Unknown OTP email backend: {name!r}") from None
