import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv(override=True)


def _env_bool(name: str, default: bool = False) -> bool:
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_list(name: str, default: str = "") -> tuple[str, ...]:
    raw_value = os.getenv(name, default)
    return tuple(item.strip() for item in raw_value.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./otpgate.db")
    db_auto_create: bool = _env_bool("DB_AUTO_CREATE", True)
    otp_length: int = int(os.getenv("OTP_LENGTH", "6"))
    otp_ttl_seconds: int = int(os.getenv("OTP_TTL_SECONDS", "600"))
    otp_rate_limit_max: int = int(os.getenv("OTP_RATE_LIMIT_MAX", "5"))
    otp_rate_limit_window_seconds: int = int(
        os.getenv("OTP_RATE_LIMIT_WINDOW_SECONDS", "86400")
    )
    otp_io_timeout_seconds: float = float(os.getenv("OTP_IO_TIMEOUT_SECONDS", "10"))
    otp_email_backend: str = os.getenv("OTP_EMAIL_BACKEND", "gmail").strip().lower()
    otp_email_sender: str = (
        os.getenv("OTP_EMAIL_SENDER")
        or os.getenv("GMAIL_SENDER")
        or os.getenv("FROM_EMAIL", "")
    )
    otp_email_subject: str = os.getenv(
        "OTP_EMAIL_SUBJECT", "Your Cosmic Nexus verification code"
    )
    gmail_token_file: str = os.getenv("GMAIL_TOKEN_FILE", "")
    gmail_credentials_file: str = os.getenv(
        "GMAIL_CREDENTIALS_FILE", os.getenv("GOOGLE_SERVICE_ACCOUNT_FILE", "")
    )
    log_level: str = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    cors_origins: tuple[str, ...] = _env_list(
        "CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173"
    )


settings = Settings()
