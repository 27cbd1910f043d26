from pydantic import BaseModel, Field, field_validator

IDENTITY_MIN_LENGTH = 3
IDENTITY_MAX_LENGTH = 255
# Wrong-length guesses must still reach the service so they consume the code.
CODE_MAX_LENGTH = 32


class OtpRequest(BaseModel):
    identity: str

    @field_validator("identity")
    @classmethod
    def strip_identity(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Identity is required")
        if not IDENTITY_MIN_LENGTH <= len(cleaned) <= IDENTITY_MAX_LENGTH:
            raise ValueError(
                f"Identity must be {IDENTITY_MIN_LENGTH}-{IDENTITY_MAX_LENGTH} characters"
            )
        return cleaned


class OtpResponse(BaseModel):
    message: str
    expires_in_seconds: int


class OtpVerifyRequest(OtpRequest):
    code: str = Field(min_length=1, max_length=CODE_MAX_LENGTH)


class OtpVerifyResponse(BaseModel):
    message: str
    verified: bool


class OtpErrorDetail(BaseModel):
    error: str
    message: str


class HealthResponse(BaseModel):
    status: str
    otp_backend: str
