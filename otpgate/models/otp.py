from sqlalchemy import Column, DateTime, Index, Integer, String

from otpgate.database import Base


class OtpEntry(Base):
    __tablename__ = "otp_codes"

    id = Column(Integer, primary_key=True)
    identity = Column(String(255), nullable=False, unique=True)
    code = Column(String(16), nullable=False)
    issued_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_otp_codes_expires_at", "expires_at"),)


class OtpIssuanceEntry(Base):
    """Append-only issuance log; rows outlive the codes they describe."""

    __tablename__ = "otp_issuances"

    id = Column(Integer, primary_key=True)
    identity = Column(String(255), nullable=False)
    issued_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_otp_issuances_identity_issued_at", "identity", "issued_at"),
    )
