"""SQLAlchemy models for issued codes and the rate-limit ledger."""

import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import Boolean, Index, Integer, String, UniqueConstraint, false
from sqlalchemy.orm import Mapped, mapped_column

from otp_guard.models.base import Base, UTCDateTime, utcnow


class ContactType(StrEnum):
    """Channel a contact is reached through."""

    EMAIL = "email"
    PHONE = "phone"


def _new_id() -> str:
    return str(uuid.uuid4())


class OTPCode(Base):
    """One outstanding or historical verification code.

    At most one row per ``(contact, purpose)`` may be unused at any time;
    the partial unique index below makes the database reject a second one.
    """

    __tablename__ = "otp_codes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    contact: Mapped[str] = mapped_column(String(256), nullable=False)
    contact_type: Mapped[str] = mapped_column(String(16), nullable=False)
    purpose: Mapped[str] = mapped_column(String(64), nullable=False)
    code: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    is_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_otp_codes_contact_purpose", "contact", "purpose", "created_at"),
        Index("ix_otp_codes_expires_at", "expires_at"),
    )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now

    def __repr__(self) -> str:
        return (
            f"<OTPCode id={self.id} purpose={self.purpose!r} "
            f"expires_at={self.expires_at.isoformat()} is_used={self.is_used}>"
        )


Index(
    "uq_otp_codes_live_code",
    OTPCode.contact,
    OTPCode.purpose,
    unique=True,
    sqlite_where=OTPCode.is_used == false(),
    postgresql_where=OTPCode.is_used == false(),
)


class OTPRateLimit(Base):
    """Ledger row tracking issuance attempts for one (contact, type, purpose)."""

    __tablename__ = "otp_rate_limits"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    contact: Mapped[str] = mapped_column(String(256), nullable=False)
    contact_type: Mapped[str] = mapped_column(String(16), nullable=False)
    purpose: Mapped[str] = mapped_column(String(64), nullable=False)
    request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    window_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_request_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    blocked_until: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Advisory only
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("contact", "contact_type", "purpose", name="uq_otp_rate_limits_key"),
        Index("ix_otp_rate_limits_window_start", "window_start"),
        Index("ix_otp_rate_limits_blocked_until", "blocked_until"),
        Index("ix_otp_rate_limits_ip_address", "ip_address"),
    )

    def is_blocked(self, now: datetime) -> bool:
        return self.blocked_until is not None and self.blocked_until > now

    def __repr__(self) -> str:
        return (
            f"<OTPRateLimit purpose={self.purpose!r} count={self.request_count} "
            f"blocked_until={self.blocked_until}>"
        )
