"""SQLAlchemy AdminSetting model."""

from datetime import datetime

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from otp_guard.models.base import Base, UTCDateTime, utcnow


class AdminSetting(Base):
    """A string-valued, admin-editable platform setting.

    The OTP core reads ``otp_max_requests`` and ``otp_window_minutes``
    (integers stored as strings) plus the display values
    ``platform_name`` and ``contact_email``.
    """

    __tablename__ = "admin_settings"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return f"<AdminSetting key={self.key!r} value={self.value!r}>"
