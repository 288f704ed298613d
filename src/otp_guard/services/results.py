"""Value objects returned by the OTP service."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import timedelta
from enum import StrEnum

from otp_guard.errors import (
    Blocked,
    ExpiredCode,
    InternalError,
    InvalidCode,
    OTPError,
    RateLimited,
    ReusedCode,
    StoreUnavailable,
    TransportUnavailable,
)


class SendStatus(StrEnum):
    SENT = "sent"
    RATE_LIMITED = "rate_limited"
    BLOCKED = "blocked"
    IP_RATE_LIMITED = "ip_rate_limited"
    DELIVERY_FAILED = "delivery_failed"
    UNAVAILABLE = "unavailable"
    ERROR = "error"


_SEND_HTTP_STATUS = {
    SendStatus.SENT: 200,
    SendStatus.RATE_LIMITED: 429,
    SendStatus.BLOCKED: 429,
    SendStatus.IP_RATE_LIMITED: 429,
    SendStatus.DELIVERY_FAILED: 502,
    SendStatus.UNAVAILABLE: 503,
    SendStatus.ERROR: 500,
}

_SEND_ERRORS: dict[SendStatus, type[OTPError]] = {
    SendStatus.RATE_LIMITED: RateLimited,
    SendStatus.BLOCKED: Blocked,
    SendStatus.IP_RATE_LIMITED: RateLimited,
    SendStatus.DELIVERY_FAILED: TransportUnavailable,
    SendStatus.UNAVAILABLE: StoreUnavailable,
    SendStatus.ERROR: InternalError,
}


@dataclass
class SendResult:
    """Outcome of a ``send_code`` call.

    ``issued`` is true once a code has been persisted, even when its
    delivery failed afterwards.  ``code`` is only populated outside
    production.
    """

    status: SendStatus
    message: str
    issued: bool = False
    code: str | None = None
    time_until_reset: timedelta | None = None

    @property
    def success(self) -> bool:
        return self.status is SendStatus.SENT

    @property
    def retry_after_minutes(self) -> int | None:
        """Wait time in whole minutes, rounded up."""
        if self.time_until_reset is None:
            return None
        return math.ceil(self.time_until_reset.total_seconds() / 60)

    @property
    def http_status(self) -> int:
        return _SEND_HTTP_STATUS[self.status]

    @property
    def error(self) -> OTPError | None:
        """The matching exception, for callers that prefer to raise."""
        error_class = _SEND_ERRORS.get(self.status)
        return error_class(self.message) if error_class else None


class VerifyStatus(StrEnum):
    ACCEPTED = "accepted"
    INVALID = "invalid"
    EXPIRED = "expired"
    REUSED = "reused"
    ERROR = "error"


_VERIFY_ERRORS: dict[VerifyStatus, type[OTPError]] = {
    VerifyStatus.INVALID: InvalidCode,
    VerifyStatus.EXPIRED: ExpiredCode,
    VerifyStatus.REUSED: ReusedCode,
    VerifyStatus.ERROR: InternalError,
}


@dataclass
class VerifyResult:
    """Outcome of a ``verify_code`` call."""

    status: VerifyStatus
    message: str
    should_block: bool = False

    @property
    def success(self) -> bool:
        return self.status is VerifyStatus.ACCEPTED

    @property
    def error(self) -> OTPError | None:
        error_class = _VERIFY_ERRORS.get(self.status)
        return error_class(self.message) if error_class else None


@dataclass
class CleanupReport:
    """Rows removed by one maintenance pass."""

    codes_deleted: int = 0
    rate_limits_deleted: int = 0
    settings_evicted: int = 0
