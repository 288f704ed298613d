"""Exception hierarchy for the OTP core.

Store adapters raise :class:`StoreUnavailable`, transports raise
:class:`TransportUnavailable`.  The public service methods never let these
escape; they are turned into result objects whose ``error`` property maps
back to the classes below.
"""

from __future__ import annotations


class OTPError(Exception):
    """Base class for every error raised by the OTP core."""

    #: Message that is safe to show to an end user.
    public_message = "Something went wrong. Please try again later."


class RateLimited(OTPError):
    """Too many issuance requests inside the current window."""

    public_message = "Too many verification requests. Please wait before trying again."


class Blocked(OTPError):
    """An active penalty block is in force for the key."""

    public_message = "Account temporarily blocked due to too many requests."


class TransportUnavailable(OTPError):
    """A delivery channel is misconfigured, timed out or returned an error."""

    public_message = "We couldn't deliver your verification code. Please try again."


class StoreUnavailable(OTPError):
    """The persistence backend could not be reached."""

    public_message = "Unable to send verification code. Please try again later."


class InvalidCode(OTPError):
    public_message = "Invalid verification code"


class ExpiredCode(OTPError):
    public_message = "Verification code has expired"


class ReusedCode(OTPError):
    public_message = "Verification code has already been used"


class InternalError(OTPError):
    """Anything unexpected.  Details stay in the server log."""
