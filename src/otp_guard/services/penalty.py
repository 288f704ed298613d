"""Penalty policy — how long to block a key that has been abusing the OTP flow."""

DEFAULT_BLOCK_MINUTES = 30
MODERATE_ABUSE_BLOCK_MINUTES = 45
HEAVY_ABUSE_BLOCK_MINUTES = 60


def block_duration_minutes(request_count: int) -> int:
    """Return the block length for a key with *request_count* recorded attempts."""
    if request_count > 10:
        return HEAVY_ABUSE_BLOCK_MINUTES
    if request_count > 7:
        return MODERATE_ABUSE_BLOCK_MINUTES
    return DEFAULT_BLOCK_MINUTES
