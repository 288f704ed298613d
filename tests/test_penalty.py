"""Tests for the penalty policy."""

import pytest

from otp_guard.services.penalty import block_duration_minutes


@pytest.mark.parametrize(
    ("request_count", "minutes"),
    [(0, 30), (3, 30), (7, 30), (8, 45), (10, 45), (11, 60), (99, 60)],
)
def test_block_duration(request_count, minutes):
    assert block_duration_minutes(request_count) == minutes
