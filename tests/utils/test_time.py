from datetime import UTC, datetime, timedelta, timezone

import pytest

from songworker.utils import time as time_utils


def test_now_utc_is_timezone_aware() -> None:
    assert time_utils.now_utc().tzinfo is UTC


def test_as_utc_attaches_utc_to_naive_values() -> None:
    naive = datetime(2024, 5, 1, 12, 0, 0)

    assert time_utils.as_utc(naive) == datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)
    assert time_utils.as_utc(None) is None


def test_as_utc_converts_other_offsets() -> None:
    berlin = datetime(2024, 5, 1, 14, 0, 0, tzinfo=timezone(timedelta(hours=2)))

    assert time_utils.as_utc(berlin) == datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)


def test_seconds_since_mixes_naive_and_aware() -> None:
    now = datetime(2024, 5, 1, 12, 10, 0, tzinfo=UTC)

    elapsed = time_utils.seconds_since(datetime(2024, 5, 1, 12, 0, 0), now=now)

    assert elapsed == pytest.approx(600.0)
    assert time_utils.seconds_since(None, now=now) is None


def test_monotonic_ms_does_not_go_backwards() -> None:
    first = time_utils.monotonic_ms()

    assert time_utils.monotonic_ms() >= first
