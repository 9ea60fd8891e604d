from datetime import datetime, timedelta, timezone

import pytest

from availability import as_datetime, is_available


T0 = datetime(2026, 3, 7, 9, 0, tzinfo=timezone.utc)
T1 = T0 + timedelta(hours=1)
T2 = T0 + timedelta(hours=2)


def _test(**fields):
    row = {"status": "PUBLISHED", "start_at": None, "end_at": None, "allow_late_until": None}
    row.update(fields)
    return row


@pytest.mark.parametrize(
    "now, expected",
    [
        (T0 - timedelta(seconds=1), (False, "not yet open")),
        (T0, (True, None)),
        (T1, (True, None)),
        (T1 + timedelta(seconds=1), (True, None)),
        (T2, (True, None)),
        (T2 + timedelta(seconds=1), (False, "past deadline")),
    ],
)
def test_late_window_boundaries(now, expected):
    test = _test(start_at=T0, end_at=T1, allow_late_until=T2)
    out = is_available(test, now)
    assert (out["available"], out["reason"]) == expected


def test_end_at_is_the_deadline_without_late_window():
    test = _test(start_at=T0, end_at=T1)
    assert is_available(test, T1)["available"] is True
    assert is_available(test, T1 + timedelta(microseconds=1))["reason"] == "past deadline"


@pytest.mark.parametrize("status", ["DRAFT", "CLOSED", None])
def test_unpublished_tests_are_never_available(status):
    test = _test(status=status)
    assert is_available(test, T0) == {"available": False, "reason": "not published"}


def test_unpublished_wins_over_schedule():
    test = _test(status="DRAFT", start_at=T1)
    assert is_available(test, T0)["reason"] == "not published"


def test_no_schedule_means_always_open():
    assert is_available(_test(), T0) == {"available": True, "reason": None}


def test_iso_strings_are_accepted():
    test = _test(start_at="2026-03-07T09:00:00Z", end_at="2026-03-07T10:00:00+00:00")
    assert is_available(test, T0)["available"] is True
    assert is_available(test, T2)["reason"] == "past deadline"


def test_as_datetime_passthrough_and_empty():
    assert as_datetime(T0) is T0
    assert as_datetime(None) is None
    assert as_datetime("") is None


def test_naive_values_are_read_as_utc():
    assert as_datetime("2026-03-07T09:00:00") == T0
    assert as_datetime(datetime(2026, 3, 7, 9, 0)) == T0
    test = _test(start_at="2026-03-07T09:00:00", end_at="2026-03-07T10:00:00Z")
    assert is_available(test, T0)["available"] is True
