from __future__ import annotations
from datetime import datetime, timedelta, timezone
from talentvote.services.time_windows import as_utc, window_contains, is_past, expiry_from

START = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
END = datetime(2026, 3, 31, 20, 0, tzinfo=timezone.utc)


def test_end_is_inclusive():
    """A vote at exactly vote_end is still inside the window"""
    assert window_contains(START, END, END)
    assert not window_contains(START, END, END + timedelta(microseconds=1))


def test_start_is_inclusive():
    assert window_contains(START, END, START)
    assert not window_contains(START, END, START - timedelta(seconds=1))


def test_open_ended_bounds():
    assert window_contains(None, None, START)
    assert window_contains(None, END, START - timedelta(days=365))
    assert window_contains(START, None, END + timedelta(days=365))


def test_naive_values_are_utc():
    # SQLite hands back naive datetimes
    naive_end = END.replace(tzinfo=None)
    assert as_utc(naive_end) == END
    assert window_contains(START, naive_end, END)


def test_other_offsets_are_converted():
    cotonou = timezone(timedelta(hours=1))
    local = datetime(2026, 3, 31, 21, 0, tzinfo=cotonou)  # == END
    assert as_utc(local) == END
    assert window_contains(START, END, local)


def test_is_past_and_expiry():
    now = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
    deadline = expiry_from(now, 30)
    assert deadline == now + timedelta(minutes=30)
    assert not is_past(deadline, now)
    assert not is_past(deadline, deadline)
    assert is_past(deadline, deadline + timedelta(seconds=1))
    assert not is_past(None, now)
