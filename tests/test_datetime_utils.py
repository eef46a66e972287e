from datetime import datetime, timedelta, timezone

from datetime_utils import UTC, ensure_utc, epoch_millis, parse_rfc3339, to_rfc3339_utc


def test_naive_datetime_is_read_as_utc():
    naive = datetime(2024, 3, 1, 8, 30)
    assert ensure_utc(naive) == datetime(2024, 3, 1, 8, 30, tzinfo=UTC)


def test_offset_datetime_is_converted():
    plus_two = datetime(2024, 3, 1, 10, 30, tzinfo=timezone(timedelta(hours=2)))
    assert ensure_utc(plus_two) == datetime(2024, 3, 1, 8, 30, tzinfo=UTC)


def test_rfc3339_roundtrip_keeps_milliseconds():
    dt = datetime(2024, 3, 1, 8, 30, 15, 123000, tzinfo=UTC)
    text = to_rfc3339_utc(dt)
    assert text == "2024-03-01T08:30:15.123Z"
    assert parse_rfc3339(text) == dt


def test_parse_rfc3339_rejects_garbage():
    assert parse_rfc3339("") is None
    assert parse_rfc3339(None) is None
    assert parse_rfc3339("yesterday") is None


def test_epoch_millis():
    assert epoch_millis(datetime(1970, 1, 1, 0, 0, 1, tzinfo=UTC)) == 1000
    assert epoch_millis() > 1_600_000_000_000
