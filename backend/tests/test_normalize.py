from datetime import datetime, timedelta, timezone

import pytest
from newsagg.services.ingest.normalize import clean_text, parse_datetime, resolve_published_at


@pytest.mark.parametrize(
    "value, expected",
    [
        # RFC 1123 with numeric offset
        ("Mon, 02 Jan 2006 15:04:05 -0700", datetime(2006, 1, 2, 22, 4, 5, tzinfo=timezone.utc)),
        # RFC 1123 with zone abbreviation
        ("Mon, 02 Jan 2006 15:04:05 GMT", datetime(2006, 1, 2, 15, 4, 5, tzinfo=timezone.utc)),
        ("Mon, 02 Jan 2006 15:04:05 EST", datetime(2006, 1, 2, 20, 4, 5, tzinfo=timezone.utc)),
        # RFC 822 with numeric offset
        ("02 Jan 06 15:04 +0300", datetime(2006, 1, 2, 12, 4, tzinfo=timezone.utc)),
        # RFC 822 with zone abbreviation
        ("02 Jan 06 15:04 UTC", datetime(2006, 1, 2, 15, 4, tzinfo=timezone.utc)),
        # RFC 3339
        ("2006-01-02T15:04:05Z", datetime(2006, 1, 2, 15, 4, 5, tzinfo=timezone.utc)),
        ("2006-01-02T15:04:05+02:00", datetime(2006, 1, 2, 13, 4, 5, tzinfo=timezone.utc)),
    ],
)
def test_parse_datetime_known_encodings(value, expected):
    """Each recognised encoding parses to the same instant"""
    parsed = parse_datetime(value)

    assert parsed is not None
    assert parsed.tzinfo is not None
    assert parsed == expected


def test_parse_datetime_unknown_zone_reads_as_utc():
    parsed = parse_datetime("Mon, 02 Jan 2006 15:04:05 XYZ")
    assert parsed == datetime(2006, 1, 2, 15, 4, 5, tzinfo=timezone.utc)


@pytest.mark.parametrize("value", ["", None, "yesterday", "2006-01-02 15:04:05", "02/01/2006"])
def test_parse_datetime_rejects_unknown(value):
    assert parse_datetime(value) is None


def test_resolve_published_at_falls_back_to_now():
    """Unparseable dates resolve to the current UTC time instead of failing"""
    before = datetime.now(timezone.utc)
    resolved = resolve_published_at("not a date at all")
    after = datetime.now(timezone.utc)

    assert resolved.tzinfo is not None
    assert before - timedelta(seconds=1) <= resolved <= after + timedelta(seconds=1)


def test_resolve_published_at_uses_given_now():
    now = datetime(2024, 5, 1, tzinfo=timezone.utc)
    assert resolve_published_at(None, now=now) == now
    assert resolve_published_at("Tue, 30 Apr 2024 10:00:00 +0000", now=now) == datetime(
        2024, 4, 30, 10, tzinfo=timezone.utc
    )


def test_clean_text():
    assert clean_text("  hello \n") == "hello"
    assert clean_text(None) == ""
    assert clean_text("") == ""
