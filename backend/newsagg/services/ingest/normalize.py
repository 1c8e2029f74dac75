from __future__ import annotations
from datetime import datetime, timedelta, timezone
from typing import Callable

import structlog

log = structlog.get_logger()

# Fixed offsets for zone abbreviations seen in RSS dates; anything else reads as UTC
ZONE_OFFSETS = {
    "UT": timezone.utc,
    "UTC": timezone.utc,
    "GMT": timezone.utc,
    "Z": timezone.utc,
    "EST": timezone(timedelta(hours=-5)),
    "EDT": timezone(timedelta(hours=-4)),
    "CST": timezone(timedelta(hours=-6)),
    "CDT": timezone(timedelta(hours=-5)),
    "MST": timezone(timedelta(hours=-7)),
    "MDT": timezone(timedelta(hours=-6)),
    "PST": timezone(timedelta(hours=-8)),
    "PDT": timezone(timedelta(hours=-7)),
    "BST": timezone(timedelta(hours=1)),
    "CET": timezone(timedelta(hours=1)),
    "CEST": timezone(timedelta(hours=2)),
    "MSK": timezone(timedelta(hours=3)),
}

RFC1123_LAYOUT = "%a, %d %b %Y %H:%M:%S"
RFC822_LAYOUT = "%d %b %y %H:%M"


def clean_text(value: str | None) -> str:
    if not value:
        return ""
    return value.strip()


def _with_offset(layout: str) -> Callable[[str], datetime]:
    def parse(value: str) -> datetime:
        return datetime.strptime(value, f"{layout} %z")
    return parse


def _with_zone_name(layout: str) -> Callable[[str], datetime]:
    def parse(value: str) -> datetime:
        head, _, zone = value.rpartition(" ")
        if not zone.isalpha():
            raise ValueError(f"no zone abbreviation in {value!r}")
        parsed = datetime.strptime(head, layout)
        return parsed.replace(tzinfo=ZONE_OFFSETS.get(zone.upper(), timezone.utc))
    return parse


def _rfc3339(value: str) -> datetime:
    if "T" not in value and "t" not in value:
        raise ValueError(f"not an RFC 3339 timestamp: {value!r}")
    if value[-1] in "Zz":
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value.replace("t", "T"))
    if parsed.tzinfo is None:
        raise ValueError(f"RFC 3339 timestamp without offset: {value!r}")
    return parsed


# Tried in order, first success wins
DATE_PARSERS: tuple[Callable[[str], datetime], ...] = (
    _with_offset(RFC1123_LAYOUT),
    _with_zone_name(RFC1123_LAYOUT),
    _with_offset(RFC822_LAYOUT),
    _with_zone_name(RFC822_LAYOUT),
    _rfc3339,
)


def parse_datetime(dt_str: str | None) -> datetime | None:
    """
    Parse a feed publish date with the known encodings.

    Returns:
        Aware datetime, or None when no encoding matches
    """
    value = clean_text(dt_str)
    if not value:
        return None
    for parser in DATE_PARSERS:
        try:
            return parser(value)
        except ValueError:
            continue
    return None


def resolve_published_at(dt_str: str | None, now: datetime | None = None) -> datetime:
    """Publish time of an entry; unparseable dates fall back to the current UTC time."""
    parsed = parse_datetime(dt_str)
    if parsed is not None:
        return parsed
    if dt_str:
        log.debug("unparseable publish date, using current time", value=dt_str)
    return now or datetime.now(timezone.utc)
