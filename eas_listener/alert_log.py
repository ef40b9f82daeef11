"""Parse the dedicated alert log written by the SAME decoder.

Each log line looks like::

    ZCZC-WXR-SVR-039173-039175+0045-1231745-KCLE/NWS-: The National Weather
    Service in Cleveland, OH has issued a Severe Thunderstorm Warning for Wood
    County, OH; beginning at 5:45 PM ... Message from KCLE/NWS. (Received @
    2025-01-05  5:45:12 PM)

The SAME header is tokenized field by field; the free text after it is only
searched for the handful of phrases the decoder always emits.
"""

from __future__ import annotations

import logging
import os
import re
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from pathlib import Path
from typing import Any, Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_MAX_ALERTS = 50
MAX_LOCATION_CODES = 31
DISABLED_WATCH_CODE = "000000"
RECORDING_URL_PREFIX = "archive?recording_id="

_LOG = logging.getLogger("eas_archive")

# Header grammar, consumed left to right.
_PREAMBLE = re.compile(r"ZCZC-")
_THREE_LETTERS = re.compile(r"([A-Z]{3})-")
_LOCATION = re.compile(r"(\d{6})(-?)")
_PURGE = re.compile(r"\+(\d{4})-")
_ISSUED = re.compile(r"(\d{7})-")
_SENDER = re.compile(r"([A-Za-z0-9/ ]{1,8}?)-")

_EAS_TEXT_RE = re.compile(r"-: (.*\.) \(")
_EVENT_TEXT_RE = re.compile(r"has issued(?: an?| the)? (.*?) for ")
_ORIGINATOR_RE = re.compile(r"Message from (.*?)[.;]")
_LOCATIONS_RE = re.compile(r"for (.*?); beginning")
_RECEIVED_RE = re.compile(r"\(Received @ (.*?)\)$")
_CAMEL_SPLIT_RE = re.compile(r"(?=[A-Z])")

_RECEIVED_FORMATS = (
    "%Y-%m-%d %I:%M:%S %p",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
)


class MandatoryFieldMissing(ValueError):
    """A field every alert must carry is present but unusable."""


@dataclass(frozen=True)
class SameHeader:
    originator: str
    event_code: str
    locations: tuple[str, ...]
    purge: str
    issued: str
    sender: str
    raw: str


@dataclass(frozen=True)
class AlertRecord:
    recording_id: int
    raw: str
    header: SameHeader
    event_text: str | None
    originator: str | None
    locations: str | None
    severity: str | None
    duration_seconds: int
    eas_text: str | None
    received_at: int | None
    expires_at: int | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "recording_id": self.recording_id,
            "raw": self.raw,
            "received_at": self.received_at,
            "expires_at": self.expires_at,
            "data": {
                "event_code": self.header.event_code,
                "event_text": self.event_text,
                "originator": self.originator,
                "locations": self.locations,
                "location_codes": list(self.header.locations),
                "alert_severity": self.severity,
                "length": self.header.purge,
                "raw_zczc": self.header.raw,
                "eas_text": self.eas_text,
                "audio_recording": f"{RECORDING_URL_PREFIX}{self.recording_id}",
            },
        }


def tokenize_header(text: str) -> SameHeader | None:
    """Tokenize the leading SAME header of ``text``; None if it is malformed."""
    match = _PREAMBLE.match(text)
    if match is None:
        return None
    pos = match.end()

    fields: list[str] = []
    for _ in range(2):
        match = _THREE_LETTERS.match(text, pos)
        if match is None:
            return None
        fields.append(match.group(1))
        pos = match.end()

    locations: list[str] = []
    dangling = False
    while len(locations) < MAX_LOCATION_CODES:
        match = _LOCATION.match(text, pos)
        if match is None:
            break
        locations.append(match.group(1))
        pos = match.end()
        dangling = bool(match.group(2))
        if not dangling:
            break
    # A separator must be followed by another code.
    if not locations or dangling:
        return None

    parsed: list[str] = []
    for pattern in (_PURGE, _ISSUED, _SENDER):
        match = pattern.match(text, pos)
        if match is None:
            return None
        parsed.append(match.group(1))
        pos = match.end()

    purge, issued, sender = parsed
    return SameHeader(
        originator=fields[0],
        event_code=fields[1],
        locations=tuple(locations),
        purge=purge,
        issued=issued,
        sender=sender,
        raw=text[:pos],
    )


def hhmm_to_seconds(value: str) -> int:
    if len(value) != 4 or not value.isdigit():
        raise MandatoryFieldMissing(
            "Input must be a 4-digit numeric string representing HHMM."
        )
    hours = int(value[:2])
    minutes = int(value[2:])
    if minutes >= 60:
        raise MandatoryFieldMissing("Invalid HHMM format. Minutes are out of range.")
    return hours * 3600 + minutes * 60


def parse_watched_fips(value: str | Iterable[str] | None) -> frozenset[str]:
    """Normalize a watch-list; an empty or all-zero list disables filtering."""
    if value is None:
        return frozenset()
    if isinstance(value, str):
        candidates: Iterable[str] = value.strip().split(",")
    else:
        candidates = value
    codes = {str(code).strip() for code in candidates}
    codes.discard("")
    if not codes or codes == {DISABLED_WATCH_CODE}:
        return frozenset()
    return frozenset(codes)


def matches_watched_fips(
    locations: str | Iterable[str], watched: frozenset[str]
) -> bool:
    if not watched:
        return False
    if isinstance(locations, str):
        locations = locations.split("-")
    for code in locations:
        code = code.strip()
        if code and code in watched:
            return True
    return False


def severity_from_event_text(event_text: str | None) -> str | None:
    """Pick the severity word out of a phrase like "Severe Thunderstorm Warning".

    Positional: the third capitalized word if there is one, else the second,
    else the first. Anything before the first capital (an article, a number)
    is not a word for this purpose.
    """
    if not event_text:
        return None
    chunks = _CAMEL_SPLIT_RE.split(event_text)
    if chunks and not chunks[0][:1].isupper():
        chunks = chunks[1:]
    words = [chunk.strip() for chunk in chunks if chunk.strip()]
    if not words:
        return None
    if len(words) > 2:
        return words[2].lower()
    if len(words) > 1:
        return words[1].lower()
    return words[0].lower()


def _zone(tz: str | None) -> tzinfo:
    if not tz or tz.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        _LOG.warning("unknown timezone %r; falling back to UTC", tz)
        return timezone.utc


def parse_received_at(value: str, tz: str | None = "UTC") -> int | None:
    """Epoch seconds for the decoder's "Received @" timestamp."""
    text = " ".join(value.split())
    if not text:
        return None
    parsed: datetime | None = None
    for fmt in _RECEIVED_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
            break
        except ValueError:
            continue
    if parsed is None:
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_zone(tz))
    return int(parsed.timestamp())


def _search(pattern: re.Pattern[str], text: str) -> str | None:
    match = pattern.search(text)
    return match.group(1) if match else None


def parse_alert_line(
    line: str, recording_id: int, *, tz: str | None = "UTC"
) -> AlertRecord | None:
    """Parse one log line.

    Returns None when the header does not follow the SAME grammar. A header
    whose purge time is not a valid HHMM raises ``MandatoryFieldMissing``.
    """
    text = line.strip()
    header = tokenize_header(text)
    if header is None:
        return None

    duration = hhmm_to_seconds(header.purge)
    received_raw = _search(_RECEIVED_RE, text)
    received_at = parse_received_at(received_raw, tz) if received_raw else None
    expires_at = received_at + duration if received_at is not None else None

    event_text = _search(_EVENT_TEXT_RE, text)
    return AlertRecord(
        recording_id=recording_id,
        raw=text,
        header=header,
        event_text=event_text,
        originator=_search(_ORIGINATOR_RE, text),
        locations=_search(_LOCATIONS_RE, text),
        severity=severity_from_event_text(event_text),
        duration_seconds=duration,
        eas_text=_search(_EAS_TEXT_RE, text),
        received_at=received_at,
        expires_at=expires_at,
    )


def load_alert_window(
    path: os.PathLike[str] | str,
    *,
    max_alerts: int = DEFAULT_MAX_ALERTS,
    watched: str | Iterable[str] | None = None,
    tz: str | None = "UTC",
) -> list[AlertRecord]:
    """Parse the newest ``max_alerts`` alert lines of the log at ``path``.

    Every non-empty line that passes the watch-list filter takes the next
    recording id before the window drops older lines, so ids stay aligned with
    the line's position in the full log. Malformed lines keep their id and are
    then skipped.
    """
    if max_alerts <= 0:
        raise ValueError("max_alerts must be positive")
    watch_list = parse_watched_fips(watched)
    window: deque[tuple[int, str]] = deque(maxlen=max_alerts)
    counter = 0

    try:
        handle = Path(path).open("r", encoding="utf-8", errors="replace")
    except OSError as exc:
        _LOG.debug("alert log %s unreadable: %s", path, exc)
        return []

    with handle:
        for raw_line in handle:
            text = raw_line.strip()
            if not text:
                continue
            if watch_list:
                header = tokenize_header(text)
                if header is None or not matches_watched_fips(header.locations, watch_list):
                    continue
            window.append((counter, text))
            counter += 1

    records: list[AlertRecord] = []
    for recording_id, text in window:
        record = parse_alert_line(text, recording_id, tz=tz)
        if record is None:
            _LOG.debug("skipping malformed alert line %d", recording_id)
            continue
        records.append(record)
    return records
