from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo

EPOCH_SECONDS_THRESHOLD = 1_000_000_000

_DATE_LAYOUTS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%m-%d-%Y",
    # day-first fallback, only reachable when the month slot cannot be a month
    "%d/%m/%Y",
    "%d-%m-%Y",
)
_TIME_LAYOUTS = (
    "%H:%M:%S.%f",
    "%H:%M:%S",
    "%H:%M",
    "%I:%M:%S %p",
    "%I:%M %p",
)


def _build_patterns() -> tuple[str, ...]:
    patterns: list[str] = []
    for date_layout in _DATE_LAYOUTS:
        patterns.extend(f"{date_layout} {time_layout}" for time_layout in _TIME_LAYOUTS)
        patterns.append(date_layout)
    return tuple(patterns)


_DATETIME_PATTERNS = _build_patterns()

_ISO_T_SEPARATOR = re.compile(r"(?<=\d)T(?=\d)")
_UTC_OFFSET = re.compile(r"\s*(Z|[+-]\d{2}:?\d{2})$", re.IGNORECASE)
_FRACTION = re.compile(r"(\d{2}:\d{2}:\d{2})\.(\d+)")
_DIGITS = re.compile(r"[0-9]+")
_FIXED_OFFSET = re.compile(r"(?:UTC|GMT)?([+-])(\d{1,2})(?::?(\d{2}))?", re.IGNORECASE)


def resolve_timezone(name: str | None) -> tzinfo:
    """Accepts an IANA zone name or a fixed offset such as ``+07:00`` or ``UTC+7``."""
    text = (name or "").strip()
    if not text or text.upper() in {"UTC", "Z", "GMT"}:
        return timezone.utc

    match = _FIXED_OFFSET.fullmatch(text)
    if match:
        sign = -1 if match.group(1) == "-" else 1
        offset = timedelta(hours=int(match.group(2)), minutes=int(match.group(3) or 0))
        return timezone(sign * offset)
    return ZoneInfo(text)


def _split_offset(text: str) -> tuple[str, tzinfo | None]:
    if ":" not in text:
        return text, None
    match = _UTC_OFFSET.search(text)
    if not match:
        return text, None

    token = match.group(1).upper()
    body = text[: match.start()]
    if token == "Z":
        return body, timezone.utc

    sign = -1 if token[0] == "-" else 1
    digits = token[1:].replace(":", "")
    offset = timedelta(hours=int(digits[:2]), minutes=int(digits[2:]))
    return body, timezone(sign * offset)


def parse_datetime_text(value: str, default_tz: tzinfo = timezone.utc) -> tuple[datetime, bool] | None:
    """Parse a calendar date-time string.

    Returns the UTC timestamp and whether the text carried a time of day, or
    ``None`` when nothing in the pattern cascade matches a real date.
    """
    text = " ".join(value.split())
    if not text:
        return None

    text = _ISO_T_SEPARATOR.sub(" ", text)
    text, explicit_tz = _split_offset(text)
    # strptime's %f takes at most six digits
    text = _FRACTION.sub(lambda m: f"{m.group(1)}.{m.group(2)[:6]}", text)

    for pattern in _DATETIME_PATTERNS:
        try:
            parsed = datetime.strptime(text, pattern)
        except ValueError:
            continue
        has_time = "%H" in pattern or "%I" in pattern
        aware = parsed.replace(tzinfo=explicit_tz or default_tz)
        return aware.astimezone(timezone.utc), has_time
    return None


def parse_epoch_seconds(value: str) -> datetime | None:
    text = value.strip()
    if not _DIGITS.fullmatch(text):
        return None

    seconds = int(text)
    if seconds <= EPOCH_SECONDS_THRESHOLD:
        return None

    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def parse_punch_time(value: str | None, default_tz: tzinfo = timezone.utc) -> datetime | None:
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None

    parsed = parse_datetime_text(text, default_tz)
    if parsed is not None:
        return parsed[0]
    return parse_epoch_seconds(text)


def to_iso_utc(value: datetime) -> str:
    utc_value = value.astimezone(timezone.utc)
    return utc_value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_value.microsecond // 1000:03d}Z"
