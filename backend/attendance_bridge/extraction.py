"""Tolerant extraction of attendance rows from the device portal's listing page.

The portal's output is not stable: depending on firmware and page version the
punches come back as a ``<pre>`` block of tab separated lines, as bare lines
mixed into the markup, or as an HTML table. Each layout has its own
:class:`CandidateStrategy`; all of them run over the same payload and every
candidate row goes through :func:`normalize_row`, which decides whether it is
a real punch.
"""

from __future__ import annotations

import html
import logging
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, time, timezone, tzinfo
from typing import Iterable, Iterator, Sequence

from .models import AttendanceRecord
from .timestamps import parse_datetime_text, parse_punch_time

logger = logging.getLogger(__name__)

MIN_FIELDS = 5

_HEADER_MARKERS = ("emp", "code", "id")
_EMPLOYEE_CODE = re.compile(r"[0-9]+")
_LEADING_INT = re.compile(r"\s*([+-]?[0-9]+)")
# SQLite INTEGER is a signed 64-bit value
_INT_MIN = -(2**63)
_INT_MAX = 2**63 - 1
_TAG = re.compile(r"<[^>]*>")

_PRE_BLOCK = re.compile(r"<pre\b[^>]*>(.*?)</pre\s*>", re.IGNORECASE | re.DOTALL)
# Legacy pages often leave rows and cells unclosed, so a segment also ends at the next opener.
_TABLE_ROW = re.compile(
    r"<tr\b[^>]*>(.*?)(?=</tr\s*>|<tr\b|</table\s*>|\Z)",
    re.IGNORECASE | re.DOTALL,
)
_TABLE_CELL = re.compile(
    r"<t[dh]\b[^>]*>(.*?)(?=</t[dh]\s*>|<t[dh]\b|\Z)",
    re.IGNORECASE | re.DOTALL,
)

_DATE_TOKEN = re.compile(r"\d{1,4}[-/.]\d{1,2}[-/.]\d{1,4}")
_TIME_TOKEN = re.compile(r"\d{1,2}:\d{2}(?::\d{2}(?:\.\d+)?)?")
_MERIDIEM_TOKEN = re.compile(r"[AaPp][Mm]")


def strip_markup(text: str) -> str:
    return html.unescape(_TAG.sub("", text))


def _leading_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    match = _LEADING_INT.match(value)
    if not match:
        return default
    digits = match.group(1)
    if len(digits.lstrip("+-")) > 19:
        return default
    number = int(digits)
    if not _INT_MIN <= number <= _INT_MAX:
        return default
    return number


def _field(fields: Sequence[str], index: int) -> str | None:
    return fields[index] if index < len(fields) else None


@dataclass(frozen=True)
class DateWindow:
    start: datetime | None = None
    end: datetime | None = None

    def contains(self, value: datetime) -> bool:
        if self.start is not None and value < self.start:
            return False
        if self.end is not None and value > self.end:
            return False
        return True

    @classmethod
    def from_strings(
        cls,
        start: str | None,
        end: str | None,
        default_tz: tzinfo = timezone.utc,
    ) -> "DateWindow":
        return cls(
            start=_parse_bound(start, default_tz, end_of_day=False),
            end=_parse_bound(end, default_tz, end_of_day=True),
        )


def _parse_bound(value: str | None, default_tz: tzinfo, end_of_day: bool) -> datetime | None:
    if value is None or not value.strip():
        return None

    parsed = parse_datetime_text(value, default_tz)
    if parsed is None:
        raise ValueError(f"Unrecognised date: {value!r}")

    moment, has_time = parsed
    if end_of_day and not has_time:
        # a bare date as the upper bound covers that whole day
        local_day = moment.astimezone(default_tz).date()
        closing = datetime.combine(local_day, time.max).replace(tzinfo=default_tz)
        return closing.astimezone(timezone.utc)
    return moment


class CandidateStrategy(ABC):
    """Produces candidate field sequences from raw listing text."""

    name = "base"

    @abstractmethod
    def candidates(self, payload: str) -> Iterator[list[str]]:
        raise NotImplementedError


class PreformattedBlockStrategy(CandidateStrategy):
    """Tab separated lines inside ``<pre>`` blocks."""

    name = "preformatted"

    def candidates(self, payload: str) -> Iterator[list[str]]:
        for block in _PRE_BLOCK.findall(payload):
            for line in strip_markup(block).splitlines():
                fields = line.split("\t")
                if len(fields) >= MIN_FIELDS:
                    yield fields


class RawLineStrategy(CandidateStrategy):
    """Every line of the payload, split on tabs and, separately, on whitespace."""

    name = "raw-line"

    def candidates(self, payload: str) -> Iterator[list[str]]:
        for line in payload.splitlines():
            text = strip_markup(line)

            tab_fields = text.split("\t")
            if len(tab_fields) >= MIN_FIELDS:
                yield tab_fields

            tokens = text.split()
            if len(tokens) >= MIN_FIELDS:
                yield join_datetime_tokens(tokens)


class TabularStrategy(CandidateStrategy):
    """``<tr>`` rows of ``<td>``/``<th>`` cells; empty cells are dropped."""

    name = "tabular"

    def candidates(self, payload: str) -> Iterator[list[str]]:
        for row in _TABLE_ROW.findall(payload):
            cells = [strip_markup(cell).strip() for cell in _TABLE_CELL.findall(row)]
            cells = [cell for cell in cells if cell]
            if len(cells) >= MIN_FIELDS:
                yield cells


DEFAULT_STRATEGIES: tuple[CandidateStrategy, ...] = (
    PreformattedBlockStrategy(),
    TabularStrategy(),
    RawLineStrategy(),
)


def join_datetime_tokens(tokens: Sequence[str]) -> list[str]:
    """Rejoin ``2024-01-05`` ``09:00:00`` [``AM``] into a single field."""
    joined: list[str] = []
    index = 0
    while index < len(tokens):
        token = tokens[index]
        if (
            _DATE_TOKEN.fullmatch(token)
            and index + 1 < len(tokens)
            and _TIME_TOKEN.fullmatch(tokens[index + 1])
        ):
            parts = [token, tokens[index + 1]]
            index += 2
            if index < len(tokens) and _MERIDIEM_TOKEN.fullmatch(tokens[index]):
                parts.append(tokens[index])
                index += 1
            joined.append(" ".join(parts))
            continue
        joined.append(token)
        index += 1
    return joined


def is_header_field(value: str) -> bool:
    lowered = value.lower()
    return any(marker in lowered for marker in _HEADER_MARKERS)


def normalize_row(
    fields: Sequence[str],
    serial_number: str,
    window: DateWindow | None = None,
    default_tz: tzinfo = timezone.utc,
) -> AttendanceRecord | None:
    """Turn one candidate row into a record, or ``None`` if it is not a punch."""
    first = _field(fields, 0)
    if not first or is_header_field(first):
        return None

    employee_code = first.strip()
    if not _EMPLOYEE_CODE.fullmatch(employee_code):
        return None

    raw_time = _field(fields, 1)
    punch_time = parse_punch_time(raw_time, default_tz)
    if punch_time is None:
        return None

    if window is not None and not window.contains(punch_time):
        return None

    return AttendanceRecord(
        id=uuid.uuid4().hex,
        serial_number=serial_number,
        employee_code=employee_code,
        punch_time=punch_time,
        verify_type=_leading_int(_field(fields, 2), 1),
        status=_leading_int(_field(fields, 3), 0),
        work_code=_leading_int(_field(fields, 4), 1),
    )


def deduplicate(records: Iterable[AttendanceRecord]) -> list[AttendanceRecord]:
    seen: set[tuple[str, datetime]] = set()
    unique: list[AttendanceRecord] = []
    for record in records:
        key = record.content_key()
        if key in seen:
            continue
        seen.add(key)
        unique.append(record)
    return unique


def extract_records(
    payload: str,
    serial_number: str,
    window: DateWindow | None = None,
    strategies: Sequence[CandidateStrategy] = DEFAULT_STRATEGIES,
    dedupe: bool = True,
    default_tz: tzinfo = timezone.utc,
) -> list[AttendanceRecord]:
    records: list[AttendanceRecord] = []
    for strategy in strategies:
        produced = 0
        for fields in strategy.candidates(payload):
            try:
                record = normalize_row(fields, serial_number, window, default_tz)
            except Exception:
                logger.debug("Dropping %s candidate %r", strategy.name, fields, exc_info=True)
                continue
            if record is not None:
                records.append(record)
                produced += 1
        logger.debug("Strategy %s produced %s records", strategy.name, produced)

    if dedupe:
        unique = deduplicate(records)
        if len(unique) != len(records):
            logger.info("Collapsed %s duplicate records", len(records) - len(unique))
        return unique
    return records
