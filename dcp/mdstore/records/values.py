"""
Value objects for structured field types.

- Point: X/Y pair stored in two REAL columns
- DateValue: begin/end/precision date range
- SearchParameterSet: opaque structured search expression
- Timestamp helpers: parsing and SQL formatting

Invariants:
    - Value objects are immutable and compare by value, which is what the
      record's no-op check relies on
    - Parsing failures raise ValueError; callers translate them into
      InvalidValueError with field context
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional

from ..schema.types import DatePrecision

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

_TIMESTAMP_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
)


def now_string() -> str:
    """Current local time in SQL DATETIME format."""
    return datetime.now().strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: Any) -> datetime:
    """Parse a timestamp from a datetime, date, epoch seconds or string.

    Raises:
        ValueError: If the value cannot be interpreted
    """
    if isinstance(value, datetime):
        return value.replace(microsecond=0, tzinfo=None)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value).replace(microsecond=0)

    text = str(value).strip()
    if text.lower() == "now":
        return datetime.now().replace(microsecond=0)
    for fmt in _TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text).replace(microsecond=0, tzinfo=None)
    except ValueError:
        raise ValueError(f"Unparseable timestamp: {value!r}") from None


def format_timestamp(value: Any) -> str:
    return parse_timestamp(value).strftime(TIMESTAMP_FORMAT)


@dataclass(frozen=True)
class Point:
    """Geographic or planar point."""

    x: Optional[float] = None
    y: Optional[float] = None

    @classmethod
    def from_value(cls, value: Any) -> Point:
        """Build a point from a Point, {"X","Y"} mapping, pair or "x,y" string.

        Raises:
            ValueError: If the value is not point-shaped
        """
        if isinstance(value, Point):
            return value
        if isinstance(value, dict):
            lowered = {str(k).lower(): v for k, v in value.items()}
            if "x" not in lowered or "y" not in lowered:
                raise ValueError(f"Point mapping needs X and Y: {value!r}")
            return cls(_coord(lowered["x"]), _coord(lowered["y"]))
        if isinstance(value, str):
            parts = [p.strip() for p in value.split(",")]
            if len(parts) != 2:
                raise ValueError(f"Point string must be 'x,y': {value!r}")
            return cls(_coord(parts[0]), _coord(parts[1]))
        if isinstance(value, (list, tuple)) and len(value) == 2:
            return cls(_coord(value[0]), _coord(value[1]))
        raise ValueError(f"Not a point: {value!r}")

    @property
    def is_empty(self) -> bool:
        return self.x is None and self.y is None

    def rounded(self, digits: int) -> Point:
        return Point(
            None if self.x is None else round(self.x, digits),
            None if self.y is None else round(self.y, digits),
        )

    def to_dict(self) -> dict[str, Optional[float]]:
        return {"X": self.x, "Y": self.y}


def _coord(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


_INFERRED = re.compile(r"^\[(.*)\]$")
_PART_PATTERNS = (
    (re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[ T].*)?$"), ("y", "m", "d")),
    (re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$"), ("m", "d", "y")),
    (re.compile(r"^(\d{4})-(\d{1,2})$"), ("y", "m")),
    (re.compile(r"^(\d{1,2})/(\d{4})$"), ("m", "y")),
    (re.compile(r"^(\d{4})$"), ("y",)),
)


def _parse_part(text: str) -> tuple[date, int]:
    """Parse one end of a date range into (date, known parts as 1/2/4 bits)."""
    for pattern, order in _PART_PATTERNS:
        match = pattern.match(text)
        if not match:
            continue
        parts = dict(zip(order, (int(g) for g in match.groups())))
        known = 1
        if "m" in parts:
            known |= 2
        if "d" in parts:
            known |= 4
        return date(parts["y"], parts.get("m", 1), parts.get("d", 1)), known
    raise ValueError(f"Unparseable date: {text!r}")


@dataclass(frozen=True)
class DateValue:
    """A date or date range with explicit precision.

    Attributes:
        begin: First day of the range
        end: Last day of the range, if it is a range
        precision: DatePrecision flags for which parts are known
    """

    begin: Optional[date]
    end: Optional[date] = None
    precision: int = 0

    @classmethod
    def parse(cls, value: Any) -> Optional[DateValue]:
        """Parse a date or range; empty input yields None.

        Accepts "1999", "1999-04", "1999-04-12", "04/12/1999",
        "1999 - 2003", "c1999", "[1999]" and "1999-" (open ended).

        Raises:
            ValueError: If the text is not a recognizable date
        """
        if value is None:
            return None
        if isinstance(value, DateValue):
            return value
        if isinstance(value, datetime):
            value = value.date()
        if isinstance(value, date):
            return cls(value, None, DatePrecision.BEGIN_YEAR | DatePrecision.BEGIN_MONTH | DatePrecision.BEGIN_DAY)

        text = str(value).strip()
        if not text:
            return None

        flags = 0
        match = _INFERRED.match(text)
        if match:
            flags |= DatePrecision.INFERRED
            text = match.group(1).strip()
        if text[:1] in ("c", "©"):
            flags |= DatePrecision.COPYRIGHT
            text = text[1:].strip()
        if text.endswith("-") and " - " not in text:
            flags |= DatePrecision.CONTINUOUS
            text = text[:-1].strip()

        pieces = [p.strip() for p in re.split(r"\s+-\s+|\s*–\s*", text) if p.strip()]
        if not pieces or len(pieces) > 2:
            raise ValueError(f"Unparseable date: {value!r}")

        begin, known = _parse_part(pieces[0])
        flags |= known
        end = None
        if len(pieces) == 2:
            end, end_known = _parse_part(pieces[1])
            flags |= end_known * DatePrecision.END_YEAR
            if end < begin:
                raise ValueError(f"Date range ends before it begins: {value!r}")
        return cls(begin, end, int(flags))

    @classmethod
    def from_columns(cls, begin: Optional[str], end: Optional[str], precision: Optional[int]) -> Optional[DateValue]:
        if not begin:
            return None
        return cls(
            date.fromisoformat(str(begin)[:10]),
            date.fromisoformat(str(end)[:10]) if end else None,
            int(precision or 0),
        )

    def _has(self, flag: DatePrecision) -> bool:
        return bool(self.precision & flag)

    @property
    def begin_date(self) -> Optional[str]:
        """Normalized begin date for storage (unknown parts become 01)."""
        return self._normalized(self.begin, DatePrecision.BEGIN_YEAR, DatePrecision.BEGIN_MONTH, DatePrecision.BEGIN_DAY)

    @property
    def end_date(self) -> Optional[str]:
        return self._normalized(self.end, DatePrecision.END_YEAR, DatePrecision.END_MONTH, DatePrecision.END_DAY)

    def _normalized(self, value: Optional[date], year: DatePrecision, month: DatePrecision, day: DatePrecision) -> Optional[str]:
        if value is None or not self._has(year):
            return None
        return "%04d-%02d-%02d" % (
            value.year,
            value.month if self._has(month) else 1,
            value.day if self._has(month) and self._has(day) else 1,
        )

    def formatted(self) -> str:
        """Human-readable form honoring precision, e.g. "c1999-04 - 2003"."""
        if self.begin is None or not self._has(DatePrecision.BEGIN_YEAR):
            return ""
        text = self._format_part(self.begin, DatePrecision.BEGIN_MONTH, DatePrecision.BEGIN_DAY)
        if self.end is not None and self._has(DatePrecision.END_YEAR):
            text += " - " + self._format_part(self.end, DatePrecision.END_MONTH, DatePrecision.END_DAY)
        elif self._has(DatePrecision.CONTINUOUS):
            text += "-"
        if self._has(DatePrecision.COPYRIGHT):
            text = "c" + text
        if self._has(DatePrecision.INFERRED):
            text = "[" + text + "]"
        return text

    def _format_part(self, value: date, month: DatePrecision, day: DatePrecision) -> str:
        text = "%04d" % value.year
        if self._has(month):
            text += "-%02d" % value.month
            if self._has(day):
                text += "-%02d" % value.day
        return text

    def __str__(self) -> str:
        return self.formatted()


@dataclass(frozen=True)
class SearchParameterSet:
    """Structured search expression stored as an opaque document."""

    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_value(cls, value: Any) -> Optional[SearchParameterSet]:
        """Build from a SearchParameterSet, mapping or JSON string.

        Raises:
            ValueError: If a string is not a JSON object
        """
        if value is None or value == "":
            return None
        if isinstance(value, SearchParameterSet):
            return value
        if isinstance(value, (bytes, str)):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as e:
                raise ValueError(f"Search parameters are not valid JSON: {e}") from e
        if not isinstance(value, dict):
            raise ValueError(f"Search parameters must be a mapping, got {type(value).__name__}")
        return cls(dict(value))

    @property
    def is_empty(self) -> bool:
        return not self.data

    def serialize(self) -> str:
        return json.dumps(self.data, sort_keys=True, separators=(",", ":"))

    def __hash__(self) -> int:
        return hash(self.serialize())
