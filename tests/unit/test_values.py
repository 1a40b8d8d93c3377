"""
Unit tests for structured value objects.

Tests cover:
- Timestamp parsing and formatting
- Date and date-range parsing with precision
- Points
- Search parameter sets
"""

from datetime import date, datetime

import pytest

from dcp.mdstore.records.values import (
    DateValue,
    Point,
    SearchParameterSet,
    format_timestamp,
    parse_timestamp,
)
from dcp.mdstore.schema.types import DatePrecision


class TestTimestamps:
    """Tests for timestamp helpers."""

    def test_parse_sql_format(self):
        """SQL DATETIME strings parse."""
        assert parse_timestamp("2024-01-02 03:04:05") == datetime(2024, 1, 2, 3, 4, 5)

    def test_parse_us_and_long_formats(self):
        """Month-first and spelled-out dates parse."""
        assert parse_timestamp("01/02/2024") == datetime(2024, 1, 2)
        assert parse_timestamp("March 5, 2021") == datetime(2021, 3, 5)

    def test_parse_date_and_datetime(self):
        """date and datetime objects are accepted, microseconds dropped."""
        assert parse_timestamp(date(2020, 5, 6)) == datetime(2020, 5, 6)
        assert parse_timestamp(datetime(2020, 5, 6, 7, 8, 9, 123)) == datetime(2020, 5, 6, 7, 8, 9)

    def test_unparseable_raises(self):
        """Garbage raises ValueError."""
        with pytest.raises(ValueError):
            parse_timestamp("not a date")

    def test_format(self):
        """format_timestamp normalizes to SQL format."""
        assert format_timestamp("2024-01-02T03:04:05") == "2024-01-02 03:04:05"


class TestDateValue:
    """Tests for DateValue parsing and formatting."""

    def test_year_only(self):
        """A bare year keeps year precision."""
        value = DateValue.parse("1999")
        assert value.begin == date(1999, 1, 1)
        assert value.precision == DatePrecision.BEGIN_YEAR
        assert value.formatted() == "1999"
        assert value.begin_date == "1999-01-01"

    def test_year_month(self):
        """Year and month are kept, day is unknown."""
        value = DateValue.parse("1999-04")
        assert value.formatted() == "1999-04"
        assert value.begin_date == "1999-04-01"

    def test_full_date(self):
        """ISO and US dates parse to day precision."""
        assert DateValue.parse("1999-04-12").formatted() == "1999-04-12"
        assert DateValue.parse("04/12/1999").formatted() == "1999-04-12"

    def test_range(self):
        """Ranges record both ends."""
        value = DateValue.parse("1999 - 2003")
        assert value.end == date(2003, 1, 1)
        assert value.end_date == "2003-01-01"
        assert value.formatted() == "1999 - 2003"

    def test_copyright_inferred_continuous(self):
        """Prefix and suffix markers become precision flags."""
        assert DateValue.parse("c1999").formatted() == "c1999"
        assert DateValue.parse("[1999]").formatted() == "[1999]"
        assert DateValue.parse("1999-").formatted() == "1999-"
        assert DateValue.parse("[c1999-04]").precision & DatePrecision.INFERRED

    def test_backwards_range_raises(self):
        """A range ending before it begins is rejected."""
        with pytest.raises(ValueError):
            DateValue.parse("2003 - 1999")

    def test_garbage_raises(self):
        """Unrecognizable text is rejected."""
        with pytest.raises(ValueError):
            DateValue.parse("sometime in spring")

    def test_empty_is_none(self):
        """Empty input means no date."""
        assert DateValue.parse("") is None
        assert DateValue.parse(None) is None

    def test_from_columns(self):
        """Stored columns rebuild the same value."""
        original = DateValue.parse("1999-04 - 2003")
        rebuilt = DateValue.from_columns(original.begin_date, original.end_date, original.precision)
        assert rebuilt.formatted() == original.formatted()


class TestPoint:
    """Tests for Point."""

    def test_from_mapping_any_case(self):
        """X/Y keys are case-insensitive."""
        assert Point.from_value({"x": "1.5", "Y": 2}) == Point(1.5, 2.0)

    def test_from_pair_and_string(self):
        """Pairs and "x,y" strings are accepted."""
        assert Point.from_value((3, 4)) == Point(3.0, 4.0)
        assert Point.from_value("3, 4") == Point(3.0, 4.0)

    def test_rounding(self):
        """rounded() keeps the requested decimal digits."""
        assert Point(1.123456, 2.0).rounded(2) == Point(1.12, 2.0)

    def test_not_a_point(self):
        """Other shapes raise ValueError."""
        with pytest.raises(ValueError):
            Point.from_value("1;2;3")
        with pytest.raises(ValueError):
            Point.from_value({"X": 1})

    def test_empty_form(self):
        """The empty point serializes with both coordinates None."""
        assert Point().is_empty
        assert Point().to_dict() == {"X": None, "Y": None}


class TestSearchParameterSet:
    """Tests for SearchParameterSet."""

    def test_from_json(self):
        """JSON objects parse into data."""
        params = SearchParameterSet.from_value('{"keywords": "tide"}')
        assert params.data == {"keywords": "tide"}

    def test_serialization_is_canonical(self):
        """Key order does not change the serialized form."""
        a = SearchParameterSet({"b": 1, "a": 2})
        b = SearchParameterSet({"a": 2, "b": 1})
        assert a.serialize() == b.serialize()
        assert hash(a) == hash(b)

    def test_non_mapping_raises(self):
        """JSON that is not an object is rejected."""
        with pytest.raises(ValueError):
            SearchParameterSet.from_value("[1, 2]")

    def test_empty_is_none(self):
        """Empty input means no parameters."""
        assert SearchParameterSet.from_value("") is None
