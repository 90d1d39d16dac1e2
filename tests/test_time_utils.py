"""Tests for timestamp parsing and formatting helpers."""

import math

import pytest
from hypothesis import given, strategies as st

from audio_pipeline.utils.time_utils import (
    convert_string_to_milliseconds,
    format_duration,
    format_seconds_argument,
)


class TestConvertStringToMilliseconds:
    """Test suite for diagnostic timestamp parsing."""

    def test_hours_minutes_seconds_fraction(self):
        assert convert_string_to_milliseconds("01:02:03.45") == 3723450

    def test_without_fraction(self):
        assert convert_string_to_milliseconds("00:00:10") == 10000

    def test_three_digit_fraction(self):
        assert convert_string_to_milliseconds("00:00:01.250") == 1250

    @pytest.mark.parametrize("text,expected", [
        ("00:00:01.05", 1050),
        ("00:00:01.50", 1500),
        ("00:00:01.5", 1500),
    ])
    def test_fraction_is_decimal(self, text, expected):
        """Hundredths scale by 10; a single digit is tenths of a second."""
        assert convert_string_to_milliseconds(text) == expected

    @pytest.mark.parametrize("value", ["", "bad", "1:2", "aa:bb:cc.dd", "00:00:xx.10", None])
    def test_malformed_input_returns_zero(self, value):
        """Malformed timestamps are logged and read as 0, never raised."""
        result = convert_string_to_milliseconds(value)
        assert result == 0
        assert not math.isnan(result)

    def test_negative_timestamp_is_zero(self):
        assert convert_string_to_milliseconds("-00:00:00.05") == 0

    @given(
        hours=st.integers(min_value=0, max_value=99),
        minutes=st.integers(min_value=0, max_value=59),
        seconds=st.integers(min_value=0, max_value=59),
        centis=st.integers(min_value=0, max_value=99),
    )
    def test_matches_component_formula(self, hours, minutes, seconds, centis):
        """HH:MM:SS.ff maps to ((H*3600)+(M*60)+S)*1000 + ff*10."""
        text = f"{hours:02d}:{minutes:02d}:{seconds:02d}.{centis:02d}"
        expected = ((hours * 3600) + (minutes * 60) + seconds) * 1000 + centis * 10
        assert convert_string_to_milliseconds(text) == expected

    @given(st.text(max_size=20))
    def test_never_raises(self, text):
        result = convert_string_to_milliseconds(text)
        assert isinstance(result, int)
        assert result >= 0


class TestFormatting:
    """Test suite for duration and argument formatting."""

    def test_format_duration(self):
        assert format_duration(3723.5) == "01:02:03.500"

    def test_format_duration_rejects_negative(self):
        with pytest.raises(ValueError):
            format_duration(-1)

    @pytest.mark.parametrize("seconds,expected", [
        (10, "10"),
        (10.0, "10"),
        (12.5, "12.5"),
        (0.125, "0.125"),
        (3.1000, "3.1"),
    ])
    def test_format_seconds_argument(self, seconds, expected):
        assert format_seconds_argument(seconds) == expected
