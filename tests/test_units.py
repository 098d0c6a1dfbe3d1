"""
Tests for byte formatting and parsing.
"""

import pytest

from bandwidth_guard.core.units import format_bytes, parse_bytes


class TestFormatBytes:

    @pytest.mark.parametrize("value, expected", [
        (0, "0 B"),
        (512, "512 B"),
        (1024, "1 KB"),
        (1536, "1.5 KB"),
        (10 * 1024 ** 3, "10 GB"),
        (3 * 1024 ** 4, "3 TB"),
        (5 * 1024 ** 5, "5120 TB"),
    ])
    def test_format(self, value, expected):
        assert format_bytes(value) == expected


class TestParseBytes:

    @pytest.mark.parametrize("text, expected", [
        ("2048", 2048),
        ("10GB", 10737418240),
        ("10 gb", 10737418240),
        ("1.5KB", 1536),
        ("1 TB", 1024 ** 4),
        ("0.5B", 0),
    ])
    def test_parse(self, text, expected):
        assert parse_bytes(text) == expected

    @pytest.mark.parametrize("text", ["", "GB", "ten GB", "10 XB", "-1GB"])
    def test_invalid(self, text):
        with pytest.raises(ValueError):
            parse_bytes(text)
