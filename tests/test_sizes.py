"""Tests for storage/sizes.py - size grammar and IEC formatting."""

import pytest

from rescarch_media.storage.exceptions import InvalidSizeFormat, ValidationError
from rescarch_media.storage.sizes import format_iec, parse_size


class TestParseSize:
    """Tests for parse_size()."""

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("1G", 1073741824),
            ("500M", 524288000),
            ("2T", 2199023255552),
            ("64K", 65536),
            ("100", 100),
            ("0", 0),
        ],
    )
    def test_valid_sizes(self, text, expected):
        """Test binary multiples for every suffix and plain byte counts."""
        assert parse_size(text) == expected

    @pytest.mark.parametrize("text", ["", "1.5G", "-1G", "1g", "G", "10GB", "1 G", "abc"])
    def test_invalid_sizes_raise(self, text):
        """Test fractional, negative, lowercase and unknown suffixes are rejected."""
        with pytest.raises(InvalidSizeFormat) as exc_info:
            parse_size(text)
        assert exc_info.value.value == text

    def test_invalid_size_is_validation_error(self):
        """Test size errors belong to the validation family."""
        with pytest.raises(ValidationError):
            parse_size("4X")


class TestFormatIec:
    """Tests for format_iec() matching numfmt --to=iec-i --suffix=B."""

    @pytest.mark.parametrize(
        "size_bytes,expected",
        [
            (0, "0B"),
            (1000, "1000B"),
            (1024, "1.0KiB"),
            (1536, "1.5KiB"),
            (512 * 1024**2, "512MiB"),
            (1024**3, "1.0GiB"),
            (16 * 1024**3, "16GiB"),
        ],
    )
    def test_format(self, size_bytes, expected):
        assert format_iec(size_bytes) == expected

    def test_rounds_up(self):
        """Test partial units round away from zero like numfmt."""
        assert format_iec(1024 + 1) == "1.1KiB"

    def test_none_is_zero(self):
        assert format_iec(None) == "0B"
