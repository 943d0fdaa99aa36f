"""Test utility functions."""

import re

import pytest

from portknox.common.utils import (
    MAX_PORT,
    MIN_PORT,
    generate_tunnel_id,
    mask_sensitive_data,
    model_api_base,
    normalize_tags,
    probe_address,
    sanitize_log_data,
    validate_non_empty_string,
)


class TestValidateNonEmptyString:
    """Test string validation function."""

    def test_valid_strings(self):
        """Test that valid strings are returned stripped."""
        assert validate_non_empty_string("fwd_1", "Tunnel id") == "fwd_1"
        assert validate_non_empty_string("  fwd_1  ", "Tunnel id") == "fwd_1"

    @pytest.mark.parametrize("value", ["", "   ", None])
    def test_invalid_strings(self, value):
        """Test that empty strings raise ValueError."""
        with pytest.raises(ValueError, match="Tunnel id cannot be empty"):
            validate_non_empty_string(value, "Tunnel id")


class TestGenerateTunnelId:
    def test_format(self):
        assert re.fullmatch(r"fwd_\d{13}_[0-9a-z]{9}", generate_tunnel_id())

    def test_unique(self):
        assert len({generate_tunnel_id() for _ in range(500)}) == 500


class TestAddresses:
    """Test address helpers."""

    @pytest.mark.parametrize(
        "bind,expected",
        [
            ("0.0.0.0", "127.0.0.1"),
            ("", "127.0.0.1"),
            ("127.0.0.1", "127.0.0.1"),
            ("10.0.0.5", "10.0.0.5"),
        ],
    )
    def test_probe_address(self, bind, expected):
        assert probe_address(bind) == expected

    def test_model_api_base(self):
        assert model_api_base("0.0.0.0", 18000) == "http://0.0.0.0:18000/v1"


class TestNormalizeTags:
    def test_drops_blanks_and_duplicates(self):
        assert normalize_tags(["db", " ", "prod", "db", " gpu "]) == [
            "db",
            "prod",
            "gpu",
        ]

    def test_empty(self):
        assert normalize_tags(None) == []
        assert normalize_tags([]) == []


class TestMaskSensitiveData:
    """Test sensitive data masking function."""

    def test_mask_normal_data(self):
        """Test masking of normal length data."""
        assert mask_sensitive_data("sk-1234567890") == "*********7890"

    def test_mask_short_data(self):
        """Test masking of short data."""
        assert mask_sensitive_data("abc") == "***"

    def test_mask_none_data(self):
        """Test masking of None or empty data."""
        assert mask_sensitive_data(None) == "<None>"
        assert mask_sensitive_data("") == "<None>"

    def test_custom_mask_char(self):
        """Test custom mask character."""
        assert mask_sensitive_data("secret123456", mask_char="X") == "XXXXXXXX3456"


class TestSanitizeLogData:
    """Test log data sanitization function."""

    def test_sanitize_sensitive_fields(self):
        """Test sanitization of sensitive fields."""
        data = {
            "ssh_user": "deploy",
            "litellm_master_key": "sk-1234",
            "model_api_key": "key_abcdef",
            "database_url": "sqlite:///data/portknox.db",
        }

        sanitized = sanitize_log_data(data)

        assert sanitized["ssh_user"] == "deploy"
        assert sanitized["database_url"] == "sqlite:///data/portknox.db"
        assert sanitized["litellm_master_key"] == "***1234"
        assert sanitized["model_api_key"] == "******cdef"

    def test_case_insensitive_detection(self):
        """Test case-insensitive sensitive field detection."""
        sanitized = sanitize_log_data({"API_KEY": "key_abcdef", "Secret": "pw"})

        assert sanitized["API_KEY"] == "******cdef"
        assert sanitized["Secret"] == "**"

    def test_no_sensitive_fields(self):
        """Test sanitization with no sensitive fields."""
        data = {"name": "postgres", "local_port": 15432}
        assert sanitize_log_data(data) == data


def test_port_constants():
    assert MIN_PORT == 1
    assert MAX_PORT == 65535
