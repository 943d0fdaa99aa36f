"""Utility functions for portknox."""

import secrets
import string
import time
from typing import Any

# Port range constants
MIN_PORT = 1
MAX_PORT = 65535

LOOPBACK_ADDRESS = "127.0.0.1"
WILDCARD_ADDRESS = "0.0.0.0"

_ID_ALPHABET = string.ascii_lowercase + string.digits


def validate_non_empty_string(value: str, field_name: str) -> str:
    """Validate that a string is not empty or only whitespace.

    Args:
        value: String value to validate
        field_name: Name of the field for error messages

    Returns:
        Stripped string value

    Raises:
        ValueError: If string is empty or only whitespace
    """
    if not value or not value.strip():
        raise ValueError(f"{field_name} cannot be empty")
    return value.strip()


def generate_tunnel_id() -> str:
    """Generate a tunnel id of the form ``fwd_<epoch ms>_<9 random chars>``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"fwd_{int(time.time() * 1000)}_{suffix}"


def probe_address(bind_address: str) -> str:
    """Address a local client should dial to reach a listener on ``bind_address``."""
    if bind_address in (WILDCARD_ADDRESS, "", "::"):
        return LOOPBACK_ADDRESS
    return bind_address


def model_api_base(bind_address: str, local_port: int) -> str:
    """OpenAI-compatible API base served through a forward."""
    return f"http://{bind_address}:{local_port}/v1"


def normalize_tags(tags: list[str] | None) -> list[str]:
    """Drop empty tags and duplicates while keeping first-seen order."""
    if not tags:
        return []
    seen: dict[str, None] = {}
    for tag in tags:
        if isinstance(tag, str) and tag.strip():
            seen.setdefault(tag.strip(), None)
    return list(seen)


def mask_sensitive_data(
    value: str | None, mask_char: str = "*", show_chars: int = 4
) -> str:
    """Mask sensitive data for logging while preserving some characters for debugging.

    Args:
        value: Sensitive string to mask (e.g., API key, password)
        mask_char: Character to use for masking
        show_chars: Number of characters to show at the end

    Returns:
        Masked string safe for logging
    """
    if not value:
        return "<None>"

    if len(value) <= show_chars:
        return mask_char * len(value)

    masked_length = len(value) - show_chars
    return mask_char * masked_length + value[-show_chars:]


def sanitize_log_data(data: dict[str, Any]) -> dict[str, Any]:
    """Sanitize dictionary data for safe logging by masking sensitive fields.

    Args:
        data: Dictionary potentially containing sensitive data

    Returns:
        Sanitized dictionary safe for logging
    """
    sensitive_fields = {
        "token",
        "password",
        "secret",
        "api_key",
        "master_key",
        "passphrase",
    }

    sanitized = {}
    for key, value in data.items():
        if any(sensitive_field in key.lower() for sensitive_field in sensitive_fields):
            sanitized[key] = mask_sensitive_data(str(value) if value else None)
        else:
            sanitized[key] = value

    return sanitized
