"""Common utilities and shared functionality."""

from .exceptions import (
    BindError,
    BridgeError,
    ConfigurationError,
    ConnectionError,
    EstablishError,
    ExhaustedRetriesError,
    PersistenceError,
    PortKnoxError,
    ProbeTimeoutError,
    SSHConfigError,
)
from .logging import get_logger, mask_secrets, setup_logging
from .settings import ForwardingPolicy, Settings
from .utils import (
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

__all__ = [
    # Exceptions
    "PortKnoxError",
    "ConfigurationError",
    "EstablishError",
    "ConnectionError",
    "BindError",
    "ProbeTimeoutError",
    "ExhaustedRetriesError",
    "PersistenceError",
    "BridgeError",
    "SSHConfigError",
    # Logging
    "get_logger",
    "setup_logging",
    "mask_secrets",
    # Settings
    "ForwardingPolicy",
    "Settings",
    # Utils
    "validate_non_empty_string",
    "generate_tunnel_id",
    "probe_address",
    "model_api_base",
    "normalize_tags",
    "mask_sensitive_data",
    "sanitize_log_data",
    "MIN_PORT",
    "MAX_PORT",
]
