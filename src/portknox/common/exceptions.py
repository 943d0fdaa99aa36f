"""Custom exceptions for portknox."""


class PortKnoxError(Exception):
    """Base exception for all portknox errors."""

    pass


class ConfigurationError(PortKnoxError):
    """Raised when configuration is invalid."""

    pass


class EstablishError(PortKnoxError):
    """Base class for failures while bringing a forward up."""

    pass


class ConnectionError(EstablishError):
    """Raised when the SSH transport or authentication fails."""

    pass


class BindError(EstablishError):
    """Raised when the local bind address/port is unavailable."""

    pass


class ProbeTimeoutError(EstablishError):
    """Raised when a negotiated forward never accepts a probe connection."""

    pass


class ExhaustedRetriesError(PortKnoxError):
    """Raised when a tunnel has used up its reconnection attempts."""

    pass


class PersistenceError(PortKnoxError):
    """Raised when the tunnel store cannot be read or written."""

    pass


class BridgeError(PortKnoxError):
    """Raised when the model registration backend rejects a request."""

    pass


class SSHConfigError(PortKnoxError):
    """Raised when the OpenSSH client config cannot be read or written."""

    pass
