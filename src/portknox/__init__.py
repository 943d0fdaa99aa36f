"""PortKnox - SSH port forwards that survive disconnects and restarts."""

from .bridge import LiteLLMBridge
from .common.exceptions import (
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
from .common.logging import get_logger, setup_logging
from .common.settings import ForwardingPolicy, Settings
from .forwarding import (
    AsyncSSHConnector,
    ConnectionEstablisher,
    ForwardResult,
    PortForwardManager,
    RestorationReport,
    TunnelConfig,
    TunnelStatus,
)
from .service import build_manager, run
from .sshconfig import SSHConfigEntry, SSHConfigManager, SSHLocalForward
from .storage import TunnelStore

__version__ = "0.1.0"

__all__ = [
    # Core
    "PortForwardManager",
    "TunnelConfig",
    "TunnelStatus",
    "ForwardResult",
    "RestorationReport",
    "ConnectionEstablisher",
    "AsyncSSHConnector",
    # Collaborators
    "TunnelStore",
    "LiteLLMBridge",
    "SSHConfigManager",
    "SSHConfigEntry",
    "SSHLocalForward",
    # Service
    "build_manager",
    "run",
    # Settings and logging
    "Settings",
    "ForwardingPolicy",
    "get_logger",
    "setup_logging",
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
]
