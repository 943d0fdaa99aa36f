"""SSH port forwarding lifecycle: establish, supervise, restore."""

from .establisher import (
    ConnectionEstablisher,
    EstablishResult,
    ForwardHandle,
    probe_port,
)
from .interfaces import ModelBridgeProtocol, TunnelStoreProtocol
from .manager import PortForwardManager
from .models import (
    MODEL_TAG,
    ForwardResult,
    SupervisorState,
    TunnelConfig,
    TunnelRecord,
    TunnelStatus,
)
from .registry import ActiveForward, TunnelRegistry
from .restoration import RestorationCoordinator, RestorationReport
from .ssh import (
    AsyncSSHConnector,
    AsyncSSHSession,
    ForwardListener,
    SSHConnector,
    SSHSession,
)
from .supervisor import (
    Effect,
    ReconnectSupervisor,
    SupervisionSnapshot,
    SupervisorEvent,
    Transition,
    transition,
)

__all__ = [
    # Manager
    "PortForwardManager",
    # Models
    "TunnelConfig",
    "TunnelRecord",
    "TunnelStatus",
    "SupervisorState",
    "ForwardResult",
    "MODEL_TAG",
    # Establishment
    "ConnectionEstablisher",
    "EstablishResult",
    "ForwardHandle",
    "probe_port",
    "AsyncSSHConnector",
    "AsyncSSHSession",
    "SSHConnector",
    "SSHSession",
    "ForwardListener",
    # Registry and supervision
    "TunnelRegistry",
    "ActiveForward",
    "ReconnectSupervisor",
    "SupervisorEvent",
    "SupervisionSnapshot",
    "Effect",
    "Transition",
    "transition",
    # Restoration
    "RestorationCoordinator",
    "RestorationReport",
    # Interfaces
    "TunnelStoreProtocol",
    "ModelBridgeProtocol",
]
