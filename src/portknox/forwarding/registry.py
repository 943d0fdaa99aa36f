"""Tunnel registry for managing live forwards."""

from dataclasses import dataclass

from ..common.exceptions import PersistenceError, PortKnoxError
from ..common.logging import get_logger
from .establisher import ForwardHandle
from .interfaces import TunnelStoreProtocol
from .models import SupervisorState, TunnelConfig, TunnelStatus

logger = get_logger(__name__)


@dataclass(eq=False)
class ActiveForward:
    """Runtime state of one registered forward.

    Owned by :class:`TunnelRegistry`; the handle is only reachable through the
    entry so nothing outside the registry can keep a stopped forward alive.
    """

    config: TunnelConfig
    handle: ForwardHandle | None
    reconnect_attempts: int = 0
    is_reconnecting: bool = False
    state: SupervisorState = SupervisorState.CONNECTED
    last_error: PortKnoxError | None = None

    def set_state(self, state: SupervisorState) -> None:
        self.state = state
        self.config = self.config.with_status(state.status)


class TunnelRegistry:
    """Process-wide map from tunnel id to its live forward."""

    def __init__(self, store: TunnelStoreProtocol | None = None):
        """Initialize registry.

        Args:
            store: Store consulted for independently edited metadata on listing
        """
        self._forwards: dict[str, ActiveForward] = {}
        self._store = store

    def __contains__(self, tunnel_id: object) -> bool:
        return tunnel_id in self._forwards

    def __len__(self) -> int:
        return len(self._forwards)

    def upsert(
        self, tunnel_id: str, config: TunnelConfig, handle: ForwardHandle
    ) -> ActiveForward:
        """Insert a connected forward, replacing and closing any prior entry.

        Args:
            tunnel_id: Tunnel identifier
            config: Config snapshot; its status is forced to active
            handle: Live handle of the forward

        Returns:
            The new registry entry
        """
        previous = self._forwards.get(tunnel_id)
        entry = ActiveForward(
            config=config.with_updates(id=tunnel_id, status=TunnelStatus.ACTIVE),
            handle=handle,
        )
        self._forwards[tunnel_id] = entry

        if previous is not None:
            if previous.handle is not None and previous.handle is not handle:
                previous.handle.close()
            logger.info("Replaced tunnel in registry", tunnel_id=tunnel_id)
        else:
            logger.info("Added tunnel to registry", tunnel_id=tunnel_id)
        return entry

    def replace_handle(self, tunnel_id: str, handle: ForwardHandle) -> bool:
        """Swap in a freshly established handle if the tunnel is still registered.

        Returns:
            False when the tunnel was removed meanwhile; the caller owns ``handle``
        """
        entry = self._forwards.get(tunnel_id)
        if entry is None:
            return False

        previous = entry.handle
        entry.handle = handle
        if previous is not None and previous is not handle:
            previous.close()
        return True

    def entry(self, tunnel_id: str) -> ActiveForward | None:
        """Mutable entry for the forwarding package's own collaborators."""
        return self._forwards.get(tunnel_id)

    def get_tunnel(self, tunnel_id: str) -> TunnelConfig | None:
        """Get a config snapshot by id, merged with the latest stored metadata.

        Args:
            tunnel_id: ID of tunnel to retrieve

        Returns:
            Config snapshot if registered, None otherwise
        """
        entry = self._forwards.get(tunnel_id)
        if entry is None:
            return None
        return self._with_stored_metadata(entry.config)

    def remove_tunnel(self, tunnel_id: str) -> ActiveForward | None:
        """Remove an entry without touching its handle.

        Args:
            tunnel_id: ID of tunnel to remove

        Returns:
            Removed entry, or None if it was not registered
        """
        entry = self._forwards.pop(tunnel_id, None)
        if entry is not None:
            logger.info("Removed tunnel from registry", tunnel_id=tunnel_id)
        return entry

    def list_tunnels(self, status: TunnelStatus | None = None) -> list[TunnelConfig]:
        """List config snapshots, optionally filtered by status.

        Author and tags come from the store when available since they can be
        edited while the tunnel is live.
        """
        configs = [
            self._with_stored_metadata(e.config) for e in self._forwards.values()
        ]
        if status is not None:
            configs = [c for c in configs if c.status == status]
        return configs

    def tunnel_ids(self) -> list[str]:
        return list(self._forwards)

    def active_port_owner(self, bind_address: str, local_port: int) -> str | None:
        """Return the id of the registered tunnel already using a local port."""
        for tunnel_id, entry in self._forwards.items():
            config = entry.config
            if config.local_port != local_port:
                continue
            if (
                config.local_bind_address == bind_address
                or "0.0.0.0" in (config.local_bind_address, bind_address)
            ):
                return tunnel_id
        return None

    def has_active_port(self, bind_address: str, local_port: int) -> bool:
        return self.active_port_owner(bind_address, local_port) is not None

    def clear(self) -> list[ActiveForward]:
        """Remove every entry and return them; handles are left to the caller."""
        entries = list(self._forwards.values())
        self._forwards.clear()
        logger.info("Cleared all tunnels from registry", count=len(entries))
        return entries

    def _with_stored_metadata(self, config: TunnelConfig) -> TunnelConfig:
        if self._store is None:
            return config

        try:
            record = self._store.get_tunnel(config.id)
        except PersistenceError as e:
            logger.warning(
                "Failed to fetch latest metadata", tunnel_id=config.id, error=str(e)
            )
            return config

        if record is None:
            return config
        return config.with_updates(author=record.author, tags=list(record.tags or []))
