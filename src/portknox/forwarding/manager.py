"""Public boundary of the forwarding core."""

from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from ..common.exceptions import BindError, BridgeError, PersistenceError
from ..common.logging import get_logger
from ..common.settings import ForwardingPolicy
from ..common.utils import validate_non_empty_string
from .establisher import ConnectionEstablisher
from .interfaces import ModelBridgeProtocol, TunnelStoreProtocol
from .models import ForwardResult, TunnelConfig, TunnelRecord
from .registry import TunnelRegistry
from .restoration import RestorationCoordinator, RestorationReport
from .supervisor import ReconnectSupervisor

logger = get_logger(__name__)


class PortForwardManager:
    """Creates, stops, lists and restores SSH port forwards.

    Public operations never raise: failures are reported through
    :class:`ForwardResult` and logged. Background failures are only
    observable through the tunnel status.
    """

    def __init__(
        self,
        establisher: ConnectionEstablisher,
        registry: TunnelRegistry | None = None,
        store: TunnelStoreProtocol | None = None,
        bridge: ModelBridgeProtocol | None = None,
        policy: ForwardingPolicy | None = None,
    ):
        """Initialize manager.

        Args:
            establisher: Brings forwards up
            registry: Registry of live forwards (one is created if omitted)
            store: Durable record store; None keeps everything in memory
            bridge: Model registration bridge; None disables registration
            policy: Timing policy (defaults to the establisher's)
        """
        self.establisher = establisher
        self.policy = policy or establisher.policy
        self.store = store
        self.bridge = bridge
        self.registry = registry or TunnelRegistry(store)
        self.supervisor = ReconnectSupervisor(
            self.registry, establisher, store=store, policy=self.policy
        )
        self._restorer = (
            RestorationCoordinator(
                self.registry, establisher, self.supervisor, store, policy=self.policy
            )
            if store is not None
            else None
        )

    async def create(self, config: TunnelConfig | Mapping[str, Any]) -> ForwardResult:
        """Establish a forward, register it and persist it as active.

        Creating with the id of a live tunnel replaces that tunnel.

        Args:
            config: Tunnel configuration or a mapping that validates into one

        Returns:
            ForwardResult with the registered config snapshot on success
        """
        try:
            if not isinstance(config, TunnelConfig):
                config = TunnelConfig.model_validate(dict(config))
        except (ValidationError, TypeError, ValueError) as e:
            logger.warning("Rejected invalid tunnel configuration", error=str(e))
            return ForwardResult.failed(f"Invalid tunnel configuration: {e}", e)

        log = logger.bind(tunnel_id=config.id, name=config.name)
        try:
            owner = self.registry.active_port_owner(
                config.local_bind_address, config.local_port
            )
            if owner is not None and owner != config.id:
                error = BindError(
                    f"Local port {config.local_port} is already forwarded by "
                    f"tunnel '{owner}'"
                )
                log.warning("Port conflict", owner=owner)
                return ForwardResult.failed(str(error), error)

            if config.id in self.registry:
                log.info("Replacing live tunnel with the same id")
                retired = self.supervisor.retire(config.id)
                if retired is not None and retired.config.model_id:
                    await self._unregister_model(retired.config.model_id, config.id)

            result = await self.establisher.establish(
                config.id, config, on_closed=self.supervisor.connection_lost
            )
            if not result.success or result.handle is None:
                return ForwardResult.failed(result.message, result.error)

            entry = self.registry.upsert(config.id, config, result.handle)

            if config.wants_model_registration and self.bridge is not None:
                model_id = await self._register_model(entry.config)
                if self.registry.entry(config.id) is not entry:
                    log.info("Tunnel stopped during model registration")
                    if model_id is not None:
                        await self._unregister_model(model_id, config.id)
                    return ForwardResult.failed(
                        f"Tunnel '{config.id}' was stopped while being created"
                    )
                if model_id is not None:
                    entry.config = entry.config.with_updates(
                        model_id=model_id, model_api_base=entry.config.api_base
                    )

            self._persist(entry.config)
            return ForwardResult.ok(result.message, self.registry.get_tunnel(config.id))
        except Exception as e:
            log.exception("Unexpected error creating tunnel")
            return ForwardResult.failed(f"Failed to create tunnel: {e}", e)

    async def stop(self, tunnel_id: str) -> ForwardResult:
        """Stop a forward and delete its record.

        A tunnel that is not live but still has a record (for example one whose
        restoration failed) has the record deleted and is reported as stopped.

        Args:
            tunnel_id: ID of tunnel to stop

        Returns:
            ForwardResult describing the outcome
        """
        try:
            tunnel_id = validate_non_empty_string(tunnel_id, "Tunnel id")
        except ValueError as e:
            return ForwardResult.failed(str(e), e)

        log = logger.bind(tunnel_id=tunnel_id)
        try:
            entry = self.supervisor.retire(tunnel_id)
            record = self._stored_record(tunnel_id)

            if entry is None and record is None:
                return ForwardResult.failed(f"Tunnel '{tunnel_id}' not found")

            model_id = entry.config.model_id if entry is not None else None
            if model_id is None and record is not None:
                model_id = record.model_id
            if model_id:
                await self._unregister_model(model_id, tunnel_id)

            if self.store is not None:
                try:
                    self.store.delete_tunnel(tunnel_id)
                except PersistenceError as e:
                    log.warning("Failed to delete tunnel record", error=str(e))

            if entry is None:
                log.info("Removed record of inactive tunnel")
                return ForwardResult.ok(f"Removed inactive tunnel '{tunnel_id}'")

            log.info("Tunnel stopped")
            return ForwardResult.ok(
                f"SSH port forward stopped: {entry.config.endpoint}", entry.config
            )
        except Exception as e:
            log.exception("Unexpected error stopping tunnel")
            return ForwardResult.failed(f"Failed to stop tunnel: {e}", e)

    def list(self) -> list[TunnelConfig]:
        """List snapshots of every live tunnel."""
        return self.registry.list_tunnels()

    def get(self, tunnel_id: str) -> TunnelConfig | None:
        return self.registry.get_tunnel(tunnel_id)

    async def restore(self) -> RestorationReport:
        """Re-establish every persisted tunnel.

        Returns:
            Restoration report; empty when no store is configured
        """
        if self._restorer is None:
            return RestorationReport()
        try:
            return await self._restorer.run()
        except Exception:
            logger.exception("Tunnel restoration failed")
            return RestorationReport()

    async def shutdown(self) -> None:
        """Close every live forward. Records are kept for the next restoration."""
        self.supervisor.cancel_all()
        tunnel_ids = self.registry.tunnel_ids()
        for tunnel_id in tunnel_ids:
            try:
                self.supervisor.retire(tunnel_id)
            except Exception:
                logger.exception("Failed to close tunnel", tunnel_id=tunnel_id)
        logger.info("Port forward manager shut down", closed=len(tunnel_ids))

    async def _register_model(self, config: TunnelConfig) -> str | None:
        if self.bridge is None or config.model_name is None:
            return None
        try:
            return await self.bridge.register(
                config.model_name, config.api_base, config.model_api_key
            )
        except BridgeError as e:
            logger.warning(
                "Model registration failed, tunnel stays up",
                tunnel_id=config.id,
                model_name=config.model_name,
                error=str(e),
            )
            return None

    async def _unregister_model(self, model_id: str, tunnel_id: str) -> None:
        if self.bridge is None:
            return
        try:
            await self.bridge.unregister(model_id)
        except BridgeError as e:
            logger.warning(
                "Model unregistration failed",
                tunnel_id=tunnel_id,
                model_id=model_id,
                error=str(e),
            )

    def _stored_record(self, tunnel_id: str) -> TunnelRecord | None:
        if self.store is None:
            return None
        try:
            return self.store.get_tunnel(tunnel_id)
        except PersistenceError as e:
            logger.warning(
                "Failed to read tunnel record", tunnel_id=tunnel_id, error=str(e)
            )
            return None

    def _persist(self, config: TunnelConfig) -> None:
        if self.store is None:
            return
        try:
            self.store.upsert_tunnel(config.to_record())
        except PersistenceError as e:
            logger.warning(
                "Failed to persist tunnel", tunnel_id=config.id, error=str(e)
            )
