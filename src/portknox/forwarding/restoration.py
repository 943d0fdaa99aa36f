"""Re-establish persisted tunnels when the process starts."""

import asyncio
from dataclasses import dataclass, field

from ..common.exceptions import (
    ExhaustedRetriesError,
    PersistenceError,
    PortKnoxError,
)
from ..common.logging import get_logger
from ..common.settings import ForwardingPolicy
from .establisher import ConnectionEstablisher, EstablishResult
from .interfaces import TunnelStoreProtocol
from .models import TunnelConfig, TunnelRecord, TunnelStatus
from .registry import TunnelRegistry
from .supervisor import ReconnectSupervisor

logger = get_logger(__name__)


@dataclass
class RestorationReport:
    """Outcome of one restoration run."""

    attempted: int = 0
    restored: list[str] = field(default_factory=list)
    failed: dict[str, PortKnoxError] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)

    @property
    def all_restored(self) -> bool:
        return not self.failed


class RestorationCoordinator:
    """Replays persisted tunnel configurations through the establisher.

    Tunnels are restored one after another with a short stagger so a cold
    start does not open every SSH handshake at once. A tunnel that cannot be
    restored is logged, persisted as ``error`` and left for manual recreation.
    """

    def __init__(
        self,
        registry: TunnelRegistry,
        establisher: ConnectionEstablisher,
        supervisor: ReconnectSupervisor,
        store: TunnelStoreProtocol,
        policy: ForwardingPolicy | None = None,
    ):
        self.registry = registry
        self.establisher = establisher
        self.supervisor = supervisor
        self.store = store
        self.policy = policy or establisher.policy

    async def run(self) -> RestorationReport:
        """Restore every persisted tunnel.

        Returns:
            Report whose ``attempted`` equals the number of persisted records
        """
        report = RestorationReport()
        try:
            records = self.store.list_all_tunnels()
        except PersistenceError as e:
            logger.error("Cannot load saved tunnels", error=str(e))
            return report

        logger.info("Restoring saved tunnels", count=len(records))
        if not records:
            logger.info("No tunnels to restore")
            return report

        for index, record in enumerate(records):
            report.attempted += 1
            try:
                await self._restore_one(record, report)
            except Exception as e:
                logger.exception("Tunnel restoration crashed", tunnel_id=record.id)
                report.failed[record.id] = ExhaustedRetriesError(
                    f"Restoration of '{record.name}' crashed: {e}"
                )

            if index < len(records) - 1:
                await asyncio.sleep(self.policy.restore_stagger)

        logger.info(
            "Tunnel restoration finished",
            restored=len(report.restored),
            failed=len(report.failed),
            skipped=len(report.skipped),
        )
        return report

    def _superseded(self, tunnel_id: str) -> bool:
        """True if the tunnel went live or was deleted while we were waiting."""
        if tunnel_id in self.registry:
            return True
        try:
            return self.store.get_tunnel(tunnel_id) is None
        except PersistenceError:
            return False

    async def _restore_one(
        self, record: TunnelRecord, report: RestorationReport
    ) -> None:
        config = TunnelConfig.from_record(record)
        max_attempts = self.policy.restore_max_attempts
        log = logger.bind(tunnel_id=record.id, name=record.name)
        last: EstablishResult | None = None
        last_error: BaseException | None = None

        for attempt in range(1, max_attempts + 1):
            if self._superseded(record.id):
                log.info("Tunnel changed during restoration, skipping")
                report.skipped.append(record.id)
                return

            try:
                last = await self.establisher.establish(
                    record.id, config, on_closed=self.supervisor.connection_lost
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.exception(
                    "Tunnel restoration attempt crashed",
                    attempt=attempt,
                    max_attempts=max_attempts,
                )
                last_error = e
                last = None

            if last is not None and last.success and last.handle is not None:
                if self._superseded(record.id):
                    last.handle.close()
                    report.skipped.append(record.id)
                    return
                entry = self.registry.upsert(record.id, config, last.handle)
                self._persist(entry.config)
                report.restored.append(record.id)
                log.info("Tunnel restored", attempt=attempt)
                return

            if last is not None:
                last_error = last.error
                log.warning(
                    "Tunnel restoration attempt failed",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    reason=last.message,
                )
            if attempt < max_attempts:
                await asyncio.sleep(self.policy.restore_retry_delay)

        error = ExhaustedRetriesError(
            f"Could not restore '{record.name}' after {max_attempts} attempts"
        )
        error.__cause__ = last_error
        report.failed[record.id] = error
        log.error("Tunnel restoration failed", error=str(error))
        if not self._superseded(record.id):
            self._persist(config.with_status(TunnelStatus.ERROR))

    def _persist(self, config: TunnelConfig) -> None:
        try:
            self.store.upsert_tunnel(config.to_record())
        except PersistenceError as e:
            logger.warning(
                "Failed to persist restored tunnel", tunnel_id=config.id, error=str(e)
            )
