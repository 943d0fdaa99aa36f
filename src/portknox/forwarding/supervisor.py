"""Reconnection supervision for registered forwards.

Each tunnel runs an explicit state machine. :func:`transition` is pure: it
maps the current supervision snapshot and an event to the next snapshot plus
the side effects to perform. :class:`ReconnectSupervisor` applies transitions
to registry entries and owns the per-tunnel retry timers. Every timer
continuation re-checks that its tunnel is still registered before acting.
"""

import asyncio
from dataclasses import dataclass, replace
from enum import Enum

from ..common.exceptions import EstablishError, ExhaustedRetriesError, PersistenceError
from ..common.logging import get_logger
from ..common.settings import ForwardingPolicy
from .establisher import ConnectionEstablisher, ForwardHandle
from .interfaces import TunnelStoreProtocol
from .models import SupervisorState
from .registry import ActiveForward, TunnelRegistry

logger = get_logger(__name__)


class SupervisorEvent(str, Enum):
    """Events driving the supervision state machine."""

    CONNECTION_LOST = "connection_lost"
    ATTEMPT_SUCCEEDED = "attempt_succeeded"
    ATTEMPT_FAILED = "attempt_failed"
    STOPPED = "stopped"


class Effect(str, Enum):
    """Side effects requested by a transition, executed in order."""

    CANCEL_RETRY = "cancel_retry"
    CLOSE_HANDLE = "close_handle"
    PERSIST = "persist"
    SCHEDULE_RETRY = "schedule_retry"


@dataclass(frozen=True)
class SupervisionSnapshot:
    state: SupervisorState
    attempts: int = 0
    reconnecting: bool = False

    @classmethod
    def of(cls, entry: ActiveForward) -> "SupervisionSnapshot":
        return cls(entry.state, entry.reconnect_attempts, entry.is_reconnecting)


@dataclass(frozen=True)
class Transition:
    snapshot: SupervisionSnapshot
    effects: tuple[Effect, ...] = ()

    @property
    def is_noop(self) -> bool:
        return not self.effects


def _retry_or_give_up(
    current: SupervisionSnapshot, max_attempts: int, *leading: Effect
) -> Transition:
    if current.attempts >= max_attempts:
        return Transition(
            SupervisionSnapshot(SupervisorState.ERRORED, current.attempts, False),
            (*leading, Effect.PERSIST),
        )
    return Transition(
        SupervisionSnapshot(SupervisorState.RECONNECTING, current.attempts + 1, True),
        (*leading, Effect.PERSIST, Effect.SCHEDULE_RETRY),
    )


def transition(
    current: SupervisionSnapshot, event: SupervisorEvent, max_attempts: int
) -> Transition:
    """Compute the next supervision snapshot and its side effects.

    Args:
        current: Current state, attempt counter and reconnecting flag
        event: Event that occurred
        max_attempts: Reconnect attempts allowed per supervision cycle

    Returns:
        Transition holding the next snapshot and ordered effects
    """
    if event == SupervisorEvent.STOPPED:
        return Transition(
            SupervisionSnapshot(current.state, max_attempts, True),
            (Effect.CANCEL_RETRY, Effect.CLOSE_HANDLE),
        )

    if event == SupervisorEvent.ATTEMPT_SUCCEEDED:
        return Transition(
            SupervisionSnapshot(SupervisorState.CONNECTED, 0, False), (Effect.PERSIST,)
        )

    if event == SupervisorEvent.ATTEMPT_FAILED:
        return _retry_or_give_up(replace(current, reconnecting=False), max_attempts)

    # connection lost: only one supervision cycle at a time, errored is terminal
    if current.reconnecting or current.state == SupervisorState.ERRORED:
        return Transition(current)
    return _retry_or_give_up(current, max_attempts, Effect.CLOSE_HANDLE)


class ReconnectSupervisor:
    """Applies supervision transitions and runs the delayed reconnect attempts."""

    def __init__(
        self,
        registry: TunnelRegistry,
        establisher: ConnectionEstablisher,
        store: TunnelStoreProtocol | None = None,
        policy: ForwardingPolicy | None = None,
    ):
        self.registry = registry
        self.establisher = establisher
        self.store = store
        self.policy = policy or establisher.policy
        self._timers: dict[str, asyncio.Task[None]] = {}

    @property
    def pending(self) -> list[str]:
        """Tunnel ids with a scheduled or running reconnect attempt."""
        return [tid for tid, task in self._timers.items() if not task.done()]

    def connection_lost(self, handle: ForwardHandle) -> None:
        """Closure callback wired into every established handle.

        Closures of handles that were replaced or belong to a stopped tunnel
        are ignored.
        """
        entry = self.registry.entry(handle.tunnel_id)
        if entry is None or entry.handle is not handle:
            logger.debug(
                "Ignoring closure of retired handle", tunnel_id=handle.tunnel_id
            )
            return
        self.dispatch(handle.tunnel_id, SupervisorEvent.CONNECTION_LOST)

    def dispatch(self, tunnel_id: str, event: SupervisorEvent) -> Transition | None:
        """Apply ``event`` to a registered tunnel.

        Returns:
            The applied transition, or None if the tunnel is not registered
        """
        entry = self.registry.entry(tunnel_id)
        if entry is None:
            return None

        result = transition(
            SupervisionSnapshot.of(entry), event, self.policy.max_reconnect_attempts
        )
        if result.is_noop:
            return result

        self._apply(entry, result.snapshot)
        self._log_transition(tunnel_id, event, entry)
        self._run_effects(tunnel_id, entry, result.effects)
        return result

    def retire(self, tunnel_id: str) -> ActiveForward | None:
        """Deregister a tunnel and close its connection, in that order.

        The attempt counter is pinned to the maximum and the entry removed
        before the handle is closed, so the closure this causes cannot start
        another supervision cycle.

        Returns:
            The removed entry, or None if the tunnel was not registered
        """
        entry = self.registry.entry(tunnel_id)
        if entry is None:
            self.cancel(tunnel_id)
            return None

        result = transition(
            SupervisionSnapshot.of(entry),
            SupervisorEvent.STOPPED,
            self.policy.max_reconnect_attempts,
        )
        self._apply(entry, result.snapshot)
        self.registry.remove_tunnel(tunnel_id)
        self._run_effects(tunnel_id, entry, result.effects)
        return entry

    def cancel(self, tunnel_id: str) -> None:
        """Cancel a pending reconnect attempt, if any."""
        task = self._timers.pop(tunnel_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def cancel_all(self) -> None:
        for tunnel_id in list(self._timers):
            self.cancel(tunnel_id)

    def _apply(self, entry: ActiveForward, snapshot: SupervisionSnapshot) -> None:
        entry.reconnect_attempts = snapshot.attempts
        entry.is_reconnecting = snapshot.reconnecting
        entry.set_state(snapshot.state)
        if snapshot.state == SupervisorState.ERRORED:
            exhausted = ExhaustedRetriesError(
                f"Gave up after {snapshot.attempts} reconnection attempts"
            )
            exhausted.__cause__ = entry.last_error
            entry.last_error = exhausted
        elif snapshot.state == SupervisorState.CONNECTED:
            entry.last_error = None

    def _run_effects(
        self, tunnel_id: str, entry: ActiveForward, effects: tuple[Effect, ...]
    ) -> None:
        for effect in effects:
            if effect == Effect.CANCEL_RETRY:
                self.cancel(tunnel_id)
            elif effect == Effect.CLOSE_HANDLE:
                if entry.handle is not None:
                    entry.handle.close()
            elif effect == Effect.PERSIST:
                self._persist(tunnel_id, entry)
            elif effect == Effect.SCHEDULE_RETRY:
                self._schedule(tunnel_id)

    def _log_transition(
        self, tunnel_id: str, event: SupervisorEvent, entry: ActiveForward
    ) -> None:
        log = logger.bind(
            tunnel_id=tunnel_id,
            event=event.value,
            state=entry.state.value,
            attempt=entry.reconnect_attempts,
            max_attempts=self.policy.max_reconnect_attempts,
        )
        if entry.state == SupervisorState.ERRORED:
            log.error("Reconnection attempts exhausted, tunnel marked as error")
        elif entry.state == SupervisorState.RECONNECTING:
            log.warning("Tunnel connection lost, reconnect scheduled")
        elif event == SupervisorEvent.ATTEMPT_SUCCEEDED:
            log.info("Tunnel reconnected")

    def _persist(self, tunnel_id: str, entry: ActiveForward) -> None:
        if self.store is None:
            return
        # keep author/tags edited by other workflows
        config = self.registry.get_tunnel(tunnel_id) or entry.config
        try:
            self.store.upsert_tunnel(config.to_record())
        except PersistenceError as e:
            logger.warning(
                "Failed to persist tunnel status", tunnel_id=tunnel_id, error=str(e)
            )

    def _schedule(self, tunnel_id: str) -> None:
        self.cancel(tunnel_id)
        task = asyncio.create_task(
            self._reconnect_after_delay(tunnel_id), name=f"reconnect-{tunnel_id}"
        )
        self._timers[tunnel_id] = task
        task.add_done_callback(lambda t: self._forget(tunnel_id, t))

    def _forget(self, tunnel_id: str, task: asyncio.Task[None]) -> None:
        if self._timers.get(tunnel_id) is task:
            del self._timers[tunnel_id]

    async def _reconnect_after_delay(self, tunnel_id: str) -> None:
        await asyncio.sleep(self.policy.reconnect_delay)

        entry = self.registry.entry(tunnel_id)
        if entry is None:
            logger.info(
                "Tunnel already stopped, reconnect cancelled", tunnel_id=tunnel_id
            )
            return

        error: Exception | None = None
        try:
            result = await self.establisher.establish(
                tunnel_id, entry.config, on_closed=self.connection_lost
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Reconnect attempt crashed", tunnel_id=tunnel_id)
            result = None
            error = e
        else:
            error = result.error

        try:
            entry = self.registry.entry(tunnel_id)
            if entry is None:
                if result is not None and result.handle is not None:
                    result.handle.close()
                logger.info(
                    "Tunnel stopped during reconnect, discarding", tunnel_id=tunnel_id
                )
                return

            if result is not None and result.success and result.handle is not None:
                self.registry.replace_handle(tunnel_id, result.handle)
                self.dispatch(tunnel_id, SupervisorEvent.ATTEMPT_SUCCEEDED)
            else:
                if isinstance(error, EstablishError):
                    entry.last_error = error
                self.dispatch(tunnel_id, SupervisorEvent.ATTEMPT_FAILED)
        except Exception:
            # one tunnel's supervision must never take down the loop or others
            logger.exception("Supervision step failed", tunnel_id=tunnel_id)
