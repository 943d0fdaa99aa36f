"""Bring a forward up and confirm it accepts connections."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from ..common.exceptions import (
    BindError,
    ConnectionError,
    EstablishError,
    ProbeTimeoutError,
)
from ..common.logging import get_logger
from ..common.settings import ForwardingPolicy
from ..common.utils import probe_address
from .models import TunnelConfig
from .ssh import ForwardListener, SSHConnector, SSHSession

logger = get_logger(__name__)

ProbeFn = Callable[[str, int, float], Awaitable[bool]]
ClosedCallback = Callable[["ForwardHandle"], None]


async def probe_port(host: str, port: int, timeout: float) -> bool:
    """Return True if a TCP connection to ``host:port`` succeeds within ``timeout``."""
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout
        )
    except (OSError, asyncio.TimeoutError):
        return False

    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


@dataclass(eq=False)
class ForwardHandle:
    """Live session and listener of one established forward."""

    tunnel_id: str
    session: SSHSession
    listener: ForwardListener
    watcher: asyncio.Task[None] | None = field(default=None, repr=False)
    closed: bool = False

    @property
    def is_alive(self) -> bool:
        return not self.closed and not self.session.is_closed

    def close(self) -> None:
        """Close listener and session. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        try:
            self.listener.close()
        finally:
            self.session.close()


@dataclass
class EstablishResult:
    """Typed outcome of :meth:`ConnectionEstablisher.establish`."""

    success: bool
    message: str
    handle: ForwardHandle | None = None
    error: EstablishError | None = None


class ConnectionEstablisher:
    """Opens an SSH session and wires a verified local forward through it."""

    def __init__(
        self,
        connector: SSHConnector,
        policy: ForwardingPolicy | None = None,
        probe: ProbeFn = probe_port,
    ):
        self.connector = connector
        self.policy = policy or ForwardingPolicy()
        self._probe = probe

    async def establish(
        self,
        tunnel_id: str,
        config: TunnelConfig,
        on_closed: ClosedCallback | None = None,
    ) -> EstablishResult:
        """Establish the forward described by ``config``.

        Never raises for expected failures; the result carries a
        ``ConnectionError``, ``BindError`` or ``ProbeTimeoutError`` instead.

        Args:
            tunnel_id: Tunnel the forward belongs to
            config: Forward configuration
            on_closed: Called with the handle once the session closes

        Returns:
            EstablishResult with a live handle on success
        """
        log = logger.bind(tunnel_id=tunnel_id)
        log.info(
            "Establishing forward",
            ssh=f"{config.ssh_user}@{config.ssh_host}:{config.ssh_port}",
            forward=config.endpoint,
        )

        try:
            session = await self.connector.connect(
                config.ssh_host, config.ssh_port, config.ssh_user
            )
        except ConnectionError as e:
            log.warning("SSH connection failed", error=str(e))
            return EstablishResult(False, f"SSH connection failed: {e}", error=e)

        try:
            listener = await session.forward_local(
                config.local_bind_address,
                config.local_port,
                config.remote_host,
                config.remote_port,
            )
        except (BindError, ConnectionError) as e:
            session.close()
            log.warning("Local forward setup failed", error=str(e))
            return EstablishResult(False, str(e), error=e)
        except BaseException:
            session.close()
            raise

        handle = ForwardHandle(tunnel_id=tunnel_id, session=session, listener=listener)

        try:
            error = await self._wait_until_usable(handle, config)
        except BaseException:
            handle.close()
            raise

        if error is not None:
            handle.close()
            log.warning("Forward not usable", error=str(error))
            return EstablishResult(False, str(error), error=error)

        handle.watcher = asyncio.create_task(self._watch(handle, on_closed))

        access = "all interfaces" if config.externally_reachable else "localhost only"
        log.info("Forward established", forward=config.endpoint, access=access)
        return EstablishResult(
            True,
            f"SSH port forward started: {config.endpoint} ({access})",
            handle=handle,
        )

    async def _wait_until_usable(
        self, handle: ForwardHandle, config: TunnelConfig
    ) -> EstablishError | None:
        """Poll the bind address until it accepts a connection."""
        host = probe_address(config.local_bind_address)
        policy = self.policy

        for _ in range(policy.probe_max_attempts):
            await asyncio.sleep(policy.probe_interval)

            if handle.session.is_closed:
                return ConnectionError(
                    "SSH session closed before the forward was ready"
                )

            if await self._probe(host, config.local_port, policy.probe_connect_timeout):
                return None

        return ProbeTimeoutError(
            f"Forward on {host}:{config.local_port} did not accept connections "
            f"within {policy.probe_window:.1f}s"
        )

    async def _watch(
        self, handle: ForwardHandle, on_closed: ClosedCallback | None
    ) -> None:
        await handle.session.wait_closed()
        logger.info("Forward connection closed", tunnel_id=handle.tunnel_id)
        if on_closed is not None:
            on_closed(handle)
