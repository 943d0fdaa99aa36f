"""Thin asyncio SSH capability used by the connection establisher.

Everything the lifecycle code needs from SSH is ``connect`` returning a
session, ``session.forward_local`` returning a listener, and the session's
closure notification. asyncssh implements the transport, the direct-tcpip
channels and the paired flow-controlled relay behind each accepted socket.
"""

import asyncio
import errno
from typing import Any, Protocol

import asyncssh

from ..common.exceptions import BindError, ConnectionError
from ..common.logging import get_logger
from ..common.settings import Settings

logger = get_logger(__name__)

_BIND_ERRNOS = {errno.EADDRINUSE, errno.EACCES, errno.EADDRNOTAVAIL}


class ForwardListener(Protocol):
    """Local listener created by a session."""

    def get_port(self) -> int: ...

    def close(self) -> None: ...

    async def wait_closed(self) -> None: ...


class SSHSession(Protocol):
    """An authenticated SSH session able to forward local ports."""

    @property
    def is_closed(self) -> bool: ...

    async def forward_local(
        self, bind_address: str, bind_port: int, remote_host: str, remote_port: int
    ) -> ForwardListener: ...

    async def wait_closed(self) -> None: ...

    def close(self) -> None: ...


class SSHConnector(Protocol):
    """Factory for SSH sessions."""

    async def connect(
        self, host: str, port: int, username: str
    ) -> SSHSession: ...


class AsyncSSHSession:
    """``SSHSession`` backed by an ``asyncssh.SSHClientConnection``."""

    def __init__(self, conn: asyncssh.SSHClientConnection, label: str):
        self._conn = conn
        self._label = label
        self._closed = asyncio.Event()
        self._close_task = asyncio.create_task(self._track_closure())

    async def _track_closure(self) -> None:
        try:
            await self._conn.wait_closed()
        finally:
            self._closed.set()
            logger.debug("SSH session closed", session=self._label)

    @property
    def is_closed(self) -> bool:
        return self._closed.is_set()

    async def forward_local(
        self, bind_address: str, bind_port: int, remote_host: str, remote_port: int
    ) -> ForwardListener:
        """Listen on ``bind_address:bind_port`` and relay to the remote endpoint.

        Raises:
            BindError: If the local address cannot be bound
            ConnectionError: If the session refuses the forward
        """
        try:
            return await self._conn.forward_local_port(
                bind_address, bind_port, remote_host, remote_port
            )
        except OSError as e:
            if e.errno in _BIND_ERRNOS:
                raise BindError(
                    f"Cannot bind {bind_address}:{bind_port}: {e.strerror or e}"
                ) from e
            raise ConnectionError(f"Local forward setup failed: {e}") from e
        except asyncssh.Error as e:
            raise ConnectionError(f"Local forward rejected: {e}") from e

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def close(self) -> None:
        self._conn.close()


class AsyncSSHConnector:
    """Open SSH sessions with asyncssh using agent or default key material."""

    def __init__(
        self,
        client_keys: list[str] | None = None,
        known_hosts: str | None = None,
        connect_timeout: float = 10.0,
        keepalive_interval: float = 10.0,
        keepalive_count_max: int = 3,
    ):
        self.client_keys = client_keys or None
        self.known_hosts = known_hosts
        self.connect_timeout = connect_timeout
        self.keepalive_interval = keepalive_interval
        self.keepalive_count_max = keepalive_count_max

    @classmethod
    def from_settings(cls, settings: Settings) -> "AsyncSSHConnector":
        return cls(
            client_keys=settings.ssh_client_keys,
            known_hosts=settings.ssh_known_hosts,
            connect_timeout=settings.ssh_connect_timeout,
            keepalive_interval=settings.ssh_keepalive_interval,
            keepalive_count_max=settings.ssh_keepalive_count_max,
        )

    def _connect_options(self, port: int, username: str) -> dict[str, Any]:
        options: dict[str, Any] = {
            "port": port,
            "username": username,
            "known_hosts": self.known_hosts,
            "keepalive_interval": self.keepalive_interval,
            "keepalive_count_max": self.keepalive_count_max,
        }
        if self.client_keys:
            options["client_keys"] = self.client_keys
        return options

    async def connect(self, host: str, port: int, username: str) -> SSHSession:
        """Connect and authenticate to ``username@host:port``.

        Raises:
            ConnectionError: On transport, authentication or timeout failure
        """
        label = f"{username}@{host}:{port}"
        logger.debug("Opening SSH session", session=label)
        try:
            conn = await asyncio.wait_for(
                asyncssh.connect(host, **self._connect_options(port, username)),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ConnectionError(
                f"SSH connection to {label} timed out after {self.connect_timeout}s"
            ) from e
        except asyncssh.PermissionDenied as e:
            raise ConnectionError(f"SSH authentication failed for {label}: {e}") from e
        except (asyncssh.Error, OSError) as e:
            raise ConnectionError(f"SSH connection to {label} failed: {e}") from e

        return AsyncSSHSession(conn, label)
