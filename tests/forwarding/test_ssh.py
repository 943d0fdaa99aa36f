import asyncio
import errno
from unittest.mock import AsyncMock, Mock, patch

import asyncssh
import pytest

from portknox.common.exceptions import BindError, ConnectionError
from portknox.common.settings import Settings
from portknox.forwarding.ssh import AsyncSSHConnector, AsyncSSHSession


def make_conn() -> tuple[Mock, asyncio.Event]:
    """Mock asyncssh connection whose closure is driven by the returned event."""
    closed = asyncio.Event()
    conn = Mock()
    conn.wait_closed = closed.wait
    conn.close = Mock(side_effect=closed.set)
    conn.forward_local_port = AsyncMock()
    return conn, closed


class TestAsyncSSHSession:
    """Test suite for the asyncssh session adapter."""

    @pytest.mark.asyncio
    async def test_tracks_closure(self):
        """Test closure of the connection is observable."""
        conn, closed = make_conn()
        session = AsyncSSHSession(conn, "deploy@bastion:22")
        await asyncio.sleep(0)

        assert not session.is_closed
        closed.set()
        await asyncio.wait_for(session.wait_closed(), timeout=1)

        assert session.is_closed

    @pytest.mark.asyncio
    async def test_close_closes_connection(self):
        conn, _ = make_conn()
        session = AsyncSSHSession(conn, "deploy@bastion:22")

        session.close()
        await asyncio.wait_for(session.wait_closed(), timeout=1)

        conn.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_forward_local_delegates(self):
        conn, _ = make_conn()
        listener = Mock()
        conn.forward_local_port.return_value = listener
        session = AsyncSSHSession(conn, "deploy@bastion:22")

        result = await session.forward_local("127.0.0.1", 15432, "db.internal", 5432)

        assert result is listener
        conn.forward_local_port.assert_awaited_once_with(
            "127.0.0.1", 15432, "db.internal", 5432
        )
        session.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "code", [errno.EADDRINUSE, errno.EACCES, errno.EADDRNOTAVAIL]
    )
    async def test_bind_errors(self, code):
        """Test bind failures on the local listener become BindError."""
        conn, _ = make_conn()
        conn.forward_local_port.side_effect = OSError(code, "bind failed")
        session = AsyncSSHSession(conn, "deploy@bastion:22")

        with pytest.raises(BindError, match="Cannot bind 127.0.0.1:15432"):
            await session.forward_local("127.0.0.1", 15432, "db.internal", 5432)
        session.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [OSError(errno.ECONNRESET, "reset"), asyncssh.Error(1, "forward refused")],
    )
    async def test_other_errors(self, error):
        """Test remaining failures become ConnectionError."""
        conn, _ = make_conn()
        conn.forward_local_port.side_effect = error
        session = AsyncSSHSession(conn, "deploy@bastion:22")

        with pytest.raises(ConnectionError):
            await session.forward_local("127.0.0.1", 15432, "db.internal", 5432)
        session.close()


class TestAsyncSSHConnector:
    """Test suite for the asyncssh connector."""

    @pytest.mark.asyncio
    async def test_connect_options(self):
        """Test keepalive and host key options are passed to asyncssh."""
        conn, _ = make_conn()
        connector = AsyncSSHConnector(client_keys=["~/.ssh/id_ed25519"])

        with patch("asyncssh.connect", AsyncMock(return_value=conn)) as connect:
            session = await connector.connect("bastion", 2222, "deploy")

        connect.assert_called_once_with(
            "bastion",
            port=2222,
            username="deploy",
            known_hosts=None,
            keepalive_interval=10.0,
            keepalive_count_max=3,
            client_keys=["~/.ssh/id_ed25519"],
        )
        assert isinstance(session, AsyncSSHSession)
        session.close()

    def test_from_settings(self):
        settings = Settings(
            ssh_known_hosts="/etc/ssh/known_hosts", ssh_connect_timeout=4.0
        )

        connector = AsyncSSHConnector.from_settings(settings)

        assert connector.known_hosts == "/etc/ssh/known_hosts"
        assert connector.connect_timeout == 4.0
        assert connector.client_keys is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error,message",
        [
            (asyncio.TimeoutError(), "timed out"),
            (asyncssh.PermissionDenied("bad key"), "authentication failed"),
            (asyncssh.DisconnectError(11, "bye"), "failed"),
            (OSError(errno.ECONNREFUSED, "refused"), "failed"),
        ],
    )
    async def test_connect_failures(self, error, message):
        """Test every connect failure surfaces as ConnectionError."""
        connector = AsyncSSHConnector()

        with patch("asyncssh.connect", AsyncMock(side_effect=error)):
            with pytest.raises(ConnectionError, match=message):
                await connector.connect("bastion", 22, "deploy")
