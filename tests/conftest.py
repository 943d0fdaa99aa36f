"""Shared pytest fixtures for portknox tests."""

import asyncio
from collections.abc import Awaitable, Callable

import pytest

from portknox.common.exceptions import BindError, BridgeError, ConnectionError
from portknox.common.settings import ForwardingPolicy
from portknox.forwarding import (
    ConnectionEstablisher,
    PortForwardManager,
    TunnelConfig,
    TunnelRegistry,
)
from portknox.storage import TunnelStore


class FakeListener:
    """Local listener stand-in returned by :class:`FakeSession`."""

    def __init__(self, port: int):
        self.port = port
        self.closed = False

    def get_port(self) -> int:
        return self.port

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None


class FakeSession:
    """SSH session whose closure the test controls."""

    def __init__(self, bind_error: bool = False):
        self.bind_error = bind_error
        self.listeners: list[FakeListener] = []
        self.close_calls = 0
        self._closed = asyncio.Event()

    @property
    def is_closed(self) -> bool:
        return self._closed.is_set()

    async def forward_local(
        self, bind_address: str, bind_port: int, remote_host: str, remote_port: int
    ) -> FakeListener:
        if self.bind_error:
            raise BindError(f"Cannot bind {bind_address}:{bind_port}: in use")
        listener = FakeListener(bind_port)
        self.listeners.append(listener)
        return listener

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def close(self) -> None:
        self.close_calls += 1
        self._closed.set()

    def drop(self) -> None:
        """Simulate the jump host going away."""
        self._closed.set()


class FakeConnector:
    """Connector handing out :class:`FakeSession` objects.

    Set ``fail_connect`` to make every connect raise, or ``bind_error`` to make
    the next sessions refuse the local bind.
    """

    def __init__(self):
        self.fail_connect = False
        self.bind_error = False
        self.connect_delay = 0.0
        self.calls: list[tuple[str, int, str]] = []
        self.sessions: list[FakeSession] = []

    async def connect(self, host: str, port: int, username: str) -> FakeSession:
        self.calls.append((host, port, username))
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.fail_connect:
            raise ConnectionError(f"SSH connection to {username}@{host}:{port} failed")
        session = FakeSession(bind_error=self.bind_error)
        self.sessions.append(session)
        return session

    @property
    def last_session(self) -> FakeSession:
        return self.sessions[-1]


class FakeBridge:
    """In-memory model bridge recording its calls."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.registered: dict[str, tuple[str, str, str | None]] = {}
        self.unregistered: list[str] = []

    async def register(
        self, model_name: str, api_base: str, api_key: str | None = None
    ) -> str:
        if self.fail:
            raise BridgeError("LiteLLM POST /model/new returned 500")
        model_id = f"model-{len(self.registered) + 1}"
        self.registered[model_id] = (model_name, api_base, api_key)
        return model_id

    async def unregister(self, model_id: str) -> None:
        if self.fail:
            raise BridgeError("LiteLLM POST /model/delete returned 500")
        self.unregistered.append(model_id)

    async def healthcheck(self) -> bool:
        return not self.fail


async def always_ready(host: str, port: int, timeout: float) -> bool:
    return True


async def never_ready(host: str, port: int, timeout: float) -> bool:
    return False


@pytest.fixture
def fast_policy():
    """Policy with near-zero delays so supervision runs quickly in tests."""
    return ForwardingPolicy(
        probe_interval=0.001,
        probe_max_attempts=3,
        probe_connect_timeout=0.1,
        reconnect_delay=0,
        max_reconnect_attempts=5,
        restore_max_attempts=3,
        restore_retry_delay=0,
        restore_stagger=0,
    )


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def establisher(connector, fast_policy):
    """Establisher over the fake connector whose probe always succeeds."""
    return ConnectionEstablisher(connector, policy=fast_policy, probe=always_ready)


@pytest.fixture
def store(tmp_path):
    """Tunnel store on a temporary SQLite file.

    Args:
        tmp_path: pytest's tmp_path fixture

    Returns:
        TunnelStore: Empty store
    """
    tunnel_store = TunnelStore(f"sqlite:///{tmp_path / 'data' / 'tunnels.db'}")
    yield tunnel_store
    tunnel_store.dispose()


@pytest.fixture
def bridge():
    return FakeBridge()


@pytest.fixture
def manager(establisher, store, bridge):
    """Manager wired to the fake connector, a temp store and a fake bridge."""
    return PortForwardManager(
        establisher, registry=TunnelRegistry(store), store=store, bridge=bridge
    )


@pytest.fixture
def tunnel_config():
    """Factory for tunnel configs with sensible defaults."""

    def _make(**overrides) -> TunnelConfig:
        values = {
            "id": "fwd_test",
            "name": "postgres",
            "remote_host": "db.internal",
            "remote_port": 5432,
            "local_port": 15432,
            "ssh_user": "deploy",
            "ssh_host": "bastion.example.com",
        }
        values.update(overrides)
        return TunnelConfig(**values)

    return _make


@pytest.fixture
def eventually():
    """Poll a condition until it holds, yielding to the loop between checks."""

    async def _wait(
        condition: Callable[[], bool | Awaitable[bool]], timeout: float = 2.0
    ) -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while True:
            result = condition()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("Condition not met before timeout")
            await asyncio.sleep(0.005)

    return _wait
