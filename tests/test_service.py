import asyncio
import os
import signal
from unittest.mock import Mock

import pytest
import structlog

from portknox.__main__ import main
from portknox.bridge import LiteLLMBridge
from portknox.common.exceptions import ConfigurationError
from portknox.common.settings import Settings
from portknox.forwarding import TunnelStatus
from portknox.service import _log_loop_exception, build_manager, run
from portknox.storage import TunnelStore


@pytest.fixture
def settings(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'portknox.db'}", litellm_enabled=False
    )


class TestBuildManager:
    """Test suite for service wiring."""

    @pytest.mark.asyncio
    async def test_wires_store_and_policy(self, settings):
        manager = build_manager(settings)

        assert isinstance(manager.store, TunnelStore)
        assert manager.bridge is None
        assert manager.policy == settings.policy
        manager.store.dispose()

    @pytest.mark.asyncio
    async def test_bridge_enabled(self, settings):
        manager = build_manager(settings.model_copy(update={"litellm_enabled": True}))

        assert isinstance(manager.bridge, LiteLLMBridge)
        await manager.bridge.aclose()
        manager.store.dispose()

    def test_unusable_database_url(self, settings):
        """Test a database URL that cannot be opened is a configuration error."""
        with pytest.raises(ConfigurationError, match="database_url"):
            build_manager(settings.model_copy(update={"database_url": "not-a-url"}))

    def test_main_exits_on_configuration_error(self, monkeypatch):
        async def misconfigured():
            raise ConfigurationError("Invalid database_url 'not-a-url'")

        monkeypatch.setattr("portknox.__main__.run", misconfigured)

        with pytest.raises(SystemExit, match="not-a-url"):
            main()


class TestRun:
    """Test suite for the service loop."""

    def teardown_method(self) -> None:
        structlog.reset_defaults()

    def test_loop_exception_handler_does_not_raise(self):
        loop = asyncio.new_event_loop()
        try:
            _log_loop_exception(
                loop,
                {
                    "message": "Task exception was never retrieved",
                    "exception": RuntimeError("boom"),
                },
            )
            _log_loop_exception(loop, {"message": "no exception here"})
        finally:
            loop.close()

    @pytest.mark.asyncio
    async def test_runs_until_signalled(self, settings):
        """Test the service restores, waits and shuts down on SIGTERM."""
        task = asyncio.create_task(run(settings))
        await asyncio.sleep(0.2)
        assert not task.done()

        os.kill(os.getpid(), signal.SIGTERM)

        await asyncio.wait_for(task, timeout=2)
        assert asyncio.get_running_loop().get_exception_handler() is _log_loop_exception
        asyncio.get_running_loop().set_exception_handler(None)
        for sig in (signal.SIGINT, signal.SIGTERM):
            asyncio.get_running_loop().remove_signal_handler(sig)

    @pytest.mark.asyncio
    async def test_reports_unrestored_tunnels(
        self,
        settings,
        manager,
        store,
        connector,
        tunnel_config,
        monkeypatch,
        eventually,
    ):
        """Test tunnels that fail to come back at startup are reported."""
        store.upsert_tunnel(tunnel_config().to_record())
        connector.fail_connect = True
        log = Mock()
        monkeypatch.setattr("portknox.service.logger", log)
        monkeypatch.setattr("portknox.service.build_manager", lambda s: manager)

        task = asyncio.create_task(run(settings))
        await eventually(lambda: log.warning.called)

        os.kill(os.getpid(), signal.SIGTERM)
        await asyncio.wait_for(task, timeout=2)
        asyncio.get_running_loop().set_exception_handler(None)
        for sig in (signal.SIGINT, signal.SIGTERM):
            asyncio.get_running_loop().remove_signal_handler(sig)

        log.warning.assert_called_once_with(
            "Some tunnels could not be restored and are marked as error",
            tunnel_ids=["fwd_test"],
        )
        assert store.get_tunnel("fwd_test").status == TunnelStatus.ERROR
