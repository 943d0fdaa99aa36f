"""Process wiring: build the manager from settings and run it until signalled."""

import asyncio
import signal
from typing import Any

from .bridge import LiteLLMBridge
from .common.exceptions import ConfigurationError, PersistenceError
from .common.logging import get_logger, setup_logging
from .common.settings import Settings
from .forwarding import AsyncSSHConnector, ConnectionEstablisher, PortForwardManager
from .storage import TunnelStore

logger = get_logger(__name__)


def build_manager(settings: Settings) -> PortForwardManager:
    """Create a manager wired to asyncssh, the tunnel store and LiteLLM.

    Args:
        settings: Process settings

    Returns:
        Manager ready for :meth:`PortForwardManager.restore`

    Raises:
        ConfigurationError: If the tunnel database cannot be opened
    """
    establisher = ConnectionEstablisher(
        AsyncSSHConnector.from_settings(settings), policy=settings.policy
    )
    try:
        store = TunnelStore(settings.database_url)
    except PersistenceError as e:
        raise ConfigurationError(
            f"Invalid database_url '{settings.database_url}': {e}"
        ) from e
    bridge = LiteLLMBridge.from_settings(settings) if settings.litellm_enabled else None
    return PortForwardManager(establisher, store=store, bridge=bridge)


def _log_loop_exception(
    loop: asyncio.AbstractEventLoop, context: dict[str, Any]
) -> None:
    exc = context.get("exception")
    logger.error(
        "Unhandled error in event loop",
        message=context.get("message", "asyncio exception"),
        task=repr(context.get("task") or context.get("future")),
        exc_info=exc,
    )


async def _close(manager: PortForwardManager) -> None:
    await manager.shutdown()
    if isinstance(manager.bridge, LiteLLMBridge):
        await manager.bridge.aclose()
    if isinstance(manager.store, TunnelStore):
        manager.store.dispose()


async def run(settings: Settings | None = None) -> None:
    """Restore saved tunnels and keep supervising them until SIGINT/SIGTERM.

    Records are kept on shutdown so the next start restores the same tunnels.
    """
    settings = settings or Settings()
    setup_logging(settings.log_level, settings.log_json, settings.log_file)

    loop = asyncio.get_running_loop()
    loop.set_exception_handler(_log_loop_exception)

    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    manager = build_manager(settings)
    logger.info(
        "PortKnox starting",
        **settings.model_dump(
            include={
                "database_url",
                "litellm_enabled",
                "litellm_base_url",
                "litellm_master_key",
                "ssh_known_hosts",
            }
        ),
    )
    try:
        if manager.bridge is not None and not await manager.bridge.healthcheck():
            logger.warning("LiteLLM proxy unreachable, model registration may fail")

        report = await manager.restore()
        logger.info(
            "Startup restoration complete",
            attempted=report.attempted,
            restored=len(report.restored),
            failed=sorted(report.failed),
        )
        if not report.all_restored:
            logger.warning(
                "Some tunnels could not be restored and are marked as error",
                tunnel_ids=sorted(report.failed),
            )
        await stop.wait()
    finally:
        logger.info("PortKnox shutting down")
        await _close(manager)
