"""Protocol interfaces for the collaborators of the forwarding core."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from .models import TunnelRecord


class TunnelStoreProtocol(Protocol):
    """Durable record store for tunnel configuration and status."""

    def upsert_tunnel(self, record: TunnelRecord) -> None:
        """Insert or update a record by id."""
        ...

    def delete_tunnel(self, tunnel_id: str) -> bool:
        """Delete a record; return whether it existed."""
        ...

    def get_tunnel(self, tunnel_id: str) -> TunnelRecord | None:
        """Get a record by id."""
        ...

    def list_all_tunnels(self) -> list[TunnelRecord]:
        """List all records ordered by creation time."""
        ...


class ModelBridgeProtocol(Protocol):
    """Registration of a forward's local endpoint as a model backend."""

    async def register(
        self, model_name: str, api_base: str, api_key: str | None = None
    ) -> str:
        """Register a model and return its opaque id."""
        ...

    async def unregister(self, model_id: str) -> None:
        """Remove a previously registered model."""
        ...

    async def healthcheck(self) -> bool:
        """Return True if the backend is reachable."""
        ...
