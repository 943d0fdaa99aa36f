from unittest.mock import Mock

import pytest

from portknox.common.exceptions import PersistenceError
from portknox.forwarding.establisher import ForwardHandle
from portknox.forwarding.models import TunnelStatus
from portknox.forwarding.registry import TunnelRegistry


def make_handle(tunnel_id: str = "fwd_test") -> ForwardHandle:
    return ForwardHandle(
        tunnel_id=tunnel_id, session=Mock(is_closed=False), listener=Mock()
    )


class TestTunnelRegistry:
    """Test suite for TunnelRegistry."""

    def test_upsert_marks_active(self, tunnel_config):
        """Test that registered tunnels are always active."""
        registry = TunnelRegistry()
        entry = registry.upsert("fwd_test", tunnel_config(), make_handle())

        assert "fwd_test" in registry
        assert len(registry) == 1
        assert entry.config.status == TunnelStatus.ACTIVE
        assert registry.get_tunnel("fwd_test").status == TunnelStatus.ACTIVE

    def test_upsert_replaces_and_closes_previous_handle(self, tunnel_config):
        """Test that replacing an entry never leaves the old handle dangling."""
        registry = TunnelRegistry()
        first, second = make_handle(), make_handle()

        registry.upsert("fwd_test", tunnel_config(), first)
        registry.upsert("fwd_test", tunnel_config(local_port=16000), second)

        assert first.closed
        assert not second.closed
        assert len(registry) == 1
        assert registry.get_tunnel("fwd_test").local_port == 16000

    def test_replace_handle_only_when_registered(self, tunnel_config):
        """Test handle swaps for unknown tunnels leave the handle to the caller."""
        registry = TunnelRegistry()
        orphan = make_handle()

        assert registry.replace_handle("fwd_test", orphan) is False
        assert not orphan.closed

        old, new = make_handle(), make_handle()
        registry.upsert("fwd_test", tunnel_config(), old)

        assert registry.replace_handle("fwd_test", new) is True
        assert old.closed
        assert registry.entry("fwd_test").handle is new

    def test_remove_tunnel_leaves_handle_open(self, tunnel_config):
        """Test that removal only deregisters."""
        registry = TunnelRegistry()
        handle = make_handle()
        registry.upsert("fwd_test", tunnel_config(), handle)

        entry = registry.remove_tunnel("fwd_test")

        assert entry is not None and entry.handle is handle
        assert not handle.closed
        assert registry.get_tunnel("fwd_test") is None
        assert registry.remove_tunnel("fwd_test") is None

    def test_list_tunnels_filters_by_status(self, tunnel_config):
        """Test status filtering of snapshots."""
        registry = TunnelRegistry()
        registry.upsert("a", tunnel_config(id="a", local_port=1001), make_handle("a"))
        registry.upsert("b", tunnel_config(id="b", local_port=1002), make_handle("b"))
        registry.entry("b").config = registry.entry("b").config.with_status(
            TunnelStatus.ERROR
        )

        assert {c.id for c in registry.list_tunnels()} == {"a", "b"}
        assert [c.id for c in registry.list_tunnels(TunnelStatus.ERROR)] == ["b"]

    def test_snapshots_are_independent_of_entry(self, tunnel_config):
        """Test that callers get copies they cannot use to mutate state."""
        registry = TunnelRegistry()
        registry.upsert("fwd_test", tunnel_config(), make_handle())
        snapshot = registry.get_tunnel("fwd_test")

        registry.entry("fwd_test").config = snapshot.with_status(TunnelStatus.ERROR)

        assert snapshot.status == TunnelStatus.ACTIVE

    def test_list_merges_stored_metadata(self, tunnel_config, store):
        """Test that author and tags edited in storage show up in listings."""
        registry = TunnelRegistry(store)
        config = tunnel_config(author="ana", tags=["db"])
        registry.upsert("fwd_test", config, make_handle())
        store.upsert_tunnel(config.to_record())

        store.update_metadata("fwd_test", author="bo", tags=["db", "prod"])

        listed = registry.list_tunnels()[0]
        assert listed.author == "bo"
        assert listed.tags == ["db", "prod"]

    def test_store_failure_returns_memory_snapshot(self, tunnel_config):
        """Test that metadata lookups never fail a listing."""
        store = Mock()
        store.get_tunnel.side_effect = PersistenceError("disk I/O error")
        registry = TunnelRegistry(store)
        registry.upsert("fwd_test", tunnel_config(author="ana"), make_handle())

        assert registry.get_tunnel("fwd_test").author == "ana"

    @pytest.mark.parametrize(
        "registered,requested,conflict",
        [
            ("127.0.0.1", "127.0.0.1", True),
            ("127.0.0.1", "10.0.0.5", False),
            ("0.0.0.0", "127.0.0.1", True),
            ("127.0.0.1", "0.0.0.0", True),
        ],
    )
    def test_active_port_owner(self, tunnel_config, registered, requested, conflict):
        """Test local port conflict detection across bind addresses."""
        registry = TunnelRegistry()
        registry.upsert(
            "fwd_test", tunnel_config(local_bind_address=registered), make_handle()
        )

        owner = registry.active_port_owner(requested, 15432)

        assert (owner == "fwd_test") is conflict
        assert registry.has_active_port(requested, 15432) is conflict
        assert registry.active_port_owner(requested, 15433) is None

    def test_clear_returns_entries(self, tunnel_config):
        registry = TunnelRegistry()
        handle = make_handle()
        registry.upsert("fwd_test", tunnel_config(), handle)

        entries = registry.clear()

        assert [e.handle for e in entries] == [handle]
        assert len(registry) == 0
        assert registry.tunnel_ids() == []
