"""
Tests for agentmesh.discovery — bootstrap, peer listing, mesh classification.

Uses an in-memory fake transport; no daemon required.
"""

from __future__ import annotations

import asyncio

import pytest

from agentmesh.discovery import (
    BOOTSTRAPPED,
    CONNECTED,
    STALE,
    UNKNOWN,
    Connection,
    DiscoveryService,
    NodeIdentity,
    PeerDirectory,
    PeerRecord,
)
from agentmesh.discovery.service import default_bootstrap_peers
from agentmesh.discovery.transport import peer_address, peer_id_from_address
from agentmesh.errors import MeshTimeoutError, TransportError

SELF_ID = "12D3KooWSelf"


class FakeTransport:
    """Records every dial; addresses in ``failing`` raise TransportError."""

    def __init__(self, self_id=SELF_ID, failing=(), connections=None):
        self.self_id = self_id
        self.failing = set(failing)
        self.connections = list(connections or [])
        self.dialed: list[str] = []
        self.list_error: Exception | None = None

    async def connect(self, address):
        self.dialed.append(address)
        if address in self.failing:
            raise TransportError(f"dial {address} refused")

    async def list_connections(self):
        if self.list_error is not None:
            raise self.list_error
        return list(self.connections)

    async def self_identity(self):
        return NodeIdentity(id=self.self_id, addresses=["/ip4/127.0.0.1/tcp/4001"])


class Clock:
    def __init__(self, t=1000.0):
        self.t = t

    def __call__(self):
        return self.t


def _peer(peer_id, *addresses, **kwargs):
    return PeerRecord(peer_id=peer_id, addresses=list(addresses), **kwargs)


# ══════════════════════════════════════════════════════════════════════════
# PeerRecord
# ══════════════════════════════════════════════════════════════════════════


class TestPeerRecord:

    def test_empty_id_rejected(self):
        with pytest.raises(ValueError, match="peer_id"):
            PeerRecord(peer_id="")

    def test_unknown_capability_rejected(self):
        with pytest.raises(ValueError, match="teleport"):
            PeerRecord(peer_id="A", capabilities={"storage", "teleport"})

    def test_from_dict_aliases(self):
        p = PeerRecord.from_dict({
            "peerId": "A", "multiaddrs": ["/ip4/1.2.3.4/tcp/4001"],
            "agentName": "alpha", "capabilities": ["storage"],
        })
        assert p.peer_id == "A"
        assert p.addresses == ["/ip4/1.2.3.4/tcp/4001"]
        assert p.agent_name == "alpha"
        assert p.capabilities == frozenset({"storage"})

    def test_from_bare_multiaddr(self):
        p = PeerRecord.from_dict("/ip4/1.2.3.4/tcp/4001/p2p/12D3KooWabc")
        assert p.peer_id == "12D3KooWabc"
        assert p.addresses == ["/ip4/1.2.3.4/tcp/4001/p2p/12D3KooWabc"]

    def test_from_dict_without_any_id(self):
        with pytest.raises(ValueError):
            PeerRecord.from_dict({"addresses": ["/ip4/1.2.3.4/tcp/4001"]})

    def test_to_dict_omits_empty(self):
        assert _peer("A").to_dict() == {"peer_id": "A", "addresses": []}

    def test_peer_id_from_address(self):
        assert peer_id_from_address("/dns4/x.org/tcp/4001/p2p/QmX") == "QmX"
        assert peer_id_from_address("/ip4/1.2.3.4/tcp/4001/ipfs/QmY") == "QmY"
        assert peer_id_from_address("/ip4/1.2.3.4/tcp/4001") is None

    def test_default_bootstrap_peers_fresh_copies(self):
        a = default_bootstrap_peers()
        a[0].addresses.append("/ip4/9.9.9.9/tcp/1")
        assert "/ip4/9.9.9.9/tcp/1" not in default_bootstrap_peers()[0].addresses


# ══════════════════════════════════════════════════════════════════════════
# PeerDirectory
# ══════════════════════════════════════════════════════════════════════════


class TestPeerDirectory:

    def test_add_bootstrap_dedups(self):
        d = PeerDirectory([_peer("A", "/a1")])
        assert d.add_bootstrap(_peer("A", "/other")) is False
        assert d.add_bootstrap(_peer("B")) is True
        assert [p.peer_id for p in d.bootstrap_peers()] == ["A", "B"]
        assert d.get_bootstrap("A").addresses == ["/a1"]

    def test_bootstrap_peers_are_copies(self):
        d = PeerDirectory([_peer("A")])
        d.bootstrap_peers()[0].agent_name = "mutated"
        assert d.get_bootstrap("A").agent_name is None

    def test_states(self):
        d = PeerDirectory([_peer("A")], clock=Clock(5.0))
        assert d.state("A") == BOOTSTRAPPED
        assert d.state("Z") == UNKNOWN
        stored = d.mark_connected(d.get_bootstrap("A"))
        assert stored.last_seen == 5.0
        assert d.state("A") == CONNECTED

    def test_mark_failed_resting_state(self):
        d = PeerDirectory([_peer("A")])
        d.mark_connecting("A")
        d.mark_failed("A")
        assert d.state("A") == BOOTSTRAPPED
        d.mark_connecting("Z")
        d.mark_failed("Z")
        assert d.state("Z") == UNKNOWN

    def test_enrich_merges_known_metadata(self):
        clock = Clock(42.0)
        d = PeerDirectory(
            [_peer("A", "/known", agent_name="alpha", capabilities={"query"})],
            clock=clock,
        )
        merged = d.enrich(_peer("A", "/live"))
        assert merged.agent_name == "alpha"
        assert merged.capabilities == frozenset({"query"})
        assert merged.addresses == ["/live", "/known"]
        assert merged.last_seen == 42.0

    def test_enrich_unknown_peer_gets_timestamp(self):
        d = PeerDirectory(clock=Clock(7.0))
        merged = d.enrich(_peer("X", "/x"))
        assert merged.agent_name is None
        assert merged.last_seen == 7.0

    def test_refresh_marks_missing_stale(self):
        d = PeerDirectory()
        d.refresh([_peer("A"), _peer("B")])
        d.refresh([_peer("B")])
        assert d.state("A") == STALE
        assert d.state("B") == CONNECTED

    def test_stale_peer_reconnects(self):
        d = PeerDirectory()
        d.refresh([_peer("A")])
        d.refresh([])
        assert d.state("A") == STALE
        d.refresh([_peer("A")])
        assert d.state("A") == CONNECTED


# ══════════════════════════════════════════════════════════════════════════
# DiscoveryService
# ══════════════════════════════════════════════════════════════════════════


class TestBootstrap:

    @pytest.mark.asyncio
    async def test_skips_self(self):
        transport = FakeTransport()
        svc = DiscoveryService(transport, bootstrap_peers=[
            _peer(SELF_ID, "/self"), _peer("A", "/a"),
        ])
        result = await svc.bootstrap()
        assert result.to_dict() == {"connected": 1, "failed": 0, "skipped": 1}
        assert "/self" not in transport.dialed
        assert transport.dialed == ["/a"]

    @pytest.mark.asyncio
    async def test_addresses_tried_in_order_until_success(self):
        transport = FakeTransport(failing={"/a1", "/a2"})
        svc = DiscoveryService(transport, bootstrap_peers=[_peer("A", "/a1", "/a2", "/a3", "/a4")])
        result = await svc.bootstrap()
        assert result.connected == 1
        assert transport.dialed == ["/a1", "/a2", "/a3"]
        assert svc.directory.state("A") == CONNECTED

    @pytest.mark.asyncio
    async def test_all_addresses_fail(self):
        transport = FakeTransport(failing={"/a1", "/a2"})
        svc = DiscoveryService(transport, bootstrap_peers=[_peer("A", "/a1", "/a2"), _peer("B", "/b")])
        result = await svc.bootstrap()
        assert result.to_dict() == {"connected": 1, "failed": 1, "skipped": 0}
        assert svc.directory.state("A") == BOOTSTRAPPED

    @pytest.mark.asyncio
    async def test_no_addresses_dials_by_id(self):
        transport = FakeTransport()
        svc = DiscoveryService(transport, bootstrap_peers=[_peer("A")])
        await svc.bootstrap()
        assert transport.dialed == [peer_address("A")] == ["/p2p/A"]

    @pytest.mark.asyncio
    async def test_identity_failure_propagates(self):
        transport = FakeTransport()

        async def broken():
            raise MeshTimeoutError("id timed out")

        transport.self_identity = broken
        svc = DiscoveryService(transport, bootstrap_peers=[_peer("A", "/a")])
        with pytest.raises(MeshTimeoutError):
            await svc.bootstrap()
        assert transport.dialed == []

    @pytest.mark.asyncio
    async def test_default_bootstrap_list(self):
        svc = DiscoveryService(FakeTransport())
        assert len(svc.get_bootstrap_peers()) >= 1


class TestPeers:

    @pytest.mark.asyncio
    async def test_connect_false_on_failure(self):
        svc = DiscoveryService(FakeTransport(failing={"/bad"}), bootstrap_peers=[])
        assert await svc.connect("/bad") is False
        assert await svc.connect("/good") is True

    @pytest.mark.asyncio
    async def test_peers_enriched(self):
        transport = FakeTransport(connections=[Connection("A", "/live")])
        svc = DiscoveryService(
            transport,
            bootstrap_peers=[_peer("A", "/known", agent_name="alpha")],
            directory=PeerDirectory(clock=Clock(99.0)),
        )
        peers = await svc.peers()
        assert len(peers) == 1
        assert peers[0].agent_name == "alpha"
        assert peers[0].addresses == ["/live", "/known"]
        assert peers[0].last_seen == 99.0

    @pytest.mark.asyncio
    async def test_peers_listing_failure_is_empty(self):
        transport = FakeTransport()
        transport.list_error = TransportError("daemon down")
        svc = DiscoveryService(transport, bootstrap_peers=[])
        assert await svc.peers() == []

    @pytest.mark.asyncio
    async def test_peers_stale_after_disconnect(self):
        transport = FakeTransport(connections=[Connection("A"), Connection("B")])
        svc = DiscoveryService(transport, bootstrap_peers=[])
        await svc.peers()
        transport.connections = [Connection("B")]
        await svc.peers()
        assert svc.directory.state("A") == STALE
        assert await svc.is_connected("B") is True
        assert await svc.is_connected("A") is False

    @pytest.mark.asyncio
    async def test_mesh_is_intersection(self):
        transport = FakeTransport(connections=[Connection("A"), Connection("B"), Connection("C")])
        svc = DiscoveryService(transport, bootstrap_peers=[_peer("B"), _peer("D")])
        mesh = await svc.find_mesh_peers()
        assert [p.peer_id for p in mesh] == ["B"]

    @pytest.mark.asyncio
    async def test_mesh_empty_without_overlap(self):
        transport = FakeTransport(connections=[Connection("A")])
        svc = DiscoveryService(transport, bootstrap_peers=[_peer("D")])
        assert await svc.find_mesh_peers() == []


class TestSelfAndAnnounce:

    @pytest.mark.asyncio
    async def test_self_info(self):
        svc = DiscoveryService(
            FakeTransport(), bootstrap_peers=[], agent_name="me",
            directory=PeerDirectory(clock=Clock(3.0)),
        )
        info = await svc.get_self_info()
        assert info.peer_id == SELF_ID
        assert info.agent_name == "me"
        assert info.capabilities == frozenset({"storage", "query"})
        assert info.last_seen == 3.0

    @pytest.mark.asyncio
    async def test_announce_has_no_network_effect(self):
        transport = FakeTransport()
        svc = DiscoveryService(transport, bootstrap_peers=[_peer("A", "/a")])
        info = await svc.announce()
        assert info.peer_id == SELF_ID
        assert transport.dialed == []
        assert svc.directory.state("A") == BOOTSTRAPPED

    def test_add_bootstrap_peer_dedup(self):
        svc = DiscoveryService(FakeTransport(), bootstrap_peers=[_peer("A")])
        assert svc.add_bootstrap_peer(_peer("A", "/dup")) is False
        assert svc.add_bootstrap_peer(_peer("B")) is True
        assert [p.peer_id for p in svc.get_bootstrap_peers()] == ["A", "B"]


class HangingTransport(FakeTransport):
    """Dials and listings that never answer."""

    async def connect(self, address):
        self.dialed.append(address)
        await asyncio.sleep(3600)

    async def list_connections(self):
        await asyncio.sleep(3600)


class TestDeadlines:

    @pytest.mark.asyncio
    async def test_hung_dial_counts_as_failed(self):
        transport = HangingTransport()
        svc = DiscoveryService(
            transport, bootstrap_peers=[_peer("A", "/a1", "/a2"), _peer(SELF_ID)], timeout=0.05,
        )
        result = await asyncio.wait_for(svc.bootstrap(), timeout=2.0)
        assert result.to_dict() == {"connected": 0, "failed": 1, "skipped": 1}
        assert transport.dialed == ["/a1", "/a2"]
        assert svc.directory.state("A") == BOOTSTRAPPED

    @pytest.mark.asyncio
    async def test_hung_connect_returns_false(self):
        svc = DiscoveryService(HangingTransport(), bootstrap_peers=[], timeout=0.05)
        assert await asyncio.wait_for(svc.connect("/x"), timeout=2.0) is False

    @pytest.mark.asyncio
    async def test_hung_listing_is_empty(self):
        svc = DiscoveryService(HangingTransport(), bootstrap_peers=[_peer("B")], timeout=0.05)
        assert await asyncio.wait_for(svc.peers(), timeout=2.0) == []
        assert await asyncio.wait_for(svc.find_mesh_peers(), timeout=2.0) == []

    @pytest.mark.asyncio
    async def test_hung_identity_raises_timeout(self):
        transport = FakeTransport()

        async def hang():
            await asyncio.sleep(3600)

        transport.self_identity = hang
        svc = DiscoveryService(transport, bootstrap_peers=[_peer("A", "/a")], timeout=0.05)
        with pytest.raises(MeshTimeoutError):
            await asyncio.wait_for(svc.bootstrap(), timeout=2.0)
        with pytest.raises(TimeoutError):
            await asyncio.wait_for(svc.get_self_info(), timeout=2.0)
