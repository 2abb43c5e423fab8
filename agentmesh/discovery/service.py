"""
Discovery service — bootstrap into the mesh and classify connected peers.

Best-effort and sequential, with every transport call bounded by the
service timeout: each bootstrap peer's addresses are dialled in
order, one attempt each, until one succeeds. A failed dial is logged and
counted, never raised. Trust is an allowlist intersection: a mesh peer is a
connected peer whose id is in the bootstrap set.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Iterable, TypeVar

from agentmesh import DEFAULT_BOOTSTRAP_PEERS, DEFAULT_SELF_CAPABILITIES, IPFS_DEFAULT_TIMEOUT
from agentmesh.discovery.directory import PeerDirectory, PeerRecord
from agentmesh.discovery.transport import peer_address
from agentmesh.errors import MeshTimeoutError, TransportError

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BootstrapResult:
    """Outcome counts of one bootstrap pass."""
    connected: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"connected": self.connected, "failed": self.failed, "skipped": self.skipped}


def default_bootstrap_peers() -> list[PeerRecord]:
    """Fresh PeerRecords for the built-in seed nodes."""
    return [PeerRecord.from_dict(p) for p in DEFAULT_BOOTSTRAP_PEERS]


class DiscoveryService:
    """Announce self, dial bootstrap peers, list and classify connected peers.

    Usage:
        discovery = DiscoveryService(IPFSClient(), agent_name="my-agent")
        result = await discovery.bootstrap()
        mesh_peers = await discovery.find_mesh_peers()
    """

    def __init__(
        self,
        transport: Any,
        bootstrap_peers: Iterable[PeerRecord] | None = None,
        agent_name: str | None = None,
        capabilities: Iterable[str] = DEFAULT_SELF_CAPABILITIES,
        directory: PeerDirectory | None = None,
        timeout: float = IPFS_DEFAULT_TIMEOUT,
    ) -> None:
        self.transport = transport
        self.timeout = timeout
        self.agent_name = agent_name
        self.capabilities = frozenset(capabilities)
        if bootstrap_peers is None:
            bootstrap_peers = default_bootstrap_peers()
        self.directory = directory or PeerDirectory()
        for peer in bootstrap_peers:
            self.directory.add_bootstrap(peer)

    async def _bounded(self, aw: Awaitable[T], what: str) -> T:
        """Await a transport call under this service's deadline."""
        try:
            return await asyncio.wait_for(aw, timeout=self.timeout)
        except MeshTimeoutError:
            raise
        except asyncio.TimeoutError as e:
            raise MeshTimeoutError(f"{what} timed out after {self.timeout:.1f}s") from e

    async def connect(self, address_or_id: str) -> bool:
        """Dial one peer by multiaddr or peer id. Returns False on failure."""
        try:
            await self._bounded(self.transport.connect(address_or_id), f"connect {address_or_id}")
        except (TransportError, MeshTimeoutError) as e:
            log.warning("Failed to connect to %s: %s", address_or_id, e)
            return False
        log.info("Connected to peer %s", address_or_id)
        return True

    async def bootstrap(self) -> BootstrapResult:
        """Dial every bootstrap peer except ourselves.

        Raises TransportError / MeshTimeoutError only if our own identity
        cannot be determined; individual peer failures are counted.
        """
        self_id = (await self._bounded(self.transport.self_identity(), "self_identity")).id
        connected = failed = skipped = 0

        for peer in self.directory.bootstrap_peers():
            if peer.peer_id == self_id:
                log.debug("Skipping self in bootstrap list (%s)", self_id[:12])
                skipped += 1
                continue

            self.directory.mark_connecting(peer.peer_id)
            addresses = peer.addresses or [peer_address(peer.peer_id)]
            for addr in addresses:
                if await self.connect(addr):
                    self.directory.mark_connected(peer)
                    connected += 1
                    break
            else:
                self.directory.mark_failed(peer.peer_id)
                failed += 1

        result = BootstrapResult(connected=connected, failed=failed, skipped=skipped)
        log.info(
            "Bootstrap complete: %d connected, %d failed, %d skipped",
            result.connected, result.failed, result.skipped,
        )
        return result

    async def peers(self) -> list[PeerRecord]:
        """Currently connected peers, enriched with known metadata.

        A failed transport listing is logged and yields an empty list.
        """
        try:
            connections = await self._bounded(self.transport.list_connections(), "list_connections")
        except (TransportError, MeshTimeoutError) as e:
            log.warning("Failed to list peers: %s", e)
            return []

        enriched = [
            self.directory.enrich(
                PeerRecord(peer_id=c.peer_id, addresses=[c.address] if c.address else [])
            )
            for c in connections
        ]
        self.directory.refresh(enriched)
        return enriched

    async def is_connected(self, peer_id: str) -> bool:
        return any(p.peer_id == peer_id for p in await self.peers())

    async def find_mesh_peers(self) -> list[PeerRecord]:
        """Connected peers whose id is in the bootstrap allowlist."""
        return [p for p in await self.peers() if self.directory.is_bootstrap(p.peer_id)]

    async def get_self_info(self) -> PeerRecord:
        identity = await self._bounded(self.transport.self_identity(), "self_identity")
        return PeerRecord(
            peer_id=identity.id,
            agent_name=self.agent_name,
            addresses=list(identity.addresses),
            capabilities=self.capabilities,
            last_seen=self.directory.now(),
        )

    async def announce(self) -> PeerRecord:
        """Describe this node for the network.

        Publishes nothing yet; returns the record a publish step would send.
        """
        info = await self.get_self_info()
        log.info(
            "Announcing node %s (agent=%s, %d addresses, capabilities=%s)",
            info.peer_id[:12],
            info.agent_name or "anonymous",
            len(info.addresses),
            ",".join(sorted(info.capabilities)) or "none",
        )
        return info

    def get_bootstrap_peers(self) -> list[PeerRecord]:
        return self.directory.bootstrap_peers()

    def add_bootstrap_peer(self, peer: PeerRecord) -> bool:
        """Add a seed peer for this process only. False if already present."""
        return self.directory.add_bootstrap(peer)
