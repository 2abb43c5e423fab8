"""
Transport layer contract consumed by DiscoveryService.

A transport is any object with these coroutine methods:

    connect(address: str) -> None             raises TransportError / MeshTimeoutError
    list_connections() -> list[Connection]     live connected set
    self_identity() -> NodeIdentity            our own peer id + dialable addresses

Connection mechanics (dialing, handshakes, keepalive) live behind it.
``agentmesh.ipfs.IPFSClient`` implements it over the IPFS swarm API.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Connection:
    """One live connection as reported by the transport."""
    peer_id: str
    address: str = ""


@dataclass(frozen=True)
class NodeIdentity:
    """The local node's identity."""
    id: str
    addresses: list[str] = field(default_factory=list)


def peer_address(peer_id: str) -> str:
    """Address that dials a peer by id alone (transport-side routing)."""
    return f"/p2p/{peer_id}"


def peer_id_from_address(address: str) -> str | None:
    """Extract the trailing ``/p2p/<id>`` component of a multiaddr, if any."""
    parts = [p for p in address.split("/") if p]
    for i in range(len(parts) - 2, -1, -1):
        if parts[i] in ("p2p", "ipfs"):
            return parts[i + 1]
    return None
