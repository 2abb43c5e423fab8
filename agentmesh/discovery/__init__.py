"""
AgentMesh discovery — bootstrap peers, connected peers, mesh classification.

Modules:
    transport   — Transport contract consumed here (connect, list, self identity)
    directory   — PeerRecord and the in-memory PeerDirectory
    service     — DiscoveryService: bootstrap, peers, find_mesh_peers, announce
"""

from agentmesh.discovery.directory import (
    BOOTSTRAPPED,
    CONNECTED,
    CONNECTING,
    STALE,
    UNKNOWN,
    PeerDirectory,
    PeerRecord,
)
from agentmesh.discovery.service import BootstrapResult, DiscoveryService
from agentmesh.discovery.transport import Connection, NodeIdentity

__all__ = [
    "BOOTSTRAPPED",
    "CONNECTED",
    "CONNECTING",
    "STALE",
    "UNKNOWN",
    "BootstrapResult",
    "Connection",
    "DiscoveryService",
    "NodeIdentity",
    "PeerDirectory",
    "PeerRecord",
]
