"""
Peer directory — in-memory registry of bootstrap and connected peers.

Two collections keyed by peer id:
    bootstrap  — the configured seed set (the trusted allowlist)
    connected  — peers observed by the transport, with merged metadata

Per-peer lifecycle:
    unknown -> bootstrapped -> connecting -> connected -> stale

There is no eviction timer. A connected peer turns stale only when a
listing refresh no longer reports it. Mutated only by DiscoveryService;
callers sharing a directory across threads must synchronize externally.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable

from agentmesh import PEER_CAPABILITIES
from agentmesh.discovery.transport import peer_id_from_address

log = logging.getLogger(__name__)

# Peer states
UNKNOWN = "unknown"
BOOTSTRAPPED = "bootstrapped"
CONNECTING = "connecting"
CONNECTED = "connected"
STALE = "stale"


@dataclass
class PeerRecord:
    """Metadata about a known peer."""
    peer_id: str
    agent_name: str | None = None
    addresses: list[str] = field(default_factory=list)
    capabilities: frozenset[str] = frozenset()
    last_seen: float | None = None

    def __post_init__(self) -> None:
        if not self.peer_id:
            raise ValueError("peer_id cannot be empty")
        self.addresses = list(self.addresses)
        self.capabilities = frozenset(self.capabilities)
        unknown = self.capabilities - PEER_CAPABILITIES
        if unknown:
            raise ValueError(
                f"Unknown capabilities for {self.peer_id[:12]}: {', '.join(sorted(unknown))}"
            )

    def merged_with(self, known: PeerRecord, now: float) -> PeerRecord:
        """Overlay known metadata onto this live record.

        Known agent name and capabilities win; addresses are the union with
        the live address first; last_seen is set to ``now``.
        """
        addresses = list(self.addresses)
        for addr in known.addresses:
            if addr not in addresses:
                addresses.append(addr)
        return PeerRecord(
            peer_id=self.peer_id,
            agent_name=known.agent_name or self.agent_name,
            addresses=addresses,
            capabilities=known.capabilities or self.capabilities,
            last_seen=now,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"peer_id": self.peer_id, "addresses": list(self.addresses)}
        if self.agent_name:
            data["agent_name"] = self.agent_name
        if self.capabilities:
            data["capabilities"] = sorted(self.capabilities)
        if self.last_seen is not None:
            data["last_seen"] = self.last_seen
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | str) -> PeerRecord:
        """Build from a config/JSON mapping. Accepts ``peerId``/``multiaddrs`` aliases.

        A bare multiaddr string, or a mapping without a peer id, takes the id
        from the first address ending in ``/p2p/<id>``.
        """
        if isinstance(data, str):
            data = {"addresses": [data]}
        addresses = data.get("addresses") or data.get("multiaddrs") or []
        peer_id = data.get("peer_id") or data.get("peerId") or ""
        if not peer_id:
            peer_id = next(filter(None, map(peer_id_from_address, addresses)), "")
        return cls(
            peer_id=peer_id,
            agent_name=data.get("agent_name") or data.get("agentName"),
            addresses=list(addresses),
            capabilities=frozenset(data.get("capabilities") or ()),
            last_seen=data.get("last_seen"),
        )


class PeerDirectory:
    """Registry of bootstrap peers, connected peers and their states.

    Usage:
        directory = PeerDirectory([PeerRecord("12D3KooW...", addresses=[...])])
        directory.mark_connected(directory.get_bootstrap("12D3KooW..."))
        mesh = [p for p in live if directory.is_bootstrap(p.peer_id)]
    """

    def __init__(
        self,
        bootstrap: Iterable[PeerRecord] = (),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        # Insertion-ordered: bootstrap() dials in configuration order
        self._bootstrap: dict[str, PeerRecord] = {}
        self._connected: dict[str, PeerRecord] = {}
        self._states: dict[str, str] = {}
        for peer in bootstrap:
            self.add_bootstrap(peer)

    def now(self) -> float:
        return self._clock()

    # --- Bootstrap set ---

    def add_bootstrap(self, peer: PeerRecord) -> bool:
        """Add a seed peer. Returns False if its peer id is already present."""
        if peer.peer_id in self._bootstrap:
            return False
        self._bootstrap[peer.peer_id] = replace(peer)
        self._states.setdefault(peer.peer_id, BOOTSTRAPPED)
        return True

    def bootstrap_peers(self) -> list[PeerRecord]:
        """Copies of the seed peers, in configuration order."""
        return [replace(p) for p in self._bootstrap.values()]

    def get_bootstrap(self, peer_id: str) -> PeerRecord | None:
        return self._bootstrap.get(peer_id)

    def is_bootstrap(self, peer_id: str) -> bool:
        return peer_id in self._bootstrap

    # --- Connected set ---

    def mark_connecting(self, peer_id: str) -> None:
        self._states[peer_id] = CONNECTING

    def mark_failed(self, peer_id: str) -> None:
        """Return a peer whose dial failed to its resting state."""
        self._states[peer_id] = BOOTSTRAPPED if peer_id in self._bootstrap else UNKNOWN

    def mark_connected(self, peer: PeerRecord) -> PeerRecord:
        """Record a successful handshake. Returns the stored copy."""
        stored = replace(peer, last_seen=self.now())
        self._connected[peer.peer_id] = stored
        self._states[peer.peer_id] = CONNECTED
        return stored

    def connected_peers(self) -> list[PeerRecord]:
        return [replace(p) for p in self._connected.values()]

    def lookup(self, peer_id: str) -> PeerRecord | None:
        """Known metadata for a peer: previously connected first, then bootstrap."""
        return self._connected.get(peer_id) or self._bootstrap.get(peer_id)

    def enrich(self, live: PeerRecord) -> PeerRecord:
        """Merge known metadata into a live record; last_seen is always now."""
        now = self.now()
        known = self.lookup(live.peer_id)
        if known is None:
            return replace(live, last_seen=now)
        return live.merged_with(known, now)

    def refresh(self, live: Iterable[PeerRecord]) -> None:
        """Apply the latest transport listing.

        Listed peers become connected; previously connected peers missing
        from the listing become stale.
        """
        live_ids = set()
        for peer in live:
            live_ids.add(peer.peer_id)
            self._connected[peer.peer_id] = replace(peer)
            self._states[peer.peer_id] = CONNECTED
        for peer_id, state in list(self._states.items()):
            if state == CONNECTED and peer_id not in live_ids:
                self._states[peer_id] = STALE
                log.debug("Peer %s is stale", peer_id[:12])

    def state(self, peer_id: str) -> str:
        return self._states.get(peer_id, UNKNOWN)
