"""
IPFS HTTP API client — content store and transport for AgentMesh.

Talks to a local Kubo daemon (default http://127.0.0.1:5001). Every call is
a POST to /api/v0/<command> with its own deadline.

Content store:  add (put), cat (get), pin/add, pin/rm, id
Transport:      swarm/connect, swarm/peers, id (addresses)
"""

from __future__ import annotations

import logging
import secrets
import urllib.parse
from typing import Any

from agentmesh import IPFS_DEFAULT_API_URL, IPFS_DEFAULT_TIMEOUT, IPFS_PING_TIMEOUT
from agentmesh._http import HTTPResult, encode_multipart, request
from agentmesh.discovery.transport import Connection, NodeIdentity
from agentmesh.errors import (
    ContentStoreError,
    MeshTimeoutError,
    NotFoundError,
    TransportError,
)
from agentmesh.store import NodeInfo, PutResult

log = logging.getLogger(__name__)

# Substrings Kubo uses when a block cannot be located
_NOT_FOUND_MARKERS = ("not found", "no link named", "could not resolve")


def _error_message(result: HTTPResult) -> str:
    """Pull the human-readable message out of a Kubo error response."""
    try:
        body = result.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("Message"):
        return str(body["Message"])
    return result.text().strip() or f"HTTP {result.status}"


class IPFSClient:
    """Async client for the IPFS HTTP API.

    Usage:
        ipfs = IPFSClient("http://127.0.0.1:5001")
        added = await ipfs.put(blob)
        blob = await ipfs.get(added.id)
    """

    def __init__(
        self,
        api_url: str = IPFS_DEFAULT_API_URL,
        timeout: float = IPFS_DEFAULT_TIMEOUT,
    ) -> None:
        if not api_url:
            raise ValueError("IPFS API URL cannot be empty")
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    def _url(self, command: str, **params: Any) -> str:
        url = f"{self.api_url}/api/v0/{command}"
        if params:
            url += "?" + urllib.parse.urlencode(params)
        return url

    async def _call(
        self,
        command: str,
        *,
        data: bytes | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
        **params: Any,
    ) -> HTTPResult:
        return await request(
            "POST",
            self._url(command, **params),
            data=data,
            headers=headers,
            timeout=timeout if timeout is not None else self.timeout,
        )

    # --- Content store ---

    async def put(self, data: bytes) -> PutResult:
        """Add and pin a blob. Returns its CID and the size IPFS reports."""
        boundary = f"----AgentMeshBoundary{secrets.token_hex(8)}"
        result = await self._call(
            "add",
            data=encode_multipart(bytes(data), boundary),
            headers={"Content-Type": f"multipart/form-data; boundary={boundary}"},
            pin="true",
        )
        if not result.ok:
            raise ContentStoreError(f"IPFS add failed: {_error_message(result)}")
        body = result.json()
        try:
            return PutResult(id=body["Hash"], size=int(body["Size"]))
        except (KeyError, TypeError, ValueError) as e:
            raise ContentStoreError(f"Unexpected IPFS add response: {body!r}") from e

    async def get(self, content_id: str) -> bytes:
        """Fetch a blob by CID. Raises NotFoundError if IPFS cannot locate it."""
        result = await self._call("cat", arg=content_id)
        if result.ok:
            return result.body
        message = _error_message(result)
        if any(marker in message.lower() for marker in _NOT_FOUND_MARKERS):
            raise NotFoundError(f"Content not found: {content_id} ({message})")
        raise ContentStoreError(f"IPFS cat failed: {message}")

    async def pin(self, content_id: str) -> None:
        result = await self._call("pin/add", arg=content_id)
        if not result.ok:
            raise ContentStoreError(f"IPFS pin failed: {_error_message(result)}")

    async def unpin(self, content_id: str) -> None:
        result = await self._call("pin/rm", arg=content_id)
        if not result.ok:
            raise ContentStoreError(f"IPFS unpin failed: {_error_message(result)}")

    async def ping(self) -> bool:
        """True if the IPFS node answers within the ping timeout. Never raises."""
        try:
            result = await self._call("id", timeout=IPFS_PING_TIMEOUT)
        except (MeshTimeoutError, TransportError) as e:
            log.debug("IPFS ping failed: %s", e)
            return False
        return result.ok

    async def _id(self) -> dict[str, Any]:
        result = await self._call("id")
        if not result.ok:
            raise ContentStoreError(f"IPFS id failed: {_error_message(result)}")
        body = result.json()
        if not isinstance(body, dict) or not body.get("ID"):
            raise ContentStoreError(f"Unexpected IPFS id response: {body!r}")
        return body

    async def self_info(self) -> NodeInfo:
        body = await self._id()
        return NodeInfo(id=body["ID"], version=body.get("AgentVersion", ""))

    # --- Transport ---

    async def connect(self, address: str) -> None:
        """Dial a peer by multiaddr or /p2p/<id>. Raises TransportError on failure."""
        result = await self._call("swarm/connect", arg=address)
        if not result.ok:
            raise TransportError(
                f"Failed to connect to {address}: {_error_message(result)}"
            )
        log.debug("swarm/connect %s: %s", address, result.text().strip())

    async def list_connections(self) -> list[Connection]:
        result = await self._call("swarm/peers")
        if not result.ok:
            raise TransportError(f"Failed to list peers: {_error_message(result)}")
        body = result.json() or {}
        # Kubo reports "Peers": null when there are no connections
        return [
            Connection(peer_id=p["Peer"], address=p.get("Addr", ""))
            for p in body.get("Peers") or []
            if p.get("Peer")
        ]

    async def self_identity(self) -> NodeIdentity:
        try:
            body = await self._id()
        except ContentStoreError as e:
            raise TransportError(str(e)) from e
        return NodeIdentity(id=body["ID"], addresses=list(body.get("Addresses") or []))
