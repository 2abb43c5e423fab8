"""
AgentMesh gateway client — authenticated JSON API for hosted memories.

Endpoints:
    POST   /mesh/register   register an agent, returns its API key
    POST   /mesh/store      store base64 data with searchable tags
    POST   /mesh/search     full-text search over descriptions/tags
    GET    /mesh/stats      per-agent usage
    GET    /mesh/status     gateway/IPFS status (no auth)
    GET    /mesh/<cid>      retrieve (no auth)
    DELETE /mesh/<cid>      remove from the index

The API key travels in the X-Api-Key header. Every response dict carries
``rate_limit`` parsed from the X-RateLimit-* headers.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from typing import Any

from agentmesh import GATEWAY_DEFAULT_TIMEOUT, GATEWAY_DEFAULT_URL
from agentmesh._http import HTTPResult, request
from agentmesh.crypto import KdfParams, decrypt, derive_key, encrypt, pack, unpack
from agentmesh.errors import (
    ConfigurationError,
    FormatError,
    GatewayError,
    MeshTimeoutError,
    TransportError,
)
from agentmesh.record import MemoryRecord, deserialize_record, serialize_record

log = logging.getLogger(__name__)

_AGENT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{3,64}$")

# Content ids are path segments; keep them to a safe alphabet
_CID_RE = re.compile(r"^[A-Za-z0-9]+$")


def parse_rate_limit(result: HTTPResult) -> dict[str, int | None]:
    """Extract limit/remaining/reset from X-RateLimit-* headers."""
    parsed: dict[str, int | None] = {}
    for name in ("limit", "remaining", "reset"):
        raw = result.header(f"X-RateLimit-{name.capitalize()}")
        try:
            parsed[name] = int(raw) if raw is not None else None
        except ValueError:
            parsed[name] = None
    return parsed


class GatewayClient:
    """Async client for the AgentMesh gateway.

    Usage:
        gw = GatewayClient(api_key="mesh_...")
        stored = await gw.store_encrypted(record, key)
        hits = await gw.search("dark mode")
    """

    def __init__(
        self,
        gateway_url: str = GATEWAY_DEFAULT_URL,
        api_key: str | None = None,
        timeout: float = GATEWAY_DEFAULT_TIMEOUT,
        kdf: KdfParams | None = None,
    ) -> None:
        if not gateway_url:
            raise ValueError("Gateway URL cannot be empty")
        self.gateway_url = gateway_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.kdf = kdf or KdfParams()
        self.last_rate_limit: dict[str, int | None] = {}

    def set_api_key(self, api_key: str) -> None:
        self.api_key = api_key

    @staticmethod
    def _validate_cid(cid: str) -> None:
        if not isinstance(cid, str) or not _CID_RE.match(cid):
            raise ValueError(f"Invalid content id: {cid!r}")

    async def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        auth: bool = True,
    ) -> dict[str, Any]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if auth:
            if not self.api_key:
                raise ConfigurationError(
                    "API key required. Call register() first or pass api_key."
                )
            headers["X-Api-Key"] = self.api_key

        data = json.dumps(body).encode("utf-8") if body is not None else None
        result = await request(
            method, f"{self.gateway_url}{path}",
            data=data, headers=headers, timeout=self.timeout,
        )

        self.last_rate_limit = parse_rate_limit(result)
        try:
            payload = result.json()
        except ValueError:
            payload = None

        if not result.ok:
            message = ""
            if isinstance(payload, dict):
                message = str(payload.get("error") or "")
            raise GatewayError(
                message or f"HTTP {result.status}",
                status=result.status,
                body=payload if payload is not None else result.text(),
            )
        if not isinstance(payload, dict):
            raise GatewayError(
                f"Unexpected response from {path}", status=result.status, body=result.text(),
            )

        payload["rate_limit"] = dict(self.last_rate_limit)
        return payload

    async def register(self, agent_id: str) -> dict[str, Any]:
        """Register an agent id. The returned API key is kept on the client."""
        if not _AGENT_ID_RE.match(agent_id or ""):
            raise ValueError(
                "agent_id must be 3-64 characters of letters, digits, '_' or '-'"
            )
        resp = await self._request("POST", "/mesh/register", {"agentId": agent_id}, auth=False)
        if resp.get("apiKey"):
            self.api_key = resp["apiKey"]
            log.info("Registered agent %s", agent_id)
        return resp

    async def store(
        self,
        data: str,
        type: str | None = None,
        tags: list[str] | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Store base64 data. ``description`` and ``tags`` are NOT encrypted."""
        body: dict[str, Any] = {"data": data}
        if type is not None:
            body["type"] = type
        if tags is not None:
            body["tags"] = tags
        if description is not None:
            body["description"] = description
        if metadata is not None:
            body["metadata"] = metadata
        return await self._request("POST", "/mesh/store", body)

    async def store_string(self, content: str, **options: Any) -> dict[str, Any]:
        """Store a plaintext string. Use store_encrypted for anything sensitive."""
        data = base64.b64encode(content.encode("utf-8")).decode("ascii")
        return await self.store(data, **options)

    async def store_encrypted(
        self,
        record: MemoryRecord | dict[str, Any],
        key: str | bytes,
        **options: Any,
    ) -> dict[str, Any]:
        """Encrypt a record client-side and store the packed blob.

        A passphrase goes through the client's KDF, so blobs stay readable by a
        MemoryStore configured with the same KdfParams.
        """
        if not isinstance(record, MemoryRecord):
            record = MemoryRecord.from_dict(record)
        blob = pack(encrypt(serialize_record(record), derive_key(key, self.kdf)))
        options.setdefault("type", record.type)
        return await self.store(base64.b64encode(blob).decode("ascii"), **options)

    async def search(
        self,
        query: str | None = None,
        type: str | None = None,
        limit: int | None = None,
    ) -> dict[str, Any]:
        """Search stored memories. An empty query lists everything."""
        body: dict[str, Any] = {"query": query or ""}
        if type is not None:
            body["type"] = type
        if limit is not None:
            body["limit"] = limit
        return await self._request("POST", "/mesh/search", body)

    async def list(self, type: str | None = None, limit: int | None = None) -> dict[str, Any]:
        return await self.search(None, type=type, limit=limit)

    async def retrieve(self, cid: str) -> dict[str, Any]:
        self._validate_cid(cid)
        return await self._request("GET", f"/mesh/{cid}", auth=False)

    async def retrieve_string(self, cid: str) -> str:
        resp = await self.retrieve(cid)
        return base64.b64decode(resp["data"]).decode("utf-8")

    async def retrieve_decrypted(self, cid: str, key: str | bytes) -> MemoryRecord:
        """Retrieve a blob stored by store_encrypted and decrypt it.

        Raises FormatError / IntegrityError exactly like MemoryStore.retrieve.
        """
        resp = await self.retrieve(cid)
        try:
            blob = base64.b64decode(resp["data"], validate=True)
        except (KeyError, TypeError, binascii.Error) as e:
            raise FormatError(f"Gateway returned no decodable data for {cid}") from e
        return deserialize_record(decrypt(unpack(blob), derive_key(key, self.kdf)))

    async def delete(self, cid: str) -> dict[str, Any]:
        self._validate_cid(cid)
        return await self._request("DELETE", f"/mesh/{cid}")

    async def stats(self) -> dict[str, Any]:
        return await self._request("GET", "/mesh/stats")

    async def status(self) -> dict[str, Any]:
        return await self._request("GET", "/mesh/status", auth=False)

    async def is_online(self) -> bool:
        try:
            resp = await self.status()
        except (GatewayError, MeshTimeoutError, TransportError) as e:
            log.debug("Gateway status check failed: %s", e)
            return False
        return resp.get("status") == "online"
