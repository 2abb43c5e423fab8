"""
MemoryStore — encrypted memory storage over a content-addressed backend.

Store:     record -> canonical JSON -> AES-256-GCM -> pack -> content_store.put
Retrieve:  content_store.get -> unpack -> decrypt -> deserialize

The key is held only in process memory. The backend only ever sees packed
blobs. Batch operations fan out concurrently; by default a failing element
fails the whole batch with BatchError after every element has completed,
``isolate=True`` returns exceptions in place instead.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Iterable, TypeVar

from agentmesh import IPFS_DEFAULT_TIMEOUT
from agentmesh.crypto import KdfParams, decrypt, derive_key, encrypt, pack, unpack
from agentmesh.errors import BatchError, ConfigurationError, MeshTimeoutError
from agentmesh.record import MemoryRecord, deserialize_record, serialize_record
from agentmesh.store import NodeInfo

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class StoreResult:
    """Where a memory was stored.

    ``size`` is the packed blob length: ciphertext + 28 bytes of framing.
    It tracks the plaintext length one-to-one (no length-hiding padding).
    """
    content_id: str
    size: int


class MemoryStore:
    """Encrypt-then-store client for agent memories.

    Usage:
        mesh = MemoryStore(IPFSClient(), key="your-secret-key")
        result = await mesh.store(MemoryRecord.create("fact", "X"))
        record = await mesh.retrieve(result.content_id)
    """

    def __init__(
        self,
        content_store: Any,
        key: str | bytes | None = None,
        *,
        kdf: KdfParams | None = None,
        timeout: float = IPFS_DEFAULT_TIMEOUT,
    ) -> None:
        self.content_store = content_store
        self.kdf = kdf or KdfParams()
        self.timeout = timeout
        self._key: bytes | None = None
        if key is not None:
            self.set_key(key)

    def set_key(self, key: str | bytes) -> None:
        """Set the session key from a passphrase or a raw 32-byte key."""
        self._key = derive_key(key, self.kdf)

    @property
    def has_key(self) -> bool:
        return self._key is not None

    def _require_key(self) -> bytes:
        if self._key is None:
            raise ConfigurationError(
                "Encryption key required. Pass key= or call set_key() first."
            )
        return self._key

    async def _bounded(self, aw: Awaitable[T], what: str) -> T:
        """Await a backend call under this store's deadline."""
        try:
            return await asyncio.wait_for(aw, timeout=self.timeout)
        except MeshTimeoutError:
            raise
        except asyncio.TimeoutError as e:
            raise MeshTimeoutError(f"{what} timed out after {self.timeout:.1f}s") from e

    # --- Single-record operations ---

    def seal_record(self, record: MemoryRecord | dict[str, Any]) -> bytes:
        """Serialize, encrypt and pack a record without storing it."""
        key = self._require_key()
        return pack(encrypt(serialize_record(record), key))

    def open_record(self, blob: bytes) -> MemoryRecord:
        """Unpack, decrypt and deserialize a packed blob.

        Raises FormatError for a malformed blob or a non-record plaintext,
        IntegrityError if authentication fails.
        """
        key = self._require_key()
        plaintext = decrypt(unpack(blob), key)
        return deserialize_record(plaintext)

    async def store(self, record: MemoryRecord | dict[str, Any]) -> StoreResult:
        """Encrypt a record and hand the packed blob to the content store."""
        blob = self.seal_record(record)
        added = await self._bounded(self.content_store.put(blob), "put")
        log.debug("Stored memory %s (%d bytes)", added.id[:12], len(blob))
        return StoreResult(content_id=added.id, size=len(blob))

    async def retrieve(self, content_id: str) -> MemoryRecord:
        """Fetch and decrypt a record.

        Raises NotFoundError if absent, IntegrityError on authentication
        failure, FormatError if the blob or its plaintext is malformed.
        """
        self._require_key()
        blob = await self._bounded(self.content_store.get(content_id), f"get {content_id}")
        return self.open_record(blob)

    # --- Batch operations ---

    async def _gather(self, aws: Iterable[Awaitable[T]], isolate: bool) -> list[T | BaseException]:
        results = list(await asyncio.gather(*aws, return_exceptions=True))
        errors = {i: r for i, r in enumerate(results) if isinstance(r, BaseException)}
        if errors:
            log.warning("%d of %d batch elements failed", len(errors), len(results))
            if not isolate:
                raise BatchError(errors, results)
        return results

    async def store_batch(
        self,
        records: Iterable[MemoryRecord | dict[str, Any]],
        *,
        isolate: bool = False,
    ) -> list[StoreResult | BaseException]:
        """Store many records concurrently. Results are in input order.

        Raises BatchError if any element failed, unless ``isolate`` is set,
        in which case failed slots hold their exception.
        """
        self._require_key()
        return await self._gather([self.store(r) for r in records], isolate)

    async def retrieve_batch(
        self,
        content_ids: Iterable[str],
        *,
        isolate: bool = False,
    ) -> list[MemoryRecord | BaseException]:
        """Retrieve many records concurrently. Same failure policy as store_batch."""
        self._require_key()
        return await self._gather([self.retrieve(c) for c in content_ids], isolate)

    # --- Backend passthrough ---

    async def pin(self, content_id: str) -> None:
        await self._bounded(self.content_store.pin(content_id), f"pin {content_id}")

    async def unpin(self, content_id: str) -> None:
        await self._bounded(self.content_store.unpin(content_id), f"unpin {content_id}")

    async def is_available(self) -> bool:
        """True if the backend answers its ping."""
        try:
            return await self._bounded(self.content_store.ping(), "ping")
        except MeshTimeoutError:
            return False

    async def node_info(self) -> NodeInfo:
        return await self._bounded(self.content_store.self_info(), "self_info")
