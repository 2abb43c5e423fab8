"""
Content store backends — the opaque put/get/pin layer under MemoryStore.

A content store is any object with these coroutine methods:

    put(data: bytes) -> PutResult        content id computed from the bytes
    get(content_id: str) -> bytes        raises NotFoundError if absent
    pin(content_id: str) -> None
    unpin(content_id: str) -> None
    ping() -> bool
    self_info() -> NodeInfo

``IPFSClient`` (agentmesh.ipfs) talks to a real IPFS node. ``LocalContentStore``
below keeps blobs on disk for offline use:

    ~/.agentmesh/blobs/<sha256>.blob   — packed blobs
    ~/.agentmesh/pins.json             — pin index (content id -> pinned_at)

All writes are atomic (temp file + os.replace). File I/O runs in a worker
thread so callers can bound it with asyncio.wait_for.
Storing the same bytes twice is a no-op and returns the same id.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from agentmesh import __version__
from agentmesh.errors import ContentStoreError, NotFoundError

log = logging.getLogger(__name__)

# Strict hex pattern for SHA-256 content ids
_CONTENT_ID_RE = re.compile(r"^[0-9a-f]{64}$")

# Default local store root
_DEFAULT_ROOT = Path.home() / ".agentmesh"


@dataclass(frozen=True)
class PutResult:
    """Result of a content store put."""
    id: str
    size: int


@dataclass(frozen=True)
class NodeInfo:
    """Identity of the backend node."""
    id: str
    version: str


def compute_content_id(data: bytes) -> str:
    """SHA-256 hex digest used as the local content id."""
    return hashlib.sha256(data).hexdigest()


def _atomic_write(directory: Path, dest: Path, content: bytes, prefix: str) -> None:
    fd, tmp_path = tempfile.mkstemp(dir=str(directory), suffix=".tmp", prefix=prefix)
    try:
        os.write(fd, content)
        os.fsync(fd)
        os.close(fd)
        fd = -1
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, str(dest))
    except Exception:
        if fd >= 0:
            try:
                os.close(fd)
            except OSError:
                pass
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class LocalContentStore:
    """File-based, content-addressed blob store.

    Usage:
        store = LocalContentStore(root=tmp_path)
        result = await store.put(blob)
        blob = await store.get(result.id)
    """

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root) if root else _DEFAULT_ROOT
        self.blob_dir = self.root / "blobs"
        self.pins_path = self.root / "pins.json"

    def _ensure_dirs(self) -> None:
        self.blob_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _is_valid_id(content_id: str) -> bool:
        """Only 64-hex ids map to a path; anything else could escape blob_dir."""
        return isinstance(content_id, str) and bool(_CONTENT_ID_RE.match(content_id))

    def _blob_path(self, content_id: str) -> Path:
        return self.blob_dir / f"{content_id}.blob"

    def _read_pins(self) -> dict[str, str]:
        """Read the pin index. Returns empty dict if missing or corrupt."""
        if not self.pins_path.is_file():
            return {}
        try:
            pins = json.loads(self.pins_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            log.warning("Pin index %s unreadable, treating as empty", self.pins_path)
            return {}
        return pins if isinstance(pins, dict) else {}

    def _write_pins(self, pins: dict[str, str]) -> None:
        self._ensure_dirs()
        data = json.dumps(pins, indent=2, sort_keys=True).encode("utf-8")
        _atomic_write(self.root, self.pins_path, data, prefix=".pins_")

    async def put(self, data: bytes) -> PutResult:
        """Store a blob. Returns its content id and size.

        Content-addressed: identical bytes map to the identical id and are
        written only once.
        """
        return await asyncio.to_thread(self._put, bytes(data))

    def _put(self, data: bytes) -> PutResult:
        content_id = compute_content_id(data)
        dest = self._blob_path(content_id)
        try:
            self._ensure_dirs()
            if not dest.is_file():
                _atomic_write(self.blob_dir, dest, data, prefix=".blob_")
                log.debug("Stored blob %s (%d bytes)", content_id[:12], len(data))
        except OSError as e:
            raise ContentStoreError(f"Failed to write blob {content_id[:12]}: {e}") from e
        return PutResult(id=content_id, size=len(data))

    async def get(self, content_id: str) -> bytes:
        """Fetch a blob by id. Raises NotFoundError if absent or malformed."""
        return await asyncio.to_thread(self._get, content_id)

    def _get(self, content_id: str) -> bytes:
        if not self.contains(content_id):
            raise NotFoundError(f"Content not found: {content_id}")
        try:
            return self._blob_path(content_id).read_bytes()
        except FileNotFoundError as e:
            raise NotFoundError(f"Content not found: {content_id}") from e
        except OSError as e:
            raise ContentStoreError(f"Failed to read blob {content_id[:12]}: {e}") from e

    def contains(self, content_id: str) -> bool:
        """True if a blob with this id is stored. Malformed ids are never stored."""
        if not self._is_valid_id(content_id):
            return False
        return self._blob_path(content_id).is_file()

    async def pin(self, content_id: str) -> None:
        """Mark a blob as retained. Raises NotFoundError if absent."""
        await asyncio.to_thread(self._pin, content_id)

    def _pin(self, content_id: str) -> None:
        if not self.contains(content_id):
            raise NotFoundError(f"Content not found: {content_id}")
        pins = self._read_pins()
        if content_id not in pins:
            pins[content_id] = datetime.now(timezone.utc).isoformat()
            self._write_pins(pins)

    async def unpin(self, content_id: str) -> None:
        """Release a pin. Unpinning an unpinned or unknown id is a no-op."""
        await asyncio.to_thread(self._unpin, content_id)

    def _unpin(self, content_id: str) -> None:
        if not self._is_valid_id(content_id):
            return
        pins = self._read_pins()
        if pins.pop(content_id, None) is not None:
            self._write_pins(pins)

    def list_pins(self) -> list[str]:
        return sorted(self._read_pins())

    def collect_garbage(self) -> list[str]:
        """Delete every unpinned blob. Returns the removed ids."""
        if not self.blob_dir.is_dir():
            return []
        pins = self._read_pins()
        removed = []
        for path in sorted(self.blob_dir.glob("*.blob")):
            content_id = path.stem
            if content_id in pins:
                continue
            path.unlink()
            removed.append(content_id)
        if removed:
            log.info("Collected %d unpinned blobs", len(removed))
        return removed

    async def ping(self) -> bool:
        return await asyncio.to_thread(self._writable)

    def _writable(self) -> bool:
        try:
            self._ensure_dirs()
        except OSError:
            return False
        return os.access(self.blob_dir, os.W_OK)

    async def self_info(self) -> NodeInfo:
        root_digest = hashlib.sha256(str(self.root.resolve()).encode("utf-8")).hexdigest()
        return NodeInfo(id=f"local-{root_digest[:16]}", version=f"agentmesh/{__version__}")
