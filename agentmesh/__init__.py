"""
AgentMesh — encrypted, content-addressed memory for autonomous agents.

Architecture:
    Records:    MemoryRecord -> canonical JSON -> AES-256-GCM -> packed blob
    Blob:       iv (12 bytes) + auth tag (16 bytes) + ciphertext
    Backend:    IPFS HTTP API (or the local file store) addressed by content id
    Discovery:  bootstrap peer list + transport listing -> mesh peers
"""

__version__ = "0.1.0"

# Packed blob layout — persisted format, must stay byte-stable
MESH_KEY_SIZE = 32  # AES-256
MESH_IV_SIZE = 12  # AES-GCM standard nonce
MESH_TAG_SIZE = 16  # GCM authentication tag
MESH_HEADER_SIZE = MESH_IV_SIZE + MESH_TAG_SIZE  # 28 bytes, minimum blob length

# Key derivation defaults (used only when a salted KDF is configured)
MESH_PBKDF2_ITERATIONS = 600_000  # OWASP 2023 minimum for PBKDF2-HMAC-SHA256
MESH_SCRYPT_N = 2**14
MESH_SCRYPT_R = 8
MESH_SCRYPT_P = 1

# Backend constants
IPFS_DEFAULT_API_URL = "http://127.0.0.1:5001"
IPFS_DEFAULT_TIMEOUT = 30.0
IPFS_PING_TIMEOUT = 5.0

# Gateway constants
GATEWAY_DEFAULT_URL = "https://memforge.xyz"
GATEWAY_DEFAULT_TIMEOUT = 30.0

# Discovery constants
PEER_CAPABILITIES = frozenset({"storage", "query", "relay"})
DEFAULT_SELF_CAPABILITIES = ("storage", "query")
DEFAULT_BOOTSTRAP_PEERS = (
    {
        "peer_id": "12D3KooWN5cHkFHzmorLYxdxtmLdxJYS9umh6wYrpiSptkWTk5Hg",
        "agent_name": "draxdevAI",
        "addresses": [
            "/ip4/46.62.238.158/tcp/4001/p2p/12D3KooWN5cHkFHzmorLYxdxtmLdxJYS9umh6wYrpiSptkWTk5Hg",
            "/ip6/2a01:4f9:c011:b46b::1/tcp/4001/p2p/12D3KooWN5cHkFHzmorLYxdxtmLdxJYS9umh6wYrpiSptkWTk5Hg",
        ],
        "capabilities": ["storage", "query"],
    },
)

from agentmesh.errors import (  # noqa: E402
    BatchError,
    ConfigurationError,
    ContentStoreError,
    FormatError,
    GatewayError,
    IntegrityError,
    MeshError,
    MeshTimeoutError,
    NotFoundError,
    TransportError,
)
from agentmesh.crypto import (  # noqa: E402
    EncryptedPayload,
    KdfParams,
    decrypt,
    derive_key,
    encrypt,
    pack,
    unpack,
)
from agentmesh.record import MemoryRecord, deserialize_record, serialize_record  # noqa: E402
from agentmesh.mesh import MemoryStore, StoreResult  # noqa: E402

__all__ = [
    "BatchError",
    "ConfigurationError",
    "ContentStoreError",
    "FormatError",
    "GatewayError",
    "IntegrityError",
    "MeshError",
    "MeshTimeoutError",
    "NotFoundError",
    "TransportError",
    "EncryptedPayload",
    "KdfParams",
    "decrypt",
    "derive_key",
    "encrypt",
    "pack",
    "unpack",
    "MemoryRecord",
    "deserialize_record",
    "serialize_record",
    "MemoryStore",
    "StoreResult",
]
