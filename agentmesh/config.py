"""
Client configuration — defaults, TOML file, environment overrides.

Resolution order (later wins):
    DEFAULT_CONFIG  ->  ~/.agentmesh/config.toml  ->  AGENTMESH_* env vars

The passphrase is never read from the config file. It comes from
AGENTMESH_PASSPHRASE or an interactive prompt.

Example config.toml:

    ipfs_url = "http://127.0.0.1:5001"
    agent_name = "my-agent"

    [kdf]
    algorithm = "scrypt"
    salt = "6167656e746d657368"   # hex

    [[bootstrap_peers]]
    peer_id = "12D3KooW..."
    addresses = ["/ip4/203.0.113.7/tcp/4001/p2p/12D3KooW..."]
    capabilities = ["storage"]
"""

from __future__ import annotations

import copy
import logging
import os
import tomllib
from pathlib import Path
from typing import Any

from agentmesh import (
    DEFAULT_BOOTSTRAP_PEERS,
    GATEWAY_DEFAULT_TIMEOUT,
    GATEWAY_DEFAULT_URL,
    IPFS_DEFAULT_API_URL,
    IPFS_DEFAULT_TIMEOUT,
)
from agentmesh.crypto import KdfParams
from agentmesh.discovery.directory import PeerRecord
from agentmesh.errors import ConfigurationError

log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".agentmesh" / "config.toml"

DEFAULT_CONFIG: dict[str, Any] = {
    "ipfs_url": IPFS_DEFAULT_API_URL,
    "ipfs_timeout": IPFS_DEFAULT_TIMEOUT,
    "gateway_url": GATEWAY_DEFAULT_URL,
    "gateway_timeout": GATEWAY_DEFAULT_TIMEOUT,
    "api_key": "",
    "agent_name": "",
    "kdf": {"algorithm": "sha256"},
    "bootstrap_peers": [dict(p) for p in DEFAULT_BOOTSTRAP_PEERS],
}

# env var -> config key
_ENV_OVERRIDES = {
    "AGENTMESH_IPFS_URL": "ipfs_url",
    "AGENTMESH_GATEWAY_URL": "gateway_url",
    "AGENTMESH_API_KEY": "api_key",
    "AGENTMESH_AGENT_NAME": "agent_name",
}

PASSPHRASE_ENV = "AGENTMESH_PASSPHRASE"


def load_config(config_path: Path | None = None) -> dict[str, Any]:
    """Load configuration. A missing file yields the defaults.

    Raises ConfigurationError if the file exists but is not valid TOML or
    tries to set a passphrase.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    path = config_path or DEFAULT_CONFIG_PATH
    if path.is_file():
        try:
            with open(path, "rb") as f:
                file_config = tomllib.load(f)
        except (tomllib.TOMLDecodeError, OSError) as e:
            raise ConfigurationError(f"Failed to load config from {path}: {e}") from e
        if "passphrase" in file_config:
            raise ConfigurationError(
                f"{path} must not contain a passphrase; set {PASSPHRASE_ENV} instead"
            )
        config.update(file_config)
        log.debug("Loaded config from %s", path)

    for env_var, key in _ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            config[key] = value

    return config


def kdf_params(config: dict[str, Any]) -> KdfParams:
    """Build KdfParams from the ``kdf`` table. The salt is given as hex."""
    table = dict(config.get("kdf") or {})
    salt_hex = table.pop("salt", "")
    try:
        salt = bytes.fromhex(salt_hex)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"kdf.salt must be hex: {e}") from e
    try:
        return KdfParams(salt=salt, **table)
    except TypeError as e:
        raise ConfigurationError(f"Invalid kdf settings: {e}") from e


def bootstrap_peers(config: dict[str, Any]) -> list[PeerRecord]:
    """PeerRecords for the configured bootstrap list."""
    peers = []
    for entry in config.get("bootstrap_peers") or []:
        try:
            peers.append(PeerRecord.from_dict(entry))
        except (ValueError, AttributeError) as e:
            raise ConfigurationError(f"Invalid bootstrap peer {entry!r}: {e}") from e
    return peers


def get_passphrase(prompt: bool = True) -> str:
    """Passphrase from AGENTMESH_PASSPHRASE, else an interactive prompt."""
    value = os.environ.get(PASSPHRASE_ENV, "")
    if value:
        return value
    if not prompt:
        raise ConfigurationError(f"{PASSPHRASE_ENV} not set")
    import getpass
    value = getpass.getpass("AgentMesh passphrase: ")
    if not value:
        raise ConfigurationError("Empty passphrase")
    return value
