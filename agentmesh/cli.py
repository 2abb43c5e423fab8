"""
AgentMesh CLI — encrypted memory storage and mesh discovery.

Commands:
  agentmesh store          - Encrypt and store a memory
  agentmesh retrieve       - Retrieve and decrypt a memory by content id
  agentmesh pin / unpin    - Pin or release a stored memory
  agentmesh status         - Show backend node identity
  agentmesh node peers     - List connected peers
  agentmesh node bootstrap - Connect to the bootstrap peers
  agentmesh node mesh-peers- List connected peers in the bootstrap allowlist
  agentmesh node announce  - Show the record this node would announce
  agentmesh gateway ...    - Gateway register / search / stats / status
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from agentmesh.errors import MeshError


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )


def _config(args: argparse.Namespace) -> dict[str, Any]:
    from agentmesh.config import load_config
    config = load_config(Path(args.config) if args.config else None)
    if getattr(args, "ipfs_url", None):
        config["ipfs_url"] = args.ipfs_url
    if getattr(args, "local", None):
        config["local_root"] = args.local
    return config


def _content_store(config: dict[str, Any]):
    if config.get("local_root"):
        from agentmesh.store import LocalContentStore
        return LocalContentStore(root=config["local_root"])
    from agentmesh.ipfs import IPFSClient
    return IPFSClient(config["ipfs_url"], timeout=float(config["ipfs_timeout"]))


def _memory_store(config: dict[str, Any]):
    from agentmesh.config import get_passphrase, kdf_params
    from agentmesh.mesh import MemoryStore
    return MemoryStore(
        _content_store(config),
        key=get_passphrase(),
        kdf=kdf_params(config),
        timeout=float(config["ipfs_timeout"]),
    )


def _discovery(config: dict[str, Any]):
    from agentmesh.config import bootstrap_peers
    from agentmesh.discovery import DiscoveryService
    from agentmesh.ipfs import IPFSClient
    return DiscoveryService(
        IPFSClient(config["ipfs_url"], timeout=float(config["ipfs_timeout"])),
        bootstrap_peers=bootstrap_peers(config),
        agent_name=config.get("agent_name") or None,
        timeout=float(config["ipfs_timeout"]),
    )


def _gateway(config: dict[str, Any]):
    from agentmesh.config import kdf_params
    from agentmesh.gateway import GatewayClient
    return GatewayClient(
        config["gateway_url"],
        api_key=config.get("api_key") or None,
        timeout=float(config["gateway_timeout"]),
        kdf=kdf_params(config),
    )


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


# --- Memory commands ---

def cmd_store(args: argparse.Namespace) -> None:
    from agentmesh.record import MemoryRecord

    metadata = None
    if args.metadata:
        try:
            metadata = json.loads(args.metadata)
        except json.JSONDecodeError as e:
            print(f"Error: --metadata is not valid JSON: {e}", file=sys.stderr)
            sys.exit(1)

    record = MemoryRecord.create(args.type, args.content, metadata=metadata)
    mesh = _memory_store(_config(args))

    async def _store():
        stored = await mesh.store(record)
        if args.pin:
            await mesh.pin(stored.content_id)
        return stored

    result = asyncio.run(_store())
    print(f"Stored: {result.content_id}")
    print(f"  size: {result.size} bytes (encrypted)")


def cmd_retrieve(args: argparse.Namespace) -> None:
    mesh = _memory_store(_config(args))
    record = asyncio.run(mesh.retrieve(args.content_id))
    _print_json(record.to_dict())


def cmd_pin(args: argparse.Namespace) -> None:
    from agentmesh.mesh import MemoryStore
    mesh = MemoryStore(_content_store(_config(args)))
    asyncio.run(mesh.pin(args.content_id))
    print(f"Pinned: {args.content_id}")


def cmd_unpin(args: argparse.Namespace) -> None:
    from agentmesh.mesh import MemoryStore
    mesh = MemoryStore(_content_store(_config(args)))
    asyncio.run(mesh.unpin(args.content_id))
    print(f"Unpinned: {args.content_id}")


def cmd_status(args: argparse.Namespace) -> None:
    from agentmesh.mesh import MemoryStore
    mesh = MemoryStore(_content_store(_config(args)))

    async def _status() -> dict[str, Any]:
        if not await mesh.is_available():
            return {"status": "offline"}
        info = await mesh.node_info()
        return {"status": "online", "id": info.id, "version": info.version}

    status = asyncio.run(_status())
    _print_json(status)
    if status["status"] != "online":
        sys.exit(1)


# --- Node commands ---

def cmd_node_peers(args: argparse.Namespace) -> None:
    discovery = _discovery(_config(args))
    peers = asyncio.run(discovery.peers())
    _print_json([p.to_dict() for p in peers])


def cmd_node_bootstrap(args: argparse.Namespace) -> None:
    discovery = _discovery(_config(args))
    result = asyncio.run(discovery.bootstrap())
    _print_json(result.to_dict())


def cmd_node_mesh_peers(args: argparse.Namespace) -> None:
    discovery = _discovery(_config(args))
    peers = asyncio.run(discovery.find_mesh_peers())
    _print_json([p.to_dict() for p in peers])


def cmd_node_announce(args: argparse.Namespace) -> None:
    discovery = _discovery(_config(args))
    info = asyncio.run(discovery.announce())
    _print_json(info.to_dict())


# --- Gateway commands ---

def cmd_gateway_register(args: argparse.Namespace) -> None:
    gw = _gateway(_config(args))
    resp = asyncio.run(gw.register(args.agent_id))
    print(f"Registered: {resp.get('agentId', args.agent_id)}")
    print(f"  api key: {resp.get('apiKey', '')}")
    print("  Save this key; set AGENTMESH_API_KEY to use it.")


def cmd_gateway_search(args: argparse.Namespace) -> None:
    gw = _gateway(_config(args))
    _print_json(asyncio.run(gw.search(args.query, type=args.type, limit=args.limit)))


def cmd_gateway_stats(args: argparse.Namespace) -> None:
    gw = _gateway(_config(args))
    _print_json(asyncio.run(gw.stats()))


def cmd_gateway_status(args: argparse.Namespace) -> None:
    gw = _gateway(_config(args))
    _print_json(asyncio.run(gw.status()))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentmesh",
        description="AgentMesh — encrypted memory storage for autonomous agents.",
    )
    from agentmesh import __version__
    parser.add_argument("--version", action="version", version=f"agentmesh {__version__}")
    parser.add_argument("--config", help="Path to config.toml (default: ~/.agentmesh/config.toml)")
    parser.add_argument("--ipfs-url", help="IPFS API URL (or set AGENTMESH_IPFS_URL)")
    parser.add_argument("--local", help="Use a local blob store rooted at this directory")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    p_store = sub.add_parser("store", help="Encrypt and store a memory")
    p_store.add_argument("content", help="Memory content")
    p_store.add_argument("--type", default="fact", help="Memory type (default: fact)")
    p_store.add_argument("--metadata", help="Metadata as a JSON object")
    p_store.add_argument("--pin", action="store_true", help="Pin after storing")

    p_get = sub.add_parser("retrieve", help="Retrieve and decrypt a memory")
    p_get.add_argument("content_id", help="Content identifier returned by store")

    p_pin = sub.add_parser("pin", help="Pin a stored memory")
    p_pin.add_argument("content_id")
    p_unpin = sub.add_parser("unpin", help="Unpin a stored memory")
    p_unpin.add_argument("content_id")

    sub.add_parser("status", help="Show backend node identity")

    p_node = sub.add_parser("node", help="Mesh discovery")
    node_sub = p_node.add_subparsers(dest="node_command")
    node_sub.add_parser("peers", help="List connected peers")
    node_sub.add_parser("bootstrap", help="Connect to bootstrap peers")
    node_sub.add_parser("mesh-peers", help="List connected mesh peers")
    node_sub.add_parser("announce", help="Show this node's announcement record")

    p_gw = sub.add_parser("gateway", help="Gateway HTTP API")
    gw_sub = p_gw.add_subparsers(dest="gateway_command")
    p_reg = gw_sub.add_parser("register", help="Register an agent id")
    p_reg.add_argument("agent_id")
    p_search = gw_sub.add_parser("search", help="Search stored memories")
    p_search.add_argument("query", nargs="?", default="")
    p_search.add_argument("--type", help="Filter by memory type")
    p_search.add_argument("--limit", type=int, help="Maximum results")
    gw_sub.add_parser("stats", help="Show agent usage")
    gw_sub.add_parser("status", help="Show gateway status")

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    groups = {
        "node": ("node_command", {
            "peers": cmd_node_peers,
            "bootstrap": cmd_node_bootstrap,
            "mesh-peers": cmd_node_mesh_peers,
            "announce": cmd_node_announce,
        }),
        "gateway": ("gateway_command", {
            "register": cmd_gateway_register,
            "search": cmd_gateway_search,
            "stats": cmd_gateway_stats,
            "status": cmd_gateway_status,
        }),
    }
    commands = {
        "store": cmd_store,
        "retrieve": cmd_retrieve,
        "pin": cmd_pin,
        "unpin": cmd_unpin,
        "status": cmd_status,
    }

    if args.command in groups:
        attr, table = groups[args.command]
        sc = getattr(args, attr, None)
        if not sc:
            print(f"Usage: agentmesh {args.command} {{{'|'.join(table)}}}")
            sys.exit(0)
        handler = table[sc]
    else:
        handler = commands[args.command]

    try:
        handler(args)
    except MeshError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
