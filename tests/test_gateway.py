"""
Tests for the gateway HTTP client — auth header, error mapping, rate limits,
encrypted store/retrieve. All HTTP is mocked.
"""

from __future__ import annotations

import base64
import json
from unittest.mock import AsyncMock, patch

import pytest

from agentmesh._http import HTTPResult
from agentmesh.crypto import KdfParams, derive_key
from agentmesh.errors import (
    ConfigurationError,
    FormatError,
    GatewayError,
    IntegrityError,
    MeshTimeoutError,
)
from agentmesh.gateway import GatewayClient, parse_rate_limit
from agentmesh.mesh import MemoryStore
from agentmesh.record import MemoryRecord
from agentmesh.store import LocalContentStore

_RATE_HEADERS = {
    "X-RateLimit-Limit": "100",
    "X-RateLimit-Remaining": "99",
    "X-RateLimit-Reset": "1700000060",
}


def _resp(body, status=200, headers=None):
    return HTTPResult(
        status=status,
        body=json.dumps(body).encode(),
        headers=dict(_RATE_HEADERS if headers is None else headers),
    )


@pytest.fixture
def gw():
    return GatewayClient("https://gw.example/", api_key="mesh_test")


class TestGatewayRequests:
    """Request construction and response handling."""

    def test_empty_url_raises(self):
        with pytest.raises(ValueError, match="cannot be empty"):
            GatewayClient("")

    @pytest.mark.asyncio
    async def test_api_key_header(self, gw):
        mock = AsyncMock(return_value=_resp({"success": True, "stats": {"count": 2}}))
        with patch("agentmesh.gateway.request", mock):
            resp = await gw.stats()
        method, url = mock.call_args[0]
        assert method == "GET"
        assert url == "https://gw.example/mesh/stats"
        assert mock.call_args[1]["headers"]["X-Api-Key"] == "mesh_test"
        assert resp["stats"]["count"] == 2

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        client = GatewayClient("https://gw.example")
        with patch("agentmesh.gateway.request", AsyncMock()) as mock:
            with pytest.raises(ConfigurationError, match="API key required"):
                await client.stats()
        mock.assert_not_called()

    @pytest.mark.asyncio
    async def test_unauthenticated_endpoints_skip_key(self):
        client = GatewayClient("https://gw.example")
        mock = AsyncMock(return_value=_resp({"success": True, "status": "online"}))
        with patch("agentmesh.gateway.request", mock):
            resp = await client.status()
        assert resp["status"] == "online"
        assert "X-Api-Key" not in mock.call_args[1]["headers"]

    @pytest.mark.asyncio
    async def test_rate_limit_metadata(self, gw):
        with patch("agentmesh.gateway.request", AsyncMock(return_value=_resp({"success": True}))):
            resp = await gw.stats()
        expected = {"limit": 100, "remaining": 99, "reset": 1700000060}
        assert resp["rate_limit"] == expected
        assert gw.last_rate_limit == expected

    def test_rate_limit_missing_headers(self):
        assert parse_rate_limit(HTTPResult(status=200)) == {
            "limit": None, "remaining": None, "reset": None,
        }

    @pytest.mark.asyncio
    async def test_error_carries_status_and_body(self, gw):
        body = {"success": False, "error": "Rate limit exceeded"}
        with patch("agentmesh.gateway.request", AsyncMock(return_value=_resp(body, status=429))):
            with pytest.raises(GatewayError, match="Rate limit exceeded") as exc_info:
                await gw.search("x")
        assert exc_info.value.status == 429
        assert exc_info.value.body == body
        assert gw.last_rate_limit["remaining"] == 99

    @pytest.mark.asyncio
    async def test_error_without_json_body(self, gw):
        result = HTTPResult(status=502, body=b"<html>Bad Gateway</html>")
        with patch("agentmesh.gateway.request", AsyncMock(return_value=result)):
            with pytest.raises(GatewayError, match="HTTP 502") as exc_info:
                await gw.stats()
        assert exc_info.value.body == "<html>Bad Gateway</html>"

    @pytest.mark.asyncio
    async def test_timeout_propagates(self, gw):
        with patch("agentmesh.gateway.request", AsyncMock(side_effect=MeshTimeoutError("late"))):
            with pytest.raises(MeshTimeoutError):
                await gw.stats()


class TestGatewayOperations:
    """register / store / search / retrieve / delete."""

    @pytest.mark.asyncio
    async def test_register_sets_key(self):
        client = GatewayClient("https://gw.example")
        mock = AsyncMock(return_value=_resp({"success": True, "agentId": "agent_1", "apiKey": "mesh_new"}))
        with patch("agentmesh.gateway.request", mock):
            await client.register("agent_1")
        assert client.api_key == "mesh_new"
        assert json.loads(mock.call_args[1]["data"]) == {"agentId": "agent_1"}

    @pytest.mark.parametrize("agent_id", ["ab", "x" * 65, "bad id", "semi;colon", ""])
    @pytest.mark.asyncio
    async def test_register_rejects_bad_ids(self, agent_id):
        with pytest.raises(ValueError, match="agent_id"):
            await GatewayClient("https://gw.example").register(agent_id)

    @pytest.mark.asyncio
    async def test_store_body(self, gw):
        mock = AsyncMock(return_value=_resp({"success": True, "cid": "QmA", "size": 10}))
        with patch("agentmesh.gateway.request", mock):
            await gw.store("ZGF0YQ==", type="fact", tags=["a"], description="desc")
        body = json.loads(mock.call_args[1]["data"])
        assert body == {"data": "ZGF0YQ==", "type": "fact", "tags": ["a"], "description": "desc"}

    @pytest.mark.asyncio
    async def test_store_string_base64(self, gw):
        mock = AsyncMock(return_value=_resp({"success": True, "cid": "QmA"}))
        with patch("agentmesh.gateway.request", mock):
            await gw.store_string("héllo")
        body = json.loads(mock.call_args[1]["data"])
        assert base64.b64decode(body["data"]).decode("utf-8") == "héllo"

    @pytest.mark.asyncio
    async def test_search_and_list(self, gw):
        mock = AsyncMock(return_value=_resp({"success": True, "results": [], "count": 0}))
        with patch("agentmesh.gateway.request", mock):
            await gw.search("dark mode", type="preference", limit=5)
            await gw.list()
        first = json.loads(mock.call_args_list[0][1]["data"])
        second = json.loads(mock.call_args_list[1][1]["data"])
        assert first == {"query": "dark mode", "type": "preference", "limit": 5}
        assert second == {"query": ""}

    @pytest.mark.asyncio
    async def test_retrieve_string(self, gw):
        data = base64.b64encode(b"plain").decode()
        with patch("agentmesh.gateway.request", AsyncMock(return_value=_resp({"cid": "QmA", "data": data}))) as mock:
            assert await gw.retrieve_string("QmA") == "plain"
        assert mock.call_args[0] == ("GET", "https://gw.example/mesh/QmA")

    @pytest.mark.asyncio
    async def test_retrieve_rejects_path_injection(self, gw):
        with pytest.raises(ValueError, match="Invalid content id"):
            await gw.retrieve("../admin")

    @pytest.mark.asyncio
    async def test_delete(self, gw):
        mock = AsyncMock(return_value=_resp({"success": True, "deleted": True}))
        with patch("agentmesh.gateway.request", mock):
            resp = await gw.delete("QmA")
        assert resp["deleted"] is True
        assert mock.call_args[0] == ("DELETE", "https://gw.example/mesh/QmA")

    @pytest.mark.asyncio
    async def test_is_online(self, gw):
        with patch("agentmesh.gateway.request", AsyncMock(return_value=_resp({"status": "online"}))):
            assert await gw.is_online() is True
        with patch("agentmesh.gateway.request", AsyncMock(return_value=_resp({"status": "offline"}))):
            assert await gw.is_online() is False
        with patch("agentmesh.gateway.request", AsyncMock(side_effect=MeshTimeoutError("late"))):
            assert await gw.is_online() is False


class TestGatewayEncrypted:
    """store_encrypted / retrieve_decrypted roundtrip through a mocked gateway."""

    @pytest.mark.asyncio
    async def test_roundtrip(self, gw):
        record = MemoryRecord(type="preference", content="dark mode", timestamp=1000)
        stored = {}

        async def fake_request(method, url, *, data=None, headers=None, timeout):
            if method == "POST":
                stored.update(json.loads(data))
                return _resp({"success": True, "cid": "QmEnc"})
            return _resp({"success": True, "cid": "QmEnc", "data": stored["data"]})

        with patch("agentmesh.gateway.request", side_effect=fake_request):
            await gw.store_encrypted(record, "K", tags=["ui"])
            assert stored["type"] == "preference"
            assert b"dark mode" not in base64.b64decode(stored["data"])

            assert await gw.retrieve_decrypted("QmEnc", "K") == record
            assert await gw.retrieve_decrypted("QmEnc", derive_key("K")) == record
            with pytest.raises(IntegrityError):
                await gw.retrieve_decrypted("QmEnc", "K2")

    @pytest.mark.asyncio
    async def test_retrieve_decrypted_bad_data(self, gw):
        with patch("agentmesh.gateway.request", AsyncMock(return_value=_resp({"cid": "QmA"}))):
            with pytest.raises(FormatError):
                await gw.retrieve_decrypted("QmA", "K")

    @pytest.mark.asyncio
    async def test_salted_kdf_matches_memory_store(self, tmp_path):
        kdf = KdfParams(algorithm="pbkdf2", salt=b"mesh-salt", iterations=1000)
        client = GatewayClient("https://gw.example", api_key="mesh_test", kdf=kdf)
        record = MemoryRecord(type="fact", content="salted", timestamp=1)
        stored = {}

        async def fake_request(method, url, *, data=None, headers=None, timeout):
            stored.update(json.loads(data))
            return _resp({"success": True, "cid": "QmEnc"})

        with patch("agentmesh.gateway.request", side_effect=fake_request):
            await client.store_encrypted(record, "K")
        blob = base64.b64decode(stored["data"])

        assert MemoryStore(LocalContentStore(tmp_path), key="K", kdf=kdf).open_record(blob) == record
        with pytest.raises(IntegrityError):
            MemoryStore(LocalContentStore(tmp_path), key="K").open_record(blob)
