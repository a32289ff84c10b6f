"""
Unit tests for the JSON-RPC client.
"""

import pytest
import httpx
from unittest.mock import AsyncMock, patch
import json

from shared.errors import UpstreamUnavailableError
from service_api.app.adapters.rpc_client import RpcClient


RPC_URL = "https://rpc.example"
TARGET = "0x" + "11" * 20


def _response(payload, status_code=200):
    return httpx.Response(
        status_code=status_code,
        content=json.dumps(payload),
        request=httpx.Request("POST", RPC_URL)
    )


class TestRpcClient:
    """Test cases for RpcClient."""

    @pytest.fixture
    def rpc_client(self, no_delay_retry):
        """Create RpcClient instance."""
        return RpcClient(RPC_URL, retry_config=no_delay_retry)

    @pytest.mark.asyncio
    async def test_eth_call_success(self, rpc_client):
        """Test successful eth_call."""
        with patch('httpx.AsyncClient') as mock_client:
            post = AsyncMock(return_value=_response({"jsonrpc": "2.0", "id": 1, "result": "0x" + "00" * 31 + "2a"}))
            mock_client.return_value.__aenter__.return_value.post = post

            result = await rpc_client.eth_call(TARGET, b"\x18\x16\x0d\xdd")

            assert result == bytes(31) + b"\x2a"
            payload = post.call_args.kwargs["json"]
            assert payload["method"] == "eth_call"
            assert payload["params"] == [{"to": TARGET, "data": "0x18160ddd"}, "latest"]

    @pytest.mark.asyncio
    async def test_eth_call_rpc_error(self, rpc_client):
        """Test a JSON-RPC error object becomes UpstreamUnavailableError."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.post = AsyncMock(
                return_value=_response({"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "header not found"}})
            )

            with pytest.raises(UpstreamUnavailableError) as exc_info:
                await rpc_client.eth_call(TARGET, b"\x00")

            assert exc_info.value.destination == "rpc.example"

    @pytest.mark.asyncio
    async def test_http_error_retried_then_raised(self, rpc_client):
        """Test HTTP failures are retried before surfacing as UpstreamUnavailableError."""
        with patch('httpx.AsyncClient') as mock_client:
            post = AsyncMock(return_value=_response({"error": "overloaded"}, status_code=503))
            mock_client.return_value.__aenter__.return_value.post = post

            with pytest.raises(UpstreamUnavailableError):
                await rpc_client.eth_call(TARGET, b"\x00")

            assert post.await_count == 2

    @pytest.mark.asyncio
    async def test_connection_error(self, rpc_client):
        """Test connection errors surface as UpstreamUnavailableError."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.post = AsyncMock(
                side_effect=httpx.ConnectError("Connection failed")
            )

            with pytest.raises(UpstreamUnavailableError):
                await rpc_client.eth_call(TARGET, b"\x00")

    @pytest.mark.asyncio
    async def test_invalid_json(self, rpc_client):
        """Test a non-JSON body surfaces as UpstreamUnavailableError."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.post = AsyncMock(
                return_value=httpx.Response(
                    status_code=200,
                    content=b"<html>bad gateway</html>",
                    request=httpx.Request("POST", RPC_URL)
                )
            )

            with pytest.raises(UpstreamUnavailableError):
                await rpc_client.eth_call(TARGET, b"\x00")

    @pytest.mark.asyncio
    async def test_invalid_result_hex(self, rpc_client):
        """Test a result that is not hex data is treated as malformed."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.post = AsyncMock(
                return_value=_response({"jsonrpc": "2.0", "id": 1, "result": "0xzz"})
            )

            with pytest.raises(UpstreamUnavailableError, match="malformed"):
                await rpc_client.eth_call(TARGET, b"\x00")

    @pytest.mark.asyncio
    async def test_circuit_breaker_opens(self, rpc_client):
        """Test repeated failures open the destination's circuit breaker."""
        with patch('httpx.AsyncClient') as mock_client:
            post = AsyncMock(side_effect=httpx.ConnectError("Connection failed"))
            mock_client.return_value.__aenter__.return_value.post = post

            for _ in range(3):
                with pytest.raises(UpstreamUnavailableError):
                    await rpc_client.eth_call(TARGET, b"\x00")
            calls_before = post.await_count

            with pytest.raises(UpstreamUnavailableError, match="OPEN"):
                await rpc_client.eth_call(TARGET, b"\x00")

            assert post.await_count == calls_before
            assert rpc_client.circuit_breaker.is_open()

    @pytest.mark.asyncio
    async def test_batch_eth_call_matches_ids(self, rpc_client):
        """Test batch responses are matched to requests by id, whatever their order."""

        async def respond(url, json=None):
            items = [
                {"jsonrpc": "2.0", "id": request["id"], "result": "0x" + f"{request['id']:02x}"}
                for request in json
            ]
            items[1] = {"jsonrpc": "2.0", "id": json[1]["id"], "error": {"code": 3, "message": "execution reverted"}}
            return _response(list(reversed(items)))

        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.post = AsyncMock(side_effect=respond)

            results = await rpc_client.batch_eth_call([(TARGET, b"\x01"), (TARGET, b"\x02"), (TARGET, b"\x03")])

            assert results == [(True, b"\x01"), (False, b""), (True, b"\x03")]

    @pytest.mark.asyncio
    async def test_batch_missing_response(self, rpc_client):
        """Test a batch response missing an id fails the whole batch."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.post = AsyncMock(
                return_value=_response([{"jsonrpc": "2.0", "id": 999, "result": "0x"}])
            )

            with pytest.raises(UpstreamUnavailableError, match="missing response"):
                await rpc_client.batch_eth_call([(TARGET, b"\x01")])

    @pytest.mark.asyncio
    async def test_batch_empty(self, rpc_client):
        """Test an empty batch makes no request."""
        with patch('httpx.AsyncClient') as mock_client:
            assert await rpc_client.batch_eth_call([]) == []
            mock_client.assert_not_called()
