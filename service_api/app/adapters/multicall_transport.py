"""
Batch transports: carry several contract reads to one destination per round-trip.
"""

from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from shared.retry import RetryConfig

from ..batching.abi import Operation
from ..batching.calls import NetworkSettings
from .rpc_client import RpcClient


RawCall = Tuple[str, bytes]
RawResult = Tuple[bool, bytes]

AGGREGATE3 = Operation(
    name="aggregate3",
    input_types=("(address,bool,bytes)[]",),
    output_types=("(bool,bytes)[]",),
)


class BatchTransport(Protocol):
    """Upstream read endpoint: ordered raw results, or an exception for the whole batch."""

    async def aggregate(self, network: NetworkSettings, calls: Sequence[RawCall]) -> List[RawResult]:
        ...


class Multicall3Transport:
    """Sends a batch as a single ``aggregate3`` call with per-call failure allowed."""

    def __init__(self, client: RpcClient):
        self.client = client

    async def aggregate(self, network: NetworkSettings, calls: Sequence[RawCall]) -> List[RawResult]:
        if not network.multicall_address:
            raise ValueError("Multicall3Transport requires a multicall address")

        call_data = AGGREGATE3.encode_call([[(target, True, data) for target, data in calls]])
        raw = await self.client.eth_call(network.multicall_address, call_data)
        results = AGGREGATE3.decode_result(raw)
        return [(bool(success), bytes(data)) for success, data in results]


class JsonRpcBatchTransport:
    """Sends a batch as a JSON-RPC array of ``eth_call`` requests."""

    def __init__(self, client: RpcClient):
        self.client = client

    async def aggregate(self, network: NetworkSettings, calls: Sequence[RawCall]) -> List[RawResult]:
        return await self.client.batch_eth_call(calls)


class TransportRegistry:
    """Resolves (and reuses) the transport for a destination."""

    def __init__(self, *, timeout: float = 10.0, retry_config: Optional[RetryConfig] = None):
        self.timeout = timeout
        self.retry_config = retry_config
        self._clients: Dict[str, RpcClient] = {}

    def client_for(self, rpc_url: str) -> RpcClient:
        if rpc_url not in self._clients:
            self._clients[rpc_url] = RpcClient(
                rpc_url,
                timeout=self.timeout,
                retry_config=self.retry_config,
            )
        return self._clients[rpc_url]

    def __call__(self, network: NetworkSettings) -> BatchTransport:
        client = self.client_for(network.rpc_url)
        if network.multicall_address:
            return Multicall3Transport(client)
        return JsonRpcBatchTransport(client)
