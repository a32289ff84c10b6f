"""
Adapters package for upstream data sources.

Contains HTTP client wrappers for RPC nodes and the prices API. These
adapters encapsulate:

- Request shapes (JSON-RPC eth_call, batch arrays, Multicall3 aggregate3)
- Retry policies and circuit breakers
- Error handling that maps to UpstreamUnavailableError

Keep adapters thin and side-effect free outside of explicit calls.
"""

from .rpc_client import RpcClient
from .multicall_transport import (
    BatchTransport,
    JsonRpcBatchTransport,
    Multicall3Transport,
    TransportRegistry,
)
from .prices_client import PricesApiClient

__all__ = [
    "RpcClient",
    "BatchTransport",
    "JsonRpcBatchTransport",
    "Multicall3Transport",
    "TransportRegistry",
    "PricesApiClient",
]
