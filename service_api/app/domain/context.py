"""
Shared dependencies handed to every endpoint handler.
"""

from dataclasses import dataclass
from typing import Optional

from ..adapters.prices_client import PricesApiClient
from ..adapters.subgraph_client import SubgraphClient
from ..batching.call_aggregator import CallAggregator
from ..caching.revalidating_cache import RevalidatingCache
from ..chains.loader import ChainConfig, ChainRegistry

from shared.errors import ParamError


@dataclass
class ApiContext:
    """Long-lived collaborators, built once at startup."""

    cache: RevalidatingCache
    aggregator: CallAggregator
    chains: ChainRegistry
    prices: PricesApiClient
    chain_concurrency: int = 4
    subgraphs: Optional[SubgraphClient] = None

    def require_chain(self, chain_id: str) -> ChainConfig:
        chain = self.chains.get(chain_id)
        if chain is None:
            raise ParamError(
                f'No config data for blockchainId "{chain_id}"',
                details={"blockchainId": chain_id},
            )
        return chain
