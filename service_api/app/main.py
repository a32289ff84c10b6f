"""
Curve Data API service.
"""

from typing import Dict, Optional

from shared.base_service import BaseService
from shared.circuit_breaker import circuit_breaker_manager
from shared.config import ServiceConfig, get_config
from shared.errors import NotFoundError
from shared.retry import RetryConfig

from .adapters.multicall_transport import TransportRegistry
from .adapters.prices_client import PricesApiClient
from .adapters.subgraph_client import SubgraphClient
from .batching.call_aggregator import CallAggregator
from .caching.revalidating_cache import RevalidatingCache
from .caching.stores import MemoryStore, RedisStore
from .chains.loader import load_chains
from .domain import (
    ApiContext,
    get_crvusd_price_endpoint,
    get_crvusd_total_supply,
    get_lending_vaults,
    get_platforms,
    get_subgraph_data,
    get_volumes,
)


class ApiService(BaseService):
    """Curve Data API service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None):
        super().__init__("api", 3000, config=config or get_config("api", 3000))

        if self.config.redis_url:
            self.store = RedisStore(
                self.config.redis_url,
                retention_seconds=self.config.cache_retention_seconds,
            )
        else:
            self.store = MemoryStore()

        self.chains = load_chains(
            self.config.chains_file,
            max_calls_per_batch=self.config.multicall_max_calls_per_batch,
        )
        retry_config = RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)
        self.transports = TransportRegistry(
            timeout=self.config.rpc_timeout_seconds,
            retry_config=retry_config,
        )
        self.ctx = ApiContext(
            cache=RevalidatingCache(self.store, metrics=self.metrics),
            aggregator=CallAggregator(
                self.transports,
                group_concurrency=self.config.multicall_group_concurrency,
                metrics=self.metrics,
            ),
            chains=self.chains,
            prices=PricesApiClient(
                self.config.prices_api_url,
                timeout=self.config.rpc_timeout_seconds,
                retry_config=retry_config,
            ),
            chain_concurrency=self.config.chain_concurrency,
            subgraphs=SubgraphClient(
                timeout=self.config.rpc_timeout_seconds,
                retry_config=retry_config,
            ),
        )

        @self.app.on_event("shutdown")
        async def _shutdown():
            if isinstance(self.store, RedisStore):
                await self.store.close()

        self._setup_api_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.api_service = self

    def _setup_api_routes(self):
        """Set up Curve data routes."""

        @self.app.get("/api/getPlatforms")
        async def get_platforms_route():
            return await get_platforms.respond(self.ctx)

        @self.app.get("/api/getLendingVaults/{lending_blockchain_id}/{lending_registry_id}")
        async def get_lending_vaults_route(lending_blockchain_id: str, lending_registry_id: str):
            return await get_lending_vaults.respond(
                self.ctx,
                lending_blockchain_id=lending_blockchain_id,
                lending_registry_id=lending_registry_id,
            )

        @self.app.get("/api/getVolumes/{blockchain_id}")
        async def get_volumes_route(blockchain_id: str):
            return await get_volumes.respond(self.ctx, blockchain_id=blockchain_id)

        @self.app.get("/api/getSubgraphData/{blockchain_id}")
        async def get_subgraph_data_route(blockchain_id: str):
            return await get_subgraph_data.respond(self.ctx, blockchain_id=blockchain_id)

        @self.app.get("/api/getCrvusdPrice")
        async def get_crvusd_price_route():
            return await get_crvusd_price_endpoint.respond(self.ctx)

        @self.app.get("/api/getCrvusdTotalSupply")
        async def get_crvusd_total_supply_route():
            return await get_crvusd_total_supply.respond(self.ctx)

        @self.app.get("/api/v1/cache/stats")
        async def get_cache_stats():
            """Get cache statistics."""
            return self.ctx.cache.stats()

        @self.app.get("/api/v1/cache/entries/{key}")
        async def get_cache_entry(key: str):
            """Get bookkeeping for a single cache key."""
            entry = self.ctx.cache.entry(key)
            if entry is None or not entry.has_value:
                raise NotFoundError(f"No cached value for {key!r}", {"key": key})
            return {
                "key": entry.key,
                "computed_at": entry.computed_at,
                "stale_at": entry.stale_at,
                "expires_at": entry.expires_at,
                "refreshing": entry.in_flight is not None,
            }

        @self.app.get("/api/v1/circuit-breakers")
        async def get_circuit_breakers():
            """Get circuit breaker status."""
            circuit_breaker_states = circuit_breaker_manager.get_all_states()
            return {
                "circuit_breakers": circuit_breaker_states,
                "count": len(circuit_breaker_states)
            }

    async def _check_dependencies(self) -> Dict[str, str]:
        return {
            "cache_store": "redis" if isinstance(self.store, RedisStore) else "memory",
            "chains": str(len(self.chains.chain_ids)),
        }


def create_app():
    """Create FastAPI application."""
    service = ApiService()
    return service.app


if __name__ == "__main__":
    service = ApiService()
    service.run()
