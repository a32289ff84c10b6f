"""
Platforms Curve is deployed on and the pool registries each one exposes.
"""

from typing import Any, Dict, List

from shared.errors import UpstreamUnavailableError
from shared.logging import get_logger

from ..batching.calls import CallDescriptor
from ..batching.executor import run_concurrently_at_most
from ..chains.loader import ChainConfig
from .context import ApiContext
from .endpoint import cached_endpoint


ADDRESS_PROVIDER_ABI = [
    {
        "name": "get_address",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "_id", "type": "uint256"}],
        "outputs": [{"name": "", "type": "address"}],
    },
]

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
# Registry addresses never move once deployed.
REGISTRIES_MAX_AGE = 24 * 60 * 60

logger = get_logger("api.platforms")


async def resolve_platform_registries(ctx: ApiContext, chain: ChainConfig) -> Dict[str, List[str]]:
    """Registry ids and addresses for a chain, in declaration order."""
    lookups = [registry for registry in chain.registries if registry.address_provider_id is not None]
    results = await ctx.aggregator.multi_call([
        CallDescriptor.from_abi(
            ctx.chains.address_provider,
            ADDRESS_PROVIDER_ABI,
            "get_address",
            [registry.address_provider_id],
            meta_data=registry.registry_id,
            network=chain.network,
        )
        for registry in lookups
    ])

    resolved: Dict[str, str] = {}
    for result in results:
        if not result.ok:
            # Round-trip failures leave nothing to serve for this chain.
            if isinstance(result.error, UpstreamUnavailableError):
                raise result.error
            logger.warning("Registry lookup reverted", chain=chain.chain_id, registry=result.meta_data)
            continue
        resolved[result.meta_data] = result.data.lower()

    registry_ids: List[str] = []
    registry_addresses: List[str] = []
    for registry in chain.registries:
        address = registry.address or resolved.get(registry.registry_id)
        if address is None or address == ZERO_ADDRESS:
            logger.warning("Registry not deployed", chain=chain.chain_id, registry=registry.registry_id)
            continue
        registry_ids.append(registry.registry_id)
        registry_addresses.append(address)

    return {"registryIds": registry_ids, "registryAddresses": registry_addresses}


async def get_platform_registries(ctx: ApiContext, chain: ChainConfig) -> Dict[str, List[str]]:
    return await ctx.cache.get(
        f"platformRegistries-{chain.chain_id}",
        lambda: resolve_platform_registries(ctx, chain),
        max_age=REGISTRIES_MAX_AGE,
    )


@cached_endpoint(max_age=60 * 60, cache_key="getPlatforms")
async def get_platforms(ctx: ApiContext) -> Dict[str, Any]:
    """Registry ids available on every configured chain."""
    chain_ids = ctx.chains.chain_ids
    outcomes = await run_concurrently_at_most(
        [
            lambda chain_id=chain_id: get_platform_registries(ctx, ctx.chains.get(chain_id))
            for chain_id in chain_ids
        ],
        limit=ctx.chain_concurrency,
    )
    return {
        "platforms": {
            chain_id: outcome.unwrap()["registryIds"]
            for chain_id, outcome in zip(chain_ids, outcomes)
        },
    }
