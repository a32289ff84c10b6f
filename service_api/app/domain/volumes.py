"""
Pool volumes and base APYs, sourced from the prices API or a volume subgraph.
"""

from typing import Any, Dict, List, Optional

from shared.errors import NotFoundError
from shared.logging import get_logger

from ..batching.executor import run_concurrently_at_most
from ..chains.loader import ChainConfig
from .context import ApiContext
from .endpoint import cached_endpoint
from .subgraph_volumes import get_subgraph_pool_data


VOLUMES_MAX_AGE = 5 * 60
ALL_CHAINS = "all"

logger = get_logger("api.volumes")


def _float(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


def _pool_type(item: Dict[str, Any]) -> str:
    return item.get("type") or item.get("pool_type") or "main"


def _pool_volume(item: Dict[str, Any], chain_id: str) -> Dict[str, Any]:
    daily_apr = _float(item.get("base_daily_apr"))
    weekly_apr = _float(item.get("base_weekly_apr"))
    return {
        "address": item["address"].lower(),
        "blockchainId": chain_id,
        "type": _pool_type(item),
        "volumeUSD": _float(item.get("trading_volume_24h")) or 0.0,
        "latestDailyApyPcent": daily_apr * 100 if daily_apr is not None else 0.0,
        "latestWeeklyApyPcent": weekly_apr * 100 if weekly_apr is not None else 0.0,
        "virtualPrice": _float(item.get("virtual_price")),
    }


def summarize_volumes(pools: List[Dict[str, Any]]) -> Dict[str, float]:
    total = sum(pool["volumeUSD"] for pool in pools)
    crypto = sum(pool["volumeUSD"] for pool in pools if "crypto" in pool["type"])
    return {
        "totalVolume": total,
        "totalCryptoVolume": crypto,
        "cryptoVolumeSharePcent": crypto / total * 100 if total else 0.0,
    }


async def get_chain_pool_volumes(ctx: ApiContext, chain: ChainConfig) -> List[Dict[str, Any]]:
    if not chain.prices_api:
        return []

    pools = []
    for item in await ctx.prices.get_chain_pools(chain.chain_id):
        if not isinstance(item.get("address"), str):
            logger.warning("Skipping pool without address", chain=chain.chain_id)
            continue
        pools.append(_pool_volume(item, chain.chain_id))
    return pools


def _require_chain_or_all(ctx: ApiContext, blockchain_id: str) -> None:
    if blockchain_id != ALL_CHAINS:
        ctx.require_chain(blockchain_id)


@cached_endpoint(
    max_age=VOLUMES_MAX_AGE,
    cache_key=lambda blockchain_id: f"getVolumes-{blockchain_id}",
    validate=_require_chain_or_all,
)
async def get_volumes(ctx: ApiContext, blockchain_id: str) -> Dict[str, Any]:
    """Volumes for one chain, or for every chain the prices API covers with ``all``."""
    if blockchain_id == ALL_CHAINS:
        chains = [
            ctx.chains.get(chain_id)
            for chain_id in ctx.chains.chain_ids
            if ctx.chains.get(chain_id).prices_api
        ]
    else:
        chains = [ctx.require_chain(blockchain_id)]

    outcomes = await run_concurrently_at_most(
        [lambda chain=chain: get_chain_pool_volumes(ctx, chain) for chain in chains],
        limit=ctx.chain_concurrency,
    )
    pools = [pool for outcome in outcomes for pool in outcome.unwrap()]

    return {"pools": pools, "totalVolumes": summarize_volumes(pools)}


def _require_subgraph_source(ctx: ApiContext, blockchain_id: str) -> None:
    if blockchain_id == ALL_CHAINS:
        return
    chain = ctx.require_chain(blockchain_id)
    if not chain.prices_api and not chain.graph_endpoint:
        raise NotFoundError(
            f'No volume source for blockchainId "{blockchain_id}"',
            {"blockchainId": blockchain_id},
        )


@cached_endpoint(
    max_age=VOLUMES_MAX_AGE,
    cache_key=lambda blockchain_id: f"getSubgraphData-{blockchain_id}",
    validate=_require_subgraph_source,
)
async def get_subgraph_data(ctx: ApiContext, blockchain_id: str) -> Dict[str, Any]:
    """
    Volumes in the older subgraph-based response shape.

    Chains covered by the prices API are served from it; others are queried
    from their volume subgraph.
    """
    if blockchain_id != ALL_CHAINS:
        chain = ctx.require_chain(blockchain_id)
        if not chain.prices_api:
            return await get_subgraph_pool_data(ctx, chain)

    data = await get_volumes.straight_call(ctx, blockchain_id=blockchain_id)
    totals = data["totalVolumes"]
    return {
        "poolList": [
            {
                "address": pool["address"],
                "latestDailyApy": pool["latestDailyApyPcent"],
                "latestWeeklyApy": pool["latestWeeklyApyPcent"],
                "rawVolume": None,
                "type": pool["type"],
                "virtualPrice": pool["virtualPrice"],
                "volumeUSD": pool["volumeUSD"],
            }
            for pool in data["pools"]
        ],
        "subgraphHasErrors": False,
        "cryptoShare": totals["cryptoVolumeSharePcent"],
        "cryptoVolume": totals["totalCryptoVolume"],
        "totalVolume": totals["totalVolume"],
    }
