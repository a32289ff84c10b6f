"""
Pool volumes and base APYs from Curve volume subgraphs.

Used for chains the prices API does not cover. Pools are listed from the
chain's registries on-chain, then each pool's last 24h of hourly swap volume
and its last week of daily snapshots are queried from the chain's subgraph.
"""

import math
import time
from typing import Any, Dict, List, Optional

from shared.errors import UpstreamUnavailableError
from shared.logging import get_logger

from ..batching.calls import CallDescriptor
from ..batching.executor import run_concurrently_at_most
from ..chains.loader import ChainConfig
from .context import ApiContext
from .platforms import get_platform_registries


POOL_REGISTRY_ABI = [
    {
        "name": "pool_count",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "pool_list",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "arg0", "type": "uint256"}],
        "outputs": [{"name": "", "type": "address"}],
    },
]

SUBGRAPH_POOL_CONCURRENCY = 10
# Slightly more than a day, so the oldest hourly snapshot is never cut off
VOLUME_WINDOW_SECONDS = 25 * 60 * 60
MAX_APY_PCENT = 1e6

logger = get_logger("api.subgraph_volumes")


def _raise_upstream(results) -> None:
    for result in results:
        if isinstance(result.error, UpstreamUnavailableError):
            raise result.error


async def get_chain_pool_list(ctx: ApiContext, chain: ChainConfig) -> List[Dict[str, str]]:
    """Every pool in the chain's registries, typed by the registry that lists it."""
    registries = await get_platform_registries(ctx, chain)
    registry_types = dict(zip(registries["registryAddresses"], registries["registryIds"]))

    count_results = await ctx.aggregator.multi_call([
        CallDescriptor.from_abi(address, POOL_REGISTRY_ABI, "pool_count", meta_data=address, network=chain.network)
        for address in registry_types
    ])
    _raise_upstream(count_results)

    descriptors = []
    for result in count_results:
        if not result.ok:
            logger.warning("Registry pool count reverted", chain=chain.chain_id, registry=result.meta_data)
            continue
        descriptors.extend(
            CallDescriptor.from_abi(
                result.meta_data,
                POOL_REGISTRY_ABI,
                "pool_list",
                [index],
                meta_data=result.meta_data,
                network=chain.network,
            )
            for index in range(result.data)
        )

    pool_results = await ctx.aggregator.multi_call(descriptors)
    _raise_upstream(pool_results)

    pools: Dict[str, Dict[str, str]] = {}
    for result in pool_results:
        if not result.ok:
            logger.warning("Registry pool lookup reverted", chain=chain.chain_id, registry=result.meta_data)
            continue
        address = result.data.lower()
        # A pool listed by several registries keeps the first registry's type
        pools.setdefault(address, {"address": address, "type": registry_types[result.meta_data]})
    return list(pools.values())


def annualize_pcent(rate: float, periods: int) -> float:
    """Compound a per-period rate into a yearly percentage, capped at MAX_APY_PCENT."""
    try:
        apy = ((rate + 1) ** periods - 1) * 100
    except OverflowError:
        apy = math.inf
    return min(apy, MAX_APY_PCENT)


def _num(value: Any) -> Optional[float]:
    return float(value) if value not in (None, "") else None


def _xcp_profit(snapshot: Dict[str, Any]) -> float:
    return ((snapshot["xcpProfit"] / 2) + ((snapshot["xcpProfitA"] or 0.0) / 2) + 1e18) / 2


def _profit_rate(current: Dict[str, Any], previous: Dict[str, Any]) -> float:
    previous_profit = _xcp_profit(previous)
    return (_xcp_profit(current) - previous_profit) / previous_profit


def base_apys(raw_snapshots: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Daily and weekly base APYs (percent) from daily snapshots, newest first.

    Crypto pools (non-zero ``xcpProfit``) compound the growth of their profit
    index; other pools use the reported base APR for the daily figure and the
    virtual price change over the week for the weekly one.
    """
    snapshots = [
        {
            "baseApr": _num(raw.get("baseApr")) or 0.0,
            "virtualPrice": _num(raw.get("virtualPrice")) or 0.0,
            "xcpProfit": _num(raw.get("xcpProfit")),
            "xcpProfitA": _num(raw.get("xcpProfitA")),
        }
        for raw in raw_snapshots
    ]

    daily = 0.0
    weekly = 0.0
    if snapshots:
        latest = snapshots[0]
        is_crypto = (latest["xcpProfit"] or 0) > 0

        if len(snapshots) >= 2:
            day_old = snapshots[1]
            if is_crypto and day_old["xcpProfit"]:
                daily = annualize_pcent(_profit_rate(latest, day_old), 365)
            elif day_old["virtualPrice"] != 0:
                daily = annualize_pcent(latest["baseApr"], 365)

        if len(snapshots) > 6:
            week_old = snapshots[6]
            if is_crypto and week_old["xcpProfit"]:
                weekly = annualize_pcent(_profit_rate(latest, week_old), 52)
            elif week_old["virtualPrice"] != 0 and latest["virtualPrice"] != 0:
                rate = (latest["virtualPrice"] - week_old["virtualPrice"]) / latest["virtualPrice"]
                weekly = annualize_pcent(rate, 52)

    return {
        "latestDailyApy": daily,
        "latestWeeklyApy": weekly,
        "virtualPrice": snapshots[0]["virtualPrice"] if snapshots else None,
    }


async def _pool_data(ctx: ApiContext, chain: ChainConfig, pool: Dict[str, str], since: int) -> Dict[str, Any]:
    volumes, has_errors = await ctx.subgraphs.get_hourly_volumes(chain.graph_endpoint, pool["address"], since)
    snapshots = await ctx.subgraphs.get_daily_snapshots(chain.graph_endpoint, pool["address"])

    return {
        "address": pool["address"],
        **base_apys(snapshots),
        "rawVolume": sum(_num(snapshot.get("volume")) or 0.0 for snapshot in volumes),
        "type": pool["type"],
        "volumeUSD": sum(_num(snapshot.get("volumeUSD")) or 0.0 for snapshot in volumes),
        "subgraphHasErrors": has_errors,
    }


async def get_subgraph_pool_data(
    ctx: ApiContext,
    chain: ChainConfig,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """``getSubgraphData`` payload for a chain served by its subgraph."""
    since = int(now if now is not None else time.time()) - VOLUME_WINDOW_SECONDS
    pools = await get_chain_pool_list(ctx, chain)

    outcomes = await run_concurrently_at_most(
        [lambda pool=pool: _pool_data(ctx, chain, pool, since) for pool in pools],
        limit=SUBGRAPH_POOL_CONCURRENCY,
    )
    pool_list = [outcome.unwrap() for outcome in outcomes]

    has_errors = any(pool.pop("subgraphHasErrors") for pool in pool_list)
    total = sum(pool["volumeUSD"] for pool in pool_list)
    crypto = sum(pool["volumeUSD"] for pool in pool_list if "crypto" in pool["type"])
    logger.info("Subgraph pool data computed", chain=chain.chain_id, pools=len(pool_list), has_errors=has_errors)

    return {
        "poolList": pool_list,
        "subgraphHasErrors": has_errors,
        "cryptoShare": crypto / total * 100 if total else 0.0,
        "cryptoVolume": crypto,
        "totalVolume": total,
    }
