"""
On-chain crvUSD price and supply.
"""

from typing import Dict

from shared.errors import NotFoundError

from ..batching.calls import CallDescriptor
from ..chains.loader import ChainConfig
from .context import ApiContext
from .endpoint import cached_endpoint


AGGREGATOR_STABLE_PRICE_ADDRESS = "0x18672b1b0c623a30089a280ed9256379fb0e4e62"
AGGREGATOR_STABLE_PRICE_ABI = [
    {
        "name": "price",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]
ERC20_TOTAL_SUPPLY_ABI = [
    {
        "name": "totalSupply",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]
PRICE_CHAIN_ID = "ethereum"
CRVUSD_PRICE_MAX_AGE = 60
CRVUSD_TOTAL_SUPPLY_MAX_AGE = 5 * 60


async def compute_crvusd_price(ctx: ApiContext) -> float:
    chain = ctx.require_chain(PRICE_CHAIN_ID)
    [result] = await ctx.aggregator.multi_call([
        CallDescriptor.from_abi(
            AGGREGATOR_STABLE_PRICE_ADDRESS,
            AGGREGATOR_STABLE_PRICE_ABI,
            "price",
            network=chain.network,
        ),
    ])
    return result.unwrap() / 1e18


async def get_crvusd_price(ctx: ApiContext) -> float:
    return await ctx.cache.get(
        "crvusdPrice",
        lambda: compute_crvusd_price(ctx),
        max_age=CRVUSD_PRICE_MAX_AGE,
    )


async def get_crvusd_price_for_chain(ctx: ApiContext, chain: ChainConfig) -> Dict[str, float]:
    """``{crvusd_address: price}`` on chains where crvUSD is deployed, else empty."""
    if not chain.crvusd_address:
        return {}
    return {chain.crvusd_address: await get_crvusd_price(ctx)}


@cached_endpoint(max_age=CRVUSD_PRICE_MAX_AGE, cache_key="getCrvusdPrice")
async def get_crvusd_price_endpoint(ctx: ApiContext) -> Dict[str, float]:
    return {"crvusdPrice": await get_crvusd_price(ctx)}


def _require_crvusd(ctx: ApiContext) -> None:
    if not ctx.require_chain(PRICE_CHAIN_ID).crvusd_address:
        raise NotFoundError("crvUSD is not configured", {"blockchainId": PRICE_CHAIN_ID})


@cached_endpoint(
    max_age=CRVUSD_TOTAL_SUPPLY_MAX_AGE,
    cache_key="getCrvusdTotalSupply",
    validate=_require_crvusd,
)
async def get_crvusd_total_supply(ctx: ApiContext) -> Dict[str, float]:
    """Total crvUSD supply on Ethereum, in whole tokens."""
    chain = ctx.require_chain(PRICE_CHAIN_ID)

    [result] = await ctx.aggregator.multi_call([
        CallDescriptor.from_abi(
            chain.crvusd_address,
            ERC20_TOTAL_SUPPLY_ABI,
            "totalSupply",
            network=chain.network,
        ),
    ])
    return {"crvusdTotalSupply": result.unwrap() / 1e18}
