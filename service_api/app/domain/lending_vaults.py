"""
Lending vaults of one registry on one chain.

Vault data is read in three aggregated passes (market count, vault addresses,
per-vault fields) followed by one pass for token metadata. A vault whose
calls revert is left out of the response; a failed round-trip fails the
whole computation so the cache keeps serving the previous result.
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Tuple

from shared.errors import UpstreamUnavailableError
from shared.logging import get_logger

from ..batching.calls import CallDescriptor, CallResult
from ..chains.loader import ChainConfig
from .context import ApiContext
from .crvusd import get_crvusd_price_for_chain
from .endpoint import cached_endpoint


def _view(name: str, output_type: str, inputs: Sequence[Tuple[str, str]] = ()) -> Dict[str, Any]:
    return {
        "name": name,
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": arg, "type": arg_type} for arg, arg_type in inputs],
        "outputs": [{"name": "", "type": output_type}],
    }


ONEWAY_REGISTRY_ABI = [
    _view("market_count", "uint256"),
    _view("vaults", "address", [("arg0", "uint256")]),
]

ONEWAY_VAULT_ABI = [
    _view("borrow_apr", "uint256"),
    _view("lend_apr", "uint256"),
    _view("asset", "address"),
    _view("totalAssets", "uint256"),
    _view("collateral_token", "address"),
    _view("pricePerShare", "uint256"),
    _view("totalSupply", "uint256"),
]

ERC20_ABI = [
    _view("symbol", "string"),
    _view("decimals", "uint8"),
]

# registry id -> (registry abi, vault abi)
REGISTRY_ABIS = {
    "oneway": (ONEWAY_REGISTRY_ABI, ONEWAY_VAULT_ABI),
}

# (vault method, response field)
VAULT_FIELDS = (
    ("borrow_apr", "borrowApr"),
    ("lend_apr", "lendApr"),
    ("asset", "assetAddress"),
    ("totalAssets", "totalAssets"),
    ("collateral_token", "collateralAssetAddress"),
    ("pricePerShare", "pricePerShare"),
    ("totalSupply", "totalShares"),
)

LENDING_VAULTS_MAX_AGE = 5 * 60

logger = get_logger("api.lending_vaults")


def empty_result() -> Dict[str, Any]:
    return {"lendingVaultData": [], "tvl": 0}


def apr_to_apy(apr: float) -> float:
    """Daily-compounded APY for an APR, both as fractions."""
    return (1 + apr / 365) ** 365 - 1


def _check(result: CallResult, **context: Any) -> None:
    if isinstance(result.error, UpstreamUnavailableError):
        raise result.error
    logger.warning("Lending call reverted", reason=result.error.reason, **context)


async def get_tokens_data(
    ctx: ApiContext,
    chain: ChainConfig,
    addresses: Sequence[str],
) -> Dict[str, Dict[str, Any]]:
    """Symbol and decimals per token; tokens missing either are left out."""
    results = await ctx.aggregator.multi_call([
        CallDescriptor.from_abi(
            address,
            ERC20_ABI,
            method,
            meta_data=(address, method),
            network=chain.network,
        )
        for address in addresses
        for method in ("symbol", "decimals")
    ])

    tokens: Dict[str, Dict[str, Any]] = {address: {"address": address} for address in addresses}
    for result in results:
        address, method = result.meta_data
        if result.ok:
            tokens[address][method] = result.data
        else:
            _check(result, chain=chain.chain_id, token=address, method=method)

    return {
        address: token
        for address, token in tokens.items()
        if "symbol" in token and "decimals" in token
    }


async def get_token_prices(ctx: ApiContext, chain: ChainConfig) -> Dict[str, float]:
    """USD prices from the prices API, with the on-chain crvUSD price on top."""
    prices = await ctx.prices.get_usd_prices(chain.chain_id) if chain.prices_api else {}
    prices.update(await get_crvusd_price_for_chain(ctx, chain))
    return prices


def _build_vault(
    chain: ChainConfig,
    registry_id: str,
    vault_id: int,
    address: str,
    fields: Dict[str, Any],
    tokens: Dict[str, Dict[str, Any]],
    prices: Dict[str, float],
) -> Optional[Dict[str, Any]]:
    asset_address = fields["assetAddress"].lower()
    collateral_address = fields["collateralAssetAddress"].lower()
    borrowed = tokens.get(asset_address)
    collateral = tokens.get(collateral_address)
    if borrowed is None or collateral is None:
        logger.warning("Missing token data for vault", chain=chain.chain_id, vault=address)
        return None

    borrow_apr = fields["borrowApr"] / 1e18
    lend_apr = fields["lendApr"] / 1e18
    price_per_share = fields["pricePerShare"] / 1e18
    total_shares = fields["totalShares"] / 1e18
    borrow_apy = apr_to_apy(borrow_apr)
    lend_apy = apr_to_apy(lend_apr)

    asset_price = prices.get(asset_address)
    total_supplied = price_per_share * total_shares
    usd_total = total_supplied * asset_price if asset_price is not None else None

    fragment = chain.lending_url_fragments.get(registry_id, registry_id)
    market_url = f"{chain.lending_vaults_base_url or ''}{fragment}-{vault_id}/vault"

    return {
        "id": f"{registry_id}-{vault_id}",
        "name": f"Borrow {borrowed['symbol']} ({collateral['symbol']} collateral)",
        "address": address,
        "rates": {
            "borrowApr": borrow_apr,
            "borrowApy": borrow_apy,
            "borrowApyPcent": borrow_apy * 100,
            "lendApr": lend_apr,
            "lendApy": lend_apy,
            "lendApyPcent": lend_apy * 100,
        },
        "assets": {
            "borrowed": {**borrowed, "usdPrice": asset_price},
            "collateral": {**collateral, "usdPrice": prices.get(collateral_address)},
        },
        "vaultShares": {
            "pricePerShare": price_per_share,
            "totalShares": total_shares,
        },
        "totalAssets": fields["totalAssets"] / 10 ** borrowed["decimals"],
        "totalSupplied": {
            "total": total_supplied,
            "usdTotal": usd_total,
        },
        "lendingVaultUrls": {
            "deposit": f"{market_url}/deposit",
            "withdraw": f"{market_url}/withdraw",
        },
        "usdTotal": usd_total,
    }


def _lending_vaults_key(lending_blockchain_id: str, lending_registry_id: str) -> str:
    return f"getLendingVaults-{lending_blockchain_id}-{lending_registry_id}"


def _require_lending_chain(ctx: ApiContext, lending_blockchain_id: str, **_: Any) -> None:
    ctx.require_chain(lending_blockchain_id)


@cached_endpoint(
    max_age=LENDING_VAULTS_MAX_AGE,
    cache_key=_lending_vaults_key,
    validate=_require_lending_chain,
)
async def get_lending_vaults(
    ctx: ApiContext,
    lending_blockchain_id: str,
    lending_registry_id: str,
) -> Dict[str, Any]:
    chain = ctx.require_chain(lending_blockchain_id)
    registry_address = chain.lending_registries.get(lending_registry_id)
    abis = REGISTRY_ABIS.get(lending_registry_id)
    if registry_address is None or abis is None:
        logger.info("No lending registry", chain=chain.chain_id, registry=lending_registry_id)
        return empty_result()

    registry_abi, vault_abi = abis
    network = chain.network

    [count_result] = await ctx.aggregator.multi_call([
        CallDescriptor.from_abi(registry_address, registry_abi, "market_count", network=network),
    ])
    market_count = count_result.unwrap()
    if market_count == 0:
        return empty_result()

    vault_addresses: Dict[int, str] = {}
    for result in await ctx.aggregator.multi_call([
        CallDescriptor.from_abi(registry_address, registry_abi, "vaults", [vault_id], meta_data=vault_id, network=network)
        for vault_id in range(market_count)
    ]):
        if result.ok:
            vault_addresses[result.meta_data] = result.data.lower()
        else:
            _check(result, chain=chain.chain_id, vault_id=result.meta_data)

    fields: Dict[int, Dict[str, Any]] = {vault_id: {} for vault_id in vault_addresses}
    for result in await ctx.aggregator.multi_call([
        CallDescriptor.from_abi(address, vault_abi, method, meta_data=(vault_id, field), network=network)
        for vault_id, address in vault_addresses.items()
        for method, field in VAULT_FIELDS
    ]):
        vault_id, field = result.meta_data
        if result.ok:
            fields[vault_id][field] = result.data
        else:
            _check(result, chain=chain.chain_id, vault=vault_addresses[vault_id], field=field)

    complete = {
        vault_id: vault_fields
        for vault_id, vault_fields in fields.items()
        if len(vault_fields) == len(VAULT_FIELDS)
    }
    token_addresses = sorted({
        vault_fields[name].lower()
        for vault_fields in complete.values()
        for name in ("assetAddress", "collateralAssetAddress")
    })

    tokens, prices = await asyncio.gather(
        get_tokens_data(ctx, chain, token_addresses),
        get_token_prices(ctx, chain),
    )

    vaults: List[Dict[str, Any]] = []
    for vault_id, vault_fields in complete.items():
        vault = _build_vault(
            chain,
            lending_registry_id,
            vault_id,
            vault_addresses[vault_id],
            vault_fields,
            tokens,
            prices,
        )
        if vault is not None:
            vaults.append(vault)

    return {
        "lendingVaultData": vaults,
        "tvl": sum(vault["usdTotal"] for vault in vaults if vault["usdTotal"] is not None),
    }
