"""
Unit tests for subgraph-sourced pool volumes and base APYs.
"""

import pytest
from unittest.mock import AsyncMock

from shared.errors import HardMissError, NotFoundError, PartialBatchFailure, UpstreamUnavailableError
from service_api.app.caching.revalidating_cache import RevalidatingCache
from service_api.app.caching.stores import MemoryStore
from service_api.app.chains.loader import ChainConfig, ChainRegistry, RegistryCapability
from service_api.app.domain.context import ApiContext
from service_api.app.domain.subgraph_volumes import (
    MAX_APY_PCENT,
    VOLUME_WINDOW_SECONDS,
    annualize_pcent,
    base_apys,
    get_subgraph_pool_data,
)
from service_api.app.domain.volumes import get_subgraph_data


ADDRESS_PROVIDER = "0x0000000022d53366457f9d5e68ec105046fc4383"
MAIN_REGISTRY = "0x" + "e1" * 20
CRYPTO_REGISTRY = "0x" + "e2" * 20
GRAPH = "https://graph.example/subgraphs/name/volume-moonbeam"
STABLE_POOL = "0x" + "b1" * 20
IDLE_POOL = "0x" + "b2" * 20
CRYPTO_POOL = "0x" + "b3" * 20

CHAINS = ChainRegistry(
    address_provider=ADDRESS_PROVIDER,
    chains={
        "moonbeam": ChainConfig(
            chain_id="moonbeam",
            rpc_url="https://glmr.example",
            registries=(
                RegistryCapability("main", address_provider_id=0),
                RegistryCapability("crypto", address=CRYPTO_REGISTRY),
            ),
            graph_endpoint=GRAPH,
        ),
        "fantom": ChainConfig(
            chain_id="fantom",
            rpc_url="https://ftm.example",
            registries=(RegistryCapability("main", address_provider_id=0),),
        ),
    },
)

# The crypto registry also lists the stable pool, which keeps its main type
POOL_LISTS = {
    MAIN_REGISTRY: [STABLE_POOL, IDLE_POOL],
    CRYPTO_REGISTRY: [CRYPTO_POOL, STABLE_POOL],
}

HOURLY = {
    STABLE_POOL: ([{"volume": "10", "volumeUSD": "20"}, {"volume": "5", "volumeUSD": "10"}], False),
    IDLE_POOL: ([], True),
    CRYPTO_POOL: ([{"volume": "1", "volumeUSD": "10"}], False),
}


def stable_snapshots():
    latest = {"baseApr": "0.0001", "virtualPrice": "1.01", "xcpProfit": "0", "xcpProfitA": None}
    older = {"baseApr": "0.0001", "virtualPrice": "1.0", "xcpProfit": "0", "xcpProfitA": None}
    return [latest] + [older] * 6


DAILY = {
    STABLE_POOL: stable_snapshots(),
    IDLE_POOL: [],
    CRYPTO_POOL: [
        {"baseApr": "0", "virtualPrice": "1.2", "xcpProfit": "1.1e18", "xcpProfitA": "1.1e18"},
        {"baseApr": "0", "virtualPrice": "1.1", "xcpProfit": "1.0e18", "xcpProfitA": "1.0e18"},
    ],
}


def onchain(overrides=None):
    overrides = overrides or {}

    def respond(descriptor):
        address = descriptor.address
        name = descriptor.operation.name
        if (address, name) in overrides:
            return overrides[(address, name)]
        if name == "get_address":
            return MAIN_REGISTRY
        if name == "pool_count":
            return len(POOL_LISTS[address])
        return POOL_LISTS[address][descriptor.params[0]]

    return respond


@pytest.fixture
def subgraphs():
    client = AsyncMock()
    client.get_hourly_volumes.side_effect = lambda endpoint, pool, since: HOURLY[pool]
    client.get_daily_snapshots.side_effect = lambda endpoint, pool: DAILY[pool]
    return client


@pytest.fixture
def make_ctx(clock, fake_aggregator, subgraphs):
    def _make(overrides=None):
        return ApiContext(
            cache=RevalidatingCache(MemoryStore(), clock=clock),
            aggregator=fake_aggregator(onchain(overrides)),
            chains=CHAINS,
            prices=AsyncMock(),
            subgraphs=subgraphs,
        )

    return _make


class TestBaseApys:
    """Test cases for APY derivation from daily snapshots."""

    def test_stable_pool(self):
        """Test stable pools use the base APR daily and the virtual price over the week."""
        result = base_apys(stable_snapshots())

        assert result["latestDailyApy"] == pytest.approx(((1.0001 ** 365) - 1) * 100)
        assert result["latestWeeklyApy"] == pytest.approx((((1 + 0.01 / 1.01) ** 52) - 1) * 100)
        assert result["virtualPrice"] == 1.01

    def test_crypto_pool_compounds_profit(self):
        """Test crypto pools compound the growth of their profit index."""
        snapshots = [
            {"xcpProfit": "1.0002e18", "xcpProfitA": "1.0002e18", "virtualPrice": "1.0"},
            {"xcpProfit": "1.0e18", "xcpProfitA": "1.0e18", "virtualPrice": "1.0"},
        ]

        result = base_apys(snapshots)

        rate = (1.0001e18 - 1.0e18) / 1.0e18
        assert result["latestDailyApy"] == pytest.approx(((1 + rate) ** 365 - 1) * 100)
        assert result["latestWeeklyApy"] == 0.0

    def test_missing_profit_a(self):
        """Test a missing second profit counter counts as zero."""
        snapshots = [
            {"xcpProfit": "2.0002e18", "xcpProfitA": None, "virtualPrice": "1.0"},
            {"xcpProfit": "2.0e18", "xcpProfitA": "", "virtualPrice": "1.0"},
        ]

        rate = (1.00005e18 - 1.0e18) / 1.0e18
        assert base_apys(snapshots)["latestDailyApy"] == pytest.approx(((1 + rate) ** 365 - 1) * 100)

    def test_zero_virtual_price(self):
        """Test a pool without a virtual price a day ago has no APY."""
        snapshots = [
            {"baseApr": "0.01", "virtualPrice": "1.0", "xcpProfit": "0"},
            {"baseApr": "0.01", "virtualPrice": "0", "xcpProfit": "0"},
        ]

        assert base_apys(snapshots)["latestDailyApy"] == 0.0

    def test_no_snapshots(self):
        """Test a pool without snapshots has zero APYs and no virtual price."""
        assert base_apys([]) == {"latestDailyApy": 0.0, "latestWeeklyApy": 0.0, "virtualPrice": None}

    def test_annualized_rate_is_capped(self):
        """Test runaway rates are capped, overflow included."""
        assert annualize_pcent(0.05, 365) == MAX_APY_PCENT
        assert annualize_pcent(1e10, 365) == MAX_APY_PCENT
        assert annualize_pcent(0.0, 52) == 0.0


class TestSubgraphPoolData:
    """Test cases for getSubgraphData on chains served by a subgraph."""

    @pytest.mark.asyncio
    async def test_pool_list_and_totals(self, make_ctx):
        """Test pools from every registry are summed into volumes and shares."""
        result = await get_subgraph_data.straight_call(make_ctx(), blockchain_id="moonbeam")

        pools = {pool["address"]: pool for pool in result["poolList"]}
        assert list(pools) == [STABLE_POOL, IDLE_POOL, CRYPTO_POOL]
        assert pools[STABLE_POOL]["type"] == "main"
        assert pools[STABLE_POOL]["rawVolume"] == 15.0
        assert pools[STABLE_POOL]["volumeUSD"] == 30.0
        assert pools[CRYPTO_POOL]["type"] == "crypto"
        assert pools[CRYPTO_POOL]["latestDailyApy"] == MAX_APY_PCENT
        assert pools[IDLE_POOL] == {
            "address": IDLE_POOL,
            "latestDailyApy": 0.0,
            "latestWeeklyApy": 0.0,
            "virtualPrice": None,
            "rawVolume": 0.0,
            "type": "main",
            "volumeUSD": 0.0,
        }
        assert result["subgraphHasErrors"] is True
        assert result["totalVolume"] == 40.0
        assert result["cryptoVolume"] == 10.0
        assert result["cryptoShare"] == 25.0

    @pytest.mark.asyncio
    async def test_volume_window(self, make_ctx, subgraphs):
        """Test hourly volumes are requested from the chain's endpoint for the last window."""
        await get_subgraph_pool_data(make_ctx(), CHAINS.get("moonbeam"), now=1_700_000_000)

        subgraphs.get_hourly_volumes.assert_any_await(
            GRAPH, STABLE_POOL, 1_700_000_000 - VOLUME_WINDOW_SECONDS
        )
        assert subgraphs.get_daily_snapshots.await_count == 3

    @pytest.mark.asyncio
    async def test_reverted_registry_is_skipped(self, make_ctx):
        """Test a registry whose pool count reverts contributes no pools."""
        ctx = make_ctx({(CRYPTO_REGISTRY, "pool_count"): PartialBatchFailure("call reverted")})

        result = await get_subgraph_data.straight_call(ctx, blockchain_id="moonbeam")

        assert [pool["address"] for pool in result["poolList"]] == [STABLE_POOL, IDLE_POOL]
        assert result["cryptoShare"] == 0.0

    @pytest.mark.asyncio
    async def test_subgraph_outage_fails(self, make_ctx, subgraphs):
        """Test an unreachable subgraph fails the computation."""
        subgraphs.get_daily_snapshots.side_effect = UpstreamUnavailableError("graph.example", "timeout")

        with pytest.raises(HardMissError):
            await get_subgraph_data.straight_call(make_ctx(), blockchain_id="moonbeam")

    @pytest.mark.asyncio
    async def test_chain_without_volume_source(self, make_ctx, subgraphs):
        """Test a chain with neither the prices API nor a subgraph is not found."""
        ctx = make_ctx()

        with pytest.raises(NotFoundError):
            await get_subgraph_data.straight_call(ctx, blockchain_id="fantom")

        assert ctx.aggregator.batches == []
        subgraphs.get_hourly_volumes.assert_not_awaited()
