"""
Chain capability records, loaded once at startup.

Each chain declares explicitly which pool registries and lending registries it
supports; endpoint code reads these records as plain data.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from shared.logging import get_logger

from ..batching.calls import DEFAULT_MAX_CALLS_PER_BATCH, NetworkSettings


DEFAULT_DATA_FILE = Path(__file__).resolve().parent / "data" / "chains.json"
RPC_URL_ENV_PREFIX = "CURVE_API_RPC_URL_"

logger = get_logger("api.chains")


@dataclass(frozen=True)
class RegistryCapability:
    """
    A pool registry available on a chain.

    Exactly one of ``address`` (fixed deployment) or ``address_provider_id``
    (looked up on the address provider) is set.
    """

    registry_id: str
    address: Optional[str] = None
    address_provider_id: Optional[int] = None


@dataclass(frozen=True)
class ChainConfig:
    """Everything the service knows about one chain."""

    chain_id: str
    rpc_url: str
    multicall_address: Optional[str] = None
    registries: Tuple[RegistryCapability, ...] = ()
    lending_registries: Mapping[str, str] = field(default_factory=dict)
    lending_vaults_base_url: Optional[str] = None
    lending_url_fragments: Mapping[str, str] = field(default_factory=dict)
    crvusd_address: Optional[str] = None
    prices_api: bool = False
    graph_endpoint: Optional[str] = None
    max_calls_per_batch: int = DEFAULT_MAX_CALLS_PER_BATCH

    @property
    def registry_ids(self) -> List[str]:
        return [registry.registry_id for registry in self.registries]

    @property
    def network(self) -> NetworkSettings:
        return NetworkSettings(
            rpc_url=self.rpc_url,
            multicall_address=self.multicall_address,
            max_calls_per_batch=self.max_calls_per_batch,
        )


@dataclass(frozen=True)
class ChainRegistry:
    """All configured chains, keyed by chain id, in declaration order."""

    address_provider: str
    chains: Mapping[str, ChainConfig]

    def get(self, chain_id: str) -> Optional[ChainConfig]:
        return self.chains.get(chain_id)

    @property
    def chain_ids(self) -> List[str]:
        return list(self.chains)


def _lc(value: Optional[str]) -> Optional[str]:
    return value.lower() if isinstance(value, str) else value


def _parse_registry(raw: Dict[str, Any], chain_id: str) -> RegistryCapability:
    address = _lc(raw.get("address"))
    provider_id = raw.get("address_provider_id")
    if (address is None) == (provider_id is None):
        raise ValueError(
            f"Registry {raw.get('id')!r} on {chain_id} needs exactly one of address or address_provider_id"
        )
    return RegistryCapability(
        registry_id=raw["id"],
        address=address,
        address_provider_id=int(provider_id) if provider_id is not None else None,
    )


def _parse_chain(raw: Dict[str, Any], max_calls_per_batch: int, environ: Mapping[str, str]) -> ChainConfig:
    chain_id = raw["chain_id"]
    rpc_url = environ.get(f"{RPC_URL_ENV_PREFIX}{chain_id.upper()}") or raw["rpc_url"]
    return ChainConfig(
        chain_id=chain_id,
        rpc_url=rpc_url,
        multicall_address=_lc(raw.get("multicall_address")),
        registries=tuple(_parse_registry(r, chain_id) for r in raw.get("registries", [])),
        lending_registries={k: _lc(v) for k, v in raw.get("lending_registries", {}).items()},
        lending_vaults_base_url=raw.get("lending_vaults_base_url"),
        lending_url_fragments=dict(raw.get("lending_url_fragments", {})),
        crvusd_address=_lc(raw.get("crvusd_address")),
        prices_api=bool(raw.get("prices_api", False)),
        graph_endpoint=raw.get("graph_endpoint"),
        max_calls_per_batch=int(raw.get("max_calls_per_batch", max_calls_per_batch)),
    )


def load_chains(
    config_path: Optional[Union[str, Path]] = None,
    *,
    max_calls_per_batch: int = DEFAULT_MAX_CALLS_PER_BATCH,
    environ: Optional[Mapping[str, str]] = None,
) -> ChainRegistry:
    """
    Load chain capability records from JSON.

    ``CURVE_API_RPC_URL_<CHAIN>`` environment variables override the RPC URL
    of the matching chain.
    """
    path = Path(config_path) if config_path else DEFAULT_DATA_FILE
    environ = os.environ if environ is None else environ

    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)

    chains: Dict[str, ChainConfig] = {}
    for raw in payload.get("chains", []):
        chain = _parse_chain(raw, max_calls_per_batch, environ)
        if chain.chain_id in chains:
            raise ValueError(f"Duplicate chain id {chain.chain_id!r} in {path}")
        chains[chain.chain_id] = chain

    logger.info("Loaded chain configuration", path=str(path), chains=list(chains))
    return ChainRegistry(address_provider=_lc(payload["address_provider"]), chains=chains)
