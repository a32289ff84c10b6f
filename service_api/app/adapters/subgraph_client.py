"""
Client for Curve volume subgraphs (GraphQL over HTTP).
"""

from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import httpx

from shared.logging import get_logger
from shared.errors import UpstreamUnavailableError
from shared.circuit_breaker import get_circuit_breaker, CircuitBreakerOpenException
from shared.retry import retry_on_exception, RetryConfig, RetryError


HOURLY_VOLUME_QUERY = """
{
  swapVolumeSnapshots(
    first: 1000,
    orderBy: timestamp,
    orderDirection: desc,
    where: {pool: "%(pool)s", timestamp_gt: %(since)d, period: 3600}
  ) {
    volume
    volumeUSD
    timestamp
  }
}
"""

DAILY_SNAPSHOTS_QUERY = """
{
  dailyPoolSnapshots(
    first: 7,
    orderBy: timestamp,
    orderDirection: desc,
    where: {pool: "%(pool)s"}
  ) {
    baseApr
    xcpProfit
    xcpProfitA
    virtualPrice
    timestamp
  }
}
"""


class SubgraphClient:
    """
    Runs GraphQL queries against per-chain subgraph endpoints.

    Transport failures raise ``UpstreamUnavailableError``; GraphQL-level
    ``errors`` are returned to the caller, which decides what they mean.
    """

    def __init__(self, *, timeout: float = 10.0, retry_config: Optional[RetryConfig] = None):
        self.timeout = timeout
        self.logger = get_logger("api.subgraph_client")

        retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)
        self._post_json = retry_on_exception((httpx.HTTPError,), config=retry_config)(self._post_json_once)

    async def query(self, endpoint: str, query: str) -> Dict[str, Any]:
        destination = urlparse(endpoint).netloc or endpoint
        circuit_breaker = get_circuit_breaker(
            f"subgraph:{destination}",
            failure_threshold=3,
            recovery_timeout=30.0
        )
        try:
            payload = await circuit_breaker.call(self._post_json, endpoint, query)
        except (RetryError, CircuitBreakerOpenException, ValueError) as exc:
            self.logger.error("Subgraph request failed", destination=destination, error=str(exc))
            raise UpstreamUnavailableError(destination, message=str(exc)) from exc

        if not isinstance(payload, dict):
            raise UpstreamUnavailableError(destination, message="malformed response")
        return payload

    async def get_hourly_volumes(
        self,
        endpoint: str,
        pool: str,
        since: int,
    ) -> Tuple[List[Dict[str, Any]], bool]:
        """Hourly swap volume snapshots newer than ``since``, and whether the subgraph reported errors."""
        payload = await self.query(endpoint, HOURLY_VOLUME_QUERY % {"pool": pool.lower(), "since": since})
        if payload.get("errors"):
            self.logger.warning("Subgraph returned errors", pool=pool, errors=payload["errors"])
            return [], True
        return list((payload.get("data") or {}).get("swapVolumeSnapshots") or []), False

    async def get_daily_snapshots(self, endpoint: str, pool: str) -> List[Dict[str, Any]]:
        """Up to seven most recent daily pool snapshots, newest first."""
        payload = await self.query(endpoint, DAILY_SNAPSHOTS_QUERY % {"pool": pool.lower()})
        return list((payload.get("data") or {}).get("dailyPoolSnapshots") or [])

    async def _post_json_once(self, endpoint: str, query: str) -> Any:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(endpoint, json={"query": query})

        response.raise_for_status()
        return response.json()
