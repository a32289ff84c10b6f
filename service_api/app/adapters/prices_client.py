"""
Client for the Curve prices API.
"""

from typing import Any, Dict, List, Optional

import httpx

from shared.logging import get_logger
from shared.errors import UpstreamUnavailableError
from shared.circuit_breaker import get_circuit_breaker, CircuitBreakerOpenException
from shared.retry import retry_on_exception, RetryConfig, RetryError


class PricesApiClient:
    """Fetches token USD prices and per-chain pool statistics."""

    def __init__(self, base_url: str, *, timeout: float = 10.0, retry_config: Optional[RetryConfig] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.logger = get_logger("api.prices_client")

        self.circuit_breaker = get_circuit_breaker(
            "prices_api",
            failure_threshold=3,
            recovery_timeout=30.0
        )

        retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)
        self._get_json = retry_on_exception((httpx.HTTPError,), config=retry_config)(self._get_json_once)

    async def get_usd_prices(self, chain_id: str) -> Dict[str, float]:
        """Lowercased token address -> USD price for every token the API knows on a chain."""
        payload = await self._fetch(f"/v1/usd_price/{chain_id}")
        prices: Dict[str, float] = {}
        for item in payload.get("data", []):
            address = item.get("address")
            price = item.get("usd_price")
            if isinstance(address, str) and price is not None:
                prices[address.lower()] = float(price)
        return prices

    async def get_chain_pools(self, chain_id: str) -> List[Dict[str, Any]]:
        """Pool statistics (volumes, fees, base APRs) for a chain."""
        payload = await self._fetch(f"/v1/chains/{chain_id}")
        return list(payload.get("data", []))

    async def _fetch(self, path: str) -> Dict[str, Any]:
        try:
            payload = await self.circuit_breaker.call(self._get_json, path)
        except (RetryError, CircuitBreakerOpenException, ValueError) as exc:
            self.logger.error("Prices API request failed", path=path, error=str(exc))
            raise UpstreamUnavailableError("prices_api", message=str(exc), details={"path": path}) from exc

        if not isinstance(payload, dict):
            raise UpstreamUnavailableError("prices_api", message="malformed response", details={"path": path})
        return payload

    async def _get_json_once(self, path: str) -> Any:
        url = f"{self.base_url}{path}"
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(url)

        response.raise_for_status()
        self.logger.debug("Prices API response", url=url)
        return response.json()
