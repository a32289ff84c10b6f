"""
JSON-RPC client for EVM nodes.
"""

from itertools import count
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

import httpx

from shared.logging import get_logger
from shared.errors import UpstreamUnavailableError
from shared.circuit_breaker import get_circuit_breaker, CircuitBreakerOpenException
from shared.retry import retry_on_exception, RetryConfig, RetryError


class RpcClient:
    """
    Thin ``eth_call`` client for one RPC endpoint.

    Every request goes through a retry policy and the endpoint's circuit
    breaker. Anything that prevents a well-formed response from coming back
    is raised as ``UpstreamUnavailableError``.
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        timeout: float = 10.0,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.destination = urlparse(rpc_url).netloc or rpc_url
        self.logger = get_logger("api.rpc_client")
        self._ids = count(1)

        self.circuit_breaker = get_circuit_breaker(
            f"rpc:{self.destination}",
            failure_threshold=3,
            recovery_timeout=30.0
        )

        retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)
        self._send = retry_on_exception((httpx.HTTPError,), config=retry_config)(self._send_once)

    async def eth_call(self, to: str, data: bytes, block: str = "latest") -> bytes:
        """Execute a single ``eth_call`` and return the raw return data."""
        payload = self._eth_call_payload(to, data, block)
        response = await self._post(payload)

        if not isinstance(response, dict):
            raise self._malformed("expected a JSON object")
        if "error" in response:
            raise UpstreamUnavailableError(
                self.destination,
                message=f"eth_call failed: {response['error']}",
                details={"rpc_error": response["error"]}
            )
        return self._hex_to_bytes(response.get("result"))

    async def batch_eth_call(
        self,
        calls: Sequence[Tuple[str, bytes]],
        block: str = "latest",
    ) -> List[Tuple[bool, bytes]]:
        """
        Send several ``eth_call``s as one JSON-RPC batch.

        Results come back in submission order. A call answered with a JSON-RPC
        error is reported as ``(False, b"")``; the batch as a whole only fails
        when the response cannot be matched back to the requests.
        """
        if not calls:
            return []

        payloads = [self._eth_call_payload(to, data, block) for to, data in calls]
        response = await self._post(payloads)

        if not isinstance(response, list):
            raise self._malformed("expected a JSON array for batch request")

        by_id: Dict[Any, Dict[str, Any]] = {
            item.get("id"): item for item in response if isinstance(item, dict)
        }
        results: List[Tuple[bool, bytes]] = []
        for payload in payloads:
            item = by_id.get(payload["id"])
            if item is None:
                raise self._malformed(f"missing response for request id {payload['id']}")
            if "error" in item:
                results.append((False, b""))
                continue
            results.append((True, self._hex_to_bytes(item.get("result"))))
        return results

    def _eth_call_payload(self, to: str, data: bytes, block: str) -> Dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": "eth_call",
            "params": [{"to": to, "data": "0x" + data.hex()}, block],
        }

    async def _post(self, payload: Any) -> Any:
        try:
            return await self.circuit_breaker.call(self._send, payload)
        except UpstreamUnavailableError:
            raise
        except (RetryError, CircuitBreakerOpenException, ValueError) as exc:
            self.logger.error("RPC request failed", destination=self.destination, error=str(exc))
            raise UpstreamUnavailableError(
                self.destination,
                message=str(exc),
            ) from exc

    async def _send_once(self, payload: Any) -> Any:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.rpc_url, json=payload)

        response.raise_for_status()
        return response.json()

    def _hex_to_bytes(self, value: Any) -> bytes:
        if not isinstance(value, str) or not value.startswith("0x"):
            raise self._malformed(f"invalid result {value!r}")
        try:
            return bytes.fromhex(value[2:])
        except ValueError as exc:
            raise self._malformed(f"invalid hex result {value!r}") from exc

    def _malformed(self, reason: str) -> UpstreamUnavailableError:
        self.logger.warning("Malformed RPC response", destination=self.destination, reason=reason)
        return UpstreamUnavailableError(self.destination, message=f"malformed response: {reason}")
