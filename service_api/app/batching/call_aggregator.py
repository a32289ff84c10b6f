"""
Call aggregation: many contract reads, one round-trip per destination.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TYPE_CHECKING
from urllib.parse import urlparse

from eth_abi.exceptions import DecodingError, EncodingError

from shared.errors import PartialBatchFailure, UpstreamUnavailableError
from shared.logging import get_logger

from .calls import CallDescriptor, CallResult, NetworkSettings
from .executor import run_concurrently_at_most

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from ..adapters.multicall_transport import BatchTransport
    from shared.metrics import MetricsCollector


TransportFactory = Callable[[NetworkSettings], "BatchTransport"]


class CallAggregator:
    """
    Groups call descriptors by destination and submits each group as few
    round-trips as the destination's batch size allows.

    Results always line up one-to-one with the input descriptors. A failed
    round-trip fails only the descriptors it carried; a reverted call fails
    only its own result.
    """

    def __init__(
        self,
        transport_factory: TransportFactory,
        *,
        default_network: Optional[NetworkSettings] = None,
        group_concurrency: int = 4,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.transport_factory = transport_factory
        self.default_network = default_network
        self.group_concurrency = max(1, group_concurrency)
        self.metrics = metrics
        self.logger = get_logger("api.call_aggregator")

    async def multi_call(self, descriptors: Sequence[CallDescriptor]) -> List[CallResult]:
        if not descriptors:
            return []

        groups: Dict[Tuple[str, Optional[str]], List[int]] = {}
        networks: Dict[Tuple[str, Optional[str]], NetworkSettings] = {}
        for index, descriptor in enumerate(descriptors):
            network = descriptor.network or self.default_network
            if network is None:
                raise ValueError(
                    f"No network for call {descriptor.operation.name} on {descriptor.address}"
                )
            key = network.group_key
            groups.setdefault(key, []).append(index)
            networks.setdefault(key, network)

        results: List[Optional[CallResult]] = [None] * len(descriptors)

        async def _run_group(key: Tuple[str, Optional[str]]) -> None:
            network = networks[key]
            indices = groups[key]
            chunk_size = max(1, network.max_calls_per_batch)
            # Chunks for one destination go out one after another
            for start in range(0, len(indices), chunk_size):
                chunk = indices[start:start + chunk_size]
                chunk_results = await self._round_trip(network, [descriptors[i] for i in chunk])
                for index, result in zip(chunk, chunk_results):
                    results[index] = result

        outcomes = await run_concurrently_at_most(
            [lambda key=key: _run_group(key) for key in groups],
            self.group_concurrency,
        )
        for key, outcome in zip(groups, outcomes):
            if outcome.ok:
                continue
            destination = self._destination(networks[key])
            self.logger.error("Batch group failed", destination=destination, error=str(outcome.error))
            error = UpstreamUnavailableError(destination, message=str(outcome.error))
            for index in groups[key]:
                if results[index] is None:
                    results[index] = CallResult(meta_data=descriptors[index].meta_data, error=error)

        return results  # type: ignore[return-value]

    @staticmethod
    def _destination(network: NetworkSettings) -> str:
        return urlparse(network.rpc_url).netloc or network.rpc_url

    async def _round_trip(
        self,
        network: NetworkSettings,
        descriptors: Sequence[CallDescriptor],
    ) -> List[CallResult]:
        destination = self._destination(network)
        results: List[Optional[CallResult]] = [None] * len(descriptors)

        encoded: List[Tuple[int, str, bytes]] = []
        for position, descriptor in enumerate(descriptors):
            try:
                encoded.append((position, descriptor.address, descriptor.encode()))
            except (EncodingError, ValueError, TypeError) as exc:
                results[position] = CallResult(
                    meta_data=descriptor.meta_data,
                    error=PartialBatchFailure(f"invalid call: {exc}"),
                )

        if encoded:
            try:
                transport = self.transport_factory(network)
                raw = await transport.aggregate(network, [(address, data) for _, address, data in encoded])
                if len(raw) != len(encoded):
                    raise UpstreamUnavailableError(
                        destination,
                        message=f"expected {len(encoded)} results, got {len(raw)}",
                    )
            except Exception as exc:
                error = exc if isinstance(exc, UpstreamUnavailableError) else UpstreamUnavailableError(
                    destination, message=str(exc)
                )
                self.logger.error(
                    "Batch round-trip failed",
                    destination=destination,
                    calls=len(encoded),
                    error=str(exc),
                )
                self._record("multicall_roundtrips_total", destination=destination, outcome="failure")
                for position, _, _ in encoded:
                    results[position] = CallResult(meta_data=descriptors[position].meta_data, error=error)
                return results  # type: ignore[return-value]

            self._record("multicall_roundtrips_total", destination=destination, outcome="success")
            for (position, _, _), (success, return_data) in zip(encoded, raw):
                results[position] = self._decode(descriptors[position], success, return_data)

        failed = sum(1 for result in results if result is not None and not result.ok)
        if failed:
            self.logger.warning(
                "Calls failed inside batch",
                destination=destination,
                failed=failed,
                total=len(descriptors),
            )
            self._record("multicall_calls_total", amount=failed, outcome="failure")
        self._record("multicall_calls_total", amount=len(descriptors) - failed, outcome="success")
        return results  # type: ignore[return-value]

    def _decode(self, descriptor: CallDescriptor, success: bool, return_data: bytes) -> CallResult:
        if not success:
            return CallResult(
                meta_data=descriptor.meta_data,
                error=PartialBatchFailure("call reverted", return_data),
            )
        try:
            data = descriptor.operation.decode_result(return_data)
        # Invalid UTF-8 in a string return surfaces as UnicodeDecodeError
        except (DecodingError, UnicodeDecodeError, ValueError) as exc:
            return CallResult(
                meta_data=descriptor.meta_data,
                error=PartialBatchFailure(f"undecodable return data: {exc}", return_data),
            )
        return CallResult(meta_data=descriptor.meta_data, data=data)

    def _record(self, metric_name: str, amount: float = 1, **labels: Any) -> None:
        if self.metrics is not None and amount:
            self.metrics.increment_counter(metric_name, amount=amount, **labels)
