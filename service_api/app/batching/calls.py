"""
Value types exchanged with the call aggregator.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple, Union

from eth_utils import is_address

from shared.errors import PartialBatchFailure, UpstreamUnavailableError

from .abi import Operation


DEFAULT_MAX_CALLS_PER_BATCH = 500


@dataclass(frozen=True)
class NetworkSettings:
    """Destination a batch of calls is sent to."""

    rpc_url: str
    multicall_address: Optional[str] = None
    max_calls_per_batch: int = DEFAULT_MAX_CALLS_PER_BATCH

    @property
    def group_key(self) -> Tuple[str, Optional[str]]:
        multicall = self.multicall_address.lower() if self.multicall_address else None
        return (self.rpc_url, multicall)


@dataclass(frozen=True)
class CallDescriptor:
    """
    One read operation against a contract.

    ``meta_data`` is never inspected; it is handed back verbatim on the
    matching ``CallResult``. ``network`` overrides the aggregator's default
    destination for this call.
    """

    address: str
    operation: Operation
    params: Tuple[Any, ...] = ()
    meta_data: Any = None
    network: Optional[NetworkSettings] = None

    @classmethod
    def from_abi(
        cls,
        address: str,
        abi: Sequence[Dict[str, Any]],
        method_name: str,
        params: Sequence[Any] = (),
        *,
        meta_data: Any = None,
        network: Optional[NetworkSettings] = None,
    ) -> "CallDescriptor":
        return cls(
            address=address,
            operation=Operation.from_abi(abi, method_name),
            params=tuple(params),
            meta_data=meta_data,
            network=network,
        )

    def encode(self) -> bytes:
        if not is_address(self.address):
            raise ValueError(f"invalid contract address {self.address!r}")
        return self.operation.encode_call(self.params)


CallError = Union[PartialBatchFailure, UpstreamUnavailableError]


@dataclass(frozen=True)
class CallResult:
    """Decoded outcome of one ``CallDescriptor``."""

    meta_data: Any = None
    data: Any = None
    error: Optional[CallError] = field(default=None, compare=False)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        """Return the decoded data, raising if the call failed."""
        if isinstance(self.error, UpstreamUnavailableError):
            raise self.error
        if self.error is not None:
            raise ValueError(f"Call failed: {self.error.reason}")
        return self.data
