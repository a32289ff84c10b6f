"""
Batching primitives for upstream reads.

- executor: bounded-concurrency execution with ordered, isolated outcomes
- call_aggregator: one round-trip per destination for many contract reads
"""

from .abi import Operation
from .calls import CallDescriptor, CallResult, NetworkSettings
from .call_aggregator import CallAggregator
from .executor import Outcome, run_concurrently_at_most

__all__ = [
    "Operation",
    "CallDescriptor",
    "CallResult",
    "NetworkSettings",
    "CallAggregator",
    "Outcome",
    "run_concurrently_at_most",
]
