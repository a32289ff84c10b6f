"""
Shared fixtures for Curve Data API tests.
"""

import pytest

from shared.circuit_breaker import circuit_breaker_manager
from shared.errors import PartialBatchFailure, UpstreamUnavailableError
from shared.retry import RetryConfig
from service_api.app.batching.calls import CallResult


class DummyMetrics:
    """Minimal metrics collector stub."""

    def __init__(self):
        self.counters = []
        self.histograms = []

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        self.counters.append((metric_name, amount, labels))

    def observe_histogram(self, metric_name: str, value: float, **labels):
        self.histograms.append((metric_name, value, labels))

    def total(self, metric_name: str, **labels) -> float:
        return sum(
            amount
            for name, amount, recorded in self.counters
            if name == metric_name and all(recorded.get(k) == v for k, v in labels.items())
        )


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Circuit breakers are process-wide; start every test with none."""
    circuit_breaker_manager.circuit_breakers.clear()
    yield
    circuit_breaker_manager.circuit_breakers.clear()


@pytest.fixture
def no_delay_retry():
    return RetryConfig(max_attempts=2, base_delay=0, max_delay=0, jitter=False)


@pytest.fixture
def metrics():
    return DummyMetrics()


@pytest.fixture
def clock():
    return FakeClock()


class FakeAggregator:
    """
    Stands in for CallAggregator: ``respond(descriptor)`` returns the decoded
    value, or a PartialBatchFailure / UpstreamUnavailableError to fail the call.
    """

    def __init__(self, respond):
        self.respond = respond
        self.batches = []

    async def multi_call(self, descriptors):
        self.batches.append(list(descriptors))
        results = []
        for descriptor in descriptors:
            value = self.respond(descriptor)
            if isinstance(value, (PartialBatchFailure, UpstreamUnavailableError)):
                results.append(CallResult(meta_data=descriptor.meta_data, error=value))
            else:
                results.append(CallResult(meta_data=descriptor.meta_data, data=value))
        return results


@pytest.fixture
def fake_aggregator():
    return FakeAggregator
