from datetime import datetime, timedelta, timezone

import httpx
import pytest

from flowbench.services.flow_execution import FlowRunner, StepInvoker


class FakeClock:
    """Manually advanced clock; sleeping advances time instantly."""

    def __init__(self):
        self.ms = 0.0
        self.start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.sleeps: list[float] = []

    def monotonic_ms(self) -> float:
        return self.ms

    def now(self) -> datetime:
        return self.start + timedelta(milliseconds=self.ms)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.ms += seconds * 1000

    def advance(self, ms: float) -> None:
        self.ms += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_invoker():
    def factory(handler, **kwargs):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return StepInvoker(client=client, **kwargs)
    return factory


@pytest.fixture
def make_runner(clock, make_invoker):
    def factory(handler, **kwargs):
        return FlowRunner(make_invoker(handler), clock=clock, **kwargs)
    return factory
