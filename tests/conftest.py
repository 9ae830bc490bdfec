"""
Pytest configuration and fixtures.
"""
import pytest

from fakes import ADDRESS, PROVIDERS, TRANSFER_ABI, FakeClock, FakeConnector, RecordingSink
from subscription_supervisor.config import ReconnectPolicy
from subscription_supervisor.models import SubscriptionDescriptor
from subscription_supervisor.supervisor import SupervisionOrchestrator



@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def clock():
    return FakeClock(1000.0)


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def make_descriptor():
    """Factory for descriptors on the test contract."""
    def _make(**overrides):
        values = {
            "address": ADDRESS,
            "event_name": "Transfer",
            "abi": TRANSFER_ABI,
        }
        values.update(overrides)
        return SubscriptionDescriptor(**values)
    return _make


@pytest.fixture
async def supervisor(connector, sink, clock):
    """Supervisor wired to the fake connector, with instant reconnect backoff."""
    orchestrator = SupervisionOrchestrator(
        connector,
        sink=sink,
        reconnect=ReconnectPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0),
        clock=clock,
    )
    orchestrator.set_providers(PROVIDERS)
    yield orchestrator
    await orchestrator.aclose()
