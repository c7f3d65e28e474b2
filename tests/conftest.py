"""
Pytest configuration and fixtures for the test suite.
"""
import pytest
import os
import sys

# Add src and the tests directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))
sys.path.insert(0, os.path.dirname(__file__))

from quota_broker import BrokerSettings, MemoryStateStore, QuotaBroker  # noqa: E402
from fixtures.broker_mocks import FakeClock  # noqa: E402


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as an async test"
    )


@pytest.fixture
def clock():
    """A clock that only moves when the test advances it."""
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def settings():
    return BrokerSettings()


@pytest.fixture
def broker(store, settings, clock):
    """A broker on an in-memory store and a fake clock."""
    return QuotaBroker(store=store, settings=settings, clock=clock)


@pytest.fixture
def sample_messages():
    """Sample messages for chat completion tests."""
    return [
        {"role": "system", "content": "You are a helpful assistant."},
        {"role": "user", "content": "Hello, how are you?"}
    ]
