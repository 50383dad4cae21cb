"""
Pytest configuration and shared fixtures for the price service client tests.

Provides fake WebSocket transports and pre-wired clients with short
timers so reconnect behaviour can be observed in milliseconds.
"""

import pytest
import pytest_asyncio

from fakes import FakeConnector
from price_service.connection.backoff import BackoffPolicy
from price_service.connection.subscription_manager import SubscriptionManager
from price_service.connection.websocket_client import ResilientWebSocketClient


@pytest.fixture
def connector():
    """Fake transport connect function"""
    return FakeConnector()


@pytest.fixture
def errors():
    """Collected errors from the error handler"""
    return []


@pytest.fixture
def make_client(connector):
    """Factory for a WebSocket client with fast timers"""
    def _make(**overrides):
        options = {
            "backoff": BackoffPolicy(base_delay=0.005, max_delay=0.05),
            "ping_timeout": 5.0,
            "heartbeat_interval": None,
            "send_timeout": 0.5,
            "close_timeout": 0.5,
            "connector": connector,
        }
        options.update(overrides)
        return ResilientWebSocketClient("wss://example.test/ws", **options)
    return _make


@pytest_asyncio.fixture
async def manager(make_client, errors):
    """Subscription manager over a fake transport"""
    manager = SubscriptionManager(make_client(), on_error=errors.append)
    yield manager
    await manager.close_all()
