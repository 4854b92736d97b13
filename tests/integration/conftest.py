"""Fixtures wiring the explorer client to the in-process Service Bus."""

import pytest
import pytest_asyncio

from fake_servicebus import FakeServiceBus

from sbexplorer.client import ServiceBusExplorerClient
from sbexplorer.config import ClientConfig
from sbexplorer.metrics import ClientMetrics


TOKEN = "integration-token"
NAMESPACE = "contoso"


@pytest.fixture
def broker():
    broker = FakeServiceBus(token=TOKEN)
    broker.create_queue("orders")
    broker.create_topic("events", ["audit", "billing"])
    return broker


@pytest.fixture
def config():
    """Short waits so idle receivers and pollers finish quickly."""
    return ClientConfig(
        timeouts={"request": 1, "send": 1},
        receive={"inactivity_timeout": 0.05, "default_timeout": 0.5, "default_count": 10},
        purge={"batch_delete_size": 10, "workers": 2, "credit_batch": 5,
               "initial_idle_timeout": 0.1, "empty_flush_idle_timeout": 0.05,
               "flowing_idle_timeout": 0.05, "max_empty_flushes": 2},
        monitor={"initial_peek_count": 100, "poll_count": 10, "active_interval": 0.02,
                 "idle_interval": 0.05, "first_poll_delay": 0.01, "error_backoff": 0.05},
        search={"page_size": 4, "max_matches": 50},
    )


@pytest_asyncio.fixture
async def client(broker, config):
    client = ServiceBusExplorerClient(
        NAMESPACE,
        TOKEN,
        config=config,
        client_factory=broker.client_factory,
        metrics=ClientMetrics(),
    )
    yield client
    await client.close()
