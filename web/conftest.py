import pytest


@pytest.fixture(autouse=True)
def use_memory_events_for_tests(settings):
    """Route events to the in-process publisher and start from a clean slate."""
    from apps.orders import providers
    from apps.orders.http_adapters import publisher_circuit

    settings.ORDER_EVENTS_BACKEND = "memory"
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0
    publisher = providers.memory_publisher()
    publisher.clear()
    publisher.fail_with = None
    publisher_circuit().reset()
    yield
    publisher.fail_with = None


@pytest.fixture
def published():
    """Events recorded by the in-process publisher during the test."""
    from apps.orders import providers

    return providers.memory_publisher().events
