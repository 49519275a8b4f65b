from typing import AsyncGenerator

import pytest
import pytest_asyncio

from queue_job_client.models import PollingConfig
from queue_job_client.queue_job_client import QueueJobClient
from queue_server import QueueServer

BASE_URL_TEMPLATE = "http://localhost:{}"
API_KEY = "test-key"
MODEL_ID = "fal-ai/fast-sdxl"


@pytest_asyncio.fixture
async def server(unused_tcp_port_factory) -> AsyncGenerator[tuple, None]:
    """Start and yield a test QueueServer instance on a random port."""
    port = unused_tcp_port_factory()
    server_instance = QueueServer(completion_time=1.0, failure_rate=0.0, api_key=API_KEY)
    await server_instance.start(port=port)
    try:
        yield server_instance, port
    finally:
        await server_instance.stop()


@pytest_asyncio.fixture
async def client(server) -> AsyncGenerator[QueueJobClient, None]:
    _, port = server
    base_url = BASE_URL_TEMPLATE.format(port)
    async with QueueJobClient(
        API_KEY, base_url, models_url=f"{base_url}/models", sync_url=f"{base_url}/run"
    ) as instance:
        yield instance


@pytest.fixture
def config() -> PollingConfig:
    """Provide a fast polling configuration for the client."""
    return PollingConfig(
        initial_backoff_ms=250,
        max_backoff_ms=500,
        backoff_factor=2.0,
        timeout_ms=10_000,
    )
