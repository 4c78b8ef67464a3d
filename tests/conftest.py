from typing import Callable

import httpx
import pytest

from datasourcer.config import HttpConfig, RetryConfig, Settings
from datasourcer.storage.auth_store import MemoryAuthStore


@pytest.fixture
def settings() -> Settings:
    # No backoff delays in tests
    return Settings(
        retry=RetryConfig(initial_delay=0.0, multiplier=1.0, max_retries=2),
        http=HttpConfig(timeout=5.0, connect_timeout=1.0),
    )


@pytest.fixture
def store() -> MemoryAuthStore:
    return MemoryAuthStore()


def mock_client_factory(responder: Callable[[httpx.Request], httpx.Response]) -> Callable[[], httpx.AsyncClient]:
    """Build a replacement for a connector's ``_client`` factory."""

    def _client() -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(responder))

    return _client
