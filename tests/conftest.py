"""Test configuration and fixtures."""

from pathlib import Path
from typing import Generator

import httpx
import pytest

from hub_mcp.config import HubConfig
from hub_mcp.memory_store import MemoryStore
from hub_mcp.sqlite_store import SQLiteStore
from hub_mcp.store import HubStore
from hub_mcp.tools import ToolContext


class FakeClock:
    """Manually advanced monotonic clock for breaker tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config(tmp_path: Path) -> HubConfig:
    """Config rooted in a temp directory with no credentials set."""
    return HubConfig(
        data_folder=tmp_path,
        store_backend="memory",
        sqlite_path=tmp_path / "hub.db",
        blob_folder=None,
    )


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path: Path) -> Generator[HubStore, None, None]:
    """Each contract test runs once per backend."""
    if request.param == "memory":
        backend = MemoryStore()
    else:
        backend = SQLiteStore(tmp_path / "contract.db")
    try:
        yield backend
    finally:
        backend.close()


def _mock_context(store: HubStore, config: HubConfig, handler) -> ToolContext:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return ToolContext(store=store, config=config, http=client)


def _no_network(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"Unexpected request: {request.method} {request.url}")


@pytest.fixture
def mock_context():
    """Factory for a ToolContext whose HTTP client answers through ``handler(request)``."""
    return _mock_context


@pytest.fixture
def no_network():
    """MockTransport handler that fails the test on any request."""
    return _no_network
