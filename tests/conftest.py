"""Shared fixtures for kbexplorer tests."""

import pytest

from kbexplorer.config import ENV_OVERRIDES, ExplorerConfig
from kbexplorer.scheduler import VirtualScheduler
from kbexplorer.storage import KeyValueStore

BACKEND = "https://api.example.com"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer environment overrides out of tests."""
    for env_name in ENV_OVERRIDES.values():
        monkeypatch.delenv(env_name, raising=False)


@pytest.fixture
def scheduler() -> VirtualScheduler:
    return VirtualScheduler()


@pytest.fixture
def storage():
    """In-memory key/value store."""
    store = KeyValueStore.in_memory()
    yield store
    store.close()


@pytest.fixture
def fast_config() -> ExplorerConfig:
    """Offline config with instant requests and the default indexing delays."""
    return ExplorerConfig(
        backend_url=BACKEND,
        offline_latency=0.0,
        offline_write_latency=0.0,
        offline_index_delay=2.0,
        offline_sync_delay=0.0,
        poll_interval=3.0,
        search_debounce=0.5,
    )


@pytest.fixture
def online_config() -> ExplorerConfig:
    return ExplorerConfig(backend_url=BACKEND, online=True)
