from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from dataclasses import replace

import pytest

from warmpool.config import PoolConfig
from warmpool.manager import PoolManager
from warmpool.providers.memory import InMemoryBackend, Memory
from warmpool.provisioner import BackendProvisioner

FAST = PoolConfig(
    backing_group="test",
    min_size=0,
    max_size=10,
    provision_threads=16,
    replenish_interval=0.05,
    replenish_retry_delay=0.05,
    node_running_timeout=1.0,
    node_running_interval=0.01,
    close_timeout=5.0,
)


def eventually(check: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if check():
            return True
        time.sleep(interval)
    return check()


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend(Memory())


@pytest.fixture
def make_pool(backend: InMemoryBackend) -> Iterator[Callable[..., PoolManager]]:
    pools: list[PoolManager] = []

    def factory(*, backend_: InMemoryBackend | None = None, **overrides) -> PoolManager:
        manager = PoolManager(BackendProvisioner(backend_ or backend), replace(FAST, **overrides))
        pools.append(manager)
        return manager

    yield factory
    for manager in pools:
        manager.close(timeout=2.0)


@pytest.fixture(name="eventually")
def eventually_fixture() -> Callable[..., bool]:
    return eventually
