from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from warmpool.exceptions import (
    AuthorizationError,
    BackendTimeoutError,
    NodeNotAllocatedError,
    PoolStateError,
)
from warmpool.providers.memory import InMemoryBackend, Memory
from warmpool.types import NodeStatus, PoolState

pytestmark = [pytest.mark.timeout(60)]


class _HeldListing(InMemoryBackend):
    """Takes its snapshot, then returns it only once released."""

    def __init__(self, config: Memory) -> None:
        super().__init__(config)
        self.hold = False
        self.listed = threading.Event()
        self.proceed = threading.Event()

    def list_nodes(self, group=None):
        snapshot = super().list_nodes(group)
        if self.hold:
            self.listed.set()
            self.proceed.wait(5)
        return snapshot


class TestLifecycle:
    def test_start_fills_to_min_size(self, make_pool, backend):
        pool = make_pool(min_size=3)
        pool.start().result()
        assert pool.is_started()
        assert pool.state is PoolState.RUNNING
        assert pool.ready() == 3
        assert pool.size() == 3
        assert len(backend.live_nodes()) == 3

    def test_start_is_idempotent(self, make_pool):
        pool = make_pool(min_size=1)
        first = pool.start()
        assert pool.start() is first
        first.result()

    def test_acquire_before_start_raises(self, make_pool):
        with pytest.raises(PoolStateError):
            make_pool().acquire(1)

    def test_start_after_close_raises(self, make_pool):
        pool = make_pool()
        pool.close()
        with pytest.raises(PoolStateError):
            pool.start()

    def test_context_manager(self, make_pool, backend):
        with make_pool(min_size=2) as pool:
            assert pool.ready() == 2
        assert pool.state is PoolState.CLOSED
        assert backend.live_nodes() == []

    def test_start_adopts_existing_nodes(self, make_pool, backend):
        seeded = backend.seed("test", 3)
        backend.seed("someone-else", 2)
        pool = make_pool(min_size=2)
        pool.start().result()
        assert pool.size() == 3
        assert {h.id for h in seeded} <= {h.id for h in backend.live_nodes()}
        assert backend.calls["create"] == 0

    def test_adopts_no_more_than_max_size(self, make_pool, backend):
        backend.seed("test", 4)
        pool = make_pool(min_size=1, max_size=2)
        pool.start().result()
        assert pool.size() == 2

    def test_adopted_pending_node_that_never_boots_is_dropped(self, make_pool, backend):
        (stuck,) = backend.seed("test", 1, NodeStatus.PENDING)
        pool = make_pool(min_size=1, node_running_timeout=0.1)
        pool.start().result()
        assert stuck.id in backend.destroyed
        assert pool.size() == 1
        assert not pool.owns(stuck.id)


class TestFiveOfTenScenario:
    def test_acquire_release_sequence(self, make_pool, backend):
        pool = make_pool(min_size=5, max_size=10)
        pool.start().result()
        assert pool.ready() == 5

        first = pool.acquire(3)
        assert first.complete
        stats = pool.stats()
        assert (stats.idle_nodes, stats.used_nodes) == (2, 3)

        second = pool.acquire(10)
        assert len(second) == 7
        assert second.capacity_exceeded
        assert not second.complete
        stats = pool.stats()
        assert (stats.idle_nodes, stats.used_nodes) == (0, 10)
        assert len(backend.live_nodes()) == 10

        pool.release(first.handles[0])
        stats = pool.stats()
        assert (stats.idle_nodes, stats.used_nodes) == (1, 9)
        assert pool.size() == 10

    def test_remove_destroyed_release(self, make_pool, backend, eventually):
        pool = make_pool(min_size=5, max_size=10, remove_destroyed=True)
        pool.start().result()
        result = pool.acquire(3)
        victim = result.handles[0]

        pool.release(victim)
        assert not pool.owns(victim.id)
        assert eventually(lambda: victim.id in backend.destroyed)
        # 2 used + replenished back to min_size
        assert eventually(lambda: pool.size() == 5)
        assert pool.stats().used_nodes == 2


class TestCapacity:
    def test_concurrent_acquires_respect_max_size(self, make_pool, backend):
        pool = make_pool(min_size=0, max_size=10)
        pool.start().result()
        barrier = threading.Barrier(25)

        def grab():
            barrier.wait()
            return pool.acquire(1)

        with ThreadPoolExecutor(max_workers=25) as executor:
            results = list(executor.map(lambda _: grab(), range(25)))

        granted = [h for r in results for h in r.handles]
        assert len(granted) == 10
        assert len({h.id for h in granted}) == 10
        assert sum(r.capacity_exceeded for r in results) == 15
        assert len(backend.live_nodes()) == 10
        assert pool.size() == 10

    def test_concurrent_acquires_with_slow_backend(self, make_pool):
        slow = InMemoryBackend(Memory(create_delay=0.05, boot_delay=0.02))
        pool = make_pool(backend_=slow, min_size=2, max_size=6)
        pool.start().result()

        with ThreadPoolExecutor(max_workers=8) as executor:
            results = list(executor.map(lambda _: pool.acquire(2), range(8)))

        assert sum(len(r) for r in results) == 6
        assert len(slow.live_nodes()) <= 6

    def test_unbounded_pool(self, make_pool):
        pool = make_pool(min_size=0, max_size=None)
        pool.start().result()
        result = pool.acquire(25)
        assert result.complete
        assert pool.stats().max_nodes is None

    def test_acquire_rejects_non_positive(self, make_pool):
        pool = make_pool()
        pool.start().result()
        with pytest.raises(ValueError):
            pool.acquire(0)


class TestRelease:
    def test_release_unknown_node(self, make_pool):
        pool = make_pool(min_size=1)
        pool.start().result()
        with pytest.raises(NodeNotAllocatedError):
            pool.release("node-9999")

    def test_release_idle_node_raises(self, make_pool, backend):
        pool = make_pool(min_size=1)
        pool.start().result()
        (idle,) = backend.live_nodes()
        with pytest.raises(NodeNotAllocatedError):
            pool.release(idle.id)

    def test_double_release_raises(self, make_pool):
        pool = make_pool(min_size=1)
        pool.start().result()
        (node,) = pool.acquire(1).handles
        pool.release(node)
        with pytest.raises(NodeNotAllocatedError):
            pool.release(node)

    def test_released_node_is_reused(self, make_pool, backend):
        pool = make_pool(min_size=1, max_size=1)
        pool.start().result()
        (node,) = pool.acquire(1).handles
        pool.release(node.id)
        (again,) = pool.acquire(1).handles
        assert again.id == node.id
        assert backend.calls["create"] == 1

    def test_reset_on_release(self, make_pool, backend, eventually):
        pool = make_pool(min_size=1, reset_on_release=True)
        pool.start().result()
        (node,) = pool.acquire(1).handles
        pool.release(node)
        assert eventually(lambda: pool.ready() == 1)
        assert backend.calls["reboot"] == 1

    def test_failed_reset_destroys_node(self, make_pool, backend, eventually):
        pool = make_pool(min_size=1, reset_on_release=True)
        pool.start().result()
        (node,) = pool.acquire(1).handles
        backend.fail_next("reboot", RuntimeError("hung"))
        pool.release(node)
        assert eventually(lambda: node.id in backend.destroyed)
        assert eventually(lambda: pool.ready() == 1)
        assert not pool.owns(node.id)

    def test_labels(self, make_pool):
        pool = make_pool(min_size=2)
        pool.start().result()
        pool.acquire(1, label="build-1")
        pool.acquire(1, label="build-2")
        assert sorted(h.group for h in pool.allocated()) == ["build-1", "build-2"]

    def test_destroy_now(self, make_pool, backend, eventually):
        pool = make_pool(min_size=2)
        pool.start().result()
        (node,) = pool.acquire(1).handles
        pool.destroy(node)
        assert node.id in backend.destroyed
        assert not pool.owns(node)
        assert eventually(lambda: pool.size() == 2)

    def test_destroy_failure_propagates(self, make_pool, backend):
        pool = make_pool(min_size=1)
        pool.start().result()
        (node,) = pool.acquire(1).handles
        backend.fail_next("destroy", RuntimeError("stuck"))
        with pytest.raises(RuntimeError, match="stuck"):
            pool.destroy(node)
        assert pool.stats().destroy_failures == 1


class TestFailures:
    def test_auth_error_fails_start_and_degrades(self, make_pool, backend):
        backend.fail_next("create", AuthorizationError("denied"))
        pool = make_pool(min_size=2)
        with pytest.raises(AuthorizationError):
            pool.start().result()
        assert pool.state is PoolState.RUNNING
        assert pool.degraded
        assert pool.replenish() == 0
        assert backend.calls["create"] == 1

    def test_auth_error_while_listing_fails_start(self, make_pool, backend):
        backend.fail_next("list", AuthorizationError("denied"))
        pool = make_pool(min_size=2)
        with pytest.raises(AuthorizationError):
            pool.start().result()
        assert pool.degraded
        assert backend.calls["create"] == 0

    def test_clear_degraded_resumes_replenishment(self, make_pool, backend, eventually):
        backend.fail_next("create", AuthorizationError("denied"))
        pool = make_pool(min_size=2)
        with pytest.raises(AuthorizationError):
            pool.start().result()
        pool.clear_degraded()
        assert eventually(lambda: pool.ready() == 2)
        assert not pool.degraded

    def test_transient_failure_is_retried(self, make_pool, backend, eventually):
        backend.fail_next("create", BackendTimeoutError("slow"))
        pool = make_pool(min_size=2)
        pool.start().result()
        assert eventually(lambda: pool.ready() == 2)
        assert pool.stats().provision_failures == 1
        assert pool.stats().consecutive_failures == 0

    def test_repeated_failures_degrade(self, make_pool, backend, eventually):
        backend.fail_next("create", BackendTimeoutError("slow"), times=100)
        pool = make_pool(min_size=2, max_consecutive_failures=3)
        pool.start().result()
        assert eventually(lambda: pool.degraded)
        assert pool.stats().consecutive_failures >= 3

    def test_acquire_shortfall_carries_error(self, make_pool, backend):
        pool = make_pool(min_size=1)
        pool.start().result()
        error = BackendTimeoutError("slow")
        backend.fail_next("create", error)
        result = pool.acquire(3)
        assert len(result) == 1
        assert result.error is error
        assert not result.capacity_exceeded

    def test_partial_capacity(self, make_pool):
        small = InMemoryBackend(Memory(capacity=3))
        pool = make_pool(backend_=small, min_size=0)
        pool.start().result()
        result = pool.acquire(5)
        assert len(result) == 3
        assert result.error is not None
        assert pool.size() == 3


class TestSweep:
    def test_sweep_drops_vanished_nodes(self, make_pool, backend, eventually):
        pool = make_pool(min_size=3)
        pool.start().result()
        gone, dead, _ = backend.live_nodes()
        backend.destroy_node(gone.id)
        backend.set_status(dead.id, NodeStatus.ERROR)

        removed = pool.sweep()
        assert sorted(removed) == sorted([gone.id, dead.id])
        assert eventually(lambda: pool.ready() == 3)

    def test_periodic_health_check(self, make_pool, backend, eventually):
        pool = make_pool(min_size=2, health_check_interval=0.05)
        pool.start().result()
        victim = backend.live_nodes()[0]
        backend.destroy_node(victim.id)
        assert eventually(lambda: not pool.owns(victim.id))
        assert eventually(lambda: pool.ready() == 2)

    def test_sweep_spares_nodes_handed_out_while_listing(self, make_pool):
        slow = _HeldListing(Memory())
        pool = make_pool(backend_=slow)
        pool.start().result()

        slow.hold = True
        with ThreadPoolExecutor(max_workers=1) as executor:
            sweeping = executor.submit(pool.sweep)
            assert slow.listed.wait(5)
            (node,) = pool.acquire(1).handles
            slow.proceed.set()
            assert sweeping.result() == []

        assert pool.owns(node.id)
        assert slow.destroyed == []
        pool.release(node)

    def test_sweep_tolerates_list_failure(self, make_pool, backend):
        pool = make_pool(min_size=1)
        pool.start().result()
        backend.fail_next("list", BackendTimeoutError("slow"))
        assert pool.sweep() == []
        assert pool.size() == 1


class TestClose:
    def test_close_destroys_everything(self, make_pool, backend):
        pool = make_pool(min_size=3)
        pool.start().result()
        pool.acquire(1)
        report = pool.close()
        assert report.clean
        assert len(report.destroyed) == 3
        assert backend.live_nodes() == []
        assert pool.state is PoolState.CLOSED

    def test_close_is_idempotent(self, make_pool):
        pool = make_pool(min_size=1)
        pool.start().result()
        report = pool.close()
        assert pool.close() is report

    def test_acquire_after_close_raises(self, make_pool):
        pool = make_pool(min_size=1)
        pool.start().result()
        pool.close()
        with pytest.raises(PoolStateError):
            pool.acquire(1)

    def test_close_reports_failures(self, make_pool, backend):
        pool = make_pool(min_size=2)
        pool.start().result()
        backend.fail_next("destroy", RuntimeError("stuck"))
        report = pool.close()
        assert len(report.destroyed) == 1
        assert len(report.failed) == 1
        assert not report.clean
        assert pool.stats().destroy_failures == 1

    def test_close_cleans_up_group(self, make_pool, backend):
        pool = make_pool(min_size=1, cleanup_on_close=True)
        pool.start().result()
        pool.close()
        assert backend.cleaned_groups == ["test"]

    def test_close_without_start(self, make_pool, backend):
        report = make_pool().close()
        assert report.clean
        assert backend.calls["create"] == 0

    def test_close_during_start_destroys_new_nodes(self, make_pool, eventually):
        slow = InMemoryBackend(Memory(create_delay=0.2))
        pool = make_pool(backend_=slow, min_size=3)
        future = pool.start()
        assert eventually(lambda: slow.calls["create"] == 1)
        pool.close()
        future.result()
        assert pool.state is PoolState.CLOSED
        assert slow.live_nodes() == []

    def test_close_while_booting_destroys_once(self, make_pool, eventually):
        booting = InMemoryBackend(Memory(boot_delay=10))
        pool = make_pool(backend_=booting, min_size=1)
        future = pool.start()
        assert eventually(lambda: booting.calls["get"] >= 1)

        report = pool.close()
        future.result()

        assert len(report.destroyed) == 1
        assert booting.calls["destroy"] == 1
        assert booting.live_nodes() == []
