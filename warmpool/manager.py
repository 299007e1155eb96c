"""Pool manager - admission control over a warm pool of backend nodes.

The manager owns every node it tracks. Callers only ever see `NodeHandle`
values and address nodes by id; the mutable `PoolEntry` objects never leave
this module.

Node lifecycle:

    PROVISIONING -> IDLE <-> ALLOCATED
    ALLOCATED -> RETURNING -> IDLE          (reset_on_release)
    IDLE | ALLOCATED -> DESTROYED           (entry removed)

Pool lifecycle is linear: UNSTARTED -> STARTING -> RUNNING -> CLOSING -> CLOSED.

Capacity is gated when it is reserved: a caller first reserves up to the
remaining headroom under the lock, then calls the backend. The cap therefore
holds across concurrent acquisitions and replenishment, without
re-checking after the fact.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import replace
from types import TracebackType

from loguru import logger

from warmpool.config import PoolConfig
from warmpool.exceptions import (
    AuthorizationError,
    NodeNotAllocatedError,
    PartialProvisioningError,
    PoolStateError,
)
from warmpool.provisioner import BackendProvisioner
from warmpool.types import (
    AcquireResult,
    CloseReport,
    EntryState,
    NodeHandle,
    NodeStatus,
    PoolEntry,
    PoolState,
    PoolStats,
)

log = logger.bind(component="pool")

type NodeRef = NodeHandle | str

_IN_USE = (EntryState.ALLOCATED, EntryState.RETURNING)


def _node_id(node: NodeRef) -> str:
    return node.id if isinstance(node, NodeHandle) else node


class PoolManager:
    """Keeps a bounded set of backend nodes warm and hands them out.

    Args:
        provisioner: Adapter over the compute backend.
        config: Pool bounds and tuning.

    Example:
        manager = PoolManager(BackendProvisioner(backend), PoolConfig(min_size=2))
        manager.start().result()
        result = manager.acquire(1)
        ...
        manager.release(result.handles[0])
        manager.close()
    """

    def __init__(self, provisioner: BackendProvisioner, config: PoolConfig) -> None:
        self.config = config
        self._provisioner = provisioner
        self._lock = threading.Lock()
        self._entries: dict[str, PoolEntry] = {}
        self._reserved = 0
        self._state = PoolState.UNSTARTED

        self._executor = ThreadPoolExecutor(
            max_workers=config.provision_threads,
            thread_name_prefix=f"warmpool-{config.backing_group}",
        )
        self._start_future: Future[None] | None = None
        self._replenisher: threading.Thread | None = None
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._closed = threading.Event()
        self._close_report: CloseReport | None = None
        self._last_sweep = time.monotonic()

        self._degraded = False
        self._consecutive_failures = 0
        self._provision_failures = 0
        self._destroy_failures = 0

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def state(self) -> PoolState:
        with self._lock:
            return self._state

    @property
    def group(self) -> str:
        return self.config.backing_group

    @property
    def min_size(self) -> int:
        return self.config.min_size

    @property
    def max_size(self) -> int | None:
        return self.config.max_size

    @property
    def degraded(self) -> bool:
        with self._lock:
            return self._degraded

    def is_started(self) -> bool:
        return self.state is PoolState.RUNNING

    def ready(self) -> int:
        """Number of idle nodes."""
        return self.stats().idle_nodes

    def size(self) -> int:
        """Idle plus used nodes."""
        return self.stats().current_size

    def stats(self) -> PoolStats:
        with self._lock:
            idle = used = provisioning = 0
            for entry in self._entries.values():
                match entry.state:
                    case EntryState.IDLE:
                        idle += 1
                    case EntryState.ALLOCATED | EntryState.RETURNING:
                        used += 1
                    case EntryState.PROVISIONING:
                        provisioning += 1
            return PoolStats(
                idle_nodes=idle,
                used_nodes=used,
                max_nodes=self.config.max_size,
                min_nodes=self.config.min_size,
                provisioning_nodes=provisioning + self._reserved,
                degraded=self._degraded,
                consecutive_failures=self._consecutive_failures,
                provision_failures=self._provision_failures,
                destroy_failures=self._destroy_failures,
            )

    def allocated(self) -> list[NodeHandle]:
        """Nodes currently handed out, relabelled with the caller's group."""
        with self._lock:
            return [
                replace(e.handle, group=e.label) if e.label else e.handle
                for e in self._entries.values()
                if e.state in _IN_USE
            ]

    def owns(self, node: NodeRef) -> bool:
        with self._lock:
            return _node_id(node) in self._entries

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> Future[None]:
        """Bring the pool up to ``min_size`` in the background.

        Adopts live nodes already bearing the backing group, then provisions
        the rest. The returned future completes once the first fill attempt
        is over; it fails only on an authorization error. Abandoning it does
        not stop provisioning. Calling start twice returns the same future.
        """
        with self._lock:
            if self._start_future is not None:
                return self._start_future
            if self._state is not PoolState.UNSTARTED:
                raise PoolStateError(f"Cannot start a pool that is {self._state}")
            self._state = PoolState.STARTING
            self._start_future = self._executor.submit(self._start)
            return self._start_future

    def _start(self) -> None:
        log.info(
            "Starting pool {group}: min={min}, max={max}",
            group=self.group, min=self.min_size, max=self.max_size,
        )
        auth_error: AuthorizationError | None = None

        try:
            existing = self._provisioner.list_by_group(self.group)
        except AuthorizationError as exc:
            existing = []
            auth_error = exc
        except Exception as exc:
            log.warning("Could not list existing nodes in {group}: {err}", group=self.group, err=exc)
            existing = []

        booting = self._adopt(existing)
        if booting:
            self._settle(tuple(booting), allocate=False)

        if auth_error is None:
            with self._lock:
                needed = max(0, self.min_size - len(self._entries) - self._reserved)
            if needed:
                _, error, _ = self._provision(needed, allocate=False)
                if isinstance(error, AuthorizationError):
                    auth_error = error

        with self._lock:
            if self._state is not PoolState.STARTING:
                log.info("Pool {group} closed while starting", group=self.group)
                return
            self._state = PoolState.RUNNING
            if auth_error is not None:
                self._degraded = True

        self._start_replenisher()
        stats = self.stats()
        log.info(
            "Pool {group} started: {ready} idle, {size}/{min} nodes",
            group=self.group, ready=stats.idle_nodes, size=stats.current_size, min=self.min_size,
        )
        if auth_error is not None:
            raise auth_error
        if stats.current_size + stats.provisioning_nodes < self.min_size:
            self._wake.set()

    def _adopt(self, existing: list[NodeHandle]) -> list[NodeHandle]:
        """Track pre-existing group nodes. Returns the ones still booting."""
        booting: list[NodeHandle] = []
        surplus = 0
        with self._lock:
            for handle in existing:
                if handle.id in self._entries:
                    continue
                if handle.status not in (NodeStatus.RUNNING, NodeStatus.PENDING):
                    log.debug("Not adopting node {id} ({status})", id=handle.id, status=handle.status)
                    continue
                if self._headroom_locked() <= 0:
                    surplus += 1
                    continue
                if handle.status is NodeStatus.PENDING:
                    self._entries[handle.id] = PoolEntry(handle, EntryState.PROVISIONING)
                    booting.append(handle)
                else:
                    self._entries[handle.id] = PoolEntry(handle, EntryState.IDLE)
            adopted = len(self._entries)
        if adopted:
            log.info("Adopted {n} existing nodes in {group}", n=adopted, group=self.group)
        if surplus:
            log.warning(
                "{n} existing nodes in {group} exceed max_size and were left alone",
                n=surplus, group=self.group,
            )
        return booting

    def close(self, timeout: float | None = None) -> CloseReport:
        """Stop replenishment and destroy every tracked node.

        Best effort: destroy failures are logged and reported, never raised.
        Destroys still running after ``timeout`` seconds are reported as
        timed out and left behind. Valid from any state.
        """
        timeout = self.config.close_timeout if timeout is None else timeout

        with self._lock:
            match self._state:
                case PoolState.CLOSED:
                    return self._close_report or CloseReport()
                case PoolState.CLOSING:
                    waiting = True
                case _:
                    waiting = False
                    self._state = PoolState.CLOSING
                    victims = [e.handle for e in self._entries.values()]
                    for entry in self._entries.values():
                        entry.state = EntryState.DESTROYED
                    self._entries.clear()

        if waiting:
            self._closed.wait(timeout)
            return self._close_report or CloseReport()

        log.info("Closing pool {group}: destroying {n} nodes", group=self.group, n=len(victims))
        self._stop.set()
        self._wake.set()
        replenisher = self._replenisher
        if replenisher is not None and replenisher is not threading.current_thread():
            replenisher.join(timeout=min(1.0, timeout))

        report = self._destroy_all(victims, timeout)

        self._executor.shutdown(wait=False, cancel_futures=True)
        if self.config.cleanup_on_close:
            try:
                self._provisioner.cleanup_group(self.group)
            except Exception as exc:
                log.warning("Failed to clean up resources of {group}: {err}", group=self.group, err=exc)

        with self._lock:
            self._destroy_failures += len(report.failed)
            self._state = PoolState.CLOSED
            self._close_report = report
        self._closed.set()

        log.info(
            "Pool {group} closed: {ok} destroyed, {failed} failed, {late} timed out",
            group=self.group, ok=len(report.destroyed),
            failed=len(report.failed), late=len(report.timed_out),
        )
        return report

    def _destroy_all(self, victims: list[NodeHandle], timeout: float) -> CloseReport:
        if not victims:
            return CloseReport()

        destroyer = ThreadPoolExecutor(
            max_workers=min(len(victims), self.config.provision_threads),
            thread_name_prefix=f"warmpool-{self.group}-close",
        )
        try:
            futures = {destroyer.submit(self._provisioner.destroy, h): h for h in victims}
            done, not_done = wait(futures, timeout=timeout)
        finally:
            destroyer.shutdown(wait=False, cancel_futures=True)

        destroyed: list[str] = []
        failed: dict[str, BaseException] = {}
        for future in done:
            handle = futures[future]
            if (exc := future.exception()) is not None:
                log.warning("Failed to destroy node {id}: {err}", id=handle.id, err=exc)
                failed[handle.id] = exc
            else:
                destroyed.append(handle.id)
        timed_out = tuple(sorted(futures[f].id for f in not_done))
        for node_id in timed_out:
            log.warning("Gave up waiting for node {id} to be destroyed", id=node_id)

        return CloseReport(destroyed=tuple(sorted(destroyed)), failed=failed, timed_out=timed_out)

    def __enter__(self) -> PoolManager:
        self.start().result()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Allocation
    # -------------------------------------------------------------------------

    def acquire(self, count: int, *, label: str = "") -> AcquireResult:
        """Claim ``count`` nodes, idle ones first.

        The shortfall is provisioned synchronously, bounded by the headroom to
        ``max_size``; fresh nodes go straight to ALLOCATED. Never waits for
        capacity: when the cap is hit the partial set is returned with
        ``capacity_exceeded`` set.

        Args:
            count: Number of nodes wanted.
            label: Group name the caller knows the nodes by.
        """
        if count <= 0:
            raise ValueError(f"count must be positive, got {count}")

        claimed: list[NodeHandle] = []
        with self._lock:
            if self._state not in (PoolState.STARTING, PoolState.RUNNING):
                raise PoolStateError(f"Cannot acquire from a pool that is {self._state}")
            for entry in self._entries.values():
                if len(claimed) == count:
                    break
                if entry.state is EntryState.IDLE:
                    entry.state = EntryState.ALLOCATED
                    entry.label = label
                    claimed.append(entry.handle)

        shortfall = count - len(claimed)
        error: BaseException | None = None
        exceeded = False
        if shortfall:
            fresh, error, granted = self._provision(shortfall, allocate=True, label=label)
            claimed.extend(fresh)
            exceeded = granted < shortfall
            if error is not None:
                self._wake.set()

        log.debug(
            "Acquired {got}/{n} nodes from {group}{note}",
            got=len(claimed), n=count, group=self.group,
            note=" (capacity exceeded)" if exceeded else "",
        )
        return AcquireResult(
            handles=tuple(claimed),
            requested=count,
            capacity_exceeded=exceeded,
            error=error,
        )

    def release(self, node: NodeRef) -> None:
        """Hand a node back to the pool.

        With ``remove_destroyed`` the node leaves the pool immediately and is
        destroyed in the background, after which replenishment tops the pool
        back up. Otherwise it returns to the idle set and the size is
        unchanged.

        Raises:
            NodeNotAllocatedError: The node is unknown or not allocated.
        """
        node_id = _node_id(node)
        with self._lock:
            entry = self._entries.get(node_id)
            if entry is None or entry.state is not EntryState.ALLOCATED:
                raise NodeNotAllocatedError(f"Node {node_id} is not allocated from {self.group}")
            entry.label = ""
            if self.config.remove_destroyed:
                entry.state = EntryState.DESTROYED
                del self._entries[node_id]
            elif self.config.reset_on_release:
                entry.state = EntryState.RETURNING
            else:
                entry.state = EntryState.IDLE

        if self.config.remove_destroyed:
            log.debug("Released node {id}, destroying", id=node_id)
            self._spawn(self._destroy_then_replenish, entry.handle)
        elif self.config.reset_on_release:
            log.debug("Released node {id}, resetting", id=node_id)
            self._spawn(self._reset, entry)
        else:
            log.debug("Released node {id} back to idle", id=node_id)

    def destroy(self, node: NodeRef) -> NodeHandle:
        """Remove a node from the pool and destroy it now.

        Raises:
            NodeNotAllocatedError: The node is not tracked or still provisioning.
        """
        node_id = _node_id(node)
        with self._lock:
            entry = self._entries.get(node_id)
            if entry is None or entry.state is EntryState.PROVISIONING:
                raise NodeNotAllocatedError(f"Node {node_id} is not tracked by {self.group}")
            entry.state = EntryState.DESTROYED
            del self._entries[node_id]

        try:
            self._provisioner.destroy(entry.handle)
        except Exception:
            with self._lock:
                self._destroy_failures += 1
            raise
        finally:
            self._wake.set()
        return entry.handle

    def _reset(self, entry: PoolEntry) -> None:
        try:
            self._provisioner.reset(entry.handle)
        except Exception as exc:
            log.warning("Failed to reset node {id}, destroying: {err}", id=entry.id, err=exc)
            with self._lock:
                if self._entries.get(entry.id) is not entry:
                    return
                entry.state = EntryState.DESTROYED
                del self._entries[entry.id]
            self._destroy_then_replenish(entry.handle)
            return
        with self._lock:
            if entry.state is EntryState.RETURNING:
                entry.state = EntryState.IDLE

    def _destroy_then_replenish(self, handle: NodeHandle) -> None:
        try:
            self._provisioner.destroy(handle)
        except Exception as exc:
            log.warning("Failed to destroy node {id}: {err}", id=handle.id, err=exc)
            with self._lock:
                self._destroy_failures += 1
        finally:
            self._wake.set()

    def _spawn(self, fn: Callable[..., None], *args: object) -> None:
        try:
            self._executor.submit(fn, *args)
        except RuntimeError:
            # executor already shut down by close()
            fn(*args)

    # -------------------------------------------------------------------------
    # Provisioning
    # -------------------------------------------------------------------------

    def _headroom_locked(self) -> int | float:
        if self.config.max_size is None:
            return float("inf")
        return max(0, self.config.max_size - len(self._entries) - self._reserved)

    def _reserve(self, count: int) -> int:
        with self._lock:
            if self._state in (PoolState.CLOSING, PoolState.CLOSED):
                return 0
            granted = int(min(count, self._headroom_locked()))
            self._reserved += granted
            return granted

    def _provision(
        self,
        count: int,
        *,
        allocate: bool,
        label: str = "",
    ) -> tuple[list[NodeHandle], BaseException | None, int]:
        """Provision up to ``count`` nodes within the headroom.

        Returns:
            (ready nodes, last error, nodes granted by the capacity gate).
        """
        granted = self._reserve(count)
        if granted == 0:
            return [], None, 0

        try:
            result = self._provisioner.create(
                self.group, granted, self.config.backing_template
            )
        except BaseException:
            with self._lock:
                self._reserved -= granted
            raise

        orphans: list[NodeHandle] = []
        with self._lock:
            self._reserved -= granted
            if self._state in (PoolState.CLOSING, PoolState.CLOSED):
                orphans = list(result.handles)
            else:
                for handle in result.handles:
                    self._entries[handle.id] = PoolEntry(handle, EntryState.PROVISIONING, label)

        if orphans:
            log.info("Pool closed during provisioning, destroying {n} new nodes", n=len(orphans))
            for handle in orphans:
                self._destroy_quietly(handle)
            return [], result.error, granted

        ready, failed = self._settle(result.handles, allocate=allocate)
        error = result.error
        if failed and error is None:
            error = PartialProvisioningError(ready, granted)
        self._record_outcome(error)
        return ready, error, granted

    def _settle(
        self, handles: tuple[NodeHandle, ...], *, allocate: bool
    ) -> tuple[list[NodeHandle], list[NodeHandle]]:
        """Wait for PROVISIONING entries to run, then make them IDLE or ALLOCATED."""
        running, failed = self._provisioner.await_running(
            handles,
            timeout=self.config.node_running_timeout,
            interval=self.config.node_running_interval,
        )

        target = EntryState.ALLOCATED if allocate else EntryState.IDLE
        ready: list[NodeHandle] = []
        abandoned: list[NodeHandle] = []
        with self._lock:
            for handle in failed:
                entry = self._entries.pop(handle.id, None)
                if entry is not None:
                    # otherwise close() already destroyed it
                    entry.state = EntryState.DESTROYED
                    abandoned.append(handle)
            for handle in running:
                entry = self._entries.get(handle.id)
                if entry is None or entry.state is not EntryState.PROVISIONING:
                    # taken over by close()
                    continue
                entry.handle = handle
                entry.state = target
                ready.append(handle)

        for handle in abandoned:
            self._destroy_quietly(handle)
        return ready, failed

    def _record_outcome(self, error: BaseException | None) -> None:
        with self._lock:
            if error is None:
                if self._degraded:
                    log.info("Pool {group} recovered", group=self.group)
                self._consecutive_failures = 0
                self._degraded = False
                return
            self._provision_failures += 1
            self._consecutive_failures += 1
            if isinstance(error, AuthorizationError):
                self._degraded = True
            elif self._consecutive_failures >= self.config.max_consecutive_failures:
                if not self._degraded:
                    log.error(
                        "Pool {group} degraded after {n} consecutive provisioning failures",
                        group=self.group, n=self._consecutive_failures,
                    )
                self._degraded = True

    def _destroy_quietly(self, handle: NodeHandle) -> None:
        try:
            self._provisioner.destroy(handle)
        except Exception as exc:
            log.warning("Failed to destroy node {id}: {err}", id=handle.id, err=exc)
            with self._lock:
                self._destroy_failures += 1

    # -------------------------------------------------------------------------
    # Replenishment
    # -------------------------------------------------------------------------

    def _start_replenisher(self) -> None:
        self._replenisher = threading.Thread(
            target=self._replenish_loop,
            name=f"warmpool-{self.group}-replenisher",
            daemon=True,
        )
        self._replenisher.start()

    def _tick(self) -> float:
        interval = self.config.replenish_interval
        if self.config.health_check_interval is not None:
            interval = min(interval, self.config.health_check_interval)
        return interval

    def _replenish_loop(self) -> None:
        while not self._stop.is_set():
            self._wake.wait(self._tick())
            self._wake.clear()
            if self._stop.is_set():
                break
            try:
                if self._sweep_due():
                    self.sweep()
                self.replenish()
            except Exception:
                log.exception("Replenishment round failed for {group}", group=self.group)

    def replenish(self) -> int:
        """Run one replenishment round toward ``min_size``.

        Returns:
            Number of nodes added.
        """
        with self._lock:
            if self._state is not PoolState.RUNNING or self._degraded:
                return 0
            deficit = self.config.min_size - len(self._entries) - self._reserved
        if deficit <= 0:
            return 0

        log.info("Replenishing {group}: {n} nodes below min_size", group=self.group, n=deficit)
        ready, error, _ = self._provision(deficit, allocate=False)
        if error is not None and not self.degraded:
            # try again after a pause, not in a hot loop
            if not self._stop.wait(self.config.replenish_retry_delay):
                self._wake.set()
        return len(ready)

    def clear_degraded(self) -> None:
        """Re-enable replenishment after the pool flagged itself degraded."""
        with self._lock:
            self._degraded = False
            self._consecutive_failures = 0
        self._wake.set()

    def _sweep_due(self) -> bool:
        interval = self.config.health_check_interval
        return interval is not None and time.monotonic() - self._last_sweep >= interval

    def sweep(self) -> list[str]:
        """Drop nodes the backend reports dead or no longer lists.

        Only entries already settled before the listing began are candidates;
        a node that became ready meanwhile can be missing from the listing.

        Returns:
            Ids of the nodes removed.
        """
        self._last_sweep = time.monotonic()
        with self._lock:
            settled = {
                node_id: entry for node_id, entry in self._entries.items()
                if entry.state is not EntryState.PROVISIONING
            }
        try:
            live = {h.id for h in self._provisioner.list_by_group(self.group)}
        except Exception as exc:
            log.warning("Health sweep of {group} failed: {err}", group=self.group, err=exc)
            return []

        dead: list[NodeHandle] = []
        with self._lock:
            for node_id, entry in settled.items():
                if node_id in live or self._entries.get(node_id) is not entry:
                    continue
                entry.state = EntryState.DESTROYED
                del self._entries[node_id]
                dead.append(entry.handle)

        for handle in dead:
            log.warning("Node {id} is gone from the backend, dropping it", id=handle.id)
            self._destroy_quietly(handle)
        if dead:
            self._wake.set()
        return [h.id for h in dead]
