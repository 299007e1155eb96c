"""Thin adapter between the pool manager and a compute backend.

Holds no pool state. Every call blocks on backend I/O.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from warmpool.backend import ComputeBackend, SupportsCleanup
from warmpool.exceptions import PartialProvisioningError
from warmpool.predicates import RetryablePredicate
from warmpool.types import NodeHandle, NodeStatus, Template

log = logger.bind(component="provisioner")


@dataclass(frozen=True, slots=True)
class ProvisionResult:
    """Nodes that came up, plus the error that stopped the rest, if any."""

    handles: tuple[NodeHandle, ...]
    requested: int
    error: BaseException | None = None

    @property
    def shortfall(self) -> int:
        return max(0, self.requested - len(self.handles))


class BackendProvisioner:
    def __init__(self, backend: ComputeBackend) -> None:
        self.backend = backend

    def create(self, group: str, count: int, template: Template) -> ProvisionResult:
        """Provision ``count`` nodes, returning whatever subset succeeded.

        Never raises for backend failures: the error is carried in the result
        so the caller can account for partial capacity. Nodes that come back
        already dead are destroyed and left out.
        """
        if count <= 0:
            return ProvisionResult(handles=(), requested=0)

        log.debug("Creating {n} nodes in group {group}", n=count, group=group)
        error: BaseException | None = None
        try:
            created = tuple(self.backend.create_nodes_in_group(group, count, template))
        except PartialProvisioningError as exc:
            created = exc.nodes
            error = exc.cause if exc.cause is not None else exc
        except Exception as exc:
            created = ()
            error = exc

        usable = tuple(h for h in created if not h.status.is_dead)
        for dead in (h for h in created if h.status.is_dead):
            log.warning("Node {id} came up {status}, discarding", id=dead.id, status=dead.status)
            self._destroy_quietly(dead)

        if len(usable) > count:
            for extra in usable[count:]:
                log.warning("Backend returned extra node {id}, discarding", id=extra.id)
                self._destroy_quietly(extra)
            usable = usable[:count]

        if error is None and len(usable) < count:
            error = PartialProvisioningError(usable, count)

        if error is not None:
            log.warning(
                "Provisioned {got}/{n} nodes in group {group}: {err}",
                got=len(usable), n=count, group=group, err=error,
            )
        else:
            log.info("Provisioned {n} nodes in group {group}", n=count, group=group)
        return ProvisionResult(handles=usable, requested=count, error=error)

    def destroy(self, handle: NodeHandle) -> None:
        """Destroy one node. Raises whatever the backend raises."""
        log.debug("Destroying node {id}", id=handle.id)
        self.backend.destroy_node(handle.id)

    def reset(self, handle: NodeHandle) -> None:
        """Reboot a node so it can be handed to the next caller clean."""
        log.debug("Resetting node {id}", id=handle.id)
        self.backend.reboot_node(handle.id)

    def list_by_group(self, group: str) -> list[NodeHandle]:
        """Live nodes bearing ``group``."""
        return [h for h in self.backend.list_nodes(group) if not h.status.is_dead]

    def refresh(self, handle: NodeHandle) -> NodeHandle | None:
        return self.backend.get_node(handle.id)

    def await_running(
        self,
        handles: tuple[NodeHandle, ...],
        *,
        timeout: float,
        interval: float,
    ) -> tuple[list[NodeHandle], list[NodeHandle]]:
        """Wait for each node to report RUNNING.

        Returns:
            (running, failed). Failed nodes either timed out or reached a
            dead status; the caller owns destroying them.
        """
        running = [h for h in handles if h.status is NodeStatus.RUNNING]
        failed: list[NodeHandle] = []
        pending = {h.id: h for h in handles if h.status is not NodeStatus.RUNNING}
        if not pending:
            return running, failed

        def all_running(batch: dict[str, NodeHandle]) -> bool:
            for node_id, handle in list(batch.items()):
                try:
                    current = self.backend.get_node(node_id)
                except TimeoutError:
                    continue
                if current is None:
                    continue
                if current.status.is_dead:
                    log.warning("Node {id} died while booting ({status})", id=node_id, status=current.status)
                    failed.append(current)
                    del batch[node_id]
                elif current.status is NodeStatus.RUNNING:
                    running.append(current)
                    del batch[node_id]
                else:
                    batch[node_id] = current
            return not batch

        nodes_running = RetryablePredicate(all_running, timeout=timeout, interval=interval)
        try:
            nodes_running(pending)
        except Exception as exc:
            log.warning("Could not poll booting nodes: {err}", err=exc)

        for handle in pending.values():
            log.warning("Node {id} not running after {t}s", id=handle.id, t=timeout)
            failed.append(handle)
        return running, failed

    def cleanup_group(self, group: str) -> None:
        if isinstance(self.backend, SupportsCleanup):
            self.backend.cleanup_incidental_resources(group)

    def _destroy_quietly(self, handle: NodeHandle) -> None:
        try:
            self.destroy(handle)
        except Exception as exc:
            log.warning("Failed to destroy node {id}: {err}", id=handle.id, err=exc)

