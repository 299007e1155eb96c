"""PooledComputeService - a compute service backed by a warm pool.

Example:
    from warmpool import PoolConfig, PooledComputeService
    from warmpool.providers.aws import AWS

    service = PooledComputeService(
        AWS(region="us-east-1").build(),
        PoolConfig(backing_group="ci", min_size=5, max_size=10),
    )

    with service:
        nodes = service.create_nodes_in_group("build-42", 3)
        ...
        for node in nodes:
            service.destroy_node(node.id)
"""

from __future__ import annotations

from collections.abc import Sequence
from concurrent.futures import Future
from dataclasses import replace
from types import TracebackType

from loguru import logger

from warmpool.backend import ComputeBackend
from warmpool.config import PoolConfig
from warmpool.exceptions import NodeNotAllocatedError, RunNodesError
from warmpool.manager import PoolManager
from warmpool.observability.logging import LogConfig, setup_logging, teardown_logging
from warmpool.provisioner import BackendProvisioner
from warmpool.types import CloseReport, NodeHandle, PoolStats, Template

log = logger.bind(component="service")


class PooledComputeService:
    """Generic compute-service contract, served from a warm pool.

    ``create_nodes_in_group`` hands out pool nodes relabelled with the
    requested group and ``destroy_node`` gives them back (returned to the
    idle set or destroyed, per ``remove_destroyed``). ``destroy_node`` on an
    idle pool node destroys it outright. Node operations that are
    not pool-specific go straight to the backend.

    Args:
        backend: Backend adapter, e.g. ``AWS(...).build()``.
        config: Pool configuration.
        logging: True for default `LogConfig`, or a `LogConfig`. Logging is
            enabled from `start_pool` until `close`.
    """

    def __init__(
        self,
        backend: ComputeBackend,
        config: PoolConfig | None = None,
        *,
        logging: LogConfig | bool = False,
    ) -> None:
        self.backend = backend
        self.config = config or PoolConfig()
        self.pool = PoolManager(BackendProvisioner(backend), self.config)
        match logging:
            case LogConfig():
                self._log_config: LogConfig | None = logging
            case True:
                self._log_config = LogConfig()
            case _:
                self._log_config = None
        self._log_handlers: list[int] | None = None

    # -------------------------------------------------------------------------
    # Pool surface
    # -------------------------------------------------------------------------

    def start_pool(self) -> Future[None]:
        """Start filling the pool. Abandoning the future does not stop it."""
        if self._log_config is not None and self._log_handlers is None:
            self._log_handlers = setup_logging(self._log_config)
        return self.pool.start()

    def is_started(self) -> bool:
        return self.pool.is_started()

    def ready(self) -> int:
        return self.pool.ready()

    def size(self) -> int:
        return self.pool.size()

    def max_size(self) -> int | None:
        return self.pool.max_size

    def stats(self) -> PoolStats:
        return self.pool.stats()

    def close(self, timeout: float | None = None) -> CloseReport:
        try:
            return self.pool.close(timeout)
        finally:
            if self._log_handlers is not None:
                teardown_logging(self._log_handlers)
                self._log_handlers = None

    def __enter__(self) -> PooledComputeService:
        self.start_pool().result()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Compute-service contract
    # -------------------------------------------------------------------------

    def create_nodes_in_group(
        self,
        group: str,
        count: int,
        template: Template | None = None,
    ) -> list[NodeHandle]:
        """Hand out ``count`` pool nodes labelled with ``group``.

        The pool provisions from its own backing template; a ``template``
        argument that differs from it is ignored with a warning.

        Raises:
            RunNodesError: Fewer than ``count`` nodes were available. The
                nodes that were obtained stay allocated and are carried in
                the error.
        """
        if template is not None and template != self.config.backing_template:
            log.warning("Ignoring template for group {group}: pool nodes use the backing template", group=group)

        result = self.pool.acquire(count, label=group)
        nodes = [replace(h, group=group) for h in result.handles]
        if not result.complete:
            raise RunNodesError(nodes, count, result.error)
        return nodes

    def destroy_node(self, node_id: str) -> None:
        """Give a pool node back, or destroy a foreign node on the backend.

        An allocated node is released to the pool. An idle pool node is
        removed and destroyed, and replenishment replaces it.

        Raises:
            NodeNotAllocatedError: The node is a pool node still provisioning.
        """
        if not self.pool.owns(node_id):
            self.backend.destroy_node(node_id)
            return
        try:
            self.pool.release(node_id)
        except NodeNotAllocatedError:
            self.pool.destroy(node_id)

    def destroy_nodes(self, node_ids: Sequence[str]) -> None:
        for node_id in node_ids:
            self.destroy_node(node_id)

    def list_nodes(self) -> list[NodeHandle]:
        """Nodes currently handed out by the pool."""
        return self.pool.allocated()

    def get_node(self, node_id: str) -> NodeHandle | None:
        for node in self.pool.allocated():
            if node.id == node_id:
                return node
        return self.backend.get_node(node_id)

    def reboot_node(self, node_id: str) -> None:
        self.backend.reboot_node(node_id)

    def resume_node(self, node_id: str) -> None:
        self.backend.resume_node(node_id)

    def suspend_node(self, node_id: str) -> None:
        self.backend.suspend_node(node_id)
