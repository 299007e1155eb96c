"""Thread-safe simulated compute backend.

Behaves like a slow, fallible cloud: creates take time, nodes boot, the
backend can run out of capacity, and failures can be scripted per operation::

    backend = Memory(capacity=3).build()
    backend.fail_next("create", BackendTimeoutError("slow"), times=2)
"""

from __future__ import annotations

import itertools
import threading
import time
from collections import Counter, deque
from collections.abc import Sequence
from dataclasses import replace
from types import MappingProxyType
from typing import Literal

from loguru import logger

from warmpool.exceptions import PartialProvisioningError
from warmpool.providers.memory.config import Memory
from warmpool.types import NodeHandle, NodeStatus, Template

log = logger.bind(provider="memory")

type Operation = Literal["create", "destroy", "list", "get", "reboot", "resume", "suspend"]


class InMemoryBackend:
    def __init__(self, config: Memory | None = None) -> None:
        self.config = config or Memory()
        self._lock = threading.Lock()
        self._nodes: dict[str, NodeHandle] = {}
        self._boot_deadlines: dict[str, float] = {}
        self._ids = itertools.count(1)
        self._failures: dict[str, deque[BaseException]] = {}
        self.calls: Counter[str] = Counter()
        self.created: list[str] = []
        self.destroyed: list[str] = []
        self.cleaned_groups: list[str] = []

    # -------------------------------------------------------------------------
    # Scripting
    # -------------------------------------------------------------------------

    def fail_next(self, operation: Operation, error: BaseException, *, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        with self._lock:
            queue = self._failures.setdefault(operation, deque())
            queue.extend([error] * times)

    def set_status(self, node_id: str, status: NodeStatus) -> None:
        """Change a node's status behind the pool's back."""
        with self._lock:
            self._nodes[node_id] = replace(self._nodes[node_id], status=status)
            self._boot_deadlines.pop(node_id, None)

    def seed(self, group: str, count: int, status: NodeStatus = NodeStatus.RUNNING) -> list[NodeHandle]:
        """Create nodes directly, as if left over from an earlier process."""
        with self._lock:
            return [self._new_node(group, Template(), status) for _ in range(count)]

    def live_nodes(self) -> list[NodeHandle]:
        with self._lock:
            return [h for h in self._nodes.values() if not h.status.is_dead]

    def _check(self, operation: Operation) -> None:
        with self._lock:
            self.calls[operation] += 1
            queue = self._failures.get(operation)
            error = queue.popleft() if queue else None
        if error is not None:
            raise error

    # -------------------------------------------------------------------------
    # ComputeBackend
    # -------------------------------------------------------------------------

    def create_nodes_in_group(
        self, group: str, count: int, template: Template
    ) -> Sequence[NodeHandle]:
        self._check("create")
        if self.config.create_delay:
            time.sleep(self.config.create_delay)

        status = NodeStatus.PENDING if self.config.boot_delay else NodeStatus.RUNNING
        with self._lock:
            available = count
            if self.config.capacity is not None:
                live = sum(1 for h in self._nodes.values() if not h.status.is_dead)
                available = max(0, min(count, self.config.capacity - live))
            nodes = [self._new_node(group, template, status) for _ in range(available)]

        log.debug("Created {n}/{want} nodes in {group}", n=len(nodes), want=count, group=group)
        if len(nodes) < count:
            raise PartialProvisioningError(nodes, count)
        return nodes

    def _new_node(self, group: str, template: Template, status: NodeStatus) -> NodeHandle:
        node_id = f"node-{next(self._ids):04d}"
        handle = NodeHandle(
            id=node_id,
            group=group,
            status=status,
            region=template.region or self.config.region,
            private_ip=f"10.0.{len(self._nodes) // 250}.{len(self._nodes) % 250 + 2}",
            tags=MappingProxyType({"group": group, **template.tags}),
        )
        self._nodes[node_id] = handle
        if status is NodeStatus.PENDING:
            self._boot_deadlines[node_id] = time.monotonic() + self.config.boot_delay
        self.created.append(node_id)
        return handle

    def _refresh(self, node_id: str) -> NodeHandle | None:
        handle = self._nodes.get(node_id)
        deadline = self._boot_deadlines.get(node_id)
        if handle is not None and deadline is not None and time.monotonic() >= deadline:
            handle = replace(handle, status=NodeStatus.RUNNING)
            self._nodes[node_id] = handle
            del self._boot_deadlines[node_id]
        return handle

    def destroy_node(self, node_id: str) -> None:
        self._check("destroy")
        with self._lock:
            handle = self._nodes.get(node_id)
            if handle is None or handle.status is NodeStatus.TERMINATED:
                return
            self._nodes[node_id] = replace(handle, status=NodeStatus.TERMINATED)
            self._boot_deadlines.pop(node_id, None)
            self.destroyed.append(node_id)

    def list_nodes(self, group: str | None = None) -> Sequence[NodeHandle]:
        self._check("list")
        with self._lock:
            handles = [self._refresh(node_id) for node_id in list(self._nodes)]
            return [
                h for h in handles
                if h is not None and h.status is not NodeStatus.TERMINATED
                and (group is None or h.group == group)
            ]

    def get_node(self, node_id: str) -> NodeHandle | None:
        self._check("get")
        with self._lock:
            return self._refresh(node_id)

    def reboot_node(self, node_id: str) -> None:
        self._check("reboot")
        self._require(node_id)

    def resume_node(self, node_id: str) -> None:
        self._check("resume")
        self._transition(node_id, NodeStatus.SUSPENDED, NodeStatus.RUNNING)

    def suspend_node(self, node_id: str) -> None:
        self._check("suspend")
        self._transition(node_id, NodeStatus.RUNNING, NodeStatus.SUSPENDED)

    def cleanup_incidental_resources(self, group: str) -> None:
        with self._lock:
            self.cleaned_groups.append(group)

    def _require(self, node_id: str) -> NodeHandle:
        with self._lock:
            handle = self._nodes.get(node_id)
        if handle is None or handle.status.is_dead:
            raise KeyError(f"Node {node_id} not found")
        return handle

    def _transition(self, node_id: str, source: NodeStatus, target: NodeStatus) -> None:
        with self._lock:
            handle = self._nodes.get(node_id)
            if handle is None or handle.status.is_dead:
                raise KeyError(f"Node {node_id} not found")
            if handle.status is not source:
                raise ValueError(f"Node {node_id} is {handle.status}, expected {source}")
            self._nodes[node_id] = replace(handle, status=target)
