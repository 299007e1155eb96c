"""Compute backend capability protocol.

A backend is the slow, fallible thing that actually creates and destroys
machines. The pool only relies on the methods below; adapters live under
`warmpool.providers`.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from warmpool.types import NodeHandle, Template

__all__ = ["ComputeBackend", "SupportsCleanup"]


@runtime_checkable
class ComputeBackend(Protocol):
    """Generic compute-service capability set.

    All methods block on backend I/O and may be called from several threads.

    - create_nodes_in_group: provision ``count`` nodes tagged with ``group``.
      Raises `PartialProvisioningError` carrying the nodes that did come up
      when fewer than ``count`` were created.
    - destroy_node / reboot_node / resume_node / suspend_node: act on one node.
    - list_nodes: nodes bearing ``group``, or all nodes when ``group`` is None.
    - get_node: current view of one node, or None if the backend lost it.
    """

    def create_nodes_in_group(
        self, group: str, count: int, template: Template
    ) -> Sequence[NodeHandle]: ...

    def destroy_node(self, node_id: str) -> None: ...

    def list_nodes(self, group: str | None = None) -> Sequence[NodeHandle]: ...

    def get_node(self, node_id: str) -> NodeHandle | None: ...

    def reboot_node(self, node_id: str) -> None: ...

    def resume_node(self, node_id: str) -> None: ...

    def suspend_node(self, node_id: str) -> None: ...


@runtime_checkable
class SupportsCleanup(Protocol):
    """Backends that leave per-group resources behind (security groups, keys)."""

    def cleanup_incidental_resources(self, group: str) -> None: ...
