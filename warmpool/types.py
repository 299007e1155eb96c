"""Domain types shared by the pool, the cache and the backends."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType

__all__ = [
    "NodeStatus",
    "NodeHandle",
    "Template",
    "EntryState",
    "PoolEntry",
    "PoolState",
    "PoolStats",
    "RegionAndName",
    "AcquireResult",
    "CloseReport",
]


class NodeStatus(StrEnum):
    """Portable node status reported by a backend adapter."""

    PENDING = "pending"
    RUNNING = "running"
    SUSPENDED = "suspended"
    TERMINATED = "terminated"
    ERROR = "error"
    UNRECOGNIZED = "unrecognized"

    @property
    def is_dead(self) -> bool:
        return self in (NodeStatus.TERMINATED, NodeStatus.ERROR)


@dataclass(frozen=True, slots=True)
class NodeHandle:
    """A node as seen by the backend.

    Args:
        id: Backend-assigned identifier.
        group: Group tag the node was created with.
        status: Last known status.
        region: Region the node lives in, if the backend is region-scoped.
        private_ip: Private address, if known.
        public_ip: Public address, if known.
        tags: Backend tags, read-only.
    """

    id: str
    group: str
    status: NodeStatus = NodeStatus.RUNNING
    region: str = ""
    private_ip: str | None = None
    public_ip: str | None = None
    tags: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}), hash=False)


@dataclass(frozen=True, slots=True)
class Template:
    """What to provision. Backends read the fields they understand.

    Args:
        image: Image id, or None to let the backend resolve its default.
        hardware: Machine type (e.g. "t3.micro").
        region: Region override, or None for the backend's region.
        security_groups: Existing security group ids. Empty means the backend
            creates a group for the node group.
        key_name: Existing keypair. None means the backend generates one.
        inbound_ports: Ports opened on a generated security group.
        user_data: Boot script passed to the node.
        elastic_ip: Attach a static public address to each node.
        tags: Extra tags applied to each node.
    """

    image: str | None = None
    hardware: str | None = None
    region: str | None = None
    security_groups: tuple[str, ...] = ()
    key_name: str | None = None
    inbound_ports: tuple[int, ...] = (22,)
    user_data: str | None = None
    elastic_ip: bool = False
    tags: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}), hash=False)


class EntryState(StrEnum):
    """Pool-local state of one node."""

    PROVISIONING = "provisioning"
    IDLE = "idle"
    ALLOCATED = "allocated"
    RETURNING = "returning"
    DESTROYED = "destroyed"


@dataclass(slots=True)
class PoolEntry:
    """One node tracked by the pool manager. Mutated only under its lock."""

    handle: NodeHandle
    state: EntryState
    label: str = ""

    @property
    def id(self) -> str:
        return self.handle.id


class PoolState(StrEnum):
    UNSTARTED = "unstarted"
    STARTING = "starting"
    RUNNING = "running"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class PoolStats:
    """Point-in-time view of the pool. Recomputed on every call."""

    idle_nodes: int
    used_nodes: int
    max_nodes: int | None
    min_nodes: int
    provisioning_nodes: int = 0
    degraded: bool = False
    consecutive_failures: int = 0
    provision_failures: int = 0
    destroy_failures: int = 0

    @property
    def current_size(self) -> int:
        return self.idle_nodes + self.used_nodes


@dataclass(frozen=True, slots=True)
class RegionAndName:
    """Composite cache key for region-scoped resources."""

    region: str
    name: str

    def slash_encode(self) -> str:
        return f"{self.region}/{self.name}"

    @classmethod
    def from_slash_encoded(cls, encoded: str) -> RegionAndName:
        region, sep, name = encoded.partition("/")
        if not sep or not region or not name:
            raise ValueError(f"Expected 'region/name', got {encoded!r}")
        return cls(region, name)

    def __str__(self) -> str:
        return self.slash_encode()


@dataclass(frozen=True, slots=True)
class AcquireResult:
    """Outcome of `PoolManager.acquire`.

    `capacity_exceeded` is set when the pool hit `max_size` before the request
    could be filled; `error` carries the last provisioning failure, if any.
    """

    handles: tuple[NodeHandle, ...]
    requested: int
    capacity_exceeded: bool = False
    error: BaseException | None = None

    @property
    def complete(self) -> bool:
        return len(self.handles) == self.requested

    def __len__(self) -> int:
        return len(self.handles)


@dataclass(frozen=True, slots=True)
class CloseReport:
    """What happened to the tracked nodes during `close()`."""

    destroyed: tuple[str, ...] = ()
    failed: Mapping[str, BaseException] = field(default_factory=lambda: MappingProxyType({}))
    timed_out: tuple[str, ...] = ()

    @property
    def clean(self) -> bool:
        return not self.failed and not self.timed_out
