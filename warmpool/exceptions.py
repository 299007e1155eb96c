"""Error taxonomy for warmpool.

Failures fall into a few classes that are handled differently:

- transient timeouts (`BackendTimeoutError`, any `TimeoutError`) are retried
  under a bounded policy;
- authorization failures (`AuthorizationError`) are terminal and are
  broadcast to every caller sharing the same credentials;
- partial provisioning (`PartialProvisioningError`) is recovered locally by
  the pool and only surfaces through stats;
- capacity shortfalls are reported through `AcquireResult.capacity_exceeded`
  rather than raised.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from warmpool.types import NodeHandle

__all__ = [
    "WarmPoolError",
    "BackendTimeoutError",
    "AuthorizationError",
    "PartialProvisioningError",
    "RunNodesError",
    "PoolStateError",
    "NodeNotAllocatedError",
    "is_timeout_error",
    "is_authorization_error",
]


class WarmPoolError(Exception):
    """Base class for warmpool errors."""


class BackendTimeoutError(WarmPoolError, TimeoutError):
    """Backend call timed out or was throttled. Safe to retry."""


class AuthorizationError(WarmPoolError):
    """Backend rejected the credentials. Never retried."""


class PartialProvisioningError(WarmPoolError):
    """Backend provisioned fewer nodes than requested."""

    def __init__(
        self,
        nodes: Sequence[NodeHandle],
        requested: int,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(f"Provisioned {len(nodes)}/{requested} nodes")
        self.nodes = tuple(nodes)
        self.requested = requested
        self.cause = cause


class RunNodesError(WarmPoolError):
    """Raised by the compute-service facade when a create call comes up short."""

    def __init__(
        self,
        nodes: Sequence[NodeHandle],
        requested: int,
        cause: BaseException | None = None,
    ) -> None:
        reason = f": {cause}" if cause is not None else ""
        super().__init__(f"Got {len(nodes)} of {requested} nodes{reason}")
        self.nodes = tuple(nodes)
        self.requested = requested
        self.cause = cause


class PoolStateError(WarmPoolError):
    """Operation is not valid in the pool's current state."""


class NodeNotAllocatedError(WarmPoolError, KeyError):
    """Node is not tracked by the pool or is not currently allocated."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


def is_timeout_error(exc: BaseException) -> bool:
    """Check if an exception is a retriable timeout."""
    return isinstance(exc, TimeoutError)


def is_authorization_error(exc: BaseException) -> bool:
    """Check if an exception means the credentials are bad."""
    return isinstance(exc, AuthorizationError)
