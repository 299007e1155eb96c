"""warmpool - keep a pool of ready compute nodes in front of a cloud backend.

Example:

    from warmpool import PoolConfig, PooledComputeService
    from warmpool.providers import AWS

    service = PooledComputeService(
        AWS(region="us-east-1").build(),
        PoolConfig(backing_group="ci", min_size=5, max_size=10),
    )

    with service:
        nodes = service.create_nodes_in_group("build-42", 3)
        ...
        service.destroy_nodes([n.id for n in nodes])
"""

from loguru import logger

# Backend contract
from warmpool.backend import ComputeBackend, SupportsCleanup

# Caching and polling primitives
from warmpool.cache import (
    ResultCache,
    SharedErrorSlot,
    first_failure_broadcast,
    retry_on_timeout,
)
from warmpool.predicates import RetryablePredicate, await_true

# Configuration
from warmpool.config import PoolConfig, build_backend, load_config, resolve_pool_config

# Errors
from warmpool.exceptions import (
    AuthorizationError,
    BackendTimeoutError,
    NodeNotAllocatedError,
    PartialProvisioningError,
    PoolStateError,
    RunNodesError,
    WarmPoolError,
)

# Pool
from warmpool.manager import PoolManager
from warmpool.provisioner import BackendProvisioner, ProvisionResult
from warmpool.service import PooledComputeService

# Logging
from warmpool.observability import LogConfig

# Types
from warmpool.types import (
    AcquireResult,
    CloseReport,
    NodeHandle,
    NodeStatus,
    PoolState,
    PoolStats,
    RegionAndName,
    Template,
)

logger.disable("warmpool")

__all__ = [
    "AcquireResult",
    "AuthorizationError",
    "BackendProvisioner",
    "BackendTimeoutError",
    "CloseReport",
    "ComputeBackend",
    "LogConfig",
    "NodeHandle",
    "NodeNotAllocatedError",
    "NodeStatus",
    "PartialProvisioningError",
    "PoolConfig",
    "PoolManager",
    "PoolState",
    "PoolStateError",
    "PoolStats",
    "PooledComputeService",
    "ProvisionResult",
    "RegionAndName",
    "ResultCache",
    "RetryablePredicate",
    "RunNodesError",
    "SharedErrorSlot",
    "SupportsCleanup",
    "Template",
    "WarmPoolError",
    "await_true",
    "build_backend",
    "first_failure_broadcast",
    "load_config",
    "resolve_pool_config",
    "retry_on_timeout",
]
