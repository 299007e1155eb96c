"""Pool configuration and TOML/environment loading.

Loads ~/.warmpool/defaults.toml (global) and warmpool.toml (project),
merges them, applies WARMPOOL_* environment overrides and resolves the
result into a `PoolConfig` and a backend.

Example warmpool.toml::

    [pool]
    backing_group = "ci-runners"
    min_size = 5
    max_size = 10
    remove_destroyed = false

    [pool.template]
    hardware = "t3.micro"

    [provider]
    type = "aws"
    region = "us-east-1"
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TYPE_CHECKING, Any

from warmpool.types import Template

if TYPE_CHECKING:
    from warmpool.backend import ComputeBackend

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".warmpool" / "defaults.toml"
PROJECT_CONFIG_NAME = "warmpool.toml"
ENV_PREFIX = "WARMPOOL_"

DEFAULT_MIN_SIZE = 5
DEFAULT_MAX_SIZE = 10


@dataclass(frozen=True, slots=True)
class PoolConfig:
    """Immutable pool configuration.

    Args:
        backing_group: Group tag identifying this pool's nodes in the backend.
            Nodes already bearing it are adopted on start.
        min_size: Nodes kept provisioned (idle + used) by replenishment.
        max_size: Hard cap on tracked nodes. None means unbounded.
        remove_destroyed: Destroy released nodes instead of returning them
            to the idle set.
        backing_template: What to provision.
        provision_threads: Worker threads for backend I/O.
        replenish_interval: Seconds between periodic replenishment checks.
        replenish_retry_delay: Pause after a failed replenishment round.
        max_consecutive_failures: Failed rounds before the pool is degraded.
        node_running_timeout: Max seconds to wait for a new node to run.
        node_running_interval: Poll interval while waiting for a node.
        close_timeout: Upper bound on destroying nodes during close.
        health_check_interval: Seconds between backend sweeps for dead nodes.
            None disables sweeping.
        reset_on_release: Reboot nodes before returning them to the idle set.
        cleanup_on_close: Remove the group's incidental backend resources
            (security groups, keypairs) after close.
    """

    backing_group: str = "pool"
    min_size: int = DEFAULT_MIN_SIZE
    max_size: int | None = DEFAULT_MAX_SIZE
    remove_destroyed: bool = False
    backing_template: Template = field(default_factory=Template)

    provision_threads: int = 8
    replenish_interval: float = 30.0
    replenish_retry_delay: float = 5.0
    max_consecutive_failures: int = 5
    node_running_timeout: float = 600.0
    node_running_interval: float = 5.0
    close_timeout: float = 300.0
    health_check_interval: float | None = None
    reset_on_release: bool = False
    cleanup_on_close: bool = False

    def __post_init__(self) -> None:
        if not self.backing_group:
            raise ValueError("backing_group must not be empty")
        if self.min_size < 0:
            raise ValueError(f"min_size must be >= 0, got {self.min_size}")
        if self.max_size is not None and self.max_size < self.min_size:
            raise ValueError(
                f"max_size ({self.max_size}) must be >= min_size ({self.min_size})"
            )
        if self.provision_threads < 1:
            raise ValueError("provision_threads must be >= 1")
        if self.max_consecutive_failures < 1:
            raise ValueError("max_consecutive_failures must be >= 1")

    @property
    def bounded(self) -> bool:
        return self.max_size is not None


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    with path.open("rb") as f:
        return tomllib.load(f)


def _parse_bool(name: str, raw: str) -> bool:
    match raw.strip().lower():
        case "1" | "true" | "yes" | "on":
            return True
        case "0" | "false" | "no" | "off":
            return False
        case _:
            raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _parse_max_size(raw: str) -> int | None:
    if raw.strip().lower() in ("", "none", "unbounded"):
        return None
    return int(raw)


_ENV_OVERRIDES = {
    "BACKING_GROUP": ("backing_group", lambda _n, v: v),
    "MIN_SIZE": ("min_size", lambda _n, v: int(v)),
    "MAX_SIZE": ("max_size", lambda _n, v: _parse_max_size(v)),
    "REMOVE_DESTROYED": ("remove_destroyed", _parse_bool),
}


def _env_overrides(environ: Mapping[str, str]) -> RawConfig:
    overrides: RawConfig = {}
    for suffix, (key, parse) in _ENV_OVERRIDES.items():
        name = ENV_PREFIX + suffix
        if name in environ:
            overrides[key] = parse(name, environ[name])
    return overrides


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("pool", {})
    merged.setdefault("provider", {})
    env = _env_overrides(os.environ if environ is None else environ)
    merged["pool"] = _deep_merge(merged["pool"], env)
    return merged


def _build_template(raw: RawConfig) -> Template:
    raw = dict(raw)
    for key in ("security_groups", "inbound_ports"):
        if key in raw:
            raw[key] = tuple(raw[key])
    return Template(**raw)


_POOL_FIELDS = frozenset(f.name for f in fields(PoolConfig))


def build_pool_config(raw_pool: RawConfig) -> PoolConfig:
    raw_pool = dict(raw_pool)
    raw_template = raw_pool.pop("template", None)
    unknown = set(raw_pool) - _POOL_FIELDS
    if unknown:
        raise ValueError(f"Unknown pool settings: {', '.join(sorted(unknown))}")
    if raw_template:
        raw_pool["backing_template"] = _build_template(raw_template)
    return PoolConfig(**raw_pool)


def _get_backend_map() -> dict[str, type]:
    from warmpool.providers.aws.config import AWS
    from warmpool.providers.memory.config import Memory

    return {
        "aws": AWS,
        "memory": Memory,
    }


def build_backend(raw: RawConfig) -> ComputeBackend:
    """Build the backend adapter named by the ``type`` field of ``raw``."""
    raw = dict(raw)
    backend_type = raw.pop("type", None)
    if backend_type is None:
        raise ValueError("Provider config missing 'type' field")

    backend_map = _get_backend_map()
    cls = backend_map.get(backend_type)
    if cls is None:
        raise ValueError(
            f"Unknown provider type '{backend_type}'. "
            f"Valid: {', '.join(backend_map)}"
        )
    return cls(**raw).build()


def resolve_pool_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> tuple[PoolConfig, RawConfig]:
    """Load configuration and return the pool config plus the raw provider table."""
    config = load_config(project_dir=project_dir, global_path=global_path, environ=environ)
    return build_pool_config(config["pool"]), config["provider"]
