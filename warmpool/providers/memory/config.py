"""In-memory provider configuration."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from warmpool.providers.memory.backend import InMemoryBackend


@dataclass(frozen=True, slots=True)
class Memory:
    """Simulated backend that keeps nodes in a dict.

    Args:
        region: Region reported on every node.
        create_delay: Seconds each create call blocks, to mimic API latency.
        boot_delay: Seconds a new node stays PENDING before it runs.
        capacity: Max live nodes the backend will hold. None is unlimited.
    """

    region: str = "local"
    create_delay: float = 0.0
    boot_delay: float = 0.0
    capacity: int | None = None

    @property
    def type(self) -> str: return "memory"

    def build(self) -> InMemoryBackend:
        from warmpool.providers.memory.backend import InMemoryBackend
        return InMemoryBackend(self)
