"""In-memory backend for local runs and tests."""

from warmpool.providers.memory.backend import InMemoryBackend
from warmpool.providers.memory.config import Memory

__all__ = ["InMemoryBackend", "Memory"]
