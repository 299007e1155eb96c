"""Backend adapters for warmpool.

Each provider exposes an immutable config dataclass with a ``build()``
method returning a `ComputeBackend`.
"""

from warmpool.providers.aws import AWS
from warmpool.providers.memory import Memory

__all__ = ["AWS", "Memory"]
