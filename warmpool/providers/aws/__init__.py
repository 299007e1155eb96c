"""AWS provider for warmpool."""

from warmpool.providers.aws.backend import EC2Backend
from warmpool.providers.aws.config import AWS

__all__ = ["AWS", "EC2Backend"]
