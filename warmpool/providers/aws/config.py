"""AWS provider configuration.

Immutable configuration dataclass for the EC2 backend.
"""

from __future__ import annotations

import typing
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from warmpool.types import NodeStatus

if typing.TYPE_CHECKING:
    from warmpool.providers.aws.backend import EC2Backend

# Amazon Linux 2023, resolved through SSM Parameter Store when no AMI is given
AL2023_SSM = "/aws/service/ami-amazon-linux-latest/al2023-ami-kernel-6.1-x86_64"

DEFAULT_STATE_MAP: Mapping[str, NodeStatus] = MappingProxyType({
    "pending": NodeStatus.PENDING,
    "running": NodeStatus.RUNNING,
    "shutting-down": NodeStatus.PENDING,
    "stopping": NodeStatus.PENDING,
    "stopped": NodeStatus.SUSPENDED,
    "terminated": NodeStatus.TERMINATED,
})


@dataclass(frozen=True, slots=True)
class AWS:
    """AWS provider configuration.

    Example:
        >>> from warmpool.providers.aws import AWS
        >>> backend = AWS(region="us-west-2", instance_type="t3.small").build()

    Args:
        region: Region nodes are created in. Default: us-east-1
        regions: Extra regions searched when listing nodes.
        instance_type: Default machine type when the template has none.
        ami: AMI id. If None, resolved from ``ami_parameter``.
        ami_parameter: SSM parameter holding the default AMI id.
        subnet_id: Subnet to launch into. None uses the default VPC.
        vpc_id: VPC for generated security groups. None uses the default VPC.
        profile: Named AWS profile. None uses the default credential chain.
        endpoints: Region to endpoint URL overrides (e.g. for LocalStack).
        prefix: Prefix for generated security groups and keypairs.
        state_map: EC2 instance state name to portable status.
        load_attempts: Attempts for resource loads that time out.
        consistency_timeout: Max seconds to wait for a new resource to show up.
        consistency_interval: Poll interval while waiting.
    """

    region: str = "us-east-1"
    regions: tuple[str, ...] = ()
    instance_type: str = "t3.micro"
    ami: str | None = None
    ami_parameter: str = AL2023_SSM
    subnet_id: str | None = None
    vpc_id: str | None = None
    profile: str | None = None
    endpoints: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}), hash=False)
    prefix: str = "warmpool"
    state_map: Mapping[str, NodeStatus] = field(default=DEFAULT_STATE_MAP, hash=False)
    load_attempts: int = 3
    consistency_timeout: float = 30.0
    consistency_interval: float = 1.0

    @property
    def type(self) -> str: return "aws"

    def build(self) -> EC2Backend:
        from warmpool.providers.aws.backend import EC2Backend
        return EC2Backend(self)
