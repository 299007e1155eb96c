"""Region-scoped EC2 resources shared by every node of a group.

Security groups, keypairs, elastic IPs and default images are each loaded
once per key and reused. All caches share one error slot: once a load is
rejected for bad credentials, every further load fails fast with that error.
"""

from __future__ import annotations

import secrets
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import boto3
from botocore.exceptions import ClientError
from loguru import logger

from warmpool.cache import ResultCache, SharedErrorSlot, first_failure_broadcast, retry_on_timeout
from warmpool.exceptions import BackendTimeoutError
from warmpool.predicates import await_true
from warmpool.providers.aws.errors import error_code, translate_errors
from warmpool.types import RegionAndName

if TYPE_CHECKING:
    from warmpool.providers.aws.config import AWS

log = logger.bind(provider="aws")

type ClientFactory = Callable[[str, str], Any]

MANAGED_TAG = "warmpool:managed"


@dataclass(frozen=True, slots=True)
class RegionNameAndPorts(RegionAndName):
    """Security group key: the group's ingress ports are part of its identity."""

    ports: tuple[int, ...] = ()


@dataclass(frozen=True, slots=True)
class KeyPair:
    name: str
    fingerprint: str
    material: str | None = field(default=None, repr=False)


@dataclass(frozen=True, slots=True)
class ElasticIp:
    allocation_id: str
    public_ip: str


def session_client_factory(config: AWS) -> ClientFactory:
    """Build boto3 clients from one session, one client per (service, region)."""
    session = boto3.Session(profile_name=config.profile) if config.profile else boto3.Session()
    lock = threading.Lock()

    def create(key: RegionAndName) -> Any:
        endpoint = config.endpoints.get(key.region)
        # boto3 sessions are not thread-safe, clients are
        with lock:
            return session.client(key.name, region_name=key.region, endpoint_url=endpoint)

    clients: ResultCache[RegionAndName, Any] = ResultCache(create, name="clients")
    return lambda service, region: clients.get(RegionAndName(region, service))


class RegionResources:
    """Caches of incidental resources, keyed by region and name.

    Args:
        config: AWS provider configuration.
        clients: ``(service, region) -> boto3 client`` factory.
    """

    def __init__(self, config: AWS, clients: ClientFactory) -> None:
        self.config = config
        self._clients = clients
        self.errors = SharedErrorSlot()

        def wrap(loader):
            return first_failure_broadcast(retry_on_timeout(loader, config.load_attempts), self.errors)

        self.security_groups: ResultCache[RegionNameAndPorts, str] = ResultCache(
            wrap(self._load_security_group), name="security-groups"
        )
        self.key_pairs: ResultCache[RegionAndName, KeyPair] = ResultCache(
            wrap(self._load_key_pair), name="key-pairs"
        )
        self.elastic_ips: ResultCache[RegionAndName, ElasticIp] = ResultCache(
            wrap(self._load_elastic_ip), name="elastic-ips"
        )
        self.images: ResultCache[RegionAndName, str] = ResultCache(
            wrap(self._load_image), name="images"
        )

    def ec2(self, region: str) -> Any:
        return self._clients("ec2", region)

    def security_group_name(self, group: str) -> str:
        return f"{self.config.prefix}-{group}"

    def _await(self, check: Callable[[], bool]) -> bool:
        return await_true(check, self.config.consistency_timeout, self.config.consistency_interval)

    @staticmethod
    def _tags(resource_type: str, name: str) -> list[dict[str, Any]]:
        return [{
            "ResourceType": resource_type,
            "Tags": [
                {"Key": "Name", "Value": name},
                {"Key": MANAGED_TAG, "Value": "true"},
            ],
        }]

    # -------------------------------------------------------------------------
    # Security groups
    # -------------------------------------------------------------------------

    def _find_security_group(self, ec2: Any, name: str) -> str | None:
        with translate_errors("describe security groups"):
            resp = ec2.describe_security_groups(Filters=[{"Name": "group-name", "Values": [name]}])
        groups = resp.get("SecurityGroups", [])
        return groups[0]["GroupId"] if groups else None

    def _load_security_group(self, key: RegionNameAndPorts) -> str:
        ec2 = self.ec2(key.region)
        if (existing := self._find_security_group(ec2, key.name)) is not None:
            log.debug("Reusing security group {name} ({id})", name=key.name, id=existing)
            return existing

        kwargs: dict[str, Any] = {
            "GroupName": key.name,
            "Description": f"{self.config.prefix} pool nodes",
            "TagSpecifications": self._tags("security-group", key.name),
        }
        if self.config.vpc_id:
            kwargs["VpcId"] = self.config.vpc_id

        try:
            with translate_errors("create security group"):
                group_id = ec2.create_security_group(**kwargs)["GroupId"]
        except ClientError as exc:
            # lost a race with another creator; its group is ours too
            if error_code(exc) != "InvalidGroup.Duplicate":
                raise
            existing = self._find_security_group(ec2, key.name)
            if existing is None:
                raise
            return existing

        if not self._await(lambda: self._security_group_visible(ec2, group_id)):
            raise BackendTimeoutError(f"Security group {group_id} not visible in {key.region}")

        self._authorize_ingress(ec2, group_id, key.ports)
        log.info("Created security group {name} ({id}) in {region}", name=key.name, id=group_id, region=key.region)
        return group_id

    def _security_group_visible(self, ec2: Any, group_id: str) -> bool:
        try:
            with translate_errors("describe security groups"):
                ec2.describe_security_groups(GroupIds=[group_id])
        except ClientError as exc:
            if error_code(exc) == "InvalidGroup.NotFound":
                return False
            raise
        return True

    def _authorize_ingress(self, ec2: Any, group_id: str, ports: tuple[int, ...]) -> None:
        permissions: list[dict[str, Any]] = [
            {
                "IpProtocol": "tcp",
                "FromPort": port,
                "ToPort": port,
                "IpRanges": [{"CidrIp": "0.0.0.0/0"}],
            }
            for port in ports
        ]
        permissions.append({
            "IpProtocol": "-1",
            "UserIdGroupPairs": [{"GroupId": group_id, "Description": "All traffic within the group"}],
        })
        try:
            with translate_errors("authorize security group ingress"):
                ec2.authorize_security_group_ingress(GroupId=group_id, IpPermissions=permissions)
        except ClientError as exc:
            if error_code(exc) != "InvalidPermission.Duplicate":
                raise

    def _try_delete_security_group(self, ec2: Any, name: str) -> bool:
        group_id = self._find_security_group(ec2, name)
        if group_id is None:
            return True
        try:
            with translate_errors("delete security group"):
                ec2.delete_security_group(GroupId=group_id)
        except ClientError as exc:
            # instances still shutting down keep a reference to the group
            if error_code(exc) == "DependencyViolation":
                return False
            if error_code(exc) == "InvalidGroup.NotFound":
                return True
            raise
        return True

    # -------------------------------------------------------------------------
    # Keypairs
    # -------------------------------------------------------------------------

    def _load_key_pair(self, key: RegionAndName) -> KeyPair:
        ec2 = self.ec2(key.region)
        name = f"{self.config.prefix}-{key.name}-{secrets.token_hex(4)}"
        with translate_errors("create key pair"):
            resp = ec2.create_key_pair(KeyName=name, TagSpecifications=self._tags("key-pair", name))

        if not self._await(lambda: self._key_pair_visible(ec2, name)):
            raise BackendTimeoutError(f"Key pair {name} not visible in {key.region}")

        log.info("Created key pair {name} in {region}", name=name, region=key.region)
        return KeyPair(name=name, fingerprint=resp.get("KeyFingerprint", ""), material=resp.get("KeyMaterial"))

    def _key_pair_visible(self, ec2: Any, name: str) -> bool:
        try:
            with translate_errors("describe key pairs"):
                ec2.describe_key_pairs(KeyNames=[name])
        except ClientError as exc:
            if error_code(exc) == "InvalidKeyPair.NotFound":
                return False
            raise
        return True

    def _key_pairs_in_use(self, ec2: Any, names: list[str]) -> set[str]:
        with translate_errors("describe instances"):
            pages = ec2.get_paginator("describe_instances").paginate(Filters=[
                {"Name": "key-name", "Values": names},
                {"Name": "instance-state-name", "Values": ["pending", "running", "stopping", "stopped", "shutting-down"]},
            ])
            return {
                instance["KeyName"]
                for page in pages
                for reservation in page.get("Reservations", [])
                for instance in reservation.get("Instances", [])
                if instance.get("KeyName")
            }

    # -------------------------------------------------------------------------
    # Elastic IPs
    # -------------------------------------------------------------------------

    def _load_elastic_ip(self, key: RegionAndName) -> ElasticIp:
        """Allocate an address and associate it with instance ``key.name``."""
        ec2 = self.ec2(key.region)
        with translate_errors("allocate address"):
            resp = ec2.allocate_address(Domain="vpc", TagSpecifications=self._tags("elastic-ip", key.name))
        eip = ElasticIp(allocation_id=resp["AllocationId"], public_ip=resp["PublicIp"])
        try:
            with translate_errors("associate address"):
                ec2.associate_address(InstanceId=key.name, AllocationId=eip.allocation_id)
        except Exception:
            self._release_address(ec2, eip.allocation_id)
            raise
        log.debug("Associated {ip} with {instance}", ip=eip.public_ip, instance=key.name)
        return eip

    def release_elastic_ip(self, key: RegionAndName) -> bool:
        """Release the address held by instance ``key.name``, if any."""
        eip = self.elastic_ips.get_if_present(key)
        if eip is None:
            return False
        ec2 = self.ec2(key.region)
        released = self._await(lambda: self._release_address(ec2, eip.allocation_id))
        if released:
            self.elastic_ips.invalidate(key)
        else:
            log.warning("Could not release {ip} held by {instance}", ip=eip.public_ip, instance=key.name)
        return released

    def _release_address(self, ec2: Any, allocation_id: str) -> bool:
        try:
            with translate_errors("release address"):
                ec2.release_address(AllocationId=allocation_id)
        except ClientError as exc:
            match error_code(exc):
                case "InvalidIPAddress.InUse":
                    return False
                case "InvalidAllocationID.NotFound":
                    return True
                case _:
                    raise
        return True

    # -------------------------------------------------------------------------
    # Images
    # -------------------------------------------------------------------------

    def _load_image(self, key: RegionAndName) -> str:
        """Resolve the AMI id published under SSM parameter ``key.name``."""
        ssm = self._clients("ssm", key.region)
        try:
            with translate_errors("get parameter"):
                resp = ssm.get_parameter(Name=key.name)
        except ClientError as exc:
            if error_code(exc) == "ParameterNotFound":
                raise RuntimeError(f"No image published under {key.name} in {key.region}") from exc
            raise
        return resp["Parameter"]["Value"]

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    def cleanup(self, region: str, group: str) -> None:
        """Delete the group's security group and its unused keypairs."""
        ec2 = self.ec2(region)
        sg_name = self.security_group_name(group)

        if self._await(lambda: self._try_delete_security_group(ec2, sg_name)):
            log.info("Deleted security group {name} in {region}", name=sg_name, region=region)
        else:
            log.warning("Security group {name} still in use, leaving it", name=sg_name)
        for key in self.security_groups.snapshot():
            if key.region == region and key.name == sg_name:
                self.security_groups.invalidate(key)

        pattern = f"{self.config.prefix}-{group}-*"
        with translate_errors("describe key pairs"):
            resp = ec2.describe_key_pairs(Filters=[{"Name": "key-name", "Values": [pattern]}])
        names = [kp["KeyName"] for kp in resp.get("KeyPairs", [])]
        if names:
            in_use = self._key_pairs_in_use(ec2, names)
            for name in names:
                if name in in_use:
                    log.debug("Key pair {name} still in use, leaving it", name=name)
                    continue
                with translate_errors("delete key pair"):
                    ec2.delete_key_pair(KeyName=name)
                log.info("Deleted key pair {name} in {region}", name=name, region=region)
        self.key_pairs.invalidate(RegionAndName(region, group))
