"""EC2 compute backend.

Node ids are slash-encoded ``region/instance-id`` so every operation knows
which regional endpoint to call. Group membership is an instance tag.
Listing covers ``AWS.region`` and ``AWS.regions`` plus any region this backend
has launched into. Adopting nodes that a template placed elsewhere requires
naming that region in ``AWS.regions``.
"""

from __future__ import annotations

import threading
from collections.abc import Sequence
from dataclasses import replace
from types import MappingProxyType
from typing import Any

from botocore.exceptions import ClientError
from loguru import logger

from warmpool.exceptions import PartialProvisioningError
from warmpool.predicates import await_true
from warmpool.providers.aws.config import AWS
from warmpool.providers.aws.errors import error_code, translate_errors
from warmpool.providers.aws.resources import (
    ClientFactory,
    RegionNameAndPorts,
    RegionResources,
    session_client_factory,
)
from warmpool.types import NodeHandle, NodeStatus, RegionAndName, Template

log = logger.bind(provider="aws")

GROUP_TAG = "warmpool:group"

_LIVE_STATES = ["pending", "running", "shutting-down", "stopping", "stopped"]


class EC2Backend:
    """`ComputeBackend` over the EC2 API.

    Args:
        config: AWS provider configuration.
        clients: ``(service, region) -> client`` factory. Defaults to boto3.
        resources: Shared resource caches. Defaults to a fresh set.
    """

    def __init__(
        self,
        config: AWS | None = None,
        *,
        clients: ClientFactory | None = None,
        resources: RegionResources | None = None,
    ) -> None:
        self.config = config or AWS()
        self._clients = clients or session_client_factory(self.config)
        self.resources = resources or RegionResources(self.config, self._clients)
        self._lock = threading.Lock()
        self._regions = {self.config.region, *self.config.regions}

    def _ec2(self, region: str) -> Any:
        return self._clients("ec2", region)

    def _to_handle(self, region: str, instance: dict[str, Any]) -> NodeHandle:
        tags = {t["Key"]: t["Value"] for t in instance.get("Tags", [])}
        state = instance.get("State", {}).get("Name", "")
        return NodeHandle(
            id=RegionAndName(region, instance["InstanceId"]).slash_encode(),
            group=tags.get(GROUP_TAG, ""),
            status=self.config.state_map.get(state, NodeStatus.UNRECOGNIZED),
            region=region,
            private_ip=instance.get("PrivateIpAddress"),
            public_ip=instance.get("PublicIpAddress"),
            tags=MappingProxyType(tags),
        )

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def _image(self, region: str, template: Template) -> str:
        if template.image:
            return template.image
        if self.config.ami:
            return self.config.ami
        return self.resources.images.get(RegionAndName(region, self.config.ami_parameter))

    def _security_groups(self, region: str, group: str, template: Template) -> list[str]:
        if template.security_groups:
            return list(template.security_groups)
        key = RegionNameAndPorts(region, self.resources.security_group_name(group), tuple(template.inbound_ports))
        return [self.resources.security_groups.get(key)]

    def _key_name(self, region: str, group: str, template: Template) -> str:
        if template.key_name:
            return template.key_name
        return self.resources.key_pairs.get(RegionAndName(region, group)).name

    def create_nodes_in_group(
        self, group: str, count: int, template: Template
    ) -> Sequence[NodeHandle]:
        """Launch up to ``count`` instances tagged with ``group``.

        EC2 may launch fewer than asked when capacity is short; those that
        did launch are reported through `PartialProvisioningError`.
        """
        region = template.region or self.config.region
        ec2 = self._ec2(region)

        tags = [
            {"Key": GROUP_TAG, "Value": group},
            {"Key": "Name", "Value": f"{self.config.prefix}-{group}"},
            *({"Key": k, "Value": v} for k, v in template.tags.items()),
        ]
        kwargs: dict[str, Any] = {
            "ImageId": self._image(region, template),
            "InstanceType": template.hardware or self.config.instance_type,
            "MinCount": 1,
            "MaxCount": count,
            "SecurityGroupIds": self._security_groups(region, group, template),
            "KeyName": self._key_name(region, group, template),
            "TagSpecifications": [{"ResourceType": "instance", "Tags": tags}],
        }
        if template.user_data:
            kwargs["UserData"] = template.user_data
        if self.config.subnet_id:
            kwargs["SubnetId"] = self.config.subnet_id

        with translate_errors("run instances"):
            resp = ec2.run_instances(**kwargs)

        with self._lock:
            self._regions.add(region)
        nodes = [self._to_handle(region, i) for i in resp.get("Instances", [])]
        log.info("Launched {n}/{want} instances for {group} in {region}", n=len(nodes), want=count, group=group, region=region)

        cause: BaseException | None = None
        if template.elastic_ip:
            nodes, cause = self._attach_elastic_ips(nodes)
        if len(nodes) < count:
            raise PartialProvisioningError(nodes, count, cause)
        return nodes

    def _attach_elastic_ips(
        self, nodes: list[NodeHandle]
    ) -> tuple[list[NodeHandle], BaseException | None]:
        """Attach an address to each node. Nodes that cannot get one are terminated."""
        attached: list[NodeHandle] = []
        cause: BaseException | None = None
        for node in nodes:
            try:
                attached.append(self._attach_elastic_ip(node))
            except Exception as exc:
                log.warning("Could not attach elastic IP to {id}, terminating: {err}", id=node.id, err=exc)
                cause = exc
                try:
                    self.destroy_node(node.id)
                except Exception as destroy_exc:
                    log.warning("Failed to terminate {id}: {err}", id=node.id, err=destroy_exc)
        return attached, cause

    def _attach_elastic_ip(self, node: NodeHandle) -> NodeHandle:
        """Associate a fresh elastic IP once the instance is running."""
        def running() -> bool:
            current = self.get_node(node.id)
            return current is not None and current.status is NodeStatus.RUNNING

        if not await_true(running, self.config.consistency_timeout, self.config.consistency_interval):
            log.warning("Instance {id} not running, skipping elastic IP", id=node.id)
            return node
        key = RegionAndName.from_slash_encoded(node.id)
        eip = self.resources.elastic_ips.get(key)
        return replace(node, public_ip=eip.public_ip)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def destroy_node(self, node_id: str) -> None:
        key = RegionAndName.from_slash_encoded(node_id)
        try:
            with translate_errors("terminate instances"):
                self._ec2(key.region).terminate_instances(InstanceIds=[key.name])
        except ClientError as exc:
            if error_code(exc) != "InvalidInstanceID.NotFound":
                raise
            log.debug("Instance {id} already gone", id=node_id)
        self.resources.release_elastic_ip(key)

    @property
    def regions(self) -> list[str]:
        """Regions searched by `list_nodes`: the configured ones plus any launched into."""
        with self._lock:
            return sorted(self._regions)

    def list_nodes(self, group: str | None = None) -> Sequence[NodeHandle]:
        filters = [{"Name": "instance-state-name", "Values": _LIVE_STATES}]
        if group is None:
            filters.append({"Name": "tag-key", "Values": [GROUP_TAG]})
        else:
            filters.append({"Name": f"tag:{GROUP_TAG}", "Values": [group]})

        nodes: list[NodeHandle] = []
        for region in self.regions:
            with translate_errors("describe instances"):
                pages = self._ec2(region).get_paginator("describe_instances").paginate(Filters=filters)
                nodes.extend(
                    self._to_handle(region, instance)
                    for page in pages
                    for reservation in page.get("Reservations", [])
                    for instance in reservation.get("Instances", [])
                )
        return nodes

    def get_node(self, node_id: str) -> NodeHandle | None:
        key = RegionAndName.from_slash_encoded(node_id)
        try:
            with translate_errors("describe instances"):
                resp = self._ec2(key.region).describe_instances(InstanceIds=[key.name])
        except ClientError as exc:
            if error_code(exc) == "InvalidInstanceID.NotFound":
                return None
            raise
        for reservation in resp.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return self._to_handle(key.region, instance)
        return None

    def reboot_node(self, node_id: str) -> None:
        key = RegionAndName.from_slash_encoded(node_id)
        with translate_errors("reboot instances"):
            self._ec2(key.region).reboot_instances(InstanceIds=[key.name])

    def resume_node(self, node_id: str) -> None:
        key = RegionAndName.from_slash_encoded(node_id)
        with translate_errors("start instances"):
            self._ec2(key.region).start_instances(InstanceIds=[key.name])

    def suspend_node(self, node_id: str) -> None:
        key = RegionAndName.from_slash_encoded(node_id)
        with translate_errors("stop instances"):
            self._ec2(key.region).stop_instances(InstanceIds=[key.name])

    def cleanup_incidental_resources(self, group: str) -> None:
        for region in self.regions:
            self.resources.cleanup(region, group)
