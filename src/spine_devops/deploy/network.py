"""Network and security provisioner.

Finds the default VPC through its default-for-AZ subnets and converges the
environment security group to the required ingress set:

- ``tcp/80 <- 0.0.0.0/0`` always
- ``tcp/443 <- 0.0.0.0/0`` when HTTPS terminates at the task (no LB)
- ``all <- self`` always
- ``all <- migrator group`` when a database is declared

Ingress authorisation is idempotent: ``InvalidPermission.Duplicate`` is the
expected answer on every re-run and is swallowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from botocore.exceptions import ClientError

from spine_devops.core.errors import CloudError, ResourceNotFoundError
from spine_devops.deploy.cloud import call_with_retry, error_code
from spine_devops.deploy.descriptor import NetworkSpec, tag_list
from spine_devops.deploy.progress import NullReporter, ProgressReporter

logger = logging.getLogger(__name__)

ANYWHERE = "0.0.0.0/0"


@dataclass
class NetworkState:
    vpc_id: str
    subnet_ids: list[str] = field(default_factory=list)
    security_group_id: str = ""


def http_ingress(port: int) -> dict[str, Any]:
    return {
        "IpProtocol": "tcp",
        "FromPort": port,
        "ToPort": port,
        "IpRanges": [{"CidrIp": ANYWHERE}],
    }


def group_ingress(group_id: str) -> dict[str, Any]:
    return {"IpProtocol": "-1", "UserIdGroupPairs": [{"GroupId": group_id}]}


def desired_ingress(
    group_id: str,
    *,
    https_at_task: bool,
    migrator_group_id: str | None = None,
) -> list[dict[str, Any]]:
    """Ingress permissions the security group must contain."""
    rules = [http_ingress(80)]
    if https_at_task:
        rules.append(http_ingress(443))
    rules.append(group_ingress(group_id))
    if migrator_group_id:
        rules.append(group_ingress(migrator_group_id))
    return rules


class NetworkProvisioner:
    """Default VPC discovery plus security group convergence."""

    def __init__(
        self,
        cloud: Any,
        spec: NetworkSpec,
        tags: dict[str, str],
        reporter: ProgressReporter | None = None,
    ) -> None:
        self.cloud = cloud
        self.spec = spec
        self.tags = tags
        self.reporter = reporter or NullReporter()

    @property
    def ec2(self) -> Any:
        return self.cloud.client("ec2")

    def discover_default_subnets(self) -> tuple[str, list[str]]:
        """Return ``(vpc_id, subnet_ids)`` of the default-for-AZ subnets.

        Raises:
            ResourceNotFoundError: no default subnets in the region.
            CloudError: the default subnets span more than one VPC.
        """
        subnets: list[dict[str, Any]] = []
        paginator = self.ec2.get_paginator("describe_subnets")
        for page in paginator.paginate(Filters=[{"Name": "default-for-az", "Values": ["true"]}]):
            subnets.extend(s for s in page.get("Subnets", []) if s.get("DefaultForAz"))

        if not subnets:
            raise ResourceNotFoundError(
                "default subnets", self.cloud.region,
                message=f"Failed to find any default subnets in region '{self.cloud.region}'",
            ).with_context(component="network")

        vpc_ids = {s["VpcId"] for s in subnets}
        if len(vpc_ids) != 1:
            raise CloudError(
                f"Default subnets span multiple VPCs: {', '.join(sorted(vpc_ids))}"
            ).with_context(component="network")

        vpc_id = vpc_ids.pop()
        subnet_ids = [s["SubnetId"] for s in subnets]
        logger.info("network.default_vpc", extra={"vpc_id": vpc_id, "subnets": subnet_ids})
        return vpc_id, subnet_ids

    def find_security_group(self, name: str, vpc_id: str | None = None) -> str | None:
        filters = [{"Name": "group-name", "Values": [name]}]
        if vpc_id:
            filters.append({"Name": "vpc-id", "Values": [vpc_id]})
        res = call_with_retry(self.ec2.describe_security_groups, Filters=filters,
                              component="network", resource=name)
        groups = res.get("SecurityGroups", [])
        return groups[0]["GroupId"] if groups else None

    def ensure_security_group(self, vpc_id: str) -> str:
        """Return the environment security group id, creating it if absent."""
        name = self.spec.security_group_name
        group_id = self.find_security_group(name, vpc_id)
        if group_id:
            logger.info("security_group.found", extra={"group": name, "group_id": group_id})
            return group_id

        try:
            res = self.ec2.create_security_group(
                GroupName=name,
                Description=self.spec.description or f"Security group for {name}",
                VpcId=vpc_id,
                TagSpecifications=[{"ResourceType": "security-group", "Tags": tag_list(self.tags)}],
            )
            group_id = res["GroupId"]
        except ClientError as exc:
            if error_code(exc) != "InvalidGroup.Duplicate":
                raise CloudError(
                    f"Failed to create security group '{name}'", code=error_code(exc), cause=exc
                ).with_context(component="network", resource=name) from exc
            group_id = self.find_security_group(name, vpc_id)
            if not group_id:
                raise ResourceNotFoundError("security group", name).with_context(component="network") from exc
        logger.info("security_group.created", extra={"group": name, "group_id": group_id})
        return group_id

    def authorize_ingress(self, group_id: str, permissions: list[dict[str, Any]]) -> int:
        """Add each permission; returns how many were new."""
        added = 0
        for permission in permissions:
            try:
                self.ec2.authorize_security_group_ingress(GroupId=group_id, IpPermissions=[permission])
                added += 1
            except ClientError as exc:
                if error_code(exc) != "InvalidPermission.Duplicate":
                    raise CloudError(
                        f"Failed to authorize ingress on '{group_id}'", code=error_code(exc), cause=exc
                    ).with_context(component="network", resource=group_id) from exc
        logger.info("security_group.ingress", extra={"group_id": group_id, "added": added})
        return added

    def run(self, *, https_at_task: bool, has_database: bool) -> NetworkState:
        vpc_id, subnet_ids = self.discover_default_subnets()
        self.reporter.success(f"default VPC {vpc_id} ({len(subnet_ids)} subnets)")

        group_id = self.ensure_security_group(vpc_id)

        migrator_id = None
        migrator = self.spec.migrator_security_group_name
        if has_database and migrator:
            migrator_id = self.find_security_group(migrator)
            if not migrator_id:
                raise ResourceNotFoundError(
                    "security group", migrator,
                    message=f"Failed to find security group '{migrator}'",
                ).with_context(component="network")

        self.authorize_ingress(
            group_id, desired_ingress(group_id, https_at_task=https_at_task, migrator_group_id=migrator_id)
        )
        self.reporter.success(f"security group {self.spec.security_group_name} ({group_id})")
        return NetworkState(vpc_id=vpc_id, subnet_ids=subnet_ids, security_group_id=group_id)


__all__ = ["NetworkProvisioner", "NetworkState", "desired_ingress"]
