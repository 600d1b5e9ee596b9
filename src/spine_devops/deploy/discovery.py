"""Service discovery provisioner.

Ensures a private DNS namespace named after the cluster inside the default
VPC, and a service entry for the deployed service (A records, TTL from the
descriptor, custom health check). Namespace creation is asynchronous: the
returned operation is polled until ``SUCCESS`` or ``FAIL``.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any

from botocore.exceptions import ClientError

from spine_devops.core.errors import CloudError, ResourceNotFoundError
from spine_devops.core.retry import poll_until
from spine_devops.deploy.cloud import error_code
from spine_devops.deploy.descriptor import DiscoverySpec, tag_list
from spine_devops.deploy.progress import NullReporter, ProgressReporter

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryState:
    namespace_id: str
    service_id: str
    service_arn: str


class DiscoveryProvisioner:
    def __init__(
        self,
        cloud: Any,
        spec: DiscoverySpec,
        tags: dict[str, str],
        *,
        reporter: ProgressReporter | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self.cloud = cloud
        self.spec = spec
        self.tags = tags
        self.reporter = reporter or NullReporter()
        self.cancel = cancel

    @property
    def sd(self) -> Any:
        return self.cloud.client("servicediscovery")

    def find_namespace(self) -> dict[str, Any] | None:
        paginator = self.sd.get_paginator("list_namespaces")
        filters = [{"Name": "TYPE", "Values": ["DNS_PRIVATE"], "Condition": "EQ"}]
        for page in paginator.paginate(Filters=filters):
            for ns in page.get("Namespaces", []):
                if ns["Name"] == self.spec.namespace_name:
                    return ns
        return None

    def wait_operation(self, operation_id: str) -> None:
        def check() -> bool:
            op = self.sd.get_operation(OperationId=operation_id)["Operation"]
            status = op.get("Status")
            if status == "FAIL":
                raise CloudError(
                    f"Failed to create namespace '{self.spec.namespace_name}': "
                    f"{op.get('ErrorCode', '')} {op.get('ErrorMessage', '')}".strip(),
                    code=op.get("ErrorCode"),
                ).with_context(component="discovery", resource=self.spec.namespace_name)
            return status == "SUCCESS"

        poll_until(check, cancel=self.cancel, what=f"namespace {self.spec.namespace_name}")

    def ensure_namespace(self, vpc_id: str) -> str:
        ns = self.find_namespace()
        if ns is not None:
            logger.info("namespace.found", extra={"namespace": ns["Name"], "id": ns["Id"]})
            return ns["Id"]

        try:
            res = self.sd.create_private_dns_namespace(
                Name=self.spec.namespace_name,
                Vpc=vpc_id,
                Description=f"Private DNS namespace used for services running on the ECS Cluster "
                            f"{self.spec.namespace_name}",
                CreatorRequestId=f"spine-devops-{self.spec.namespace_name}-{int(time.time())}",
                Tags=tag_list(self.tags),
            )
        except ClientError as exc:
            if error_code(exc) != "NamespaceAlreadyExists":
                raise CloudError(
                    f"Failed to create namespace '{self.spec.namespace_name}'", code=error_code(exc), cause=exc
                ).with_context(component="discovery", resource=self.spec.namespace_name) from exc
        else:
            self.wait_operation(res["OperationId"])

        ns = self.find_namespace()
        if ns is None:
            raise ResourceNotFoundError("namespace", self.spec.namespace_name).with_context(component="discovery")
        logger.info("namespace.created", extra={"namespace": ns["Name"], "id": ns["Id"]})
        return ns["Id"]

    def find_service(self, namespace_id: str) -> dict[str, Any] | None:
        paginator = self.sd.get_paginator("list_services")
        filters = [{"Name": "NAMESPACE_ID", "Values": [namespace_id], "Condition": "EQ"}]
        for page in paginator.paginate(Filters=filters):
            for svc in page.get("Services", []):
                if svc["Name"] == self.spec.service_name:
                    return svc
        return None

    def ensure_service(self, namespace_id: str) -> dict[str, Any]:
        existing = self.find_service(namespace_id)
        if existing is not None:
            logger.info("discovery_service.found", extra={"service": self.spec.service_name})
            return existing
        try:
            res = self.sd.create_service(
                Name=self.spec.service_name,
                NamespaceId=namespace_id,
                DnsConfig={
                    "RoutingPolicy": "MULTIVALUE",
                    "DnsRecords": [{"Type": "A", "TTL": self.spec.dns_ttl}],
                },
                HealthCheckCustomConfig={"FailureThreshold": self.spec.failure_threshold},
                Tags=tag_list(self.tags),
            )
        except ClientError as exc:
            raise CloudError(
                f"Failed to create service '{self.spec.service_name}'", code=error_code(exc), cause=exc
            ).with_context(component="discovery", resource=self.spec.service_name) from exc
        logger.info("discovery_service.created", extra={"service": self.spec.service_name})
        return res["Service"]

    def run(self, vpc_id: str) -> DiscoveryState:
        namespace_id = self.ensure_namespace(vpc_id)
        self.reporter.success(f"namespace {self.spec.namespace_name}")
        service = self.ensure_service(namespace_id)
        self.reporter.success(f"service registry {self.spec.service_name}")
        return DiscoveryState(namespace_id=namespace_id, service_id=service["Id"], service_arn=service["Arn"])


__all__ = ["DiscoveryProvisioner", "DiscoveryState"]
