"""Container cluster and log group."""

from __future__ import annotations

import logging
from typing import Any

from botocore.exceptions import ClientError

from spine_devops.core.errors import CloudError
from spine_devops.deploy.cloud import error_code
from spine_devops.deploy.descriptor import ClusterSpec, tag_list
from spine_devops.deploy.progress import NullReporter, ProgressReporter

logger = logging.getLogger(__name__)


class ClusterProvisioner:
    def __init__(
        self,
        cloud: Any,
        spec: ClusterSpec,
        tags: dict[str, str],
        *,
        reporter: ProgressReporter | None = None,
    ) -> None:
        self.cloud = cloud
        self.spec = spec
        self.tags = tags
        self.reporter = reporter or NullReporter()

    def ensure_log_group(self) -> str:
        name = self.spec.log_group_name
        try:
            self.cloud.client("logs").create_log_group(logGroupName=name, tags=dict(self.tags))
            logger.info("log_group.created", extra={"log_group": name})
        except ClientError as exc:
            if error_code(exc) != "ResourceAlreadyExistsException":
                raise CloudError(
                    f"Failed to create log group '{name}'", code=error_code(exc), cause=exc
                ).with_context(component="cluster", resource=name) from exc
        return name

    def ensure_cluster(self) -> str:
        """Return the cluster ARN; an INACTIVE cluster is re-created."""
        name = self.spec.cluster_name
        ecs = self.cloud.client("ecs")
        try:
            res = ecs.describe_clusters(clusters=[name])
        except ClientError as exc:
            raise CloudError(
                f"Failed to describe cluster '{name}'", code=error_code(exc), cause=exc
            ).with_context(component="cluster", resource=name) from exc

        for cluster in res.get("clusters", []):
            if cluster["clusterName"] == name and cluster.get("status") != "INACTIVE":
                logger.info("cluster.found", extra={"cluster": name})
                return cluster["clusterArn"]

        try:
            arn = ecs.create_cluster(
                clusterName=name,
                tags=[{"key": t["Key"], "value": t["Value"]} for t in tag_list(self.tags)],
            )["cluster"]["clusterArn"]
        except ClientError as exc:
            raise CloudError(
                f"Failed to create cluster '{name}'", code=error_code(exc), cause=exc
            ).with_context(component="cluster", resource=name) from exc
        logger.info("cluster.created", extra={"cluster": name, "arn": arn})
        return arn

    def run(self) -> tuple[str, str]:
        """Return ``(log_group_name, cluster_arn)``."""
        log_group = self.ensure_log_group()
        self.reporter.success(f"log group {log_group}")
        arn = self.ensure_cluster()
        self.reporter.success(f"cluster {self.spec.cluster_name}")
        return log_group, arn


__all__ = ["ClusterProvisioner"]
