"""Cache cluster provisioner.

Ensures the shared cache cluster exists, is ``available``, and runs with
the descriptor's parameter overrides (``maxmemory-policy=allkeys-lru`` by
default).

A freshly created cluster is bound to a vendor ``default.*`` parameter
group, which cannot be modified. When overrides are declared the cluster is
moved to a custom group of the same family, and only that custom group is
ever modified: a cluster someone pointed at a different group by hand is
left alone. Parameter writes are skipped when the live values already
match, so a re-run makes no changes.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from botocore.exceptions import ClientError

from spine_devops.core.errors import CloudError
from spine_devops.core.retry import poll_until
from spine_devops.deploy.cloud import call_with_retry, error_code
from spine_devops.deploy.descriptor import CacheSpec
from spine_devops.deploy.progress import NullReporter, ProgressReporter

logger = logging.getLogger(__name__)

AVAILABLE = "available"
_FAILED_STATES = frozenset({"deleted", "deleting", "create-failed", "incompatible-network"})


def cache_endpoint(cluster: dict[str, Any]) -> str:
    """``host:port`` clients connect to: configuration endpoint, else first node."""
    endpoint = cluster.get("ConfigurationEndpoint")
    if not endpoint and cluster.get("CacheNodes"):
        endpoint = cluster["CacheNodes"][0].get("Endpoint")
    if not endpoint:
        raise CloudError(
            f"Unable to determine cache host from cache cluster '{cluster.get('CacheClusterId')}'"
        ).with_context(component="cache", resource=cluster.get("CacheClusterId"))
    return f"{endpoint['Address']}:{endpoint['Port']}"


def _group_name(cluster: dict[str, Any]) -> str:
    return cluster.get("CacheParameterGroup", {}).get("CacheParameterGroupName", "")


class CacheProvisioner:
    """Converges the cache cluster and its custom parameter group."""

    def __init__(
        self,
        cloud: Any,
        spec: CacheSpec,
        *,
        reporter: ProgressReporter | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self.cloud = cloud
        self.spec = spec
        self.reporter = reporter or NullReporter()
        self.cancel = cancel

    @property
    def elasticache(self) -> Any:
        return self.cloud.client("elasticache")

    def _fail(self, action: str, exc: ClientError, resource: str | None = None) -> CloudError:
        err = CloudError(f"Failed to {action}", code=error_code(exc), cause=exc)
        return err.with_context(component="cache", resource=resource or self.spec.cluster_id)

    # ------------------------------------------------------------------
    # Cluster
    # ------------------------------------------------------------------

    def describe_cluster(self) -> dict[str, Any] | None:
        try:
            res = call_with_retry(
                self.elasticache.describe_cache_clusters,
                CacheClusterId=self.spec.cluster_id,
                ShowCacheNodeInfo=True,
                component="cache", resource=self.spec.cluster_id, cancel=self.cancel,
            )
        except ClientError as exc:
            if error_code(exc) == "CacheClusterNotFound":
                return None
            raise self._fail(f"describe cache cluster '{self.spec.cluster_id}'", exc) from exc
        clusters = res.get("CacheClusters", [])
        return clusters[0] if clusters else None

    def create_params(self, security_group_id: str) -> dict[str, Any]:
        spec = self.spec
        params: dict[str, Any] = {
            "CacheClusterId": spec.cluster_id,
            "CacheNodeType": spec.node_type,
            "CacheSubnetGroupName": spec.subnet_group,
            "Engine": spec.engine,
            "EngineVersion": spec.engine_version,
            "NumCacheNodes": spec.num_nodes,
            "Port": spec.port,
            "AutoMinorVersionUpgrade": spec.auto_minor_version_upgrade,
            "SecurityGroupIds": [security_group_id],
        }
        # Snapshots are a redis-only feature.
        if spec.engine == "redis":
            params["SnapshotRetentionLimit"] = spec.snapshot_days
        return params

    def ensure_cluster(self, security_group_id: str, tags: dict[str, str]) -> dict[str, Any]:
        cluster = self.describe_cluster()
        if cluster is not None:
            logger.info("cache_cluster.found", extra={"cluster": self.spec.cluster_id})
            return cluster

        params = self.create_params(security_group_id)
        params["Tags"] = [{"Key": k, "Value": v} for k, v in tags.items()]
        try:
            res = self.elasticache.create_cache_cluster(**params)
        except ClientError as exc:
            if error_code(exc) != "CacheClusterAlreadyExists":
                raise self._fail(f"create cluster '{self.spec.cluster_id}'", exc) from exc
            cluster = self.describe_cluster()
            if cluster is None:
                raise self._fail(f"find cluster '{self.spec.cluster_id}'", exc) from exc
            return cluster
        logger.info("cache_cluster.created", extra={"cluster": self.spec.cluster_id})
        return res["CacheCluster"]

    def wait_available(
        self, cluster: dict[str, Any] | None = None, parameter_group: str | None = None
    ) -> dict[str, Any]:
        """Poll until the cluster is available, and bound to ``parameter_group`` when given.

        The cluster can report ``available`` under its previous group for a
        while after a group switch.
        """

        def ready(current: dict[str, Any]) -> bool:
            if current.get("CacheClusterStatus") != AVAILABLE:
                return False
            return parameter_group is None or _group_name(current) == parameter_group

        if cluster and ready(cluster) and cluster.get("CacheNodes"):
            return cluster

        def check() -> dict[str, Any] | None:
            current = self.describe_cluster()
            if current is None:
                return None
            status = current.get("CacheClusterStatus", "")
            if status in _FAILED_STATES:
                raise CloudError(
                    f"Cache cluster '{self.spec.cluster_id}' entered state '{status}'"
                ).with_context(component="cache", resource=self.spec.cluster_id)
            return current if ready(current) else None

        return poll_until(check, cancel=self.cancel, what=f"cache cluster {self.spec.cluster_id}")

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------

    def parameter_family(self, group_name: str) -> str:
        try:
            res = self.elasticache.describe_cache_parameter_groups(CacheParameterGroupName=group_name)
        except ClientError as exc:
            raise self._fail(f"describe cache parameter group '{group_name}'", exc, group_name) from exc
        return res["CacheParameterGroups"][0]["CacheParameterGroupFamily"]

    def ensure_parameter_group(self, cluster: dict[str, Any]) -> dict[str, Any]:
        """Move a cluster off its ``default.*`` group onto the custom group."""
        custom = self.spec.parameter_group_name
        current = _group_name(cluster)
        if not current.startswith("default"):
            return cluster

        family = self.parameter_family(current)
        try:
            self.elasticache.create_cache_parameter_group(
                CacheParameterGroupName=custom,
                CacheParameterGroupFamily=family,
                Description=f"Customized default parameter group for {self.spec.engine} {self.spec.engine_version}",
            )
            logger.info("cache_parameter_group.created", extra={"group": custom, "family": family})
        except ClientError as exc:
            if error_code(exc) != "CacheParameterGroupAlreadyExists":
                raise self._fail(f"create cache parameter group '{custom}'", exc, custom) from exc

        try:
            res = self.elasticache.modify_cache_cluster(
                CacheClusterId=self.spec.cluster_id,
                CacheParameterGroupName=custom,
                ApplyImmediately=True,
            )
        except ClientError as exc:
            raise self._fail(
                f"modify cache parameter group '{custom}' for cache cluster '{self.spec.cluster_id}'", exc
            ) from exc
        logger.info("cache_cluster.parameter_group_set", extra={"cluster": self.spec.cluster_id, "group": custom})
        return res["CacheCluster"]

    def current_parameters(self, group_name: str) -> dict[str, str]:
        values: dict[str, str] = {}
        paginator = self.elasticache.get_paginator("describe_cache_parameters")
        for page in paginator.paginate(CacheParameterGroupName=group_name):
            for param in page.get("Parameters", []):
                values[param["ParameterName"]] = param.get("ParameterValue", "")
        return values

    def apply_parameters(self, cluster: dict[str, Any]) -> dict[str, str]:
        """Write overrides that differ from the live group; returns what changed."""
        group = _group_name(cluster)
        if group != self.spec.parameter_group_name:
            logger.info("cache_parameters.skipped", extra={"group": group})
            return {}

        live = self.current_parameters(group)
        changes = {k: v for k, v in self.spec.parameters.items() if live.get(k) != v}
        if not changes:
            return {}
        try:
            self.elasticache.modify_cache_parameter_group(
                CacheParameterGroupName=group,
                ParameterNameValues=[{"ParameterName": k, "ParameterValue": v} for k, v in changes.items()],
            )
        except ClientError as exc:
            raise self._fail(f"modify cache parameter group '{group}'", exc, group) from exc
        for name, value in changes.items():
            logger.info("cache_parameter.set", extra={"group": group, "parameter": name, "value": value})
        return changes

    def run(self, security_group_id: str, tags: dict[str, str]) -> str:
        """Converge the cluster; returns its ``host:port`` endpoint."""
        cluster = self.wait_available(self.ensure_cluster(security_group_id, tags))
        self.reporter.success(f"cache cluster {self.spec.cluster_id}")

        if self.spec.parameters:
            moved = self.ensure_parameter_group(cluster)
            if moved is not cluster:
                cluster = self.wait_available(parameter_group=self.spec.parameter_group_name)
            changed = self.apply_parameters(cluster)
            if changed:
                self.reporter.success(
                    "cache parameters " + ", ".join(f"{k}={v}" for k, v in changed.items())
                )

        return cache_endpoint(cluster)


__all__ = ["CacheProvisioner", "cache_endpoint"]
