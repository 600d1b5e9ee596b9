"""Application load balancer provisioner.

Ensures, in order: the balancer (in the default subnets, behind the
environment security group), the service target group, its deregistration
delay, the HTTP listener and, with HTTPS, a 443 listener carrying the
certificate. Finally every bound hostname gets an A-alias record to the
balancer.

Existing listeners are matched by port and never modified, so a listener
someone re-pointed by hand survives a deploy.

Key Concepts:
    LoadBalancerState: ARNs plus the DNS name / canonical zone for aliases.
    target_group_params(): ``CreateTargetGroup`` input from ``TargetGroupSpec``.

Related Modules:
    - :mod:`spine_devops.deploy.certificates` - Certificate for port 443
    - :mod:`spine_devops.deploy.dns` - Alias record writes
    - :mod:`spine_devops.deploy.service` - Attaches the target group

Tags:
    elbv2, alb, target-group, listener, https
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any

from botocore.exceptions import ClientError

from spine_devops.core.errors import CloudError
from spine_devops.core.retry import poll_until
from spine_devops.deploy.cloud import call_with_retry, error_code
from spine_devops.deploy.descriptor import LoadBalancerSpec, TargetGroupSpec, tag_list
from spine_devops.deploy.dns import upsert_alias_records
from spine_devops.deploy.progress import NullReporter, ProgressReporter
from spine_devops.deploy.record import ZoneBinding

logger = logging.getLogger(__name__)


@dataclass
class LoadBalancerState:
    load_balancer_arn: str
    dns_name: str
    canonical_zone_id: str
    target_group_arn: str


def target_group_params(spec: TargetGroupSpec, vpc_id: str) -> dict[str, Any]:
    return {
        "Name": spec.name,
        "Port": spec.port,
        "Protocol": spec.protocol,
        "VpcId": vpc_id,
        "TargetType": spec.target_type,
        "HealthCheckEnabled": True,
        "HealthCheckProtocol": "HTTP",
        "HealthCheckPath": spec.health_check_path,
        "HealthCheckIntervalSeconds": spec.health_check_interval,
        "HealthCheckTimeoutSeconds": spec.health_check_timeout,
        "HealthyThresholdCount": spec.healthy_threshold,
        "UnhealthyThresholdCount": spec.unhealthy_threshold,
        "Matcher": {"HttpCode": spec.matcher},
    }


class LoadBalancerProvisioner:
    def __init__(
        self,
        cloud: Any,
        spec: LoadBalancerSpec,
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
    def elbv2(self) -> Any:
        return self.cloud.client("elbv2")

    def _fail(self, action: str, exc: ClientError, resource: str) -> CloudError:
        return CloudError(f"Failed to {action}", code=error_code(exc), cause=exc).with_context(
            component="loadbalancer", resource=resource
        )

    # ------------------------------------------------------------------
    # Balancer
    # ------------------------------------------------------------------

    def describe_load_balancer(self) -> dict[str, Any] | None:
        try:
            res = call_with_retry(self.elbv2.describe_load_balancers, Names=[self.spec.name],
                                  component="loadbalancer", resource=self.spec.name, cancel=self.cancel)
        except ClientError as exc:
            if error_code(exc) == "LoadBalancerNotFound":
                return None
            raise self._fail(f"describe load balancer '{self.spec.name}'", exc, self.spec.name) from exc
        for lb in res.get("LoadBalancers", []):
            if lb["LoadBalancerName"] == self.spec.name:
                return lb
        return None

    def ensure_load_balancer(self, subnet_ids: list[str], security_group_id: str) -> tuple[dict[str, Any], bool]:
        lb = self.describe_load_balancer()
        if lb is not None:
            logger.info("load_balancer.found", extra={"name": self.spec.name, "arn": lb["LoadBalancerArn"]})
            return lb, False
        try:
            res = self.elbv2.create_load_balancer(
                Name=self.spec.name,
                Subnets=subnet_ids,
                SecurityGroups=[security_group_id],
                Scheme=self.spec.scheme,
                Type="application",
                IpAddressType="ipv4",
                Tags=tag_list(self.tags),
            )
        except ClientError as exc:
            raise self._fail(f"create load balancer '{self.spec.name}'", exc, self.spec.name) from exc
        lb = res["LoadBalancers"][0]
        logger.info("load_balancer.created", extra={"name": self.spec.name, "arn": lb["LoadBalancerArn"]})
        return lb, True

    def wait_active(self, lb: dict[str, Any]) -> dict[str, Any]:
        if lb.get("State", {}).get("Code") == "active":
            return lb

        def check() -> dict[str, Any] | None:
            current = self.describe_load_balancer()
            state = (current or {}).get("State", {})
            if state.get("Code") == "failed":
                raise CloudError(
                    f"Load balancer '{self.spec.name}' failed: {state.get('Reason', '')}"
                ).with_context(component="loadbalancer", resource=self.spec.name)
            return current if state.get("Code") == "active" else None

        return poll_until(check, cancel=self.cancel, what=f"load balancer {self.spec.name}")

    # ------------------------------------------------------------------
    # Target group and listeners
    # ------------------------------------------------------------------

    def ensure_target_group(self, vpc_id: str) -> str:
        name = self.spec.target_group.name
        try:
            res = self.elbv2.describe_target_groups(Names=[name])
            groups = res.get("TargetGroups", [])
            if groups:
                logger.info("target_group.found", extra={"name": name})
                return groups[0]["TargetGroupArn"]
        except ClientError as exc:
            if error_code(exc) != "TargetGroupNotFound":
                raise self._fail(f"describe target group '{name}'", exc, name) from exc

        params = target_group_params(self.spec.target_group, vpc_id)
        params["Tags"] = tag_list(self.tags)
        try:
            res = self.elbv2.create_target_group(**params)
        except ClientError as exc:
            raise self._fail(f"create target group '{name}'", exc, name) from exc
        arn = res["TargetGroups"][0]["TargetGroupArn"]
        logger.info("target_group.created", extra={"name": name, "arn": arn})
        return arn

    def set_deregistration_delay(self, target_group_arn: str) -> None:
        try:
            self.elbv2.modify_target_group_attributes(
                TargetGroupArn=target_group_arn,
                Attributes=[{
                    "Key": "deregistration_delay.timeout_seconds",
                    "Value": str(self.spec.deregistration_delay_sec),
                }],
            )
        except ClientError as exc:
            raise self._fail(
                f"modify target group '{self.spec.target_group.name}' attributes", exc, target_group_arn
            ) from exc

    def existing_listener_ports(self, lb_arn: str) -> set[int]:
        ports: set[int] = set()
        paginator = self.elbv2.get_paginator("describe_listeners")
        for page in paginator.paginate(LoadBalancerArn=lb_arn):
            ports.update(listener["Port"] for listener in page.get("Listeners", []))
        return ports

    def ensure_listeners(self, lb_arn: str, target_group_arn: str, certificate_arn: str | None,
                         existing: set[int]) -> list[int]:
        created: list[int] = []
        for listener in self.spec.listeners:
            if listener.port in existing:
                continue
            params: dict[str, Any] = {
                "LoadBalancerArn": lb_arn,
                "Port": listener.port,
                "Protocol": listener.protocol,
                "DefaultActions": [{"Type": "forward", "TargetGroupArn": target_group_arn}],
            }
            if listener.protocol == "HTTPS":
                if not certificate_arn:
                    raise CloudError(
                        f"HTTPS listener on '{self.spec.name}' requires a certificate"
                    ).with_context(component="loadbalancer", resource=self.spec.name)
                params["Certificates"] = [{"CertificateArn": certificate_arn}]
            try:
                res = self.elbv2.create_listener(**params)
            except ClientError as exc:
                raise self._fail(f"create listener '{self.spec.name}:{listener.port}'", exc, self.spec.name) from exc
            logger.info("listener.created", extra={"port": listener.port,
                                                   "arn": res["Listeners"][0]["ListenerArn"]})
            created.append(listener.port)
        return created

    def run(
        self,
        *,
        vpc_id: str,
        subnet_ids: list[str],
        security_group_id: str,
        certificate_arn: str | None,
        bindings: list[ZoneBinding],
    ) -> LoadBalancerState:
        lb, created = self.ensure_load_balancer(subnet_ids, security_group_id)
        lb = self.wait_active(lb)
        lb_arn = lb["LoadBalancerArn"]
        self.reporter.success(f"load balancer {self.spec.name}" + (" created" if created else ""))

        tg_arn = self.ensure_target_group(vpc_id)
        self.set_deregistration_delay(tg_arn)
        self.reporter.success(f"target group {self.spec.target_group.name}")

        existing = set() if created else self.existing_listener_ports(lb_arn)
        added = self.ensure_listeners(lb_arn, tg_arn, certificate_arn, existing)
        if added:
            self.reporter.success("listeners " + ", ".join(str(p) for p in added))

        state = LoadBalancerState(
            load_balancer_arn=lb_arn,
            dns_name=lb["DNSName"],
            canonical_zone_id=lb["CanonicalHostedZoneId"],
            target_group_arn=tg_arn,
        )
        if bindings:
            upsert_alias_records(self.cloud, bindings, state.dns_name, state.canonical_zone_id)
            self.reporter.success(f"alias records -> {state.dns_name}")
        return state


__all__ = ["LoadBalancerProvisioner", "LoadBalancerState", "target_group_params"]
