"""Container service deployer.

Creates or updates the service that runs the registered task definition,
then watches the rollout until it is stable or has visibly failed.

Why This Matters:
    A service's load-balancer and service-registry attachments are fixed at
    creation. When the operator toggles either, an update cannot converge
    and the service has to be deleted and created again. Likewise a rollout
    whose tasks keep crashing never becomes "stable"; without watching for
    stopped tasks the deploy would simply hang.

Key Concepts:
    recreate_reason(): Why an existing service must be re-created, or None.
    ServiceDeployer.converge(): delete/re-create or update or create.
    ServiceDeployer.wait_for_stability(): Two workers race under
        ``FIRST_COMPLETED``: the provider's stability waiter, and a ticker
        that inspects stopped tasks of *this* task definition and exports
        their logs. When the stopped count reaches the desired count the
        ticker raises :class:`~spine_devops.core.errors.TaskFailureError`.
    ServiceDeployer.update_task_dns(): Without a load balancer, bound host
        names get A records for the running tasks' public IPs.

Architecture Decisions:
    - Waiters are driven one attempt at a time (``MaxAttempts=1``) so the
      loop can notice the cancel event between attempts. The delay between
      attempts follows :class:`~spine_devops.core.retry.PollIntervals`.
    - The update path never lowers capacity: it keeps the live desired
      count, raised to 1 when a previous teardown left it at 0.
    - Accounts without the long ARN format reject tagged services; the
      create is retried once without tags.

Related Modules:
    - :mod:`spine_devops.deploy.taskdef` - Produces the task definition ARN
    - :mod:`spine_devops.deploy.tasklogs` - Exports stopped-task logs
    - :mod:`spine_devops.deploy.workflow` - Calls converge / wait / DNS in order

Tags:
    ecs, service, rollout, stability, waiter, fargate
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Any

from botocore.exceptions import ClientError, WaiterError

from spine_devops.core.errors import CloudError, ConvergenceTimeoutError, DevopsError, TaskFailureError
from spine_devops.core.retry import PollIntervals, sleep_or_cancel
from spine_devops.deploy.cloud import call_with_retry, error_code, error_message
from spine_devops.deploy.descriptor import ServiceDescriptor, tag_list
from spine_devops.deploy.dns import upsert_a_records
from spine_devops.deploy.progress import NullReporter, ProgressReporter
from spine_devops.deploy.record import DeployRecord
from spine_devops.deploy.tasklogs import TaskLogFetcher

logger = logging.getLogger(__name__)

LONG_ARN_REQUIRED = "ARN and resource ID format must be enabled"


def recreate_reason(
    existing: dict[str, Any],
    *,
    force: bool,
    wants_load_balancer: bool,
    wants_registry: bool,
) -> str | None:
    """Return why ``existing`` cannot be updated in place, else None."""
    if force:
        return "re-create requested"
    has_lb = bool(existing.get("loadBalancers"))
    has_registry = bool(existing.get("serviceRegistries"))
    if wants_load_balancer and not has_lb:
        return "load balancer enabled"
    if not wants_load_balancer and has_lb:
        return "load balancer disabled"
    if wants_registry and not has_registry:
        return "service discovery enabled"
    if not wants_registry and has_registry:
        return "service discovery disabled"
    return None


def describe_stopped_task(task: dict[str, Any]) -> list[str]:
    """Human-readable lines for one stopped task and its containers."""
    lines = []
    for container in task.get("containers", []):
        line = f"container {container.get('name')} exited"
        if container.get("exitCode") is not None:
            line += f" with {container['exitCode']}"
        if container.get("reason"):
            line += f" - {container['reason']}"
        lines.append(line)
    summary = f"task {task['taskArn']} stopped"
    if task.get("stopCode"):
        summary += f" with {task['stopCode']}"
    if task.get("stoppedReason"):
        summary += f" - {task['stoppedReason']}"
    lines.append(summary)
    return lines


class ServiceDeployer:
    def __init__(
        self,
        cloud: Any,
        service: ServiceDescriptor,
        record: DeployRecord,
        *,
        log_fetcher: TaskLogFetcher | None = None,
        reporter: ProgressReporter | None = None,
        cancel: threading.Event | None = None,
        tick_seconds: float = 10.0,
        tags: dict[str, str] | None = None,
        poll: PollIntervals | None = None,
    ) -> None:
        self.cloud = cloud
        self.service = service
        self.record = record
        self.log_fetcher = log_fetcher
        self.reporter = reporter or NullReporter()
        self.cancel = cancel
        self.tick_seconds = tick_seconds
        self.tags = tags or {}
        self.poll = poll or PollIntervals()

    @property
    def ecs(self) -> Any:
        return self.cloud.client("ecs")

    @property
    def cluster(self) -> str:
        return self.service.cluster.cluster_name

    def _fail(self, action: str, exc: ClientError | WaiterError) -> CloudError:
        code = error_code(exc) if isinstance(exc, ClientError) else None
        return CloudError(f"Failed to {action}: {error_message(exc)}", code=code, cause=exc).with_context(
            component="service", resource=self.service.ecs_service_name
        )

    # ------------------------------------------------------------------
    # Lookup and waiters
    # ------------------------------------------------------------------

    def describe_service(self) -> dict[str, Any] | None:
        """Live service, or None when absent or INACTIVE."""
        name = self.service.ecs_service_name
        try:
            res = call_with_retry(self.ecs.describe_services, cluster=self.cluster, services=[name],
                                  component="service", resource=name, cancel=self.cancel)
        except ClientError as exc:
            if error_code(exc) in ("ServiceNotFoundException", "ClusterNotFoundException"):
                return None
            raise self._fail(f"describe service '{name}'", exc) from exc
        for svc in res.get("services", []):
            if svc.get("serviceName") == name and svc.get("status") != "INACTIVE":
                return svc
        return None

    def _wait(self, waiter_name: str, service_arn: str, stop: threading.Event | None = None) -> bool:
        """Drive a service waiter until it succeeds; False if ``stop`` fired first."""
        waiter = self.ecs.get_waiter(waiter_name)
        attempt = 0
        while True:
            if self.cancel is not None and self.cancel.is_set():
                raise ConvergenceTimeoutError(
                    f"Cancelled while waiting for service '{self.service.ecs_service_name}'"
                ).with_context(component="service", resource=service_arn)
            if stop is not None and stop.is_set():
                return False
            config = self.poll.waiter_config(attempt)
            try:
                waiter.wait(cluster=self.cluster, services=[service_arn], WaiterConfig=config)
                return True
            except WaiterError as exc:
                if "Max attempts exceeded" not in str(exc.kwargs.get("reason", "")):
                    raise self._fail(f"wait for service '{self.service.ecs_service_name}' ({waiter_name})",
                                     exc) from exc
            attempt += 1
            if stop is not None:
                stop.wait(config["Delay"])
            else:
                sleep_or_cancel(config["Delay"], self.cancel, f"service {self.service.ecs_service_name}")

    # ------------------------------------------------------------------
    # Converge
    # ------------------------------------------------------------------

    def delete(self, existing: dict[str, Any], force: bool) -> None:
        """Scale to zero, wait, delete and wait for INACTIVE."""
        arn = existing["serviceArn"]
        name = existing["serviceName"]
        try:
            if existing.get("desiredCount", 0) > 0:
                self.ecs.update_service(cluster=self.cluster, service=arn, desiredCount=0)
                logger.info("service.scaled_down", extra={"service": name})
                self._wait("services_stable", arn)
            self.ecs.delete_service(cluster=self.cluster, service=arn, force=force)
        except ClientError as exc:
            raise self._fail(f"delete service '{name}'", exc) from exc
        self._wait("services_inactive", arn)
        logger.info("service.deleted", extra={"service": name})
        self.reporter.success(f"deleted service {name}")

    def update(self, existing: dict[str, Any], task_definition_arn: str) -> dict[str, Any]:
        desired = existing.get("desiredCount") or 1
        params: dict[str, Any] = {
            "cluster": self.cluster,
            "service": existing["serviceName"],
            "desiredCount": desired,
            "taskDefinition": task_definition_arn,
            "forceNewDeployment": False,
        }
        if existing.get("healthCheckGracePeriodSeconds") is not None:
            params["healthCheckGracePeriodSeconds"] = existing["healthCheckGracePeriodSeconds"]
        try:
            svc = self.ecs.update_service(**params)["service"]
        except ClientError as exc:
            raise self._fail(f"update service '{existing['serviceName']}'", exc) from exc
        logger.info("service.updated", extra={"service": svc["serviceName"], "desired_count": desired})
        self.reporter.success(f"updated service {svc['serviceName']}")
        return svc

    def create_params(self, task_definition_arn: str) -> dict[str, Any]:
        spec = self.service
        params: dict[str, Any] = {
            "cluster": self.cluster,
            "serviceName": spec.ecs_service_name,
            "taskDefinition": task_definition_arn,
            "desiredCount": spec.desired_count,
            "launchType": "FARGATE",
            "deploymentConfiguration": {
                "maximumPercent": spec.max_percent,
                "minimumHealthyPercent": spec.min_healthy_percent,
            },
            "networkConfiguration": {
                "awsvpcConfiguration": {
                    "subnets": list(self.record.subnet_ids),
                    "securityGroups": [self.record.security_group_id],
                    "assignPublicIp": "ENABLED" if spec.assign_public_ip else "DISABLED",
                },
            },
            "enableECSManagedTags": False,
            "tags": [{"key": t["Key"], "value": t["Value"]} for t in tag_list(self.tags)],
        }
        if spec.load_balancer is not None and self.record.target_group_arn:
            params["loadBalancers"] = [{
                "targetGroupArn": self.record.target_group_arn,
                "containerName": spec.ecs_service_name,
                "containerPort": spec.load_balancer.target_group.port,
            }]
            params["healthCheckGracePeriodSeconds"] = spec.health_check_grace_sec
        if self.record.service_registry_arn:
            params["serviceRegistries"] = [{"registryArn": self.record.service_registry_arn}]
        return params

    def create(self, task_definition_arn: str) -> dict[str, Any]:
        params = self.create_params(task_definition_arn)
        try:
            try:
                svc = self.ecs.create_service(**params)["service"]
            except ClientError as exc:
                if LONG_ARN_REQUIRED not in error_message(exc):
                    raise
                logger.warning("service.create_untagged", extra={"service": params["serviceName"]})
                params.pop("tags")
                svc = self.ecs.create_service(**params)["service"]
        except ClientError as exc:
            raise self._fail(f"create service '{params['serviceName']}'", exc) from exc
        logger.info("service.created", extra={"service": svc["serviceName"], "arn": svc["serviceArn"]})
        self.reporter.success(f"created service {svc['serviceName']}")
        return svc

    def converge(self, task_definition_arn: str) -> dict[str, Any]:
        """Update, re-create or create the service; returns the service description."""
        existing = self.describe_service()
        if existing is not None:
            reason = recreate_reason(
                existing,
                force=self.service.recreate,
                wants_load_balancer=self.service.load_balancer is not None,
                wants_registry=bool(self.record.service_registry_arn),
            )
            if reason is None:
                return self.update(existing, task_definition_arn)
            logger.info("service.recreate", extra={"service": existing["serviceName"], "reason": reason})
            self.reporter.info(f"re-creating service: {reason}")
            self.delete(existing, force=self.service.recreate)
        return self.create(task_definition_arn)

    # ------------------------------------------------------------------
    # Rollout watch
    # ------------------------------------------------------------------

    def check_stopped_tasks(self, task_definition_arn: str, desired_count: int) -> TaskFailureError | None:
        """Inspect stopped tasks of this revision; a failure once they reach ``desired_count``."""
        name = self.service.ecs_service_name
        arns = self.ecs.list_tasks(cluster=self.cluster, serviceName=name,
                                   desiredStatus="STOPPED").get("taskArns", [])
        if not arns:
            return None
        res = self.ecs.describe_tasks(cluster=self.cluster, tasks=arns)

        # Tasks the provider could not describe carry no revision; reported only.
        for failure in res.get("failures", []):
            line = f"task {failure.get('arn')} failed with {failure.get('reason')}"
            logger.warning("service.task_describe_failed",
                           extra={"task": failure.get("arn"), "reason": failure.get("reason")})
            self.reporter.detail(line)

        stopped: list[str] = []
        log_lines: list[str] = []
        for task in res.get("tasks", []):
            if task.get("taskDefinitionArn") != task_definition_arn:
                continue
            lines = describe_stopped_task(task)
            stopped.append(lines[-1])
            for line in lines:
                self.reporter.detail(line)
            if self.log_fetcher is not None:
                task_logs = self.log_fetcher.fetch(task["taskArn"].rsplit("/", 1)[-1])
                for line in task_logs:
                    self.reporter.detail(line)
                log_lines.extend(task_logs)

        logger.info("service.stopped_tasks", extra={"service": name, "stopped": len(stopped)})
        if len(stopped) >= desired_count:
            return TaskFailureError(
                f"All {desired_count} task(s) of service '{name}' stopped before it became stable",
                stopped_tasks=stopped,
                log_lines=log_lines,
            ).with_context(component="service", resource=task_definition_arn)
        return None

    def _watch_tasks(self, task_definition_arn: str, desired_count: int, stop: threading.Event) -> None:
        while not stop.wait(self.tick_seconds):
            if self.cancel is not None and self.cancel.is_set():
                return
            try:
                failure = self.check_stopped_tasks(task_definition_arn, desired_count)
            except (ClientError, DevopsError) as exc:
                logger.warning("service.task_check_failed", extra={"error": str(exc)})
                continue
            if failure is not None:
                raise failure

    def wait_for_stability(self, svc: dict[str, Any], task_definition_arn: str) -> None:
        """Block until the service is stable, or raise TaskFailureError."""
        stop = threading.Event()
        desired = svc.get("desiredCount") or 1
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="service-watch") as pool:
            stable = pool.submit(self._wait, "services_stable", svc["serviceArn"], stop)
            ticker = pool.submit(self._watch_tasks, task_definition_arn, desired, stop)
            try:
                done, _ = wait([stable, ticker], return_when=FIRST_COMPLETED)
            finally:
                stop.set()
            for future in done:
                future.result()
        if self.cancel is not None and self.cancel.is_set():
            raise ConvergenceTimeoutError(
                f"Cancelled while waiting for service '{svc['serviceName']}'"
            ).with_context(component="service", resource=svc["serviceArn"])
        logger.info("service.stable", extra={"service": svc["serviceName"]})
        self.reporter.success(f"service {svc['serviceName']} stable")

    # ------------------------------------------------------------------
    # Task DNS
    # ------------------------------------------------------------------

    def task_public_ips(self) -> list[str]:
        name = self.service.ecs_service_name
        arns = self.ecs.list_tasks(cluster=self.cluster, serviceName=name,
                                   desiredStatus="RUNNING").get("taskArns", [])
        if not arns:
            return []
        eni_ids: list[str] = []
        for task in self.ecs.describe_tasks(cluster=self.cluster, tasks=arns).get("tasks", []):
            for attachment in task.get("attachments", []):
                if attachment.get("type") != "ElasticNetworkInterface":
                    continue
                for detail in attachment.get("details", []):
                    if detail.get("name") == "networkInterfaceId":
                        eni_ids.append(detail["value"])
        if not eni_ids:
            return []
        res = self.cloud.client("ec2").describe_network_interfaces(NetworkInterfaceIds=eni_ids)
        return [
            eni["Association"]["PublicIp"]
            for eni in res.get("NetworkInterfaces", [])
            if eni.get("Association", {}).get("PublicIp")
        ]

    def update_task_dns(self) -> list[str]:
        """A records for running task IPs; only when no load balancer fronts the service."""
        if self.service.load_balancer is not None or not self.record.zone_bindings:
            return []
        try:
            ips = self.task_public_ips()
        except ClientError as exc:
            raise self._fail("find public IPs of running tasks", exc) from exc
        upsert_a_records(self.cloud, self.record.zone_bindings, ips)
        if ips:
            self.reporter.success("A records -> " + ", ".join(sorted(ips)))
        return ips


__all__ = ["ServiceDeployer", "describe_stopped_task", "recreate_reason"]
