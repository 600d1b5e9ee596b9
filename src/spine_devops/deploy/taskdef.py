"""Task definition builder.

Turns the service's JSON template into a registered task-definition
revision:

1. Locate ``ecs-task-definition-{env}.json`` (else ``ecs-task-definition.json``)
   in the service directory.
2. Substitute every ``{PLACEHOLDER}`` token in one pass. A token with no
   value is fatal: a literal ``{FOO}`` must never reach the provider.
3. Parse the JSON, drop read-only fields a template copied from
   ``describe-task-definition`` may carry, and fill family, first
   container name and image when absent.
4. Derive task-level ``cpu`` / ``memory`` from the container sums when the
   template omits either.
5. Attach the execution and task role ARNs and register.

Why This Matters:
    The template stays string-level on purpose so it can carry any field
    the provider accepts. The orchestrator owns only the token vocabulary,
    which is why unknown tokens are rejected rather than passed through.

Key Concepts:
    build_placeholders(): Token -> value map for one deploy.
    render_template(): Single-pass substitution, raising
        :class:`~spine_devops.core.errors.PlaceholderUnresolvedError`.
    select_task_size(): Smallest (memory, cpu) pair from the Fargate matrix.
    datadog_api_key(): Env var, then ``{project}/{env}/datadog``, then ``DATADOG``.
    TaskDefinitionBuilder: Ties the above to the ECS API.

Related Modules:
    - :mod:`spine_devops.deploy.iam` - Role ARNs
    - :mod:`spine_devops.deploy.record` - Values substituted into the template
    - :mod:`spine_devops.deploy.service` - Consumes the registered ARN

Tags:
    ecs, task-definition, template, placeholders, fargate
"""

from __future__ import annotations

import base64
import json
import logging
import re
from pathlib import Path
from typing import Any

from botocore.exceptions import ClientError

from spine_devops.core.errors import (
    CloudError,
    DescriptorValidationError,
    PlaceholderUnresolvedError,
    ResourceNotFoundError,
)
from spine_devops.core.secrets import SecretStore
from spine_devops.deploy.cloud import error_code
from spine_devops.deploy.config import CiMetadata, target_env
from spine_devops.deploy.descriptor import EnvironmentDescriptor, ServiceDescriptor, tag_list
from spine_devops.deploy.progress import NullReporter, ProgressReporter
from spine_devops.deploy.record import DeployRecord

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{([A-Z0-9_]+)\}")

# Fargate task sizes: memory tier (MiB) -> permitted CPU units.
FARGATE_SIZES: tuple[tuple[int, tuple[int, ...]], ...] = (
    (512, (256,)),
    (1024, (256, 512)),
    (2048, (256, 512, 1024)),
    (3072, (512, 1024)),
    (4096, (512, 1024, 2048)),
    (5120, (1024, 2048)),
    (6144, (1024, 2048)),
    (7168, (1024, 2048)),
    (8192, (1024, 2048, 4096)),
)

# Keys register_task_definition accepts; anything else in a template is dropped.
REGISTER_KEYS = frozenset({
    "family",
    "taskRoleArn",
    "executionRoleArn",
    "networkMode",
    "containerDefinitions",
    "volumes",
    "placementConstraints",
    "requiresCompatibilities",
    "cpu",
    "memory",
    "tags",
    "pidMode",
    "ipcMode",
    "proxyConfiguration",
    "inferenceAccelerators",
    "ephemeralStorage",
    "runtimePlatform",
})

DATADOG_SECRET = "DATADOG"


def _flag(value: bool) -> str:
    return "true" if value else "false"


def _json_escape(value: str) -> str:
    """Escape ``value`` for embedding inside a JSON string literal."""
    return json.dumps(value)[1:-1]


def encode_zones(zones: dict[str, list[str]]) -> str:
    """Unpadded base64url of the ``{zoneId: [fqdn...]}`` JSON."""
    raw = json.dumps(zones, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def datadog_api_key(env: str, store: SecretStore | None, secret_id: str) -> str:
    """Resolve the Datadog API key; empty when none is configured.

    Secrets may hold the bare key or a JSON object with ``DD_API_KEY``.
    """
    key = target_env(env, "DD_API_KEY")
    if key or store is None:
        return key

    for secret in (secret_id, DATADOG_SECRET):
        raw = store.get(secret)
        if not raw:
            continue
        raw = raw.strip()
        if raw.startswith("{"):
            try:
                raw = str(json.loads(raw).get("DD_API_KEY", ""))
            except json.JSONDecodeError:
                logger.warning("datadog.secret_unparseable", extra={"secret_id": secret})
                continue
        if raw:
            return raw
    return ""


def build_placeholders(
    environment: EnvironmentDescriptor,
    service: ServiceDescriptor,
    record: DeployRecord,
    ci: CiMetadata,
) -> dict[str, str]:
    """Values for every token a task template may use."""
    storage = environment.storage
    lb = service.load_balancer
    values: dict[str, str] = {
        "SERVICE": service.service_name,
        "RELEASE_IMAGE": record.release_image,
        "ECS_CLUSTER": service.cluster.cluster_name,
        "ECS_SERVICE": service.ecs_service_name,
        "AWS_REGION": environment.region,
        "AWS_LOGS_GROUP": record.log_group_name or service.cluster.log_group_name,
        "AWS_S3_BUCKET_PRIVATE": storage.private.name if storage.private else "",
        "AWS_S3_BUCKET_PUBLIC": storage.public.name if storage.public else "",
        "ENV": environment.env,
        "DATADOG_APIKEY": record.datadog_api_key,
        # The agent sidecar must not take the task down when it has no key.
        "DATADOG_ESSENTIAL": _flag(bool(record.datadog_api_key)),
        "HTTP_HOST": "0.0.0.0:80",
        "HTTPS_HOST": "0.0.0.0:443" if service.enable_https and lb is None else "",
        "HTTPS_ENABLED": _flag(service.enable_https),
        "APP_PROJECT": environment.project_name,
        "APP_BASE_URL": "",
        "HOST_PRIMARY": service.primary_host or "",
        "HOST_NAMES": ",".join(service.alias_hosts),
        "STATIC_FILES_S3_ENABLED": _flag(service.static_files_enabled),
        "STATIC_FILES_S3_PREFIX": service.static_files_prefix,
        "STATIC_FILES_CLOUDFRONT_ENABLED": _flag(bool(record.cdn_domain)),
        "STATIC_FILES_IMG_RESIZE_ENABLED": _flag(service.static_files_img_resize),
        "CACHE_HOST": record.cache_host,
        "DB_HOST": "",
        "DB_USER": "",
        "DB_PASS": "",
        "DB_DATABASE": "",
        "DB_DRIVER": "",
        "DB_DISABLE_TLS": "",
        "ROUTE53_ZONES": "",
        "ROUTE53_UPDATE_TASK_IPS": "false",
        "CI_COMMIT_REF_NAME": ci.commit_ref_name,
        "CI_COMMIT_REF_SLUG": ci.commit_ref_slug,
        "CI_COMMIT_SHA": ci.commit_sha,
        "CI_COMMIT_TAG": ci.commit_tag,
        "CI_COMMIT_TITLE": ci.commit_title,
        "CI_COMMIT_DESCRIPTION": ci.commit_description,
        "CI_JOB_ID": ci.job_id,
        "CI_JOB_URL": ci.job_url,
        "CI_PIPELINE_ID": ci.pipeline_id,
        "CI_PIPELINE_URL": ci.pipeline_url,
    }
    # Older templates spell the job/pipeline tokens with a COMMIT_ infix.
    for name in ("JOB_ID", "JOB_URL", "PIPELINE_ID", "PIPELINE_URL"):
        values[f"CI_COMMIT_{name}"] = values[f"CI_{name}"]

    if service.primary_host:
        scheme = "https" if service.enable_https else "http"
        values["APP_BASE_URL"] = f"{scheme}://{service.primary_host}/"

    creds = record.db_credentials
    if creds is not None:
        values.update({
            "DB_HOST": creds.host,
            "DB_USER": creds.user,
            "DB_PASS": creds.pass_,
            "DB_DATABASE": creds.database,
            "DB_DRIVER": creds.driver,
            "DB_DISABLE_TLS": _flag(creds.disable_tls),
        })

    zones = record.zones_map()
    if zones:
        values["ROUTE53_ZONES"] = encode_zones(zones)
        values["ROUTE53_UPDATE_TASK_IPS"] = _flag(lb is None)
    return values


def render_template(template: str, values: dict[str, str], source: str | None = None) -> str:
    """Replace every ``{TOKEN}`` in one pass.

    Substituted values are JSON-escaped and never re-scanned, so a value
    that itself looks like ``{TOKEN}`` is left as data.
    """
    unresolved: list[str] = []

    def replace(match: re.Match[str]) -> str:
        token = match.group(1)
        if token not in values:
            unresolved.append(match.group(0))
            return match.group(0)
        return _json_escape(values[token])

    rendered = PLACEHOLDER_RE.sub(replace, template)
    if unresolved:
        raise PlaceholderUnresolvedError(unresolved, template=source)
    return rendered


def container_totals(containers: list[dict[str, Any]]) -> tuple[int, int]:
    """``(memory, cpu)`` summed over containers; an unset value counts as 1."""
    memory = cpu = 0
    for container in containers:
        memory += int(container.get("memory") or container.get("memoryReservation") or 1)
        cpu += int(container.get("cpu") or 1)
    return memory, cpu


def select_task_size(memory: int, cpu: int) -> tuple[int, int]:
    """Smallest ``(memory, cpu)`` Fargate size covering both totals."""
    for tier_memory, cpus in FARGATE_SIZES:
        if tier_memory < memory:
            continue
        for tier_cpu in cpus:
            if tier_cpu >= cpu:
                return tier_memory, tier_cpu
    raise DescriptorValidationError(
        f"No Fargate task size fits memory {memory} MiB and cpu {cpu} units",
        field="containerDefinitions",
    )


class TaskDefinitionBuilder:
    """Renders, sizes and registers a task definition for one service."""

    def __init__(
        self,
        cloud: Any,
        environment: EnvironmentDescriptor,
        service: ServiceDescriptor,
        *,
        reporter: ProgressReporter | None = None,
    ) -> None:
        self.cloud = cloud
        self.environment = environment
        self.service = service
        self.reporter = reporter or NullReporter()

    def find_template(self) -> Path:
        candidates = self.service.task_definition_candidates(self.environment.env)
        for path in candidates:
            if path.is_file():
                return path
        raise ResourceNotFoundError(
            "task definition template", str(candidates[-1]),
            message="Failed to find task definition template, tried: "
                    + ", ".join(str(p) for p in candidates),
        ).with_context(component="taskdef")

    def build_input(self, rendered: str, release_image: str, source: str | None = None) -> dict[str, Any]:
        try:
            document = json.loads(rendered)
        except json.JSONDecodeError as exc:
            raise DescriptorValidationError(
                f"Task definition template is not valid JSON: {exc}", field=source
            ) from exc
        if "taskDefinition" in document and isinstance(document["taskDefinition"], dict):
            document = document["taskDefinition"]

        task = {k: v for k, v in document.items() if k in REGISTER_KEYS}
        task.setdefault("family", self.service.service_name)
        task.setdefault("networkMode", "awsvpc")
        task.setdefault("requiresCompatibilities", ["FARGATE"])

        containers = task.get("containerDefinitions") or []
        if not containers:
            raise DescriptorValidationError("Task definition has no container definitions",
                                            field="containerDefinitions")
        containers[0].setdefault("name", self.service.ecs_service_name)
        if not containers[0].get("image"):
            containers[0]["image"] = release_image

        if not task.get("cpu") or not task.get("memory"):
            total_memory, total_cpu = container_totals(containers)
            memory, cpu = select_task_size(total_memory, total_cpu)
            task["memory"] = str(memory)
            task["cpu"] = str(cpu)
            logger.info("taskdef.size_selected", extra={"total_memory": total_memory, "total_cpu": total_cpu,
                                                        "memory": memory, "cpu": cpu})

        tags = [t for t in task.get("tags", []) if t.get("key") not in self.environment.tags]
        task["tags"] = tags + [{"key": t["Key"], "value": t["Value"]} for t in tag_list(self.environment.tags)]
        return task

    def register(self, task: dict[str, Any]) -> str:
        try:
            res = self.cloud.client("ecs").register_task_definition(**task)
        except ClientError as exc:
            raise CloudError(
                f"Failed to register task definition '{task.get('family')}'", code=error_code(exc), cause=exc
            ).with_context(component="taskdef", resource=task.get("family")) from exc
        arn = res["taskDefinition"]["taskDefinitionArn"]
        logger.info("taskdef.registered", extra={"family": task.get("family"), "arn": arn})
        return arn

    def run(self, record: DeployRecord, ci: CiMetadata) -> str:
        """Render, size and register; returns the new revision ARN."""
        path = self.find_template()
        values = build_placeholders(self.environment, self.service, record, ci)
        rendered = render_template(path.read_text(encoding="utf-8"), values, source=str(path))
        task = self.build_input(rendered, record.release_image, source=str(path))
        if record.execution_role_arn:
            task["executionRoleArn"] = record.execution_role_arn
        if record.task_role_arn:
            task["taskRoleArn"] = record.task_role_arn

        arn = self.register(task)
        self.reporter.success(f"task definition {arn.rsplit('/', 1)[-1]}")
        return arn


__all__ = [
    "FARGATE_SIZES",
    "TaskDefinitionBuilder",
    "build_placeholders",
    "container_totals",
    "datadog_api_key",
    "encode_zones",
    "render_template",
    "select_task_size",
]
