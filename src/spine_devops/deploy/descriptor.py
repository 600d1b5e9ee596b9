"""Environment and service descriptors.

A descriptor names every cloud resource one deployment owns. All names are
derived from the project name, the environment tag and the service name, so
two invocations with the same inputs address exactly the same resources and
a re-run converges instead of duplicating.

Why This Matters:
    The orchestrator keeps no state of its own. The only thing that ties
    this run's security group to last week's is that both are called
    ``{project}-{env}``. Naming therefore lives in one pure module, with no
    network access, and is validated before any API call is made.

Key Concepts:
    EnvironmentDescriptor: Project-wide resources shared by every service of
        an environment (registry, security group, buckets, DB, cache).
    ServiceDescriptor: One deployable service (cluster, roles, LB, discovery,
        task template, desired count).
    release_tag(): ``{env}-{service}-{commit8|ref}``, pure and deterministic.
    build_environment() / build_service(): Derive both descriptors from a
        :class:`~spine_devops.deploy.config.DeployConfig`.

Architecture Decisions:
    - Frozen dataclasses (not Pydantic): descriptors are derived values, not
      user input; user input is validated on the config models.
    - Every owned resource carries ``project`` and ``env`` tags taken from
      :attr:`EnvironmentDescriptor.tags`.
    - Validation is explicit (:meth:`ServiceDescriptor.validate`) and raises
      :class:`~spine_devops.core.errors.DescriptorValidationError`.

Related Modules:
    - :mod:`spine_devops.deploy.config` - Operator input
    - :mod:`spine_devops.deploy.record` - Values produced during a run
    - :mod:`spine_devops.deploy.workflow` - Consumes both descriptors

Tags:
    descriptor, naming, validation, frozen-dataclass, deployment
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from spine_devops.core.errors import DescriptorValidationError

ENVS = ("dev", "stage", "prod")
TAG_PROJECT = "project"
TAG_ENV = "env"

PROJECT_NAME_RE = re.compile(r"^[a-z0-9-]+$")

# Default prefix of the temporary area in both buckets.
TEMP_PREFIX = "tmp/"
PUBLIC_KEY_PREFIX = "/public"

EXECUTION_ROLE_POLICY_ARN = "arn:aws:iam::aws:policy/service-role/AmazonECSTaskExecutionRolePolicy"

ECS_TASKS_ASSUME_ROLE = json.dumps({
    "Version": "2012-10-17",
    "Statement": [{
        "Effect": "Allow",
        "Principal": {"Service": ["ecs-tasks.amazonaws.com"]},
        "Action": ["sts:AssumeRole"],
    }],
})

DEFAULT_TASK_POLICY_STATEMENTS: tuple[dict[str, Any], ...] = (
    {
        "Sid": "DefaultServiceAccess",
        "Effect": "Allow",
        "Action": [
            "s3:HeadBucket",
            "s3:ListObjects",
            "s3:PutObject",
            "s3:PutObjectAcl",
            "cloudfront:ListDistributions",
            "ec2:DescribeNetworkInterfaces",
            "ec2:DeleteNetworkInterface",
            "ecs:ListTasks",
            "ecs:DescribeServices",
            "ecs:DescribeTasks",
            "route53:ListHostedZones",
            "route53:ListResourceRecordSets",
            "route53:ChangeResourceRecordSets",
            "ecs:UpdateService",
            "ses:SendEmail",
            "ses:ListIdentities",
            "secretsmanager:ListSecretVersionIds",
            "secretsmanager:GetSecretValue",
            "secretsmanager:CreateSecret",
            "secretsmanager:UpdateSecret",
            "secretsmanager:RestoreSecret",
            "secretsmanager:DeleteSecret",
        ],
        "Resource": "*",
    },
    {
        "Sid": "ServiceInvokeLambda",
        "Effect": "Allow",
        "Action": [
            "iam:GetRole",
            "lambda:InvokeFunction",
            "lambda:ListVersionsByFunction",
            "lambda:GetFunction",
            "lambda:InvokeAsync",
            "lambda:GetFunctionConfiguration",
            "iam:PassRole",
            "lambda:GetAlias",
            "lambda:GetPolicy",
        ],
        "Resource": ["arn:aws:iam:::role/*", "arn:aws:lambda:::function:*"],
    },
    {
        "Sid": "datadoglambda",
        "Effect": "Allow",
        "Action": [
            "cloudwatch:Get*",
            "cloudwatch:List*",
            "ec2:Describe*",
            "support:*",
            "tag:GetResources",
            "tag:GetTagKeys",
            "tag:GetTagValues",
        ],
        "Resource": "*",
    },
)


def camel(value: str) -> str:
    """``acme-corp`` -> ``AcmeCorp``."""
    return "".join(part[:1].upper() + part[1:] for part in re.split(r"[-_.\s]+", value) if part)


def release_tag(env: str, service: str, commit: str = "") -> str:
    """Deterministic image label for (env, service, commit).

    A 40-character SHA is shortened to 8 characters; anything else (a
    branch or tag name) is appended as-is. Without a commit the tag is
    ``{env}-{service}``.
    """
    tag = f"{env}-{service}"
    if not commit:
        return tag
    if re.fullmatch(r"[0-9a-f]{8,}", commit):
        return f"{tag}-{commit[:8]}"
    return f"{tag}-{commit}"


def tag_list(tags: dict[str, str]) -> list[dict[str, str]]:
    """``{"k": "v"}`` -> ``[{"Key": "k", "Value": "v"}]``."""
    return [{"Key": k, "Value": v} for k, v in tags.items()]


# ---------------------------------------------------------------------------
# Environment-level specs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RegistrySpec:
    """Container registry repository."""

    repository_name: str
    max_images: int = 1000


@dataclass(frozen=True)
class NetworkSpec:
    """Security group plus the optional migration-host group."""

    security_group_name: str
    description: str = ""
    migrator_security_group_name: str | None = None
    """Granted full access when a database is declared."""


@dataclass(frozen=True)
class BucketSpec:
    """One object-storage bucket and the configuration applied to it."""

    name: str
    is_public: bool = False
    temp_prefix: str = TEMP_PREFIX
    lifecycle_rules: tuple[dict[str, Any], ...] = ()
    cors_rules: tuple[dict[str, Any], ...] = ()
    block_public_access: bool = True
    """All four public-access blocks. Only an explicit ``False`` turns them off."""
    policy: str | None = None


@dataclass(frozen=True)
class CdnSpec:
    """CDN distribution in front of the public bucket."""

    origin_path: str = PUBLIC_KEY_PREFIX
    default_ttl: int = 1209600
    min_ttl: int = 604800
    max_ttl: int = 31536000
    caller_reference: str = "devops-deploy"


@dataclass(frozen=True)
class StorageSpec:
    """Public and private buckets, key prefixes, and the optional CDN."""

    public: BucketSpec | None = None
    private: BucketSpec | None = None
    public_key_prefix: str = PUBLIC_KEY_PREFIX
    temp_prefix: str = TEMP_PREFIX
    cdn: CdnSpec | None = None

    @property
    def cdn_enabled(self) -> bool:
        return self.cdn is not None and self.public is not None


@dataclass(frozen=True)
class DatabaseSpec:
    """Shared RDS instance."""

    identifier: str
    db_name: str = "shared"
    engine: str = "postgres"
    engine_version: str | None = None
    master_username: str = "god"
    instance_class: str = "db.t2.small"
    allocated_gb: int = 20
    port: int = 5432
    encrypted: bool = True
    backup_days: int = 7
    multi_az: bool = False
    auto_minor_version_upgrade: bool = True
    copy_tags_to_snapshot: bool = True


@dataclass(frozen=True)
class CacheSpec:
    """Shared cache cluster and its parameter overrides."""

    cluster_id: str
    parameter_group_name: str
    node_type: str = "cache.t2.micro"
    engine: str = "redis"
    engine_version: str = "5.0.4"
    num_nodes: int = 1
    port: int = 6379
    subnet_group: str = "default"
    snapshot_days: int = 7
    auto_minor_version_upgrade: bool = True
    parameters: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class EnvironmentDescriptor:
    """Project-wide resources of one environment."""

    project_name: str
    env: str
    region: str
    registry: RegistrySpec
    network: NetworkSpec
    storage: StorageSpec
    database: DatabaseSpec | None = None
    cache: CacheSpec | None = None

    @property
    def tags(self) -> dict[str, str]:
        return {TAG_PROJECT: self.project_name, TAG_ENV: self.env}

    @property
    def project_name_camel(self) -> str:
        return camel(self.project_name)

    @property
    def env_camel(self) -> str:
        return camel(self.env)

    def secret_id(self, name: str) -> str:
        """Secret id under this environment: ``{project}/{env}/{name}``."""
        return f"{self.project_name}/{self.env}/{name}"

    def validate(self) -> None:
        """Reject descriptors that must not reach the network."""
        if self.env not in ENVS:
            raise DescriptorValidationError(
                f"Invalid env '{self.env}', must be one of {', '.join(ENVS)}", field="env"
            )
        if not PROJECT_NAME_RE.match(self.project_name):
            raise DescriptorValidationError(
                f"Invalid project name '{self.project_name}', must match [a-z0-9-]+",
                field="project_name",
            )
        if not self.region:
            raise DescriptorValidationError("Region is required", field="region")
        if self.storage.private is not None and not self.storage.private.block_public_access:
            raise DescriptorValidationError(
                "The private bucket must block all public access", field="storage.private"
            )


# ---------------------------------------------------------------------------
# Service-level specs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClusterSpec:
    """Container cluster, logging and IAM names for a service."""

    cluster_name: str
    log_group_name: str
    execution_role_name: str
    task_role_name: str
    task_policy_name: str
    execution_role_policy_arns: tuple[str, ...] = (EXECUTION_ROLE_POLICY_ARN,)
    policy_statements: tuple[dict[str, Any], ...] = DEFAULT_TASK_POLICY_STATEMENTS


@dataclass(frozen=True)
class TargetGroupSpec:
    """Load-balancer target group and its health check."""

    name: str
    port: int = 80
    protocol: str = "HTTP"
    target_type: str = "ip"
    health_check_path: str = "/ping"
    health_check_interval: int = 30
    health_check_timeout: int = 5
    healthy_threshold: int = 3
    unhealthy_threshold: int = 3
    matcher: str = "200"


@dataclass(frozen=True)
class ListenerSpec:
    port: int
    protocol: str


@dataclass(frozen=True)
class LoadBalancerSpec:
    """Application load balancer in front of the service."""

    name: str
    target_group: TargetGroupSpec
    listeners: tuple[ListenerSpec, ...] = (ListenerSpec(80, "HTTP"),)
    scheme: str = "internet-facing"
    deregistration_delay_sec: int = 0

    @property
    def https(self) -> bool:
        return any(listener.protocol == "HTTPS" for listener in self.listeners)


@dataclass(frozen=True)
class DiscoverySpec:
    """Private DNS namespace and service registry entry."""

    namespace_name: str
    service_name: str
    dns_ttl: int = 300
    failure_threshold: int = 3


@dataclass(frozen=True)
class ServiceDescriptor:
    """One deployable service on top of an :class:`EnvironmentDescriptor`."""

    service_name: str
    ecs_service_name: str
    service_dir: Path
    dockerfile_path: Path
    cluster: ClusterSpec
    enable_https: bool = False
    primary_host: str | None = None
    alias_hosts: tuple[str, ...] = ()
    load_balancer: LoadBalancerSpec | None = None
    discovery: DiscoverySpec | None = None
    desired_count: int = 1
    min_healthy_percent: int = 100
    max_percent: int = 200
    health_check_grace_sec: int = 60
    recreate: bool = False
    assign_public_ip: bool = True
    static_files_enabled: bool = False
    static_files_prefix: str = ""
    static_files_img_resize: bool = False
    primary_host_explicit: bool = False
    """``primary_host`` came from the operator rather than the first host name."""

    @property
    def static_dir(self) -> Path:
        return self.service_dir / "static"

    @property
    def hosts(self) -> list[str]:
        """Primary host followed by aliases, without duplicates."""
        names: list[str] = []
        for host in ([self.primary_host] if self.primary_host else []) + list(self.alias_hosts):
            if host not in names:
                names.append(host)
        return names

    def task_definition_candidates(self, env: str) -> list[Path]:
        """Template search order: env-specific file first."""
        return [
            self.service_dir / f"ecs-task-definition-{env}.json",
            self.service_dir / "ecs-task-definition.json",
        ]

    def validate(self) -> None:
        if self.primary_host and self.primary_host_explicit and not self.enable_https:
            raise DescriptorValidationError(
                f"Primary host '{self.primary_host}' requires enable_https=true", field="primary_host"
            )
        if self.enable_https and not self.primary_host:
            raise DescriptorValidationError(
                "HTTPS requires a primary host or at least one host name", field="primary_host"
            )
        if self.desired_count < 1:
            raise DescriptorValidationError("desired_count must be at least 1", field="desired_count")
        if self.load_balancer is not None and len(self.load_balancer.name) > 32:
            raise DescriptorValidationError(
                f"Load balancer name '{self.load_balancer.name}' exceeds 32 characters",
                field="load_balancer.name",
            )


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def temp_lifecycle_rule(prefix: str = TEMP_PREFIX) -> dict[str, Any]:
    """Expire temporary objects (and abandoned multipart uploads) after a day."""
    return {
        "ID": f"Rule for : {prefix}",
        "Status": "Enabled",
        "Filter": {"Prefix": prefix},
        "Expiration": {"Days": 1},
        "AbortIncompleteMultipartUpload": {"DaysAfterInitiation": 1},
    }


def log_export_policy(bucket: str, temp_prefix: str, region: str) -> str:
    """Bucket policy letting the regional logs service export into ``bucket``."""
    resource = f"{bucket}/{temp_prefix}".strip("/")
    principal = {"Service": f"logs.{region}.amazonaws.com"}
    return json.dumps({
        "Version": "2012-10-17",
        "Statement": [
            {
                "Action": "s3:GetBucketAcl",
                "Effect": "Allow",
                "Resource": f"arn:aws:s3:::{bucket}",
                "Principal": principal,
            },
            {
                "Action": "s3:PutObject",
                "Effect": "Allow",
                "Resource": f"arn:aws:s3:::{resource}/*",
                "Condition": {"StringEquals": {"s3:x-amz-acl": "bucket-owner-full-control"}},
                "Principal": principal,
            },
        ],
    })


def build_environment(config: Any, project_name: str, region: str, max_images: int = 1000) -> EnvironmentDescriptor:
    """Derive the :class:`EnvironmentDescriptor` for a deploy config."""
    env = config.env
    name = f"{project_name}-{env}"

    public = BucketSpec(
        name=config.public_bucket or f"{project_name}-public",
        is_public=True,
        lifecycle_rules=(temp_lifecycle_rule(),),
        cors_rules=({"AllowedMethods": ["GET", "POST"], "AllowedOrigins": ["*"]},),
        block_public_access=False,
    )
    private_name = config.private_bucket or f"{project_name}-private"
    private = BucketSpec(
        name=private_name,
        lifecycle_rules=(temp_lifecycle_rule(),),
        policy=log_export_policy(private_name, TEMP_PREFIX, region),
    )
    cdn_enabled = config.public_bucket_cdn if config.public_bucket_cdn is not None else env == "prod"

    database = DatabaseSpec(identifier=name) if config.enable_database else None
    cache = None
    if config.enable_cache:
        engine, version = "redis", "5.0.4"
        cache = CacheSpec(
            cluster_id=name,
            parameter_group_name=f"{camel(project_name).lower()}-{engine}{version.replace('.', '')}",
            engine=engine,
            engine_version=version,
            parameters={"maxmemory-policy": "allkeys-lru"},
        )

    descriptor = EnvironmentDescriptor(
        project_name=project_name,
        env=env,
        region=region,
        registry=RegistrySpec(repository_name=project_name, max_images=max_images),
        network=NetworkSpec(
            security_group_name=name,
            description=f"Security group for {project_name} services running on ECS",
            migrator_security_group_name=config.migrator_security_group if database else None,
        ),
        storage=StorageSpec(
            public=public,
            private=private,
            cdn=CdnSpec() if cdn_enabled else None,
        ),
        database=database,
        cache=cache,
    )
    descriptor.validate()
    return descriptor


def build_service(
    config: Any,
    environment: EnvironmentDescriptor,
    dockerfile: Path,
    tag: str,
) -> ServiceDescriptor:
    """Derive the :class:`ServiceDescriptor` for a deploy config."""
    env = environment.env
    service = config.service
    cluster_name = f"{environment.project_name}-{env}"
    ecs_service_name = f"{service}-{env}"

    cluster = ClusterSpec(
        cluster_name=cluster_name,
        log_group_name=f"logs/env_{env}/aws/ecs/cluster_{cluster_name}/service_{service}",
        execution_role_name=f"ecsExecutionRole{environment.project_name_camel}{environment.env_camel}",
        task_role_name=f"ecsTaskRole{environment.project_name_camel}{environment.env_camel}",
        task_policy_name=f"{environment.project_name_camel}{environment.env_camel}Services",
    )

    hosts = list(config.host_names)
    primary = config.primary_host or (hosts[0] if hosts else None)
    aliases = tuple(h for h in hosts if h != primary)

    load_balancer = None
    if config.enable_elb:
        if env in cluster_name or env in service:
            lb_name = f"{cluster_name}-{service}"
        else:
            lb_name = f"{cluster_name}-{service}-{env}"
        listeners = [ListenerSpec(80, "HTTP")]
        if config.enable_https:
            listeners.append(ListenerSpec(443, "HTTPS"))
        load_balancer = LoadBalancerSpec(
            name=lb_name,
            target_group=TargetGroupSpec(name=f"{ecs_service_name}-http"),
            listeners=tuple(listeners),
            deregistration_delay_sec=300 if env == "prod" else 0,
        )

    discovery = None
    if config.enable_discovery:
        discovery = DiscoverySpec(namespace_name=cluster_name, service_name=ecs_service_name)

    static_prefix = ""
    if config.static_files_s3:
        static_prefix = f"{environment.storage.public_key_prefix}/{tag}/static"

    descriptor = ServiceDescriptor(
        service_name=service,
        ecs_service_name=ecs_service_name,
        service_dir=dockerfile.parent,
        dockerfile_path=dockerfile,
        cluster=cluster,
        enable_https=config.enable_https,
        primary_host=primary,
        alias_hosts=aliases,
        load_balancer=load_balancer,
        discovery=discovery,
        desired_count=config.desired_count,
        recreate=config.recreate_service,
        assign_public_ip=config.assign_public_ip,
        static_files_enabled=config.static_files_s3,
        static_files_prefix=static_prefix,
        static_files_img_resize=config.static_files_img_resize,
        primary_host_explicit=bool(config.primary_host),
    )
    descriptor.validate()
    return descriptor


__all__ = [
    "ENVS",
    "BucketSpec",
    "CacheSpec",
    "CdnSpec",
    "ClusterSpec",
    "DatabaseSpec",
    "DiscoverySpec",
    "EnvironmentDescriptor",
    "ListenerSpec",
    "LoadBalancerSpec",
    "NetworkSpec",
    "RegistrySpec",
    "ServiceDescriptor",
    "StorageSpec",
    "TargetGroupSpec",
    "build_environment",
    "build_service",
    "camel",
    "log_export_policy",
    "release_tag",
    "tag_list",
    "temp_lifecycle_rule",
]
