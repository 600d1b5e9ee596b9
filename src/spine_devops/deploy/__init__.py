"""spine-devops deploy: descriptors, provisioners and pipeline runners.

Turns an operator's ``(service, env)`` request into a converged AWS
environment: a registry image, VPC security group, buckets and CDN,
database and cache, DNS and TLS, load balancer, service discovery, IAM
roles, a task definition revision and a stable container service.

Key Concepts:
    BuildConfig / DeployConfig / MigrateConfig: Operator input models with
        ``from_env(**overrides)``.
    EnvironmentDescriptor / ServiceDescriptor: Validated, fully named
        resource plan built before any network call.
    DeployRecord: Outputs one phase hands to the next.
    BuildRunner / DeployRunner / MigrateRunner: Config in, ``DeployResult`` out.

Example:
    >>> from spine_devops.deploy import DeployConfig
    >>> config = DeployConfig(service="web-api", env="DEV")
    >>> config.env
    'dev'
"""

from __future__ import annotations

from spine_devops.deploy.config import (
    AwsCredentials,
    BuildConfig,
    CiMetadata,
    DeployConfig,
    MigrateConfig,
    target_env,
)
from spine_devops.deploy.progress import NullReporter, ProgressReporter
from spine_devops.deploy.record import (
    DBCredentials,
    DeployRecord,
    DeployResult,
    OverallStatus,
    PhaseResult,
    ZoneBinding,
)
from spine_devops.deploy.workflow import BuildRunner, DeployRunner, MigrateRunner

__all__ = [
    "AwsCredentials",
    "BuildConfig",
    "BuildRunner",
    "CiMetadata",
    "DBCredentials",
    "DeployConfig",
    "DeployRecord",
    "DeployResult",
    "DeployRunner",
    "MigrateConfig",
    "MigrateRunner",
    "NullReporter",
    "OverallStatus",
    "PhaseResult",
    "ProgressReporter",
    "ZoneBinding",
    "target_env",
]
