"""Operator input models for spine-devops.

Pydantic v2 models for the three commands (build, deploy, migrate). Each
one carries the flags an operator passes on the command line plus anything
that CI injects through environment variables, and auto-generates a
``run_id`` so every log line of a run can be correlated.

Why This Matters:
    The same deploy runs on a laptop (static keys in the shell) and in CI
    (``PROD_AWS_ACCESS_KEY_ID`` set for the prod job, ``DEV_...`` for the
    dev job). :func:`target_env` resolves ``{ENV}_{NAME}`` before ``{NAME}``
    so one runner can hold credentials for every environment.

Key Concepts:
    target_env(): ``{ENV}_{NAME}`` overrides ``{NAME}``; the winning value is
        also exported unprefixed so child processes (docker, psql) see it.
    AwsCredentials: Static key/secret or the implicit role chain.
    CiMetadata: ``CI_COMMIT_*`` / ``CI_JOB_*`` / ``CI_PIPELINE_*`` values that
        end up in the task definition.
    BuildConfig / DeployConfig / MigrateConfig: Per-command inputs with a
        ``from_env(**overrides)`` constructor.

Architecture Decisions:
    - Override precedence: kwargs > env vars > field defaults.
    - Credentials are resolved lazily through ``AwsCredentials.from_env`` so
      descriptor validation errors surface before credential errors.
    - Secrets use pydantic ``SecretStr`` and never appear in ``model_dump``.

Related Modules:
    - :mod:`spine_devops.deploy.descriptor` - Built from these configs
    - :mod:`spine_devops.deploy.workflow` - Consumes them
    - :mod:`spine_devops.cli.devops` - Populates them from CLI flags

Tags:
    config, pydantic, environment, credentials, ci
"""

from __future__ import annotations

import os
import uuid
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

from spine_devops.core.errors import CredentialsError

_TRUE = ("true", "1", "yes")


def target_env(env: str, name: str) -> str:
    """Return ``{ENV}_{NAME}`` if set, else ``{NAME}``, else ``""``.

    When the prefixed variable wins, the unprefixed variable is updated to
    the same value for the remainder of the process.
    """
    prefixed = f"{env.upper()}_{name}"
    value = os.environ.get(prefixed, "")
    if value:
        os.environ[name] = value
        return value
    return os.environ.get(name, "")


def _env_bool(env: str, name: str) -> bool | None:
    value = target_env(env, name)
    if not value:
        return None
    return value.lower() in _TRUE


class AwsCredentials(BaseModel):
    """AWS auth source for a run."""

    access_key_id: str | None = Field(default=None, description="Static access key id")
    secret_access_key: SecretStr | None = Field(default=None, description="Static secret key")
    region: str = Field(description="Region every client is bound to")
    use_role: bool = Field(default=False, description="Use the implicit role chain instead of static keys")

    @classmethod
    def from_env(cls, env: str) -> AwsCredentials:
        """Load credentials from ``AWS_*`` variables (``{ENV}_`` prefix wins).

        Raises:
            CredentialsError: no region, or neither static keys nor ``AWS_USE_ROLE``.
        """
        region = target_env(env, "AWS_REGION") or target_env(env, "AWS_DEFAULT_REGION")
        use_role = (_env_bool(env, "AWS_USE_ROLE") or False)
        if not region:
            raise CredentialsError(f"AWS_REGION (or {env.upper()}_AWS_REGION) must be set")
        if use_role:
            return cls(region=region, use_role=True)

        key_id = target_env(env, "AWS_ACCESS_KEY_ID")
        secret = target_env(env, "AWS_SECRET_ACCESS_KEY")
        if not key_id or not secret:
            raise CredentialsError(
                f"AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY (or {env.upper()}_ prefixed) "
                "must be set unless AWS_USE_ROLE=true"
            )
        return cls(access_key_id=key_id, secret_access_key=SecretStr(secret), region=region)


class CiMetadata(BaseModel):
    """Build provenance copied into the task definition's ``{CI_*}`` placeholders."""

    commit_ref_name: str = ""
    commit_ref_slug: str = ""
    commit_sha: str = ""
    commit_tag: str = ""
    commit_title: str = ""
    commit_description: str = ""
    job_id: str = ""
    job_url: str = ""
    pipeline_id: str = ""
    pipeline_url: str = ""

    @classmethod
    def from_env(cls) -> CiMetadata:
        """Read ``CI_*`` variables; ``BUILDINFO_CI_*`` wins when present."""
        values: dict[str, str] = {}
        for field_name in cls.model_fields:
            name = f"CI_{field_name.upper()}"
            values[field_name] = os.environ.get(f"BUILDINFO_{name}") or os.environ.get(name, "")
        return cls(**values)

    @property
    def commit(self) -> str:
        """Commit SHA or, failing that, the branch/ref name."""
        return self.commit_sha or self.commit_ref_name


class _CommandConfig(BaseModel):
    """Fields shared by build and deploy."""

    service: str = Field(description="Service name, e.g. web-api")
    env: str = Field(description="Target environment: dev, stage or prod")
    dockerfile: Path | None = Field(default=None, description="Dockerfile; searched under cmd/ and tools/ when unset")
    project_root: Path | None = Field(default=None, description="Project root; found by walking up when unset")
    project_name: str | None = Field(default=None, description="Project name; root directory name when unset")
    ci: CiMetadata = Field(default_factory=CiMetadata, description="CI provenance")
    verbose: bool = Field(default=False, description="Enable verbose output")
    run_id: str = Field(default="", description="Unique run identifier (auto-generated)")

    @field_validator("env")
    @classmethod
    def _lower_env(cls, value: str) -> str:
        return value.strip().lower()


class BuildConfig(_CommandConfig):
    """Inputs of ``spine-devops build``.

    Example::

        config = BuildConfig(service="web-api", env="dev", no_push=True)
    """

    no_cache: bool = Field(default=False, description="Pass --no-cache to docker build")
    no_push: bool = Field(default=False, description="Skip docker push after build")
    max_images: int = Field(default=1000, ge=1, description="Registry retention (AWS_REPOSITORY_MAX_IMAGES)")

    @model_validator(mode="after")
    def _set_defaults(self) -> BuildConfig:
        if not self.run_id:
            self.run_id = uuid.uuid4().hex[:12]
        return self

    @classmethod
    def from_env(cls, **overrides: Any) -> BuildConfig:
        """Create config from environment variables and keyword overrides."""
        env = overrides.get("env") or os.environ.get("ENV", "dev")
        values: dict[str, Any] = {"ci": CiMetadata.from_env()}
        max_images = target_env(env, "AWS_REPOSITORY_MAX_IMAGES")
        if max_images:
            values["max_images"] = int(max_images)
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class DeployConfig(_CommandConfig):
    """Inputs of ``spine-devops deploy``.

    Example::

        config = DeployConfig(
            service="web-api",
            env="prod",
            enable_https=True,
            host_names=["api.acme.test"],
            enable_elb=True,
        )
    """

    enable_https: bool = Field(default=False, description="Terminate TLS (at the LB, or at the task without one)")
    primary_host: str | None = Field(default=None, description="Primary hostname; first host name when unset")
    host_names: list[str] = Field(default_factory=list, description="Alias hostnames")
    private_bucket: str | None = Field(default=None, description="Private bucket; {project}-private when unset")
    public_bucket: str | None = Field(default=None, description="Public bucket; {project}-public when unset")
    public_bucket_cdn: bool | None = Field(default=None, description="Front the public bucket with a CDN (prod default)")
    enable_elb: bool = Field(default=False, description="Put the service behind a load balancer")
    enable_database: bool = Field(default=False, description="Provision the shared RDS instance")
    enable_cache: bool = Field(default=False, description="Provision the shared cache cluster")
    enable_discovery: bool = Field(default=True, description="Register the service in a private DNS namespace")
    static_files_s3: bool = Field(default=False, description="Upload the service static dir to the public bucket")
    static_files_img_resize: bool = Field(default=False, description="Enable image resizing for static files")
    assign_public_ip: bool = Field(default=True, description="assignPublicIp on the task ENIs")
    desired_count: int = Field(default=1, ge=1, description="Desired task count for a new service")
    recreate_service: bool = Field(default=False, description="Force delete and re-create of the service")
    migrator_security_group: str | None = Field(
        default="gitlab-runner",
        description="Security group of the host that runs schema migrations",
    )
    credentials: AwsCredentials | None = Field(default=None, description="Resolved lazily from env when unset")

    @field_validator("host_names", mode="before")
    @classmethod
    def _split_hosts(cls, value: Any) -> Any:
        # A single comma-separated value is common in CI variables.
        if isinstance(value, str):
            value = [value]
        if isinstance(value, list):
            hosts: list[str] = []
            for item in value:
                hosts.extend(h.strip() for h in str(item).split(",") if h.strip())
            return hosts
        return value

    @model_validator(mode="after")
    def _set_defaults(self) -> DeployConfig:
        if not self.run_id:
            self.run_id = uuid.uuid4().hex[:12]
        return self

    @classmethod
    def from_env(cls, **overrides: Any) -> DeployConfig:
        """Create config from environment variables and keyword overrides."""
        env = overrides.get("env") or os.environ.get("ENV", "dev")
        env_map = {
            "private_bucket": "AWS_S3_BUCKET_PRIVATE",
            "public_bucket": "AWS_S3_BUCKET_PUBLIC",
            "primary_host": "HOST_PRIMARY",
            "host_names": "HOST_NAMES",
            "enable_https": "HTTPS_ENABLED",
            "enable_elb": "ELB_ENABLED",
            "enable_database": "DB_ENABLED",
            "enable_cache": "CACHE_ENABLED",
        }
        values: dict[str, Any] = {"ci": CiMetadata.from_env()}
        for field_name, env_var in env_map.items():
            env_val = target_env(env, env_var)
            if not env_val:
                continue
            if field_name.startswith("enable_"):
                values[field_name] = env_val.lower() in _TRUE
            else:
                values[field_name] = env_val
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class MigrateConfig(BaseModel):
    """Inputs of ``spine-devops migrate``."""

    env: str = Field(description="Target environment: dev, stage or prod")
    project_root: Path | None = Field(default=None, description="Project root; found by walking up when unset")
    project_name: str | None = Field(default=None, description="Project name; root directory name when unset")
    migrations_dir: Path | None = Field(default=None, description="Directory of *.sql files")
    credentials: AwsCredentials | None = Field(default=None, description="Resolved lazily from env when unset")
    run_id: str = Field(default="", description="Unique run identifier (auto-generated)")

    @model_validator(mode="after")
    def _set_defaults(self) -> MigrateConfig:
        if not self.run_id:
            self.run_id = uuid.uuid4().hex[:12]
        return self

    @classmethod
    def from_env(cls, **overrides: Any) -> MigrateConfig:
        """Create config from environment variables and keyword overrides."""
        values: dict[str, Any] = {}
        if os.environ.get("SPINE_DEVOPS_MIGRATIONS_DIR"):
            values["migrations_dir"] = Path(os.environ["SPINE_DEVOPS_MIGRATIONS_DIR"])
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


__all__ = [
    "AwsCredentials",
    "BuildConfig",
    "CiMetadata",
    "DeployConfig",
    "MigrateConfig",
    "target_env",
]
