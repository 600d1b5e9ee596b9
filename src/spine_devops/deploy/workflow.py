"""Pipeline runners for spine-devops.

Provides the three runners behind the CLI commands. Each one turns a
config model into a :class:`~spine_devops.deploy.record.DeployResult`:
validation → descriptors → credentials → phases in order → result.

Why This Matters:
    A deploy touches roughly twenty provider APIs. The runner is the one
    place that fixes their order (network before storage before the data
    plane, DNS/TLS before the load balancer, IAM before the task
    definition, the service last), records what each phase produced, and
    turns any failure into a result that names the phase, component and
    resource that broke.

Key Concepts:
    BuildRunner: Config → registry repository, prune, docker build, push.
    DeployRunner: Config → every provisioner in order, then the service.
    MigrateRunner: Config → DB credentials from the secret store → Migrator.
    Phase: Each step is wrapped in :meth:`DeployResult.phase` and a
        :meth:`ProgressReporter.section`, so the operator sees a ✓/✗ outline
        and ``--json`` gets per-phase timings.

Architecture Decisions:
    - Strictly sequential: a phase only reads what earlier phases wrote to
      the :class:`~spine_devops.deploy.record.DeployRecord`.
    - Descriptors are built and validated before credentials are resolved,
      so a bad descriptor fails without any network call.
    - One ``threading.Event`` per run; the CLI sets it on Ctrl-C and every
      wait loop honours it at its next suspension point.
    - Failures are captured into the result (``error``, ``error_details``)
      rather than raised, matching how the CLI renders outcomes.

Related Modules:
    - :mod:`spine_devops.deploy.config` - BuildConfig / DeployConfig / MigrateConfig
    - :mod:`spine_devops.deploy.descriptor` - Resource naming
    - :mod:`spine_devops.deploy.record` - DeployRecord and DeployResult
    - :mod:`spine_devops.cli.devops` - Renders the result

Tags:
    workflow, orchestration, deployment, runner, phases
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Callable

from botocore.exceptions import BotoCoreError, ClientError

from spine_devops.core.errors import (
    ConvergenceTimeoutError,
    DescriptorValidationError,
    DevopsError,
    ResourceNotFoundError,
)
from spine_devops.core.logging import LogContext
from spine_devops.core.secrets import SecretsManagerStore, SecretStore
from spine_devops.core.settings import DevopsSettings, get_settings
from spine_devops.deploy.cache import CacheProvisioner
from spine_devops.deploy.certificates import CertificateProvisioner
from spine_devops.deploy.cloud import CloudProvider, classify
from spine_devops.deploy.cluster import ClusterProvisioner
from spine_devops.deploy.config import AwsCredentials, BuildConfig, DeployConfig, MigrateConfig, target_env
from spine_devops.deploy.database import DatabaseProvisioner
from spine_devops.deploy.descriptor import (
    ENVS,
    EnvironmentDescriptor,
    RegistrySpec,
    ServiceDescriptor,
    build_environment,
    build_service,
    release_tag,
)
from spine_devops.deploy.discovery import DiscoveryProvisioner
from spine_devops.deploy.dns import HostedZoneResolver
from spine_devops.deploy.iam import IamProvisioner
from spine_devops.deploy.image import BuildRequest, ImageBuilder
from spine_devops.deploy.loadbalancer import LoadBalancerProvisioner
from spine_devops.deploy.migrate import Migrator, SqlMigrator
from spine_devops.deploy.network import NetworkProvisioner
from spine_devops.deploy.progress import NullReporter, ProgressReporter
from spine_devops.deploy.project import ProjectInfo, load_project, resolve_dockerfile
from spine_devops.deploy.record import DBCredentials, DeployRecord, DeployResult, OverallStatus
from spine_devops.deploy.service import ServiceDeployer
from spine_devops.deploy.storage import StorageProvisioner
from spine_devops.deploy.taskdef import TaskDefinitionBuilder, datadog_api_key
from spine_devops.deploy.tasklogs import TaskLogFetcher

logger = logging.getLogger(__name__)


def _region(env: str, credentials: AwsCredentials | None) -> str:
    if credentials is not None:
        return credentials.region
    return target_env(env, "AWS_REGION") or target_env(env, "AWS_DEFAULT_REGION")


def _connect(env: str, credentials: AwsCredentials | None) -> CloudProvider:
    return CloudProvider.from_credentials(credentials or AwsCredentials.from_env(env))


# ---------------------------------------------------------------------------
# Shared phase machinery
# ---------------------------------------------------------------------------


class _Runner:
    """Phase bookkeeping shared by the three runners."""

    command = ""

    def __init__(
        self,
        *,
        cloud: Any = None,
        reporter: ProgressReporter | None = None,
        settings: DevopsSettings | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self.cloud = cloud
        self.reporter = reporter or NullReporter()
        self.settings = settings or get_settings()
        self.cancel = cancel or threading.Event()
        self._current: str | None = None

    def _run_phase(
        self,
        result: DeployResult,
        name: str,
        step: Callable[[], dict[str, Any] | None],
        enabled: bool = True,
    ) -> None:
        if self.cancel.is_set():
            raise ConvergenceTimeoutError(f"Cancelled before phase '{name}'")
        phase = result.phase(name)
        if not enabled:
            phase.finish(OverallStatus.SKIPPED)
            return
        self._current = name
        try:
            with self.reporter.section(name):
                details = step()
        except BaseException as exc:
            phase.finish(OverallStatus.FAILED, str(exc))
            raise
        phase.details = details or {}
        phase.finish(OverallStatus.PASSED)

    def _record_failure(self, result: DeployResult, exc: DevopsError) -> None:
        if not exc.context.component:
            exc.with_context(component=self._current)
        exc.with_context(run_id=result.run_id, env=result.env, service=result.service)
        result.error = str(exc)
        result.error_details = exc.to_dict()
        logger.error(f"{self.command}.failed", extra={"phase": self._current, "error": str(exc),
                                                      "category": exc.category.value})

    def _execute(self, result: DeployResult, body: Callable[[], None]) -> DeployResult:
        """Run ``body``, capturing failures and cancellation into ``result``."""
        try:
            body()
        except DevopsError as exc:
            self._record_failure(result, exc)
        except (ClientError, BotoCoreError) as exc:
            self._record_failure(result, classify(exc, component=self._current))
        except KeyboardInterrupt:
            self.cancel.set()
            result.error = "Cancelled by operator"
            logger.warning(f"{self.command}.cancelled", extra={"phase": self._current})
        finally:
            if self.cancel.is_set():
                result.mark_complete(OverallStatus.CANCELLED)
            else:
                result.mark_complete()
        logger.info(f"{self.command}.complete", extra={"summary": result.summary})
        return result


# ---------------------------------------------------------------------------
# Build
# ---------------------------------------------------------------------------


class BuildRunner(_Runner):
    """Builds a service image and pushes it to the project registry.

    Example::

        from spine_devops.deploy import BuildConfig, BuildRunner

        result = BuildRunner(BuildConfig(service="web-api", env="dev")).run()
        print(result.release_image)
    """

    command = "build"

    def __init__(self, config: BuildConfig, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.config = config

    def run(self) -> DeployResult:
        config = self.config
        result = DeployResult(run_id=config.run_id, command=self.command, service=config.service, env=config.env)

        def body() -> None:
            if config.env not in ENVS:
                raise DescriptorValidationError(
                    f"Invalid env '{config.env}', must be one of {', '.join(ENVS)}", field="env"
                )
            project = load_project(config.project_root, config.project_name)
            dockerfile = resolve_dockerfile(project.root, config.service, config.dockerfile)
            tag = release_tag(config.env, config.service, config.ci.commit)
            cloud = self.cloud or _connect(config.env, None)

            builder = ImageBuilder(
                cloud,
                RegistrySpec(repository_name=project.name, max_images=config.max_images),
                {"project": project.name, "env": config.env},
                reporter=self.reporter,
                docker_timeout=self.settings.docker_timeout_seconds,
                cancel=self.cancel,
            )

            def image() -> dict[str, Any]:
                uri = builder.ensure_repository()
                request = BuildRequest(
                    dockerfile=dockerfile,
                    context_dir=project.root,
                    release_image=f"{uri}:{tag}",
                    service=config.service,
                    env=config.env,
                    extra_tags=[f"{uri}:{config.env}-{config.service}"],
                    no_cache=config.no_cache,
                    push=not config.no_push,
                )
                result.release_image = builder.run(request)
                return {"release_image": result.release_image, "pushed": request.push}

            self._run_phase(result, "image", image)

        with LogContext(run_id=config.run_id, command=self.command, env=config.env, service=config.service):
            logger.info("build.started", extra={"service": config.service, "env": config.env})
            return self._execute(result, body)


# ---------------------------------------------------------------------------
# Deploy
# ---------------------------------------------------------------------------


class DeployRunner(_Runner):
    """Converges every resource of one service and rolls out its tasks.

    Parameters
    ----------
    config
        Operator input.
    cloud
        CloudProvider; built from the config credentials when unset.
    store
        Secret store; Secrets Manager through ``cloud`` when unset.
    migrator
        Schema migrator run when the database endpoint changes; an
        :class:`~spine_devops.deploy.migrate.SqlMigrator` over the
        settings' migrations directory when unset.

    Example::

        config = DeployConfig(service="web-api", env="dev")
        result = DeployRunner(config, reporter=ProgressReporter()).run()
        assert result.success, result.error
    """

    command = "deploy"

    def __init__(
        self,
        config: DeployConfig,
        *,
        store: SecretStore | None = None,
        migrator: Migrator | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.config = config
        self.store = store
        self.migrator = migrator
        self.project: ProjectInfo | None = None
        self.environment: EnvironmentDescriptor | None = None
        self.service: ServiceDescriptor | None = None
        self.record: DeployRecord | None = None
        self._resolver: HostedZoneResolver | None = None

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    def prepare(self) -> None:
        """Build and validate descriptors, then connect."""
        config = self.config
        self.project = load_project(config.project_root, config.project_name)
        dockerfile = resolve_dockerfile(self.project.root, config.service, config.dockerfile)
        tag = release_tag(config.env, config.service, config.ci.commit)

        self.environment = build_environment(
            config, self.project.name, _region(config.env, config.credentials),
            max_images=self.settings.default_max_images,
        )
        self.service = build_service(config, self.environment, dockerfile, tag)
        self.record = DeployRecord(release_tag=tag)

        if self.cloud is None:
            self.cloud = _connect(config.env, config.credentials)
        if self.store is None:
            self.store = SecretsManagerStore(self.cloud.client("secretsmanager"))
        if self.migrator is None and self.environment.database is not None:
            migrations = self.settings.migrations_dir
            if not migrations.is_absolute():
                migrations = self.project.root / migrations
            self.migrator = SqlMigrator(migrations)
        logger.info("deploy.prepared", extra={"project": self.project.name, "release_tag": tag,
                                               "region": self.environment.region})

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _image(self) -> dict[str, Any]:
        env, record = self.environment, self.record
        builder = ImageBuilder(self.cloud, env.registry, env.tags, reporter=self.reporter, cancel=self.cancel)
        uri = builder.ensure_repository()
        self.reporter.success(f"registry repository {env.registry.repository_name}")
        record.release_image = f"{uri}:{record.release_tag}"
        return {"release_image": record.release_image}

    def _secrets(self) -> dict[str, Any]:
        env = self.environment
        self.record.datadog_api_key = datadog_api_key(env.env, self.store, env.secret_id("datadog"))
        if self.record.datadog_api_key:
            self.reporter.success("datadog api key")
        return {"datadog": bool(self.record.datadog_api_key)}

    def _network(self) -> dict[str, Any]:
        env, svc, record = self.environment, self.service, self.record
        state = NetworkProvisioner(self.cloud, env.network, env.tags, reporter=self.reporter).run(
            https_at_task=svc.enable_https and svc.load_balancer is None,
            has_database=env.database is not None,
        )
        record.vpc_id = state.vpc_id
        record.subnet_ids = list(state.subnet_ids)
        record.security_group_id = state.security_group_id
        return {"vpc_id": state.vpc_id, "security_group_id": state.security_group_id}

    def _storage(self) -> dict[str, Any]:
        env = self.environment
        storage = StorageProvisioner(self.cloud, env.storage, env.tags, reporter=self.reporter, cancel=self.cancel)
        self.record.cdn_domain = storage.run()
        return {"cdn_domain": self.record.cdn_domain}

    def _database(self) -> dict[str, Any]:
        env = self.environment
        spec = env.database
        state = DatabaseProvisioner(
            self.cloud, spec, self.store, env.secret_id(spec.identifier), env.tags,
            reporter=self.reporter, cancel=self.cancel,
        ).run(self.record.security_group_id, migrator=self.migrator)
        self.record.db_credentials = state.credentials
        self.record.db_created = state.created
        return {"host": state.credentials.host, "created": state.created, "migrated": state.endpoint_changed}

    def _cache(self) -> dict[str, Any]:
        env = self.environment
        endpoint = CacheProvisioner(self.cloud, env.cache, reporter=self.reporter, cancel=self.cancel).run(
            self.record.security_group_id, env.tags
        )
        self.record.cache_endpoint = endpoint
        return {"endpoint": endpoint}

    def _dns(self) -> dict[str, Any]:
        svc, record = self.service, self.record
        self._resolver = HostedZoneResolver(self.cloud)
        record.zone_bindings = self._resolver.bind(svc.hosts)
        for binding in record.zone_bindings:
            self.reporter.success(f"zone {binding.zone_name} ({binding.zone_id})")

        # Certificates from the provider can only be attached to a load balancer.
        if svc.enable_https and svc.load_balancer is not None:
            record.certificate_arn = CertificateProvisioner(
                self.cloud, self._resolver, self.environment.tags, reporter=self.reporter, cancel=self.cancel,
            ).run(svc.primary_host, list(svc.alias_hosts), record.zone_bindings)
        return {"zones": record.zones_map(), "certificate_arn": record.certificate_arn}

    def _load_balancer(self) -> dict[str, Any]:
        record = self.record
        state = LoadBalancerProvisioner(
            self.cloud, self.service.load_balancer, self.environment.tags,
            reporter=self.reporter, cancel=self.cancel,
        ).run(
            vpc_id=record.vpc_id,
            subnet_ids=record.subnet_ids,
            security_group_id=record.security_group_id,
            certificate_arn=record.certificate_arn,
            bindings=record.zone_bindings,
        )
        record.load_balancer_arn = state.load_balancer_arn
        record.load_balancer_dns = state.dns_name
        record.load_balancer_zone_id = state.canonical_zone_id
        record.target_group_arn = state.target_group_arn
        return {"dns_name": state.dns_name, "target_group_arn": state.target_group_arn}

    def _discovery(self) -> dict[str, Any]:
        state = DiscoveryProvisioner(
            self.cloud, self.service.discovery, self.environment.tags,
            reporter=self.reporter, cancel=self.cancel,
        ).run(self.record.vpc_id)
        self.record.namespace_id = state.namespace_id
        self.record.service_registry_arn = state.service_arn
        return {"namespace_id": state.namespace_id, "service_arn": state.service_arn}

    def _cluster(self) -> dict[str, Any]:
        log_group, arn = ClusterProvisioner(
            self.cloud, self.service.cluster, self.environment.tags, reporter=self.reporter
        ).run()
        self.record.log_group_name = log_group
        self.record.cluster_arn = arn
        return {"log_group": log_group, "cluster_arn": arn}

    def _iam(self) -> dict[str, Any]:
        state = IamProvisioner(
            self.cloud, self.service.cluster, self.environment.project_name, self.environment.tags,
            reporter=self.reporter,
        ).run()
        self.record.execution_role_arn = state.execution_role_arn
        self.record.task_role_arn = state.task_role_arn
        return {"task_policy_arn": state.task_policy_arn, "policy_changed": state.policy_changed}

    def _task_definition(self) -> dict[str, Any]:
        arn = TaskDefinitionBuilder(
            self.cloud, self.environment, self.service, reporter=self.reporter
        ).run(self.record, self.config.ci)
        self.record.task_definition_arn = arn
        return {"task_definition_arn": arn}

    def _service(self) -> dict[str, Any]:
        env, svc, record = self.environment, self.service, self.record
        private = env.storage.private
        fetcher = TaskLogFetcher(
            self.cloud,
            log_group=record.log_group_name,
            ecs_service_name=svc.ecs_service_name,
            bucket=private.name if private else None,
            temp_prefix=env.storage.temp_prefix,
            cancel=self.cancel,
        )
        deployer = ServiceDeployer(
            self.cloud, svc, record,
            log_fetcher=fetcher,
            reporter=self.reporter,
            cancel=self.cancel,
            tick_seconds=self.settings.stability_tick_seconds,
            tags=env.tags,
        )
        ecs_service = deployer.converge(record.task_definition_arn)
        record.service_arn = ecs_service["serviceArn"]

        uploaded = 0
        if svc.static_files_enabled and env.storage.public is not None:
            storage = StorageProvisioner(self.cloud, env.storage, env.tags, reporter=self.reporter,
                                         cancel=self.cancel)
            uploaded = storage.sync_static(svc.static_dir, env.storage.public.name, svc.static_files_prefix)
            self.reporter.success(f"static files -> s3://{env.storage.public.name}/{svc.static_files_prefix}")

        deployer.wait_for_stability(ecs_service, record.task_definition_arn)
        ips = deployer.update_task_dns()
        return {"service_arn": record.service_arn, "static_files": uploaded, "task_ips": ips}

    def phases(self) -> list[tuple[str, Callable[[], dict[str, Any]], bool]]:
        env, svc = self.environment, self.service
        return [
            ("image", self._image, True),
            ("secrets", self._secrets, True),
            ("network", self._network, True),
            ("storage", self._storage, True),
            ("database", self._database, env.database is not None),
            ("cache", self._cache, env.cache is not None),
            ("dns", self._dns, bool(svc.hosts)),
            ("loadbalancer", self._load_balancer, svc.load_balancer is not None),
            ("discovery", self._discovery, svc.discovery is not None),
            ("cluster", self._cluster, True),
            ("iam", self._iam, True),
            ("taskdef", self._task_definition, True),
            ("service", self._service, True),
        ]

    def run(self) -> DeployResult:
        config = self.config
        result = DeployResult(run_id=config.run_id, command=self.command, service=config.service, env=config.env)

        def body() -> None:
            self._current = "prepare"
            self.prepare()
            for name, step, enabled in self.phases():
                self._run_phase(result, name, step, enabled)
            result.release_image = self.record.release_image
            result.task_definition_arn = self.record.task_definition_arn

        with LogContext(run_id=config.run_id, command=self.command, env=config.env, service=config.service):
            logger.info("deploy.started", extra={"service": config.service, "env": config.env})
            return self._execute(result, body)


# ---------------------------------------------------------------------------
# Migrate
# ---------------------------------------------------------------------------


class MigrateRunner(_Runner):
    """Applies schema migrations to the environment's shared database."""

    command = "migrate"

    def __init__(
        self,
        config: MigrateConfig,
        *,
        store: SecretStore | None = None,
        migrator: Migrator | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.config = config
        self.store = store
        self.migrator = migrator

    def _migrations_dir(self, project: ProjectInfo) -> Path:
        path = self.config.migrations_dir or self.settings.migrations_dir
        return path if path.is_absolute() else project.root / path

    def run(self) -> DeployResult:
        config = self.config
        result = DeployResult(run_id=config.run_id, command=self.command, env=config.env)

        def body() -> None:
            self._current = "prepare"
            project = load_project(config.project_root, config.project_name)
            if self.store is None:
                cloud = self.cloud or _connect(config.env, config.credentials)
                self.store = SecretsManagerStore(cloud.client("secretsmanager"))
            migrator = self.migrator or SqlMigrator(self._migrations_dir(project))
            db_secret = f"{project.name}/{config.env}/{project.name}-{config.env}"

            def migrate() -> dict[str, Any]:
                secret = self.store.get_value(db_secret)
                if not secret:
                    raise ResourceNotFoundError(
                        "database credentials", db_secret,
                        message=f"Failed to find database credentials secret '{db_secret}'",
                    ).with_context(component="migrate")
                creds = DBCredentials.from_secret(secret)
                outcome = migrator.migrate(creds.url())
                self.reporter.success(f"applied {len(outcome.applied)}, skipped {len(outcome.skipped)}")
                return {"applied": outcome.applied, "skipped": len(outcome.skipped)}

            self._run_phase(result, "migrate", migrate)

        with LogContext(run_id=config.run_id, command=self.command, env=config.env):
            logger.info("migrate.started", extra={"env": config.env})
            return self._execute(result, body)


__all__ = ["BuildRunner", "DeployRunner", "MigrateRunner"]
