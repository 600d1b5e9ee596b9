"""Database provisioner.

Ensures the shared RDS instance exists and that its credentials are
recoverable from the secret store at every point of the run.

Why This Matters:
    The master password only exists in two places: the instance and the
    secret ``{project}/{env}/{identifier}``. Writing the secret *before*
    ``create_db_instance`` means a crash between the two calls leaves a
    password we can still read, never an instance nobody can log in to.

Key Concepts:
    DatabaseProvisioner.load_credentials(): Secret -> ``DBCredentials`` or None.
    DatabaseProvisioner.ensure_instance(): Describe, else create with a fresh
        password stored first.
    DatabaseProvisioner.wait_available(): Poll until ``available``.
    DatabaseProvisioner.run(): The whole path, returning credentials and
        whether the endpoint was newly recorded (which triggers migration).

Architecture Decisions:
    - Only ``host`` / ``user`` / ``database`` / ``driver`` are ever rewritten;
      the stored ``pass`` survives every later run.
    - Migration runs when the live endpoint differs from the recorded one,
      which covers the first run and a crash after create but before the
      endpoint was saved.

Related Modules:
    - :mod:`spine_devops.core.secrets` - Secret store
    - :mod:`spine_devops.deploy.migrate` - Migrator invoked on a new endpoint
    - :mod:`spine_devops.deploy.record` - ``DBCredentials``

Tags:
    rds, postgres, database, secrets, migration
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any

from botocore.exceptions import ClientError

from spine_devops.core.errors import CloudError, ResourceNotFoundError
from spine_devops.core.retry import poll_until
from spine_devops.core.secrets import SecretStore, SecretValue
from spine_devops.deploy.cloud import call_with_retry, error_code
from spine_devops.deploy.descriptor import DatabaseSpec, tag_list
from spine_devops.deploy.migrate import Migrator
from spine_devops.deploy.progress import NullReporter, ProgressReporter
from spine_devops.deploy.record import DBCredentials

logger = logging.getLogger(__name__)

AVAILABLE = "available"
_FAILED_STATES = frozenset({
    "failed",
    "deleting",
    "incompatible-parameters",
    "incompatible-restore",
    "incompatible-network",
    "storage-full",
})


@dataclass
class DatabaseState:
    credentials: DBCredentials
    created: bool = False
    endpoint_changed: bool = False


def generate_password() -> SecretValue:
    return SecretValue(str(uuid.uuid4()))


class DatabaseProvisioner:
    """Converges the RDS instance and its credential secret."""

    def __init__(
        self,
        cloud: Any,
        spec: DatabaseSpec,
        store: SecretStore,
        secret_id: str,
        tags: dict[str, str],
        *,
        reporter: ProgressReporter | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self.cloud = cloud
        self.spec = spec
        self.store = store
        self.secret_id = secret_id
        self.tags = tags
        self.reporter = reporter or NullReporter()
        self.cancel = cancel

    @property
    def rds(self) -> Any:
        return self.cloud.client("rds")

    def load_credentials(self) -> DBCredentials | None:
        secret = self.store.get_value(self.secret_id)
        return DBCredentials.from_secret(secret) if secret else None

    def describe_instance(self) -> dict[str, Any] | None:
        try:
            res = call_with_retry(
                self.rds.describe_db_instances,
                DBInstanceIdentifier=self.spec.identifier,
                component="database", resource=self.spec.identifier, cancel=self.cancel,
            )
        except ClientError as exc:
            if error_code(exc) == "DBInstanceNotFound":
                return None
            raise CloudError(
                f"Failed to describe database instance '{self.spec.identifier}'",
                code=error_code(exc), cause=exc,
            ).with_context(component="database", resource=self.spec.identifier) from exc
        instances = res.get("DBInstances", [])
        return instances[0] if instances else None

    def create_params(self, password: SecretValue, security_group_id: str) -> dict[str, Any]:
        spec = self.spec
        params: dict[str, Any] = {
            "DBInstanceIdentifier": spec.identifier,
            "DBName": spec.db_name,
            "Engine": spec.engine,
            "MasterUsername": spec.master_username,
            "MasterUserPassword": password.get_secret(),
            "Port": spec.port,
            "DBInstanceClass": spec.instance_class,
            "AllocatedStorage": spec.allocated_gb,
            "MultiAZ": spec.multi_az,
            "PubliclyAccessible": False,
            "StorageEncrypted": spec.encrypted,
            "BackupRetentionPeriod": spec.backup_days,
            "EnablePerformanceInsights": False,
            "AutoMinorVersionUpgrade": spec.auto_minor_version_upgrade,
            "CopyTagsToSnapshot": spec.copy_tags_to_snapshot,
            "VpcSecurityGroupIds": [security_group_id],
            "Tags": tag_list(self.tags),
        }
        if spec.engine_version:
            params["EngineVersion"] = spec.engine_version
        return params

    def ensure_instance(
        self, security_group_id: str, creds: DBCredentials | None
    ) -> tuple[dict[str, Any], DBCredentials, bool]:
        """Return ``(instance, credentials, created)``."""
        instance = self.describe_instance()
        if instance is not None:
            if creds is None:
                raise ResourceNotFoundError(
                    "secret", self.secret_id,
                    message=f"Database instance '{self.spec.identifier}' exists but secret "
                            f"'{self.secret_id}' holding its credentials was not found",
                ).with_context(component="database")
            logger.info("db_instance.found", extra={"instance": self.spec.identifier})
            return instance, creds, False

        if creds is None or not creds.pass_:
            creds = DBCredentials(pass_=generate_password().get_secret())
            # Stored before create so the password can never be lost.
            self.store.put(self.secret_id, creds.to_json())
            logger.info("db_credentials.stored", extra={"secret_id": self.secret_id})

        try:
            res = self.rds.create_db_instance(**self.create_params(creds.password, security_group_id))
        except ClientError as exc:
            raise CloudError(
                f"Failed to create instance '{self.spec.identifier}'", code=error_code(exc), cause=exc
            ).with_context(component="database", resource=self.spec.identifier) from exc
        instance = res["DBInstance"]
        logger.info("db_instance.created", extra={"instance": self.spec.identifier,
                                                   "arn": instance.get("DBInstanceArn")})
        return instance, creds, True

    def wait_available(self, instance: dict[str, Any]) -> dict[str, Any]:
        if instance.get("DBInstanceStatus") == AVAILABLE and instance.get("Endpoint"):
            return instance

        def check() -> dict[str, Any] | None:
            current = self.describe_instance()
            if current is None:
                return None
            status = current.get("DBInstanceStatus", "")
            if status in _FAILED_STATES:
                raise CloudError(
                    f"Database instance '{self.spec.identifier}' entered state '{status}'"
                ).with_context(component="database", resource=self.spec.identifier)
            return current if status == AVAILABLE else None

        return poll_until(check, cancel=self.cancel, what=f"database instance {self.spec.identifier}")

    def run(self, security_group_id: str, migrator: Migrator | None = None) -> DatabaseState:
        creds = self.load_credentials()
        instance, creds, created = self.ensure_instance(security_group_id, creds)
        self.reporter.success(f"database instance {self.spec.identifier}"
                              + (" created" if created else ""))

        instance = self.wait_available(instance)
        endpoint = instance["Endpoint"]
        live_host = f"{endpoint['Address']}:{endpoint['Port']}"

        changed = live_host != creds.host
        if changed:
            creds = creds.model_copy(update={
                "host": live_host,
                "user": instance.get("MasterUsername", self.spec.master_username),
                "database": instance.get("DBName", self.spec.db_name),
                "driver": instance.get("Engine", self.spec.engine),
                "disable_tls": False,
            })
            self.store.put(self.secret_id, creds.to_json())
            logger.info("db_credentials.updated", extra={"secret_id": self.secret_id, "host": live_host})

            if migrator is not None:
                result = migrator.migrate(creds.url())
                self.reporter.success(f"migrations applied ({len(result.applied)})")

        return DatabaseState(credentials=creds, created=created, endpoint_changed=changed)


__all__ = ["DatabaseProvisioner", "DatabaseState", "generate_password"]
