"""Deploy record and result models.

The :class:`DeployRecord` is the in-process accumulator of a deploy run:
each phase writes the outputs later phases need (subnets, security group,
DB credentials, certificate ARN, zone bindings, task definition ARN) and
never mutates what an earlier phase wrote. The :class:`DeployResult` is
what the operator sees: per-phase outcomes, timestamps and an overall
status, serialisable with ``model_dump_json()`` for ``--json``.

Key Concepts:
    DBCredentials: The JSON record stored under ``{project}/{env}/{dbId}``.
    ZoneBinding: ``(zoneId, [fqdn...])`` - which hosted zone carries which names.
    DeployRecord: Mutable dataclass passed down the pipeline.
    PhaseResult / DeployResult: Pydantic outcome models with ``mark_complete()``.

Related Modules:
    - :mod:`spine_devops.deploy.workflow` - Produces both
    - :mod:`spine_devops.cli.devops` - Renders ``DeployResult``

Tags:
    results, record, pydantic, deployment, status
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field

from spine_devops.core.secrets import SecretValue


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Records carried between phases
# ---------------------------------------------------------------------------


class DBCredentials(BaseModel):
    """Database credential record persisted in the secret store."""

    model_config = ConfigDict(populate_by_name=True)

    host: str = ""
    user: str = ""
    pass_: str = Field(default="", alias="pass")
    database: str = ""
    driver: str = ""
    disable_tls: bool = Field(default=False, alias="disableTLS")

    @classmethod
    def from_json(cls, raw: str) -> DBCredentials:
        return cls.model_validate(json.loads(raw))

    @classmethod
    def from_secret(cls, secret: SecretValue) -> DBCredentials:
        return cls.from_json(secret.get_secret())

    @property
    def password(self) -> SecretValue:
        return SecretValue(self.pass_)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    def url(self) -> str:
        """``{driver}://{user}:{pass}@{host}/{db}?sslmode=require|disable``."""
        sslmode = "disable" if self.disable_tls else "require"
        driver = self.driver or "postgres"
        return (
            f"{driver}://{quote(self.user, safe='')}:{quote(self.pass_, safe='')}"
            f"@{self.host}/{self.database}?sslmode={sslmode}"
        )

    def __repr__(self) -> str:
        return f"DBCredentials(host={self.host!r}, user={self.user!r}, database={self.database!r})"

    __str__ = __repr__


@dataclass
class ZoneBinding:
    """Hosted zone and the service names it must carry."""

    zone_id: str
    zone_name: str
    fqdns: list[str] = field(default_factory=list)


@dataclass
class DeployRecord:
    """Cross-phase outputs of one deploy run."""

    release_tag: str
    release_image: str = ""
    vpc_id: str = ""
    subnet_ids: list[str] = field(default_factory=list)
    security_group_id: str = ""
    db_credentials: DBCredentials | None = None
    db_created: bool = False
    cache_endpoint: str | None = None
    certificate_arn: str | None = None
    zone_bindings: list[ZoneBinding] = field(default_factory=list)
    load_balancer_arn: str | None = None
    load_balancer_dns: str | None = None
    load_balancer_zone_id: str | None = None
    target_group_arn: str | None = None
    namespace_id: str | None = None
    service_registry_arn: str | None = None
    cdn_domain: str | None = None
    log_group_name: str = ""
    cluster_arn: str | None = None
    execution_role_arn: str | None = None
    task_role_arn: str | None = None
    task_definition_arn: str = ""
    service_arn: str | None = None
    datadog_api_key: str = ""

    def zones_map(self) -> dict[str, list[str]]:
        """``{zoneId: [fqdn...]}`` as written into ``{ROUTE53_ZONES}``."""
        return {b.zone_id: list(b.fqdns) for b in self.zone_bindings}

    @property
    def cache_host(self) -> str:
        return self.cache_endpoint or ""


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class OverallStatus(str, Enum):
    """Overall status of a run or phase."""

    PASSED = "PASSED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    RUNNING = "RUNNING"
    PENDING = "PENDING"
    CANCELLED = "CANCELLED"


class PhaseResult(BaseModel):
    """Outcome of one pipeline phase (network, storage, service ...)."""

    name: str
    status: OverallStatus = OverallStatus.PENDING
    started_at: str = Field(default_factory=_now)
    completed_at: str | None = None
    duration_seconds: float = 0.0
    details: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None

    def finish(self, status: OverallStatus, error: str | None = None) -> None:
        self.completed_at = _now()
        start = datetime.fromisoformat(self.started_at)
        end = datetime.fromisoformat(self.completed_at)
        self.duration_seconds = (end - start).total_seconds()
        self.status = status
        self.error = error


class DeployResult(BaseModel):
    """Result of a build, deploy or migrate run."""

    run_id: str
    command: str
    service: str | None = None
    env: str
    started_at: str = Field(default_factory=_now)
    completed_at: str | None = None
    duration_seconds: float = 0.0
    phases: list[PhaseResult] = Field(default_factory=list)
    overall_status: OverallStatus = OverallStatus.PENDING
    release_image: str | None = None
    task_definition_arn: str | None = None
    error: str | None = None
    error_details: dict[str, Any] | None = None
    summary: str = ""

    def phase(self, name: str) -> PhaseResult:
        """Start and register a new phase."""
        result = PhaseResult(name=name, status=OverallStatus.RUNNING)
        self.phases.append(result)
        return result

    def mark_complete(self, status: OverallStatus | None = None) -> None:
        """Finalize timestamps, duration, status and summary."""
        self.completed_at = _now()
        start = datetime.fromisoformat(self.started_at)
        end = datetime.fromisoformat(self.completed_at)
        self.duration_seconds = (end - start).total_seconds()

        if status:
            self.overall_status = status
        elif self.error:
            self.overall_status = OverallStatus.FAILED
        elif any(p.status == OverallStatus.FAILED for p in self.phases):
            self.overall_status = OverallStatus.FAILED
        else:
            self.overall_status = OverallStatus.PASSED

        passed = sum(1 for p in self.phases if p.status == OverallStatus.PASSED)
        self.summary = (
            f"{self.command} {self.overall_status.value}: {passed}/{len(self.phases)} phases "
            f"in {self.duration_seconds:.1f}s"
        )

    @property
    def success(self) -> bool:
        return self.overall_status == OverallStatus.PASSED


__all__ = [
    "DBCredentials",
    "DeployRecord",
    "DeployResult",
    "OverallStatus",
    "PhaseResult",
    "ZoneBinding",
]
