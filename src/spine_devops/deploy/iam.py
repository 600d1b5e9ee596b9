"""IAM roles and the shared task policy.

Why This Matters:
    The task policy ``{ProjectNameCamel}{EnvCamel}Services`` is shared by
    every service of an environment, and operators add statements to it by
    hand. A deploy may therefore only ever *add*: statements are merged by
    ``Sid`` and actions by set union, and nothing the orchestrator does not
    recognise is removed.

Key Concepts:
    merge_policy(): Pure merge returning ``(document, changed)``.
    IamProvisioner.ensure_role(): get-or-create a role assumable by ECS
        tasks, then attach managed policies.
    IamProvisioner.ensure_task_policy(): create the policy, or merge into
        its default version and publish a new default when it changed.

Architecture Decisions:
    - A policy holds at most five versions; the oldest non-default one is
      deleted before a sixth would be created.
    - ``attach_role_policy`` is idempotent on the provider side, so it is
      issued on every run.

Related Modules:
    - :mod:`spine_devops.deploy.descriptor` - Role/policy names, default statements
    - :mod:`spine_devops.deploy.taskdef` - Consumes the role ARNs

Tags:
    iam, roles, policy, merge, ecs-tasks
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import unquote

from botocore.exceptions import ClientError

from spine_devops.core.errors import CloudError
from spine_devops.deploy.cloud import error_code
from spine_devops.deploy.descriptor import ECS_TASKS_ASSUME_ROLE, ClusterSpec, tag_list
from spine_devops.deploy.progress import NullReporter, ProgressReporter

logger = logging.getLogger(__name__)

MAX_POLICY_VERSIONS = 5


@dataclass
class IamState:
    execution_role_arn: str
    task_role_arn: str
    task_policy_arn: str
    policy_changed: bool = False


def _actions(statement: dict[str, Any]) -> list[str]:
    action = statement.get("Action", [])
    return [action] if isinstance(action, str) else list(action)


def merge_policy(document: dict[str, Any], statements: list[dict[str, Any]]) -> tuple[dict[str, Any], bool]:
    """Merge ``statements`` into ``document`` without removing anything.

    For each statement, a matching ``Sid`` gets its missing actions
    appended; an unknown ``Sid`` is appended whole. Returns the merged copy
    and whether it differs from the input.
    """
    merged = copy.deepcopy(document)
    current = merged.setdefault("Statement", [])
    if isinstance(current, dict):
        current = merged["Statement"] = [current]
    changed = False

    for stmt in statements:
        match = next((s for s in current if s.get("Sid") == stmt.get("Sid")), None)
        if match is None:
            current.append(copy.deepcopy(stmt))
            changed = True
            continue
        actions = _actions(match)
        missing = [a for a in _actions(stmt) if a not in actions]
        if missing:
            match["Action"] = actions + missing
            changed = True

    merged.setdefault("Version", "2012-10-17")
    return merged, changed


def parse_policy_document(raw: Any) -> dict[str, Any]:
    """Policy documents arrive as dicts or URL-encoded JSON strings."""
    if isinstance(raw, dict):
        return raw
    return json.loads(unquote(raw))


class IamProvisioner:
    def __init__(
        self,
        cloud: Any,
        spec: ClusterSpec,
        project_name: str,
        tags: dict[str, str],
        *,
        reporter: ProgressReporter | None = None,
    ) -> None:
        self.cloud = cloud
        self.spec = spec
        self.project_name = project_name
        self.tags = tags
        self.reporter = reporter or NullReporter()

    @property
    def iam(self) -> Any:
        return self.cloud.client("iam")

    def _fail(self, action: str, exc: ClientError, resource: str) -> CloudError:
        return CloudError(f"Failed to {action}", code=error_code(exc), cause=exc).with_context(
            component="iam", resource=resource
        )

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def ensure_role(self, name: str, description: str, policy_arns: list[str]) -> str:
        try:
            arn = self.iam.get_role(RoleName=name)["Role"]["Arn"]
            logger.info("role.found", extra={"role": name})
        except ClientError as exc:
            if error_code(exc) != "NoSuchEntity":
                raise self._fail(f"find role '{name}'", exc, name) from exc
            try:
                arn = self.iam.create_role(
                    RoleName=name,
                    Description=description,
                    AssumeRolePolicyDocument=ECS_TASKS_ASSUME_ROLE,
                    Tags=tag_list(self.tags),
                )["Role"]["Arn"]
            except ClientError as create_exc:
                raise self._fail(f"create role '{name}'", create_exc, name) from create_exc
            logger.info("role.created", extra={"role": name, "arn": arn})

        for policy_arn in policy_arns:
            try:
                self.iam.attach_role_policy(RoleName=name, PolicyArn=policy_arn)
            except ClientError as exc:
                raise self._fail(f"attach policy '{policy_arn}' to role '{name}'", exc, name) from exc
        return arn

    # ------------------------------------------------------------------
    # Shared task policy
    # ------------------------------------------------------------------

    def find_policy(self, name: str) -> dict[str, Any] | None:
        paginator = self.iam.get_paginator("list_policies")
        for page in paginator.paginate(Scope="Local"):
            for policy in page.get("Policies", []):
                if policy["PolicyName"] == name:
                    return policy
        return None

    def _prune_versions(self, policy_arn: str) -> None:
        versions = self.iam.list_policy_versions(PolicyArn=policy_arn).get("Versions", [])
        if len(versions) < MAX_POLICY_VERSIONS:
            return
        candidates = sorted((v for v in versions if not v.get("IsDefaultVersion")),
                            key=lambda v: v["CreateDate"])
        if candidates:
            oldest = candidates[0]["VersionId"]
            self.iam.delete_policy_version(PolicyArn=policy_arn, VersionId=oldest)
            logger.info("policy.version_deleted", extra={"policy_arn": policy_arn, "version": oldest})

    def ensure_task_policy(self) -> tuple[str, bool]:
        """Return ``(policy_arn, changed)``."""
        name = self.spec.task_policy_name
        statements = list(self.spec.policy_statements)
        policy = self.find_policy(name)

        if policy is None:
            document, _ = merge_policy({"Version": "2012-10-17", "Statement": []}, statements)
            try:
                arn = self.iam.create_policy(
                    PolicyName=name,
                    PolicyDocument=json.dumps(document),
                    Description=f"Defines access for {self.project_name} services.",
                    Tags=tag_list(self.tags),
                )["Policy"]["Arn"]
            except ClientError as exc:
                raise self._fail(f"create task policy '{name}'", exc, name) from exc
            logger.info("policy.created", extra={"policy": name, "arn": arn})
            return arn, True

        arn = policy["Arn"]
        version_id = policy["DefaultVersionId"]
        try:
            version = self.iam.get_policy_version(PolicyArn=arn, VersionId=version_id)["PolicyVersion"]
        except ClientError as exc:
            raise self._fail(f"read policy '{name}' version '{version_id}'", exc, arn) from exc

        document, changed = merge_policy(parse_policy_document(version["Document"]), statements)
        if not changed:
            logger.info("policy.unchanged", extra={"policy": name})
            return arn, False

        try:
            self._prune_versions(arn)
            self.iam.create_policy_version(PolicyArn=arn, PolicyDocument=json.dumps(document), SetAsDefault=True)
        except ClientError as exc:
            raise self._fail(f"update policy '{name}'", exc, arn) from exc
        logger.info("policy.updated", extra={"policy": name, "arn": arn})
        return arn, True

    def run(self) -> IamState:
        spec = self.spec
        execution_arn = self.ensure_role(
            spec.execution_role_name,
            "Provides access to other AWS service resources that are required to run "
            f"Amazon ECS tasks for {self.project_name}.",
            list(spec.execution_role_policy_arns),
        )
        self.reporter.success(f"execution role {spec.execution_role_name}")

        policy_arn, changed = self.ensure_task_policy()
        self.reporter.success(f"task policy {spec.task_policy_name}" + (" updated" if changed else ""))

        task_arn = self.ensure_role(
            spec.task_role_name,
            f"Allows ECS tasks for {self.project_name} to call AWS services on your behalf.",
            [policy_arn],
        )
        self.reporter.success(f"task role {spec.task_role_name}")
        return IamState(
            execution_role_arn=execution_arn,
            task_role_arn=task_arn,
            task_policy_arn=policy_arn,
            policy_changed=changed,
        )


__all__ = ["IamProvisioner", "IamState", "merge_policy", "parse_policy_document"]
