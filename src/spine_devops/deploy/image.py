"""Image builder: registry repository, retention, docker build and push.

Drives the ``docker`` CLI through subprocess and the ECR API through the
:class:`~spine_devops.deploy.cloud.CloudProvider`.

Why This Matters:
    Every deploy addresses its image by release tag
    (``{registry}:{env}-{service}-{commit8}``), so two pipelines at the same
    commit push the same tag and a deploy can be replayed without a rebuild.
    Retention keeps the repository below ``max_images`` without ever making
    a deploy fail: too many images is not a correctness problem.

Key Concepts:
    ImageBuilder.ensure_repository(): create-if-absent, returns the URI.
    ImageBuilder.prune_images(): newest ``max_images`` kept, rest batch-deleted.
    ImageBuilder.registry_login(): token -> ``docker login --password-stdin``.
    ImageBuilder.build() / push(): docker CLI; push retried on the poll sequence.
    find_build_stage(): first ``FROM ... AS <stage>`` of a multistage
        Dockerfile. That stage is built on its own, tagged with a hash of its
        lines and pushed, so the final build can ``--cache-from`` it.

Architecture Decisions:
    - subprocess, not docker-py: works with any runtime exposing a
      ``docker`` CLI and keeps build output identical to a local build.
    - The password never appears on a command line; it is piped to
      ``--password-stdin``.
    - Prune failures are logged as warnings and swallowed by the caller
      (:meth:`ImageBuilder.run`), every other failure is a ``BuildError``.

Related Modules:
    - :mod:`spine_devops.deploy.project` - Dockerfile discovery
    - :mod:`spine_devops.deploy.workflow` - ``BuildRunner`` and deploy phase 1

Tags:
    docker, ecr, registry, build, push, retention
"""

from __future__ import annotations

import base64
import hashlib
import logging
import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from botocore.exceptions import ClientError

from spine_devops.core.errors import BuildError, CloudError, DevopsError, DockerNotFoundError
from spine_devops.core.retry import PollIntervals, RetryContext
from spine_devops.deploy.cloud import error_code
from spine_devops.deploy.descriptor import RegistrySpec, tag_list
from spine_devops.deploy.progress import NullReporter, ProgressReporter

logger = logging.getLogger(__name__)

# batch_delete_image accepts at most 100 image ids per call.
_DELETE_BATCH = 100


@dataclass
class BuildRequest:
    """Everything one ``docker build`` needs."""

    dockerfile: Path
    context_dir: Path
    release_image: str
    service: str
    env: str
    extra_tags: list[str] = field(default_factory=list)
    no_cache: bool = False
    push: bool = True


@dataclass
class RegistryAuth:
    username: str
    password: str
    endpoint: str


@dataclass
class BuildStage:
    """First named stage of a multistage Dockerfile."""

    name: str
    lines: list[str]

    def cache_tag(self, project_root: Path) -> str:
        """``{stage}-{hash8}``; changes whenever the stage's lines change.

        The Go base stage also folds in ``go.sum`` so a dependency bump
        invalidates the cached module download.
        """
        parts = [hashlib.md5("\n".join(self.lines).encode("utf-8")).hexdigest()]
        if self.name == "build_base_golang":
            go_sum = project_root / "go.sum"
            try:
                parts.append(hashlib.md5(go_sum.read_bytes()).hexdigest())
            except OSError as exc:
                raise BuildError(f"Failed to read {go_sum} for stage '{self.name}'") from exc
        digest = hashlib.md5("|".join(parts).encode("utf-8")).hexdigest()
        return f"{self.name}-{digest[:8]}"


def find_build_stage(dockerfile: Path) -> BuildStage | None:
    """Return the first build stage of ``dockerfile``, or ``None``.

    Only a named first ``FROM`` enables stage caching; the scan stops at the
    second ``FROM``.
    """
    try:
        text = dockerfile.read_text(encoding="utf-8")
    except OSError as exc:
        raise BuildError(f"Failed to read Dockerfile {dockerfile}") from exc

    stage: BuildStage | None = None
    for line in text.splitlines():
        lower = line.lower()
        if lower.startswith("from "):
            if stage is not None or " as " not in lower:
                break
            stage = BuildStage(name=lower.split(" as ", 1)[1].strip(), lines=[line])
        elif stage is not None:
            stage.lines.append(line)
    return stage


class ImageBuilder:
    """Builds and publishes service images.

    Parameters
    ----------
    cloud
        CloudProvider handing out the ``ecr`` client.
    registry
        Repository name and retention.
    tags
        ``project`` / ``env`` tags applied to a newly created repository.
    reporter
        Milestone printer.
    docker_timeout
        Timeout in seconds for a single build or push.
    cancel
        Run-wide cancellation event (honoured between push retries).
    """

    def __init__(
        self,
        cloud: Any,
        registry: RegistrySpec,
        tags: dict[str, str],
        *,
        reporter: ProgressReporter | None = None,
        docker_timeout: int = 3600,
        cancel: threading.Event | None = None,
    ) -> None:
        self.cloud = cloud
        self.registry = registry
        self.tags = tags
        self.reporter = reporter or NullReporter()
        self.docker_timeout = docker_timeout
        self.cancel = cancel
        self._docker_cmd: str | None = None

    @property
    def ecr(self) -> Any:
        return self.cloud.client("ecr")

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def ensure_repository(self) -> str:
        """Return the repository URI, creating the repository if absent."""
        name = self.registry.repository_name
        try:
            res = self.ecr.describe_repositories(repositoryNames=[name])
            uri = res["repositories"][0]["repositoryUri"]
            logger.info("repository.found", extra={"repository": name, "uri": uri})
            return uri
        except ClientError as exc:
            if error_code(exc) != "RepositoryNotFoundException":
                raise CloudError(
                    f"Failed to describe repository '{name}'", code=error_code(exc), cause=exc
                ).with_context(component="image", resource=name) from exc

        try:
            res = self.ecr.create_repository(repositoryName=name, tags=tag_list(self.tags))
        except ClientError as exc:
            if error_code(exc) != "RepositoryAlreadyExistsException":
                raise CloudError(
                    f"Failed to create repository '{name}'", code=error_code(exc), cause=exc
                ).with_context(component="image", resource=name) from exc
            res = {"repository": self.ecr.describe_repositories(repositoryNames=[name])["repositories"][0]}
        uri = res["repository"]["repositoryUri"]
        logger.info("repository.created", extra={"repository": name, "uri": uri})
        return uri

    def prune_images(self) -> list[dict[str, str]]:
        """Delete every image beyond the newest ``max_images``.

        Returns the deleted image ids. Ordering among images pushed at the
        same instant follows the order the provider returned them.
        """
        name = self.registry.repository_name
        images: list[dict[str, Any]] = []
        paginator = self.ecr.get_paginator("describe_images")
        for page in paginator.paginate(repositoryName=name):
            images.extend(page.get("imageDetails", []))

        images.sort(key=lambda d: d["imagePushedAt"], reverse=True)
        expired = images[self.registry.max_images:]
        if not expired:
            return []

        image_ids = [{"imageDigest": d["imageDigest"]} for d in expired]
        for start in range(0, len(image_ids), _DELETE_BATCH):
            batch = image_ids[start:start + _DELETE_BATCH]
            res = self.ecr.batch_delete_image(repositoryName=name, imageIds=batch)
            for failure in res.get("failures", []):
                logger.warning(
                    "image.delete_failed",
                    extra={"repository": name, "image": failure.get("imageId"),
                           "reason": failure.get("failureReason")},
                )
        logger.info("images.pruned", extra={"repository": name, "count": len(image_ids)})
        return image_ids

    def registry_login(self) -> RegistryAuth:
        """Fetch a registry token and log docker in."""
        res = self.ecr.get_authorization_token()
        data = res["authorizationData"][0]
        decoded = base64.b64decode(data["authorizationToken"]).decode("utf-8")
        username, _, password = decoded.partition(":")
        auth = RegistryAuth(username=username, password=password, endpoint=data["proxyEndpoint"])
        self._run_docker(
            ["login", "-u", auth.username, "--password-stdin", auth.endpoint],
            stdin=auth.password,
            timeout=120,
        )
        logger.info("registry.login", extra={"endpoint": auth.endpoint})
        return auth

    # ------------------------------------------------------------------
    # Docker
    # ------------------------------------------------------------------

    def build(self, request: BuildRequest, cache_from: str | None = None) -> None:
        """``docker build`` with service/env build args and every tag."""
        args = [
            "build",
            "--file", str(request.dockerfile),
            "--build-arg", f"service={request.service}",
            "--build-arg", f"env={request.env}",
            "-t", request.release_image,
        ]
        for tag in request.extra_tags:
            args.extend(["-t", tag])
        if request.no_cache:
            args.append("--no-cache")
        elif cache_from:
            args.extend(["--cache-from", cache_from])
        args.append(".")
        self._run_docker(args, cwd=request.context_dir, timeout=self.docker_timeout)
        logger.info("image.built", extra={"image": request.release_image, "tags": request.extra_tags})

    def build_stage(self, request: BuildRequest, stage: BuildStage, image: str) -> None:
        """Refresh the cached first stage: pull, ``--target`` build, push.

        A failed pull only means there is no cache yet.
        """
        try:
            self._run_docker(["pull", image], timeout=self.docker_timeout)
        except BuildError as exc:
            logger.info("stage.pull_skipped", extra={"image": image, "error": str(exc).splitlines()[0]})

        self._run_docker(
            [
                "build",
                "--file", str(request.dockerfile),
                "--cache-from", image,
                "--build-arg", f"service={request.service}",
                "--build-arg", f"env={request.env}",
                "-t", image,
                "--target", stage.name,
                ".",
            ],
            cwd=request.context_dir,
            timeout=self.docker_timeout,
        )
        logger.info("stage.built", extra={"image": image, "stage": stage.name})
        if request.push:
            self.push(image)

    def push(self, image: str, max_retries: int = 16) -> None:
        """``docker push``, retried on the canonical poll sequence."""

        def on_retry(attempt: int, exc: Exception, delay: float) -> None:
            logger.warning("image.push_retry", extra={"image": image, "attempt": attempt, "delay": delay})

        ctx = RetryContext(
            strategy=PollIntervals(max_retries=max_retries, retry_on=lambda e: isinstance(e, BuildError)),
            on_retry=on_retry,
            cancel=self.cancel,
        )
        ctx.run(self._run_docker, ["push", image], timeout=self.docker_timeout)
        logger.info("image.pushed", extra={"image": image, "attempts": ctx.attempt})

    def run(self, request: BuildRequest) -> str:
        """Full build pipeline; returns the release image reference."""
        uri = self.ensure_repository()
        self.reporter.success(f"registry repository {self.registry.repository_name}")

        try:
            pruned = self.prune_images()
            if pruned:
                self.reporter.success(f"pruned {len(pruned)} images")
        except (ClientError, DevopsError) as exc:
            logger.warning("images.prune_failed", extra={"repository": self.registry.repository_name,
                                                         "error": str(exc)})
            self.reporter.failure(f"image prune skipped: {exc}")

        if request.push:
            self.registry_login()

        cache_image = None
        stage = None if request.no_cache else find_build_stage(request.dockerfile)
        if stage is not None:
            cache_image = f"{uri}:{request.env}-{request.service}-{stage.cache_tag(request.context_dir)}"
            self.build_stage(request, stage, cache_image)
            self.reporter.success(f"build stage {stage.name} cached as {cache_image}")

        self.build(request, cache_from=cache_image)
        self.reporter.success(f"built {request.release_image}")

        if request.push:
            for image in [request.release_image, *request.extra_tags]:
                self.push(image)
                self.reporter.success(f"pushed {image}")
        return request.release_image

    def _find_docker(self) -> str:
        if self._docker_cmd is None:
            docker = shutil.which("docker")
            if docker is None:
                raise DockerNotFoundError(
                    "Docker CLI not found on PATH. Install Docker or add it to PATH."
                )
            self._docker_cmd = docker
        return self._docker_cmd

    def _run_docker(
        self,
        args: list[str],
        *,
        cwd: Path | None = None,
        stdin: str | None = None,
        timeout: int = 600,
    ) -> subprocess.CompletedProcess[str]:
        """Run a docker CLI command, raising ``BuildError`` on failure."""
        cmd = [self._find_docker(), *args]
        logger.debug("docker.exec", extra={"cmd": " ".join(cmd), "cwd": str(cwd) if cwd else None})
        try:
            result = subprocess.run(
                cmd,
                cwd=str(cwd) if cwd else None,
                input=stdin,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise BuildError(f"Docker command timed out after {timeout}s: docker {args[0]}") from exc
        if result.returncode != 0:
            tail = "\n".join((result.stdout + result.stderr).strip().splitlines()[-20:])
            raise BuildError(
                f"Docker command failed (exit {result.returncode}): docker {args[0]}\n{tail}"
            ).with_context(component="image")
        return result


__all__ = ["BuildRequest", "BuildStage", "ImageBuilder", "RegistryAuth", "find_build_stage"]
