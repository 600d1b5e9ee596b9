"""
CLI: ``spine-devops build | deploy | migrate``.

Each command builds its config with ``XConfig.from_env(**flags)`` (flags
win over ``{ENV}_``-prefixed and plain environment variables), configures
logging from :class:`~spine_devops.core.settings.DevopsSettings`, runs the
matching runner and renders the :class:`~spine_devops.deploy.record.DeployResult`.

Usage::

    spine-devops build --service web-api --env dev --no-push
    spine-devops deploy --service web-api --env prod \\
        --enable-https --enable-elb -H api.acme.test -H www.acme.test
    spine-devops migrate --env stage
    spine-devops deploy --service worker --env dev --json

Logs go to stderr. Milestones (``✓`` / ``✗``) and ``--json`` output go to
stdout. Exit code is 0 when the run passed and 1 otherwise.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import NoReturn

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from spine_devops.core.logging import configure_logging
from spine_devops.core.settings import get_settings
from spine_devops.deploy.progress import FAILURE, SUCCESS, NullReporter, ProgressReporter
from spine_devops.deploy.record import DeployResult

console = Console(highlight=False)
err_console = Console(stderr=True, highlight=False)


# ── Helpers ──────────────────────────────────────────────────────────────


def _setup(verbose: bool) -> None:
    settings = get_settings()
    configure_logging(
        level="DEBUG" if verbose else settings.log_level,
        json_format=settings.json_logs,
    )


def _reporter(json_out: bool) -> ProgressReporter:
    return NullReporter() if json_out else ProgressReporter(console)


def _fail(message: str) -> NoReturn:
    err_console.print(f"[red]{FAILURE}[/] {escape(message)}")
    raise typer.Exit(code=1)


def _print_result(result: DeployResult, json_out: bool) -> None:
    if json_out:
        typer.echo(result.model_dump_json(indent=2))
    elif result.success:
        console.print(f"[green]{SUCCESS}[/] {escape(result.summary)}")
        if result.release_image:
            console.print(f"  image: {escape(result.release_image)}")
        if result.task_definition_arn:
            console.print(f"  task definition: {escape(result.task_definition_arn)}")
    else:
        err_console.print(f"[red]{FAILURE}[/] {escape(result.summary)}")
        if result.error:
            err_console.print(f"  [red]{escape(result.error)}[/]")

    if not result.success:
        raise typer.Exit(code=1)


# ── build ────────────────────────────────────────────────────────────────


def build(
    service: str = typer.Option(..., "--service", "-s", help="Service name, e.g. web-api."),
    env: str = typer.Option(..., "--env", "-e", help="Target environment: dev, stage or prod."),
    dockerfile: Path | None = typer.Option(None, "--dockerfile", "-f", help="Dockerfile path."),
    root: Path | None = typer.Option(None, "--root", help="Project root directory."),
    project: str | None = typer.Option(None, "--project", help="Project name."),
    no_cache: bool = typer.Option(False, "--no-cache", help="Build without the docker layer cache."),
    no_push: bool = typer.Option(False, "--no-push", help="Build only, do not push."),
    json_out: bool = typer.Option(False, "--json", help="Output the result as JSON."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output."),
) -> None:
    """Build a service image and push it to the project registry."""
    from spine_devops.deploy.config import BuildConfig
    from spine_devops.deploy.workflow import BuildRunner

    _setup(verbose)
    try:
        config = BuildConfig.from_env(
            service=service,
            env=env,
            dockerfile=dockerfile,
            project_root=root,
            project_name=project,
            no_cache=no_cache,
            no_push=no_push,
            verbose=verbose,
        )
    except ValidationError as exc:
        _fail(f"Invalid build options: {exc}")

    if not json_out:
        console.print(f"[bold]spine-devops build[/] {service} ({config.env}), run_id: {config.run_id}")
    result = BuildRunner(config, reporter=_reporter(json_out), cancel=threading.Event()).run()
    _print_result(result, json_out)


# ── deploy ───────────────────────────────────────────────────────────────


def deploy(
    service: str = typer.Option(..., "--service", "-s", help="Service name, e.g. web-api."),
    env: str = typer.Option(..., "--env", "-e", help="Target environment: dev, stage or prod."),
    enable_https: bool | None = typer.Option(
        None, "--enable-https/--disable-https", help="Terminate TLS for the service hosts.",
    ),
    primary_host: str | None = typer.Option(None, "--primary-host", help="Primary hostname."),
    host_names: list[str] | None = typer.Option(
        None, "--host-names", "-H", help="Hostname(s). Repeatable or comma-separated.",
    ),
    private_bucket: str | None = typer.Option(None, "--private-bucket", help="Private bucket name."),
    public_bucket: str | None = typer.Option(None, "--public-bucket", help="Public bucket name."),
    enable_elb: bool | None = typer.Option(
        None, "--enable-elb/--disable-elb", help="Put the service behind a load balancer.",
    ),
    enable_database: bool | None = typer.Option(
        None, "--enable-database/--disable-database", help="Provision the shared database.",
    ),
    enable_cache: bool | None = typer.Option(
        None, "--enable-cache/--disable-cache", help="Provision the shared cache cluster.",
    ),
    static_files: bool = typer.Option(False, "--static-files", help="Upload static files to the public bucket."),
    desired_count: int | None = typer.Option(None, "--desired-count", min=1, help="Tasks for a new service."),
    recreate_service: bool = typer.Option(False, "--recreate-service", help="Delete and re-create the service."),
    dockerfile: Path | None = typer.Option(None, "--dockerfile", "-f", help="Dockerfile path."),
    root: Path | None = typer.Option(None, "--root", help="Project root directory."),
    project: str | None = typer.Option(None, "--project", help="Project name."),
    json_out: bool = typer.Option(False, "--json", help="Output the result as JSON."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output."),
) -> None:
    """Converge the service's environment and roll out the new release.

    Ensures network, storage, data plane, DNS/TLS, load balancer, service
    discovery, cluster and IAM, registers a task definition revision and
    waits for the service to become stable.
    """
    from spine_devops.deploy.config import DeployConfig
    from spine_devops.deploy.workflow import DeployRunner

    _setup(verbose)
    try:
        config = DeployConfig.from_env(
            service=service,
            env=env,
            enable_https=enable_https,
            primary_host=primary_host,
            host_names=host_names or None,
            private_bucket=private_bucket,
            public_bucket=public_bucket,
            enable_elb=enable_elb,
            enable_database=enable_database,
            enable_cache=enable_cache,
            static_files_s3=static_files,
            desired_count=desired_count,
            recreate_service=recreate_service,
            dockerfile=dockerfile,
            project_root=root,
            project_name=project,
            verbose=verbose,
        )
    except ValidationError as exc:
        _fail(f"Invalid deploy options: {exc}")

    if not json_out:
        console.print(f"[bold]spine-devops deploy[/] {service} ({config.env}), run_id: {config.run_id}")
    result = DeployRunner(config, reporter=_reporter(json_out), cancel=threading.Event()).run()
    _print_result(result, json_out)


# ── migrate ──────────────────────────────────────────────────────────────


def migrate(
    env: str = typer.Option(..., "--env", "-e", help="Target environment: dev, stage or prod."),
    migrations_dir: Path | None = typer.Option(None, "--migrations-dir", "-m", help="Directory of *.sql files."),
    root: Path | None = typer.Option(None, "--root", help="Project root directory."),
    project: str | None = typer.Option(None, "--project", help="Project name."),
    json_out: bool = typer.Option(False, "--json", help="Output the result as JSON."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output."),
) -> None:
    """Apply schema migrations to the environment's database."""
    from spine_devops.deploy.config import MigrateConfig
    from spine_devops.deploy.workflow import MigrateRunner

    _setup(verbose)
    try:
        config = MigrateConfig.from_env(
            env=env,
            migrations_dir=migrations_dir,
            project_root=root,
            project_name=project,
        )
    except ValidationError as exc:
        _fail(f"Invalid migrate options: {exc}")

    if not json_out:
        console.print(f"[bold]spine-devops migrate[/] ({config.env}), run_id: {config.run_id}")
    result = MigrateRunner(config, reporter=_reporter(json_out), cancel=threading.Event()).run()
    _print_result(result, json_out)
