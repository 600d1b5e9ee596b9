"""
Root Typer application for the spine-devops CLI.

The three commands live in :mod:`spine_devops.cli.devops` and are
registered here as top-level commands::

    spine-devops build  --service web-api --env dev
    spine-devops deploy --service web-api --env prod --enable-https -H api.acme.test
    spine-devops migrate --env stage
"""

from __future__ import annotations

import typer
from typer import Typer

app = Typer(
    name="spine-devops",
    help="spine-devops: build, deploy and migrate services on AWS.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("spine-devops")
        except PackageNotFoundError:
            from spine_devops import __version__ as v
        typer.echo(f"spine-devops {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """spine-devops CLI: converge a service's AWS environment and roll it out."""


# ── Command registration ─────────────────────────────────────────────────

from spine_devops.cli import devops  # noqa: E402

app.command("build")(devops.build)
app.command("deploy")(devops.deploy)
app.command("migrate")(devops.migrate)
