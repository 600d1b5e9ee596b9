"""Operator-facing milestone output.

Logs go to stderr through :mod:`spine_devops.core.logging`; milestones go
to stdout through :class:`ProgressReporter` with a fixed vocabulary:
``✓`` for success and ``✗`` for failure, indented by nesting depth so a
deploy reads as an outline::

    ✓ network
      ✓ security group acme-dev (sg-0abc)
    ✗ service: Stopped tasks reached desired count
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from rich.console import Console
from rich.markup import escape

SUCCESS = "✓"
FAILURE = "✗"


class ProgressReporter:
    """Indent-nested ✓ / ✗ printer."""

    def __init__(self, console: Console | None = None, indent: int = 2) -> None:
        self.console = console or Console(highlight=False)
        self._indent = indent
        self._depth = 0

    def _print(self, text: str) -> None:
        self.console.print(" " * (self._depth * self._indent) + text)

    def info(self, message: str) -> None:
        self._print(escape(message))

    def success(self, message: str) -> None:
        self._print(f"[green]{SUCCESS}[/] {escape(message)}")

    def failure(self, message: str) -> None:
        self._print(f"[red]{FAILURE}[/] {escape(message)}")

    def detail(self, message: str) -> None:
        """Unmarked line one level deeper (container log lines, exit codes)."""
        self._depth += 1
        try:
            self._print(f"[dim]{escape(message)}[/]")
        finally:
            self._depth -= 1

    @contextmanager
    def section(self, title: str) -> Iterator[ProgressReporter]:
        """Print ``title``, nest everything inside, then mark it ✓ or ✗."""
        self.info(f"{title} ...")
        self._depth += 1
        try:
            yield self
        except BaseException as exc:
            self._depth -= 1
            self.failure(f"{title}: {exc}")
            raise
        self._depth -= 1
        self.success(title)


class NullReporter(ProgressReporter):
    """Reporter that prints nothing (library use and ``--json``)."""

    def _print(self, text: str) -> None:
        return None


__all__ = ["FAILURE", "NullReporter", "ProgressReporter", "SUCCESS"]
