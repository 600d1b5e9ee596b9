"""Project root and Dockerfile discovery.

Locates the checkout a command is operating on: the project root is the
nearest directory (the working directory or up to three parents) holding a
module descriptor, and a service's Dockerfile lives under ``cmd/<service>/``
or ``tools/<service>/``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from spine_devops.core.errors import ConfigError, ResourceNotFoundError

logger = logging.getLogger(__name__)

MODULE_DESCRIPTORS = ("pyproject.toml", "go.mod", "setup.cfg")
MAX_PARENT_LEVELS = 3
SERVICE_DIRS = ("cmd", "tools")


@dataclass(frozen=True)
class ProjectInfo:
    """Where a project lives and what it is called."""

    root: Path
    name: str


def find_project_root(start: Path | None = None) -> Path:
    """Walk up from ``start`` looking for a module descriptor file.

    Raises:
        ConfigError: nothing found within :data:`MAX_PARENT_LEVELS` parents.
    """
    current = (start or Path.cwd()).resolve()
    for candidate in [current, *list(current.parents)[:MAX_PARENT_LEVELS]]:
        for marker in MODULE_DESCRIPTORS:
            if (candidate / marker).is_file():
                logger.debug("project.root_found", extra={"root": str(candidate), "marker": marker})
                return candidate
    raise ConfigError(
        f"Unable to locate project root from '{current}': none of "
        f"{', '.join(MODULE_DESCRIPTORS)} found within {MAX_PARENT_LEVELS} parent directories"
    )


def load_project(root: Path | None = None, name: str | None = None) -> ProjectInfo:
    """Resolve the project root and name, honouring explicit overrides."""
    project_root = root.resolve() if root else find_project_root()
    if not project_root.is_dir():
        raise ConfigError(f"Project root '{project_root}' is not a directory")
    return ProjectInfo(root=project_root, name=name or project_root.name)


def find_dockerfile(project_root: Path, service: str) -> Path:
    """Return ``cmd/<service>/Dockerfile`` or ``tools/<service>/Dockerfile``."""
    for parent in SERVICE_DIRS:
        candidate = project_root / parent / service / "Dockerfile"
        if candidate.is_file():
            return candidate
    raise ResourceNotFoundError(
        "Dockerfile",
        service,
        message=f"Failed to locate Dockerfile for service '{service}' under "
        f"{', '.join(f'{d}/{service}/' for d in SERVICE_DIRS)}",
    )


def resolve_dockerfile(project_root: Path, service: str, dockerfile: Path | None) -> Path:
    """Use the explicit Dockerfile when given (relative to the root), else search."""
    if dockerfile is None:
        return find_dockerfile(project_root, service)
    path = dockerfile if dockerfile.is_absolute() else project_root / dockerfile
    if not path.is_file():
        raise ResourceNotFoundError("Dockerfile", str(path))
    return path


__all__ = [
    "MODULE_DESCRIPTORS",
    "ProjectInfo",
    "find_dockerfile",
    "find_project_root",
    "load_project",
    "resolve_dockerfile",
]
