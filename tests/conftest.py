"""
Shared pytest fixtures for spine-devops tests.

This module provides:
- ``FakeCloud``: a CloudProvider stand-in that hands out cached ``MagicMock`` clients
- ``client_error``: factory for botocore ``ClientError`` instances
- ``secret_store``: an in-memory ``DictSecretStore``
- ``project_dir``: a temporary project tree with a pyproject and a Dockerfile

No test talks to AWS or Docker.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Callable
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError


# =============================================================================
# Cloud fakes
# =============================================================================


class FakeCloud:
    """CloudProvider with one ``MagicMock`` per service name."""

    def __init__(self, region: str = "us-east-1"):
        self.region = region
        self.clients: dict[str, MagicMock] = {}

    def client(self, name: str) -> MagicMock:
        if name not in self.clients:
            self.clients[name] = MagicMock(name=f"{name}-client")
        return self.clients[name]


def make_client_error(code: str, message: str = "", status: int = 400, operation: str = "Op") -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": message or code},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


@pytest.fixture
def cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def client_error() -> Callable[..., ClientError]:
    return make_client_error


@pytest.fixture
def cancel() -> threading.Event:
    return threading.Event()


# =============================================================================
# Secrets
# =============================================================================


@pytest.fixture
def secret_store() -> Any:
    from spine_devops.core.secrets import DictSecretStore

    return DictSecretStore()


# =============================================================================
# Project tree
# =============================================================================


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """``acme/`` with ``pyproject.toml`` and ``cmd/web-api/Dockerfile``."""
    root = tmp_path / "acme"
    (root / "cmd" / "web-api").mkdir(parents=True)
    (root / "pyproject.toml").write_text("[project]\nname = 'acme'\n")
    (root / "cmd" / "web-api" / "Dockerfile").write_text("FROM python:3.12-slim\n")
    return root


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    """Settings are lru_cached per process; reset around every test."""
    from spine_devops.core.settings import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
