"""
Structured error types for spine-devops.

Every failure the orchestrator surfaces is a ``DevopsError`` carrying the
component that failed, the cloud resource it was working on, whether the
operation may be retried, and the chained provider exception. The CLI turns
any ``DevopsError`` into a single ``✗`` line and a non-zero exit code; the
runners turn it into a failed phase on the ``DeployResult``.

Manifesto:
    - **One class per failure kind:** validation, credentials, not-found,
      already-exists, transient, convergence timeout, task failure, and
      unresolved template placeholders are distinct types.
    - **Explicit retry semantics:** ``TransientError`` and its subclasses are
      retryable, nothing else is.
    - **Name the resource:** ``with_context(component=..., resource=...)`` is
      attached at the raise site so operators see what broke.
    - **Keep the cause:** provider exceptions are chained via ``cause=``.

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                        DevopsError                            │
        │     (category, retryable, retry_after, context, cause)        │
        ├──────────────────────────────────────────────────────────────┤
        │  DescriptorValidationError  CredentialsError   ConfigError    │
        │  ResourceNotFoundError      ResourceExistsError               │
        │  TransientError ── NetworkError, RateLimitError               │
        │  CloudError                 BuildError ── DockerNotFoundError │
        │  ConvergenceTimeoutError    TaskFailureError                  │
        │  PlaceholderUnresolvedError MigrationError                    │
        └──────────────────────────────────────────────────────────────┘

Examples:
    >>> err = CloudError("Failed to create security group 'acme-dev'")
    >>> err.with_context(component="network", resource="acme-dev").context.component
    'network'
    >>> TransientError("throttled").retryable
    True

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context, devops
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and exit reporting."""

    VALIDATION = "VALIDATION"
    CREDENTIALS = "CREDENTIALS"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    NETWORK = "NETWORK"
    CLOUD = "CLOUD"
    BUILD = "BUILD"
    DATABASE = "DATABASE"
    CONVERGENCE = "CONVERGENCE"
    TASK = "TASK"
    TEMPLATE = "TEMPLATE"
    CONFIG = "CONFIG"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    ``component`` is the orchestrator step (``network``, ``storage``,
    ``service`` ...) and ``resource`` the cloud identity it was working on
    (a bucket name, a role name, an ARN).
    """

    component: str | None = None
    resource: str | None = None
    service: str | None = None
    env: str | None = None
    run_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["component", "resource", "service", "env", "run_id"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class DevopsError(Exception):
    """
    Base exception for all spine-devops errors.

    Subclasses set ``default_category`` and ``default_retryable``; callers
    can override either per instance.

    Parameters
    ----------
    message
        Human-readable description, shown to the operator verbatim.
    category
        Overrides the subclass default category.
    retryable
        Overrides the subclass default retry flag.
    retry_after
        Seconds the provider asked us to wait, if known.
    context
        Pre-built ``ErrorContext``; usually added later via ``with_context``.
    cause
        The underlying exception (chained as ``__cause__``).
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: int | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> DevopsError:
        """
        Add context to this error (fluent API).

        Usage:
            raise CloudError("Failed to create bucket").with_context(
                component="storage", resource="acme-dev-private"
            )
        """
        for key, value in kwargs.items():
            if value is None:
                continue
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# VALIDATION / CONFIGURATION (fatal before any network I/O)
# =============================================================================


class DescriptorValidationError(DevopsError):
    """Descriptor did not pass structural checks."""

    default_category = ErrorCategory.VALIDATION

    def __init__(self, message: str, *, field: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        return result


class ConfigError(DevopsError):
    """Operator configuration is missing or invalid."""

    default_category = ErrorCategory.CONFIG


class CredentialsError(DevopsError):
    """No usable AWS auth source, or the provider rejected the credentials."""

    default_category = ErrorCategory.CREDENTIALS


# =============================================================================
# RESOURCE STATE
# =============================================================================


class ResourceNotFoundError(DevopsError):
    """A resource a dependent step expected is absent."""

    default_category = ErrorCategory.NOT_FOUND

    def __init__(self, kind: str, name: str, message: str | None = None, **kwargs: Any):
        self.kind = kind
        self.name = name
        super().__init__(message or f"Failed to find {kind} '{name}'", **kwargs)
        self.context.resource = name


class CloudError(DevopsError):
    """Non-transient failure returned by a cloud API."""

    default_category = ErrorCategory.CLOUD

    def __init__(self, message: str, *, code: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.code = code

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.code:
            result["code"] = self.code
        return result


class ResourceExistsError(CloudError):
    """Create collided with an existing resource outside an idempotent path."""

    default_category = ErrorCategory.CONFLICT


# =============================================================================
# TRANSIENT ERRORS (retryable)
# =============================================================================


class TransientError(CloudError):
    """Temporary provider or network failure that may succeed on retry."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class NetworkError(TransientError):
    """Connection-level failure talking to a provider endpoint."""


class RateLimitError(TransientError):
    """Provider throttled the request."""

    def __init__(self, message: str = "Rate limit exceeded", *, retry_after: int | None = None, **kwargs: Any):
        super().__init__(message, retry_after=retry_after, **kwargs)


# =============================================================================
# CONVERGENCE / RUNTIME FAILURES
# =============================================================================


class ConvergenceTimeoutError(DevopsError):
    """A wait loop was cancelled before the resource became ready."""

    default_category = ErrorCategory.CONVERGENCE


class TaskFailureError(DevopsError):
    """Stopped-task count reached the desired count before the service stabilised.

    ``stopped_tasks`` holds one summary line per stopped task (stop code,
    reason, container exit codes) and ``log_lines`` the container output
    scraped from the exported log stream.
    """

    default_category = ErrorCategory.TASK

    def __init__(
        self,
        message: str,
        *,
        stopped_tasks: list[str] | None = None,
        log_lines: list[str] | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.stopped_tasks = stopped_tasks or []
        self.log_lines = log_lines or []

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["stopped_tasks"] = list(self.stopped_tasks)
        result["log_lines"] = len(self.log_lines)
        return result


class PlaceholderUnresolvedError(DevopsError):
    """Task template still contains ``{TOKEN}`` markers after substitution."""

    default_category = ErrorCategory.TEMPLATE

    def __init__(self, tokens: list[str], template: str | None = None):
        self.tokens = sorted(set(tokens))
        msg = f"Unresolved placeholders in task definition: {', '.join(self.tokens)}"
        if template:
            msg += f" ({template})"
        super().__init__(msg)
        self.context.resource = template


class BuildError(DevopsError):
    """docker build, tag, login or push failed."""

    default_category = ErrorCategory.BUILD


class DockerNotFoundError(BuildError):
    """Docker CLI is not available on PATH."""


class MigrationError(DevopsError):
    """Schema migration failed."""

    default_category = ErrorCategory.DATABASE


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, DevopsError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError))


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "DevopsError",
    "DescriptorValidationError",
    "ConfigError",
    "CredentialsError",
    "ResourceNotFoundError",
    "ResourceExistsError",
    "CloudError",
    "TransientError",
    "NetworkError",
    "RateLimitError",
    "ConvergenceTimeoutError",
    "TaskFailureError",
    "PlaceholderUnresolvedError",
    "BuildError",
    "DockerNotFoundError",
    "MigrationError",
    "is_retryable",
]
