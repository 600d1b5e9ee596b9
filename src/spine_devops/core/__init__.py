"""Core primitives shared by every spine-devops command: errors, logging, retry, secrets, settings."""

from spine_devops.core.errors import (
    CloudError,
    ConfigError,
    ConvergenceTimeoutError,
    CredentialsError,
    DescriptorValidationError,
    DevopsError,
    ErrorCategory,
    PlaceholderUnresolvedError,
    ResourceExistsError,
    ResourceNotFoundError,
    TaskFailureError,
    TransientError,
)
from spine_devops.core.retry import PollIntervals, poll_until
from spine_devops.core.secrets import (
    CertificateCache,
    DictSecretStore,
    SecretsManagerStore,
    SecretStore,
    SecretValue,
)

__all__ = [
    "CertificateCache",
    "CloudError",
    "ConfigError",
    "ConvergenceTimeoutError",
    "CredentialsError",
    "DescriptorValidationError",
    "DevopsError",
    "DictSecretStore",
    "ErrorCategory",
    "PlaceholderUnresolvedError",
    "PollIntervals",
    "ResourceExistsError",
    "ResourceNotFoundError",
    "SecretStore",
    "SecretValue",
    "SecretsManagerStore",
    "TaskFailureError",
    "TransientError",
    "poll_until",
]
