"""Secret store capability used by the deploy pipeline.

The orchestrator persists a handful of opaque strings between runs: the
database credential record, the Datadog API key, and TLS material for the
certificate cache. All of it goes through :class:`SecretStore`, a three-call
interface (``get`` / ``put`` / ``delete``) keyed by a stable id such as
``acme/dev/acme-dev``.

Manifesto:
    - **put is atomic for the caller:** create, and on "already exists" fall
      through to update; on "scheduled for deletion" restore, then update.
    - **delete is recoverable:** deletion is always scheduled with a 30-day
      recovery window, never forced.
    - **not-found is a value:** ``get`` returns ``None`` for missing or
      deleted secrets; every other provider failure raises.
    - **never render secrets:** values crossing module boundaries are wrapped
      in :class:`SecretValue`.

Architecture:
    ::

        ┌──────────────────────┐      ┌───────────────────────────┐
        │  SecretStore (ABC)   │◄─────│ SecretsManagerStore       │ boto3 secretsmanager
        │  get / put / delete  │◄─────│ DictSecretStore           │ in-memory (tests, dry runs)
        └──────────┬───────────┘      └───────────────────────────┘
                   │
                   ▼
        ┌──────────────────────┐
        │  CertificateCache    │  {prefix}/{key}, in-process dict + lock
        └──────────────────────┘

Examples:
    >>> store = DictSecretStore()
    >>> store.put("acme/dev/datadog", "abc")
    >>> store.get("acme/dev/datadog")
    'abc'
    >>> store.get("acme/dev/missing") is None
    True

Tags:
    secrets, secretsmanager, credentials, certificate-cache, security
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any

from botocore.exceptions import ClientError

from spine_devops.core.errors import CloudError

logger = logging.getLogger(__name__)

# Recovery window applied to every scheduled deletion.
RECOVERY_WINDOW_DAYS = 30


# ---------------------------------------------------------------------------
# SecretValue wrapper
# ---------------------------------------------------------------------------


class SecretValue:
    """Wrapper for secret values that prevents accidental logging.

    Example:
        >>> secret = SecretValue("hunter2")
        >>> str(secret)
        '[REDACTED]'
        >>> secret.get_secret()
        'hunter2'
    """

    __slots__ = ("_value",)

    def __init__(self, value: str):
        self._value = value

    def get_secret(self) -> str:
        """Get the actual secret value."""
        return self._value

    def __str__(self) -> str:
        return "[REDACTED]"

    def __repr__(self) -> str:
        return "SecretValue('[REDACTED]')"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SecretValue):
            return self._value == other._value
        return False

    def __hash__(self) -> int:
        return hash(self._value)

    def __bool__(self) -> bool:
        return bool(self._value)


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class SecretStore(ABC):
    """Read/write/delete opaque string secrets by stable id."""

    @abstractmethod
    def get(self, secret_id: str) -> str | None:
        """Return the secret, or ``None`` when it does not exist."""
        ...

    @abstractmethod
    def put(self, secret_id: str, value: str) -> None:
        """Create or update the secret, restoring it first if scheduled for deletion."""
        ...

    @abstractmethod
    def delete(self, secret_id: str) -> None:
        """Schedule deletion with a recovery window."""
        ...

    def get_value(self, secret_id: str) -> SecretValue | None:
        """Same as :meth:`get`, wrapped in :class:`SecretValue`."""
        value = self.get(secret_id)
        return SecretValue(value) if value is not None else None


def secret_id(project: str, env: str, name: str) -> str:
    """Standard secret id: ``{project}/{env}/{name}``."""
    return f"{project}/{env}/{name}"


class SecretsManagerStore(SecretStore):
    """AWS Secrets Manager backed store.

    Parameters
    ----------
    client
        A boto3 ``secretsmanager`` client (usually ``cloud.client("secretsmanager")``).
    """

    # Deleted (pending) secrets answer GetSecretValue with InvalidRequestException.
    _MISSING_CODES = ("ResourceNotFoundException", "InvalidRequestException")

    def __init__(self, client: Any) -> None:
        self._client = client

    def get(self, secret_id: str) -> str | None:
        try:
            res = self._client.get_secret_value(SecretId=secret_id)
        except ClientError as exc:
            if _code(exc) in self._MISSING_CODES:
                return None
            raise CloudError(
                f"Failed to get secret '{secret_id}'", code=_code(exc), cause=exc
            ).with_context(component="secrets", resource=secret_id) from exc
        if "SecretString" in res and res["SecretString"] is not None:
            return res["SecretString"]
        binary = res.get("SecretBinary")
        return binary.decode("utf-8") if binary is not None else None

    def put(self, secret_id: str, value: str) -> None:
        try:
            self._client.create_secret(Name=secret_id, SecretString=value)
            logger.info("secret.created", extra={"secret_id": secret_id})
            return
        except ClientError as exc:
            code = _code(exc)
            if code == "InvalidRequestException":
                # Scheduled for deletion: bring it back before updating.
                self._restore(secret_id, exc)
            elif code != "ResourceExistsException":
                raise CloudError(
                    f"Failed to create secret '{secret_id}'", code=code, cause=exc
                ).with_context(component="secrets", resource=secret_id) from exc

        try:
            self._client.update_secret(SecretId=secret_id, SecretString=value)
        except ClientError as exc:
            raise CloudError(
                f"Failed to update secret '{secret_id}'", code=_code(exc), cause=exc
            ).with_context(component="secrets", resource=secret_id) from exc
        logger.info("secret.updated", extra={"secret_id": secret_id})

    def delete(self, secret_id: str) -> None:
        try:
            self._client.delete_secret(
                SecretId=secret_id,
                RecoveryWindowInDays=RECOVERY_WINDOW_DAYS,
                ForceDeleteWithoutRecovery=False,
            )
        except ClientError as exc:
            if _code(exc) == "ResourceNotFoundException":
                return
            raise CloudError(
                f"Failed to delete secret '{secret_id}'", code=_code(exc), cause=exc
            ).with_context(component="secrets", resource=secret_id) from exc
        logger.info("secret.deletion_scheduled", extra={"secret_id": secret_id})

    def _restore(self, secret_id: str, original: ClientError) -> None:
        try:
            self._client.restore_secret(SecretId=secret_id)
        except ClientError as exc:
            raise CloudError(
                f"Failed to restore secret '{secret_id}'", code=_code(exc), cause=exc
            ).with_context(component="secrets", resource=secret_id) from original
        logger.info("secret.restored", extra={"secret_id": secret_id})


class DictSecretStore(SecretStore):
    """In-memory store for tests and dry runs.

    Tracks scheduled deletions so restore-then-update can be exercised
    without AWS.
    """

    def __init__(self, secrets: dict[str, str] | None = None):
        self._secrets = dict(secrets) if secrets else {}
        self.deleted: set[str] = set()

    def get(self, secret_id: str) -> str | None:
        if secret_id in self.deleted:
            return None
        return self._secrets.get(secret_id)

    def put(self, secret_id: str, value: str) -> None:
        self.deleted.discard(secret_id)
        self._secrets[secret_id] = value

    def delete(self, secret_id: str) -> None:
        if secret_id in self._secrets:
            self.deleted.add(secret_id)


def _code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


# ---------------------------------------------------------------------------
# Certificate cache
# ---------------------------------------------------------------------------


class CacheMiss(KeyError):
    """Raised by :meth:`CertificateCache.get` when nothing is stored under a key."""


class CertificateCache:
    """TLS material cache backed by a :class:`SecretStore`.

    Keys are stored under ``{prefix}/{key}``. A process-local dict sits in
    front of the store so one run does not re-fetch the same certificate on
    every handshake.
    """

    def __init__(self, store: SecretStore, prefix: str):
        self._store = store
        self._prefix = prefix.rstrip("/")
        self._local: dict[str, str] = {}
        self._lock = threading.Lock()

    def _secret_id(self, key: str) -> str:
        return f"{self._prefix}/{key}"

    def get(self, key: str) -> str:
        with self._lock:
            if key in self._local:
                return self._local[key]
        value = self._store.get(self._secret_id(key))
        if value is None:
            raise CacheMiss(key)
        with self._lock:
            self._local[key] = value
        return value

    def put(self, key: str, data: str) -> None:
        self._store.put(self._secret_id(key), data)
        with self._lock:
            self._local[key] = data

    def delete(self, key: str) -> None:
        self._store.delete(self._secret_id(key))
        with self._lock:
            self._local.pop(key, None)


__all__ = [
    "RECOVERY_WINDOW_DAYS",
    "SecretValue",
    "SecretStore",
    "SecretsManagerStore",
    "DictSecretStore",
    "CertificateCache",
    "CacheMiss",
    "secret_id",
]
