"""CloudProvider capability and provider-error classification.

Every provisioner talks to AWS through a :class:`CloudProvider`: it hands
out one boto3 client per service name, all built from the same session and
the same botocore retry configuration. Provisioners never construct clients
themselves, which is what lets the test suite swap in a provider that hands
out ``MagicMock`` clients.

Key Concepts:
    CloudProvider: ``client(name)`` plus ``region``.
    error_code(): The ``Error.Code`` of a botocore ``ClientError``.
    classify(): Map a ``ClientError`` onto the :mod:`spine_devops.core.errors`
        hierarchy (throttling, 5xx, credentials, not-found, conflict, everything else).
    call_with_retry(): Run one API call, retrying transient failures on the
        canonical poll sequence.

Architecture Decisions:
    - boto3 clients use ``retries={"mode": "standard"}`` so the SDK already
      retries throttling and 5xx a few times; :func:`call_with_retry` is the
      outer loop for describe/poll calls that must survive longer storms.
    - Idempotent-create paths compare :func:`error_code` against the
      service's "already exists" code at the call site rather than through
      a generic swallow helper, so each swallowed code is visible.

Related Modules:
    - :mod:`spine_devops.core.errors` - Target of classification
    - :mod:`spine_devops.core.retry` - Poll sequence used for retries
    - :mod:`spine_devops.deploy.config` - ``AwsCredentials`` consumed here

Tags:
    aws, boto3, botocore, client-factory, error-classification
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, TypeVar

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, EndpointConnectionError

from spine_devops.core.errors import (
    CloudError,
    CredentialsError,
    DevopsError,
    NetworkError,
    RateLimitError,
    ResourceExistsError,
    ResourceNotFoundError,
    TransientError,
)
from spine_devops.core.retry import PollIntervals, RetryContext

logger = logging.getLogger(__name__)

T = TypeVar("T")

_THROTTLING_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "RequestThrottled",
    "RequestThrottledException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "SlowDown",
    "PriorRequestNotComplete",
})

_CREDENTIAL_CODES = frozenset({
    "AuthFailure",
    "UnrecognizedClientException",
    "InvalidClientTokenId",
    "SignatureDoesNotMatch",
    "ExpiredToken",
    "ExpiredTokenException",
    "AccessDenied",
    "AccessDeniedException",
    "UnauthorizedOperation",
})


def error_code(exc: BaseException) -> str:
    """Return the provider error code of a ``ClientError`` (empty otherwise)."""
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "") or ""
    return ""


def error_message(exc: BaseException) -> str:
    """Return the provider error message of a ``ClientError``."""
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Message", "") or str(exc)
    return str(exc)


def is_not_found(exc: BaseException, *codes: str) -> bool:
    """True when ``exc`` carries one of ``codes`` or a generic not-found code."""
    code = error_code(exc)
    if code in codes:
        return True
    return code.endswith("NotFound") or code.endswith("NotFoundException") or code.startswith("NoSuch")


def _is_conflict(code: str) -> bool:
    return "AlreadyExists" in code or "Duplicate" in code or code == "ResourceExistsException"


def classify(
    exc: BaseException,
    *,
    component: str | None = None,
    resource: str | None = None,
    message: str | None = None,
) -> DevopsError:
    """Translate a botocore failure into a :class:`DevopsError`.

    The returned error is chained to ``exc`` and carries the component and
    resource identity so the operator sees what broke.
    """
    if isinstance(exc, DevopsError):
        return exc.with_context(component=component or exc.context.component,
                                resource=resource or exc.context.resource)

    text = message or error_message(exc)
    err: DevopsError
    if isinstance(exc, ClientError):
        code = error_code(exc)
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0
        if code in _THROTTLING_CODES:
            err = RateLimitError(text, code=code, cause=exc)
        elif code in _CREDENTIAL_CODES:
            err = CredentialsError(text, cause=exc)
        elif status >= 500 or code in ("InternalError", "InternalFailure", "ServiceUnavailable"):
            err = TransientError(text, code=code, cause=exc)
        elif is_not_found(exc):
            err = ResourceNotFoundError(code or "resource", resource or "", message=text, cause=exc)
        elif _is_conflict(code):
            err = ResourceExistsError(text, code=code, cause=exc)
        else:
            err = CloudError(text, code=code, cause=exc)
    elif isinstance(exc, EndpointConnectionError):
        err = NetworkError(text, cause=exc)
    elif isinstance(exc, BotoCoreError):
        err = CloudError(text, cause=exc)
    else:
        err = CloudError(text, cause=exc if isinstance(exc, Exception) else None)
    return err.with_context(component=component, resource=resource)


def call_with_retry(
    func: Callable[..., T],
    *args: Any,
    component: str | None = None,
    resource: str | None = None,
    cancel: threading.Event | None = None,
    max_retries: int = 12,
    **kwargs: Any,
) -> T:
    """Invoke one provider call, retrying rate limits and 5xx responses.

    Non-transient ``ClientError``\\ s are raised unchanged so callers can
    still inspect :func:`error_code` for idempotent-create handling.
    """

    def attempt() -> T:
        try:
            return func(*args, **kwargs)
        except (ClientError, BotoCoreError) as exc:
            err = classify(exc, component=component, resource=resource)
            if err.retryable:
                raise err from exc
            raise

    def on_retry(n: int, exc: Exception, delay: float) -> None:
        logger.warning(
            "cloud.call_retry",
            extra={"component": component, "resource": resource, "attempt": n,
                   "delay": delay, "error": str(exc)},
        )

    ctx = RetryContext(strategy=PollIntervals(max_retries=max_retries), on_retry=on_retry, cancel=cancel)
    return ctx.run(attempt)


class CloudProvider:
    """Factory for boto3 clients sharing one session and retry policy.

    Parameters
    ----------
    region
        Region every client is bound to.
    access_key_id, secret_access_key
        Static credentials. When both are ``None`` the default credential
        chain (instance role, task role, profile) is used.
    session
        Pre-built ``boto3.Session``; overrides the credential arguments.
    """

    def __init__(
        self,
        region: str,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        session: boto3.Session | None = None,
    ) -> None:
        if not region:
            raise CredentialsError("AWS region is required")
        self.region = region
        self._session = session or boto3.Session(
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name=region,
        )
        self._config = Config(
            region_name=region,
            retries={"max_attempts": 10, "mode": "standard"},
            user_agent_extra="spine-devops",
        )
        self._clients: dict[str, Any] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_credentials(cls, creds: Any) -> CloudProvider:
        """Build a provider from :class:`spine_devops.deploy.config.AwsCredentials`."""
        if creds.use_role:
            return cls(creds.region)
        return cls(
            creds.region,
            access_key_id=creds.access_key_id,
            secret_access_key=creds.secret_access_key.get_secret_value() if creds.secret_access_key else None,
        )

    def client(self, service_name: str) -> Any:
        """Return the cached client for ``service_name`` (e.g. ``"ecs"``)."""
        with self._lock:
            if service_name not in self._clients:
                self._clients[service_name] = self._session.client(service_name, config=self._config)
            return self._clients[service_name]


__all__ = [
    "CloudProvider",
    "call_with_retry",
    "classify",
    "error_code",
    "error_message",
    "is_not_found",
]
