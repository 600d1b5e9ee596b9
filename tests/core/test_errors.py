"""Tests for spine_devops.core.errors.

Covers the category and retry defaults of each error kind, fluent context
attachment, serialization via ``to_dict`` and the classification helpers.
"""

from __future__ import annotations

import pytest

from spine_devops.core.errors import (
    CloudError,
    ConvergenceTimeoutError,
    DescriptorValidationError,
    DevopsError,
    ErrorCategory,
    NetworkError,
    PlaceholderUnresolvedError,
    RateLimitError,
    ResourceNotFoundError,
    TaskFailureError,
    TransientError,
    is_retryable,
)


class TestDefaults:
    """Each subclass carries its own category and retry flag."""

    @pytest.mark.parametrize(
        "error, category, retryable",
        [
            (DescriptorValidationError("bad"), ErrorCategory.VALIDATION, False),
            (CloudError("boom"), ErrorCategory.CLOUD, False),
            (TransientError("flaky"), ErrorCategory.NETWORK, True),
            (NetworkError("down"), ErrorCategory.NETWORK, True),
            (RateLimitError(), ErrorCategory.NETWORK, True),
            (ConvergenceTimeoutError("cancelled"), ErrorCategory.CONVERGENCE, False),
        ],
    )
    def test_category_and_retryable(self, error, category, retryable):
        assert error.category == category
        assert error.retryable is retryable

    def test_overrides(self):
        err = CloudError("x", retryable=True, category=ErrorCategory.NETWORK)
        assert err.retryable is True
        assert err.category == ErrorCategory.NETWORK


class TestContext:
    """with_context() is fluent and ignores None values."""

    def test_known_fields_and_metadata(self):
        err = CloudError("Failed to create bucket").with_context(
            component="storage", resource="acme-private", region="us-east-1", env=None
        )
        assert err.context.component == "storage"
        assert err.context.resource == "acme-private"
        assert err.context.env is None
        assert err.context.metadata == {"region": "us-east-1"}

    def test_cause_is_chained(self):
        cause = ValueError("inner")
        err = CloudError("outer", cause=cause)
        assert err.__cause__ is cause
        assert err.to_dict()["cause"] == "inner"

    def test_to_dict(self):
        err = CloudError("nope", code="AccessDenied").with_context(component="iam", resource="role")
        data = err.to_dict()
        assert data["error_type"] == "CloudError"
        assert data["code"] == "AccessDenied"
        assert data["context"] == {"component": "iam", "resource": "role"}
        assert data["retryable"] is False


class TestSpecificErrors:
    def test_not_found_message_and_resource(self):
        err = ResourceNotFoundError("hosted zone", "acme.test")
        assert str(err) == "Failed to find hosted zone 'acme.test'"
        assert err.context.resource == "acme.test"

    def test_placeholder_tokens_sorted_unique(self):
        err = PlaceholderUnresolvedError(["B", "A", "B"], template="web.json")
        assert err.tokens == ["A", "B"]
        assert "A, B" in str(err)
        assert err.context.resource == "web.json"

    def test_task_failure_to_dict(self):
        err = TaskFailureError("stopped", stopped_tasks=["t1 exit 1"], log_lines=["a", "b"])
        data = err.to_dict()
        assert data["stopped_tasks"] == ["t1 exit 1"]
        assert data["log_lines"] == 2

    def test_validation_field(self):
        err = DescriptorValidationError("Invalid env", field="env")
        assert err.to_dict()["field"] == "env"


class TestHelpers:
    def test_is_retryable(self):
        assert is_retryable(TransientError("x"))
        assert not is_retryable(CloudError("x"))
        assert is_retryable(ConnectionError())
        assert not is_retryable(ValueError())
