"""Tests for spine_devops.core.logging."""

from __future__ import annotations

import io
import json
import logging

import structlog


class TestConfigureLogging:
    """stdlib loggers with ``extra=`` are rendered through structlog."""

    def teardown_method(self):
        structlog.contextvars.clear_contextvars()
        structlog.reset_defaults()
        logging.getLogger().handlers = []

    def test_json_output_has_ecs_fields(self):
        from spine_devops.core.logging import configure_logging

        stream = io.StringIO()
        configure_logging(level="INFO", json_format=True, service="svc-test", stream=stream)
        logging.getLogger("spine_devops.test").info("network.ready", extra={"group": "sg-1"})

        record = json.loads(stream.getvalue().strip().splitlines()[-1])
        assert record["event"] == "network.ready"
        assert record["group"] == "sg-1"
        assert record["log.level"] == "info"
        assert "@timestamp" in record
        assert record["service.name"] == "svc-test"

    def test_log_context_binds_and_unbinds(self):
        from spine_devops.core.logging import LogContext, configure_logging

        stream = io.StringIO()
        configure_logging(json_format=True, stream=stream)
        log = logging.getLogger("spine_devops.test")
        with LogContext(run_id="abc123", env="dev"):
            log.info("inside")
        log.info("outside")

        inside, outside = (json.loads(line) for line in stream.getvalue().strip().splitlines()[-2:])
        assert inside["run_id"] == "abc123"
        assert inside["env"] == "dev"
        assert "run_id" not in outside

    def test_level_filters(self):
        from spine_devops.core.logging import configure_logging

        stream = io.StringIO()
        configure_logging(level="WARNING", json_format=True, stream=stream)
        logging.getLogger("spine_devops.test").info("hidden")
        assert stream.getvalue() == ""

    def test_sdk_loggers_clamped(self):
        from spine_devops.core.logging import configure_logging

        configure_logging(level="DEBUG", json_format=True, stream=io.StringIO())
        assert logging.getLogger("botocore").level == logging.INFO
