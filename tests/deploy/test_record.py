"""Tests for spine_devops.deploy.record."""

from __future__ import annotations

import json

from spine_devops.deploy.record import DeployRecord, DeployResult, OverallStatus, ZoneBinding


class TestDeployResult:
    def test_all_phases_passed(self):
        result = DeployResult(run_id="r1", command="deploy", service="web-api", env="dev")
        for name in ("network", "storage"):
            result.phase(name).finish(OverallStatus.PASSED)
        result.mark_complete()

        assert result.success
        assert result.summary.startswith("deploy PASSED: 2/2 phases")
        assert result.completed_at is not None
        assert result.duration_seconds >= 0

    def test_failed_phase_fails_run(self):
        result = DeployResult(run_id="r1", command="deploy", env="dev")
        result.phase("network").finish(OverallStatus.PASSED)
        result.phase("service").finish(OverallStatus.FAILED, error="boom")
        result.mark_complete()

        assert result.overall_status == OverallStatus.FAILED
        assert not result.success
        assert "1/2" in result.summary
        assert result.phases[1].error == "boom"

    def test_error_fails_run(self):
        result = DeployResult(run_id="r1", command="migrate", env="dev", error="no secret")
        result.mark_complete()
        assert result.overall_status == OverallStatus.FAILED

    def test_explicit_status(self):
        result = DeployResult(run_id="r1", command="build", env="dev")
        result.mark_complete(OverallStatus.CANCELLED)
        assert result.overall_status == OverallStatus.CANCELLED
        assert not result.success

    def test_json_dump(self):
        result = DeployResult(run_id="r1", command="build", env="dev", release_image="repo:tag")
        result.phase("image").finish(OverallStatus.SKIPPED)
        result.mark_complete()
        data = json.loads(result.model_dump_json())
        assert data["overall_status"] == "PASSED"
        assert data["phases"][0]["status"] == "SKIPPED"
        assert data["release_image"] == "repo:tag"


class TestDeployRecord:
    def test_zones_map(self):
        record = DeployRecord(
            release_tag="dev-web-api",
            zone_bindings=[ZoneBinding("Z1", "acme.com", ["api.acme.com"]), ZoneBinding("Z2", "acme.io")],
        )
        assert record.zones_map() == {"Z1": ["api.acme.com"], "Z2": []}

    def test_cache_host(self):
        assert DeployRecord(release_tag="t").cache_host == ""
        assert DeployRecord(release_tag="t", cache_endpoint="redis:6379").cache_host == "redis:6379"
