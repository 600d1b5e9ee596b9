"""Tests for spine_devops.deploy.taskdef."""

from __future__ import annotations

import base64
import json

import pytest

from spine_devops.core.errors import (
    DescriptorValidationError,
    PlaceholderUnresolvedError,
    ResourceNotFoundError,
)
from spine_devops.core.secrets import DictSecretStore
from spine_devops.deploy.config import CiMetadata, DeployConfig
from spine_devops.deploy.descriptor import build_environment, build_service
from spine_devops.deploy.record import DBCredentials, DeployRecord, ZoneBinding
from spine_devops.deploy.taskdef import (
    TaskDefinitionBuilder,
    build_placeholders,
    container_totals,
    datadog_api_key,
    encode_zones,
    render_template,
    select_task_size,
)

TEMPLATE = {
    "taskDefinitionArn": "arn:old",
    "revision": 3,
    "status": "ACTIVE",
    "containerDefinitions": [{
        "memory": 512,
        "cpu": 256,
        "environment": [
            {"name": "DB_HOST", "value": "{DB_HOST}"},
            {"name": "BASE_URL", "value": "{APP_BASE_URL}"},
        ],
    }],
}


@pytest.fixture
def descriptors(project_dir):
    config = DeployConfig(
        service="web-api",
        env="prod",
        enable_elb=True,
        enable_https=True,
        host_names=["api.acme.com", "www.acme.com"],
    )
    environment = build_environment(config, "acme", "us-east-1")
    service = build_service(config, environment, project_dir / "cmd" / "web-api" / "Dockerfile", "prod-web-api")
    return environment, service


def _record(**kwargs):
    kwargs.setdefault("release_image", "123.dkr.ecr/acme:prod-web-api")
    return DeployRecord(release_tag="prod-web-api", **kwargs)


class TestSelectTaskSize:
    @pytest.mark.parametrize("memory,cpu,expected", [
        (1, 1, (512, 256)),
        (600, 256, (1024, 256)),
        (1024, 300, (1024, 512)),
        (3000, 100, (3072, 512)),
        (512, 4096, (8192, 4096)),
    ])
    def test_smallest_fit(self, memory, cpu, expected):
        assert select_task_size(memory, cpu) == expected

    def test_too_large(self):
        with pytest.raises(DescriptorValidationError):
            select_task_size(9000, 1)

    def test_container_totals(self):
        containers = [{"memory": 256, "cpu": 128}, {"memoryReservation": 128}]
        assert container_totals(containers) == (384, 129)


class TestRenderTemplate:
    def test_values_are_json_escaped(self):
        rendered = render_template('{"a": "{X}"}', {"X": 'say "hi"\n'})
        assert json.loads(rendered) == {"a": 'say "hi"\n'}

    def test_values_not_rescanned(self):
        assert render_template('"{X}"', {"X": "{Y}"}) == '"{Y}"'

    def test_unresolved_tokens(self):
        with pytest.raises(PlaceholderUnresolvedError) as exc_info:
            render_template('{"a": "{NOPE}", "b": "{ENV}", "c": "{NOPE}"}', {"ENV": "dev"}, source="t.json")
        assert exc_info.value.tokens == ["{NOPE}"]
        assert "t.json" in str(exc_info.value)

    def test_lowercase_braces_untouched(self):
        assert render_template('{"x": "{lower}"}', {}) == '{"x": "{lower}"}'


class TestEncodeZones:
    def test_unpadded_base64url(self):
        encoded = encode_zones({"Z1": ["api.acme.com"]})
        assert "=" not in encoded
        padded = encoded + "=" * (-len(encoded) % 4)
        assert json.loads(base64.urlsafe_b64decode(padded)) == {"Z1": ["api.acme.com"]}


class TestDatadogApiKey:
    @pytest.fixture(autouse=True)
    def _clean_env(self, monkeypatch):
        monkeypatch.setenv("DD_API_KEY", "")
        monkeypatch.setenv("PROD_DD_API_KEY", "")

    def test_env_wins(self, monkeypatch):
        monkeypatch.setenv("PROD_DD_API_KEY", "from-env")
        store = DictSecretStore({"acme/prod/datadog": "from-secret"})
        assert datadog_api_key("prod", store, "acme/prod/datadog") == "from-env"

    def test_json_secret(self):
        store = DictSecretStore({"acme/prod/datadog": '{"DD_API_KEY": "k2"}'})
        assert datadog_api_key("prod", store, "acme/prod/datadog") == "k2"

    def test_shared_fallback(self):
        store = DictSecretStore({"acme/prod/datadog": "{not json", "DATADOG": " k3 \n"})
        assert datadog_api_key("prod", store, "acme/prod/datadog") == "k3"

    def test_nothing_configured(self):
        assert datadog_api_key("prod", DictSecretStore(), "acme/prod/datadog") == ""
        assert datadog_api_key("prod", None, "acme/prod/datadog") == ""


class TestBuildPlaceholders:
    def test_load_balanced_https(self, descriptors):
        environment, service = descriptors
        record = _record(zone_bindings=[ZoneBinding("Z1", "acme.com", ["api.acme.com", "www.acme.com"])])
        ci = CiMetadata(commit_sha="abc", job_id="42", pipeline_url="https://ci/p/1")

        values = build_placeholders(environment, service, record, ci)

        assert values["ECS_SERVICE"] == "web-api-prod"
        assert values["APP_BASE_URL"] == "https://api.acme.com/"
        assert values["HOST_PRIMARY"] == "api.acme.com"
        assert values["HOST_NAMES"] == "www.acme.com"
        assert values["HTTPS_HOST"] == ""
        assert values["HTTPS_ENABLED"] == "true"
        assert values["ROUTE53_UPDATE_TASK_IPS"] == "false"
        assert values["ROUTE53_ZONES"] == encode_zones({"Z1": ["api.acme.com", "www.acme.com"]})
        assert values["DATADOG_ESSENTIAL"] == "false"
        assert values["CI_COMMIT_JOB_ID"] == values["CI_JOB_ID"] == "42"
        assert values["CI_COMMIT_PIPELINE_URL"] == "https://ci/p/1"
        assert values["DB_HOST"] == ""

    def test_database_values(self, descriptors):
        environment, service = descriptors
        creds = DBCredentials(host="db.internal", user="god", pass_="s3cret", database="shared",
                              driver="postgres", disable_tls=True)
        values = build_placeholders(environment, service, _record(db_credentials=creds), CiMetadata())
        assert values["DB_HOST"] == "db.internal"
        assert values["DB_PASS"] == "s3cret"
        assert values["DB_DISABLE_TLS"] == "true"
        assert values["ROUTE53_ZONES"] == ""


class TestTaskDefinitionBuilder:
    def test_registers_rendered_template(self, cloud, descriptors):
        environment, service = descriptors
        (service.service_dir / "ecs-task-definition.json").write_text(json.dumps(TEMPLATE))
        ecs = cloud.client("ecs")
        ecs.register_task_definition.return_value = {
            "taskDefinition": {"taskDefinitionArn": "arn:aws:ecs:us-east-1:1:task-definition/web-api:4"}
        }
        record = _record(
            execution_role_arn="arn:exec",
            task_role_arn="arn:task",
            db_credentials=DBCredentials(host="db.internal"),
        )

        arn = TaskDefinitionBuilder(cloud, environment, service).run(record, CiMetadata())

        assert arn.endswith("web-api:4")
        task = ecs.register_task_definition.call_args.kwargs
        assert "revision" not in task and "status" not in task and "taskDefinitionArn" not in task
        assert task["family"] == "web-api"
        assert task["networkMode"] == "awsvpc"
        assert (task["memory"], task["cpu"]) == ("512", "256")
        assert task["executionRoleArn"] == "arn:exec"
        assert task["taskRoleArn"] == "arn:task"
        container = task["containerDefinitions"][0]
        assert container["name"] == "web-api-prod"
        assert container["image"] == record.release_image
        assert container["environment"][0] == {"name": "DB_HOST", "value": "db.internal"}
        assert {"key": "project", "value": "acme"} in task["tags"]

    def test_env_specific_template_preferred(self, cloud, descriptors):
        environment, service = descriptors
        (service.service_dir / "ecs-task-definition.json").write_text("{not json")
        (service.service_dir / "ecs-task-definition-prod.json").write_text(json.dumps(TEMPLATE))
        assert TaskDefinitionBuilder(cloud, environment, service).find_template().name == (
            "ecs-task-definition-prod.json"
        )

    def test_missing_template(self, cloud, descriptors):
        environment, service = descriptors
        with pytest.raises(ResourceNotFoundError, match="ecs-task-definition-prod.json"):
            TaskDefinitionBuilder(cloud, environment, service).find_template()

    def test_invalid_json(self, cloud, descriptors):
        environment, service = descriptors
        with pytest.raises(DescriptorValidationError):
            TaskDefinitionBuilder(cloud, environment, service).build_input("{not json", "img")

    def test_no_containers(self, cloud, descriptors):
        environment, service = descriptors
        with pytest.raises(DescriptorValidationError, match="no container"):
            TaskDefinitionBuilder(cloud, environment, service).build_input('{"family": "x"}', "img")
