"""Tests for spine_devops.deploy.service."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import WaiterError

from spine_devops.core.errors import CloudError, TaskFailureError
from spine_devops.core.retry import PollIntervals
from spine_devops.deploy.descriptor import ClusterSpec, LoadBalancerSpec, ServiceDescriptor, TargetGroupSpec
from spine_devops.deploy.record import DeployRecord, ZoneBinding
from spine_devops.deploy.service import ServiceDeployer, describe_stopped_task, recreate_reason

TASKDEF = "arn:aws:ecs:us-east-1:1:task-definition/web-api:7"
SERVICE_ARN = "arn:aws:ecs:us-east-1:1:service/acme-dev/web-api-dev"

CLUSTER = ClusterSpec(
    cluster_name="acme-dev",
    log_group_name="logs/env_dev",
    execution_role_name="E",
    task_role_name="T",
    task_policy_name="P",
)


def _descriptor(load_balanced=False, **kwargs):
    lb = None
    if load_balanced:
        lb = LoadBalancerSpec(name="acme-dev-web-api", target_group=TargetGroupSpec(name="web-api-dev-http"))
    return ServiceDescriptor(
        service_name="web-api",
        ecs_service_name="web-api-dev",
        service_dir=Path("/src/acme/cmd/web-api"),
        dockerfile_path=Path("/src/acme/cmd/web-api/Dockerfile"),
        cluster=CLUSTER,
        load_balancer=lb,
        **kwargs,
    )


def _record(**kwargs):
    return DeployRecord(
        release_tag="dev-web-api",
        subnet_ids=["subnet-a", "subnet-b"],
        security_group_id="sg-1",
        **kwargs,
    )


def _live(**kwargs):
    svc = {
        "serviceName": "web-api-dev",
        "serviceArn": SERVICE_ARN,
        "status": "ACTIVE",
        "desiredCount": 2,
        "loadBalancers": [],
        "serviceRegistries": [],
    }
    svc.update(kwargs)
    return svc


def _pending_waiter():
    return WaiterError(name="ServicesStable", reason="Max attempts exceeded", last_response={})


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch):
    monkeypatch.setattr("spine_devops.core.retry.time.sleep", lambda s: None)


class TestRecreateReason:
    def test_forced(self):
        assert recreate_reason(_live(), force=True, wants_load_balancer=False, wants_registry=False)

    def test_load_balancer_toggled(self):
        assert recreate_reason(_live(), force=False, wants_load_balancer=True,
                               wants_registry=False) == "load balancer enabled"
        assert recreate_reason(_live(loadBalancers=[{"targetGroupArn": "x"}]), force=False,
                               wants_load_balancer=False, wants_registry=False) == "load balancer disabled"

    def test_registry_toggled(self):
        assert recreate_reason(_live(), force=False, wants_load_balancer=False,
                               wants_registry=True) == "service discovery enabled"

    def test_compatible(self):
        live = _live(serviceRegistries=[{"registryArn": "r"}])
        assert recreate_reason(live, force=False, wants_load_balancer=False, wants_registry=True) is None


class TestDescribeStoppedTask:
    def test_lines(self):
        task = {
            "taskArn": "arn:task/abc",
            "stopCode": "EssentialContainerExited",
            "stoppedReason": "Essential container in task exited",
            "containers": [{"name": "web", "exitCode": 137, "reason": "OutOfMemoryError"}, {"name": "agent"}],
        }
        assert describe_stopped_task(task) == [
            "container web exited with 137 - OutOfMemoryError",
            "container agent exited",
            "task arn:task/abc stopped with EssentialContainerExited - Essential container in task exited",
        ]


class TestCreate:
    def test_create_params(self, cloud):
        record = _record(target_group_arn="arn:tg", service_registry_arn="arn:registry")
        params = ServiceDeployer(cloud, _descriptor(load_balanced=True, assign_public_ip=False), record,
                                 tags={"project": "acme"}).create_params(TASKDEF)
        assert params["launchType"] == "FARGATE"
        vpc = params["networkConfiguration"]["awsvpcConfiguration"]
        assert vpc == {"subnets": ["subnet-a", "subnet-b"], "securityGroups": ["sg-1"], "assignPublicIp": "DISABLED"}
        assert params["loadBalancers"] == [
            {"targetGroupArn": "arn:tg", "containerName": "web-api-dev", "containerPort": 80}
        ]
        assert params["healthCheckGracePeriodSeconds"] == 60
        assert params["serviceRegistries"] == [{"registryArn": "arn:registry"}]
        assert params["tags"] == [{"key": "project", "value": "acme"}]

    def test_retry_without_tags_on_short_arns(self, cloud, client_error):
        ecs = cloud.client("ecs")
        ecs.create_service.side_effect = [
            client_error("InvalidParameterException",
                         "The new ARN and resource ID format must be enabled to add tags to the service."),
            {"service": _live()},
        ]
        ServiceDeployer(cloud, _descriptor(), _record(), tags={"project": "acme"}).create(TASKDEF)
        assert "tags" in ecs.create_service.call_args_list[0].kwargs
        assert "tags" not in ecs.create_service.call_args_list[1].kwargs

    def test_other_create_errors(self, cloud, client_error):
        cloud.client("ecs").create_service.side_effect = client_error("InvalidParameterException", "bad subnet")
        with pytest.raises(CloudError, match="bad subnet"):
            ServiceDeployer(cloud, _descriptor(), _record()).create(TASKDEF)


class TestConverge:
    def test_updates_compatible_service(self, cloud):
        ecs = cloud.client("ecs")
        ecs.describe_services.return_value = {"services": [_live(healthCheckGracePeriodSeconds=30)]}
        ecs.update_service.return_value = {"service": _live()}

        ServiceDeployer(cloud, _descriptor(), _record()).converge(TASKDEF)

        params = ecs.update_service.call_args.kwargs
        assert params["taskDefinition"] == TASKDEF
        assert params["desiredCount"] == 2
        assert params["healthCheckGracePeriodSeconds"] == 30
        ecs.create_service.assert_not_called()

    def test_recreates_when_load_balancer_added(self, cloud):
        ecs = cloud.client("ecs")
        ecs.describe_services.return_value = {"services": [_live()]}
        ecs.create_service.return_value = {"service": _live()}
        record = _record(target_group_arn="arn:tg")

        ServiceDeployer(cloud, _descriptor(load_balanced=True), record).converge(TASKDEF)

        ecs.update_service.assert_called_once_with(cluster="acme-dev", service=SERVICE_ARN, desiredCount=0)
        ecs.delete_service.assert_called_once_with(cluster="acme-dev", service=SERVICE_ARN, force=False)
        waited = [c.args[0] for c in ecs.get_waiter.call_args_list]
        assert waited == ["services_stable", "services_inactive"]
        assert "loadBalancers" in ecs.create_service.call_args.kwargs

    def test_creates_when_inactive(self, cloud):
        ecs = cloud.client("ecs")
        ecs.describe_services.return_value = {"services": [_live(status="INACTIVE")]}
        ecs.create_service.return_value = {"service": _live()}
        ServiceDeployer(cloud, _descriptor(), _record()).converge(TASKDEF)
        ecs.delete_service.assert_not_called()
        ecs.create_service.assert_called_once()

    def test_missing_cluster_means_no_service(self, cloud, client_error):
        cloud.client("ecs").describe_services.side_effect = client_error("ClusterNotFoundException")
        assert ServiceDeployer(cloud, _descriptor(), _record()).describe_service() is None


def _stopped(ecs, *task_defs):
    arns = [f"arn:aws:ecs:us-east-1:1:task/acme-dev/t{i}" for i in range(len(task_defs))]
    ecs.list_tasks.return_value = {"taskArns": arns}
    ecs.describe_tasks.return_value = {
        "tasks": [
            {"taskArn": arn, "taskDefinitionArn": td, "stopCode": "EssentialContainerExited",
             "containers": [{"name": "web", "exitCode": 1}]}
            for arn, td in zip(arns, task_defs)
        ],
        "failures": [],
    }


class TestStoppedTasks:
    def test_below_desired(self, cloud):
        _stopped(cloud.client("ecs"), TASKDEF, "arn:old:6")
        assert ServiceDeployer(cloud, _descriptor(), _record()).check_stopped_tasks(TASKDEF, 2) is None

    def test_reaching_desired_fails_with_logs(self, cloud):
        _stopped(cloud.client("ecs"), TASKDEF, TASKDEF)
        fetcher = MagicMock()
        fetcher.fetch.return_value = ["panic: boom"]

        failure = ServiceDeployer(cloud, _descriptor(), _record(), log_fetcher=fetcher).check_stopped_tasks(
            TASKDEF, 2
        )

        assert isinstance(failure, TaskFailureError)
        assert len(failure.stopped_tasks) == 2
        assert failure.log_lines == ["panic: boom", "panic: boom"]
        fetcher.fetch.assert_any_call("t0")

    def test_describe_failures_reported_not_counted(self, cloud):
        ecs = cloud.client("ecs")
        _stopped(ecs, TASKDEF)
        ecs.describe_tasks.return_value["failures"] = [
            {"arn": "arn:aws:ecs:us-east-1:1:task/acme-dev/gone", "reason": "MISSING"},
        ]
        reporter = MagicMock()

        deployer = ServiceDeployer(cloud, _descriptor(), _record(), reporter=reporter)

        assert deployer.check_stopped_tasks(TASKDEF, 2) is None
        reporter.detail.assert_any_call("task arn:aws:ecs:us-east-1:1:task/acme-dev/gone failed with MISSING")

    def test_no_stopped_tasks(self, cloud):
        cloud.client("ecs").list_tasks.return_value = {"taskArns": []}
        assert ServiceDeployer(cloud, _descriptor(), _record()).check_stopped_tasks(TASKDEF, 1) is None
        cloud.client("ecs").describe_tasks.assert_not_called()


class TestWaitForStability:
    def test_stable(self, cloud):
        deployer = ServiceDeployer(cloud, _descriptor(), _record(), tick_seconds=0.01)
        deployer.wait_for_stability(_live(), TASKDEF)
        cloud.client("ecs").get_waiter.assert_called_with("services_stable")

    def test_stopped_tasks_abort_the_wait(self, cloud):
        ecs = cloud.client("ecs")
        ecs.get_waiter.return_value.wait.side_effect = _pending_waiter()
        _stopped(ecs, TASKDEF)
        deployer = ServiceDeployer(cloud, _descriptor(), _record(), tick_seconds=0.01)

        with pytest.raises(TaskFailureError):
            deployer.wait_for_stability(_live(desiredCount=1), TASKDEF)

    def test_waiter_delays_follow_poll_intervals(self, cloud):
        waiter = cloud.client("ecs").get_waiter.return_value
        waiter.wait.side_effect = [_pending_waiter(), _pending_waiter(), None]
        deployer = ServiceDeployer(cloud, _descriptor(), _record(),
                                   poll=PollIntervals(intervals=(0.001, 2.0, 30.0)))

        assert deployer._wait("services_inactive", SERVICE_ARN)

        configs = [c.kwargs["WaiterConfig"] for c in waiter.wait.call_args_list]
        assert configs == [
            {"Delay": 1, "MaxAttempts": 1},
            {"Delay": 2, "MaxAttempts": 1},
            {"Delay": 30, "MaxAttempts": 1},
        ]

    def test_waiter_failure(self, cloud):
        cloud.client("ecs").get_waiter.return_value.wait.side_effect = WaiterError(
            name="ServicesStable", reason="Waiter encountered a terminal failure state", last_response={}
        )
        cloud.client("ecs").list_tasks.return_value = {"taskArns": []}
        deployer = ServiceDeployer(cloud, _descriptor(), _record(), tick_seconds=0.01)
        with pytest.raises(CloudError, match="services_stable"):
            deployer.wait_for_stability(_live(), TASKDEF)


class TestTaskDns:
    def test_a_records_for_task_ips(self, cloud):
        ecs = cloud.client("ecs")
        ecs.list_tasks.return_value = {"taskArns": ["arn:task/t0"]}
        ecs.describe_tasks.return_value = {"tasks": [{"attachments": [{
            "type": "ElasticNetworkInterface",
            "details": [{"name": "subnetId", "value": "subnet-a"}, {"name": "networkInterfaceId", "value": "eni-1"}],
        }]}]}
        cloud.client("ec2").describe_network_interfaces.return_value = {
            "NetworkInterfaces": [{"Association": {"PublicIp": "54.1.2.3"}}, {}]
        }
        record = _record(zone_bindings=[ZoneBinding("Z1", "acme.com", ["api.acme.com"])])

        assert ServiceDeployer(cloud, _descriptor(), record).update_task_dns() == ["54.1.2.3"]
        change = cloud.client("route53").change_resource_record_sets.call_args.kwargs
        record_set = change["ChangeBatch"]["Changes"][0]["ResourceRecordSet"]
        assert record_set["Type"] == "A"
        assert record_set["ResourceRecords"] == [{"Value": "54.1.2.3"}]

    def test_skipped_behind_load_balancer(self, cloud):
        record = _record(zone_bindings=[ZoneBinding("Z1", "acme.com", ["api.acme.com"])])
        assert ServiceDeployer(cloud, _descriptor(load_balanced=True), record).update_task_dns() == []
        cloud.client("ecs").list_tasks.assert_not_called()
