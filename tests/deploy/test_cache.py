"""Tests for spine_devops.deploy.cache."""

from __future__ import annotations

import pytest

from spine_devops.core.errors import CloudError
from spine_devops.deploy.cache import CacheProvisioner, cache_endpoint
from spine_devops.deploy.descriptor import CacheSpec

NODE = {"Endpoint": {"Address": "acme-dev.cache.amazonaws.com", "Port": 6379}}


def _spec(**kw):
    kw.setdefault("parameters", {"maxmemory-policy": "allkeys-lru"})
    return CacheSpec(cluster_id="acme-dev", parameter_group_name="acme-redis504", **kw)


def _cluster(group="acme-redis504", status="available"):
    return {
        "CacheClusterId": "acme-dev",
        "CacheClusterStatus": status,
        "CacheNodes": [NODE],
        "CacheParameterGroup": {"CacheParameterGroupName": group},
    }


class TestEndpoint:
    def test_configuration_endpoint_wins(self):
        cluster = {"ConfigurationEndpoint": {"Address": "cfg", "Port": 11211}, "CacheNodes": [NODE]}
        assert cache_endpoint(cluster) == "cfg:11211"

    def test_first_node(self):
        assert cache_endpoint({"CacheNodes": [NODE]}) == "acme-dev.cache.amazonaws.com:6379"

    def test_none(self):
        with pytest.raises(CloudError, match="Unable to determine cache host"):
            cache_endpoint({"CacheClusterId": "x"})


class TestCreateParams:
    def test_redis_gets_snapshots(self):
        params = CacheProvisioner(None, _spec()).create_params("sg-1")
        assert params["SnapshotRetentionLimit"] == 7
        assert params["SecurityGroupIds"] == ["sg-1"]
        assert params["CacheNodeType"] == "cache.t2.micro"

    def test_memcached_has_no_snapshots(self):
        params = CacheProvisioner(None, _spec(engine="memcached")).create_params("sg-1")
        assert "SnapshotRetentionLimit" not in params


class TestRun:
    def test_creates_moves_and_sets_parameters(self, cloud, client_error, monkeypatch):
        monkeypatch.setattr("spine_devops.core.retry.time.sleep", lambda s: None)
        ec = cloud.client("elasticache")
        ec.describe_cache_clusters.side_effect = [
            client_error("CacheClusterNotFound"),          # ensure_cluster
            {"CacheClusters": [_cluster("default.redis5.0")]},  # wait after create
            {"CacheClusters": [_cluster()]},                 # wait after move
        ]
        ec.create_cache_cluster.return_value = {"CacheCluster": {"CacheClusterStatus": "creating"}}
        ec.describe_cache_parameter_groups.return_value = {
            "CacheParameterGroups": [{"CacheParameterGroupFamily": "redis5.0"}]
        }
        ec.modify_cache_cluster.return_value = {"CacheCluster": _cluster(status="modifying")}
        ec.get_paginator.return_value.paginate.return_value = [
            {"Parameters": [{"ParameterName": "maxmemory-policy", "ParameterValue": "volatile-lru"}]}
        ]

        endpoint = CacheProvisioner(cloud, _spec()).run("sg-1", {"project": "acme"})

        assert endpoint == "acme-dev.cache.amazonaws.com:6379"
        ec.create_cache_parameter_group.assert_called_once()
        assert ec.create_cache_parameter_group.call_args.kwargs["CacheParameterGroupFamily"] == "redis5.0"
        ec.modify_cache_parameter_group.assert_called_once_with(
            CacheParameterGroupName="acme-redis504",
            ParameterNameValues=[{"ParameterName": "maxmemory-policy", "ParameterValue": "allkeys-lru"}],
        )

    def test_waits_for_new_group_before_parameters(self, cloud, monkeypatch):
        monkeypatch.setattr("spine_devops.core.retry.time.sleep", lambda s: None)
        ec = cloud.client("elasticache")
        ec.describe_cache_clusters.side_effect = [
            {"CacheClusters": [_cluster("default.redis5.0")]},  # ensure_cluster
            {"CacheClusters": [_cluster("default.redis5.0")]},  # still reporting the old group
            {"CacheClusters": [_cluster()]},
        ]
        ec.describe_cache_parameter_groups.return_value = {
            "CacheParameterGroups": [{"CacheParameterGroupFamily": "redis5.0"}]
        }
        ec.modify_cache_cluster.return_value = {"CacheCluster": _cluster("default.redis5.0", status="modifying")}
        ec.get_paginator.return_value.paginate.return_value = [
            {"Parameters": [{"ParameterName": "maxmemory-policy", "ParameterValue": "volatile-lru"}]}
        ]

        CacheProvisioner(cloud, _spec()).run("sg-1", {})

        assert ec.describe_cache_clusters.call_count == 3
        ec.modify_cache_parameter_group.assert_called_once()
        assert ec.modify_cache_parameter_group.call_args.kwargs["CacheParameterGroupName"] == "acme-redis504"

    def test_rerun_makes_no_changes(self, cloud):
        ec = cloud.client("elasticache")
        ec.describe_cache_clusters.return_value = {"CacheClusters": [_cluster()]}
        ec.get_paginator.return_value.paginate.return_value = [
            {"Parameters": [{"ParameterName": "maxmemory-policy", "ParameterValue": "allkeys-lru"}]}
        ]

        CacheProvisioner(cloud, _spec()).run("sg-1", {})

        ec.create_cache_cluster.assert_not_called()
        ec.modify_cache_cluster.assert_not_called()
        ec.modify_cache_parameter_group.assert_not_called()

    def test_foreign_group_left_alone(self, cloud):
        ec = cloud.client("elasticache")
        ec.describe_cache_clusters.return_value = {"CacheClusters": [_cluster("hand-made")]}

        CacheProvisioner(cloud, _spec()).run("sg-1", {})

        ec.create_cache_parameter_group.assert_not_called()
        ec.modify_cache_parameter_group.assert_not_called()

    def test_failed_state(self, cloud, monkeypatch):
        monkeypatch.setattr("spine_devops.core.retry.time.sleep", lambda s: None)
        cloud.client("elasticache").describe_cache_clusters.return_value = {
            "CacheClusters": [_cluster(status="create-failed")]
        }
        with pytest.raises(CloudError, match="create-failed"):
            CacheProvisioner(cloud, _spec()).wait_available()
