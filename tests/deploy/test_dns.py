"""Tests for spine_devops.deploy.dns."""

from __future__ import annotations

import pytest

from spine_devops.core.errors import CloudError
from spine_devops.deploy.dns import HostedZoneResolver, upsert_a_records, upsert_alias_records
from spine_devops.deploy.record import ZoneBinding


def _zones(route53, zones):
    route53.get_paginator.return_value.paginate.return_value = [{"HostedZones": zones}]


class TestResolve:
    def test_longest_suffix_wins(self, cloud):
        _zones(cloud.client("route53"), [
            {"Id": "/hostedzone/Z1", "Name": "acme.com.", "Config": {"PrivateZone": False}},
            {"Id": "/hostedzone/Z2", "Name": "eu.acme.com.", "Config": {"PrivateZone": False}},
        ])
        resolver = HostedZoneResolver(cloud)
        assert resolver.resolve("api.eu.acme.com") == ("/hostedzone/Z2", "eu.acme.com")
        assert resolver.resolve("www.acme.com") == ("/hostedzone/Z1", "acme.com")

    def test_private_zones_ignored_and_zone_created(self, cloud):
        route53 = cloud.client("route53")
        _zones(route53, [{"Id": "/hostedzone/P", "Name": "acme.com.", "Config": {"PrivateZone": True}}])
        route53.create_hosted_zone.return_value = {"HostedZone": {"Id": "/hostedzone/NEW"}}

        resolver = HostedZoneResolver(cloud)
        assert resolver.resolve("api.acme.com") == ("/hostedzone/NEW", "acme.com")
        assert route53.create_hosted_zone.call_args.kwargs["Name"] == "acme.com"
        # The new zone is remembered for the rest of the run.
        assert resolver.resolve("www.acme.com") == ("/hostedzone/NEW", "acme.com")
        route53.create_hosted_zone.assert_called_once()

    def test_create_failure(self, cloud, client_error):
        route53 = cloud.client("route53")
        _zones(route53, [])
        route53.create_hosted_zone.side_effect = client_error("InvalidDomainName")
        with pytest.raises(CloudError, match="acme.com"):
            HostedZoneResolver(cloud).resolve("api.acme.com")


class TestBind:
    def test_groups_by_zone(self, cloud):
        _zones(cloud.client("route53"), [
            {"Id": "Z1", "Name": "acme.com.", "Config": {}},
            {"Id": "Z2", "Name": "acme.io.", "Config": {}},
        ])
        bindings = HostedZoneResolver(cloud).bind(["api.acme.com", "acme.io", "www.acme.com", "API.acme.com"])
        assert [(b.zone_id, b.fqdns) for b in bindings] == [
            ("Z1", ["api.acme.com", "www.acme.com"]),
            ("Z2", ["acme.io"]),
        ]

    def test_zone_for(self, cloud):
        bindings = [ZoneBinding("Z1", "acme.com"), ZoneBinding("Z2", "eu.acme.com")]
        resolver = HostedZoneResolver(cloud)
        assert resolver.zone_for("_x.api.eu.acme.com.", bindings) == "Z2"
        assert resolver.zone_for("acme.com", bindings) == "Z1"
        assert resolver.zone_for("other.org", bindings) is None


class TestUpserts:
    def test_alias_records(self, cloud):
        bindings = [ZoneBinding("Z1", "acme.com", ["api.acme.com", "www.acme.com"])]
        upsert_alias_records(cloud, bindings, "lb-123.elb.amazonaws.com", "ZLB")
        kwargs = cloud.client("route53").change_resource_record_sets.call_args.kwargs
        assert kwargs["HostedZoneId"] == "Z1"
        changes = kwargs["ChangeBatch"]["Changes"]
        assert [c["Action"] for c in changes] == ["UPSERT", "UPSERT"]
        assert changes[0]["ResourceRecordSet"]["AliasTarget"] == {
            "HostedZoneId": "ZLB", "DNSName": "lb-123.elb.amazonaws.com", "EvaluateTargetHealth": True,
        }

    def test_a_records_sorted_with_ttl(self, cloud):
        upsert_a_records(cloud, [ZoneBinding("Z1", "acme.com", ["api.acme.com"])], ["5.6.7.8", "1.2.3.4"])
        record = cloud.client("route53").change_resource_record_sets.call_args.kwargs["ChangeBatch"][
            "Changes"][0]["ResourceRecordSet"]
        assert record["TTL"] == 60
        assert record["ResourceRecords"] == [{"Value": "1.2.3.4"}, {"Value": "5.6.7.8"}]

    def test_no_ips_no_write(self, cloud):
        upsert_a_records(cloud, [ZoneBinding("Z1", "acme.com", ["api.acme.com"])], [])
        cloud.client("route53").change_resource_record_sets.assert_not_called()
