"""Hosted-zone resolution and record upserts.

Every service hostname is bound to the hosted zone with the longest suffix
match among the account's public zones. When no zone matches, a public zone
is created at the hostname's registrable domain. The resulting
:class:`~spine_devops.deploy.record.ZoneBinding` list drives every later
record write:

- certificate validation CNAMEs (:mod:`spine_devops.deploy.certificates`)
- A-alias records to the load balancer (:mod:`spine_devops.deploy.loadbalancer`)
- plain A records with task public IPs when there is no load balancer
  (:mod:`spine_devops.deploy.service`)

All writes are ``UPSERT``, one change batch per zone.

Key Concepts:
    HostedZoneResolver.resolve(): hostname -> (zone id, zone name).
    HostedZoneResolver.bind(): hostnames -> ``ZoneBinding`` per zone.
    upsert_alias_records() / upsert_a_records() / upsert_record(): writes.

Tags:
    route53, dns, hosted-zone, alias, a-record
"""

from __future__ import annotations

import logging
import time
from typing import Any

from botocore.exceptions import ClientError

from spine_devops.core.errors import CloudError
from spine_devops.deploy.cloud import error_code
from spine_devops.deploy.domains import normalize, split_host, zone_candidates
from spine_devops.deploy.record import ZoneBinding

logger = logging.getLogger(__name__)

RECORD_TTL = 60


class HostedZoneResolver:
    """Maps hostnames onto public hosted zones, creating zones on demand."""

    def __init__(self, cloud: Any) -> None:
        self.cloud = cloud
        self._zones: dict[str, str] | None = None

    @property
    def route53(self) -> Any:
        return self.cloud.client("route53")

    def zones(self) -> dict[str, str]:
        """``{zone name: zone id}`` of every public zone, listed once per run."""
        if self._zones is None:
            zones: dict[str, str] = {}
            paginator = self.route53.get_paginator("list_hosted_zones")
            for page in paginator.paginate():
                for zone in page.get("HostedZones", []):
                    if zone.get("Config", {}).get("PrivateZone"):
                        continue
                    zones[normalize(zone["Name"])] = zone["Id"]
            self._zones = zones
        return self._zones

    def find_zone(self, hostname: str) -> tuple[str, str] | None:
        """Longest-suffix match among existing zones."""
        zones = self.zones()
        for candidate in zone_candidates(hostname):
            if candidate in zones:
                return zones[candidate], candidate
        return None

    def create_zone(self, zone_name: str) -> str:
        try:
            res = self.route53.create_hosted_zone(
                Name=zone_name,
                CallerReference=f"spine-devops-{zone_name}-{int(time.time())}",
                HostedZoneConfig={"Comment": "Public hosted zone created by spine-devops."},
            )
        except ClientError as exc:
            raise CloudError(
                f"Failed to create hosted zone '{zone_name}'", code=error_code(exc), cause=exc
            ).with_context(component="dns", resource=zone_name) from exc
        zone_id = res["HostedZone"]["Id"]
        self.zones()[zone_name] = zone_id
        logger.info("hosted_zone.created", extra={"zone": zone_name, "zone_id": zone_id})
        return zone_id

    def resolve(self, hostname: str) -> tuple[str, str]:
        """Return ``(zone_id, zone_name)`` for ``hostname``."""
        found = self.find_zone(hostname)
        if found:
            logger.info("hosted_zone.found", extra={"host": hostname, "zone_id": found[0]})
            return found
        _, zone_name = split_host(hostname)
        return self.create_zone(zone_name), zone_name

    def bind(self, hostnames: list[str]) -> list[ZoneBinding]:
        """Group ``hostnames`` by the zone that carries them, in first-seen order."""
        bindings: dict[str, ZoneBinding] = {}
        for host in hostnames:
            fqdn = normalize(host)
            zone_id, zone_name = self.resolve(fqdn)
            binding = bindings.setdefault(zone_id, ZoneBinding(zone_id=zone_id, zone_name=zone_name))
            if fqdn not in binding.fqdns:
                binding.fqdns.append(fqdn)
        return list(bindings.values())

    def zone_for(self, name: str, bindings: list[ZoneBinding]) -> str | None:
        """Zone id among ``bindings`` whose name is the longest suffix of ``name``."""
        name = normalize(name)
        best: ZoneBinding | None = None
        for binding in bindings:
            zone = binding.zone_name
            if name == zone or name.endswith("." + zone):
                if best is None or len(zone) > len(best.zone_name):
                    best = binding
        return best.zone_id if best else None


# ---------------------------------------------------------------------------
# Record writes
# ---------------------------------------------------------------------------


def _change_batch(route53: Any, zone_id: str, changes: list[dict[str, Any]]) -> None:
    if not changes:
        return
    try:
        route53.change_resource_record_sets(HostedZoneId=zone_id, ChangeBatch={"Changes": changes})
    except ClientError as exc:
        raise CloudError(
            f"Failed to update records for zone '{zone_id}'", code=error_code(exc), cause=exc
        ).with_context(component="dns", resource=zone_id) from exc
    logger.info("dns.records_upserted", extra={"zone_id": zone_id, "count": len(changes)})


def upsert_record(cloud: Any, zone_id: str, name: str, record_type: str, values: list[str],
                  ttl: int = RECORD_TTL) -> None:
    _change_batch(cloud.client("route53"), zone_id, [{
        "Action": "UPSERT",
        "ResourceRecordSet": {
            "Name": name,
            "Type": record_type,
            "TTL": ttl,
            "ResourceRecords": [{"Value": v} for v in values],
        },
    }])


def upsert_alias_records(cloud: Any, bindings: list[ZoneBinding], dns_name: str, target_zone_id: str) -> None:
    """Point every bound hostname at a load balancer."""
    route53 = cloud.client("route53")
    for binding in bindings:
        _change_batch(route53, binding.zone_id, [
            {
                "Action": "UPSERT",
                "ResourceRecordSet": {
                    "Name": fqdn,
                    "Type": "A",
                    "AliasTarget": {
                        "HostedZoneId": target_zone_id,
                        "DNSName": dns_name,
                        "EvaluateTargetHealth": True,
                    },
                },
            }
            for fqdn in binding.fqdns
        ])


def upsert_a_records(cloud: Any, bindings: list[ZoneBinding], ips: list[str], ttl: int = RECORD_TTL) -> None:
    """Point every bound hostname at a set of public IPs."""
    if not ips:
        return
    route53 = cloud.client("route53")
    for binding in bindings:
        _change_batch(route53, binding.zone_id, [
            {
                "Action": "UPSERT",
                "ResourceRecordSet": {
                    "Name": fqdn,
                    "Type": "A",
                    "TTL": ttl,
                    "ResourceRecords": [{"Value": ip} for ip in sorted(ips)],
                },
            }
            for fqdn in binding.fqdns
        ])


__all__ = [
    "HostedZoneResolver",
    "RECORD_TTL",
    "upsert_a_records",
    "upsert_alias_records",
    "upsert_record",
]
