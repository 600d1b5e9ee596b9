"""TLS certificate acquisition with DNS validation.

Steps, each safe to repeat:

1. Find a certificate whose domain is the primary host.
2. Otherwise request one (DNS validation, CT logging disabled, alias hosts
   as SANs) with an idempotency token derived from the host list, so that
   retries within the provider's token window collapse onto one request.
3. For every validation option still pending, UPSERT its CNAME into the
   hosted zone bound to that name.
4. Poll until the certificate leaves ``PENDING_VALIDATION``.

Validation polling has no attempt cap; only cancellation stops it.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from typing import Any

from botocore.exceptions import ClientError

from spine_devops.core.errors import CloudError, ResourceNotFoundError
from spine_devops.core.retry import poll_until
from spine_devops.deploy.cloud import error_code
from spine_devops.deploy.descriptor import tag_list
from spine_devops.deploy.dns import HostedZoneResolver, upsert_record
from spine_devops.deploy.domains import normalize
from spine_devops.deploy.progress import NullReporter, ProgressReporter
from spine_devops.deploy.record import ZoneBinding

logger = logging.getLogger(__name__)

PENDING_VALIDATION = "PENDING_VALIDATION"
ISSUED = "ISSUED"


def idempotency_token(primary_host: str, alias_hosts: list[str]) -> str:
    """md5 hex of ``primary|alias1|alias2...``."""
    raw = "|".join([primary_host, *alias_hosts])
    return hashlib.md5(raw.encode("utf-8")).hexdigest()


class CertificateProvisioner:
    def __init__(
        self,
        cloud: Any,
        resolver: HostedZoneResolver,
        tags: dict[str, str],
        *,
        reporter: ProgressReporter | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self.cloud = cloud
        self.resolver = resolver
        self.tags = tags
        self.reporter = reporter or NullReporter()
        self.cancel = cancel

    @property
    def acm(self) -> Any:
        return self.cloud.client("acm")

    def find_certificate(self, domain: str) -> str | None:
        paginator = self.acm.get_paginator("list_certificates")
        for page in paginator.paginate(CertificateStatuses=[ISSUED, PENDING_VALIDATION]):
            for summary in page.get("CertificateSummaryList", []):
                if summary.get("DomainName") == domain:
                    return summary["CertificateArn"]
        return None

    def request_certificate(self, primary_host: str, alias_hosts: list[str]) -> str:
        params: dict[str, Any] = {
            "DomainName": primary_host,
            "ValidationMethod": "DNS",
            "IdempotencyToken": idempotency_token(primary_host, alias_hosts),
            "Options": {"CertificateTransparencyLoggingPreference": "DISABLED"},
            "Tags": tag_list(self.tags),
        }
        if alias_hosts:
            params["SubjectAlternativeNames"] = list(alias_hosts)
        try:
            res = self.acm.request_certificate(**params)
        except ClientError as exc:
            raise CloudError(
                f"Failed to create certificate '{primary_host}'", code=error_code(exc), cause=exc
            ).with_context(component="certificates", resource=primary_host) from exc
        arn = res["CertificateArn"]
        logger.info("certificate.requested", extra={"domain": primary_host, "arn": arn})
        return arn

    def describe(self, arn: str) -> dict[str, Any]:
        try:
            return self.acm.describe_certificate(CertificateArn=arn)["Certificate"]
        except ClientError as exc:
            raise CloudError(
                f"Failed to describe certificate '{arn}'", code=error_code(exc), cause=exc
            ).with_context(component="certificates", resource=arn) from exc

    def _validation_options(self, arn: str) -> tuple[str, list[dict[str, Any]]]:
        """Wait until every validation option carries its DNS record."""

        def check() -> tuple[str, list[dict[str, Any]]] | None:
            cert = self.describe(arn)
            options = cert.get("DomainValidationOptions", [])
            if cert.get("Status") != PENDING_VALIDATION:
                return cert.get("Status", ""), options
            if options and all("ResourceRecord" in opt for opt in options):
                return PENDING_VALIDATION, options
            return None

        return poll_until(check, cancel=self.cancel, what=f"validation records of {arn}")

    def write_validation_records(self, options: list[dict[str, Any]], bindings: list[ZoneBinding]) -> int:
        written = 0
        for opt in options:
            if opt.get("ValidationStatus") == "SUCCESS":
                continue
            zone_id = self.resolver.zone_for(normalize(opt["DomainName"]), bindings)
            if zone_id is None:
                raise ResourceNotFoundError(
                    "hosted zone", opt["DomainName"],
                    message=f"Failed to find zone ID for '{opt['DomainName']}'",
                ).with_context(component="certificates")
            record = opt["ResourceRecord"]
            upsert_record(self.cloud, zone_id, record["Name"], record["Type"], [record["Value"]])
            written += 1
            logger.info("certificate.validation_record", extra={"domain": opt["DomainName"], "zone_id": zone_id})
        return written

    def wait_issued(self, arn: str) -> None:
        def check() -> str | None:
            status = self.describe(arn).get("Status", "")
            return None if status == PENDING_VALIDATION else status

        status = poll_until(check, cancel=self.cancel, what=f"certificate {arn}")
        if status != ISSUED:
            raise CloudError(
                f"Certificate '{arn}' finished validation with status '{status}'"
            ).with_context(component="certificates", resource=arn)

    def run(self, primary_host: str, alias_hosts: list[str], bindings: list[ZoneBinding]) -> str:
        """Return the ARN of an issued certificate for the service hosts."""
        arn = self.find_certificate(primary_host)
        if arn:
            logger.info("certificate.found", extra={"domain": primary_host, "arn": arn})
        else:
            arn = self.request_certificate(primary_host, alias_hosts)

        status, options = self._validation_options(arn)
        if status == PENDING_VALIDATION:
            self.write_validation_records(options, bindings)
            self.wait_issued(arn)
        elif status != ISSUED:
            raise CloudError(
                f"Certificate '{arn}' has status '{status}'"
            ).with_context(component="certificates", resource=arn)

        self.reporter.success(f"certificate {primary_host}")
        return arn


__all__ = ["CertificateProvisioner", "idempotency_token"]
