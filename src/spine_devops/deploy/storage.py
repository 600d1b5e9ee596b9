"""Storage provisioner: buckets, CDN distribution, static-file sync.

For each declared bucket:

1. create-if-absent (``BucketAlreadyOwnedByYou`` / ``BucketAlreadyExists``
   are swallowed),
2. wait until the bucket is listable,
3. apply tags, lifecycle rules, CORS, public-access block and policy.

The private bucket always gets all four public-access blocks and a policy
that lets the regional logs service export task logs into its temp prefix.
The public bucket only loses its blocks because its spec says so
explicitly.

Key Concepts:
    StorageProvisioner.ensure_bucket(): Steps 1-3 for one ``BucketSpec``.
    StorageProvisioner.ensure_distribution(): CDN in front of the public bucket.
    StorageProvisioner.sync_static(): Upload a static dir with public-read ACLs.
    distribution_config(): The full CDN config document.

Related Modules:
    - :mod:`spine_devops.deploy.descriptor` - ``BucketSpec``, ``CdnSpec``
    - :mod:`spine_devops.deploy.tasklogs` - Exports into the private bucket

Tags:
    s3, cloudfront, buckets, cdn, static-files, lifecycle, cors
"""

from __future__ import annotations

import logging
import mimetypes
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

from botocore.exceptions import ClientError

from spine_devops.core.errors import CloudError, ResourceNotFoundError
from spine_devops.core.retry import poll_until
from spine_devops.deploy.cloud import error_code
from spine_devops.deploy.descriptor import BucketSpec, CdnSpec, StorageSpec, tag_list
from spine_devops.deploy.progress import NullReporter, ProgressReporter

logger = logging.getLogger(__name__)

_BUCKET_EXISTS_CODES = ("BucketAlreadyOwnedByYou", "BucketAlreadyExists")

ALL_PUBLIC_ACCESS_BLOCKED = {
    "BlockPublicAcls": True,
    "BlockPublicPolicy": True,
    "RestrictPublicBuckets": True,
    "IgnorePublicAcls": True,
}


def s3_origin_domain(bucket: str, region: str) -> str:
    return f"{bucket}.s3.{region}.amazonaws.com"


def distribution_config(bucket: str, region: str, cdn: CdnSpec) -> dict[str, Any]:
    """CDN config: one S3 origin, HEAD/GET cached, default certificate."""
    origin_id = f"S3-{bucket}"
    methods = {"Quantity": 2, "Items": ["HEAD", "GET"]}
    return {
        "CallerReference": f"{cdn.caller_reference}-{bucket}",
        "Comment": "",
        "Enabled": True,
        "HttpVersion": "http2",
        "IsIPV6Enabled": True,
        "PriceClass": "PriceClass_All",
        "Origins": {
            "Quantity": 1,
            "Items": [{
                "Id": origin_id,
                "DomainName": s3_origin_domain(bucket, region),
                "OriginPath": cdn.origin_path,
                "S3OriginConfig": {"OriginAccessIdentity": ""},
            }],
        },
        "DefaultCacheBehavior": {
            "TargetOriginId": origin_id,
            "ViewerProtocolPolicy": "allow-all",
            "Compress": True,
            "DefaultTTL": cdn.default_ttl,
            "MinTTL": cdn.min_ttl,
            "MaxTTL": cdn.max_ttl,
            "ForwardedValues": {"QueryString": True, "Cookies": {"Forward": "none"}},
            "TrustedSigners": {"Enabled": False, "Quantity": 0},
            "AllowedMethods": {**methods, "CachedMethods": dict(methods)},
        },
        "ViewerCertificate": {
            "CloudFrontDefaultCertificate": True,
            "MinimumProtocolVersion": "TLSv1",
        },
    }


class StorageProvisioner:
    """Converges buckets and the optional CDN distribution."""

    def __init__(
        self,
        cloud: Any,
        spec: StorageSpec,
        tags: dict[str, str],
        *,
        reporter: ProgressReporter | None = None,
        cancel: threading.Event | None = None,
        upload_workers: int = 8,
    ) -> None:
        self.cloud = cloud
        self.spec = spec
        self.tags = tags
        self.reporter = reporter or NullReporter()
        self.cancel = cancel
        self.upload_workers = upload_workers

    @property
    def s3(self) -> Any:
        return self.cloud.client("s3")

    # ------------------------------------------------------------------
    # Buckets
    # ------------------------------------------------------------------

    def ensure_bucket(self, bucket: BucketSpec) -> None:
        """Create, wait for, and configure one bucket."""
        name = bucket.name
        kwargs: dict[str, Any] = {"Bucket": name}
        # us-east-1 rejects an explicit LocationConstraint.
        if self.cloud.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.cloud.region}
        try:
            self.s3.create_bucket(**kwargs)
            logger.info("bucket.created", extra={"bucket": name})
        except ClientError as exc:
            if error_code(exc) not in _BUCKET_EXISTS_CODES:
                raise CloudError(
                    f"Failed to create bucket '{name}'", code=error_code(exc), cause=exc
                ).with_context(component="storage", resource=name) from exc
            logger.info("bucket.found", extra={"bucket": name})

        poll_until(lambda: self._listable(name), cancel=self.cancel, what=f"bucket {name}")
        self._configure(bucket)

    def _listable(self, name: str) -> bool:
        try:
            self.s3.list_objects_v2(Bucket=name, MaxKeys=1)
            return True
        except ClientError as exc:
            if error_code(exc) in ("NoSuchBucket", "404"):
                return False
            raise CloudError(
                f"Failed to list bucket '{name}'", code=error_code(exc), cause=exc
            ).with_context(component="storage", resource=name) from exc

    def _configure(self, bucket: BucketSpec) -> None:
        name = bucket.name
        try:
            self.s3.put_bucket_tagging(Bucket=name, Tagging={"TagSet": tag_list(self.tags)})
            if bucket.lifecycle_rules:
                self.s3.put_bucket_lifecycle_configuration(
                    Bucket=name, LifecycleConfiguration={"Rules": list(bucket.lifecycle_rules)}
                )
            if bucket.cors_rules:
                self.s3.put_bucket_cors(Bucket=name, CORSConfiguration={"CORSRules": list(bucket.cors_rules)})
            if bucket.block_public_access:
                self.s3.put_public_access_block(
                    Bucket=name, PublicAccessBlockConfiguration=dict(ALL_PUBLIC_ACCESS_BLOCKED)
                )
            else:
                # Explicitly public: objects are uploaded with public-read ACLs.
                self.s3.delete_public_access_block(Bucket=name)
                self.s3.put_bucket_ownership_controls(
                    Bucket=name,
                    OwnershipControls={"Rules": [{"ObjectOwnership": "BucketOwnerPreferred"}]},
                )
            if bucket.policy:
                self.s3.put_bucket_policy(Bucket=name, Policy=bucket.policy)
        except ClientError as exc:
            raise CloudError(
                f"Failed to configure bucket '{name}'", code=error_code(exc), cause=exc
            ).with_context(component="storage", resource=name) from exc
        logger.info("bucket.configured", extra={"bucket": name, "public": bucket.is_public})

    # ------------------------------------------------------------------
    # CDN
    # ------------------------------------------------------------------

    def find_distribution(self, bucket: str) -> dict[str, Any] | None:
        domain = s3_origin_domain(bucket, self.cloud.region)
        paginator = self.cloud.client("cloudfront").get_paginator("list_distributions")
        for page in paginator.paginate():
            for dist in page.get("DistributionList", {}).get("Items", []) or []:
                for origin in dist.get("Origins", {}).get("Items", []):
                    if origin.get("DomainName") == domain:
                        return dist
        return None

    def ensure_distribution(self, bucket: str, cdn: CdnSpec) -> str:
        """Return the CDN domain name, creating the distribution if absent."""
        existing = self.find_distribution(bucket)
        if existing:
            logger.info("cdn.found", extra={"bucket": bucket, "domain": existing["DomainName"]})
            return existing["DomainName"]

        cloudfront = self.cloud.client("cloudfront")
        try:
            res = cloudfront.create_distribution_with_tags(
                DistributionConfigWithTags={
                    "DistributionConfig": distribution_config(bucket, self.cloud.region, cdn),
                    "Tags": {"Items": tag_list(self.tags)},
                }
            )
            domain = res["Distribution"]["DomainName"]
        except ClientError as exc:
            if error_code(exc) != "DistributionAlreadyExists":
                raise CloudError(
                    f"Failed to create CDN distribution for '{bucket}'", code=error_code(exc), cause=exc
                ).with_context(component="storage", resource=bucket) from exc
            existing = self.find_distribution(bucket)
            if not existing:
                raise ResourceNotFoundError("CDN distribution", bucket).with_context(component="storage") from exc
            domain = existing["DomainName"]
        logger.info("cdn.created", extra={"bucket": bucket, "domain": domain})
        return domain

    # ------------------------------------------------------------------
    # Static files
    # ------------------------------------------------------------------

    def sync_static(self, static_dir: Path, bucket: str, prefix: str) -> int:
        """Upload every file under ``static_dir`` to ``bucket/prefix``; returns the count."""
        if not static_dir.is_dir():
            raise ResourceNotFoundError("static directory", str(static_dir)).with_context(component="storage")

        files = sorted(p for p in static_dir.rglob("*") if p.is_file())
        key_prefix = prefix.strip("/")

        def upload(path: Path) -> None:
            key = f"{key_prefix}/{path.relative_to(static_dir).as_posix()}"
            content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
            self.s3.upload_file(
                str(path), bucket, key,
                ExtraArgs={"ACL": "public-read", "ContentType": content_type},
            )

        with ThreadPoolExecutor(max_workers=self.upload_workers) as pool:
            # list() re-raises the first upload failure.
            list(pool.map(upload, files))

        logger.info("static.synced", extra={"bucket": bucket, "prefix": key_prefix, "files": len(files)})
        return len(files)

    def run(self) -> str | None:
        """Converge every declared bucket and the CDN; returns the CDN domain if any."""
        for bucket in (self.spec.public, self.spec.private):
            if bucket is None:
                continue
            self.ensure_bucket(bucket)
            self.reporter.success(f"bucket {bucket.name}")

        if self.spec.cdn_enabled:
            domain = self.ensure_distribution(self.spec.public.name, self.spec.cdn)
            self.reporter.success(f"CDN {domain}")
            return domain
        return None


__all__ = ["StorageProvisioner", "distribution_config", "s3_origin_domain"]
