"""Stopped-task log retrieval.

A task that dies during rollout leaves its output in the log group under
``ecs/{ecsService}/{taskId}``. Reading it line by line through the logs
API is slow for chatty containers, so the stream is exported to the
private bucket under ``{temp_prefix}logs/...`` (which the bucket lifecycle
expires after a day) and the gzipped export objects are read back.

Without a private bucket there is nowhere to export to and no lines are
returned.
"""

from __future__ import annotations

import gzip
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any

from botocore.exceptions import ClientError

from spine_devops.core.errors import CloudError
from spine_devops.core.retry import PollIntervals, poll_until
from spine_devops.deploy.cloud import error_code

logger = logging.getLogger(__name__)

EXPORT_POLL = PollIntervals(intervals=(5.0,))


def _millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


class TaskLogFetcher:
    """Export and read the log stream of one stopped task."""

    def __init__(
        self,
        cloud: Any,
        *,
        log_group: str,
        ecs_service_name: str,
        bucket: str | None,
        temp_prefix: str,
        started_at: datetime | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self.cloud = cloud
        self.log_group = log_group
        self.ecs_service_name = ecs_service_name
        self.bucket = bucket
        self.temp_prefix = temp_prefix
        self.started_at = started_at or datetime.now(timezone.utc)
        self.cancel = cancel
        self._cache: dict[str, list[str]] = {}

    def stream_name(self, task_id: str) -> str:
        return f"ecs/{self.ecs_service_name}/{task_id}"

    @property
    def key_prefix(self) -> str:
        return f"{self.temp_prefix.rstrip('/')}/logs/cloudwatchlogs/exports/{self.log_group.strip('/')}"

    def export(self, task_id: str) -> str | None:
        """Start an export and wait for it; returns the object prefix or None."""
        logs = self.cloud.client("logs")
        stream = self.stream_name(task_id)
        now = datetime.now(timezone.utc)
        try:
            export_id = logs.create_export_task(
                logGroupName=self.log_group,
                logStreamNamePrefix=stream,
                destination=self.bucket,
                destinationPrefix=self.key_prefix,
                fromTime=_millis(self.started_at - timedelta(days=1)),
                to=_millis(now + timedelta(days=1)),
            )["taskId"]
        except ClientError as exc:
            raise CloudError(
                f"Failed to create export task for log group '{self.log_group}' stream '{stream}'",
                code=error_code(exc), cause=exc,
            ).with_context(component="tasklogs", resource=self.log_group) from exc

        def check() -> str | None:
            tasks = logs.describe_export_tasks(taskId=export_id).get("exportTasks", [])
            status = tasks[0]["status"]["code"] if tasks else "PENDING"
            if status in ("CANCELLED", "FAILED"):
                logger.warning("tasklogs.export_ended", extra={"export_id": export_id, "status": status})
                return status
            return status if status == "COMPLETED" else None

        status = poll_until(check, strategy=EXPORT_POLL, cancel=self.cancel, what=f"log export {export_id}")
        if status != "COMPLETED":
            return None
        return f"{self.key_prefix}/{export_id}/"

    def read(self, prefix: str) -> list[str]:
        s3 = self.cloud.client("s3")
        lines: list[str] = []
        paginator = s3.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                body = s3.get_object(Bucket=self.bucket, Key=obj["Key"])["Body"]
                try:
                    data = body.read()
                finally:
                    body.close()
                if obj["Key"].endswith(".gz"):
                    data = gzip.decompress(data)
                lines.extend(
                    line.strip() for line in data.decode("utf-8", errors="replace").splitlines() if line.strip()
                )
        return lines

    def fetch(self, task_id: str) -> list[str]:
        """Log lines of ``task_id``; each task is exported at most once."""
        if task_id in self._cache:
            return self._cache[task_id]
        lines: list[str] = []
        if self.bucket:
            started = time.monotonic()
            prefix = self.export(task_id)
            if prefix:
                lines = self.read(prefix)
            logger.info("tasklogs.fetched", extra={"task_id": task_id, "lines": len(lines),
                                                   "seconds": round(time.monotonic() - started, 1)})
        self._cache[task_id] = lines
        return lines


__all__ = ["TaskLogFetcher"]
