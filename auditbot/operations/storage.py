from __future__ import annotations

from datetime import timedelta

from auditbot.broker import DelegatedCredential
from auditbot.operations.base import AuditOperation
from auditbot.utils import now_utc


class CheckUnusedBuckets(AuditOperation):
    """Buckets with no requests recorded by S3 request metrics over the window.

    Relies on the bucket-wide request metrics filter (``EntireBucket``); a bucket
    without request metrics reports no datapoints and is listed as unused.
    """

    service = "storage"
    command = "check_unused"

    def __init__(self, days: int = 30, max_workers: int = 4) -> None:
        super().__init__(max_workers=max_workers)
        self.days = days
        self.title = f"Unused S3 buckets (no requests in the last {days} days):"

    def check(self, account_id: str, credential: DelegatedCredential) -> list[str]:
        s3 = credential.client("s3")
        cloudwatch = credential.client("cloudwatch")
        end = now_utc()
        start = end - timedelta(days=self.days)

        unused: list[str] = []
        for bucket in s3.list_buckets().get("Buckets", []):
            name = bucket["Name"]
            stats = cloudwatch.get_metric_statistics(
                Namespace="AWS/S3",
                MetricName="AllRequests",
                Dimensions=[
                    {"Name": "BucketName", "Value": name},
                    {"Name": "FilterId", "Value": "EntireBucket"},
                ],
                StartTime=start,
                EndTime=end,
                Period=86400,
                Statistics=["Sum"],
            )
            if sum(p.get("Sum", 0) for p in stats.get("Datapoints", [])) == 0:
                unused.append(name)
        return unused
