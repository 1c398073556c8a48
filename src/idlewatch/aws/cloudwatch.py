"""Thin boto3 wrapper that reads scalar CloudWatch metrics for resources."""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol

import boto3
from botocore.config import Config

from idlewatch.models import MetricName, ResourceKind


class MetricSource(Protocol):
    """Supplies a single scalar reading for a resource over a lookback window."""

    def get_metric(
        self,
        resource_id: str,
        kind: ResourceKind,
        metric: MetricName,
        lookback_hours: int,
    ) -> float: ...


class UnsupportedMetricError(ValueError):
    """The metric is not published for this kind of resource."""


@dataclass(frozen=True)
class MetricSpec:
    """Where and how a metric is read from CloudWatch."""

    namespace: str
    dimension: str
    statistic: str


METRIC_SPECS: dict[tuple[ResourceKind, MetricName], MetricSpec] = {
    (ResourceKind.EC2, MetricName.CPU_UTILIZATION): MetricSpec("AWS/EC2", "InstanceId", "Average"),
    (ResourceKind.EC2, MetricName.NETWORK_IN): MetricSpec("AWS/EC2", "InstanceId", "Average"),
    (ResourceKind.RDS, MetricName.CPU_UTILIZATION): MetricSpec(
        "AWS/RDS", "DBInstanceIdentifier", "Average"
    ),
    (ResourceKind.RDS, MetricName.DATABASE_CONNECTIONS): MetricSpec(
        "AWS/RDS", "DBInstanceIdentifier", "Average"
    ),
    (ResourceKind.SAGEMAKER, MetricName.INVOCATIONS): MetricSpec(
        "AWS/SageMaker", "EndpointName", "Sum"
    ),
}

HOURLY_PERIOD = 3600
DAILY_PERIOD = 86400


class CloudWatchMetricSource:
    """Reads average or summed CloudWatch statistics.

    Averages are the mean of the per-period datapoints, sums are totalled
    across the window. A window with no datapoints reads as 0.0.
    """

    def __init__(
        self,
        region: str | None = None,
        timeout: float = 10.0,
        client=None,
    ):
        if client is None:
            config = Config(
                connect_timeout=timeout,
                read_timeout=timeout,
                retries={"mode": "standard"},
            )
            client = boto3.client(
                "cloudwatch", config=config, **({"region_name": region} if region else {})
            )
        self._client = client

    def get_metric(
        self,
        resource_id: str,
        kind: ResourceKind,
        metric: MetricName,
        lookback_hours: int,
    ) -> float:
        """Fetch one scalar reading. Raises UnsupportedMetricError for unknown pairs."""
        spec = METRIC_SPECS.get((kind, metric))
        if spec is None:
            raise UnsupportedMetricError(f"{metric} is not available for {kind} resources")

        end_time = datetime.now(UTC)
        start_time = end_time - timedelta(hours=lookback_hours)
        period = HOURLY_PERIOD if lookback_hours < 24 else DAILY_PERIOD

        resp = self._client.get_metric_statistics(
            Namespace=spec.namespace,
            MetricName=metric.value,
            Dimensions=[{"Name": spec.dimension, "Value": resource_id}],
            StartTime=start_time,
            EndTime=end_time,
            Period=period,
            Statistics=[spec.statistic],
        )

        datapoints = resp.get("Datapoints", [])
        if not datapoints:
            return 0.0

        values = [dp[spec.statistic] for dp in datapoints]
        if spec.statistic == "Sum":
            return float(sum(values))
        return sum(values) / len(values)
