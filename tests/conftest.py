"""Shared test fixtures."""

import json

import boto3
import pytest
from moto import mock_aws

from idlewatch.dispatcher import AlertDispatcher
from idlewatch.models import (
    ComparisonOperator,
    DurationUnit,
    Resource,
    ResourceKind,
    Rule,
)
from idlewatch.repository import InMemoryAlertRepository


@pytest.fixture
def aws_credentials(monkeypatch):
    """Set dummy AWS credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def cw_client(aws_credentials):
    """Create a moto-mocked CloudWatch boto3 client."""
    with mock_aws():
        yield boto3.client("cloudwatch", region_name="us-east-1")


@pytest.fixture
def alert_repo():
    return InMemoryAlertRepository()


@pytest.fixture
def dispatcher(alert_repo):
    return AlertDispatcher(alert_repo)


def make_resource(resource_id, kind=ResourceKind.EC2, state="running", **kwargs):
    return Resource(resource_id=resource_id, kind=kind, state=state, **kwargs)


def make_rule(**overrides):
    fields = {
        "rule_id": "rule-1",
        "name": "low-cpu",
        "rule_type": "cost_optimization",
        "resource_type": ResourceKind.EC2,
        "metric": "CPU",
        "operator": ComparisonOperator.LT,
        "threshold": 5.0,
        "duration": 1,
        "duration_unit": DurationUnit.DAYS,
    }
    fields.update(overrides)
    return Rule(**fields)


def metric_table(values):
    """Build a get_metric side effect from {(resource_id, metric): value}.

    A value that is an exception instance is raised instead of returned.
    """

    def get_metric(resource_id, kind, metric, lookback_hours):
        value = values[(resource_id, metric)]
        if isinstance(value, Exception):
            raise value
        return value

    return get_metric


SAMPLE_INVENTORY = {
    "resources": [
        {"resource_id": "i-idle", "resource_type": "EC2", "state": "running"},
        {"resource_id": "i-busy", "resource_type": "EC2", "state": "running"},
        {"resource_id": "i-stopped", "resource_type": "EC2", "state": "stopped"},
        {"resource_id": "db-1", "resource_type": "RDS", "state": "available"},
        {"resource_id": "ep-1", "resource_type": "sagemaker", "state": "InService"},
    ],
    "rules": [
        {
            "rule_id": "r1",
            "name": "ec2-low-cpu",
            "rule_type": "cost_optimization",
            "resource_type": "EC2",
            "metric": "CPU",
            "operator": "<",
            "threshold": 5.0,
            "duration": 1,
            "duration_unit": "days",
            "action": "STOP",
        },
        {
            "rule_id": "r2",
            "name": "disabled",
            "rule_type": "security",
            "resource_type": "RDS",
            "metric": "CPU",
            "operator": ">",
            "threshold": 90.0,
            "active": False,
        },
    ],
}


@pytest.fixture
def inventory_file(tmp_path):
    path = tmp_path / "inventory.json"
    path.write_text(json.dumps(SAMPLE_INVENTORY))
    return path
