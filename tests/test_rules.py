"""Tests for the rule evaluation engine."""

import threading
from unittest.mock import MagicMock

import pytest

from idlewatch.models import ComparisonOperator, DurationUnit, MetricName, ResourceKind, Severity
from idlewatch.repository import InMemoryResourceRepository, InMemoryRuleRepository
from idlewatch.rules import RuleEvaluator
from tests.conftest import make_resource, make_rule, metric_table

CPU = MetricName.CPU_UTILIZATION


@pytest.fixture
def metrics():
    return MagicMock()


def _evaluator(metrics, resources, rules, dispatcher):
    return RuleEvaluator(
        metrics,
        InMemoryResourceRepository(resources),
        InMemoryRuleRepository(rules),
        dispatcher,
        max_concurrent=2,
    )


def test_low_cpu_rule_raises_single_alert(metrics, dispatcher, alert_repo):
    metrics.get_metric.return_value = 2.0
    evaluator = _evaluator(metrics, [make_resource("i-1")], [make_rule()], dispatcher)

    report = evaluator.evaluate_all_rules()

    assert len(report.alerts) == 1
    alert = report.alerts[0]
    assert alert.severity == Severity.MEDIUM
    assert alert.alert_type == "cost_optimization"
    assert alert.rule_id == "rule-1"
    assert "i-1" in alert.message
    assert "2.00" in alert.message
    assert "<" in alert.message
    assert "5.00" in alert.message
    assert alert.message.endswith("for 1 days")
    metrics.get_metric.assert_called_once_with("i-1", ResourceKind.EC2, CPU, 24)
    assert alert_repo.all() == [alert]


def test_condition_not_met_raises_nothing(metrics, dispatcher, alert_repo):
    metrics.get_metric.return_value = 40.0
    evaluator = _evaluator(metrics, [make_resource("i-1")], [make_rule()], dispatcher)

    report = evaluator.evaluate_all_rules()

    assert report.alerts == []
    assert report.rules_evaluated == ["rule-1"]
    assert alert_repo.all() == []


def test_security_rule_is_high_severity(metrics, dispatcher):
    metrics.get_metric.return_value = 95.0
    rule = make_rule(rule_type="security", operator=ComparisonOperator.GT, threshold=90.0)
    evaluator = _evaluator(metrics, [make_resource("i-1")], [rule], dispatcher)

    report = evaluator.evaluate_all_rules()

    assert report.alerts[0].severity == Severity.HIGH


def test_minutes_duration_floors_to_one_hour(metrics, dispatcher):
    metrics.get_metric.return_value = 1.0
    rule = make_rule(duration=30, duration_unit=DurationUnit.MINUTES)
    evaluator = _evaluator(metrics, [make_resource("i-1")], [rule], dispatcher)

    report = evaluator.evaluate_all_rules()

    assert metrics.get_metric.call_args.args[3] == 1
    assert report.alerts[0].message.endswith("for 30 minutes")


def test_rds_rule_message(metrics, dispatcher):
    metrics.get_metric.return_value = 0.5
    rule = make_rule(resource_type=ResourceKind.RDS, duration=5, duration_unit=DurationUnit.HOURS)
    db = make_resource("db-1", kind=ResourceKind.RDS, state="available")
    evaluator = _evaluator(metrics, [db], [rule], dispatcher)

    report = evaluator.evaluate_all_rules()

    assert report.alerts[0].message == (
        "RDS instance db-1 has CPU utilization 0.50% < 5.00% for 5 hours"
    )
    metrics.get_metric.assert_called_once_with("db-1", ResourceKind.RDS, CPU, 5)


def test_sagemaker_invocations_rule(metrics, dispatcher):
    metrics.get_metric.return_value = 4.0
    rule = make_rule(
        resource_type=ResourceKind.SAGEMAKER,
        metric="invocations",
        operator=ComparisonOperator.LE,
        threshold=10.0,
        rule_type="resource_optimization",
    )
    endpoint = make_resource("ep-1", kind=ResourceKind.SAGEMAKER, state="InService")
    evaluator = _evaluator(metrics, [endpoint], [rule], dispatcher)

    report = evaluator.evaluate_all_rules()

    alert = report.alerts[0]
    assert alert.message == "SageMaker endpoint ep-1 has 4 invocations <= 10 for 1 days"
    assert alert.severity == Severity.LOW
    metrics.get_metric.assert_called_once_with(
        "ep-1", ResourceKind.SAGEMAKER, MetricName.INVOCATIONS, 24
    )


def test_equality_rule_uses_epsilon(metrics, dispatcher):
    metrics.get_metric.return_value = 4.995
    rule = make_rule(operator=ComparisonOperator.EQ)
    evaluator = _evaluator(metrics, [make_resource("i-1")], [rule], dispatcher)

    assert len(evaluator.evaluate_all_rules().alerts) == 1


def test_unsupported_metric_skipped(metrics, dispatcher, alert_repo, caplog):
    rule = make_rule(metric="MemoryUtilization")
    evaluator = _evaluator(metrics, [make_resource("i-1")], [rule], dispatcher)

    report = evaluator.evaluate_all_rules()

    metrics.get_metric.assert_not_called()
    assert report.skipped_rules == ["rule-1"]
    assert report.failures == []
    assert alert_repo.all() == []
    assert "not supported" in caplog.text


def test_unknown_operator_skipped(metrics, dispatcher):
    rule = make_rule(operator="<>")
    evaluator = _evaluator(metrics, [make_resource("i-1")], [rule], dispatcher)

    report = evaluator.evaluate_all_rules()

    assert report.skipped_rules == ["rule-1"]
    metrics.get_metric.assert_not_called()


def test_ecs_rules_are_noop(metrics, dispatcher, alert_repo):
    rule = make_rule(resource_type=ResourceKind.ECS)
    service = make_resource("svc-1", kind=ResourceKind.ECS, state="ACTIVE")
    evaluator = _evaluator(metrics, [service], [rule], dispatcher)

    report = evaluator.evaluate_all_rules()

    assert report.rules_evaluated == ["rule-1"]
    assert report.failures == []
    metrics.get_metric.assert_not_called()
    assert alert_repo.all() == []


def test_fetch_failure_on_one_resource_isolated(metrics, dispatcher, alert_repo):
    metrics.get_metric.side_effect = metric_table(
        {
            ("A", CPU): ConnectionError("throttled"),
            ("B", CPU): 1.0,
            ("C", CPU): 1.0,
        }
    )
    resources = [make_resource("A"), make_resource("B"), make_resource("C")]
    evaluator = _evaluator(metrics, resources, [make_rule()], dispatcher)

    report = evaluator.evaluate_all_rules()

    assert [a.resource_id for a in report.alerts] == ["B", "C"]
    assert len(report.failures) == 1
    assert report.failures[0].resource_id == "A"
    assert "throttled" in report.failures[0].reason
    assert {a.resource_id for a in alert_repo.all()} == {"B", "C"}


def test_failing_rule_does_not_stop_others(metrics, dispatcher):
    resources = MagicMock()
    resources.list_by_kind.side_effect = [RuntimeError("inventory offline"), [make_resource("i-1")]]
    metrics.get_metric.return_value = 1.0
    evaluator = RuleEvaluator(
        metrics,
        resources,
        InMemoryRuleRepository([make_rule(rule_id="r1"), make_rule(rule_id="r2")]),
        dispatcher,
    )

    report = evaluator.evaluate_all_rules()

    assert report.rules_evaluated == ["r2"]
    assert [f.rule_id for f in report.failures] == ["r1"]
    assert len(report.alerts) == 1


def test_inactive_rules_ignored(metrics, dispatcher):
    evaluator = _evaluator(
        metrics, [make_resource("i-1")], [make_rule(active=False)], dispatcher
    )

    report = evaluator.evaluate_all_rules()

    assert report.rules_evaluated == []
    metrics.get_metric.assert_not_called()


def test_rule_evaluates_all_resources_regardless_of_state(metrics, dispatcher):
    metrics.get_metric.return_value = 0.0
    resources = [make_resource("i-1"), make_resource("i-2", state="stopped")]
    evaluator = _evaluator(metrics, resources, [make_rule()], dispatcher)

    report = evaluator.evaluate_all_rules()

    assert [a.resource_id for a in report.alerts] == ["i-1", "i-2"]


def test_repeat_evaluation_keeps_one_open_alert(metrics, dispatcher, alert_repo):
    metrics.get_metric.return_value = 1.0
    evaluator = _evaluator(metrics, [make_resource("i-1")], [make_rule()], dispatcher)

    first = evaluator.evaluate_all_rules()
    second = evaluator.evaluate_all_rules()

    assert len(alert_repo.all()) == 1
    assert len(first.alerts) == 1
    assert second.alerts == []
    assert second.already_open == first.alerts


def test_rule_store_failure_returns_empty_report(metrics, dispatcher, caplog):
    rules = MagicMock()
    rules.list_active.side_effect = ConnectionError("rule store down")
    evaluator = RuleEvaluator(
        metrics, InMemoryResourceRepository([make_resource("i-1")]), rules, dispatcher
    )

    report = evaluator.evaluate_all_rules()

    assert report.rules_evaluated == []
    assert report.alerts == []
    assert report.failures == []
    assert "Failed to list active rules" in caplog.text
    metrics.get_metric.assert_not_called()


def test_max_concurrent_must_be_positive(metrics, dispatcher):
    with pytest.raises(ValueError, match="max_concurrent"):
        RuleEvaluator(
            metrics,
            InMemoryResourceRepository([]),
            InMemoryRuleRepository([]),
            dispatcher,
            max_concurrent=0,
        )


def test_cancel_before_start(metrics, dispatcher):
    cancel = threading.Event()
    cancel.set()
    evaluator = _evaluator(metrics, [make_resource("i-1")], [make_rule()], dispatcher)

    report = evaluator.evaluate_all_rules(cancel_event=cancel)

    assert report.cancelled is True
    assert report.rules_evaluated == []
    metrics.get_metric.assert_not_called()
