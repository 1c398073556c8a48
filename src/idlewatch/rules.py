"""Evaluates governance rules against live resource metrics."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed

from idlewatch.aws.cloudwatch import MetricSource
from idlewatch.dispatcher import AlertDispatcher
from idlewatch.models import (
    Alert,
    ComparisonOperator,
    MetricName,
    Resource,
    ResourceKind,
    Rule,
    RuleEvaluationReport,
    RuleFailure,
)
from idlewatch.policy import evaluate_condition, severity_for_rule_type, to_lookback_hours
from idlewatch.repository import ResourceRepository, RuleRepository

logger = logging.getLogger(__name__)

# Rule metric names are matched case-insensitively.
RULE_METRICS: dict[ResourceKind, dict[str, MetricName]] = {
    ResourceKind.EC2: {"cpu": MetricName.CPU_UTILIZATION},
    ResourceKind.RDS: {"cpu": MetricName.CPU_UTILIZATION},
    ResourceKind.SAGEMAKER: {"invocations": MetricName.INVOCATIONS},
    # TODO: evaluate ECS rules once service CPU/memory metrics are wired in.
    ResourceKind.ECS: {},
}

RULE_MESSAGES: dict[ResourceKind, str] = {
    ResourceKind.EC2: (
        "EC2 instance {resource_id} has CPU utilization {value:.2f}% {operator} "
        "{threshold:.2f}% for {duration} {unit}"
    ),
    ResourceKind.RDS: (
        "RDS instance {resource_id} has CPU utilization {value:.2f}% {operator} "
        "{threshold:.2f}% for {duration} {unit}"
    ),
    ResourceKind.SAGEMAKER: (
        "SageMaker endpoint {resource_id} has {value:.0f} invocations {operator} "
        "{threshold:.0f} for {duration} {unit}"
    ),
}


def _merge(reports: list[RuleEvaluationReport], cancelled: bool) -> RuleEvaluationReport:
    return RuleEvaluationReport(
        rules_evaluated=[rid for r in reports for rid in r.rules_evaluated],
        alerts=[a for r in reports for a in r.alerts],
        already_open=[a for r in reports for a in r.already_open],
        failures=[f for r in reports for f in r.failures],
        skipped_rules=[rid for r in reports for rid in r.skipped_rules],
        cancelled=cancelled or any(r.cancelled for r in reports),
    )


class RuleEvaluator:
    """Evaluates active rules against every resource of the rule's kind."""

    def __init__(
        self,
        metrics: MetricSource,
        resources: ResourceRepository,
        rules: RuleRepository,
        dispatcher: AlertDispatcher,
        max_concurrent: int = 5,
    ):
        self._metrics = metrics
        self._resources = resources
        self._rules = rules
        self._dispatcher = dispatcher
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be at least 1, got {max_concurrent}")
        self._max_concurrent = max_concurrent

    def evaluate_all_rules(
        self, cancel_event: threading.Event | None = None
    ) -> RuleEvaluationReport:
        """Evaluate every active rule once. Never raises for a single bad rule."""
        try:
            rules = self._rules.list_active()
        except Exception:
            logger.exception("Failed to list active rules")
            return RuleEvaluationReport(
                rules_evaluated=[], alerts=[], failures=[], skipped_rules=[]
            )
        logger.info("Found %d active rules to evaluate", len(rules))

        reports: list[RuleEvaluationReport] = []
        cancelled = False
        for rule in rules:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                break
            try:
                reports.append(self.evaluate_rule(rule, cancel_event))
            except Exception as e:
                logger.exception("Error evaluating rule %s", rule.name)
                reports.append(
                    RuleEvaluationReport(
                        rules_evaluated=[],
                        alerts=[],
                        failures=[RuleFailure(rule.rule_id, "", str(e))],
                        skipped_rules=[],
                    )
                )

        merged = _merge(reports, cancelled)
        logger.info(
            "Rule evaluation completed: %d alerts, %d failures",
            len(merged.alerts),
            len(merged.failures),
        )
        return merged

    def evaluate_rule(
        self, rule: Rule, cancel_event: threading.Event | None = None
    ) -> RuleEvaluationReport:
        """Evaluate one rule against all resources of its kind."""
        skipped = RuleEvaluationReport(
            rules_evaluated=[], alerts=[], failures=[], skipped_rules=[rule.rule_id]
        )

        resources = self._resources.list_by_kind(rule.resource_type)
        logger.info(
            "Evaluating %d %s resources for rule %s",
            len(resources),
            rule.resource_type,
            rule.name,
        )

        if rule.resource_type == ResourceKind.ECS:
            logger.info("ECS rule evaluation not yet implemented, skipping rule %s", rule.name)
            return RuleEvaluationReport(
                rules_evaluated=[rule.rule_id], alerts=[], failures=[], skipped_rules=[]
            )

        metric = RULE_METRICS[rule.resource_type].get(rule.metric.strip().lower())
        if metric is None:
            logger.warning(
                "Rule %s uses metric %r, which is not supported for %s; skipping",
                rule.name,
                rule.metric,
                rule.resource_type,
            )
            return skipped

        try:
            operator = ComparisonOperator(rule.operator)
            lookback_hours = to_lookback_hours(rule.duration, rule.duration_unit)
        except ValueError as e:
            logger.warning("Rule %s is misconfigured: %s; skipping", rule.name, e)
            return skipped

        alerts: dict[str, Alert] = {}
        already_open: dict[str, Alert] = {}
        failures: dict[str, RuleFailure] = {}
        cancelled = False

        if resources:
            with ThreadPoolExecutor(max_workers=self._max_concurrent) as executor:
                futures = {
                    executor.submit(
                        self._check_resource,
                        rule,
                        resource,
                        metric,
                        operator,
                        lookback_hours,
                        cancel_event,
                    ): resource
                    for resource in resources
                }
                for future in as_completed(futures):
                    resource = futures[future]
                    try:
                        done, alert, new = future.result()
                    except Exception as e:
                        logger.exception(
                            "Error evaluating %s %s for rule %s",
                            rule.resource_type,
                            resource.resource_id,
                            rule.name,
                        )
                        failures[resource.resource_id] = RuleFailure(
                            rule.rule_id, resource.resource_id, str(e)
                        )
                        continue
                    if not done:
                        cancelled = True
                    elif new:
                        alerts[resource.resource_id] = alert
                    elif alert is not None:
                        already_open[resource.resource_id] = alert

        order = [r.resource_id for r in resources]
        return RuleEvaluationReport(
            rules_evaluated=[rule.rule_id],
            alerts=[alerts[rid] for rid in order if rid in alerts],
            failures=[failures[rid] for rid in order if rid in failures],
            skipped_rules=[],
            cancelled=cancelled,
            already_open=[already_open[rid] for rid in order if rid in already_open],
        )

    def _check_resource(
        self,
        rule: Rule,
        resource: Resource,
        metric: MetricName,
        operator: ComparisonOperator,
        lookback_hours: int,
        cancel_event: threading.Event | None,
    ) -> tuple[bool, Alert | None, bool]:
        """Returns (completed, alert, new).

        completed is False when cancelled first; new is False when the alert was
        already open from an earlier evaluation.
        """
        if cancel_event is not None and cancel_event.is_set():
            return False, None, False

        value = self._metrics.get_metric(
            resource.resource_id, rule.resource_type, metric, lookback_hours
        )
        if not evaluate_condition(value, operator, rule.threshold):
            return True, None, False

        message = RULE_MESSAGES[rule.resource_type].format(
            resource_id=resource.resource_id,
            value=value,
            operator=operator.value,
            threshold=rule.threshold,
            duration=rule.duration,
            unit=str(rule.duration_unit),
        )
        candidate = Alert(
            resource_id=resource.resource_id,
            resource_type=rule.resource_type,
            alert_type=rule.rule_type,
            severity=severity_for_rule_type(rule.rule_type),
            message=message,
            rule_id=rule.rule_id,
        )
        alert = self._dispatcher.create_alert(candidate)
        if alert is None:
            logger.error("Failed to create alert for resource %s", resource.resource_id)
            return True, None, False
        return True, alert, alert.alert_id == candidate.alert_id
