"""Severity, duration and comparison policy for rule evaluation."""

from idlewatch.models import ComparisonOperator, DurationUnit, Severity

SEVERITY_MAP: dict[str, Severity] = {
    "security": Severity.HIGH,
    "cost_optimization": Severity.MEDIUM,
    "performance": Severity.MEDIUM,
    "resource_optimization": Severity.LOW,
    # Low is the default for anything not listed
}

EQUALITY_EPSILON = 0.01


def severity_for_rule_type(rule_type: str) -> Severity:
    """Map a rule category to the severity of the alerts it raises."""
    return SEVERITY_MAP.get(rule_type, Severity.LOW)


def to_lookback_hours(duration: int, unit: DurationUnit | str) -> int:
    """Normalize a rule duration to whole hours.

    Minutes round down but never below one hour, so that sub-hour rules
    still query a non-empty window.
    """
    unit = DurationUnit(unit.lower()) if isinstance(unit, str) else unit
    if unit == DurationUnit.HOURS:
        return duration
    if unit == DurationUnit.DAYS:
        return duration * 24
    hours = duration // 60
    return hours if hours > 0 else 1


def evaluate_condition(
    value: float,
    operator: ComparisonOperator | str,
    threshold: float,
) -> bool:
    """Compare a metric value against a threshold.

    Raises ValueError for operators outside ComparisonOperator.
    """
    op = ComparisonOperator(operator)
    if op == ComparisonOperator.LT:
        return value < threshold
    if op == ComparisonOperator.GT:
        return value > threshold
    if op == ComparisonOperator.LE:
        return value <= threshold
    if op == ComparisonOperator.GE:
        return value >= threshold
    return abs(value - threshold) < EQUALITY_EPSILON
