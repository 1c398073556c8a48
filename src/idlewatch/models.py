"""Core data models for idle detection and rule evaluation."""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import IntEnum, StrEnum


class ResourceKind(StrEnum):
    """Kinds of cloud resource the engine knows about."""

    EC2 = "EC2"
    RDS = "RDS"
    ECS = "ECS"
    SAGEMAKER = "SageMaker"


class IdleState(StrEnum):
    """Idle classification of a resource.

    UNKNOWN until the resource has been evaluated in a qualifying lifecycle state.
    """

    UNKNOWN = "UNKNOWN"
    IDLE = "IDLE"
    NOT_IDLE = "NOT_IDLE"


class MetricName(StrEnum):
    """CloudWatch metric names read by the engine."""

    CPU_UTILIZATION = "CPUUtilization"
    NETWORK_IN = "NetworkIn"
    DATABASE_CONNECTIONS = "DatabaseConnections"
    INVOCATIONS = "Invocations"


class ComparisonOperator(StrEnum):
    """Comparison operator of a rule condition."""

    LT = "<"
    GT = ">"
    EQ = "="
    LE = "<="
    GE = ">="


class DurationUnit(StrEnum):
    """Unit of a rule's condition duration."""

    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


class Severity(IntEnum):
    """Alert severity level. Higher value = more severe."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3


class ActionType(StrEnum):
    """Intended action for a rule. Recorded only, never executed here."""

    ALERT = "ALERT"
    STOP = "STOP"
    TERMINATE = "TERMINATE"
    NOTIFY = "NOTIFY"


IDLE_ALERT_TYPE = "IDLE_RESOURCE"


def _new_alert_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class Resource:
    """A cloud resource as seen by the inventory.

    `metrics` holds the last observed utilization snapshot keyed by MetricName.
    """

    resource_id: str
    kind: ResourceKind
    state: str
    metrics: dict[str, float] = field(default_factory=dict)
    idle: IdleState = IdleState.UNKNOWN
    name: str | None = None
    region: str | None = None
    last_checked_at: datetime | None = None


@dataclass(frozen=True)
class Rule:
    """A user-authored governance rule."""

    rule_id: str
    name: str
    rule_type: str
    resource_type: ResourceKind
    metric: str
    operator: ComparisonOperator
    threshold: float
    duration: int
    duration_unit: DurationUnit
    action: ActionType = ActionType.ALERT
    active: bool = True
    created_by: str | None = None


@dataclass(frozen=True)
class Alert:
    """An alert raised against a single resource."""

    resource_id: str
    resource_type: ResourceKind
    alert_type: str
    severity: Severity
    message: str
    rule_id: str | None = None
    resolved: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    resolved_at: datetime | None = None
    alert_id: str = field(default_factory=_new_alert_id)

    @property
    def dedup_key(self) -> tuple[str, str, str, str | None]:
        """Identity of the condition this alert reports on."""
        return (self.resource_type.value, self.resource_id, self.alert_type, self.rule_id)


@dataclass(frozen=True)
class IdleDetectionReport:
    """Outcome of one idle detection pass over a single resource kind.

    `alerts` holds alerts raised by this pass; `already_open` holds idle
    resources whose alert was still open from an earlier pass.
    """

    kind: ResourceKind
    evaluated: list[str]
    idle: list[str]
    skipped: list[str]
    failed: list[str]
    alerts: list[Alert]
    cancelled: bool = False
    already_open: list[Alert] = field(default_factory=list)


@dataclass(frozen=True)
class RuleFailure:
    """A resource that could not be evaluated against a rule."""

    rule_id: str
    resource_id: str
    reason: str


@dataclass(frozen=True)
class RuleEvaluationReport:
    """Outcome of evaluating every active rule once."""

    rules_evaluated: list[str]
    alerts: list[Alert]
    failures: list[RuleFailure]
    skipped_rules: list[str]
    cancelled: bool = False
    already_open: list[Alert] = field(default_factory=list)
