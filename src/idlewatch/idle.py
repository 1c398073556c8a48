"""Idle resource detection across EC2, RDS and SageMaker."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, replace
from datetime import UTC, datetime

from idlewatch.aws.cloudwatch import MetricSource
from idlewatch.dispatcher import AlertDispatcher
from idlewatch.models import (
    IDLE_ALERT_TYPE,
    Alert,
    IdleDetectionReport,
    IdleState,
    MetricName,
    Resource,
    ResourceKind,
    Severity,
)
from idlewatch.repository import ResourceRepository
from idlewatch.strategies import CpuBasedIdleStrategy, IdleDetectionStrategy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdleProfile:
    """How a resource kind is read and reported for idle detection."""

    kind: ResourceKind
    running_state: str
    primary: MetricName
    secondary: MetricName
    severity: Severity
    message: str


IDLE_PROFILES: dict[ResourceKind, IdleProfile] = {
    ResourceKind.EC2: IdleProfile(
        kind=ResourceKind.EC2,
        running_state="running",
        primary=MetricName.CPU_UTILIZATION,
        secondary=MetricName.NETWORK_IN,
        severity=Severity.MEDIUM,
        message=(
            "EC2 instance {resource_id} is idle "
            "(CPU: {primary:.2f}%, Network In: {secondary:.2f} bytes)"
        ),
    ),
    ResourceKind.RDS: IdleProfile(
        kind=ResourceKind.RDS,
        running_state="available",
        primary=MetricName.CPU_UTILIZATION,
        secondary=MetricName.DATABASE_CONNECTIONS,
        severity=Severity.HIGH,
        message=(
            "RDS instance {resource_id} is idle "
            "(Connections: {secondary:.0f}, CPU: {primary:.2f}%)"
        ),
    ),
    # Endpoints publish no CPU metric; invocations feed both strategy inputs.
    ResourceKind.SAGEMAKER: IdleProfile(
        kind=ResourceKind.SAGEMAKER,
        running_state="InService",
        primary=MetricName.INVOCATIONS,
        secondary=MetricName.INVOCATIONS,
        severity=Severity.HIGH,
        message=(
            "SageMaker endpoint {resource_id} is idle "
            "(Invocations: {secondary:.0f} in last {lookback_days} days)"
        ),
    ),
}


@dataclass(frozen=True)
class _IdleOutcome:
    resource_id: str
    idle: bool
    alert: Alert | None
    new: bool = False


class IdleDetector:
    """Classifies running resources as idle and raises alerts for them.

    Every qualifying resource has its utilization snapshot and idle state
    saved on each pass, idle or not. Resources in any other lifecycle state
    are left untouched.
    """

    def __init__(
        self,
        metrics: MetricSource,
        resources: ResourceRepository,
        dispatcher: AlertDispatcher,
        strategy: IdleDetectionStrategy | None = None,
        max_concurrent: int = 5,
    ):
        self._metrics = metrics
        self._resources = resources
        self._dispatcher = dispatcher
        self._strategy = strategy or CpuBasedIdleStrategy()
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be at least 1, got {max_concurrent}")
        self._max_concurrent = max_concurrent

    @property
    def strategy(self) -> IdleDetectionStrategy:
        return self._strategy

    def set_strategy(self, strategy: IdleDetectionStrategy) -> None:
        """Replace the strategy used by subsequent runs of this detector."""
        self._strategy = strategy
        logger.info("Idle detection strategy changed to %s", type(strategy).__name__)

    def detect_idle_ec2(
        self,
        lookback_days: int = 7,
        threshold: float = 5.0,
        *,
        strategy: IdleDetectionStrategy | None = None,
        cancel_event: threading.Event | None = None,
    ) -> IdleDetectionReport:
        return self._detect(ResourceKind.EC2, lookback_days, threshold, strategy, cancel_event)

    def detect_idle_rds(
        self,
        lookback_days: int = 7,
        connection_threshold: float = 2.0,
        *,
        strategy: IdleDetectionStrategy | None = None,
        cancel_event: threading.Event | None = None,
    ) -> IdleDetectionReport:
        return self._detect(
            ResourceKind.RDS, lookback_days, connection_threshold, strategy, cancel_event
        )

    def detect_idle_sagemaker(
        self,
        lookback_days: int = 7,
        invocation_threshold: float = 10.0,
        *,
        strategy: IdleDetectionStrategy | None = None,
        cancel_event: threading.Event | None = None,
    ) -> IdleDetectionReport:
        return self._detect(
            ResourceKind.SAGEMAKER, lookback_days, invocation_threshold, strategy, cancel_event
        )

    def run_all_idle_detection(
        self,
        lookback_days: int = 7,
        ec2_threshold: float = 5.0,
        rds_connection_threshold: float = 2.0,
        sagemaker_invocation_threshold: float = 10.0,
        *,
        cancel_event: threading.Event | None = None,
    ) -> list[IdleDetectionReport]:
        """Run EC2, RDS and SageMaker detection in turn."""
        logger.info("Running idle detection across all resource kinds")
        reports = [
            self.detect_idle_ec2(lookback_days, ec2_threshold, cancel_event=cancel_event),
            self.detect_idle_rds(
                lookback_days, rds_connection_threshold, cancel_event=cancel_event
            ),
            self.detect_idle_sagemaker(
                lookback_days, sagemaker_invocation_threshold, cancel_event=cancel_event
            ),
        ]
        logger.info(
            "Idle detection finished: %d idle, %d failed",
            sum(len(r.idle) for r in reports),
            sum(len(r.failed) for r in reports),
        )
        return reports

    def _detect(
        self,
        kind: ResourceKind,
        lookback_days: int,
        threshold: float,
        strategy: IdleDetectionStrategy | None,
        cancel_event: threading.Event | None,
    ) -> IdleDetectionReport:
        profile = IDLE_PROFILES[kind]
        strategy = strategy or self._strategy

        try:
            resources = self._resources.list_by_kind(kind)
        except Exception:
            logger.exception("Failed to list %s resources", kind)
            return IdleDetectionReport(
                kind=kind, evaluated=[], idle=[], skipped=[], failed=[], alerts=[]
            )

        running_state = profile.running_state.lower()
        qualifying = [r for r in resources if (r.state or "").lower() == running_state]
        skipped = [r.resource_id for r in resources if (r.state or "").lower() != running_state]
        logger.info(
            "Detecting idle %s resources: %d to check, %d not %s",
            kind,
            len(qualifying),
            len(skipped),
            profile.running_state,
        )

        outcomes: dict[str, _IdleOutcome] = {}
        failed: set[str] = set()
        cancelled = False

        if qualifying:
            with ThreadPoolExecutor(max_workers=self._max_concurrent) as executor:
                futures = {
                    executor.submit(
                        self._check_resource,
                        resource,
                        profile,
                        lookback_days,
                        threshold,
                        strategy,
                        cancel_event,
                    ): resource
                    for resource in qualifying
                }
                for future in as_completed(futures):
                    resource = futures[future]
                    try:
                        outcome = future.result()
                    except Exception:
                        logger.exception(
                            "Idle check failed for %s %s", kind, resource.resource_id
                        )
                        failed.add(resource.resource_id)
                        continue
                    if outcome is None:
                        cancelled = True
                    else:
                        outcomes[resource.resource_id] = outcome

        order = [r.resource_id for r in qualifying]
        evaluated = [rid for rid in order if rid in outcomes]
        if cancelled:
            logger.warning("Idle detection for %s cancelled after %d resources", kind, len(evaluated))

        return IdleDetectionReport(
            kind=kind,
            evaluated=evaluated,
            idle=[rid for rid in evaluated if outcomes[rid].idle],
            skipped=skipped,
            failed=[rid for rid in order if rid in failed],
            alerts=[outcomes[rid].alert for rid in evaluated if outcomes[rid].new],
            cancelled=cancelled,
            already_open=[
                outcomes[rid].alert
                for rid in evaluated
                if outcomes[rid].alert is not None and not outcomes[rid].new
            ],
        )

    def _check_resource(
        self,
        resource: Resource,
        profile: IdleProfile,
        lookback_days: int,
        threshold: float,
        strategy: IdleDetectionStrategy,
        cancel_event: threading.Event | None,
    ) -> _IdleOutcome | None:
        """Fetch, classify, save and alert for one resource. None if cancelled."""
        if cancel_event is not None and cancel_event.is_set():
            return None

        lookback_hours = lookback_days * 24
        primary = self._metrics.get_metric(
            resource.resource_id, profile.kind, profile.primary, lookback_hours
        )
        if profile.secondary == profile.primary:
            secondary = primary
        else:
            secondary = self._metrics.get_metric(
                resource.resource_id, profile.kind, profile.secondary, lookback_hours
            )

        is_idle = strategy.is_idle(primary, secondary, threshold)
        self._resources.save(
            replace(
                resource,
                metrics={
                    **resource.metrics,
                    profile.primary.value: primary,
                    profile.secondary.value: secondary,
                },
                idle=IdleState.IDLE if is_idle else IdleState.NOT_IDLE,
                last_checked_at=datetime.now(UTC),
            )
        )

        if not is_idle:
            return _IdleOutcome(resource.resource_id, idle=False, alert=None)

        candidate = Alert(
            resource_id=resource.resource_id,
            resource_type=profile.kind,
            alert_type=IDLE_ALERT_TYPE,
            severity=profile.severity,
            message=profile.message.format(
                resource_id=resource.resource_id,
                primary=primary,
                secondary=secondary,
                lookback_days=lookback_days,
            ),
        )
        alert = self._dispatcher.create_alert(candidate)
        return _IdleOutcome(
            resource.resource_id,
            idle=True,
            alert=alert,
            new=alert is not None and alert.alert_id == candidate.alert_id,
        )
