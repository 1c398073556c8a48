"""Repository interfaces and in-memory implementations.

Real deployments back these with their own inventory, rule and alert stores.
The in-memory versions serve the CLI (loaded from a JSON inventory file) and
the tests.
"""

import json
import logging
import threading
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from idlewatch.models import (
    ActionType,
    Alert,
    ComparisonOperator,
    DurationUnit,
    IdleState,
    Resource,
    ResourceKind,
    Rule,
)

logger = logging.getLogger(__name__)


class ResourceRepository(Protocol):
    def list_by_kind(self, kind: ResourceKind) -> list[Resource]: ...

    def save(self, resource: Resource) -> None: ...


class RuleRepository(Protocol):
    def list_active(self) -> list[Rule]: ...


class AlertRepository(Protocol):
    def insert(self, alert: Alert) -> bool: ...

    def resolve(self, alert_id: str) -> bool: ...

    def get(self, alert_id: str) -> Alert | None: ...

    def delete(self, alert_id: str) -> bool: ...

    def find_open(self, key: tuple[str, str, str, str | None]) -> Alert | None: ...

    def all(self, unresolved_only: bool = False) -> list[Alert]: ...


class InMemoryResourceRepository:
    """Resources keyed by (kind, resource_id), in insertion order."""

    def __init__(self, resources: list[Resource] | None = None):
        self._lock = threading.Lock()
        self._resources: dict[tuple[ResourceKind, str], Resource] = {}
        for resource in resources or []:
            self._resources[(resource.kind, resource.resource_id)] = resource

    def list_by_kind(self, kind: ResourceKind) -> list[Resource]:
        with self._lock:
            return [r for (k, _), r in self._resources.items() if k == kind]

    def save(self, resource: Resource) -> None:
        with self._lock:
            self._resources[(resource.kind, resource.resource_id)] = resource

    def all(self) -> list[Resource]:
        with self._lock:
            return list(self._resources.values())


class InMemoryRuleRepository:
    def __init__(self, rules: list[Rule] | None = None):
        self._rules = list(rules or [])

    def list_active(self) -> list[Rule]:
        return [r for r in self._rules if r.active]

    def all(self) -> list[Rule]:
        return list(self._rules)


class InMemoryAlertRepository:
    """Thread-safe alert store. Resolved and deleted alerts are terminal."""

    def __init__(self):
        self._lock = threading.Lock()
        self._alerts: dict[str, Alert] = {}

    def insert(self, alert: Alert) -> bool:
        with self._lock:
            if alert.alert_id in self._alerts:
                return False
            self._alerts[alert.alert_id] = alert
            return True

    def resolve(self, alert_id: str) -> bool:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None or alert.resolved:
                return False
            self._alerts[alert_id] = replace(alert, resolved=True, resolved_at=datetime.now(UTC))
            return True

    def get(self, alert_id: str) -> Alert | None:
        with self._lock:
            return self._alerts.get(alert_id)

    def delete(self, alert_id: str) -> bool:
        with self._lock:
            return self._alerts.pop(alert_id, None) is not None

    def find_open(self, key: tuple[str, str, str, str | None]) -> Alert | None:
        with self._lock:
            for alert in self._alerts.values():
                if not alert.resolved and alert.dedup_key == key:
                    return alert
        return None

    def all(self, unresolved_only: bool = False) -> list[Alert]:
        with self._lock:
            return [a for a in self._alerts.values() if not (unresolved_only and a.resolved)]


class InventoryError(ValueError):
    """The inventory document is malformed."""


def _parse_kind(value: str) -> ResourceKind:
    for kind in ResourceKind:
        if kind.value.lower() == str(value).lower():
            return kind
    raise ValueError(f"Unsupported resource type {value!r}")


def _parse_flag(value: Any, field: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"{field} must be true or false, got {value!r}")
    return value


def _parse_resource(raw: dict[str, Any]) -> Resource:
    state = raw.get("state") or ""
    if not isinstance(state, str):
        raise ValueError(f"state must be a string, got {state!r}")
    return Resource(
        resource_id=str(raw["resource_id"]),
        kind=_parse_kind(raw["resource_type"]),
        state=state,
        metrics={k: float(v) for k, v in (raw.get("metrics") or {}).items()},
        idle=IdleState(raw.get("idle") or IdleState.UNKNOWN),
        name=raw.get("name"),
        region=raw.get("region"),
        last_checked_at=(
            datetime.fromisoformat(raw["last_checked_at"]) if raw.get("last_checked_at") else None
        ),
    )


def _parse_rule(raw: dict[str, Any]) -> Rule:
    return Rule(
        rule_id=str(raw["rule_id"]),
        name=raw.get("name", str(raw["rule_id"])),
        rule_type=raw.get("rule_type", ""),
        resource_type=_parse_kind(raw["resource_type"]),
        metric=raw["metric"],
        operator=ComparisonOperator(raw["operator"]),
        threshold=float(raw["threshold"]),
        duration=int(raw.get("duration", 1)),
        duration_unit=DurationUnit(raw.get("duration_unit", "hours").lower()),
        action=ActionType(raw.get("action", "ALERT").upper()),
        active=_parse_flag(raw.get("active", True), "active"),
        created_by=raw.get("created_by"),
    )


def _records(document: dict[str, Any], section: str, path: str | Path) -> list[Any]:
    records = document.get(section) or []
    if not isinstance(records, list):
        raise InventoryError(f"Inventory {path}: {section!r} must be a JSON array")
    return records


def load_inventory(path: str | Path) -> tuple[InMemoryResourceRepository, InMemoryRuleRepository]:
    """Load resources and rules from a JSON inventory document.

    Records with a missing or mistyped field, an unsupported resource type,
    operator or unit are skipped with a warning. A document that is not a
    JSON object raises InventoryError.
    """
    try:
        document = json.loads(Path(path).read_text())
    except json.JSONDecodeError as e:
        raise InventoryError(f"Invalid inventory JSON in {path}: {e}") from e
    if not isinstance(document, dict):
        raise InventoryError(f"Inventory {path} must be a JSON object")

    resources = []
    for raw in _records(document, "resources", path):
        if not isinstance(raw, dict):
            logger.warning("Skipping resource %r: not a JSON object", raw)
            continue
        try:
            resources.append(_parse_resource(raw))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning("Skipping resource %s: %s", raw.get("resource_id", "?"), e)

    rules = []
    for raw in _records(document, "rules", path):
        if not isinstance(raw, dict):
            logger.warning("Skipping rule %r: not a JSON object", raw)
            continue
        try:
            rules.append(_parse_rule(raw))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning("Skipping rule %s: %s", raw.get("rule_id", "?"), e)

    return InMemoryResourceRepository(resources), InMemoryRuleRepository(rules)


def dump_inventory(
    path: str | Path,
    resources: InMemoryResourceRepository,
    rules: InMemoryRuleRepository,
) -> None:
    """Write resources (with refreshed idle state) and rules back to JSON."""
    document = {
        "resources": [
            {
                "resource_id": r.resource_id,
                "resource_type": r.kind.value,
                "state": r.state,
                "metrics": r.metrics,
                "idle": r.idle.value,
                "name": r.name,
                "region": r.region,
                "last_checked_at": r.last_checked_at.isoformat() if r.last_checked_at else None,
            }
            for r in resources.all()
        ],
        "rules": [
            {
                "rule_id": r.rule_id,
                "name": r.name,
                "rule_type": r.rule_type,
                "resource_type": r.resource_type.value,
                "metric": r.metric,
                "operator": r.operator.value,
                "threshold": r.threshold,
                "duration": r.duration,
                "duration_unit": r.duration_unit.value,
                "action": r.action.value,
                "active": r.active,
                "created_by": r.created_by,
            }
            for r in rules.all()
        ],
    }
    Path(path).write_text(json.dumps(document, indent=2))
