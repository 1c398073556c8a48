"""Alert persistence and observer fan-out."""

import logging
import threading
from typing import Protocol, runtime_checkable

from idlewatch.models import Alert
from idlewatch.repository import AlertRepository

logger = logging.getLogger(__name__)


@runtime_checkable
class AlertObserver(Protocol):
    """Receives alert lifecycle events."""

    def on_alert_created(self, alert: Alert) -> None: ...

    def on_alert_resolved(self, alert: Alert) -> None: ...


class AlertDispatcher:
    """Records alerts and notifies registered observers.

    Construct one per process and pass it to every alert producer. With
    `deduplicate` enabled, at most one open alert exists per
    (resource type, resource id, alert type, rule id); repeats are dropped
    without notifying observers until that alert is resolved or deleted.

    Storage and observer registration share one lock, so engines may raise
    alerts from worker threads. Observers are called outside the lock on a
    snapshot of the registrations.
    """

    def __init__(
        self,
        repository: AlertRepository,
        observers: list[AlertObserver] | None = None,
        deduplicate: bool = True,
    ):
        self._repository = repository
        self._deduplicate = deduplicate
        self._lock = threading.RLock()
        self._observers: list[AlertObserver] = []
        for observer in observers or []:
            self.register(observer)

    @property
    def observers(self) -> list[AlertObserver]:
        with self._lock:
            return list(self._observers)

    def register(self, observer: AlertObserver) -> None:
        with self._lock:
            if observer in self._observers:
                return
            self._observers.append(observer)
        logger.debug("Observer registered: %s", type(observer).__name__)

    def unregister(self, observer: AlertObserver) -> None:
        with self._lock:
            if observer not in self._observers:
                return
            self._observers.remove(observer)
        logger.debug("Observer unregistered: %s", type(observer).__name__)

    def create_alert(self, alert: Alert) -> Alert | None:
        """Persist an alert and notify observers.

        Returns the stored alert, the already-open duplicate, or None when the
        repository rejected or failed to store it.
        """
        with self._lock:
            if self._deduplicate:
                existing = self._repository.find_open(alert.dedup_key)
                if existing is not None:
                    logger.info(
                        "Alert for %s %s already open (%s), not raising again",
                        alert.resource_type,
                        alert.resource_id,
                        existing.alert_id,
                    )
                    return existing

            try:
                stored = self._repository.insert(alert)
            except Exception:
                logger.exception("Failed to store alert for %s", alert.resource_id)
                return None

            if not stored:
                logger.warning("Alert repository rejected alert for %s", alert.resource_id)
                return None
            observers = list(self._observers)

        logger.info("Alert created: %s", alert.message)
        self._notify(observers, "on_alert_created", alert)
        return alert

    def resolve_alert(self, alert_id: str) -> Alert | None:
        """Resolve an open alert and notify observers. Returns the resolved alert."""
        with self._lock:
            if not self._repository.resolve(alert_id):
                logger.warning("Alert %s could not be resolved", alert_id)
                return None

            resolved = self._repository.get(alert_id)
            if resolved is None:
                return None
            observers = list(self._observers)

        logger.info("Alert resolved: %s", alert_id)
        self._notify(observers, "on_alert_resolved", resolved)
        return resolved

    def delete_alert(self, alert_id: str) -> bool:
        with self._lock:
            deleted = self._repository.delete(alert_id)
        if deleted:
            logger.info("Alert deleted: %s", alert_id)
        return deleted

    def open_alerts(self) -> list[Alert]:
        return self._repository.all(unresolved_only=True)

    @staticmethod
    def _notify(observers: list[AlertObserver], callback: str, alert: Alert) -> None:
        for observer in observers:
            try:
                getattr(observer, callback)(alert)
            except Exception:
                logger.exception(
                    "Observer %s failed handling %s for alert %s",
                    type(observer).__name__,
                    callback,
                    alert.alert_id,
                )
