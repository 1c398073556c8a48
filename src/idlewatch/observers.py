"""Reference alert observers."""

import logging

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from idlewatch.formatter import SEVERITY_COLORS
from idlewatch.models import Alert

logger = logging.getLogger(__name__)


class LoggingAlertObserver:
    """Writes alert lifecycle events to a logger."""

    def __init__(self, log: logging.Logger | None = None):
        self._log = log or logger

    def on_alert_created(self, alert: Alert) -> None:
        self._log.warning(
            "[%s] %s %s %s: %s",
            alert.severity.name,
            alert.alert_type,
            alert.resource_type,
            alert.resource_id,
            alert.message,
        )

    def on_alert_resolved(self, alert: Alert) -> None:
        self._log.info("Alert resolved: %s - %s", alert.resource_id, alert.message)


class ConsoleAlertObserver:
    """Prints each new alert as a panel on a Rich console."""

    def __init__(self, console: Console | None = None):
        self._console = console or Console(stderr=True)

    def on_alert_created(self, alert: Alert) -> None:
        color = SEVERITY_COLORS.get(alert.severity, "dim")
        body = Text.assemble(
            f"Resource: {alert.resource_id}\n",
            f"Type: {alert.resource_type.value}\n",
            f"Alert Type: {alert.alert_type}\n",
            "Severity: ",
            (alert.severity.name, color),
            f"\nMessage: {alert.message}",
        )
        self._console.print(Panel(body, title="New alert", border_style=color))

    def on_alert_resolved(self, alert: Alert) -> None:
        self._console.print(
            Text.assemble(
                ("✓ Alert resolved:", "green"), f" {alert.resource_id} - {alert.message}"
            )
        )
