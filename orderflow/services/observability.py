"""
Observability Sink

Structured event reporting for the pipeline. Every retry attempt, recovery,
placeholder synthesis and dead-letter transition is reported here as
``(level, category, message, order_id, correlation_id, data)``.

Events go through the standard ``logging`` module (the structured fields ride
in ``extra``). Conditions that need a human, such as degraded storage or a
dead-lettered order, are additionally kept as active alerts until resolved.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger("orderflow.events")


class AlertType:
    DEGRADED_STORAGE = "DEGRADED_STORAGE"
    API_ERROR = "API_ERROR"
    DEAD_LETTER = "DEAD_LETTER"
    PAYMENT_FAILURE = "PAYMENT_FAILURE"
    WEBHOOK_FAILURE = "WEBHOOK_FAILURE"


@dataclass
class Alert:
    """An open condition waiting for an operator."""
    id: str
    level: int
    type: str
    message: str
    order_id: Optional[str] = None
    correlation_id: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    resolved: bool = False
    resolved_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "level": logging.getLevelName(self.level),
            "type": self.type,
            "message": self.message,
            "order_id": self.order_id,
            "correlation_id": self.correlation_id,
            "data": self.data,
            "created_at": self.created_at.isoformat(),
            "resolved": self.resolved,
        }


@dataclass
class ReportedEvent:
    level: int
    category: str
    message: str
    order_id: Optional[str]
    correlation_id: Optional[str]
    data: dict[str, Any]


class EventReporter:
    """
    Observability collaborator used by every pipeline component.

    Args:
        name: Logger name for emitted records
        history_size: Recent events kept in memory (0 disables history)
    """

    def __init__(self, name: str = "orderflow.events", history_size: int = 500):
        self._logger = logging.getLogger(name)
        self._history_size = history_size
        self._history: list[ReportedEvent] = []
        self._alerts: dict[str, Alert] = {}

    def report(
        self,
        level: int,
        category: str,
        message: str,
        *,
        order_id: Optional[Any] = None,
        correlation_id: Optional[str] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> None:
        """Emit one structured event."""
        order_id = str(order_id) if order_id is not None else None
        data = data or {}

        suffix = ""
        if order_id:
            suffix += f" | order={order_id}"
        if correlation_id:
            suffix += f" | corr={correlation_id}"

        self._logger.log(
            level,
            f"[{category}] {message}{suffix}",
            extra={
                "category": category,
                "order_id": order_id,
                "correlation_id": correlation_id,
                "event_data": data,
            },
        )

        if self._history_size:
            self._history.append(
                ReportedEvent(level, category, message, order_id, correlation_id, data)
            )
            if len(self._history) > self._history_size:
                del self._history[: len(self._history) - self._history_size]

    def debug(self, category: str, message: str, **kwargs: Any) -> None:
        self.report(logging.DEBUG, category, message, **kwargs)

    def info(self, category: str, message: str, **kwargs: Any) -> None:
        self.report(logging.INFO, category, message, **kwargs)

    def warning(self, category: str, message: str, **kwargs: Any) -> None:
        self.report(logging.WARNING, category, message, **kwargs)

    def error(self, category: str, message: str, **kwargs: Any) -> None:
        self.report(logging.ERROR, category, message, **kwargs)

    def critical(self, category: str, message: str, **kwargs: Any) -> None:
        self.report(logging.CRITICAL, category, message, **kwargs)

    # =========================================================================
    # ALERTS
    # =========================================================================

    def raise_alert(
        self,
        alert_type: str,
        message: str,
        *,
        level: int = logging.WARNING,
        order_id: Optional[Any] = None,
        correlation_id: Optional[str] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> Alert:
        alert = Alert(
            id=f"alert_{uuid.uuid4().hex[:12]}",
            level=level,
            type=alert_type,
            message=message,
            order_id=str(order_id) if order_id is not None else None,
            correlation_id=correlation_id,
            data=data or {},
        )
        self._alerts[alert.id] = alert

        self.report(
            level,
            "ALERT_CREATED",
            f"{alert_type}: {message}",
            order_id=order_id,
            correlation_id=correlation_id,
            data={"alert_id": alert.id, **alert.data},
        )
        return alert

    def resolve_alert(self, alert_id: str) -> bool:
        alert = self._alerts.get(alert_id)
        if alert is None or alert.resolved:
            return False

        alert.resolved = True
        alert.resolved_at = datetime.now(timezone.utc)
        self.info("ALERT_RESOLVED", f"{alert.type}: {alert.message}", order_id=alert.order_id)
        return True

    def active_alerts(self, alert_type: Optional[str] = None) -> list[Alert]:
        return [
            a for a in self._alerts.values()
            if not a.resolved and (alert_type is None or a.type == alert_type)
        ]

    def events(self, category: Optional[str] = None) -> list[ReportedEvent]:
        """Recent events, optionally filtered by category."""
        if category is None:
            return list(self._history)
        return [e for e in self._history if e.category == category]


def create_correlation_id() -> str:
    """Correlation ids follow the ``corr-<uuid4>`` shape used on queue rows."""
    return f"corr-{uuid.uuid4()}"
