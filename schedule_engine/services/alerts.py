from __future__ import annotations

import logging
from datetime import date
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from schedule_engine.models import Alert, AlertSeverity, AlertStatus
from schedule_engine.services.pattern_store import storage_errors

logger = logging.getLogger("schedule_engine.alerts")

ALERT_INCOMPLETE_ENTRY = "INCOMPLETE_ENTRY"
ALERT_AUTO_CLOSED = "AUTO_CLOSED"
ALERT_AUTO_CLOSED_SAFETY = "AUTO_CLOSED_SAFETY"
ALERT_OVERTIME = "OVERTIME"
ALERT_AUTHORIZATION_EXPIRED = "AUTHORIZATION_EXPIRED"
ALERT_WORK_ON_NON_WORKDAY = "WORK_ON_NON_WORKDAY"

_ALERT_TITLES = {
    ALERT_INCOMPLETE_ENTRY: "Clock-in without clock-out",
    ALERT_AUTO_CLOSED: "Shift closed at scheduled end",
    ALERT_AUTO_CLOSED_SAFETY: "Shift force-closed after maximum open time",
    ALERT_OVERTIME: "Unauthorized overtime",
    ALERT_AUTHORIZATION_EXPIRED: "Overwork authorization expired",
    ALERT_WORK_ON_NON_WORKDAY: "Work recorded on a non-working day",
}


class AlertSink(Protocol):
    def create_alert(
        self,
        *,
        org_id: int,
        alert_type: str,
        severity: AlertSeverity,
        employee_id: int,
        day: date,
        metadata: dict[str, Any] | None = None,
    ) -> Alert:
        """Return the ACTIVE alert for (employee, type, day) if one exists, else create it."""
        ...


class SqlAlertSink:
    def __init__(self, db: Session):
        self.db = db

    def _find_active(self, *, org_id: int, alert_type: str, employee_id: int, day: date) -> Alert | None:
        return self.db.scalar(
            select(Alert).where(
                Alert.org_id == org_id,
                Alert.employee_id == employee_id,
                Alert.day_date == day,
                Alert.alert_type == alert_type,
                Alert.status == AlertStatus.ACTIVE,
            )
        )

    def create_alert(
        self,
        *,
        org_id: int,
        alert_type: str,
        severity: AlertSeverity,
        employee_id: int,
        day: date,
        metadata: dict[str, Any] | None = None,
    ) -> Alert:
        with storage_errors():
            existing = self._find_active(org_id=org_id, alert_type=alert_type, employee_id=employee_id, day=day)
            if existing is not None:
                return existing

            alert = Alert(
                org_id=org_id,
                employee_id=employee_id,
                day_date=day,
                alert_type=alert_type,
                severity=severity,
                status=AlertStatus.ACTIVE,
                title=_ALERT_TITLES.get(alert_type, alert_type),
                details=dict(metadata or {}),
            )
            try:
                with self.db.begin_nested():
                    self.db.add(alert)
                    self.db.flush()
            except IntegrityError:
                # A concurrent writer won the partial unique index.
                winner = self._find_active(org_id=org_id, alert_type=alert_type, employee_id=employee_id, day=day)
                if winner is None:
                    raise
                return winner

        logger.info(
            "alert_created",
            extra={
                "org_id": org_id,
                "employee_id": employee_id,
                "day": day.isoformat(),
                "alert_type": alert_type,
                "severity": severity.value,
            },
        )
        return alert
