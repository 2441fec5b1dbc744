from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine


REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "organizations": {"id", "timezone", "settings"},
    "schedule_templates": {"id", "org_id", "schedule_type", "anchor_date", "cycle_length_days"},
    "schedule_periods": {"id", "template_id", "period_type", "start_date", "end_date", "created_at"},
    "work_day_patterns": {"id", "template_id", "period_id", "day_of_week", "cycle_day_index"},
    "time_slots": {"id", "pattern_id", "override_id", "start_time", "end_time", "is_break", "sort_order"},
    "employee_schedule_assignments": {"id", "employee_id", "template_id", "start_date", "end_date"},
    "time_entries": {"id", "employee_id", "entry_type", "ts_utc", "is_automatic", "auto_close_reason"},
    "workday_summaries": {"id", "day_date", "resolution_status", "data_quality"},
    "alerts": {"id", "alert_type", "status", "day_date"},
    "time_bank_movements": {"id", "reference_key", "minutes"},
    "job_runs": {"id", "dedup_key", "stage", "status"},
    "alembic_version": {"version_num"},
}

REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "schedule_type": {"FIXED", "SHIFT", "ROTATION", "FLEXIBLE"},
    "schedule_period_type": {"REGULAR", "INTENSIVE", "SUMMER", "HOLIDAY", "SPECIAL"},
    "time_entry_type": {"CLOCK_IN", "CLOCK_OUT", "BREAK_START", "BREAK_END"},
    "job_run_status": {"PENDING", "RUNNING", "SUCCEEDED", "FAILED"},
}

# Alert, time-bank and job idempotency all lean on these.
REQUIRED_UNIQUE_INDEXES: dict[str, str] = {
    "alerts": "uq_alerts_active_employee_day_type",
    "time_bank_movements": "ix_time_bank_movements_reference_key",
    "job_runs": "ix_job_runs_dedup_key",
}


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


@dataclass(slots=True)
class _Findings:
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _check_columns(inspector: Any, findings: _Findings) -> set[str]:
    readable: set[str] = set()
    for table_name, required in REQUIRED_TABLE_COLUMNS.items():
        try:
            present = {str(column.get("name")) for column in inspector.get_columns(table_name)}
        except Exception as exc:  # pragma: no cover
            findings.issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue
        readable.add(table_name)
        missing = sorted(required - present)
        if missing:
            findings.issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing)}")
    return readable


def _check_enums(inspector: Any, findings: _Findings) -> None:
    try:
        reported = inspector.get_enums() or []
    except Exception as exc:  # pragma: no cover
        findings.warnings.append(f"ENUM_INSPECTION_FAILED:{exc.__class__.__name__}")
        return

    labels_by_name = {
        str(item.get("name")): {str(label) for label in item.get("labels") or []}
        for item in reported
        if item.get("name")
    }
    for enum_name, required in REQUIRED_ENUM_VALUES.items():
        labels = labels_by_name.get(enum_name)
        if labels is None:
            findings.warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing = sorted(required - labels)
        if missing:
            findings.issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing)}")


def _check_unique_indexes(inspector: Any, readable_tables: set[str], findings: _Findings) -> None:
    for table_name, index_name in REQUIRED_UNIQUE_INDEXES.items():
        if table_name not in readable_tables:
            continue
        try:
            indexes = inspector.get_indexes(table_name)
        except Exception as exc:  # pragma: no cover
            findings.warnings.append(f"INDEX_INSPECTION_FAILED:{table_name}:{exc.__class__.__name__}")
            continue
        if not any(index.get("name") == index_name and index.get("unique") for index in indexes):
            findings.issues.append(f"MISSING_UNIQUE_INDEX:{table_name}:{index_name}")


def _check_alembic_version(engine: Engine, findings: _Findings) -> None:
    try:
        with engine.connect() as connection:
            version = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
    except Exception as exc:  # pragma: no cover
        findings.issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}")
        return
    if not str(version or "").strip():
        findings.issues.append("ALEMBIC_VERSION_EMPTY")


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    """Compare the live database with what the resolver and sweep jobs need.

    Issues make the result fail; warnings (enums a non-PostgreSQL backend
    cannot report, for instance) are informational.
    """
    checked_at_utc = datetime.now(timezone.utc)
    findings = _Findings()
    inspector = inspect(engine)

    readable_tables = _check_columns(inspector, findings)
    _check_enums(inspector, findings)
    _check_unique_indexes(inspector, readable_tables, findings)
    _check_alembic_version(engine, findings)

    return SchemaGuardResult(
        ok=not findings.issues,
        checked_at_utc=checked_at_utc,
        issues=findings.issues,
        warnings=findings.warnings,
    )
