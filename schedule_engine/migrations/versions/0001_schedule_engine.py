"""Schedule engine schema

Revision ID: 0001_schedule_engine
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_schedule_engine"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

schedule_type = postgresql.ENUM("FIXED", "SHIFT", "ROTATION", "FLEXIBLE", name="schedule_type", create_type=False)
schedule_period_type = postgresql.ENUM(
    "REGULAR",
    "INTENSIVE",
    "SUMMER",
    "HOLIDAY",
    "SPECIAL",
    name="schedule_period_type",
    create_type=False,
)
absence_status = postgresql.ENUM(
    "PENDING",
    "APPROVED",
    "REJECTED",
    "CANCELLED",
    name="absence_status",
    create_type=False,
)
time_entry_type = postgresql.ENUM(
    "CLOCK_IN",
    "CLOCK_OUT",
    "BREAK_START",
    "BREAK_END",
    name="time_entry_type",
    create_type=False,
)
alert_severity = postgresql.ENUM("INFO", "WARNING", "CRITICAL", name="alert_severity", create_type=False)
alert_status = postgresql.ENUM("ACTIVE", "RESOLVED", "DISMISSED", name="alert_status", create_type=False)
overwork_authorization_status = postgresql.ENUM(
    "PENDING",
    "APPROVED",
    "REJECTED",
    "EXPIRED",
    "CANCELLED",
    name="overwork_authorization_status",
    create_type=False,
)
time_bank_origin = postgresql.ENUM(
    "WEEKLY_OVERTIME",
    "ON_CALL_AVAILABILITY",
    "ON_CALL_INTERVENTION",
    name="time_bank_origin",
    create_type=False,
)
on_call_status = postgresql.ENUM("SCHEDULED", "SETTLED", "CANCELLED", name="on_call_status", create_type=False)
compensation_type = postgresql.ENUM("NONE", "TIME", "PAY", "MIXED", name="compensation_type", create_type=False)
intervention_category = postgresql.ENUM(
    "INSIDE_SCHEDULE",
    "OUTSIDE_SCHEDULE",
    name="intervention_category",
    create_type=False,
)
job_run_status = postgresql.ENUM(
    "PENDING",
    "RUNNING",
    "SUCCEEDED",
    "FAILED",
    name="job_run_status",
    create_type=False,
)

ALL_ENUMS = (
    schedule_type,
    schedule_period_type,
    absence_status,
    time_entry_type,
    alert_severity,
    alert_status,
    overwork_authorization_status,
    time_bank_origin,
    on_call_status,
    compensation_type,
    intervention_category,
    job_run_status,
)


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def _updated_at() -> sa.Column:
    return sa.Column(
        "updated_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def _org_fk() -> sa.Column:
    return sa.Column(
        "org_id",
        sa.Integer(),
        sa.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )


def _employee_fk() -> sa.Column:
    return sa.Column(
        "employee_id",
        sa.Integer(),
        sa.ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ALL_ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "organizations",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default=sa.text("'Europe/Madrid'")),
        sa.Column(
            "settings",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
    )

    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        _org_fk(),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    )

    op.create_table(
        "schedule_templates",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        _org_fk(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("schedule_type", schedule_type, nullable=False),
        sa.Column("weekly_hours", sa.Float(), nullable=False, server_default=sa.text("40")),
        sa.Column("anchor_date", sa.Date(), nullable=True),
        sa.Column("cycle_length_days", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
        _updated_at(),
    )

    op.create_table(
        "schedule_periods",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "template_id",
            sa.Integer(),
            sa.ForeignKey("schedule_templates.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("period_type", schedule_period_type, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("weekly_hours", sa.Float(), nullable=True),
        _created_at(),
    )

    op.create_table(
        "work_day_patterns",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "template_id",
            sa.Integer(),
            sa.ForeignKey("schedule_templates.id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
        sa.Column(
            "period_id",
            sa.Integer(),
            sa.ForeignKey("schedule_periods.id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
        sa.Column("day_of_week", sa.Integer(), nullable=True),
        sa.Column("cycle_day_index", sa.Integer(), nullable=True),
        sa.Column("is_working_day", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.CheckConstraint(
            "(template_id IS NULL) <> (period_id IS NULL)",
            name="ck_work_day_patterns_single_owner",
        ),
        sa.UniqueConstraint("template_id", "day_of_week", name="uq_work_day_patterns_template_weekday"),
        sa.UniqueConstraint("template_id", "cycle_day_index", name="uq_work_day_patterns_template_cycle_day"),
        sa.UniqueConstraint("period_id", "day_of_week", name="uq_work_day_patterns_period_weekday"),
        sa.UniqueConstraint("period_id", "cycle_day_index", name="uq_work_day_patterns_period_cycle_day"),
    )

    op.create_table(
        "exception_day_overrides",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        _org_fk(),
        _employee_fk(),
        sa.Column("day_date", sa.Date(), nullable=False, index=True),
        sa.Column("is_working_day", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("note", sa.String(length=1000), nullable=True),
        _created_at(),
        sa.UniqueConstraint("org_id", "employee_id", "day_date", name="uq_exception_day_overrides_employee_day"),
    )

    op.create_table(
        "time_slots",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "pattern_id",
            sa.Integer(),
            sa.ForeignKey("work_day_patterns.id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
        sa.Column(
            "override_id",
            sa.Integer(),
            sa.ForeignKey("exception_day_overrides.id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
        sa.Column("start_time", sa.Time(timezone=False), nullable=False),
        sa.Column("end_time", sa.Time(timezone=False), nullable=False),
        sa.Column("is_break", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )

    op.create_table(
        "employee_schedule_assignments",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        _org_fk(),
        _employee_fk(),
        sa.Column(
            "template_id",
            sa.Integer(),
            sa.ForeignKey("schedule_templates.id", ondelete="RESTRICT"),
            nullable=False,
            index=True,
        ),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
    )

    op.create_table(
        "absence_requests",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        _org_fk(),
        _employee_fk(),
        sa.Column("absence_type", sa.String(length=50), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("status", absence_status, nullable=False),
        _created_at(),
    )

    op.create_table(
        "holiday_calendar_days",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        _org_fk(),
        sa.Column("day_date", sa.Date(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.UniqueConstraint("org_id", "day_date", name="uq_holiday_calendar_days_org_day"),
    )

    op.create_table(
        "time_entries",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        _org_fk(),
        _employee_fk(),
        sa.Column("entry_type", time_entry_type, nullable=False),
        sa.Column("ts_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_cancelled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_automatic", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("auto_close_reason", sa.String(length=50), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_time_entries_employee_ts", "time_entries", ["employee_id", "ts_utc"])

    op.create_table(
        "workday_summaries",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        _org_fk(),
        _employee_fk(),
        sa.Column("day_date", sa.Date(), nullable=False),
        sa.Column("expected_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("worked_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("compliance_ratio", sa.Float(), nullable=True),
        sa.Column("status", sa.String(length=30), nullable=False),
        sa.Column("resolution_status", sa.String(length=50), nullable=False, server_default=sa.text("'OK'")),
        sa.Column("data_quality", sa.String(length=20), nullable=False, server_default=sa.text("'HIGH'")),
        sa.Column("source_layer", sa.String(length=50), nullable=True),
        sa.Column(
            "flags",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        _updated_at(),
        sa.UniqueConstraint("org_id", "employee_id", "day_date", name="uq_workday_summaries_employee_day"),
    )

    op.create_table(
        "alerts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        _org_fk(),
        _employee_fk(),
        sa.Column("day_date", sa.Date(), nullable=False),
        sa.Column("alert_type", sa.String(length=50), nullable=False),
        sa.Column("severity", alert_severity, nullable=False),
        sa.Column("status", alert_status, nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        _created_at(),
    )
    op.create_index(
        "uq_alerts_active_employee_day_type",
        "alerts",
        ["org_id", "employee_id", "day_date", "alert_type"],
        unique=True,
        postgresql_where=sa.text("status = 'ACTIVE'"),
    )

    op.create_table(
        "overwork_authorizations",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        _org_fk(),
        _employee_fk(),
        sa.Column("day_date", sa.Date(), nullable=False),
        sa.Column("minutes_requested", sa.Integer(), nullable=False),
        sa.Column("minutes_approved", sa.Integer(), nullable=True),
        sa.Column("status", overwork_authorization_status, nullable=False, index=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "time_bank_movements",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        _org_fk(),
        _employee_fk(),
        sa.Column("day_date", sa.Date(), nullable=False),
        sa.Column("minutes", sa.Integer(), nullable=False),
        sa.Column("origin", time_bank_origin, nullable=False),
        sa.Column("reference_key", sa.String(length=255), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        _created_at(),
        _updated_at(),
    )
    op.create_index(
        "ix_time_bank_movements_reference_key",
        "time_bank_movements",
        ["reference_key"],
        unique=True,
    )

    op.create_table(
        "on_call_schedules",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        _org_fk(),
        _employee_fk(),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column("status", on_call_status, nullable=False),
        sa.Column("compensation_type", compensation_type, nullable=False),
        sa.Column("compensation_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("compensation_amount", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default=sa.text("'EUR'")),
    )

    op.create_table(
        "on_call_interventions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "schedule_id",
            sa.Integer(),
            sa.ForeignKey("on_call_schedules.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        _org_fk(),
        _employee_fk(),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("category", intervention_category, nullable=True),
        sa.Column("inside_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("outside_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )

    op.create_table(
        "on_call_allowances",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "schedule_id",
            sa.Integer(),
            sa.ForeignKey("on_call_schedules.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _org_fk(),
        _employee_fk(),
        sa.Column("compensation_type", compensation_type, nullable=False),
        sa.Column("minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("amount", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default=sa.text("'EUR'")),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("schedule_id", name="uq_on_call_allowances_schedule"),
    )

    op.create_table(
        "job_runs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("job_type", sa.String(length=100), nullable=False, index=True),
        _org_fk(),
        sa.Column("stage", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("dedup_key", sa.String(length=255), nullable=False),
        sa.Column(
            "payload",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("status", job_run_status, nullable=False, index=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("scheduled_at_utc", sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column("started_at_utc", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at_utc", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column(
            "result",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        _created_at(),
    )
    op.create_index("ix_job_runs_dedup_key", "job_runs", ["dedup_key"], unique=True)


def downgrade() -> None:
    op.drop_index("ix_job_runs_dedup_key", table_name="job_runs")
    op.drop_table("job_runs")
    op.drop_table("on_call_allowances")
    op.drop_table("on_call_interventions")
    op.drop_table("on_call_schedules")
    op.drop_index("ix_time_bank_movements_reference_key", table_name="time_bank_movements")
    op.drop_table("time_bank_movements")
    op.drop_table("overwork_authorizations")
    op.drop_index("uq_alerts_active_employee_day_type", table_name="alerts")
    op.drop_table("alerts")
    op.drop_table("workday_summaries")
    op.drop_index("ix_time_entries_employee_ts", table_name="time_entries")
    op.drop_table("time_entries")
    op.drop_table("holiday_calendar_days")
    op.drop_table("absence_requests")
    op.drop_table("employee_schedule_assignments")
    op.drop_table("time_slots")
    op.drop_table("exception_day_overrides")
    op.drop_table("work_day_patterns")
    op.drop_table("schedule_periods")
    op.drop_table("schedule_templates")
    op.drop_table("employees")
    op.drop_table("organizations")

    bind = op.get_bind()
    for enum_type in reversed(ALL_ENUMS):
        enum_type.drop(bind, checkfirst=True)
