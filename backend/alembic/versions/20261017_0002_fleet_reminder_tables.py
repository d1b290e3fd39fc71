"""Create vehicle, template, schedule, service event, and reminder tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261017_0002"
down_revision = "20261017_0001"
branch_labels = None
depends_on = None

ACTIVE_REMINDER_WHERE = sa.text("status IN ('PENDING', 'IN_PROGRESS', 'SENT')")


def upgrade() -> None:
    op.create_table(
        "vehicles",
        sa.Column("vehicle_id", sa.String(length=64), nullable=False),
        sa.Column("company_id", sa.String(length=64), nullable=False),
        sa.Column("make", sa.String(length=100), nullable=False),
        sa.Column("model", sa.String(length=100), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("current_odometer", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["company_id"], ["companies.company_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("vehicle_id"),
    )
    op.create_index("ix_vehicles_company_id", "vehicles", ["company_id"], unique=False)

    op.create_table(
        "maintenance_templates",
        sa.Column("template_id", sa.String(length=64), nullable=False),
        sa.Column("company_id", sa.String(length=64), nullable=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("interval_months", sa.Integer(), nullable=True),
        sa.Column("interval_miles", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["company_id"], ["companies.company_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("template_id"),
    )

    op.create_table(
        "maintenance_schedules",
        sa.Column("schedule_id", sa.String(length=64), nullable=False),
        sa.Column("company_id", sa.String(length=64), nullable=False),
        sa.Column("vehicle_id", sa.String(length=64), nullable=False),
        sa.Column("template_id", sa.String(length=64), nullable=False),
        sa.Column("last_service_date", sa.Date(), nullable=True),
        sa.Column("last_service_odometer", sa.Integer(), nullable=True),
        sa.Column("next_due_date", sa.Date(), nullable=True),
        sa.Column("next_due_odometer", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.company_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["vehicle_id"], ["vehicles.vehicle_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["template_id"], ["maintenance_templates.template_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("schedule_id"),
        sa.UniqueConstraint("vehicle_id", "template_id", name="uq_schedules_vehicle_template"),
    )
    op.create_index("ix_maintenance_schedules_company_id", "maintenance_schedules", ["company_id"], unique=False)
    op.create_index("ix_maintenance_schedules_next_due_date", "maintenance_schedules", ["next_due_date"], unique=False)

    op.create_table(
        "service_events",
        sa.Column("service_event_id", sa.String(length=64), nullable=False),
        sa.Column("company_id", sa.String(length=64), nullable=False),
        sa.Column("vehicle_id", sa.String(length=64), nullable=False),
        sa.Column("template_id", sa.String(length=64), nullable=False),
        sa.Column("performed_at", sa.Date(), nullable=False),
        sa.Column("odometer_at_service", sa.Integer(), nullable=False),
        sa.Column("performed_by", sa.String(length=120), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.company_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["vehicle_id"], ["vehicles.vehicle_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["template_id"], ["maintenance_templates.template_id"]),
        sa.PrimaryKeyConstraint("service_event_id"),
    )
    op.create_index("ix_service_events_company_id", "service_events", ["company_id"], unique=False)
    op.create_index("ix_service_events_vehicle_id", "service_events", ["vehicle_id"], unique=False)

    op.create_table(
        "reminders",
        sa.Column("reminder_id", sa.String(length=64), nullable=False),
        sa.Column("company_id", sa.String(length=64), nullable=False),
        sa.Column("schedule_id", sa.String(length=64), nullable=False),
        sa.Column("vehicle_id", sa.String(length=64), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("channel", sa.String(length=8), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["company_id"], ["companies.company_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["schedule_id"], ["maintenance_schedules.schedule_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["vehicle_id"], ["vehicles.vehicle_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("reminder_id"),
    )
    op.create_index("ix_reminders_company_id", "reminders", ["company_id"], unique=False)
    op.create_index("ix_reminders_status", "reminders", ["status"], unique=False)
    op.create_index(
        "uq_reminders_active_key",
        "reminders",
        ["schedule_id", "due_date", "channel"],
        unique=True,
        postgresql_where=ACTIVE_REMINDER_WHERE,
        sqlite_where=ACTIVE_REMINDER_WHERE,
    )


def downgrade() -> None:
    op.drop_index("uq_reminders_active_key", table_name="reminders")
    op.drop_index("ix_reminders_status", table_name="reminders")
    op.drop_index("ix_reminders_company_id", table_name="reminders")
    op.drop_table("reminders")
    op.drop_index("ix_service_events_vehicle_id", table_name="service_events")
    op.drop_index("ix_service_events_company_id", table_name="service_events")
    op.drop_table("service_events")
    op.drop_index("ix_maintenance_schedules_next_due_date", table_name="maintenance_schedules")
    op.drop_index("ix_maintenance_schedules_company_id", table_name="maintenance_schedules")
    op.drop_table("maintenance_schedules")
    op.drop_table("maintenance_templates")
    op.drop_index("ix_vehicles_company_id", table_name="vehicles")
    op.drop_table("vehicles")
