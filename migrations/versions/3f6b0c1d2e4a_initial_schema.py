"""initial schema: users, events, registrations, evidence history, newsletter, audit

Revision ID: 3f6b0c1d2e4a
Revises:
Create Date: 2026-02-02 10:14:08.512113

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '3f6b0c1d2e4a'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    bind = op.get_bind()
    insp = inspect(bind)
    existing_tables = set(insp.get_table_names())

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
            sa.Column("email", sa.String(length=320), nullable=False),
            sa.Column("password_hash", sa.String(length=255), nullable=False),
            sa.Column("first_name", sa.String(length=128), nullable=False),
            sa.Column("last_name", sa.String(length=128), nullable=False),
            sa.Column("phone_number", sa.String(length=32), nullable=False),
            sa.Column("gender", sa.String(length=32), nullable=True),
            sa.Column("role", sa.String(length=32), nullable=False, server_default="ordinary_user"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("deleted_at", sa.DateTime(timezone=False), nullable=True),
            sa.UniqueConstraint("phone_number", name="uq_users_phone_number"),
        )
        op.create_index("ix_users_email", "users", ["email"])

    if "events" not in existing_tables:
        op.create_table(
            "events",
            sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("start_date", sa.DateTime(timezone=False), nullable=False),
            sa.Column("end_date", sa.DateTime(timezone=False), nullable=False),
            sa.Column("location", sa.String(length=255), nullable=True),
            sa.Column("price", sa.Numeric(10, 2), nullable=False),
            sa.Column("max_attendees", sa.Integer(), nullable=True),
            sa.Column("current_attendees", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("image_url", sa.Text(), nullable=True),
            sa.Column("tags", sa.JSON(), nullable=True),
            sa.Column("featured", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        )
        op.create_index("ix_events_start_date", "events", ["start_date"])

    if "event_registrations" not in existing_tables:
        op.create_table(
            "event_registrations",
            sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
            sa.Column("registration_number", sa.String(length=32), nullable=False),
            sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("event_id", sa.String(length=36), sa.ForeignKey("events.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("payment_status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("registered_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("country", sa.String(length=128), nullable=True),
            sa.Column("organization", sa.String(length=255), nullable=True),
            sa.Column("position", sa.String(length=255), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("has_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("payment_evidence", sa.Text(), nullable=True),
            sa.Column("payment_method", sa.String(length=32), nullable=True),
            sa.Column("currency", sa.String(length=8), nullable=True),
            sa.Column("price_paid", sa.Numeric(10, 2), nullable=True),
            sa.Column("delegate_type", sa.String(length=32), nullable=True),
            sa.Column("dinner_gala_attendance", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("accommodation_package", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("victoria_falls_package", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("boat_cruise_package", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("group_size", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("group_payment_amount", sa.Numeric(10, 2), nullable=True),
            sa.Column("group_payment_currency", sa.String(length=8), nullable=True),
            sa.Column("organization_reference", sa.String(length=255), nullable=True),
            sa.Column("deleted_at", sa.DateTime(timezone=False), nullable=True),
            sa.UniqueConstraint("registration_number", name="uq_event_registrations_registration_number"),
        )
        op.create_index("ix_event_registrations_user_id", "event_registrations", ["user_id"])
        op.create_index("ix_event_registrations_event_id", "event_registrations", ["event_id"])

    if "evidence_history" not in existing_tables:
        op.create_table(
            "evidence_history",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column(
                "registration_id",
                sa.String(length=36),
                sa.ForeignKey("event_registrations.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("file_path", sa.Text(), nullable=False),
            sa.Column("uploaded_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("uploaded_by_user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        )
        op.create_index("ix_evidence_history_registration_id", "evidence_history", ["registration_id"])

    if "newsletter_subscriptions" not in existing_tables:
        op.create_table(
            "newsletter_subscriptions",
            sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
            sa.Column("email", sa.String(length=320), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=True),
            sa.Column("subscribed_at", sa.DateTime(timezone=False), nullable=False),
            sa.UniqueConstraint("email", name="uq_newsletter_subscriptions_email"),
        )

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("client_ip", sa.String(length=64), nullable=True),
            sa.Column("actor_user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("actor_user_email", sa.String(length=320), nullable=True),
            sa.Column("action", sa.String(length=128), nullable=False),
            sa.Column("entity_type", sa.String(length=128), nullable=True),
            sa.Column("entity_id", sa.String(length=128), nullable=True),
            sa.Column("reason", sa.String(length=512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
        )
        op.create_index("ix_audit_events_created_at", "audit_events", ["created_at"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_audit_events_created_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_table("newsletter_subscriptions")
    op.drop_index("ix_evidence_history_registration_id", table_name="evidence_history")
    op.drop_table("evidence_history")
    op.drop_index("ix_event_registrations_event_id", table_name="event_registrations")
    op.drop_index("ix_event_registrations_user_id", table_name="event_registrations")
    op.drop_table("event_registrations")
    op.drop_index("ix_events_start_date", table_name="events")
    op.drop_table("events")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
