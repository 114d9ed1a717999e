"""Initial payments schema.

Revision ID: 0001
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

_DEPOSIT_STATUSES = (
    "NONE",
    "PENDING",
    "CARD_SAVED",
    "AUTHORIZED",
    "CAPTURED",
    "RELEASED",
    "FAILED",
)
_JSONB = postgresql.JSONB(astext_type=sa.Text()).with_variant(sa.JSON(), "sqlite")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    deposit_status = sa.Enum(*_DEPOSIT_STATUSES, name="depositstatus")
    # Created with the reservations table; later tables only reference it.
    deposit_status_ref = sa.Enum(*_DEPOSIT_STATUSES, name="depositstatus").with_variant(
        postgresql.ENUM(*_DEPOSIT_STATUSES, name="depositstatus", create_type=False),
        "postgresql",
    )

    op.create_table(
        "stores",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=120), nullable=False, unique=True),
        sa.Column("email", sa.String(length=255)),
        sa.Column("country", sa.String(length=2)),
        sa.Column("currency", sa.String(length=3)),
        sa.Column("settings", sa.JSON()),
        sa.Column("stripe_account_id", sa.String(length=255), unique=True),
        sa.Column("charges_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("payouts_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "details_submitted", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_timestamps(),
    )

    op.create_table(
        "customers",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column(
            "store_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("stores.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("first_name", sa.String(length=120), nullable=False),
        sa.Column("last_name", sa.String(length=120), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=40)),
        sa.Column("stripe_customer_ref", sa.String(length=255)),
        *_timestamps(),
    )

    op.create_table(
        "reservations",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column(
            "store_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("stores.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "customer_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("customers.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("number", sa.String(length=32), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "PENDING",
                "CONFIRMED",
                "ONGOING",
                "COMPLETED",
                "CANCELLED",
                "REJECTED",
                name="reservationstatus",
            ),
            nullable=False,
        ),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("currency", sa.String(length=3)),
        sa.Column("subtotal_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("deposit_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("tax_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("deposit_status", deposit_status, nullable=False),
        sa.Column("deposit_authorization_expires_at", sa.DateTime(timezone=True)),
        sa.Column("deposit_intent_ref", sa.String(length=255)),
        sa.Column("deposit_authorized_amount", sa.Numeric(12, 2)),
        sa.Column("saved_payment_method_ref", sa.String(length=255)),
        sa.Column("provider_customer_ref", sa.String(length=255)),
        sa.Column("picked_up_at", sa.DateTime(timezone=True)),
        sa.Column("returned_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("rejection_reason", sa.String(length=1024)),
        *_timestamps(),
        sa.UniqueConstraint("store_id", "number", name="ux_reservations_store_number"),
    )
    op.create_index(
        "ix_reservations_deposit_intent_ref", "reservations", ["deposit_intent_ref"]
    )

    op.create_table(
        "deposit_events",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column(
            "reservation_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("reservations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column(
            "kind",
            sa.Enum(
                "REQUESTED",
                "CARD_SAVED",
                "AUTHORIZED",
                "CAPTURED",
                "RELEASED",
                "FAILED",
                name="depositeventkind",
            ),
            nullable=False,
        ),
        sa.Column("from_status", deposit_status_ref, nullable=False),
        sa.Column("to_status", deposit_status_ref, nullable=False),
        sa.Column("applied", sa.Boolean(), nullable=False),
        sa.Column("reason", sa.String(length=255)),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_deposit_events_reservation_id", "deposit_events", ["reservation_id"]
    )
    op.create_index(
        "ux_deposit_events_reservation_applied_event",
        "deposit_events",
        ["reservation_id", "event_id"],
        unique=True,
        sqlite_where=sa.text("applied"),
        postgresql_where=sa.text("applied"),
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column(
            "reservation_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("reservations.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "type",
            sa.Enum("RENTAL", "DEPOSIT", "DEPOSIT_RETURN", "DAMAGE", name="paymenttype"),
            nullable=False,
        ),
        sa.Column(
            "method",
            sa.Enum(
                "GATEWAY", "CASH", "CARD", "TRANSFER", "CHECK", "OTHER", name="paymentmethod"
            ),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum("PENDING", "COMPLETED", "FAILED", "REFUNDED", name="paymentstatus"),
            nullable=False,
        ),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("external_reference", sa.String(length=255)),
        sa.Column("provider_intent_ref", sa.String(length=255)),
        sa.Column("provider_charge_ref", sa.String(length=255)),
        sa.Column("notes", sa.Text()),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_payments_reservation_id", "payments", ["reservation_id"])
    op.create_index("ix_payments_provider_intent_ref", "payments", ["provider_intent_ref"])
    op.create_index("ix_payments_provider_charge_ref", "payments", ["provider_charge_ref"])
    op.create_index(
        "ux_payments_external_reference",
        "payments",
        ["external_reference"],
        unique=True,
        sqlite_where=sa.text("external_reference IS NOT NULL"),
        postgresql_where=sa.text("external_reference IS NOT NULL"),
    )

    op.create_table(
        "provider_events",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("provider_event_id", sa.String(length=255), nullable=False, unique=True),
        sa.Column("event_type", sa.String(length=120), nullable=False),
        sa.Column("account_ref", sa.String(length=255)),
        sa.Column(
            "status",
            sa.Enum("RECEIVED", "PROCESSED", "IGNORED", "DROPPED", name="providereventstatus"),
            nullable=False,
        ),
        sa.Column(
            "received_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("raw", _JSONB, nullable=False),
    )

    op.create_table(
        "reservation_activity",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column(
            "reservation_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("reservations.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "store_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("stores.id", ondelete="SET NULL"),
        ),
        sa.Column("activity_type", sa.String(length=120), nullable=False),
        sa.Column("description", sa.String(length=1024)),
        sa.Column("payload", sa.JSON()),
        sa.Column("actor", sa.String(length=120)),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_reservation_activity_reservation_id",
        "reservation_activity",
        ["reservation_id"],
    )


def downgrade() -> None:
    op.drop_table("reservation_activity")
    op.drop_table("provider_events")
    op.drop_table("payments")
    op.drop_table("deposit_events")
    op.drop_table("reservations")
    op.drop_table("customers")
    op.drop_table("stores")
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for name in (
            "providereventstatus",
            "paymentstatus",
            "paymentmethod",
            "paymenttype",
            "depositeventkind",
            "depositstatus",
            "reservationstatus",
        ):
            sa.Enum(name=name).drop(bind, checkfirst=True)
