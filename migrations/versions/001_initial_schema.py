"""Initial schema: drivers and bookings.

Revision ID: 001
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None

DRIVER_STATUSES = ("OFFLINE", "AVAILABLE", "RESERVED", "ON_TRIP")
BOOKING_STATES = (
    "PENDING",
    "OFFERED",
    "ACCEPTED",
    "REJECTED",
    "EXPIRED",
    "CONFIRMED",
    "CANCELLED",
    "UNMATCHED",
)


def upgrade() -> None:
    # ── drivers ───────────────────────────────────────────────────────
    op.create_table(
        "drivers",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("latitude", sa.Float, nullable=True),
        sa.Column("longitude", sa.Float, nullable=True),
        sa.Column(
            "status",
            sa.Enum(*DRIVER_STATUSES, name="driverstatus"),
            default="OFFLINE",
            nullable=False,
        ),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=True),
        sa.Column("capabilities", sa.JSON, nullable=False),
        sa.Column("is_active", sa.Boolean, default=True, nullable=False),
        sa.Column("current_booking_id", sa.String(64), nullable=True),
        sa.Column("reserved_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_drivers_status", "drivers", ["status"])

    # ── bookings ──────────────────────────────────────────────────────
    op.create_table(
        "bookings",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("dropoff_lat", sa.Float, nullable=True),
        sa.Column("dropoff_lng", sa.Float, nullable=True),
        sa.Column(
            "state",
            sa.Enum(*BOOKING_STATES, name="bookingstate"),
            default="PENDING",
            nullable=False,
        ),
        sa.Column("assigned_driver_id", sa.String(64), nullable=True),
        sa.Column("attempts", sa.Integer, default=0, nullable=False),
        sa.Column("offers_made", sa.Integer, default=0, nullable=False),
        sa.Column("required_capabilities", sa.JSON, nullable=False),
        sa.Column("declined_driver_ids", sa.JSON, nullable=False),
        sa.Column("idempotency_key", sa.String(64), unique=True, nullable=True),
        sa.Column("reason", sa.String(255), nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_bookings_state", "bookings", ["state"])
    op.create_index(
        "idx_bookings_customer", "bookings", ["customer_id", "requested_at"]
    )


def downgrade() -> None:
    op.drop_table("bookings")
    op.drop_table("drivers")
    op.execute("DROP TYPE IF EXISTS bookingstate")
    op.execute("DROP TYPE IF EXISTS driverstatus")
