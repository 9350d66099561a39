"""Initial schema: events, drivers, rides, batches and safety tables.

Revision ID: 001
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(with_updated: bool = True) -> list[sa.Column]:
    columns = [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        )
    ]
    if with_updated:
        columns.append(
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                server_default=sa.func.now(),
            )
        )
    return columns


def upgrade() -> None:
    # ── events ────────────────────────────────────────────────────────
    op.create_table(
        "events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("event_name", sa.String(200), nullable=False),
        sa.Column("organization_name", sa.String(200), nullable=False),
        sa.Column("access_code", sa.String(6), unique=True, nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("admin_email", sa.String(255), nullable=True),
        sa.Column(
            "batch_mode_enabled",
            sa.Boolean,
            nullable=False,
            server_default=sa.false(),
        ),
        *_timestamps(),
    )
    op.create_index("idx_events_access_code", "events", ["access_code"])

    # ── drivers ───────────────────────────────────────────────────────
    op.create_table(
        "drivers",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "event_id",
            sa.Integer,
            sa.ForeignKey("events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("driver_name", sa.String(120), nullable=False),
        sa.Column("is_online", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "current_status",
            sa.Enum("offline", "available", "assigned", name="driver_status"),
            nullable=False,
            server_default="offline",
        ),
        sa.Column("current_lat", sa.Float, nullable=True),
        sa.Column("current_lng", sa.Float, nullable=True),
        sa.Column("last_location_update", sa.DateTime(timezone=True), nullable=True),
        sa.Column("max_capacity", sa.Integer, nullable=False, server_default="4"),
        sa.Column(
            "current_passenger_load", sa.Integer, nullable=False, server_default="0"
        ),
        *_timestamps(),
        sa.UniqueConstraint("event_id", "driver_name", name="uq_drivers_event_name"),
        sa.CheckConstraint(
            "current_passenger_load <= max_capacity", name="ck_drivers_load"
        ),
    )
    op.create_index("idx_drivers_event", "drivers", ["event_id"])
    op.create_index(
        "idx_drivers_available",
        "drivers",
        ["event_id", "is_online", "current_status"],
    )

    # ── ride_batches ──────────────────────────────────────────────────
    op.create_table(
        "ride_batches",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "event_id",
            sa.Integer,
            sa.ForeignKey("events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "driver_id",
            sa.Integer,
            sa.ForeignKey("drivers.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "status",
            sa.Enum(
                "pending", "in_progress", "completed", "cancelled", name="batch_status"
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("total_passengers", sa.Integer, nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("idx_ride_batches_event", "ride_batches", ["event_id"])
    op.create_index(
        "idx_ride_batches_driver_status", "ride_batches", ["driver_id", "status"]
    )

    # ── ride_requests ─────────────────────────────────────────────────
    op.create_table(
        "ride_requests",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "event_id",
            sa.Integer,
            sa.ForeignKey("events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("rider_name", sa.String(120), nullable=False),
        sa.Column("pickup_address", sa.Text, nullable=False),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("passenger_count", sa.Integer, nullable=False, server_default="1"),
        sa.Column(
            "status",
            sa.Enum(
                "waiting",
                "assigned",
                "arrived",
                "in_progress",
                "completed",
                "cancelled",
                "no_show",
                name="ride_status",
            ),
            nullable=False,
            server_default="waiting",
        ),
        sa.Column(
            "assigned_driver_id",
            sa.Integer,
            sa.ForeignKey("drivers.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "batch_id",
            sa.Integer,
            sa.ForeignKey("ride_batches.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("pickup_sequence_index", sa.Integer, nullable=True),
        sa.Column("estimated_wait_minutes", sa.Integer, nullable=True),
        sa.Column("driver_eta_minutes", sa.Integer, nullable=True),
        sa.Column("arrival_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completion_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "arrival_deadline_timestamp", sa.DateTime(timezone=True), nullable=True
        ),
        sa.Column(
            "rider_confirmed", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column("rider_identifier_hash", sa.String(64), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "passenger_count >= 1 AND passenger_count <= 4",
            name="ck_ride_requests_passengers",
        ),
    )
    op.create_index(
        "idx_ride_requests_event_status",
        "ride_requests",
        ["event_id", "status", "created_at"],
    )
    op.create_index("idx_ride_requests_driver", "ride_requests", ["assigned_driver_id"])
    op.create_index("idx_ride_requests_batch", "ride_requests", ["batch_id"])
    op.create_index(
        "idx_ride_requests_deadline",
        "ride_requests",
        ["status", "arrival_deadline_timestamp"],
    )

    # ── ride_batch_items ──────────────────────────────────────────────
    op.create_table(
        "ride_batch_items",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "batch_id",
            sa.Integer,
            sa.ForeignKey("ride_batches.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "ride_request_id",
            sa.Integer,
            sa.ForeignKey("ride_requests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("pickup_order_index", sa.Integer, nullable=False),
        sa.Column("estimated_arrival_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("picked_up", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("picked_up_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("batch_id", "ride_request_id", name="uq_batch_items_ride"),
        sa.UniqueConstraint(
            "batch_id", "pickup_order_index", name="uq_batch_items_order"
        ),
    )
    op.create_index(
        "idx_ride_batch_items_ride", "ride_batch_items", ["ride_request_id"]
    )

    # ── rider_penalties ───────────────────────────────────────────────
    op.create_table(
        "rider_penalties",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "event_id",
            sa.Integer,
            sa.ForeignKey("events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("rider_identifier_hash", sa.String(64), nullable=False),
        sa.Column("no_show_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("cooldown_until", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "event_id", "rider_identifier_hash", name="uq_rider_penalties_rider"
        ),
    )

    # ── emergency_events ──────────────────────────────────────────────
    op.create_table(
        "emergency_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "event_id",
            sa.Integer,
            sa.ForeignKey("events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "ride_request_id",
            sa.Integer,
            sa.ForeignKey("ride_requests.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "triggered_by",
            sa.Enum("rider", "driver", name="emergency_trigger"),
            nullable=False,
        ),
        sa.Column("triggered_by_name", sa.String(120), nullable=False),
        sa.Column(
            "timestamp",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("latitude", sa.Float, nullable=True),
        sa.Column("longitude", sa.Float, nullable=True),
        sa.Column("resolved", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(120), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        *_timestamps(with_updated=False),
    )
    op.create_index(
        "idx_emergency_events_event_resolved",
        "emergency_events",
        ["event_id", "resolved"],
    )

    # ── rider_consents ────────────────────────────────────────────────
    op.create_table(
        "rider_consents",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "event_id",
            sa.Integer,
            sa.ForeignKey("events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("rider_identifier_hash", sa.String(64), nullable=False),
        sa.Column(
            "consent_timestamp",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("ip_address", sa.String(64), nullable=True),
        *_timestamps(with_updated=False),
        sa.UniqueConstraint(
            "event_id", "rider_identifier_hash", name="uq_rider_consents_rider"
        ),
    )


def downgrade() -> None:
    op.drop_table("rider_consents")
    op.drop_table("emergency_events")
    op.drop_table("rider_penalties")
    op.drop_table("ride_batch_items")
    op.drop_table("ride_requests")
    op.drop_table("ride_batches")
    op.drop_table("drivers")
    op.drop_table("events")
    op.execute("DROP TYPE IF EXISTS emergency_trigger")
    op.execute("DROP TYPE IF EXISTS batch_status")
    op.execute("DROP TYPE IF EXISTS ride_status")
    op.execute("DROP TYPE IF EXISTS driver_status")
