"""booking core: listings, availability windows, bookings, reviews

Revision ID: 0001_booking_core
Revises:
Create Date: 2026-10-17 09:00:00

Notes:
- bookings.status: pending | confirmed | completed | cancelled
- PostgreSQL only: btree_gist exclusion constraint so two active (pending/confirmed)
  bookings of one listing can never hold overlapping [start_time, end_time) ranges.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_booking_core"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _is_postgres() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def upgrade() -> None:
    op.create_table(
        "listings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("price_per_hour_cents", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("rating", sa.Float(), nullable=True),
        sa.Column("review_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("price_per_hour_cents >= 0", name="ck_listings_price_non_negative"),
    )
    op.create_index("ix_listings_id", "listings", ["id"])
    op.create_index("ix_listings_owner_id", "listings", ["owner_id"])

    op.create_table(
        "availability_windows",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("listing_id", sa.Integer(), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("start_minute", sa.Integer(), nullable=False),
        sa.Column("end_minute", sa.Integer(), nullable=False),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.CheckConstraint("start_minute >= 0 AND start_minute < 1440", name="ck_availability_start_minute"),
        sa.CheckConstraint("end_minute > 0 AND end_minute <= 1440", name="ck_availability_end_minute"),
        sa.CheckConstraint("start_minute < end_minute", name="ck_availability_window_order"),
    )
    op.create_index("ix_availability_windows_id", "availability_windows", ["id"])
    op.create_index("ix_availability_listing_date", "availability_windows", ["listing_id", "date"])

    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("listing_id", sa.Integer(), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("renter_id", sa.String(length=255), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_price_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default=sa.text("'usd'")),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("payment_intent_id", sa.String(length=255), nullable=True),
        sa.Column("payment_reference", sa.String(length=255), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.String(length=255), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("start_time < end_time", name="ck_bookings_interval_order"),
        sa.CheckConstraint("total_price_cents >= 0", name="ck_bookings_price_non_negative"),
    )
    op.create_index("ix_bookings_id", "bookings", ["id"])
    op.create_index("ix_bookings_listing_id", "bookings", ["listing_id"])
    op.create_index("ix_bookings_renter_id", "bookings", ["renter_id"])
    op.create_index("ix_bookings_payment_intent_id", "bookings", ["payment_intent_id"])
    op.create_index("ix_bookings_listing_status_start", "bookings", ["listing_id", "status", "start_time"])
    op.create_index("ix_bookings_status_end", "bookings", ["status", "end_time"])
    op.create_index("ix_bookings_status_expires_at", "bookings", ["status", "expires_at"])

    if _is_postgres():
        # Range exclusion over active bookings; a violating insert raises IntegrityError (-> SlotConflict)
        op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")
        op.execute(
            """
            ALTER TABLE bookings
            ADD CONSTRAINT ex_bookings_no_active_overlap
            EXCLUDE USING gist (
                listing_id WITH =,
                tstzrange(start_time, end_time, '[)') WITH &&
            )
            WHERE (status IN ('pending', 'confirmed'))
            """
        )

    op.create_table(
        "reviews",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("listing_id", sa.Integer(), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("booking_id", name="uq_reviews_booking_id"),
        sa.CheckConstraint("rating >= 1 AND rating <= 5", name="ck_reviews_rating_range"),
    )
    op.create_index("ix_reviews_id", "reviews", ["id"])
    op.create_index("ix_reviews_listing_id", "reviews", ["listing_id"])
    op.create_index("ix_reviews_user_id", "reviews", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_reviews_user_id", table_name="reviews")
    op.drop_index("ix_reviews_listing_id", table_name="reviews")
    op.drop_index("ix_reviews_id", table_name="reviews")
    op.drop_table("reviews")

    if _is_postgres():
        op.execute("ALTER TABLE bookings DROP CONSTRAINT IF EXISTS ex_bookings_no_active_overlap")

    op.drop_index("ix_bookings_status_expires_at", table_name="bookings")
    op.drop_index("ix_bookings_status_end", table_name="bookings")
    op.drop_index("ix_bookings_listing_status_start", table_name="bookings")
    op.drop_index("ix_bookings_payment_intent_id", table_name="bookings")
    op.drop_index("ix_bookings_renter_id", table_name="bookings")
    op.drop_index("ix_bookings_listing_id", table_name="bookings")
    op.drop_index("ix_bookings_id", table_name="bookings")
    op.drop_table("bookings")

    op.drop_index("ix_availability_listing_date", table_name="availability_windows")
    op.drop_index("ix_availability_windows_id", table_name="availability_windows")
    op.drop_table("availability_windows")

    op.drop_index("ix_listings_owner_id", table_name="listings")
    op.drop_index("ix_listings_id", table_name="listings")
    op.drop_table("listings")
