"""Initial schema - users, seats, reservations, sequence counters

Revision ID: 001_initial_schema
Revises: 
Create Date: 2026-10-18

Safety Notes:
- All operations use IF NOT EXISTS so databases created by create_tables()
  can be stamped without failing
- Occupancy is never stored on seats; it is derived from reservations
"""
from typing import Sequence, Union
from alembic import op
from sqlalchemy import text

# revision identifiers
revision: str = '001_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the reservation engine tables."""

    op.execute(text("""
        CREATE TABLE IF NOT EXISTS users (
            id VARCHAR(36) PRIMARY KEY,
            email VARCHAR(255) NOT NULL UNIQUE,
            full_name VARCHAR(150) NOT NULL DEFAULT '',
            role VARCHAR(20) NOT NULL DEFAULT 'member',
            is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
            is_draft BOOLEAN NOT NULL DEFAULT FALSE,
            has_membership_id BOOLEAN NOT NULL DEFAULT FALSE,
            membership_id VARCHAR(32) UNIQUE,
            registration_period VARCHAR(6),
            registration_number INTEGER,
            membership_id_issued_at TIMESTAMP,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """))

    # One registration number per period, ever
    op.execute(text("""
        CREATE UNIQUE INDEX IF NOT EXISTS ix_user_registration_period_number
        ON users(registration_period, registration_number)
    """))

    op.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_user_draft_created
        ON users(is_draft, created_at)
    """))

    op.execute(text("""
        CREATE TABLE IF NOT EXISTS seats (
            id VARCHAR(36) PRIMARY KEY,
            label VARCHAR(10) NOT NULL UNIQUE,
            row VARCHAR(5) NOT NULL,
            "column" INTEGER NOT NULL,
            seat_type VARCHAR(20) NOT NULL DEFAULT 'Regular',
            available_for TEXT NOT NULL DEFAULT '',
            is_active BOOLEAN NOT NULL DEFAULT TRUE,
            is_maintenance BOOLEAN NOT NULL DEFAULT FALSE,
            maintenance_notes TEXT,
            total_allocations INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """))

    op.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_seat_row_column
        ON seats(row, "column")
    """))

    op.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_seat_type_active
        ON seats(seat_type, is_active)
    """))

    op.execute(text("""
        CREATE TABLE IF NOT EXISTS reservations (
            id VARCHAR(36) PRIMARY KEY,
            user_id VARCHAR(36) NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            resource_type VARCHAR(50) NOT NULL,
            time_slot VARCHAR(20) NOT NULL,
            duration_code VARCHAR(20) NOT NULL,
            start_date DATE NOT NULL,
            end_date DATE NOT NULL,
            seat_label VARCHAR(10),
            payment_status VARCHAR(20) NOT NULL DEFAULT 'pending',
            payment_method VARCHAR(20) NOT NULL DEFAULT 'upi',
            payment_reference VARCHAR(255),
            paid_at TIMESTAMP,
            lifecycle_status VARCHAR(20) NOT NULL DEFAULT 'not_yet_active',
            amount NUMERIC(10, 2) DEFAULT 0,
            admin_note TEXT,
            cash_confirmed_at TIMESTAMP,
            cash_confirmed_by_id VARCHAR(36),
            cancelled_at TIMESTAMP,
            cancelled_by_id VARCHAR(36),
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """))

    op.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_reservations_user_id
        ON reservations(user_id)
    """))

    # Conflict scans filter on (tier, slot) and the date range
    op.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_reservation_scope_dates
        ON reservations(resource_type, time_slot, start_date, end_date)
    """))

    op.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_reservation_seat_scope
        ON reservations(resource_type, seat_label, time_slot)
    """))

    # Sweeper scans
    op.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_reservation_payment_created
        ON reservations(payment_status, created_at)
    """))

    op.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_reservation_lifecycle
        ON reservations(lifecycle_status, end_date)
    """))

    op.execute(text("""
        CREATE TABLE IF NOT EXISTS sequence_counters (
            period_key VARCHAR(6) PRIMARY KEY,
            value INTEGER NOT NULL DEFAULT 0,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """))


def downgrade() -> None:
    """Drop the reservation engine tables."""
    op.execute(text("DROP TABLE IF EXISTS sequence_counters"))
    op.execute(text("DROP TABLE IF EXISTS reservations"))
    op.execute(text("DROP TABLE IF EXISTS seats"))
    op.execute(text("DROP TABLE IF EXISTS users"))
