"""Add jobs.heartbeat_at for worker leases

Revision ID: 0002_job_heartbeat
Revises: 0001_initial_schema
Create Date: 2026-10-19

A running job whose heartbeat is older than JOB_LEASE_SECONDS can be
claimed again, so a crashed worker or inline send no longer blocks a
campaign forever.
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0002_job_heartbeat'
down_revision = '0001_initial_schema'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column('jobs', sa.Column('heartbeat_at', sa.DateTime(timezone=True), nullable=True))
    # Jobs already running get a fresh lease rather than an instant reclaim
    op.execute("UPDATE jobs SET heartbeat_at = CURRENT_TIMESTAMP WHERE status = 'running'")


def downgrade() -> None:
    op.drop_column('jobs', 'heartbeat_at')
