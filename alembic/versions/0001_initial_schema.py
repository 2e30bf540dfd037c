"""Initial schema - contacts, events, tickets, campaigns, email log, jobs

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19

Written with op.create_table so it runs on both Postgres and SQLite (dev).
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_initial_schema'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    """Create all tables."""

    # ==========================================================================
    # Contacts
    # ==========================================================================
    op.create_table(
        'contacts',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('email', sa.String(320), nullable=False, unique=True),
        sa.Column('first_name', sa.String(100), nullable=True),
        sa.Column('last_name', sa.String(100), nullable=True),
        sa.Column('phone', sa.String(50), nullable=True),
        sa.Column('unsubscribed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('engagement_score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tags', JSONType, nullable=False),
        sa.Column('metadata', JSONType, nullable=False),
        sa.Column('mailchimp_id', sa.String(100), nullable=True),
        sa.Column('nationbuilder_id', sa.String(100), nullable=True),
        *_timestamps(),
    )
    op.create_index('idx_contacts_unsubscribed', 'contacts', ['unsubscribed', 'id'])

    # ==========================================================================
    # Events + attendance (tickets)
    # ==========================================================================
    op.create_table(
        'events',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('slug', sa.String(120), nullable=False, unique=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('event_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('location', sa.String(300), nullable=True),
        sa.Column('capacity', sa.Integer(), nullable=True),
        sa.Column('registration_open', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('metadata', JSONType, nullable=False),
        *_timestamps(),
    )

    op.create_table(
        'attendance',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('contact_id', sa.Uuid(), sa.ForeignKey('contacts.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('event_id', sa.Uuid(), sa.ForeignKey('events.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='registered'),
        sa.Column('qr_code_data', sa.String(128), nullable=False, unique=True),
        sa.Column('registered_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('checked_in_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('checked_in_by', sa.String(100), nullable=True),
        sa.Column('metadata', JSONType, nullable=False),
    )
    op.create_index(
        'uq_attendance_active_contact_event',
        'attendance',
        ['contact_id', 'event_id'],
        unique=True,
        postgresql_where=sa.text("status <> 'cancelled'"),
        sqlite_where=sa.text("status <> 'cancelled'"),
    )
    op.create_index('idx_attendance_event_status', 'attendance', ['event_id', 'status'])

    # ==========================================================================
    # Campaigns + delivery log
    # ==========================================================================
    op.create_table(
        'email_campaigns',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('subject', sa.String(300), nullable=False),
        sa.Column('body_html', sa.Text(), nullable=False),
        sa.Column('body_text', sa.Text(), nullable=True),
        sa.Column('from_email', sa.String(320), nullable=True),
        sa.Column('from_name', sa.String(200), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='draft'),
        sa.Column('deliverability_test_results', JSONType, nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('total_sent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_opens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('unique_opens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_clicks', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('unique_clicks', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_bounces', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_complaints', sa.Integer(), nullable=False, server_default='0'),
        *_timestamps(),
    )
    op.create_index('idx_email_campaigns_status', 'email_campaigns', ['status', 'created_at'])

    op.create_table(
        'email_events',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('campaign_id', sa.Uuid(), sa.ForeignKey('email_campaigns.id', ondelete='SET NULL'), nullable=True),
        sa.Column('contact_id', sa.Uuid(), sa.ForeignKey('contacts.id', ondelete='SET NULL'), nullable=True),
        sa.Column('event_type', sa.String(20), nullable=False),
        sa.Column('is_unique', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('dedup_key', sa.String(64), nullable=True, unique=True),
        sa.Column('event_data', JSONType, nullable=False),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(
        'uq_email_events_first_occurrence',
        'email_events',
        ['campaign_id', 'contact_id', 'event_type'],
        unique=True,
        postgresql_where=sa.text('is_unique'),
        sqlite_where=sa.text('is_unique'),
    )
    op.create_index('idx_email_events_campaign_type', 'email_events', ['campaign_id', 'event_type'])
    op.create_index('idx_email_events_contact_type', 'email_events', ['contact_id', 'event_type'])

    op.create_table(
        'email_link_clicks',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('campaign_id', sa.Uuid(), sa.ForeignKey('email_campaigns.id', ondelete='CASCADE'), nullable=False),
        sa.Column('contact_id', sa.Uuid(), sa.ForeignKey('contacts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('link_url', sa.Text(), nullable=False),
        sa.Column('clicked_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_link_clicks_campaign', 'email_link_clicks', ['campaign_id', 'link_url'])

    # ==========================================================================
    # Jobs + integration log
    # ==========================================================================
    op.create_table(
        'jobs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('job_type', sa.String(50), nullable=False),
        sa.Column('payload', JSONType, nullable=False),
        sa.Column('run_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('idempotency_key', sa.String(255), nullable=True),
    )
    op.create_index('idx_jobs_pending', 'jobs', ['status', 'run_at'])
    op.create_index(
        'uq_job_idempotency',
        'jobs',
        ['idempotency_key'],
        unique=True,
        postgresql_where=sa.text('idempotency_key IS NOT NULL'),
        sqlite_where=sa.text('idempotency_key IS NOT NULL'),
    )

    op.create_table(
        'sync_logs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('service', sa.String(50), nullable=False),
        sa.Column('operation', sa.String(100), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('records_affected', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    """Drop all tables (reverse dependency order)."""
    op.drop_table('sync_logs')
    op.drop_index('uq_job_idempotency', table_name='jobs')
    op.drop_index('idx_jobs_pending', table_name='jobs')
    op.drop_table('jobs')
    op.drop_table('email_link_clicks')
    op.drop_table('email_events')
    op.drop_table('email_campaigns')
    op.drop_table('attendance')
    op.drop_table('events')
    op.drop_table('contacts')
