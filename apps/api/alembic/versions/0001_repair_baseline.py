"""Baseline migration - users, repair tickets and LINE OA tables

Revision ID: 0001_repair_baseline
Revises:
Create Date: 2026-10-19

Enum-valued columns are stored as VARCHAR (non-native enums).
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_repair_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    """Create repair desk tables."""

    # ==========================================================================
    # Users
    # ==========================================================================
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('role', sa.String(32), nullable=False),
        sa.Column('department', sa.String(255), nullable=True),
        sa.Column('phone_number', sa.String(50), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    # ==========================================================================
    # Repair tickets
    # ==========================================================================
    op.create_table(
        'repair_tickets',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('ticket_code', sa.String(32), nullable=False, unique=True),
        sa.Column('linking_code', sa.String(48), nullable=True, unique=True),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('urgency', sa.String(32), nullable=False),
        sa.Column('reporter_name', sa.String(255), nullable=False),
        sa.Column('reporter_department', sa.String(255), nullable=True),
        sa.Column('reporter_phone', sa.String(50), nullable=True),
        sa.Column('reporter_line_id', sa.String(255), nullable=True),
        sa.Column('reporter_line_user_id', sa.String(64), nullable=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('problem_category', sa.String(32), nullable=False),
        sa.Column('problem_title', sa.String(255), nullable=False),
        sa.Column('problem_description', sa.Text(), nullable=True),
        sa.Column('location', sa.String(255), nullable=True),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('estimated_completion_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('message_to_reporter', sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index('idx_repair_tickets_status', 'repair_tickets', ['status'])
    op.create_index('idx_repair_tickets_user', 'repair_tickets', ['user_id'])
    op.create_index('idx_repair_tickets_reporter_line', 'repair_tickets', ['reporter_line_user_id'])

    op.create_table(
        'repair_ticket_assignees',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('repair_ticket_id', sa.Integer(), sa.ForeignKey('repair_tickets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('assigned_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('repair_ticket_id', 'user_id', name='uq_repair_assignee'),
    )

    op.create_table(
        'repair_assignment_history',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('repair_ticket_id', sa.Integer(), sa.ForeignKey('repair_tickets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('action', sa.String(32), nullable=False),
        sa.Column('assigner_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('assignee_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('from_status', sa.String(32), nullable=True),
        sa.Column('to_status', sa.String(32), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('idx_repair_history_ticket', 'repair_assignment_history', ['repair_ticket_id', 'created_at'])

    op.create_table(
        'repair_attachments',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('repair_ticket_id', sa.Integer(), sa.ForeignKey('repair_tickets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('kind', sa.String(32), nullable=False),
        sa.Column('filename', sa.String(255), nullable=False),
        sa.Column('file_url', sa.Text(), nullable=False),
        sa.Column('storage_key', sa.String(512), nullable=False),
        sa.Column('file_size', sa.Integer(), nullable=False),
        sa.Column('mime_type', sa.String(100), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'repair_ticket_counters',
        sa.Column('date_key', sa.String(32), primary_key=True),
        sa.Column('current_value', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # ==========================================================================
    # LINE OA
    # ==========================================================================
    op.create_table(
        'line_oa_links',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('line_user_id', sa.String(64), nullable=True),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('verification_token', sa.String(128), nullable=True),
        sa.Column('verification_expiry', sa.DateTime(timezone=True), nullable=True),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('picture_url', sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index('idx_line_oa_links_line_user', 'line_oa_links', ['line_user_id'])

    op.create_table(
        'line_notifications',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('line_user_id', sa.String(64), nullable=False),
        sa.Column('type', sa.String(32), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('idx_line_notifications_line_user', 'line_notifications', ['line_user_id', 'created_at'])


def downgrade() -> None:
    """Drop repair desk tables."""
    op.drop_table('line_notifications')
    op.drop_table('line_oa_links')
    op.drop_table('repair_ticket_counters')
    op.drop_table('repair_attachments')
    op.drop_table('repair_assignment_history')
    op.drop_table('repair_ticket_assignees')
    op.drop_table('repair_tickets')
    op.drop_table('users')
