"""signing requests, signers and signing events

Revision ID: 0001_initial
Revises:
Create Date: 2026-03-02
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None

# enum columns store member names, as SQLModel maps them
request_status = sa.Enum(
    'DRAFT', 'SENT', 'PARTIALLY_SIGNED', 'SIGNED', 'EXPIRED', 'DECLINED', 'CANCELLED',
    name='signingrequeststatus',
)
signing_order = sa.Enum('PARALLEL', 'SEQUENTIAL', name='signingorder')
signer_status = sa.Enum('PENDING', 'SIGNED', 'DECLINED', 'EXPIRED', name='signerstatus')
signature_type = sa.Enum('DRAWN', 'TYPED', 'UPLOADED', name='signaturetype')
event_type = sa.Enum(
    'CREATED', 'SENT', 'VIEWED', 'SIGNED', 'DECLINED', 'EXPIRED', 'COMPLETED', 'REMINDED', 'CANCELLED',
    name='signingeventtype',
)


def upgrade() -> None:
    op.create_table(
        'signing_requests',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('owner_id', sa.String(length=128), nullable=False),
        sa.Column('document_name', sa.String(length=255), nullable=False),
        sa.Column('document_url', sa.String(), nullable=False),
        sa.Column('document_size', sa.Integer(), nullable=True),
        sa.Column('document_type', sa.String(length=128), nullable=True),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('status', request_status, nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('reminder_enabled', sa.Boolean(), nullable=False),
        sa.Column('reminder_days', sa.Integer(), nullable=False),
        sa.Column('last_reminder_at', sa.DateTime(), nullable=True),
        sa.Column('signing_order', signing_order, nullable=False),
        sa.Column('requires_all_signatures', sa.Boolean(), nullable=False),
        sa.Column('minimum_signatures', sa.Integer(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_signing_requests_id', 'signing_requests', ['id'])
    op.create_index('ix_signing_requests_owner_id', 'signing_requests', ['owner_id'])
    op.create_index('ix_signing_requests_status', 'signing_requests', ['status'])
    op.create_index('ix_signing_requests_expires_at', 'signing_requests', ['expires_at'])

    op.create_table(
        'signers',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('signing_request_id', sa.Uuid(), sa.ForeignKey('signing_requests.id'), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=320), nullable=False),
        sa.Column('role', sa.String(length=64), nullable=False),
        sa.Column('signing_order', sa.Integer(), nullable=False),
        sa.Column('status', signer_status, nullable=False),
        sa.Column('access_token', sa.String(length=128), nullable=False),
        sa.Column('accessed_at', sa.DateTime(), nullable=True),
        sa.Column('access_count', sa.Integer(), nullable=False),
        sa.Column('signature_data', sa.Text(), nullable=True),
        sa.Column('signature_type', signature_type, nullable=True),
        sa.Column('signed_at', sa.DateTime(), nullable=True),
        sa.Column('declined_at', sa.DateTime(), nullable=True),
        sa.Column('decline_reason', sa.Text(), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('user_agent', sa.String(), nullable=True),
    )
    op.create_index('ix_signers_id', 'signers', ['id'])
    op.create_index('ix_signers_signing_request_id', 'signers', ['signing_request_id'])
    op.create_index('ix_signers_access_token', 'signers', ['access_token'], unique=True)

    op.create_table(
        'signing_events',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('signing_request_id', sa.Uuid(), sa.ForeignKey('signing_requests.id'), nullable=False),
        sa.Column('signer_id', sa.Uuid(), sa.ForeignKey('signers.id'), nullable=True),
        sa.Column('event_type', event_type, nullable=False),
        sa.Column('event_data', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('user_agent', sa.String(), nullable=True),
        sa.Column('dedupe_key', sa.String(length=96), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('signing_request_id', 'dedupe_key', name='uq_signing_events_dedupe_key'),
    )
    op.create_index('ix_signing_events_signing_request_id', 'signing_events', ['signing_request_id'])
    op.create_index('ix_signing_events_signer_id', 'signing_events', ['signer_id'])
    op.create_index('ix_signing_events_event_type', 'signing_events', ['event_type'])


def downgrade() -> None:
    op.drop_table('signing_events')
    op.drop_table('signers')
    op.drop_table('signing_requests')
    bind = op.get_bind()
    for enum in (event_type, signature_type, signer_status, signing_order, request_status):
        enum.drop(bind, checkfirst=True)
