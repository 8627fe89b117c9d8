"""Add batches, images and step_checkpoints tables

Revision ID: 001_framing_tables
Revises:
Create Date: 2026-10-19

- batches: user-owned groups of uploaded photos
- images: per-photo status, result location and error
- step_checkpoints: finished pipeline steps keyed by (run_id, step)
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '001_framing_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'batches',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('owner_id', sa.String(), nullable=False, index=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )

    op.create_table(
        'images',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('batch_id', sa.String(), sa.ForeignKey('batches.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('original_url', sa.String(), nullable=False),
        sa.Column('original_filename', sa.String(), nullable=True),
        sa.Column('crop_region', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='pending', index=True),
        sa.Column('processed_url', sa.String(), nullable=True),
        sa.Column('processed_storage_key', sa.String(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_step', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )

    op.create_table(
        'step_checkpoints',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('run_id', sa.String(), nullable=False, index=True),
        sa.Column('image_id', sa.String(), nullable=False, index=True),
        sa.Column('step', sa.String(), nullable=False),
        sa.Column('result', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.UniqueConstraint('run_id', 'step', name='uq_checkpoint_run_step'),
    )


def downgrade() -> None:
    op.drop_table('step_checkpoints')
    op.drop_table('images')
    op.drop_table('batches')
