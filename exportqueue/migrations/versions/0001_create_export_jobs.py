"""create export_jobs and export_job_actions tables

Revision ID: 0001_create_export_jobs
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '0001_create_export_jobs'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create export_jobs and export_job_actions tables"""

    op.create_table(
        'export_jobs',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('signature', sa.String(length=64), nullable=False),
        sa.Column('owner_id', sa.String(length=255), nullable=False),
        sa.Column('list_ref', sa.JSON(), nullable=False),
        sa.Column('columns', sa.JSON(), nullable=True),
        sa.Column('resolved_fields', sa.JSON(), nullable=True),
        sa.Column('separator', sa.String(length=1), nullable=False),
        sa.Column('include_header', sa.Boolean(), nullable=False),
        sa.Column('total_steps', sa.Integer(), nullable=False),
        sa.Column('steps_processed', sa.Integer(), nullable=False),
        sa.Column('bytes_written', sa.Integer(), nullable=False),
        sa.Column('status', sa.Enum('QUEUED', 'PROCESSING', 'FINISHED', 'REJECTED', name='exportstatus'), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('last_updated_at', sa.DateTime(), nullable=False),
        sa.Column('downloaded_at', sa.DateTime(), nullable=True),
        sa.Column('lease_token', sa.String(length=64), nullable=True),
        sa.Column('lease_expires_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),

        # Primary key
        sa.PrimaryKeyConstraint('id'),

        # Indexes for performance
        sa.Index('ix_export_jobs_signature', 'signature', unique=True),
        sa.Index('ix_export_jobs_owner_id', 'owner_id'),
        sa.Index('ix_export_jobs_status', 'status'),
    )

    op.create_table(
        'export_job_actions',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('job_id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(length=50), nullable=False),
        sa.Column('detail', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),

        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(
            ['job_id'], ['export_jobs.id'],
            name='fk_export_job_actions_job_id',
            ondelete='CASCADE',
        ),
        sa.Index('ix_export_job_actions_job_id', 'job_id'),
    )


def downgrade() -> None:
    """Drop export tables"""
    op.drop_table('export_job_actions')
    op.drop_table('export_jobs')

    # Drop custom enums
    if op.get_bind().dialect.name == "postgresql":
        op.execute("DROP TYPE IF EXISTS exportstatus")
