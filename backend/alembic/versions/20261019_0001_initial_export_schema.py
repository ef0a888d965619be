"""Create forms, form_versions, submissions and export_jobs

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        'forms',
        sa.Column('id', postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('enable_status_updates', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('created_by', sa.String(255), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'form_versions',
        sa.Column('id', postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column('form_id', postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('snapshot_name', sa.String(255), nullable=False),
        sa.Column('schema', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default='{}'),
        sa.Column('created_by', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['form_id'], ['forms.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('form_id', 'version', name='uq_form_versions_form_version'),
    )
    op.create_index('ix_form_versions_form_id', 'form_versions', ['form_id'])
    op.create_index('ix_form_versions_form_version_desc', 'form_versions', ['form_id', 'version'])

    op.create_table(
        'submissions',
        sa.Column('id', postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column('form_id', postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column('form_version_id', postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('submitter', sa.String(255), nullable=True),
        sa.Column('status', sa.String(32), nullable=False, server_default='draft'),
        sa.Column('confirmation_id', sa.String(32), nullable=True),
        sa.Column('data', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default='{}'),
        sa.Column('deleted', sa.Boolean(), nullable=False, server_default='false'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['form_id'], ['forms.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['form_version_id'], ['form_versions.id'], ondelete='RESTRICT'),
        sa.UniqueConstraint('form_id', 'confirmation_id', name='uq_submissions_form_confirmation'),
    )
    op.create_index('ix_submissions_form_id', 'submissions', ['form_id'])
    op.create_index('ix_submissions_form_version_id', 'submissions', ['form_version_id'])
    op.create_index('ix_submissions_export_order', 'submissions', ['form_id', 'version', 'created_at', 'id'])

    op.create_table(
        'export_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column('requester_id', sa.String(255), nullable=False),
        sa.Column('form_id', postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('format', sa.String(16), nullable=False),
        sa.Column('filters', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default='{}'),
        sa.Column('include_metadata', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('template', sa.String(32), nullable=True),
        sa.Column('phase', sa.String(32), nullable=False, server_default='queued'),
        sa.Column('rows_processed', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_estimate', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('cancel_requested', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('file_path', sa.String(2048), nullable=True),
        sa.Column('file_name', sa.String(512), nullable=True),
        sa.Column('media_type', sa.String(128), nullable=True),
        sa.Column('file_bytes', sa.BigInteger(), nullable=True),
        sa.Column('file_sha256', sa.String(64), nullable=True),
        sa.Column('warnings', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default='[]'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('retrieved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.String(2000), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_export_jobs_requester_id', 'export_jobs', ['requester_id'])
    op.create_index('ix_export_jobs_form_id', 'export_jobs', ['form_id'])
    op.create_index('ix_export_jobs_expires_at', 'export_jobs', ['expires_at'])
    op.create_index('ix_export_jobs_requester_phase', 'export_jobs', ['requester_id', 'phase'])


def downgrade() -> None:
    op.drop_table('export_jobs')
    op.drop_table('submissions')
    op.drop_table('form_versions')
    op.drop_table('forms')
