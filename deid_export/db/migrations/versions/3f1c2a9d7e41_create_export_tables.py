"""create export job, watermark and cohort tables

Revision ID: 3f1c2a9d7e41
Revises:
Create Date: 2026-10-18 09:12:40.118204

Seeds the singleton omop_export_hwm row with every mark at the epoch.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = '3f1c2a9d7e41'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

WATERMARK_TABLES = (
    'patients', 'daily_entries', 'assessments', 'medications',
    'diagnoses', 'appointments', 'passive_health', 'journal_entries',
)


def _lifecycle_columns() -> list[sa.Column]:
    return [
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='2'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('heartbeat_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'cohort_definitions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('organisation_id', sa.Uuid(), nullable=False),
        sa.Column('created_by', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('filters', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default='{}'),
        sa.Column('last_count', sa.Integer(), nullable=True),
        sa.Column('last_run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_cohort_definitions_organisation_id', 'cohort_definitions', ['organisation_id'])

    op.create_table(
        'research_exports',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('requested_by', sa.Uuid(), nullable=False),
        sa.Column('organisation_id', sa.Uuid(), nullable=False),
        sa.Column('cohort_id', sa.Uuid(), nullable=True),
        sa.Column('filters', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default='{}'),
        sa.Column('format', sa.String(length=20), nullable=False, server_default='ndjson'),
        sa.Column('include_fields', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default='[]'),
        sa.Column('record_count', sa.Integer(), nullable=True),
        sa.Column('file_url', sa.Text(), nullable=True),
        sa.Column('file_size_bytes', sa.BigInteger(), nullable=True),
        sa.Column('deidentification_method', sa.String(length=40), nullable=False, server_default='safe_harbour_18'),
        sa.Column('deidentified_at', sa.DateTime(timezone=True), nullable=True),
        *_lifecycle_columns(),
        sa.ForeignKeyConstraint(['cohort_id'], ['cohort_definitions.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name='ck_research_exports_status',
        ),
    )
    op.create_index('ix_research_exports_organisation_id', 'research_exports', ['organisation_id'])
    op.create_index('ix_research_exports_requested_by', 'research_exports', ['requested_by'])
    op.create_index('ix_research_exports_status', 'research_exports', ['status'])

    op.create_table(
        'omop_export_runs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('triggered_by', sa.String(length=20), nullable=False, server_default='manual'),
        sa.Column('output_mode', sa.String(length=20), nullable=False, server_default='tsv_upload'),
        sa.Column('full_refresh', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('record_counts', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('file_urls', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        *_lifecycle_columns(),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name='ck_omop_export_runs_status',
        ),
    )
    op.create_index('ix_omop_export_runs_status', 'omop_export_runs', ['status'])

    op.create_table(
        'omop_export_hwm',
        sa.Column('id', sa.Integer(), nullable=False),
        *[
            sa.Column(
                f'{table}_hwm',
                sa.DateTime(timezone=True),
                nullable=False,
                server_default=sa.text("'1970-01-01 00:00:00+00'"),
            )
            for table in WATERMARK_TABLES
        ],
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('id = 1', name='ck_omop_export_hwm_singleton'),
    )
    op.execute('INSERT INTO omop_export_hwm (id) VALUES (1)')


def downgrade() -> None:
    op.drop_table('omop_export_hwm')
    op.drop_index('ix_omop_export_runs_status', table_name='omop_export_runs')
    op.drop_table('omop_export_runs')
    op.drop_index('ix_research_exports_status', table_name='research_exports')
    op.drop_index('ix_research_exports_requested_by', table_name='research_exports')
    op.drop_index('ix_research_exports_organisation_id', table_name='research_exports')
    op.drop_table('research_exports')
    op.drop_index('ix_cohort_definitions_organisation_id', table_name='cohort_definitions')
    op.drop_table('cohort_definitions')
