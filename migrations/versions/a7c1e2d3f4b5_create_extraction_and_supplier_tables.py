"""create extraction and supplier tables

Revision ID: a7c1e2d3f4b5
Revises:
Create Date: 2026-10-17 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'a7c1e2d3f4b5'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONB = postgresql.JSONB(astext_type=sa.Text())


def upgrade() -> None:
    # --- extraction_schemas ---
    op.create_table(
        'extraction_schemas',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('organization_id', sa.String(length=64), nullable=False),
        sa.Column('schema_identifier', sa.String(length=32), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('definition', JSONB, nullable=False),
        sa.Column('compiled_json_schema', JSONB, nullable=False),
        sa.Column('prompt', sa.Text(), nullable=True),
        sa.Column('examples', JSONB, nullable=True),
        sa.Column('agents', JSONB, nullable=True),
        sa.Column('change_description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('organization_id', 'schema_identifier', 'version',
                            name='uq_extraction_schemas_org_identifier_version'),
        sa.UniqueConstraint('organization_id', 'name', 'version',
                            name='uq_extraction_schemas_org_name_version'),
    )
    op.create_index('idx_extraction_schemas_family', 'extraction_schemas',
                    ['organization_id', 'schema_identifier'])

    # --- extraction_jobs ---
    op.create_table(
        'extraction_jobs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('organization_id', sa.String(length=64), nullable=False),
        sa.Column('schema_id', sa.String(length=36), nullable=True),
        sa.Column('initiated_by', sa.String(length=64), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False,
                  server_default='queued'),
        sa.Column('progress_percentage', sa.Integer(), nullable=False,
                  server_default='0'),
        sa.Column('meta', JSONB, nullable=True),
        sa.Column('logs', JSONB, nullable=True),
        sa.Column('compiled_json_schema', JSONB, nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.text('now()'), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True),
                  server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_extraction_jobs_org', 'extraction_jobs', ['organization_id'])
    op.create_index('idx_extraction_jobs_schema', 'extraction_jobs', ['schema_id'])

    # --- extraction_job_data_layers ---
    op.create_table(
        'extraction_job_data_layers',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('job_id', sa.String(length=36), nullable=False),
        sa.Column('data_layer_id', sa.String(length=64), nullable=False),
        sa.Column('processing_order', sa.Integer(), nullable=False),
        sa.Column('sub_status', sa.String(length=20), nullable=False,
                  server_default='pending'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['job_id'], ['extraction_jobs.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('job_id', 'data_layer_id', name='uq_job_data_layers_job_layer'),
    )

    # --- extraction_results ---
    op.create_table(
        'extraction_results',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('job_id', sa.String(length=36), nullable=False),
        sa.Column('page_number', sa.Integer(), nullable=False),
        sa.Column('raw_extraction', JSONB, nullable=False),
        sa.Column('verified_data', JSONB, nullable=True),
        sa.Column('evidence', JSONB, nullable=False),
        sa.Column('confidence_score', sa.Float(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False,
                  server_default='pending'),
        sa.Column('verified_by', sa.String(length=64), nullable=True),
        sa.Column('verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('agent_execution_metadata', JSONB, nullable=True),
        sa.Column('source_data_layer_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['job_id'], ['extraction_jobs.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_extraction_results_job_page', 'extraction_results',
                    ['job_id', 'page_number'])

    # --- suppliers ---
    op.create_table(
        'suppliers',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('organization_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('contact_name', sa.String(length=200), nullable=True),
        sa.Column('contact_email', sa.String(length=320), nullable=True),
        sa.Column('contact_phone', sa.String(length=50), nullable=True),
        sa.Column('materials_offered', JSONB, nullable=False,
                  server_default=sa.text("'[]'::jsonb")),
        sa.Column('meta', JSONB, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True),
                  server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_suppliers_organization_id', 'suppliers', ['organization_id'])

    # --- supplier_matches ---
    op.create_table(
        'supplier_matches',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('extraction_result_id', sa.String(length=36), nullable=False),
        sa.Column('supplier_id', sa.String(length=36), nullable=False),
        sa.Column('confidence_score', sa.Float(), nullable=True),
        sa.Column('match_reason', sa.Text(), nullable=True),
        sa.Column('match_metadata', JSONB, nullable=True),
        sa.Column('is_selected', sa.Boolean(), nullable=False,
                  server_default=sa.text('false')),
        sa.Column('selected_by', sa.String(length=64), nullable=True),
        sa.Column('selected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True),
                  server_default=sa.text('now()'), nullable=True),
        sa.ForeignKeyConstraint(['extraction_result_id'], ['extraction_results.id'],
                                ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['supplier_id'], ['suppliers.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('extraction_result_id', 'supplier_id',
                            name='uq_supplier_matches_result_supplier'),
    )
    op.create_index('idx_supplier_matches_supplier', 'supplier_matches', ['supplier_id'])
    op.create_index('uq_supplier_matches_one_selected', 'supplier_matches',
                    ['extraction_result_id'], unique=True,
                    postgresql_where=sa.text('is_selected'))


def downgrade() -> None:
    op.drop_index('uq_supplier_matches_one_selected', table_name='supplier_matches')
    op.drop_index('idx_supplier_matches_supplier', table_name='supplier_matches')
    op.drop_table('supplier_matches')
    op.drop_index('ix_suppliers_organization_id', table_name='suppliers')
    op.drop_table('suppliers')
    op.drop_index('idx_extraction_results_job_page', table_name='extraction_results')
    op.drop_table('extraction_results')
    op.drop_table('extraction_job_data_layers')
    op.drop_index('idx_extraction_jobs_schema', table_name='extraction_jobs')
    op.drop_index('idx_extraction_jobs_org', table_name='extraction_jobs')
    op.drop_table('extraction_jobs')
    op.drop_index('idx_extraction_schemas_family', table_name='extraction_schemas')
    op.drop_table('extraction_schemas')
