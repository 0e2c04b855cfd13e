"""Add step claim and operator request columns to pipeline_runs; excel file format.

Revision ID: 0002_step_claims_and_excel
Revises: 0001_initial_schema
Create Date: 2026-10-19
"""

import sqlalchemy as sa
from alembic import op

revision = "0002_step_claims_and_excel"
down_revision: str = "0001_initial_schema"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("pipeline_runs", sa.Column("executing_step", sa.String(length=16), nullable=True))
    op.add_column("pipeline_runs", sa.Column("pending_action", sa.String(length=16), nullable=True))
    op.add_column("pipeline_runs", sa.Column("pending_reason", sa.Text(), nullable=True))
    op.execute("ALTER TYPE file_format_enum ADD VALUE IF NOT EXISTS 'excel'")


def downgrade() -> None:
    # PostgreSQL cannot drop a single enum value; 'excel' stays unused
    op.drop_column("pipeline_runs", "pending_reason")
    op.drop_column("pipeline_runs", "pending_action")
    op.drop_column("pipeline_runs", "executing_step")
