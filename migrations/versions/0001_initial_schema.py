"""Initial schema for bank reconciliation.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-01
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bank_code_enum = postgresql.ENUM(
        "bancochile", "bancoestado", "santander", "bci", name="bank_code_enum"
    )
    file_format_enum = postgresql.ENUM("pdf", "csv", name="file_format_enum")
    statement_file_status_enum = postgresql.ENUM(
        "pending", "imported", "failed", name="statement_file_status_enum"
    )
    document_type_enum = postgresql.ENUM(
        "factura",
        "boleta",
        "nota_credito",
        "nota_debito",
        "guia_despacho",
        name="document_type_enum",
    )
    direction_enum = postgresql.ENUM("cargo", "abono", name="direction_enum")
    transaction_status_enum = postgresql.ENUM(
        "pending",
        "matched",
        "partial",
        "unmatched",
        "manual",
        name="transaction_status_enum",
    )
    pipeline_state_enum = postgresql.ENUM(
        "pending",
        "import",
        "normalize",
        "categorize",
        "match",
        "validate",
        "alert",
        "approve",
        "completed",
        "failed",
        "paused",
        name="pipeline_state_enum",
    )

    bind = op.get_bind()
    for enum_type in (
        bank_code_enum,
        file_format_enum,
        statement_file_status_enum,
        document_type_enum,
        direction_enum,
        transaction_status_enum,
        pipeline_state_enum,
    ):
        enum_type.create(bind, checkfirst=True)

    def existing(enum_type: postgresql.ENUM) -> postgresql.ENUM:
        return postgresql.ENUM(*enum_type.enums, name=enum_type.name, create_type=False)

    op.create_table(
        "pipeline_runs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("client_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("period_year", sa.Integer(), nullable=False),
        sa.Column("period_month", sa.Integer(), nullable=False),
        sa.Column(
            "state",
            existing(pipeline_state_enum),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("paso_actual", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_pasos", sa.Integer(), nullable=False, server_default="7"),
        sa.Column("paused_from", sa.String(length=16), nullable=True),
        sa.Column("failed_step", sa.String(length=16), nullable=True),
        sa.Column("resultado", sa.JSON(), nullable=False),
        sa.Column("validation_issues", sa.JSON(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_pipeline_runs_client_id", "pipeline_runs", ["client_id"])
    op.create_index(
        "ix_pipeline_runs_client_period",
        "pipeline_runs",
        ["client_id", "period_year", "period_month"],
    )

    op.create_table(
        "statement_files",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("client_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("run_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("account_id", sa.String(length=64), nullable=False),
        sa.Column("bank", existing(bank_code_enum), nullable=False),
        sa.Column("file_format", existing(file_format_enum), nullable=False),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("file_hash", sa.String(length=64), nullable=False),
        sa.Column("content", sa.LargeBinary(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="CLP"),
        sa.Column(
            "status",
            existing(statement_file_status_enum),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("imported_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duplicate_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped_rows", sa.JSON(), nullable=False),
        sa.Column("saldo_inicial", sa.BigInteger(), nullable=True),
        sa.Column("saldo_final", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["run_id"], ["pipeline_runs.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_statement_files_client_id", "statement_files", ["client_id"])
    op.create_index("ix_statement_files_run_id", "statement_files", ["run_id"])

    op.create_table(
        "accounting_documents",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("client_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("document_type", existing(document_type_enum), nullable=False),
        sa.Column("folio", sa.BigInteger(), nullable=False),
        sa.Column("fecha_emision", sa.Date(), nullable=False),
        sa.Column("rut_emisor", sa.String(length=12), nullable=False),
        sa.Column("razon_social", sa.String(length=255), nullable=True),
        sa.Column("monto_total", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="CLP"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "rut_emisor", "document_type", "folio", name="uq_accounting_documents_issuer_folio"
        ),
    )
    op.create_index("ix_accounting_documents_client_id", "accounting_documents", ["client_id"])
    op.create_index(
        "ix_accounting_documents_fecha_emision", "accounting_documents", ["fecha_emision"]
    )
    op.create_index("ix_accounting_documents_rut_emisor", "accounting_documents", ["rut_emisor"])

    op.create_table(
        "bank_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("client_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("account_id", sa.String(length=64), nullable=False),
        sa.Column("statement_file_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("bank", existing(bank_code_enum), nullable=False),
        sa.Column("fecha", sa.Date(), nullable=False),
        sa.Column("fecha_valor", sa.Date(), nullable=True),
        sa.Column("descripcion", sa.Text(), nullable=False),
        sa.Column("descripcion_normalizada", sa.Text(), nullable=False, server_default=""),
        sa.Column("monto", sa.BigInteger(), nullable=False),
        sa.Column("tipo", existing(direction_enum), nullable=False),
        sa.Column("saldo", sa.BigInteger(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="CLP"),
        sa.Column("referencia", sa.String(length=64), nullable=True),
        sa.Column("rut_contraparte", sa.String(length=12), nullable=True),
        sa.Column("numero_documento", sa.String(length=64), nullable=True),
        sa.Column("dedup_hash", sa.String(length=64), nullable=False),
        sa.Column("categoria", sa.String(length=32), nullable=True),
        sa.Column("categoria_regla_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("categoria_confianza", sa.Float(), nullable=True),
        sa.Column(
            "status",
            existing(transaction_status_enum),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("documento_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("match_score", sa.Float(), nullable=True),
        sa.Column("notas", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["statement_file_id"], ["statement_files.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["documento_id"], ["accounting_documents.id"]),
        sa.UniqueConstraint("client_id", "dedup_hash", name="uq_bank_transactions_client_dedup"),
        sa.CheckConstraint(
            "(status IN ('matched', 'manual')) = (documento_id IS NOT NULL)",
            name="ck_bank_transactions_status_link",
        ),
    )
    op.create_index("ix_bank_transactions_client_id", "bank_transactions", ["client_id"])
    op.create_index(
        "ix_bank_transactions_client_fecha", "bank_transactions", ["client_id", "fecha"]
    )

    op.create_table(
        "match_candidates",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("transaction_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("documento_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("rank", sa.Integer(), nullable=False),
        sa.Column("score", sa.Float(), nullable=False),
        sa.Column("reasons", sa.JSON(), nullable=False),
        sa.Column("amount_diff", sa.BigInteger(), nullable=False),
        sa.Column("day_diff", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["transaction_id"], ["bank_transactions.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["documento_id"], ["accounting_documents.id"], ondelete="CASCADE"),
        sa.UniqueConstraint(
            "transaction_id", "documento_id", name="uq_match_candidates_txn_document"
        ),
    )
    op.create_index(
        "ix_match_candidates_transaction_id", "match_candidates", ["transaction_id"]
    )

    op.create_table(
        "match_patterns",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("client_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("keywords", sa.String(length=255), nullable=False),
        sa.Column("rut_emisor", sa.String(length=12), nullable=False),
        sa.Column("times_confirmed", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "client_id", "rut_emisor", "keywords", name="uq_match_patterns_client_rut_keywords"
        ),
    )
    op.create_index("ix_match_patterns_client_id", "match_patterns", ["client_id"])

    op.create_table(
        "categorization_rule_sets",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("client_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_categorization_rule_sets_client_id", "categorization_rule_sets", ["client_id"]
    )

    op.create_table(
        "categorization_rules",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("rule_set_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("categoria", sa.String(length=32), nullable=False),
        sa.Column("prioridad", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("palabras_clave", sa.JSON(), nullable=False),
        sa.Column("patrones", sa.JSON(), nullable=False),
        sa.Column("monto_min", sa.BigInteger(), nullable=True),
        sa.Column("monto_max", sa.BigInteger(), nullable=True),
        sa.Column("tipo", existing(direction_enum), nullable=True),
        sa.Column("banco", existing(bank_code_enum), nullable=True),
        sa.Column("activa", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("veces_aplicada", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["rule_set_id"], ["categorization_rule_sets.id"], ondelete="CASCADE"
        ),
    )

    op.create_table(
        "pipeline_alerts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("run_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("dedup_key", sa.String(length=128), nullable=False),
        sa.Column("alert_type", sa.String(length=32), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False),
        sa.Column("transaction_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["run_id"], ["pipeline_runs.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("run_id", "dedup_key", name="uq_pipeline_alerts_run_key"),
    )
    op.create_index("ix_pipeline_alerts_run_id", "pipeline_alerts", ["run_id"])


def downgrade() -> None:
    op.drop_table("pipeline_alerts")
    op.drop_table("categorization_rules")
    op.drop_table("categorization_rule_sets")
    op.drop_table("match_patterns")
    op.drop_table("match_candidates")
    op.drop_table("bank_transactions")
    op.drop_table("accounting_documents")
    op.drop_table("statement_files")
    op.drop_table("pipeline_runs")

    op.execute("DROP TYPE IF EXISTS pipeline_state_enum")
    op.execute("DROP TYPE IF EXISTS transaction_status_enum")
    op.execute("DROP TYPE IF EXISTS direction_enum")
    op.execute("DROP TYPE IF EXISTS document_type_enum")
    op.execute("DROP TYPE IF EXISTS statement_file_status_enum")
    op.execute("DROP TYPE IF EXISTS file_format_enum")
    op.execute("DROP TYPE IF EXISTS bank_code_enum")
