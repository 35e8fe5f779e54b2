"""production_queue_schema

Revision ID: 001_production_queue
Revises:
Create Date: 2026-10-19

Brings databases created before the approval cascade was hardened up to date:
- extract_sessions: barlist_id back-reference, approved_by/approved_at, rejected_reason
- extract_mapping: unique (tenant_id, source_field, source_value)
- machine_capabilities: unique (machine_id, process, bar_code)
- machine_queue_items: (machine_id, status) index and the partial unique
  index allowing one active queue item per task
- events: unique dedupe_key
- machine_runs: created when missing (queue items started on a machine)

All DDL uses IF NOT EXISTS checks so the migration is idempotent — safe to run
even when Base.metadata.create_all() already created the tables.
"""
import logging
from alembic import op
import sqlalchemy as sa
from sqlalchemy import text

revision = '001_production_queue'
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger("alembic.001")


def _table_exists(conn, table_name: str) -> bool:
    result = conn.execute(
        text(
            "SELECT EXISTS("
            "  SELECT 1 FROM information_schema.tables"
            "  WHERE table_name = :tname"
            ")"
        ),
        {"tname": table_name},
    )
    return bool(result.scalar())


def _column_exists(conn, table_name: str, column_name: str) -> bool:
    result = conn.execute(
        text(
            "SELECT EXISTS("
            "  SELECT 1 FROM information_schema.columns"
            "  WHERE table_name = :tname AND column_name = :cname"
            ")"
        ),
        {"tname": table_name, "cname": column_name},
    )
    return bool(result.scalar())


INDEXES = [
    ('extract_mapping', 'uq_extract_mapping_key',
     "CREATE UNIQUE INDEX IF NOT EXISTS uq_extract_mapping_key "
     "ON extract_mapping (tenant_id, source_field, source_value)"),
    ('machine_capabilities', 'uq_machine_capability',
     "CREATE UNIQUE INDEX IF NOT EXISTS uq_machine_capability "
     "ON machine_capabilities (machine_id, process, bar_code)"),
    ('machine_queue_items', 'ix_queue_machine_status',
     "CREATE INDEX IF NOT EXISTS ix_queue_machine_status "
     "ON machine_queue_items (machine_id, status)"),
    ('machine_queue_items', 'idx_queue_task_active',
     "CREATE UNIQUE INDEX IF NOT EXISTS idx_queue_task_active "
     "ON machine_queue_items (task_id) WHERE status IN ('queued', 'running')"),
    ('events', 'uq_events_dedupe_key',
     "CREATE UNIQUE INDEX IF NOT EXISTS uq_events_dedupe_key ON events (dedupe_key)"),
]


def upgrade() -> None:
    conn = op.get_bind()

    # ── extract_sessions: new columns ─────────────────────────────────────────
    _session_cols = [
        ('barlist_id', sa.Column('barlist_id', sa.String(36), nullable=True)),
        ('approved_by', sa.Column('approved_by', sa.String(36), nullable=True)),
        ('approved_at', sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True)),
        ('rejected_reason', sa.Column('rejected_reason', sa.Text, nullable=True)),
    ]
    if _table_exists(conn, 'extract_sessions'):
        with op.batch_alter_table('extract_sessions') as batch_op:
            for col_name, col_def in _session_cols:
                if not _column_exists(conn, 'extract_sessions', col_name):
                    batch_op.add_column(col_def)
                    logger.info(f"Added column extract_sessions.{col_name}")
    else:
        logger.warning("Table extract_sessions does not exist — skipping column additions")

    # ── machine_runs ──────────────────────────────────────────────────────────
    if not _table_exists(conn, 'machine_runs'):
        op.create_table(
            'machine_runs',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('tenant_id', sa.String(36), sa.ForeignKey('tenants.id'), nullable=False, index=True),
            sa.Column('machine_id', sa.String(36), sa.ForeignKey('machines.id'), nullable=False, index=True),
            sa.Column('task_id', sa.String(36), sa.ForeignKey('production_tasks.id'), nullable=True),
            sa.Column('queue_item_id', sa.String(36), sa.ForeignKey('machine_queue_items.id'), nullable=True),
            sa.Column('process', sa.String(20), nullable=False),
            sa.Column('status', sa.String(20), nullable=False, server_default='running'),
            sa.Column('input_qty', sa.Integer, server_default='0'),
            sa.Column('notes', sa.Text, nullable=True),
            sa.Column('started_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_by', sa.String(36), nullable=True),
        )
        logger.info("Created table machine_runs")

    # ── constraints & indexes ─────────────────────────────────────────────────
    for table, name, ddl in INDEXES:
        if _table_exists(conn, table):
            conn.execute(text(ddl))
            logger.info(f"Ensured index {name} on {table}")
        else:
            logger.warning(f"Table {table} does not exist — skipping {name}")


def downgrade() -> None:
    conn = op.get_bind()

    if _table_exists(conn, 'machine_runs'):
        op.drop_table('machine_runs')

    for table, name, _ in INDEXES:
        if _table_exists(conn, table):
            conn.execute(text(f"DROP INDEX IF EXISTS {name}"))

    if _table_exists(conn, 'extract_sessions'):
        with op.batch_alter_table('extract_sessions') as batch_op:
            for col in ['barlist_id', 'approved_by', 'approved_at', 'rejected_reason']:
                if _column_exists(conn, 'extract_sessions', col):
                    batch_op.drop_column(col)
