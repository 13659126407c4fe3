"""compliance tables + change NOTIFY triggers

Learn: One trigger function serves all three tables. The NOTIFY channel
is passed as the trigger argument (TG_ARGV[0]), and the payload is a
change record the realtime ChangeWatcher understands:

    {"operationType": "insert" | "update" | "delete",
     "fullDocument": <row as JSON, null on delete>,
     "documentKey": {"id": <row id>}}

Channel names must match COMPLIANCE_RT_*_CHANNEL (defaults below).
NOTIFY payloads are capped at 8000 bytes by PostgreSQL, and an oversized
payload would fail the write that fired the trigger. Past
MAX_NOTIFY_BYTES the row is replaced by a stub carrying only
{"id", "project_id", "truncated": true}, enough to route the event;
subscribers re-read the row if they need the rest.

Revision ID: 3f1c2a9d7b40
Revises:
Create Date: 2026-10-17 09:12:44.105311
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "3f1c2a9d7b40"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


WATCHED_TABLES = {
    "compliance_metrics": "compliance_metrics_changes",
    "compliance_issues": "compliance_issues_changes",
    "compliance_notifications": "compliance_notifications_changes",
}

# Headroom under the 8000-byte NOTIFY limit
MAX_NOTIFY_BYTES = 7900


def upgrade() -> None:
    # ─── Watched tables ──────────────────────────────────
    op.create_table(
        "compliance_metrics",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("project_id", sa.String(100), nullable=False),
        sa.Column("framework", sa.String(50), nullable=False),
        sa.Column("score", sa.Numeric(5, 2), nullable=True),
        sa.Column("data", postgresql.JSONB(), server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_table(
        "compliance_issues",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("project_id", sa.String(100), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("data", postgresql.JSONB(), server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_table(
        "compliance_notifications",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("project_id", sa.String(100), nullable=False),
        sa.Column("kind", sa.String(50), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("read", sa.Boolean(), server_default="false"),
        sa.Column("data", postgresql.JSONB(), server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    for table in WATCHED_TABLES:
        op.create_index(f"ix_{table}_project_id", table, ["project_id"])

    # ─── Change notify function ──────────────────────────
    op.execute(f"""
        CREATE OR REPLACE FUNCTION notify_compliance_change()
        RETURNS TRIGGER AS $$
        DECLARE
            row_id integer;
            payload text;
        BEGIN
            IF TG_OP = 'DELETE' THEN
                row_id := OLD.id;
            ELSE
                row_id := NEW.id;
            END IF;

            payload := json_build_object(
                'operationType', lower(TG_OP),
                'fullDocument', CASE WHEN TG_OP = 'DELETE' THEN NULL ELSE row_to_json(NEW) END,
                'documentKey', json_build_object('id', row_id)
            )::text;

            IF octet_length(payload) > {MAX_NOTIFY_BYTES} THEN
                payload := json_build_object(
                    'operationType', lower(TG_OP),
                    'fullDocument', json_build_object(
                        'id', NEW.id,
                        'project_id', NEW.project_id,
                        'truncated', true
                    ),
                    'documentKey', json_build_object('id', row_id)
                )::text;
            END IF;

            PERFORM pg_notify(TG_ARGV[0], payload);
            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql;
    """)

    # ─── One trigger per watched table ───────────────────
    for table, channel in WATCHED_TABLES.items():
        op.execute(f"""
            CREATE TRIGGER {table}_change_notify
                AFTER INSERT OR UPDATE OR DELETE ON {table}
                FOR EACH ROW
                EXECUTE FUNCTION notify_compliance_change('{channel}');
        """)


def downgrade() -> None:
    for table in WATCHED_TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS {table}_change_notify ON {table};")
    op.execute("DROP FUNCTION IF EXISTS notify_compliance_change;")
    op.drop_table("compliance_notifications")
    op.drop_table("compliance_issues")
    op.drop_table("compliance_metrics")
