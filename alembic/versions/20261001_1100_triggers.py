"""updated_at triggers + append-only sync_log

Revision ID: 20261001_1100
Revises: 20261001_1000
Create Date: 2026-10-01
"""

from __future__ import annotations

from alembic import op

revision = "20261001_1100"
down_revision = "20261001_1000"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Keep updated_at consistent even for raw SQL updates (worker code, etc.).
    op.execute(
        """
CREATE OR REPLACE FUNCTION set_updated_at() RETURNS trigger AS $$
BEGIN
  NEW.updated_at = now();
  RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""
    )

    for table in (
        "webhook_events",
        "identity_mappings",
        "optout_registry",
        "bg_jobs",
    ):
        op.execute(
            f"""
DO $$
BEGIN
  IF NOT EXISTS (
    SELECT 1 FROM pg_trigger WHERE tgname = 'set_updated_at_{table}'
  ) THEN
    CREATE TRIGGER set_updated_at_{table}
    BEFORE UPDATE ON {table}
    FOR EACH ROW
    EXECUTE FUNCTION set_updated_at();
  END IF;
END $$;
"""
        )

    op.execute(
        """
CREATE OR REPLACE FUNCTION reject_sync_log_mutation() RETURNS trigger AS $$
BEGIN
  RAISE EXCEPTION 'sync_log is append-only';
END;
$$ LANGUAGE plpgsql;
"""
    )
    op.execute(
        """
DO $$
BEGIN
  IF NOT EXISTS (
    SELECT 1 FROM pg_trigger WHERE tgname = 'sync_log_append_only'
  ) THEN
    CREATE TRIGGER sync_log_append_only
    BEFORE UPDATE OR DELETE ON sync_log
    FOR EACH ROW
    EXECUTE FUNCTION reject_sync_log_mutation();
  END IF;
END $$;
"""
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS sync_log_append_only ON sync_log;")
    op.execute("DROP FUNCTION IF EXISTS reject_sync_log_mutation();")
    for table in ("webhook_events", "identity_mappings", "optout_registry", "bg_jobs"):
        op.execute(f"DROP TRIGGER IF EXISTS set_updated_at_{table} ON {table};")
    op.execute("DROP FUNCTION IF EXISTS set_updated_at();")
