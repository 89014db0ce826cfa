"""Initial schema (webhook events, jobs, identity, opt-outs, sync log)

Revision ID: 20261001_1000
Revises:
Create Date: 2026-10-01

"""

from __future__ import annotations

from alembic import op

revision = "20261001_1000"
down_revision = None
branch_labels = None
depends_on = None


_ENUMS = {
    "event_source": ("crm", "telephony", "messaging", "broadcast"),
    "event_status": ("pending", "processing", "done", "error", "skipped"),
    "sync_status": ("success", "error", "skipped"),
    "optout_status": ("opted_out", "opted_in"),
    "job_status": ("queued", "running", "succeeded", "failed", "cancelled"),
    "job_type": ("process_event", "sweep_pending", "alert_check", "reconcile_contacts"),
}


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")

    for name, values in _ENUMS.items():
        labels = ",".join(f"'{v}'" for v in values)
        op.execute(
            f"""
DO $$ BEGIN
  CREATE TYPE {name} AS ENUM ({labels});
EXCEPTION WHEN duplicate_object THEN NULL; END $$;
"""
        )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS webhook_events (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  source event_source NOT NULL,
  event_type text NOT NULL,
  entity_type text NOT NULL,
  entity_id text,
  direction text,
  payload jsonb NOT NULL DEFAULT '{}'::jsonb,
  fingerprint text NOT NULL,

  status event_status NOT NULL DEFAULT 'pending',
  error_message text,

  received_at timestamptz NOT NULL DEFAULT now(),
  processed_at timestamptz,
  updated_at timestamptz NOT NULL DEFAULT now(),

  UNIQUE (fingerprint)
);
"""
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS webhook_events_status_received_idx ON webhook_events (status, received_at);"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS webhook_events_entity_idx ON webhook_events (source, entity_type, entity_id);"
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS quarantine_entries (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  event_id uuid NOT NULL,
  event_source event_source NOT NULL,
  reason text NOT NULL,
  quarantined_by text,
  quarantined_at timestamptz NOT NULL DEFAULT now(),

  UNIQUE (event_id, event_source)
);
"""
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS identity_mappings (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  crm_contact_id text NOT NULL,
  telephony_contact_id text,
  phone_number text,
  email text,
  sync_direction text NOT NULL DEFAULT 'bidirectional',

  last_synced_at timestamptz NOT NULL DEFAULT now(),
  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now(),

  UNIQUE (crm_contact_id),
  UNIQUE (telephony_contact_id)
);
"""
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS identity_mappings_phone_idx ON identity_mappings (phone_number);"
    )
    op.execute("CREATE INDEX IF NOT EXISTS identity_mappings_email_idx ON identity_mappings (email);")

    op.execute(
        """
CREATE TABLE IF NOT EXISTS optout_registry (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  phone_number text NOT NULL,
  status optout_status NOT NULL,
  source text NOT NULL,
  reason text,

  last_event_at timestamptz NOT NULL DEFAULT now(),
  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now(),

  UNIQUE (phone_number)
);
"""
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS sync_log (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  direction text NOT NULL,
  entity_type text NOT NULL,
  entity_id text NOT NULL,
  source_id text NOT NULL,
  target_id text,
  status sync_status NOT NULL,
  error_message text,
  correlation_id text NOT NULL,

  started_at timestamptz NOT NULL,
  finished_at timestamptz NOT NULL DEFAULT now()
);
"""
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS sync_log_finished_idx ON sync_log (finished_at DESC);"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS sync_log_correlation_idx ON sync_log (correlation_id);"
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS bg_jobs (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  event_id uuid REFERENCES webhook_events(id) ON DELETE CASCADE,

  type job_type NOT NULL,
  status job_status NOT NULL DEFAULT 'queued',

  run_at timestamptz NOT NULL DEFAULT now(),
  attempts int NOT NULL DEFAULT 0,
  max_attempts int NOT NULL DEFAULT 10,

  locked_at timestamptz,
  locked_by text,
  last_error text,

  dedupe_key text,
  payload jsonb NOT NULL DEFAULT '{}'::jsonb,

  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now()
);
"""
    )
    op.execute("CREATE INDEX IF NOT EXISTS bg_jobs_runner_idx ON bg_jobs (status, run_at);")
    op.execute("CREATE INDEX IF NOT EXISTS bg_jobs_event_idx ON bg_jobs (event_id);")
    op.execute(
        """
CREATE UNIQUE INDEX IF NOT EXISTS bg_jobs_dedupe_uq
  ON bg_jobs (type, dedupe_key)
  WHERE dedupe_key IS NOT NULL AND status IN ('queued','running');
"""
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS bg_jobs CASCADE;")
    op.execute("DROP TABLE IF EXISTS sync_log CASCADE;")
    op.execute("DROP TABLE IF EXISTS optout_registry CASCADE;")
    op.execute("DROP TABLE IF EXISTS identity_mappings CASCADE;")
    op.execute("DROP TABLE IF EXISTS quarantine_entries CASCADE;")
    op.execute("DROP TABLE IF EXISTS webhook_events CASCADE;")
    for name in reversed(list(_ENUMS)):
        op.execute(f"DROP TYPE IF EXISTS {name};")
