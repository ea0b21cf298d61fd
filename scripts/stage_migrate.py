"""
Stage engine schema migration: run with an owner DATABASE_URL.

Usage:
  python scripts/stage_migrate.py

Creates (or extends) the jobs and proposals tables with the columns the
stage engine reads and writes. Safe to re-run.
"""
import asyncio
import os
import sys
from pathlib import Path

from dotenv import load_dotenv
load_dotenv(Path(__file__).resolve().parents[1] / ".env")

import asyncpg

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    print("ERROR: DATABASE_URL not set")
    sys.exit(1)


async def migrate():
    conn = await asyncpg.connect(DATABASE_URL)
    try:
        print("Running stage engine migration...")

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS proposals (
                id                          UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                status                      TEXT NOT NULL DEFAULT 'draft',
                approved_at                 TIMESTAMPTZ,
                deposit_amount              NUMERIC(12, 2),
                progress_payment_amount     NUMERIC(12, 2),
                final_payment_amount        NUMERIC(12, 2),
                billcom_deposit_invoice_id  TEXT,
                billcom_roughin_invoice_id  TEXT,
                billcom_final_invoice_id    TEXT,
                deposit_paid_at             TIMESTAMPTZ,
                progress_paid_at            TIMESTAMPTZ,
                final_paid_at               TIMESTAMPTZ,
                created_at                  TIMESTAMPTZ DEFAULT now(),
                updated_at                  TIMESTAMPTZ DEFAULT now()
            )
        """)
        print("OK proposals")

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                job_number      TEXT,
                proposal_id     UUID REFERENCES proposals(id),
                status          TEXT NOT NULL DEFAULT 'not_scheduled',
                scheduled_date  TIMESTAMPTZ,
                assigned_to     UUID,
                created_at      TIMESTAMPTZ DEFAULT now(),
                updated_at      TIMESTAMPTZ DEFAULT now()
            )
        """)
        print("OK jobs")

        # Existing jobs tables get the stage columns added in place
        await conn.execute("ALTER TABLE jobs ADD COLUMN IF NOT EXISTS stage         TEXT NOT NULL DEFAULT 'beginning'")
        await conn.execute("ALTER TABLE jobs ADD COLUMN IF NOT EXISTS stage_steps   JSONB NOT NULL DEFAULT '{}'::jsonb")
        await conn.execute("ALTER TABLE jobs ADD COLUMN IF NOT EXISTS stage_history JSONB NOT NULL DEFAULT '[]'::jsonb")
        await conn.execute("ALTER TABLE jobs ADD COLUMN IF NOT EXISTS version       INT NOT NULL DEFAULT 0")
        print("OK jobs stage columns")

        await conn.execute("""
            DO $$ BEGIN
                ALTER TABLE jobs ADD CONSTRAINT jobs_stage_check
                    CHECK (stage IN ('beginning', 'rough_in', 'trim_out', 'closing', 'completed'));
            EXCEPTION WHEN duplicate_object THEN NULL;
            END $$
        """)
        print("OK jobs_stage_check")

        await conn.execute("CREATE INDEX IF NOT EXISTS jobs_stage_created_idx ON jobs (stage, created_at DESC)")
        await conn.execute("CREATE INDEX IF NOT EXISTS jobs_proposal_idx ON jobs (proposal_id)")
        print("OK indexes")

        print("\nMigration complete.")

    finally:
        await conn.close()


if __name__ == "__main__":
    asyncio.run(migrate())
