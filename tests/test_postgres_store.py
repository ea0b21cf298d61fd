import asyncio
import os
import uuid
from datetime import datetime, timezone

import asyncpg
import pytest

from app.db import _init_connection
from app.stages import transitions
from app.stages.errors import ConcurrencyConflict, NotFoundError, ValidationError
from app.stages.models import JobStageData, StageHistoryEntry
from app.stages.store import PostgresStageStore

from tests.conftest import done, make_job

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "")

needs_db = pytest.mark.skipif(not TEST_DATABASE_URL, reason="TEST_DATABASE_URL is not set")

# Temp tables shadow any real jobs/proposals tables for the session
TEMP_TABLES_SQL = """
CREATE TEMP TABLE proposals (
    id                          UUID PRIMARY KEY,
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
);
CREATE TEMP TABLE jobs (
    id              UUID PRIMARY KEY,
    job_number      TEXT,
    proposal_id     UUID,
    status          TEXT NOT NULL DEFAULT 'not_scheduled',
    scheduled_date  TIMESTAMPTZ,
    assigned_to     UUID,
    stage           TEXT NOT NULL DEFAULT 'beginning',
    stage_steps     JSONB NOT NULL DEFAULT '{}'::jsonb,
    stage_history   JSONB NOT NULL DEFAULT '[]'::jsonb,
    version         INT NOT NULL DEFAULT 0,
    created_at      TIMESTAMPTZ DEFAULT now(),
    updated_at      TIMESTAMPTZ DEFAULT now()
);
"""


def run(coro):
    return asyncio.run(coro)


async def _with_store(body):
    conn = await asyncpg.connect(TEST_DATABASE_URL)
    try:
        await _init_connection(conn)
        await conn.execute(TEMP_TABLES_SQL)
        return await body(conn, PostgresStageStore(conn))
    finally:
        await conn.close()


async def _insert_job(conn, *, stage="beginning", status="not_scheduled", **cols) -> str:
    job_id = str(uuid.uuid4())
    await conn.execute(
        """
        INSERT INTO jobs (id, job_number, stage, status, stage_steps, stage_history, proposal_id)
        VALUES ($1::uuid, $2, $3, $4, $5::jsonb, $6::jsonb, $7::uuid)
        """,
        job_id,
        cols.get("job_number", "J-1"),
        stage,
        status,
        cols.get("stage_steps", {}),
        cols.get("stage_history", []),
        cols.get("proposal_id"),
    )
    return job_id


class _UnusedConnection:
    """Fails the test if the store reaches the database."""

    def __getattr__(self, name):
        raise AssertionError(f"connection.{name} should not be called")


class TestNonUuidIds:
    """Ids that cannot be uuid column values never reach the database."""

    def _store(self):
        return PostgresStageStore(_UnusedConnection())

    def test_lookups_are_not_found(self):
        store = self._store()
        with pytest.raises(NotFoundError):
            run(store.get_job("ghost"))
        with pytest.raises(NotFoundError):
            run(store.get_proposal("prop-1"))
        with pytest.raises(NotFoundError):
            run(store.find_job_for_proposal("prop-1"))
        with pytest.raises(NotFoundError):
            run(store.update_proposal("prop-1", status="approved"))

    def test_backfill_filter_matches_nothing(self):
        assert run(self._store().list_active_jobs(job_id="job-1")) == []

    def test_technician_id_must_be_uuid(self):
        job = make_job(str(uuid.uuid4()))
        with pytest.raises(ValidationError):
            run(self._store().set_job_facts(job, assigned_to="tech-7"))


@needs_db
class TestPostgresStageStore:
    """PostgresStageStore against a live database."""

    def test_load_and_save_round_trip(self):
        async def body(conn, store):
            job_id = await _insert_job(conn)
            job = await store.get_job(job_id)
            assert job.stage == "beginning"
            assert job.version == 0

            at = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
            data = JobStageData(
                "rough_in",
                done("proposal_approved"),
                [StageHistoryEntry("beginning", "rough_in", at, "manual", changed_by="office")],
            )
            saved = await store.save_job(job, data, "working_on_it")
            assert saved.version == 1
            assert saved.status == "working_on_it"

            reloaded = await store.get_job(job_id)
            assert reloaded.stage_data == saved.stage_data
            assert reloaded.stage_data.stage_history[0].at == at

        run(_with_store(body))

    def test_stale_save_conflicts(self):
        async def body(conn, store):
            job_id = await _insert_job(conn)
            stale = await store.get_job(job_id)
            await transitions.complete_step(store, job_id, "proposal_approved")
            with pytest.raises(ConcurrencyConflict):
                await store.save_job(stale, stale.stage_data, stale.status)

        run(_with_store(body))

    def test_missing_uuid_is_not_found(self):
        async def body(conn, store):
            with pytest.raises(NotFoundError):
                await store.get_job(str(uuid.uuid4()))

        run(_with_store(body))

    def test_active_jobs_and_counts(self):
        async def body(conn, store):
            first = await _insert_job(conn)
            await _insert_job(conn, stage="trim_out", status="start_up")
            await _insert_job(conn, stage="completed", status="done")

            active = await store.list_active_jobs()
            assert len(active) == 2
            only = await store.list_active_jobs(job_id=first)
            assert [j.id for j in only] == [first]

            counts = await store.stage_counts()
            assert counts["beginning"] == 1
            assert counts["trim_out"] == 1
            assert "completed" not in counts

        run(_with_store(body))

    def test_legacy_history_rows_load(self):
        async def body(conn, store):
            job_id = await _insert_job(
                conn,
                stage="rough_in",
                status="working_on_it",
                stage_history=[{"stage": "rough_in", "previous_stage": "beginning"}],
            )
            first = await store.get_job(job_id)
            second = await store.get_job(job_id)
            assert first.stage_data.stage_history == second.stage_data.stage_history

        run(_with_store(body))
