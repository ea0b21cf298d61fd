"""
Stage store: loads and writes the job/proposal columns the engine owns.

Writes are optimistic: every UPDATE is conditional on the version that was
read, and bumps it. A lost race surfaces as ConcurrencyConflict instead of
silently overwriting steps another writer just completed.
"""
from __future__ import annotations

import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Any, Optional

import asyncpg

from app.stages import catalog
from app.stages.errors import ConcurrencyConflict, NotFoundError, ValidationError
from app.stages.models import (
    JobRecord,
    JobStageData,
    ProposalRecord,
    dump_stage_history,
    dump_stage_steps,
    parse_dt,
    parse_stage_history,
    parse_stage_steps,
)


class StageStore(ABC):
    @abstractmethod
    async def get_job(self, job_id: str) -> JobRecord: ...

    @abstractmethod
    async def save_job(self, job: JobRecord, data: JobStageData, status: str) -> JobRecord:
        """Write stage/steps/history/status if job.version is still current."""

    @abstractmethod
    async def list_active_jobs(
        self, *, job_id: Optional[str] = None, limit: Optional[int] = None
    ) -> list[JobRecord]: ...

    @abstractmethod
    async def stage_counts(self) -> dict[str, int]: ...

    @abstractmethod
    async def get_proposal(self, proposal_id: str) -> ProposalRecord: ...

    @abstractmethod
    async def find_job_for_proposal(self, proposal_id: str) -> JobRecord: ...

    @abstractmethod
    async def update_proposal(self, proposal_id: str, **fields: Any) -> ProposalRecord: ...

    @abstractmethod
    async def set_job_facts(
        self,
        job: JobRecord,
        *,
        scheduled_date: Optional[datetime] = None,
        assigned_to: Optional[str] = None,
    ) -> JobRecord: ...


# ---------------------------------------------------------------------------
# Postgres
# ---------------------------------------------------------------------------

JOB_COLUMNS = """
    id::text AS id, job_number, proposal_id::text AS proposal_id,
    status, stage, stage_steps, stage_history,
    scheduled_date, assigned_to::text AS assigned_to, version
"""

LOAD_JOB_SQL = f"""
SELECT {JOB_COLUMNS}
FROM jobs
WHERE id = $1::uuid
LIMIT 1;
"""

SAVE_JOB_SQL = f"""
UPDATE jobs
SET stage = $2::text,
    stage_steps = $3::jsonb,
    stage_history = $4::jsonb,
    status = $5::text,
    version = version + 1,
    updated_at = now()
WHERE id = $1::uuid
  AND version = $6::int
RETURNING {JOB_COLUMNS};
"""

SET_JOB_FACTS_SQL = f"""
UPDATE jobs
SET scheduled_date = COALESCE($2::timestamptz, scheduled_date),
    assigned_to = COALESCE($3::uuid, assigned_to),
    version = version + 1,
    updated_at = now()
WHERE id = $1::uuid
  AND version = $4::int
RETURNING {JOB_COLUMNS};
"""

LIST_ACTIVE_JOBS_SQL = f"""
SELECT {JOB_COLUMNS}
FROM jobs
WHERE stage = ANY($1::text[])
  AND ($2::uuid IS NULL OR id = $2::uuid)
ORDER BY created_at DESC
LIMIT $3;
"""

STAGE_COUNTS_SQL = """
SELECT stage, COUNT(*)::int AS n
FROM jobs
WHERE stage = ANY($1::text[])
GROUP BY stage;
"""

PROPOSAL_COLUMNS = """
    id::text AS id, status, approved_at,
    deposit_amount::float8 AS deposit_amount,
    progress_payment_amount::float8 AS progress_payment_amount,
    final_payment_amount::float8 AS final_payment_amount,
    billcom_deposit_invoice_id AS deposit_invoice_id, deposit_paid_at,
    billcom_roughin_invoice_id AS roughin_invoice_id, progress_paid_at,
    billcom_final_invoice_id AS final_invoice_id, final_paid_at
"""

LOAD_PROPOSAL_SQL = f"""
SELECT {PROPOSAL_COLUMNS}
FROM proposals
WHERE id = $1::uuid
LIMIT 1;
"""

FIND_JOB_FOR_PROPOSAL_SQL = f"""
SELECT {JOB_COLUMNS}
FROM jobs
WHERE proposal_id = $1::uuid
ORDER BY created_at DESC
LIMIT 1;
"""

# Only these proposal columns are writable from the stage engine
PROPOSAL_WRITABLE: dict[str, str] = {
    "status": "text",
    "approved_at": "timestamptz",
    "deposit_paid_at": "timestamptz",
    "progress_paid_at": "timestamptz",
    "final_paid_at": "timestamptz",
}


def _as_json(value: Any) -> Any:
    # Connections without the JSONB codec hand back text
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return None
    return value


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _id_or_not_found(kind: str, ident: Any) -> str:
    # ids are uuid columns; anything else cannot match a row
    if not _is_uuid(ident):
        raise NotFoundError(kind, ident)
    return str(ident)


def _job_from_row(row: asyncpg.Record) -> JobRecord:
    return JobRecord(
        id=row["id"],
        job_number=row["job_number"],
        proposal_id=row["proposal_id"],
        status=row["status"],
        stage_data=JobStageData(
            stage=catalog.parse_stage(row["stage"]),
            stage_steps=parse_stage_steps(_as_json(row["stage_steps"])),
            stage_history=parse_stage_history(_as_json(row["stage_history"])),
        ),
        scheduled_date=parse_dt(row["scheduled_date"]),
        assigned_to=row["assigned_to"],
        version=row["version"],
    )


def _proposal_from_row(row: asyncpg.Record) -> ProposalRecord:
    return ProposalRecord(**dict(row))


class PostgresStageStore(StageStore):
    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    async def get_job(self, job_id: str) -> JobRecord:
        row = await self.conn.fetchrow(LOAD_JOB_SQL, _id_or_not_found("Job", job_id))
        if not row:
            raise NotFoundError("Job", job_id)
        return _job_from_row(row)

    async def save_job(self, job: JobRecord, data: JobStageData, status: str) -> JobRecord:
        row = await self.conn.fetchrow(
            SAVE_JOB_SQL,
            job.id,
            data.stage,
            dump_stage_steps(data.stage_steps),
            dump_stage_history(data.stage_history),
            status,
            job.version,
        )
        if not row:
            raise ConcurrencyConflict(job.id, job.version)
        return _job_from_row(row)

    async def list_active_jobs(
        self, *, job_id: Optional[str] = None, limit: Optional[int] = None
    ) -> list[JobRecord]:
        if job_id is not None and not _is_uuid(job_id):
            return []
        rows = await self.conn.fetch(
            LIST_ACTIVE_JOBS_SQL, catalog.ACTIVE_STAGES, job_id, limit
        )
        return [_job_from_row(r) for r in rows]

    async def stage_counts(self) -> dict[str, int]:
        rows = await self.conn.fetch(STAGE_COUNTS_SQL, catalog.ACTIVE_STAGES)
        counts = {stage: 0 for stage in catalog.ACTIVE_STAGES}
        for r in rows:
            counts[r["stage"]] = r["n"]
        return counts

    async def get_proposal(self, proposal_id: str) -> ProposalRecord:
        row = await self.conn.fetchrow(
            LOAD_PROPOSAL_SQL, _id_or_not_found("Proposal", proposal_id)
        )
        if not row:
            raise NotFoundError("Proposal", proposal_id)
        return _proposal_from_row(row)

    async def find_job_for_proposal(self, proposal_id: str) -> JobRecord:
        row = await self.conn.fetchrow(
            FIND_JOB_FOR_PROPOSAL_SQL, _id_or_not_found("Job for proposal", proposal_id)
        )
        if not row:
            raise NotFoundError("Job for proposal", proposal_id)
        return _job_from_row(row)

    async def update_proposal(self, proposal_id: str, **fields: Any) -> ProposalRecord:
        unknown = set(fields) - set(PROPOSAL_WRITABLE)
        if unknown:
            raise ValueError(f"Proposal columns not writable here: {sorted(unknown)}")
        if not fields:
            return await self.get_proposal(proposal_id)
        proposal_id = _id_or_not_found("Proposal", proposal_id)

        assignments = []
        args: list[Any] = [proposal_id]
        for name, value in fields.items():
            args.append(value)
            assignments.append(f"{name} = ${len(args)}::{PROPOSAL_WRITABLE[name]}")
        sql = f"""
            UPDATE proposals
            SET {", ".join(assignments)}, updated_at = now()
            WHERE id = $1::uuid
            RETURNING {PROPOSAL_COLUMNS};
        """
        row = await self.conn.fetchrow(sql, *args)
        if not row:
            raise NotFoundError("Proposal", proposal_id)
        return _proposal_from_row(row)

    async def set_job_facts(
        self,
        job: JobRecord,
        *,
        scheduled_date: Optional[datetime] = None,
        assigned_to: Optional[str] = None,
    ) -> JobRecord:
        if assigned_to is not None and not _is_uuid(assigned_to):
            raise ValidationError(f"Technician id must be a UUID: {assigned_to!r}")
        row = await self.conn.fetchrow(
            SET_JOB_FACTS_SQL, job.id, scheduled_date, assigned_to, job.version
        )
        if not row:
            raise ConcurrencyConflict(job.id, job.version)
        return _job_from_row(row)


# ---------------------------------------------------------------------------
# In-memory (dev/test)
# ---------------------------------------------------------------------------

class InMemoryStageStore(StageStore):
    """Process-local store with the same version semantics as Postgres."""

    def __init__(self) -> None:
        self.jobs: dict[str, JobRecord] = {}
        self.proposals: dict[str, ProposalRecord] = {}
        # insertion order stands in for created_at
        self._order: list[str] = []

    def add_job(self, job: JobRecord) -> JobRecord:
        if job.id not in self.jobs:
            self._order.append(job.id)
        self.jobs[job.id] = job
        return job

    def add_proposal(self, proposal: ProposalRecord) -> ProposalRecord:
        self.proposals[proposal.id] = proposal
        return proposal

    async def get_job(self, job_id: str) -> JobRecord:
        try:
            return self.jobs[job_id]
        except KeyError:
            raise NotFoundError("Job", job_id) from None

    async def save_job(self, job: JobRecord, data: JobStageData, status: str) -> JobRecord:
        current = await self.get_job(job.id)
        if current.version != job.version:
            raise ConcurrencyConflict(job.id, job.version)
        saved = replace(
            current,
            status=status,
            stage_data=JobStageData(
                stage=data.stage,
                stage_steps=dict(data.stage_steps),
                stage_history=list(data.stage_history),
            ),
            version=current.version + 1,
        )
        self.jobs[job.id] = saved
        return saved

    async def list_active_jobs(
        self, *, job_id: Optional[str] = None, limit: Optional[int] = None
    ) -> list[JobRecord]:
        jobs = [
            self.jobs[i]
            for i in reversed(self._order)
            if self.jobs[i].stage in catalog.ACTIVE_STAGES
            and (job_id is None or i == job_id)
        ]
        return jobs if limit is None else jobs[:limit]

    async def stage_counts(self) -> dict[str, int]:
        counts = {stage: 0 for stage in catalog.ACTIVE_STAGES}
        for job in self.jobs.values():
            if job.stage in counts:
                counts[job.stage] += 1
        return counts

    async def get_proposal(self, proposal_id: str) -> ProposalRecord:
        try:
            return self.proposals[proposal_id]
        except KeyError:
            raise NotFoundError("Proposal", proposal_id) from None

    async def find_job_for_proposal(self, proposal_id: str) -> JobRecord:
        for job_id in reversed(self._order):
            if self.jobs[job_id].proposal_id == proposal_id:
                return self.jobs[job_id]
        raise NotFoundError("Job for proposal", proposal_id)

    async def update_proposal(self, proposal_id: str, **fields: Any) -> ProposalRecord:
        unknown = set(fields) - set(PROPOSAL_WRITABLE)
        if unknown:
            raise ValueError(f"Proposal columns not writable here: {sorted(unknown)}")
        proposal = replace(await self.get_proposal(proposal_id), **fields)
        self.proposals[proposal_id] = proposal
        return proposal

    async def set_job_facts(
        self,
        job: JobRecord,
        *,
        scheduled_date: Optional[datetime] = None,
        assigned_to: Optional[str] = None,
    ) -> JobRecord:
        current = await self.get_job(job.id)
        if current.version != job.version:
            raise ConcurrencyConflict(job.id, job.version)
        saved = replace(
            current,
            scheduled_date=scheduled_date or current.scheduled_date,
            assigned_to=assigned_to or current.assigned_to,
            version=current.version + 1,
        )
        self.jobs[job.id] = saved
        return saved
