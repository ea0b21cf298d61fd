"""
Backfill: re-run every auto-completion trigger against current data.

Repairs checklists that drifted from reality (missed webhooks, jobs
created before a trigger existed, steps deferred until the job reached
their stage). Safe to run repeatedly: a second pass over unchanged data
completes nothing.

Jobs are processed one at a time, each in its own error boundary, so one
corrupt job never blocks the rest of the batch.
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Optional

from app.stages.errors import AuthorizationError
from app.stages.models import BACKFILL
from app.stages.store import StageStore
from app.stages.trace_logger import log_backfill_run
from app.stages.triggers import collect_batches
from app.stages.transitions import complete_batches

logger = logging.getLogger(__name__)

DEFAULT_MAX_JOBS = 500


@dataclass
class BackfillJobResult:
    job_id: str
    job_ref: str
    steps_completed: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)


@dataclass
class BackfillReport:
    jobs_processed: int = 0
    jobs_updated: int = 0
    total_steps_completed: int = 0
    errors: list[str] = field(default_factory=list)
    jobs: list[BackfillJobResult] = field(default_factory=list)
    truncated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobs_processed": self.jobs_processed,
            "jobs_updated": self.jobs_updated,
            "total_steps_completed": self.total_steps_completed,
            "errors": list(self.errors),
            "truncated": self.truncated,
            "jobs": [
                {
                    "job_id": r.job_id,
                    "job_ref": r.job_ref,
                    "steps_completed": r.steps_completed,
                    "deferred": r.deferred,
                }
                for r in self.jobs
            ],
        }


async def backfill(
    store: StageStore,
    job_id: Optional[str] = None,
    *,
    max_jobs: int = DEFAULT_MAX_JOBS,
) -> BackfillReport:
    report = BackfillReport()

    # One extra row tells us whether the cap cut the batch short
    jobs = await store.list_active_jobs(job_id=job_id, limit=max_jobs + 1)
    if len(jobs) > max_jobs:
        report.truncated = True
        jobs = jobs[:max_jobs]
        logger.warning("Backfill capped at %d jobs; remaining jobs wait for the next run", max_jobs)

    for job in jobs:
        report.jobs_processed += 1
        try:
            batches = await collect_batches(store, job)
            result = await complete_batches(store, job.id, batches, actor=BACKFILL)
        except Exception as e:
            msg = f"{job.ref}: {e}"
            report.errors.append(msg)
            logger.error("Backfill failed for %s", msg)
            continue

        report.jobs.append(
            BackfillJobResult(
                job_id=job.id,
                job_ref=job.ref,
                steps_completed=result.changed,
                deferred=result.deferred,
            )
        )
        if result.changed:
            report.jobs_updated += 1
            report.total_steps_completed += len(result.changed)
            logger.info("Backfill %s: %d steps completed", job.ref, len(result.changed))
        else:
            logger.debug("Backfill %s: no steps to complete", job.ref)

    log_backfill_run(
        job_id=job_id,
        jobs_processed=report.jobs_processed,
        jobs_updated=report.jobs_updated,
        total_steps_completed=report.total_steps_completed,
        error_count=len(report.errors),
        truncated=report.truncated,
    )
    return report


async def stage_counts(store: StageStore) -> dict[str, int]:
    counts = await store.stage_counts()
    return {**counts, "total": sum(counts.values())}


def verify_cron_secret(authorization: Optional[str], secret: str) -> None:
    """Check an `Authorization: Bearer <secret>` header. An empty secret rejects everything."""
    if not secret:
        raise AuthorizationError("Backfill is disabled: no cron secret configured")
    expected = f"Bearer {secret}"
    if not authorization or not secrets.compare_digest(authorization, expected):
        raise AuthorizationError()
