"""
Transition engine: step completion and stage advancement.

Every operation follows the same shape:
  load job -> apply a pure change to its JobStageData -> derive status ->
  write once, conditional on the version that was read.

The pure helpers (mark_steps_complete, advanced_data, ...) never touch the
store, so triggers and backfill can fold several changes into one write.

The engine never decides on its own to advance after completing steps;
callers ask for it explicitly (advance_stage, or auto_advance=True).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

from app.stages import catalog, sync
from app.stages.catalog import StepDefinition
from app.stages.errors import StepsIncompleteError, TerminalStageError, ValidationError
from app.stages.models import (
    AUTO,
    BACKFILL,
    MANUAL,
    OVERRIDE,
    STEP_ACTORS,
    JobRecord,
    JobStageData,
    StageHistoryEntry,
    StepStatus,
    check_history_chain,
    parse_stage_history,
    parse_stage_steps,
    utc_now,
)
from app.stages.store import StageStore
from app.stages.trace_logger import log_stage_transition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionBatch:
    """Step ids completed together, sharing one timestamp and note."""

    step_ids: tuple[str, ...]
    completed_at: Optional[datetime] = None
    notes: Optional[str] = None
    source: Optional[str] = None


@dataclass
class StepCompletionResult:
    job: JobRecord
    changed: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    should_advance: bool = False
    advanced_to: Optional[str] = None


@dataclass
class StageAdvanceResult:
    job: JobRecord
    from_stage: str
    to_stage: str
    steps: list[StepDefinition]


# ---------------------------------------------------------------------------
# Pure state changes
# ---------------------------------------------------------------------------

def can_advance(data: JobStageData) -> bool:
    return (
        catalog.next_stage(data.stage) is not None
        and catalog.required_steps_complete(data.stage, data.stage_steps)
    )


def mark_steps_complete(
    data: JobStageData,
    step_ids: Iterable[str],
    *,
    actor: str,
    at: Optional[datetime] = None,
    completed_by: Optional[str] = None,
    notes: Optional[str] = None,
    strict: bool = False,
) -> tuple[JobStageData, list[str], list[str]]:
    """
    Mark steps completed. Returns (data, changed, deferred).

    Already-completed steps are left untouched and not reported.
    Steps of a stage the job has not reached yet are never written: with
    strict=True that is a ValidationError, otherwise they are returned as
    deferred so a later run can complete them once the job gets there.
    """
    if actor not in STEP_ACTORS:
        raise ValidationError(f"Unknown actor: {actor!r}")
    at = at or utc_now()
    steps = dict(data.stage_steps)
    changed: list[str] = []
    deferred: list[str] = []

    for step_id in step_ids:
        step_stage = catalog.stage_for_step(step_id)
        if catalog.is_earlier(data.stage, step_stage):
            if strict:
                raise ValidationError(
                    f"Step {step_id} belongs to {step_stage}; job is still in {data.stage}"
                )
            if step_id not in deferred:
                deferred.append(step_id)
            continue

        existing = steps.get(step_id)
        if existing is not None and existing.completed:
            continue

        steps[step_id] = StepStatus(
            completed=True,
            completed_at=at,
            auto_completed=actor != MANUAL,
            completed_by=completed_by,
            notes=notes,
        )
        changed.append(step_id)

    if not changed:
        return data, changed, deferred
    return data.with_steps(steps), changed, deferred


def mark_step_incomplete(data: JobStageData, step_id: str) -> tuple[JobStageData, bool]:
    step_stage = catalog.stage_for_step(step_id)
    if step_stage != data.stage:
        raise ValidationError(
            f"Step {step_id} belongs to {step_stage}, not the current stage {data.stage}"
        )
    if step_id not in data.stage_steps:
        return data, False
    steps = dict(data.stage_steps)
    del steps[step_id]
    return data.with_steps(steps), True


def advanced_data(
    data: JobStageData,
    *,
    trigger: str,
    at: Optional[datetime] = None,
    changed_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> JobStageData:
    if trigger not in (MANUAL, AUTO, BACKFILL):
        raise ValidationError(f"Unknown advance trigger: {trigger!r}")
    nxt = catalog.next_stage(data.stage)
    if nxt is None:
        raise TerminalStageError(data.stage)
    incomplete = catalog.incomplete_required_steps(data.stage, data.stage_steps)
    if incomplete:
        raise StepsIncompleteError(data.stage, incomplete)

    entry = StageHistoryEntry(
        from_stage=data.stage,
        to_stage=nxt,
        at=at or utc_now(),
        trigger=trigger,
        changed_by=changed_by,
        notes=notes,
    )
    # Steps of earlier stages stay; the new stage starts with none recorded
    return JobStageData(
        stage=nxt,
        stage_steps=dict(data.stage_steps),
        stage_history=[*data.stage_history, entry],
    )


def forced_stage_data(
    data: JobStageData,
    target: str,
    *,
    at: Optional[datetime] = None,
    changed_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> JobStageData:
    """Move forward to target without checking steps; recorded as an override."""
    target = catalog.parse_stage(target)
    if target == data.stage:
        return data
    if catalog.is_earlier(target, data.stage):
        raise ValidationError(f"Cannot move job backward from {data.stage} to {target}")

    entry = StageHistoryEntry(
        from_stage=data.stage,
        to_stage=target,
        at=at or utc_now(),
        trigger=OVERRIDE,
        changed_by=changed_by,
        notes=notes or f"Stage changed from {data.stage} to {target}",
    )
    return JobStageData(
        stage=target,
        stage_steps=dict(data.stage_steps),
        stage_history=[*data.stage_history, entry],
    )


def apply_batches(
    data: JobStageData,
    batches: Iterable[CompletionBatch],
    *,
    actor: str,
    completed_by: Optional[str] = None,
) -> tuple[JobStageData, list[str], list[str]]:
    changed: list[str] = []
    deferred: list[str] = []
    for batch in batches:
        data, c, d = mark_steps_complete(
            data,
            batch.step_ids,
            actor=actor,
            at=batch.completed_at,
            completed_by=completed_by,
            notes=batch.notes,
        )
        changed.extend(c)
        deferred.extend(s for s in d if s not in deferred)
    return data, changed, deferred


def appended_history(
    stored: list[StageHistoryEntry], incoming: list[StageHistoryEntry]
) -> list[StageHistoryEntry]:
    """
    The entries incoming adds on top of stored. Stored entries cannot be
    rewritten; new entries must chain on from the last stored stage (or
    from the first stage for a job with no history) and only move forward.
    """
    if incoming[: len(stored)] != stored:
        raise ValidationError("stage_history can only be appended to, not rewritten")
    added = incoming[len(stored):]
    if not added:
        return []
    start = stored[-1].to_stage if stored else catalog.BEGINNING
    check_history_chain(added, start)
    for entry in added:
        if not catalog.is_earlier(entry.from_stage, entry.to_stage):
            raise ValidationError(
                f"stage_history entry {entry.from_stage} -> {entry.to_stage} does not move forward"
            )
    return added


def stage_progress(job: JobRecord) -> dict[str, Any]:
    stage = job.stage
    steps = job.stage_data.stage_steps
    nxt = catalog.next_stage(stage)
    required_done = catalog.required_steps_complete(stage, steps)
    if sync.is_valid_status(job.status):
        warnings = sync.consistency_warnings(job.status, stage)
    else:
        warnings = [f"Unknown status: {job.status!r}"]
    return {
        "job_id": job.id,
        "current_stage": stage,
        "current_stage_name": catalog.stage_name(stage),
        "status": job.status,
        "status_label": sync.status_label(job.status),
        "warnings": warnings,
        "total_steps": len(catalog.steps_for(stage)),
        "completed_steps": catalog.completed_step_count(stage, steps),
        "percentage": catalog.progress_percent(stage, steps),
        "required_steps_complete": required_done,
        "can_advance": required_done and nxt is not None,
        "previous_stage": catalog.previous_stage(stage),
        "next_stage": nxt,
        "incomplete_required_steps": catalog.incomplete_required_steps(stage, steps),
        "steps": [
            {
                **step.to_dict(),
                "status": steps[step.id].to_dict() if step.id in steps else None,
            }
            for step in catalog.steps_for(stage)
        ],
    }


# ---------------------------------------------------------------------------
# Persisted operations
# ---------------------------------------------------------------------------

async def _commit(
    store: StageStore,
    job: JobRecord,
    data: JobStageData,
    *,
    status: Optional[str] = None,
) -> JobRecord:
    if status is None:
        if data.stage == job.stage:
            status = job.status
        else:
            status = sync.sync(job.status, data.stage, data.stage_steps, sync.STAGE_FIELD).status

    saved = await store.save_job(job, data, status)

    if saved.stage != job.stage:
        last = saved.stage_data.stage_history[-1]
        logger.info("Job %s moved %s -> %s (%s)", job.id, job.stage, saved.stage, last.trigger)
        log_stage_transition(
            job_id=job.id,
            from_stage=job.stage,
            to_stage=saved.stage,
            trigger=last.trigger,
            status=saved.status,
            changed_by=last.changed_by,
        )
    return saved


async def complete_step(
    store: StageStore,
    job_id: str,
    step_id: str,
    *,
    actor: str = MANUAL,
    completed_at: Optional[datetime] = None,
    completed_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> StepCompletionResult:
    """
    Mark one step completed. Idempotent: completing a done step is a
    successful no-op with nothing written.
    """
    job = await store.get_job(job_id)
    data, changed, _ = mark_steps_complete(
        job.stage_data,
        [step_id],
        actor=actor,
        at=completed_at,
        completed_by=completed_by,
        notes=notes,
        strict=True,
    )
    if changed:
        job = await _commit(store, job, data)
    return StepCompletionResult(
        job=job,
        changed=changed,
        should_advance=can_advance(job.stage_data),
    )


async def uncomplete_step(store: StageStore, job_id: str, step_id: str) -> StepCompletionResult:
    job = await store.get_job(job_id)
    data, changed = mark_step_incomplete(job.stage_data, step_id)
    if changed:
        job = await _commit(store, job, data)
    return StepCompletionResult(
        job=job,
        changed=[step_id] if changed else [],
        should_advance=can_advance(job.stage_data),
    )


async def advance_stage(
    store: StageStore,
    job_id: str,
    *,
    trigger: str = MANUAL,
    changed_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> StageAdvanceResult:
    job = await store.get_job(job_id)
    from_stage = job.stage
    data = advanced_data(job.stage_data, trigger=trigger, changed_by=changed_by, notes=notes)
    job = await _commit(store, job, data)
    return StageAdvanceResult(
        job=job,
        from_stage=from_stage,
        to_stage=job.stage,
        steps=catalog.steps_for(job.stage),
    )


async def complete_batches(
    store: StageStore,
    job_id: str,
    batches: list[CompletionBatch],
    *,
    actor: str = AUTO,
    completed_by: Optional[str] = None,
    auto_advance: bool = False,
) -> StepCompletionResult:
    """
    Apply several completion batches in one write.

    With auto_advance, a job whose required steps are all done after the
    batches moves one stage forward, and batches deferred for that stage
    are applied in the same write.
    """
    job = await store.get_job(job_id)
    data, changed, deferred = apply_batches(
        job.stage_data, batches, actor=actor, completed_by=completed_by
    )

    advanced_to = None
    if auto_advance and can_advance(data):
        data = advanced_data(
            data,
            trigger=BACKFILL if actor == BACKFILL else AUTO,
            notes="Auto-advanced after completing all required steps",
        )
        advanced_to = data.stage
        data, more, deferred = apply_batches(data, batches, actor=actor, completed_by=completed_by)
        changed.extend(more)

    if changed or advanced_to:
        job = await _commit(store, job, data)

    if deferred:
        logger.info("Job %s: deferred steps for later stages: %s", job.id, ", ".join(deferred))

    return StepCompletionResult(
        job=job,
        changed=changed,
        deferred=deferred,
        should_advance=can_advance(job.stage_data),
        advanced_to=advanced_to,
    )


async def complete_multiple_steps(
    store: StageStore,
    job_id: str,
    step_ids: list[str],
    *,
    actor: str = AUTO,
    completed_at: Optional[datetime] = None,
    notes: Optional[str] = None,
    auto_advance: bool = False,
) -> StepCompletionResult:
    return await complete_batches(
        store,
        job_id,
        [CompletionBatch(tuple(step_ids), completed_at, notes)],
        actor=actor,
        auto_advance=auto_advance,
    )


async def force_stage(
    store: StageStore,
    job_id: str,
    target: str,
    *,
    changed_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> JobRecord:
    job = await store.get_job(job_id)
    data = forced_stage_data(job.stage_data, target, changed_by=changed_by, notes=notes)
    if data is job.stage_data:
        return job
    logger.warning("Job %s: stage override %s -> %s by %s", job.id, job.stage, data.stage, changed_by)
    return await _commit(store, job, data)


async def get_stage_progress(store: StageStore, job_id: str) -> dict[str, Any]:
    return stage_progress(await store.get_job(job_id))


async def apply_job_edit(
    store: StageStore,
    job_id: str,
    *,
    status: Optional[str] = None,
    stage: Optional[str] = None,
    stage_steps: Optional[dict[str, Any]] = None,
    stage_history: Optional[list[Any]] = None,
    changed_by: Optional[str] = None,
) -> JobRecord:
    """
    Direct edit of the job's status/stage/checklist fields (the jobs form
    and kanban drag-and-drop).

    A changed status is authoritative for the stage; a changed stage is
    authoritative for the status. When both change and disagree, the stage
    wins. Any resulting stage move is an override and cannot go backward.

    Appended stage_history entries must end at the stage the edit leaves
    the job in; when they record the move themselves, no override entry is
    added on top.
    """
    job = await store.get_job(job_id)
    data = job.stage_data
    new_status = job.status
    target = job.stage

    if status is not None and status != job.status:
        result = sync.sync(status, job.stage, data.stage_steps, sync.STATUS_FIELD)
        # The status decides the stage, but never by moving it backward;
        # forced_stage_data below rejects that case.
        new_status, target = result.status, result.stage

    if stage is not None and stage != job.stage:
        result = sync.sync(new_status, stage, data.stage_steps, sync.STAGE_FIELD)
        if new_status != job.status and sync.stage_for_status(new_status) == result.stage:
            # caller set a status that already fits the stage they chose
            target = result.stage
        else:
            new_status, target = result.status, result.stage

    if stage_history is not None:
        added = appended_history(data.stage_history, parse_stage_history(stage_history))
        if added:
            if catalog.is_earlier(target, data.stage):
                raise ValidationError(f"Cannot move job backward from {data.stage} to {target}")
            if added[-1].to_stage != target:
                raise ValidationError(
                    f"stage_history ends at {added[-1].to_stage} but job ends in {target}"
                )
            data = JobStageData(target, dict(data.stage_steps), [*data.stage_history, *added])

    if target != data.stage:
        data = forced_stage_data(data, target, changed_by=changed_by)

    if stage_steps is not None:
        steps = parse_stage_steps(stage_steps)
        for step_id in steps:
            step_stage = catalog.stage_for_step(step_id)
            if catalog.is_earlier(data.stage, step_stage):
                raise ValidationError(
                    f"Step {step_id} belongs to {step_stage}; job is in {data.stage}"
                )
        data = data.with_steps(steps)

    if data == job.stage_data and new_status == job.status:
        return job
    return await _commit(store, job, data, status=new_status)
