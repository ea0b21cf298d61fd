from __future__ import annotations

import logging
from typing import Any, AsyncGenerator, Optional

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, ConfigDict, Field

from app.config import settings
from app.db import get_pool
from app.stages import backfill as backfill_ops
from app.stages import catalog, sync, transitions, triggers
from app.stages.errors import BadRequestError
from app.stages.models import ProposalRecord, iso, parse_dt
from app.stages.store import InMemoryStageStore, PostgresStageStore, StageStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["stages"])

_memory_store: Optional[InMemoryStageStore] = None

STAGE_ACTIONS = ("complete_step", "uncomplete_step", "advance_stage")


# ---------------------------------------------------------------------------
# Store dependency
# ---------------------------------------------------------------------------

def memory_store() -> InMemoryStageStore:
    global _memory_store
    if _memory_store is None:
        _memory_store = InMemoryStageStore()
    return _memory_store


async def get_store() -> AsyncGenerator[StageStore, None]:
    if settings.stage_store == "memory":
        yield memory_store()
        return
    pool = await get_pool()
    async with pool.acquire() as conn:
        yield PostgresStageStore(conn)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class JobEditRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId")
    status: Optional[str] = None
    stage: Optional[str] = None
    stage_steps: Optional[dict[str, Any]] = None
    stage_history: Optional[list[Any]] = None
    changed_by: Optional[str] = None


class StageActionRequest(BaseModel):
    action: str
    step_id: Optional[str] = None
    notes: Optional[str] = None
    completed_by: Optional[str] = None


class StageOverrideRequest(BaseModel):
    stage: str
    changed_by: Optional[str] = None
    notes: Optional[str] = None


class BackfillRequest(BaseModel):
    job_id: Optional[str] = None


class ApproveRequest(BaseModel):
    approved_at: Optional[str] = None
    auto_advance: bool = False


class PaymentRequest(BaseModel):
    amount: float
    paid_at: Optional[str] = None
    auto_advance: bool = False


class JobEventRequest(BaseModel):
    event: str
    at: Optional[str] = None
    technician_id: Optional[str] = None
    auto_advance: bool = False


def _proposal_dict(proposal: ProposalRecord) -> dict[str, Any]:
    return {
        "id": proposal.id,
        "status": proposal.status,
        "approved_at": iso(proposal.approved_at),
        "deposit_paid_at": iso(proposal.deposit_paid_at),
        "progress_paid_at": iso(proposal.progress_paid_at),
        "final_paid_at": iso(proposal.final_paid_at),
    }


def _completion_dict(result: transitions.StepCompletionResult) -> dict[str, Any]:
    return {
        "changed": result.changed,
        "deferred": result.deferred,
        "should_advance": result.should_advance,
        "advanced_to": result.advanced_to,
        "stage": result.job.stage,
        "status": result.job.status,
    }


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

@router.put("/jobs")
async def edit_job(body: JobEditRequest, store: StageStore = Depends(get_store)):
    job = await transitions.apply_job_edit(
        store,
        body.job_id,
        status=body.status,
        stage=body.stage,
        stage_steps=body.stage_steps,
        stage_history=body.stage_history,
        changed_by=body.changed_by,
    )
    return {"job": job.to_dict()}


@router.get("/jobs/{job_id}/stages")
async def get_job_stages(job_id: str, store: StageStore = Depends(get_store)):
    return await transitions.get_stage_progress(store, job_id)


@router.api_route("/jobs/{job_id}/stages", methods=["POST", "PUT"])
async def job_stage_action(
    job_id: str,
    body: StageActionRequest,
    store: StageStore = Depends(get_store),
):
    if body.action not in STAGE_ACTIONS:
        raise BadRequestError(f"action must be one of: {', '.join(STAGE_ACTIONS)}")
    if body.action != "advance_stage" and not body.step_id:
        raise BadRequestError(f"step_id is required for {body.action}")

    if body.action == "complete_step":
        result = await transitions.complete_step(
            store, job_id, body.step_id, completed_by=body.completed_by, notes=body.notes
        )
        message = (
            f"Step {body.step_id} completed"
            if result.changed
            else f"Step {body.step_id} was already completed"
        )
        job = result.job
        step_def = catalog.get_step(catalog.stage_for_step(body.step_id), body.step_id)
        extra = {"should_advance": result.should_advance, "step": step_def.to_dict()}
    elif body.action == "uncomplete_step":
        result = await transitions.uncomplete_step(store, job_id, body.step_id)
        message = f"Step {body.step_id} marked incomplete"
        job = result.job
        extra = {"should_advance": result.should_advance}
    else:
        advanced = await transitions.advance_stage(
            store, job_id, changed_by=body.completed_by, notes=body.notes
        )
        message = f"Advanced from {advanced.from_stage} to {advanced.to_stage}"
        job = advanced.job
        extra = {
            "from_stage": advanced.from_stage,
            "next_steps": [s.to_dict() for s in advanced.steps],
        }

    return {
        "message": message,
        "stage": job.stage,
        "stage_name": catalog.stage_name(job.stage),
        "status": job.status,
        "stage_steps": job.stage_data.to_dict()["stage_steps"],
        **extra,
    }


@router.post("/jobs/{job_id}/stages/override")
async def override_stage(
    job_id: str,
    body: StageOverrideRequest,
    store: StageStore = Depends(get_store),
):
    job = await transitions.force_stage(
        store, job_id, body.stage, changed_by=body.changed_by, notes=body.notes
    )
    return {"job": job.to_dict()}


@router.post("/jobs/{job_id}/stages/initialize")
async def initialize_job(job_id: str, store: StageStore = Depends(get_store)):
    """Seed a new job's checklist from its own fields and its proposal."""
    result = await triggers.initialize_job_stage(store, job_id)
    return _completion_dict(result)


@router.post("/jobs/{job_id}/events")
async def job_event(
    job_id: str,
    body: JobEventRequest,
    store: StageStore = Depends(get_store),
):
    if body.event not in triggers.JOB_EVENTS:
        raise BadRequestError(f"event must be one of: {', '.join(sorted(triggers.JOB_EVENTS))}")
    result = await triggers.handle_job_event(
        store,
        job_id,
        body.event,
        at=parse_dt(body.at),
        technician_id=body.technician_id,
        auto_advance=body.auto_advance,
    )
    return {"event": body.event, **_completion_dict(result)}


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------

@router.post("/proposals/{proposal_id}/approve")
async def approve_proposal(
    proposal_id: str,
    body: Optional[ApproveRequest] = None,
    store: StageStore = Depends(get_store),
):
    body = body or ApproveRequest()
    result = await triggers.handle_proposal_approved(
        store,
        proposal_id,
        approved_at=parse_dt(body.approved_at),
        auto_advance=body.auto_advance,
    )
    proposal = await store.get_proposal(proposal_id)
    return {"proposal": _proposal_dict(proposal), **_completion_dict(result)}


@router.post("/proposals/{proposal_id}/payments")
async def record_payment(
    proposal_id: str,
    body: PaymentRequest,
    store: StageStore = Depends(get_store),
):
    if body.amount <= 0:
        raise BadRequestError("amount must be positive")
    outcome = await triggers.handle_payment_received(
        store,
        proposal_id,
        body.amount,
        paid_at=parse_dt(body.paid_at),
        tolerance=settings.payment_tolerance,
        auto_advance=body.auto_advance,
    )
    resp: dict[str, Any] = {
        "payment_stage": outcome.match.stage,
        "candidates": list(outcome.match.candidates),
        "needs_review": outcome.match.needs_review,
        "proposal": _proposal_dict(outcome.proposal),
        "changed": outcome.changed,
    }
    if outcome.result is not None:
        resp.update(_completion_dict(outcome.result))
    return resp


# ---------------------------------------------------------------------------
# Backfill
# ---------------------------------------------------------------------------

@router.post("/stages/backfill")
async def run_backfill(
    body: Optional[BackfillRequest] = None,
    authorization: Optional[str] = Header(default=None),
    store: StageStore = Depends(get_store),
):
    backfill_ops.verify_cron_secret(authorization, settings.cron_secret)
    job_id = body.job_id if body else None
    report = await backfill_ops.backfill(store, job_id, max_jobs=settings.backfill_max_jobs)
    return report.to_dict()


@router.get("/stages/backfill")
async def backfill_summary(store: StageStore = Depends(get_store)):
    counts = await backfill_ops.stage_counts(store)
    return {"active_jobs": counts}


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

@router.get("/stages/catalog")
async def stage_catalog():
    """Stages, their checklists and the status filter groups, for the jobs UI."""
    stages = []
    for stage in catalog.stages_in_order():
        stages.append({
            "id": stage,
            "name": catalog.stage_name(stage),
            "description": catalog.STAGE_DESCRIPTIONS[stage],
            "order": catalog.STAGE_INDEX[stage],
            "previous_stage": catalog.previous_stage(stage),
            "next_stage": catalog.next_stage(stage),
            "steps": [s.to_dict() for s in catalog.steps_for(stage)],
            "auto_completable_steps": [s.id for s in catalog.auto_completable_steps(stage)],
        })
    return {
        "stages": stages,
        "filter_groups": sync.status_filter_groups(),
        "statuses": [
            {"status": s, "label": sync.status_label(s), "stage": sync.stage_for_status(s)}
            for s in sync.all_statuses_in_stage_order()
        ],
    }
