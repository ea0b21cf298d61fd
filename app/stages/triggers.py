"""
Auto-completion triggers: business facts -> checklist steps.

The on_* functions are pure: they turn one domain fact into a
CompletionBatch and know nothing about the job's current state. The
handle_* functions load what they need, record the fact where it belongs,
and apply the batches through the transition engine, which makes replays
harmless (already-completed steps are not rewritten or reported).

Triggers never advance a stage unless the caller passes auto_advance=True.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from app.stages import payments
from app.stages.errors import ValidationError
from app.stages.models import AUTO, JobRecord, ProposalRecord, utc_now
from app.stages.store import StageStore
from app.stages.transitions import CompletionBatch, StepCompletionResult, complete_batches

logger = logging.getLogger(__name__)

JOB_SCHEDULED = "job_scheduled"
TECHNICIAN_ASSIGNED = "technician_assigned"
JOB_EVENTS: frozenset[str] = frozenset([JOB_SCHEDULED, TECHNICIAN_ASSIGNED])

# payment milestone -> (invoice-sent step, invoice-paid step)
MILESTONE_STEPS: dict[str, tuple[str, str]] = {
    payments.DEPOSIT: ("deposit_invoice_sent", "deposit_invoice_paid"),
    payments.ROUGH_IN: ("rough_in_invoice_sent", "rough_in_invoice_paid"),
    payments.FINAL: ("final_invoice_sent", "final_invoice_paid"),
}

MILESTONE_LABELS: dict[str, str] = {
    payments.DEPOSIT: "deposit",
    payments.ROUGH_IN: "progress",
    payments.FINAL: "final",
}


# ---------------------------------------------------------------------------
# Pure mappings
# ---------------------------------------------------------------------------

def on_proposal_approved(approved_at: Optional[datetime] = None) -> CompletionBatch:
    return CompletionBatch(
        step_ids=("proposal_approved",),
        completed_at=approved_at,
        notes="Auto-completed from proposal approval",
        source="proposal_approved",
    )


def on_invoice_sent(milestone: str, invoice_id: str) -> CompletionBatch:
    if milestone not in MILESTONE_STEPS:
        raise ValidationError(f"Unknown payment milestone: {milestone!r}")
    return CompletionBatch(
        step_ids=(MILESTONE_STEPS[milestone][0],),
        notes=f"Auto-completed from {MILESTONE_LABELS[milestone]} invoice ({invoice_id})",
        source=f"{milestone}_invoice_sent",
    )


def on_payment_received(milestone: str, paid_at: Optional[datetime] = None) -> Optional[CompletionBatch]:
    """None for a partial payment: it pays no milestone, so no step moves."""
    if milestone == payments.PARTIAL:
        return None
    if milestone not in MILESTONE_STEPS:
        raise ValidationError(f"Unknown payment milestone: {milestone!r}")
    return CompletionBatch(
        step_ids=(MILESTONE_STEPS[milestone][1],),
        completed_at=paid_at,
        notes=f"Auto-completed from proposal {MILESTONE_LABELS[milestone]} payment",
        source=f"{milestone}_paid",
    )


def on_job_scheduled(scheduled_for: datetime) -> CompletionBatch:
    return CompletionBatch(
        step_ids=("job_scheduled",),
        notes=f"Auto-completed from scheduled date ({scheduled_for.date().isoformat()})",
        source=JOB_SCHEDULED,
    )


def on_technician_assigned(technician_id: str) -> CompletionBatch:
    return CompletionBatch(
        step_ids=("technician_assigned",),
        notes=f"Auto-completed from technician assignment ({technician_id})",
        source=TECHNICIAN_ASSIGNED,
    )


def deltas_from_proposal(proposal: ProposalRecord) -> list[CompletionBatch]:
    """Every batch the proposal's current facts justify, in checklist order."""
    batches: list[CompletionBatch] = []
    if proposal.is_approved:
        batches.append(on_proposal_approved(proposal.approved_at))

    facts = [
        (payments.DEPOSIT, proposal.deposit_invoice_id, proposal.deposit_paid_at),
        (payments.ROUGH_IN, proposal.roughin_invoice_id, proposal.progress_paid_at),
        (payments.FINAL, proposal.final_invoice_id, proposal.final_paid_at),
    ]
    for milestone, invoice_id, paid_at in facts:
        if invoice_id:
            batches.append(on_invoice_sent(milestone, invoice_id))
        if paid_at:
            batches.append(on_payment_received(milestone, paid_at))
    return batches


def deltas_from_job(job: JobRecord) -> list[CompletionBatch]:
    batches: list[CompletionBatch] = []
    if job.scheduled_date:
        batches.append(on_job_scheduled(job.scheduled_date))
    if job.assigned_to:
        batches.append(on_technician_assigned(job.assigned_to))
    return batches


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def fire(
    store: StageStore,
    job_id: str,
    batches: list[CompletionBatch],
    *,
    actor: str = AUTO,
    auto_advance: bool = False,
) -> StepCompletionResult:
    result = await complete_batches(
        store, job_id, batches, actor=actor, auto_advance=auto_advance
    )
    if result.changed:
        logger.info(
            "Job %s: %s completed %s",
            job_id,
            "/".join(b.source or "trigger" for b in batches),
            ", ".join(result.changed),
        )
    return result


async def handle_proposal_approved(
    store: StageStore,
    proposal_id: str,
    *,
    approved_at: Optional[datetime] = None,
    auto_advance: bool = False,
) -> StepCompletionResult:
    proposal = await store.get_proposal(proposal_id)
    if not proposal.is_approved:
        proposal = await store.update_proposal(
            proposal_id,
            status="approved",
            approved_at=approved_at or proposal.approved_at or utc_now(),
        )
    job = await store.find_job_for_proposal(proposal_id)
    return await fire(
        store, job.id, [on_proposal_approved(proposal.approved_at)], auto_advance=auto_advance
    )


@dataclass
class PaymentOutcome:
    match: payments.PaymentMatch
    proposal: ProposalRecord
    result: Optional[StepCompletionResult] = None

    @property
    def changed(self) -> list[str]:
        return self.result.changed if self.result else []


async def handle_payment_received(
    store: StageStore,
    proposal_id: str,
    amount: float,
    *,
    paid_at: Optional[datetime] = None,
    tolerance: float = payments.DEFAULT_TOLERANCE,
    auto_advance: bool = False,
) -> PaymentOutcome:
    proposal = await store.get_proposal(proposal_id)
    match = payments.classify_payment(proposal, amount, tolerance)
    outcome = PaymentOutcome(match=match, proposal=proposal)
    if match.stage == payments.PARTIAL:
        logger.info("Payment of %.2f on proposal %s matched no milestone", amount, proposal_id)
        return outcome

    column = payments.paid_at_field(match.stage)
    if getattr(proposal, column) is None:
        proposal = await store.update_proposal(proposal_id, **{column: paid_at or utc_now()})
        outcome.proposal = proposal

    job = await store.find_job_for_proposal(proposal_id)
    outcome.result = await fire(
        store,
        job.id,
        [on_payment_received(match.stage, getattr(proposal, column))],
        auto_advance=auto_advance,
    )
    return outcome


async def handle_job_event(
    store: StageStore,
    job_id: str,
    event: str,
    *,
    at: Optional[datetime] = None,
    technician_id: Optional[str] = None,
    auto_advance: bool = False,
) -> StepCompletionResult:
    job = await store.get_job(job_id)
    if event == JOB_SCHEDULED:
        scheduled_for = at or job.scheduled_date
        if scheduled_for is None:
            raise ValidationError("job_scheduled needs a scheduled date")
        if job.scheduled_date != scheduled_for:
            job = await store.set_job_facts(job, scheduled_date=scheduled_for)
        batch = on_job_scheduled(scheduled_for)
    elif event == TECHNICIAN_ASSIGNED:
        technician = technician_id or job.assigned_to
        if not technician:
            raise ValidationError("technician_assigned needs a technician id")
        if job.assigned_to != technician:
            job = await store.set_job_facts(job, assigned_to=technician)
        batch = on_technician_assigned(technician)
    else:
        raise ValidationError(f"Unknown job event: {event!r}")
    return await fire(store, job.id, [batch], auto_advance=auto_advance)


async def collect_batches(store: StageStore, job: JobRecord) -> list[CompletionBatch]:
    batches = deltas_from_job(job)
    if job.proposal_id:
        proposal = await store.get_proposal(job.proposal_id)
        batches.extend(deltas_from_proposal(proposal))
    return batches


async def initialize_job_stage(store: StageStore, job_id: str) -> StepCompletionResult:
    """Seed a newly created job's checklist from its own fields and its proposal."""
    job = await store.get_job(job_id)
    return await fire(store, job.id, await collect_batches(store, job))
