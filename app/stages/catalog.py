"""
Canonical job stages, their ordering, and each stage's checklist.

Stages are string constants, not a Postgres ENUM.
Adding a step requires only a code change here, not a migration:
stage_steps is stored as JSONB keyed by step id.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from app.stages.errors import ValidationError

# Canonical stages in lifecycle order
BEGINNING = "beginning"
ROUGH_IN = "rough_in"
TRIM_OUT = "trim_out"
CLOSING = "closing"
COMPLETED = "completed"

STAGES_IN_ORDER: list[str] = [
    BEGINNING,
    ROUGH_IN,
    TRIM_OUT,
    CLOSING,
    COMPLETED,
]

# stage -> position (1-indexed, matches the order shown on the kanban board)
STAGE_INDEX: dict[str, int] = {s: i + 1 for i, s in enumerate(STAGES_IN_ORDER)}

ALL_STAGES: frozenset[str] = frozenset(STAGES_IN_ORDER)

# Stages the backfill and kanban treat as "active"
ACTIVE_STAGES: list[str] = [s for s in STAGES_IN_ORDER if s != COMPLETED]

STAGE_NAMES: dict[str, str] = {
    BEGINNING: "Beginning",
    ROUGH_IN: "Rough In",
    TRIM_OUT: "Trim Out",
    CLOSING: "Closing",
    COMPLETED: "Completed",
}

STAGE_DESCRIPTIONS: dict[str, str] = {
    BEGINNING: "Proposal approval through job preparation",
    ROUGH_IN: "Initial installation and inspection",
    TRIM_OUT: "Finishing work and startup preparation",
    CLOSING: "Final startup and completion",
    COMPLETED: "Job finished and archived",
}


@dataclass(frozen=True)
class StepDefinition:
    id: str
    stage: str
    label: str
    description: str
    order: int
    required: bool = True
    auto_completable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "stage": self.stage,
            "label": self.label,
            "description": self.description,
            "order": self.order,
            "required": self.required,
            "auto_completable": self.auto_completable,
        }


def _steps(stage: str, *rows: tuple) -> list[StepDefinition]:
    return [
        StepDefinition(
            id=row[0],
            stage=stage,
            label=row[1],
            description=row[2],
            order=i + 1,
            required=row[3],
            auto_completable=row[4],
        )
        for i, row in enumerate(rows)
    ]


# (id, label, description, required, auto_completable)
STAGE_STEPS: dict[str, list[StepDefinition]] = {
    BEGINNING: _steps(
        BEGINNING,
        ("proposal_approved", "Proposal Approved",
         "Customer has approved the proposal and signed agreement", True, True),
        ("deposit_invoice_sent", "Deposit Invoice Sent",
         "Deposit invoice has been sent to customer", True, True),
        ("deposit_invoice_paid", "Deposit Invoice Paid",
         "Customer has paid the deposit invoice", True, True),
        ("job_scheduled", "Job Scheduled",
         "Installation date has been scheduled with customer", True, True),
        ("technician_assigned", "Technician Assigned",
         "Lead technician has been assigned to the job", True, True),
        ("materials_ordered", "Materials Ordered",
         "All necessary materials and equipment have been ordered", False, False),
        ("ready_to_start", "Ready to Start",
         "All preparations complete, ready to begin installation", True, False),
    ),
    ROUGH_IN: _steps(
        ROUGH_IN,
        ("rough_in_started", "Rough In Started",
         "Rough in work has begun on site", True, False),
        ("rough_in_invoice_sent", "Progress Invoice Sent",
         "Progress payment invoice sent to customer", True, True),
        ("rough_in_invoice_paid", "Progress Invoice Paid",
         "Customer has paid the progress invoice", True, True),
        ("inspection_scheduled", "Inspection Scheduled",
         "City/county inspection has been scheduled", True, False),
        ("inspection_passed", "Inspection Passed",
         "Rough in inspection passed successfully", True, False),
    ),
    TRIM_OUT: _steps(
        TRIM_OUT,
        ("trim_out_scheduled", "Trim Out Scheduled",
         "Return visit scheduled for trim out work", True, False),
        ("trim_out_started", "Trim Out Started",
         "Finishing work has begun", True, False),
        ("trim_out_completed", "Trim Out Completed",
         "All finishing work completed", True, False),
        ("final_invoice_sent", "Final Invoice Sent",
         "Final payment invoice sent to customer", True, True),
        # Startup may proceed while the final payment is pending
        ("final_invoice_paid", "Final Invoice Paid",
         "Customer has paid the final invoice", False, True),
        ("startup_scheduled", "Startup Scheduled",
         "System startup visit scheduled with customer", True, False),
        ("startup_pending", "Startup Pending",
         "Ready for startup, waiting for scheduled date", True, False),
    ),
    CLOSING: _steps(
        CLOSING,
        ("startup_complete", "Startup Complete",
         "System startup performed and operational", True, False),
        ("final_walkthrough", "Final Walkthrough",
         "Final walkthrough completed with customer", True, False),
        ("customer_signed_off", "Customer Signed Off",
         "Customer has signed off on completed work", True, False),
        ("job_complete", "Job Complete",
         "All work finished, ready to archive", True, False),
    ),
    COMPLETED: [],
}

# step id -> owning stage
STEP_STAGE: dict[str, str] = {
    step.id: stage for stage, steps in STAGE_STEPS.items() for step in steps
}


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------

def stages_in_order() -> list[str]:
    return list(STAGES_IN_ORDER)


def is_valid_stage(value: Any) -> bool:
    return isinstance(value, str) and value in ALL_STAGES


def parse_stage(value: Any) -> str:
    if not is_valid_stage(value):
        raise ValidationError(f"Unknown stage: {value!r}")
    return value


def next_stage(stage: str) -> Optional[str]:
    idx = STAGE_INDEX[parse_stage(stage)]
    if idx == len(STAGES_IN_ORDER):
        return None
    return STAGES_IN_ORDER[idx]


def previous_stage(stage: str) -> Optional[str]:
    idx = STAGE_INDEX[parse_stage(stage)]
    if idx == 1:
        return None
    return STAGES_IN_ORDER[idx - 2]


def is_earlier(a: str, b: str) -> bool:
    """True if stage a comes strictly before stage b."""
    return STAGE_INDEX[parse_stage(a)] < STAGE_INDEX[parse_stage(b)]


def stage_name(stage: str) -> str:
    return STAGE_NAMES[parse_stage(stage)]


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

def steps_for(stage: str) -> list[StepDefinition]:
    return list(STAGE_STEPS[parse_stage(stage)])


def required_steps(stage: str) -> list[StepDefinition]:
    return [s for s in steps_for(stage) if s.required]


def auto_completable_steps(stage: str) -> list[StepDefinition]:
    return [s for s in steps_for(stage) if s.auto_completable]


def get_step(stage: str, step_id: str) -> Optional[StepDefinition]:
    for step in steps_for(stage):
        if step.id == step_id:
            return step
    return None


def stage_for_step(step_id: str) -> str:
    try:
        return STEP_STAGE[step_id]
    except KeyError:
        raise ValidationError(f"Unknown step: {step_id!r}") from None


def _is_done(steps: Mapping[str, Any], step_id: str) -> bool:
    status = steps.get(step_id)
    if status is None:
        return False
    # Accept both StepStatus objects and raw JSONB dicts
    if isinstance(status, Mapping):
        return status.get("completed") is True
    return getattr(status, "completed", False) is True


def required_steps_complete(stage: str, steps: Mapping[str, Any]) -> bool:
    return all(_is_done(steps, s.id) for s in required_steps(stage))


def incomplete_required_steps(stage: str, steps: Mapping[str, Any]) -> list[str]:
    return [s.id for s in required_steps(stage) if not _is_done(steps, s.id)]


def completed_step_count(stage: str, steps: Mapping[str, Any]) -> int:
    return sum(1 for s in steps_for(stage) if _is_done(steps, s.id))


def progress_percent(stage: str, steps: Mapping[str, Any]) -> int:
    """
    Share of the stage's checklist that is done, required and optional alike.

    The terminal stage has no checklist and always reports 100.
    """
    total = len(steps_for(stage))
    if total == 0:
        return 100
    return round(100 * completed_step_count(stage, steps) / total)
