"""
Legacy status <-> stage synchronization.

Filters and kanban columns still key off the old free-form `status` label,
so every write that touches either field derives the other one here.

The two tables below are NOT inverses of each other:
- STATUS_TO_STAGE is many-to-one (14 statuses -> 5 stages)
- CANONICAL_STATUS picks one default status per stage
A round trip status -> stage -> status yields a status consistent with the
stage, not necessarily the original one. Keep it that way.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from app.stages import catalog
from app.stages.catalog import BEGINNING, CLOSING, COMPLETED, ROUGH_IN, TRIM_OUT
from app.stages.errors import ValidationError

STATUS_FIELD = "status"
STAGE_FIELD = "stage"

# Legacy statuses, grouped the way the jobs page shows them
STATUS_TO_STAGE: dict[str, str] = {
    # Planning and preparation
    "not_scheduled": BEGINNING,
    "estimate": BEGINNING,
    "scheduled": BEGINNING,
    "ask_vadim": BEGINNING,
    # Active installation work
    "working_on_it": ROUGH_IN,
    "parts_needed": ROUGH_IN,
    # Finishing and startup
    "start_up": TRIM_OUT,
    # Final invoicing and warranty
    "sent_invoice": CLOSING,
    "warranty": CLOSING,
    "warranty_no_charge": CLOSING,
    # Finished
    "done": COMPLETED,
    "completed": COMPLETED,
    "archived": COMPLETED,
    "cancelled": COMPLETED,
}

ALL_STATUSES: frozenset[str] = frozenset(STATUS_TO_STAGE)

CANONICAL_STATUS: dict[str, str] = {
    BEGINNING: "not_scheduled",
    ROUGH_IN: "working_on_it",
    TRIM_OUT: "start_up",
    CLOSING: "sent_invoice",
    COMPLETED: "completed",
}

STATUS_LABELS: dict[str, str] = {
    "not_scheduled": "Not Scheduled",
    "estimate": "Estimate",
    "scheduled": "Scheduled",
    "ask_vadim": "Ask Vadim",
    "start_up": "Start Up",
    "working_on_it": "Working On It",
    "parts_needed": "Parts Needed",
    "done": "Done",
    "sent_invoice": "Invoice Sent",
    "warranty": "Warranty",
    "warranty_no_charge": "Warranty (No Charge)",
    "completed": "Completed",
    "archived": "Archived",
    "cancelled": "Cancelled",
}

FILTER_GROUP_DESCRIPTIONS: dict[str, str] = {
    BEGINNING: "Planning and preparation",
    ROUGH_IN: "Active installation work",
    TRIM_OUT: "Finishing and startup",
    CLOSING: "Final invoicing and warranty",
    COMPLETED: "Finished jobs",
}


@dataclass(frozen=True)
class SyncResult:
    status: str
    stage: str


def is_valid_status(value: Any) -> bool:
    return isinstance(value, str) and value in ALL_STATUSES


def parse_status(value: Any) -> str:
    if not is_valid_status(value):
        raise ValidationError(f"Unknown status: {value!r}")
    return value


def stage_for_status(status: str) -> str:
    return STATUS_TO_STAGE[parse_status(status)]


def canonical_status_for_stage(stage: str) -> str:
    return CANONICAL_STATUS[catalog.parse_stage(stage)]


def sync(
    current_status: str,
    current_stage: str,
    current_steps: Mapping[str, Any],
    changed_field: str,
) -> SyncResult:
    """
    Derive the field the caller did not change from the one it did.

    Step data is never consulted or rewritten: after a status edit the
    checklist may under- or over-represent the new stage, and that loss of
    fidelity is accepted rather than patched over here.
    """
    if changed_field == STATUS_FIELD:
        status = parse_status(current_status)
        return SyncResult(status=status, stage=STATUS_TO_STAGE[status])
    if changed_field == STAGE_FIELD:
        stage = catalog.parse_stage(current_stage)
        return SyncResult(status=CANONICAL_STATUS[stage], stage=stage)
    raise ValidationError(f"changed_field must be 'status' or 'stage', got {changed_field!r}")


def statuses_for_stage(stage: str) -> list[str]:
    stage = catalog.parse_stage(stage)
    return [status for status, s in STATUS_TO_STAGE.items() if s == stage]


def status_filter_groups() -> list[dict[str, Any]]:
    """Statuses grouped per stage, in stage order, for filter dropdowns."""
    return [
        {
            "stage": stage,
            "label": catalog.stage_name(stage),
            "description": FILTER_GROUP_DESCRIPTIONS[stage],
            "statuses": statuses_for_stage(stage),
        }
        for stage in catalog.stages_in_order()
    ]


def all_statuses_in_stage_order() -> list[str]:
    return [s for group in status_filter_groups() for s in group["statuses"]]


def status_label(status: str) -> str:
    return STATUS_LABELS.get(status, status)


def consistency_warnings(status: str, stage: str) -> list[str]:
    """Report (never fix) a status that points at a different stage."""
    expected = stage_for_status(status)
    if expected != catalog.parse_stage(stage):
        return [f'Status "{status}" suggests stage "{expected}" but job is in stage "{stage}"']
    return []
