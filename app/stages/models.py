"""
Typed views of the job/proposal columns the stage engine reads and writes.

stage_steps and stage_history live in JSONB columns; they are parsed into
dataclasses on load and serialized back on write so nothing downstream
handles raw dicts.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, Optional

from app.stages import catalog
from app.stages.errors import ValidationError

MANUAL = "manual"
AUTO = "auto"
BACKFILL = "backfill"
OVERRIDE = "override"

HISTORY_TRIGGERS: frozenset[str] = frozenset([MANUAL, AUTO, BACKFILL, OVERRIDE])
STEP_ACTORS: frozenset[str] = frozenset([MANUAL, AUTO, BACKFILL])

# Stands in for a missing timestamp on legacy history rows; fixed so
# re-parsing the same row always yields an equal entry
UNKNOWN_AT = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_dt(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        txt = value.strip()
        if txt.endswith("Z"):
            txt = txt[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(txt)
        except ValueError:
            raise ValidationError(f"Invalid timestamp: {value!r}") from None
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    raise ValidationError(f"Invalid timestamp: {value!r}")


def iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class StepStatus:
    completed: bool
    completed_at: Optional[datetime] = None
    auto_completed: bool = False
    completed_by: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Any) -> "StepStatus":
        if not isinstance(raw, dict):
            raise ValidationError(f"Invalid step status: {raw!r}")
        return cls(
            completed=raw.get("completed") is True,
            completed_at=parse_dt(raw.get("completed_at")),
            auto_completed=raw.get("auto_completed") is True,
            completed_by=raw.get("completed_by"),
            notes=raw.get("notes"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "completed": self.completed,
            "completed_at": iso(self.completed_at),
            "auto_completed": self.auto_completed,
        }
        if self.completed_by:
            out["completed_by"] = self.completed_by
        if self.notes:
            out["notes"] = self.notes
        return out


@dataclass(frozen=True)
class StageHistoryEntry:
    from_stage: str
    to_stage: str
    at: datetime
    trigger: str
    changed_by: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Any) -> "StageHistoryEntry":
        if not isinstance(raw, dict):
            raise ValidationError(f"Invalid history entry: {raw!r}")
        if "to_stage" not in raw and "stage" in raw:
            # Rows written before typed history: {stage, entered_at, previous_stage}
            to_stage = catalog.parse_stage(raw["stage"])
            return cls(
                from_stage=catalog.parse_stage(raw.get("previous_stage") or to_stage),
                to_stage=to_stage,
                at=parse_dt(raw.get("entered_at")) or UNKNOWN_AT,
                trigger=MANUAL,
                changed_by=raw.get("changed_by"),
                notes=raw.get("notes"),
            )
        trigger = raw.get("trigger") or MANUAL
        if trigger not in HISTORY_TRIGGERS:
            raise ValidationError(f"Unknown history trigger: {trigger!r}")
        at = parse_dt(raw.get("at"))
        if at is None:
            raise ValidationError("History entry is missing its timestamp")
        return cls(
            from_stage=catalog.parse_stage(raw.get("from_stage")),
            to_stage=catalog.parse_stage(raw.get("to_stage")),
            at=at,
            trigger=trigger,
            changed_by=raw.get("changed_by"),
            notes=raw.get("notes"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "from_stage": self.from_stage,
            "to_stage": self.to_stage,
            "at": iso(self.at),
            "trigger": self.trigger,
        }
        if self.changed_by:
            out["changed_by"] = self.changed_by
        if self.notes:
            out["notes"] = self.notes
        return out


def parse_stage_steps(raw: Any) -> dict[str, StepStatus]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValidationError("stage_steps must be a JSON object")
    return {str(k): StepStatus.from_dict(v) for k, v in raw.items()}


def parse_stage_history(raw: Any) -> list[StageHistoryEntry]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("stage_history must be a JSON array")
    return [StageHistoryEntry.from_dict(item) for item in raw]


def dump_stage_steps(steps: dict[str, StepStatus]) -> dict[str, Any]:
    return {k: v.to_dict() for k, v in steps.items()}


def dump_stage_history(history: list[StageHistoryEntry]) -> list[dict[str, Any]]:
    return [h.to_dict() for h in history]


def check_history_chain(history: list[StageHistoryEntry], initial_stage: str) -> None:
    """Each entry must start where the previous one ended."""
    expected = initial_stage
    for i, entry in enumerate(history):
        if entry.from_stage != expected:
            raise ValidationError(
                f"stage_history[{i}] starts at {entry.from_stage}, expected {expected}"
            )
        expected = entry.to_stage


@dataclass(frozen=True)
class JobStageData:
    stage: str
    stage_steps: dict[str, StepStatus] = field(default_factory=dict)
    stage_history: list[StageHistoryEntry] = field(default_factory=list)

    def with_steps(self, steps: dict[str, StepStatus]) -> "JobStageData":
        return replace(self, stage_steps=dict(steps))

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "stage_steps": dump_stage_steps(self.stage_steps),
            "stage_history": dump_stage_history(self.stage_history),
        }


@dataclass(frozen=True)
class JobRecord:
    id: str
    status: str
    stage_data: JobStageData
    version: int = 0
    job_number: Optional[str] = None
    proposal_id: Optional[str] = None
    scheduled_date: Optional[datetime] = None
    assigned_to: Optional[str] = None

    @property
    def stage(self) -> str:
        return self.stage_data.stage

    @property
    def ref(self) -> str:
        """Human-facing reference used in logs and backfill error lines."""
        if self.job_number:
            return f"Job {self.job_number} ({self.id})"
        return f"Job {self.id}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_number": self.job_number,
            "proposal_id": self.proposal_id,
            "status": self.status,
            **self.stage_data.to_dict(),
            "scheduled_date": iso(self.scheduled_date),
            "assigned_to": self.assigned_to,
            "version": self.version,
            "progress_percent": catalog.progress_percent(
                self.stage, self.stage_data.stage_steps
            ),
        }


@dataclass(frozen=True)
class ProposalRecord:
    id: str
    status: Optional[str] = None
    approved_at: Optional[datetime] = None
    deposit_amount: Optional[float] = None
    progress_payment_amount: Optional[float] = None
    final_payment_amount: Optional[float] = None
    deposit_invoice_id: Optional[str] = None
    deposit_paid_at: Optional[datetime] = None
    roughin_invoice_id: Optional[str] = None
    progress_paid_at: Optional[datetime] = None
    final_invoice_id: Optional[str] = None
    final_paid_at: Optional[datetime] = None

    @property
    def is_approved(self) -> bool:
        return self.status == "approved" and self.approved_at is not None
