"""
Payment stage matching: which proposal milestone a received payment pays.

Milestones are checked in a fixed priority order (deposit, rough-in,
final); the first amount within tolerance wins, otherwise the payment is
"partial". When more than one milestone is within tolerance the first
match is still returned, and the payment is flagged for manual review.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from app.stages.models import ProposalRecord

logger = logging.getLogger(__name__)

DEPOSIT = "deposit"
ROUGH_IN = "rough_in"
FINAL = "final"
PARTIAL = "partial"

DEFAULT_TOLERANCE = 5.0

# Priority order matters; do not sort by closeness
MILESTONE_FIELDS: list[tuple[str, str]] = [
    (DEPOSIT, "deposit_amount"),
    (ROUGH_IN, "progress_payment_amount"),
    (FINAL, "final_payment_amount"),
]

# milestone -> proposal column holding its paid timestamp
PAID_AT_FIELDS: dict[str, str] = {
    DEPOSIT: "deposit_paid_at",
    ROUGH_IN: "progress_paid_at",
    FINAL: "final_paid_at",
}


@dataclass(frozen=True)
class PaymentMatch:
    stage: str
    candidates: tuple[str, ...]

    @property
    def needs_review(self) -> bool:
        return len(self.candidates) > 1


def _milestone_amount(proposal: ProposalRecord, attr: str) -> float:
    return float(getattr(proposal, attr) or 0)


def matching_milestones(
    proposal: ProposalRecord, paid_amount: float, tolerance: float = DEFAULT_TOLERANCE
) -> list[str]:
    return [
        stage
        for stage, attr in MILESTONE_FIELDS
        if abs(paid_amount - _milestone_amount(proposal, attr)) <= tolerance
    ]


def identify_payment_stage(
    proposal: ProposalRecord, paid_amount: float, tolerance: float = DEFAULT_TOLERANCE
) -> str:
    matches = matching_milestones(proposal, paid_amount, tolerance)
    return matches[0] if matches else PARTIAL


def classify_payment(
    proposal: ProposalRecord, paid_amount: float, tolerance: float = DEFAULT_TOLERANCE
) -> PaymentMatch:
    matches = matching_milestones(proposal, paid_amount, tolerance)
    match = PaymentMatch(stage=matches[0] if matches else PARTIAL, candidates=tuple(matches))
    if match.needs_review:
        logger.warning(
            "Payment of %.2f on proposal %s is within %.2f of several milestones %s; "
            "using %s, flag for review",
            paid_amount,
            proposal.id,
            tolerance,
            list(matches),
            match.stage,
        )
    return match


def paid_at_field(stage: str) -> Optional[str]:
    return PAID_AT_FIELDS.get(stage)
