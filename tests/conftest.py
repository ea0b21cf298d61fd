from __future__ import annotations

from typing import Optional

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.stages.models import JobRecord, JobStageData, ProposalRecord, StepStatus, utc_now
from app.stages.routes import get_store
from app.stages.store import InMemoryStageStore


def done(*step_ids: str, auto: bool = False) -> dict[str, StepStatus]:
    at = utc_now()
    return {
        step_id: StepStatus(completed=True, completed_at=at, auto_completed=auto)
        for step_id in step_ids
    }


def make_job(
    job_id: str = "job-1",
    *,
    stage: str = "beginning",
    status: str = "not_scheduled",
    steps: Optional[dict[str, StepStatus]] = None,
    **fields,
) -> JobRecord:
    return JobRecord(
        id=job_id,
        status=status,
        stage_data=JobStageData(stage=stage, stage_steps=dict(steps or {})),
        **fields,
    )


def make_proposal(proposal_id: str = "prop-1", **fields) -> ProposalRecord:
    defaults = {
        "status": "sent",
        "deposit_amount": 500.0,
        "progress_payment_amount": 300.0,
        "final_payment_amount": 200.0,
    }
    defaults.update(fields)
    return ProposalRecord(id=proposal_id, **defaults)


@pytest.fixture
def store() -> InMemoryStageStore:
    return InMemoryStageStore()


@pytest.fixture
def client(store):
    app.dependency_overrides[get_store] = lambda: store
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
