import asyncio
from datetime import datetime, timezone

import pytest

from app.stages import payments, triggers
from app.stages.errors import NotFoundError, ValidationError

from tests.conftest import done, make_job, make_proposal


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def linked(store):
    store.add_proposal(make_proposal())
    store.add_job(make_job(proposal_id="prop-1", job_number="J-100"))
    return store


class TestPureMappings:
    """Fact to completion batch mappings."""

    def test_proposal_approved(self):
        at = datetime(2024, 3, 1, tzinfo=timezone.utc)
        batch = triggers.on_proposal_approved(at)
        assert batch.step_ids == ("proposal_approved",)
        assert batch.completed_at == at

    def test_invoice_and_payment_steps(self):
        assert triggers.on_invoice_sent(payments.ROUGH_IN, "inv-9").step_ids == ("rough_in_invoice_sent",)
        assert triggers.on_payment_received(payments.FINAL).step_ids == ("final_invoice_paid",)
        assert triggers.on_payment_received(payments.PARTIAL) is None
        with pytest.raises(ValidationError):
            triggers.on_invoice_sent("tip", "inv-1")

    def test_job_scheduled_notes_include_date(self):
        batch = triggers.on_job_scheduled(datetime(2024, 5, 2, 9, tzinfo=timezone.utc))
        assert "2024-05-02" in batch.notes

    def test_deltas_from_proposal(self):
        proposal = make_proposal(
            status="approved",
            approved_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
            deposit_invoice_id="inv-1",
            deposit_paid_at=datetime(2024, 3, 2, tzinfo=timezone.utc),
            roughin_invoice_id="inv-2",
        )
        ids = [s for b in triggers.deltas_from_proposal(proposal) for s in b.step_ids]
        assert ids == [
            "proposal_approved",
            "deposit_invoice_sent",
            "deposit_invoice_paid",
            "rough_in_invoice_sent",
        ]

    def test_unapproved_proposal_has_no_approval_delta(self):
        proposal = make_proposal(approved_at=datetime(2024, 3, 1, tzinfo=timezone.utc))
        assert triggers.deltas_from_proposal(proposal) == []

    def test_deltas_from_job(self):
        job = make_job(
            scheduled_date=datetime(2024, 5, 2, tzinfo=timezone.utc), assigned_to="tech-1"
        )
        ids = [s for b in triggers.deltas_from_job(job) for s in b.step_ids]
        assert ids == ["job_scheduled", "technician_assigned"]


class TestProposalApproved:
    """Proposal approval trigger."""

    def test_new_job_gets_auto_completed_step(self, linked):
        result = run(triggers.handle_proposal_approved(linked, "prop-1"))
        assert result.changed == ["proposal_approved"]
        step = result.job.stage_data.stage_steps["proposal_approved"]
        assert step.completed and step.auto_completed
        proposal = linked.proposals["prop-1"]
        assert proposal.status == "approved"
        assert step.completed_at == proposal.approved_at

    def test_replay_changes_nothing(self, linked):
        run(triggers.handle_proposal_approved(linked, "prop-1"))
        again = run(triggers.handle_proposal_approved(linked, "prop-1"))
        assert again.changed == []
        assert again.job.version == 1

    def test_does_not_advance(self, linked):
        job = make_job(proposal_id="prop-1", steps=done(
            "deposit_invoice_sent", "deposit_invoice_paid", "job_scheduled",
            "technician_assigned", "ready_to_start",
        ))
        linked.add_job(job)
        result = run(triggers.handle_proposal_approved(linked, "prop-1"))
        assert result.should_advance
        assert result.job.stage == "beginning"

    def test_no_job_for_proposal(self, store):
        store.add_proposal(make_proposal("lonely"))
        with pytest.raises(NotFoundError):
            run(triggers.handle_proposal_approved(store, "lonely"))


class TestPaymentReceived:
    """Payment trigger."""

    def test_deposit_payment(self, linked):
        paid = datetime(2024, 4, 1, tzinfo=timezone.utc)
        outcome = run(triggers.handle_payment_received(linked, "prop-1", 497, paid_at=paid))
        assert outcome.match.stage == payments.DEPOSIT
        assert outcome.proposal.deposit_paid_at == paid
        assert outcome.changed == ["deposit_invoice_paid"]
        step = outcome.result.job.stage_data.stage_steps["deposit_invoice_paid"]
        assert step.completed_at == paid

    def test_partial_payment_changes_nothing(self, linked):
        outcome = run(triggers.handle_payment_received(linked, "prop-1", 123))
        assert outcome.match.stage == payments.PARTIAL
        assert outcome.result is None
        assert outcome.changed == []
        assert linked.jobs["job-1"].version == 0

    def test_future_milestone_is_recorded_but_deferred(self, linked):
        outcome = run(triggers.handle_payment_received(linked, "prop-1", 300))
        assert outcome.match.stage == payments.ROUGH_IN
        assert outcome.proposal.progress_paid_at is not None
        assert outcome.changed == []
        assert outcome.result.deferred == ["rough_in_invoice_paid"]
        assert "rough_in_invoice_paid" not in linked.jobs["job-1"].stage_data.stage_steps

    def test_existing_paid_at_is_kept(self, linked):
        first = datetime(2024, 4, 1, tzinfo=timezone.utc)
        run(triggers.handle_payment_received(linked, "prop-1", 500, paid_at=first))
        outcome = run(triggers.handle_payment_received(
            linked, "prop-1", 500, paid_at=datetime(2024, 5, 1, tzinfo=timezone.utc)
        ))
        assert outcome.proposal.deposit_paid_at == first
        assert outcome.changed == []


class TestJobEvents:
    """Job fact events."""

    def test_job_scheduled_records_date(self, store):
        store.add_job(make_job())
        at = datetime(2024, 6, 3, 8, tzinfo=timezone.utc)
        result = run(triggers.handle_job_event(store, "job-1", triggers.JOB_SCHEDULED, at=at))
        assert result.changed == ["job_scheduled"]
        assert result.job.scheduled_date == at
        assert "2024-06-03" in result.job.stage_data.stage_steps["job_scheduled"].notes

    def test_technician_assigned(self, store):
        store.add_job(make_job())
        result = run(triggers.handle_job_event(
            store, "job-1", triggers.TECHNICIAN_ASSIGNED, technician_id="tech-7"
        ))
        assert result.changed == ["technician_assigned"]
        assert result.job.assigned_to == "tech-7"

    def test_missing_facts(self, store):
        store.add_job(make_job())
        with pytest.raises(ValidationError):
            run(triggers.handle_job_event(store, "job-1", triggers.JOB_SCHEDULED))
        with pytest.raises(ValidationError):
            run(triggers.handle_job_event(store, "job-1", triggers.TECHNICIAN_ASSIGNED))

    def test_unknown_event(self, store):
        store.add_job(make_job())
        with pytest.raises(ValidationError):
            run(triggers.handle_job_event(store, "job-1", "job_cancelled"))


class TestInitializeJobStage:
    """Seeding a new job's checklist."""

    def test_seeds_from_job_and_proposal(self, store):
        store.add_proposal(make_proposal(
            status="approved",
            approved_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
            deposit_invoice_id="inv-1",
        ))
        store.add_job(make_job(proposal_id="prop-1", assigned_to="tech-1"))
        result = run(triggers.initialize_job_stage(store, "job-1"))
        assert sorted(result.changed) == [
            "deposit_invoice_sent", "proposal_approved", "technician_assigned",
        ]
        again = run(triggers.initialize_job_stage(store, "job-1"))
        assert again.changed == []
