import pytest

from app.stages import payments

from tests.conftest import make_proposal


class TestIdentifyPaymentStage:
    """Milestone matching by amount."""

    @pytest.mark.parametrize(
        "amount,expected",
        [
            (497, payments.DEPOSIT),
            (500, payments.DEPOSIT),
            (505, payments.DEPOSIT),
            (302.5, payments.ROUGH_IN),
            (195, payments.FINAL),
            (150, payments.PARTIAL),
            (506, payments.PARTIAL),
        ],
    )
    def test_matches_within_tolerance(self, amount, expected):
        assert payments.identify_payment_stage(make_proposal(), amount) == expected

    def test_custom_tolerance(self):
        proposal = make_proposal()
        assert payments.identify_payment_stage(proposal, 490, tolerance=10) == payments.DEPOSIT
        assert payments.identify_payment_stage(proposal, 499, tolerance=0) == payments.PARTIAL

    def test_priority_order_wins_over_closeness(self):
        proposal = make_proposal(deposit_amount=300.0, progress_payment_amount=302.0)
        assert payments.identify_payment_stage(proposal, 302) == payments.DEPOSIT


class TestClassifyPayment:
    """Milestone matching with review flag."""

    def test_near_tie_needs_review(self):
        proposal = make_proposal(deposit_amount=300.0, progress_payment_amount=304.0)
        match = payments.classify_payment(proposal, 302)
        assert match.stage == payments.DEPOSIT
        assert match.candidates == (payments.DEPOSIT, payments.ROUGH_IN)
        assert match.needs_review

    def test_single_match(self):
        match = payments.classify_payment(make_proposal(), 497)
        assert match.candidates == (payments.DEPOSIT,)
        assert not match.needs_review

    def test_partial(self):
        match = payments.classify_payment(make_proposal(), 42)
        assert match.stage == payments.PARTIAL
        assert match.candidates == ()

    def test_paid_at_field(self):
        assert payments.paid_at_field(payments.ROUGH_IN) == "progress_paid_at"
        assert payments.paid_at_field(payments.PARTIAL) is None
