import pytest

from app.stages import catalog, sync
from app.stages.errors import ValidationError

from tests.conftest import done


class TestStatusToStage:
    """Legacy status to stage mapping."""

    def test_every_status_maps_to_a_known_stage(self):
        assert len(sync.ALL_STATUSES) == 14
        for status in sync.ALL_STATUSES:
            assert catalog.is_valid_stage(sync.stage_for_status(status))

    @pytest.mark.parametrize(
        "status,stage",
        [
            ("not_scheduled", "beginning"),
            ("ask_vadim", "beginning"),
            ("working_on_it", "rough_in"),
            ("parts_needed", "rough_in"),
            ("start_up", "trim_out"),
            ("warranty_no_charge", "closing"),
            ("done", "completed"),
            ("cancelled", "completed"),
        ],
    )
    def test_known_mappings(self, status, stage):
        assert sync.stage_for_status(status) == stage

    def test_unknown_status(self):
        with pytest.raises(ValidationError):
            sync.stage_for_status("on_hold")


class TestCanonicalStatus:
    """Default status per stage."""

    @pytest.mark.parametrize("stage", catalog.STAGES_IN_ORDER)
    def test_canonical_status_maps_back_to_its_stage(self, stage):
        assert sync.stage_for_status(sync.canonical_status_for_stage(stage)) == stage

    def test_round_trip_is_not_an_inverse(self):
        stage = sync.stage_for_status("parts_needed")
        assert sync.canonical_status_for_stage(stage) == "working_on_it"


class TestSync:
    """Status and stage synchronization."""

    def test_status_change_drives_stage(self):
        result = sync.sync("working_on_it", "beginning", {}, sync.STATUS_FIELD)
        assert result == sync.SyncResult(status="working_on_it", stage="rough_in")

    def test_stage_change_drives_status(self):
        result = sync.sync("not_scheduled", "trim_out", {}, sync.STAGE_FIELD)
        assert result == sync.SyncResult(status="start_up", stage="trim_out")

    def test_steps_are_not_consulted(self):
        steps = done("proposal_approved")
        a = sync.sync("sent_invoice", "beginning", steps, sync.STATUS_FIELD)
        b = sync.sync("sent_invoice", "beginning", {}, sync.STATUS_FIELD)
        assert a == b

    def test_bad_changed_field(self):
        with pytest.raises(ValidationError):
            sync.sync("done", "completed", {}, "priority")


class TestFilterGroups:
    """Status filter groups for the jobs page."""

    def test_groups_cover_every_status_once(self):
        ordered = sync.all_statuses_in_stage_order()
        assert sorted(ordered) == sorted(sync.ALL_STATUSES)
        assert ordered[0] in sync.statuses_for_stage("beginning")
        assert ordered[-1] in sync.statuses_for_stage("completed")

    def test_group_shape(self):
        groups = sync.status_filter_groups()
        assert [g["stage"] for g in groups] == catalog.STAGES_IN_ORDER
        assert groups[1]["label"] == "Rough In"
        assert set(groups[1]["statuses"]) == {"working_on_it", "parts_needed"}

    def test_labels(self):
        assert sync.status_label("sent_invoice") == "Invoice Sent"
        assert sync.status_label("mystery") == "mystery"

    def test_consistency_warnings(self):
        assert sync.consistency_warnings("working_on_it", "rough_in") == []
        warnings = sync.consistency_warnings("done", "rough_in")
        assert len(warnings) == 1
        assert "completed" in warnings[0]
