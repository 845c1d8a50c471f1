import pytest

from magnetboard.engine.board import BoardState
from magnetboard.engine.registry import ResourceRegistry
from magnetboard.engine.rule_store import RuleStore
from magnetboard.engine.validation import (
    check_equipment_authorization,
    validate_attach,
    validate_drop,
    validate_finalize,
)
from magnetboard.models.entities import Assignment, Job, JobRow, JobType, ResourceType, RowType
from magnetboard.models.outcomes import ErrorKind


@pytest.fixture
def state(crew_resources, jobs):
    """In-memory board state without a store behind it."""
    return BoardState(ResourceRegistry(crew_resources), jobs)


@pytest.fixture
def rules():
    return RuleStore().snapshot()


class TestDropRules:
    """Row type and capacity checks."""

    def test_driver_rejected_from_equipment_row(self, service):
        """A driver does not belong in the Equipment row."""
        result = service.assign("driver-1", "job-a", RowType.EQUIPMENT)
        assert not result.accepted
        assert result.kind is ErrorKind.ROW_TYPE_MISMATCH
        assert service.assignments_for_job("job-a") == []

    def test_excavator_accepted_in_equipment_row(self, service):
        result = service.assign("exc-1", "job-a", RowType.EQUIPMENT)
        assert result.accepted
        assert result.assignment_id.startswith("assign-")

    def test_row_names_are_case_insensitive(self, service):
        """Board data uses both "trucks" and "Trucks"."""
        result = service.assign("truck-1", "job-a", "trucks")
        assert result.accepted
        assert service.state.get_assignment(result.assignment_id).row is RowType.TRUCKS

    def test_forman_row_holds_one(self, service):
        assert service.assign("foreman-1", "job-a", RowType.FORMAN).accepted
        result = service.assign("foreman-2", "job-a", RowType.FORMAN)
        assert result.kind is ErrorKind.ROW_FULL

    def test_job_row_override_narrows_types(self, state, rules):
        job = Job(
            id="job-x",
            type=JobType.OTHER,
            rows=(JobRow(RowType.EQUIPMENT, allowed_types=frozenset({ResourceType.PAVER})),),
        )
        state.upsert_job(job)
        snapshot = state.snapshot(rules)
        assert validate_drop(ResourceType.PAVER, RowType.EQUIPMENT, job, snapshot)
        assert validate_drop(ResourceType.EXCAVATOR, RowType.EQUIPMENT, job, snapshot).kind is ErrorKind.ROW_TYPE_MISMATCH

    def test_job_row_override_cannot_widen_types(self, state, rules):
        """A driver stays out of Equipment even when the job row lists drivers."""
        job = Job(
            id="job-x",
            type=JobType.OTHER,
            rows=(JobRow(RowType.EQUIPMENT, allowed_types=frozenset({ResourceType.DRIVER, ResourceType.PAVER})),),
        )
        state.upsert_job(job)
        snapshot = state.snapshot(rules)
        assert validate_drop(ResourceType.DRIVER, RowType.EQUIPMENT, job, snapshot).kind is ErrorKind.ROW_TYPE_MISMATCH
        assert validate_drop(ResourceType.PAVER, RowType.EQUIPMENT, job, snapshot)

    def test_job_row_override_cannot_raise_capacity(self, state, rules):
        job = Job(id="job-x", type=JobType.OTHER, rows=(JobRow(RowType.FORMAN, max_count=3),))
        state.upsert_job(job)
        state.put_assignment(Assignment("f1", "foreman-1", "job-x", RowType.FORMAN))
        decision = validate_drop(ResourceType.FOREMAN, RowType.FORMAN, job, state.snapshot(rules))
        assert decision.kind is ErrorKind.ROW_FULL

    def test_job_without_listed_row_rejects(self, state, rules):
        """A job that lists rows only has those rows."""
        job = Job(id="job-x", type=JobType.OTHER, rows=(JobRow(RowType.CREW),))
        decision = validate_drop(ResourceType.TRUCK, RowType.TRUCKS, job, state.snapshot(rules))
        assert decision.kind is ErrorKind.ROW_TYPE_MISMATCH

    def test_milling_job_uses_its_own_equipment_row(self, state, rules):
        job = Job(id="job-m", type=JobType.MILLING)
        snapshot = state.snapshot(rules)
        assert validate_drop(ResourceType.MILLING_MACHINE, RowType.EQUIPMENT, job, snapshot)
        assert not validate_drop(ResourceType.PAVER, RowType.EQUIPMENT, job, snapshot)

    def test_unknown_row_rejected(self, state, rules):
        job = state.get_job("job-a")
        decision = validate_drop("excavator", "Basement", job, state.snapshot(rules))
        assert decision.kind is ErrorKind.ROW_TYPE_MISMATCH

    def test_attached_children_do_not_count_toward_capacity(self, state, rules):
        state.put_assignment(Assignment("f1", "foreman-1", "job-a", RowType.FORMAN))
        state.put_assignment(Assignment("f2", "lab-1", "job-a", RowType.FORMAN, attached_to="f1"))
        job = state.get_job("job-a")
        snapshot = state.snapshot(rules)
        assert validate_drop(ResourceType.FOREMAN, RowType.FORMAN, job, snapshot).kind is ErrorKind.ROW_FULL
        assert validate_drop(ResourceType.FOREMAN, RowType.FORMAN, job, snapshot, ignore={"f1"})


class TestAttachmentRules:
    """Interaction limits, cycles and job boundaries."""

    def test_second_skidsteer_on_operator_rejected(self, service):
        """The operator -> skidsteer rule allows one skidsteer per operator."""
        op = service.assign("op-1", "job-a", RowType.EQUIPMENT).assignment_id
        skid1 = service.assign("skid-1", "job-a", RowType.EQUIPMENT).assignment_id
        skid2 = service.assign("skid-2", "job-a", RowType.EQUIPMENT).assignment_id

        assert service.attach(skid1, op).accepted
        result = service.attach(skid2, op)
        assert result.kind is ErrorKind.MAX_ATTACHMENT_EXCEEDED
        assert service.state.get_assignment(skid2).attached_to is None

    def test_no_rule_means_no_attachment(self, service):
        foreman = service.assign("foreman-1", "job-a", RowType.CREW).assignment_id
        laborer = service.assign("lab-1", "job-a", RowType.CREW).assignment_id
        result = service.attach(laborer, foreman)
        assert result.kind is ErrorKind.MAX_ATTACHMENT_EXCEEDED
        assert "max 0" in result.decision.message

    def test_cross_job_attachment_rejected(self, service):
        exc = service.assign("exc-1", "job-a", RowType.EQUIPMENT).assignment_id
        op = service.assign("op-1", "job-b", RowType.EQUIPMENT).assignment_id
        assert service.attach(op, exc).kind is ErrorKind.CROSS_JOB_ATTACHMENT

    def test_self_attachment_rejected(self, service):
        exc = service.assign("exc-1", "job-a", RowType.EQUIPMENT).assignment_id
        assert service.attach(exc, exc).kind is ErrorKind.CYCLE_DETECTED

    def test_cycle_through_ancestor_rejected(self, service):
        exc = service.assign("exc-1", "job-a", RowType.EQUIPMENT).assignment_id
        op = service.assign("op-1", "job-a", RowType.EQUIPMENT).assignment_id
        assert service.attach(op, exc).accepted
        assert service.attach(exc, op).kind is ErrorKind.CYCLE_DETECTED

    def test_reattaching_to_same_parent_is_noop(self, service):
        exc = service.assign("exc-1", "job-a", RowType.EQUIPMENT).assignment_id
        op = service.assign("op-1", "job-a", RowType.EQUIPMENT).assignment_id
        assert service.attach(op, exc).accepted
        version = service.state.get_assignment(op).version
        assert service.attach(op, exc).accepted
        assert service.state.get_assignment(op).version == version

    def test_operator_parent_counts_toward_excavator_limit(self, service):
        """An excavator hanging under one operator cannot take a second one."""
        exc = service.assign("exc-1", "job-a", RowType.EQUIPMENT).assignment_id
        op1 = service.assign("op-1", "job-a", RowType.EQUIPMENT).assignment_id
        op2 = service.assign("op-2", "job-a", RowType.EQUIPMENT).assignment_id
        assert service.attach(exc, op1).accepted

        result = service.attach(op2, exc)

        assert result.kind is ErrorKind.MAX_ATTACHMENT_EXCEEDED
        assert service.state.get_assignment(op2).attached_to is None
        assert service.state.graph.children(exc) == []

    def test_excavator_with_operator_child_cannot_join_another_operator(self, service):
        exc = service.assign("exc-1", "job-a", RowType.EQUIPMENT).assignment_id
        op1 = service.assign("op-1", "job-a", RowType.EQUIPMENT).assignment_id
        op2 = service.assign("op-2", "job-a", RowType.EQUIPMENT).assignment_id
        assert service.attach(op2, exc).accepted

        result = service.attach(exc, op1)

        assert result.kind is ErrorKind.MAX_ATTACHMENT_EXCEEDED
        assert service.state.get_assignment(exc).attached_to is None

    def test_validate_attach_counts_parent_partner(self, state, rules):
        state.put_assignment(Assignment("o1", "op-1", "job-a", RowType.EQUIPMENT))
        state.put_assignment(Assignment("e1", "exc-1", "job-a", RowType.EQUIPMENT, attached_to="o1"))
        state.put_assignment(Assignment("o2", "op-2", "job-a", RowType.EQUIPMENT))
        decision = validate_attach(state.get_assignment("o2"), state.get_assignment("e1"), state.snapshot(rules))
        assert decision.kind is ErrorKind.MAX_ATTACHMENT_EXCEEDED


class TestEquipmentAuthorization:
    """Operators may be limited to specific equipment types."""

    def test_roller_operator_rejected_from_paver(self, service):
        paver = service.assign("paver-1", "job-a", RowType.EQUIPMENT).assignment_id
        op = service.assign("op-roller", "job-a", RowType.EQUIPMENT).assignment_id
        result = service.attach(op, paver)
        assert result.kind is ErrorKind.NOT_AUTHORIZED_EQUIPMENT

    def test_empty_allowed_list_is_unrestricted(self, service):
        paver = service.assign("paver-1", "job-a", RowType.EQUIPMENT).assignment_id
        op = service.assign("op-open", "job-a", RowType.EQUIPMENT).assignment_id
        assert service.attach(op, paver).accepted

    def test_authorization_checked_in_both_directions(self, service):
        op = service.assign("op-roller", "job-a", RowType.EQUIPMENT).assignment_id
        skid = service.assign("skid-1", "job-a", RowType.EQUIPMENT).assignment_id
        assert service.attach(skid, op).kind is ErrorKind.NOT_AUTHORIZED_EQUIPMENT

    def test_non_operator_pairs_skip_authorization(self, resource_factory):
        driver = resource_factory("d", "driver")
        truck = resource_factory("t", "truck")
        assert check_equipment_authorization(driver, truck)


class TestFinalizeGating:
    """Finalization requires every safety partner to be attached."""

    def test_excavator_without_operator_blocks_finalize(self, service):
        service.assign("exc-1", "job-a", RowType.EQUIPMENT)
        result = service.finalize_job("job-a")
        assert result.kind is ErrorKind.MISSING_REQUIRED_ATTACHMENT
        assert result.decision.violations == ("excavator requires operator",)
        assert service.state.get_job("job-a").finalized is False

    def test_finalize_succeeds_after_operator_attached(self, service):
        exc = service.assign("exc-1", "job-a", RowType.EQUIPMENT).assignment_id
        op = service.assign("op-1", "job-a", RowType.EQUIPMENT).assignment_id
        assert service.attach(op, exc).accepted
        assert service.finalize_job("job-a").accepted
        assert service.state.get_job("job-a").finalized is True

    def test_all_violations_collected(self, service):
        service.assign("exc-1", "job-a", RowType.EQUIPMENT)
        service.assign("truck-1", "job-a", RowType.TRUCKS)
        decision = service.validate_finalize_preview("job-a")
        assert sorted(decision.violations) == ["excavator requires operator", "truck requires driver"]

    def test_preview_does_not_commit(self, service):
        decision = service.validate_finalize_preview("job-a")
        assert decision.accepted
        assert service.state.get_job("job-a").finalized is False

    def test_operator_as_parent_satisfies_requirement(self, state, rules):
        """Partner counts whether the operator is the child or the parent."""
        state.put_assignment(Assignment("o1", "op-1", "job-a", RowType.EQUIPMENT))
        state.put_assignment(Assignment("s1", "skid-1", "job-a", RowType.EQUIPMENT, attached_to="o1"))
        job = state.get_job("job-a")
        assert validate_finalize(job, state.graph.for_job("job-a"), state.snapshot(rules))

    def test_validate_attach_is_pure(self, state, rules):
        state.put_assignment(Assignment("e1", "exc-1", "job-a", RowType.EQUIPMENT))
        state.put_assignment(Assignment("o1", "op-1", "job-a", RowType.EQUIPMENT))
        assert validate_attach(state.get_assignment("o1"), state.get_assignment("e1"), state.snapshot(rules))
        assert state.get_assignment("o1").attached_to is None
