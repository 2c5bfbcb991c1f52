"""
Tests for the workflow data model
"""

import pytest
from datetime import datetime, timezone, timedelta

from approval_workflows.models import (
    RoleActor, StepStatus, UserActor, Workflow, WorkflowStatus, WorkflowStep,
    WorkflowType, actor_from_dict, actor_to_dict, type_key
)


NOW = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def make_workflow(actors, active: int = 1, status: WorkflowStatus = WorkflowStatus.IN_PROGRESS):
    steps = []
    for number, actor in enumerate(actors, start=1):
        step = WorkflowStep(
            id=f"step-{number}", created_at=NOW, updated_at=NOW,
            workflow_id="wf-1", step_number=number, eligible_actor=actor,
            name=f"Step {number}", sla_hours=24
        )
        if number < active:
            step.status = StepStatus.APPROVED
            step.activated_at = NOW
            step.decided_by = "someone"
            step.decided_at = NOW
        elif number == active:
            step.activated_at = NOW
            step.due_at = NOW + timedelta(hours=24)
        steps.append(step)

    return Workflow(
        id="wf-1", created_at=NOW, updated_at=NOW,
        workflow_type=WorkflowType.BUDGET_APPROVAL.value,
        reference_type="BUDGET", reference_id="B-1",
        status=status, initiated_by="planner", current_step=active, steps=steps
    )


class TestEligibleActor:
    """Test the user/role actor sum type"""

    def test_describe(self):
        assert UserActor("U1").describe() == "user:U1"
        assert RoleActor("FINANCE_HEAD").describe() == "role:FINANCE_HEAD"

    def test_dict_conversion(self):
        assert actor_from_dict(actor_to_dict(UserActor("U1"))) == UserActor("U1")
        assert actor_from_dict(actor_to_dict(RoleActor("BOD_MEMBER"))) == RoleActor("BOD_MEMBER")

    def test_unknown_kind(self):
        with pytest.raises(ValueError, match="Unknown eligible actor kind"):
            actor_from_dict({"kind": "group", "group": "finance"})


class TestStatuses:
    """Test status helpers"""

    def test_terminal_statuses(self):
        assert WorkflowStatus.APPROVED.is_terminal
        assert WorkflowStatus.REJECTED.is_terminal
        assert WorkflowStatus.CANCELLED.is_terminal
        assert not WorkflowStatus.PENDING.is_terminal
        assert not WorkflowStatus.IN_PROGRESS.is_terminal

    def test_type_key(self):
        assert type_key(WorkflowType.OTB_APPROVAL) == "OTB_APPROVAL"
        assert type_key("CUSTOM_APPROVAL") == "CUSTOM_APPROVAL"


class TestWorkflowStep:
    """Test step state helpers"""

    def test_active_requires_activation(self):
        step = WorkflowStep(
            id="s", created_at=NOW, updated_at=NOW, workflow_id="wf-1",
            step_number=2, eligible_actor=RoleActor("BOD_MEMBER")
        )
        assert step.status == StepStatus.PENDING
        assert not step.is_active

        step.activated_at = NOW
        assert step.is_active

        step.status = StepStatus.ESCALATED
        assert step.is_active

        step.status = StepStatus.APPROVED
        assert not step.is_active

    def test_touch_increments_version(self):
        step = WorkflowStep(
            id="s", created_at=NOW, updated_at=NOW, workflow_id="wf-1",
            step_number=1, eligible_actor=UserActor("U1")
        )
        later = NOW + timedelta(minutes=5)
        step.touch(later)

        assert step.version == 2
        assert step.updated_at == later


class TestWorkflow:
    """Test workflow-level helpers and invariants"""

    def test_serialization_preserves_steps(self):
        workflow = make_workflow([UserActor("U1"), RoleActor("FINANCE_HEAD"), UserActor("U3")], active=2)
        workflow.steps[1].escalated_from = UserActor("U2")
        workflow.sla_deadline = NOW + timedelta(hours=72)
        workflow.sla_breached = True

        restored = Workflow.from_dict(workflow.to_dict())

        assert restored.status == WorkflowStatus.IN_PROGRESS
        assert restored.current_step == 2
        assert [s.step_number for s in restored.steps] == [1, 2, 3]
        assert restored.steps[1].eligible_actor == RoleActor("FINANCE_HEAD")
        assert restored.steps[1].escalated_from == UserActor("U2")
        assert restored.steps[1].due_at == NOW + timedelta(hours=24)
        assert restored.steps[2].activated_at is None
        assert restored.sla_deadline == NOW + timedelta(hours=72)
        assert restored.sla_breached is True

    def test_from_dict_sorts_steps(self):
        data = make_workflow([UserActor("U1"), UserActor("U2")]).to_dict()
        data["steps"].reverse()

        restored = Workflow.from_dict(data)
        assert [s.step_number for s in restored.steps] == [1, 2]

    def test_active_step_and_derived_pointer(self):
        workflow = make_workflow([UserActor("U1"), UserActor("U2"), UserActor("U3")], active=2)

        assert workflow.active_step().step_number == 2
        assert workflow.derive_current_step() == 2
        assert workflow.total_steps == 3
        assert workflow.last_step_number == 3
        assert workflow.get_step(4) is None

    def test_consistent_workflow_has_no_violations(self):
        workflow = make_workflow([UserActor("U1"), UserActor("U2")], active=1)
        assert workflow.check_invariants() == []

    def test_pointer_disagreement_detected(self):
        workflow = make_workflow([UserActor("U1"), UserActor("U2")], active=1)
        workflow.current_step = 2

        problems = workflow.check_invariants()
        assert any("current_step" in p for p in problems)

    def test_two_active_steps_detected(self):
        workflow = make_workflow([UserActor("U1"), UserActor("U2")], active=1)
        workflow.steps[1].activated_at = NOW

        problems = workflow.check_invariants()
        assert any("exactly one active step" in p for p in problems)

    def test_terminal_with_active_step_detected(self):
        workflow = make_workflow([UserActor("U1")], active=1, status=WorkflowStatus.REJECTED)

        problems = workflow.check_invariants()
        assert any("terminal workflow" in p for p in problems)

    def test_gap_in_step_numbers_detected(self):
        workflow = make_workflow([UserActor("U1"), UserActor("U2")], active=1)
        workflow.steps[1].step_number = 3

        problems = workflow.check_invariants()
        assert any("contiguous" in p for p in problems)
