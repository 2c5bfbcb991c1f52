"""
Tests for the workflow event dispatcher
"""

import logging
import pytest
from datetime import datetime, timezone
from unittest.mock import Mock

from approval_workflows.events import (
    EventDispatcher, EventPayload, WorkflowEvent, create_workflow_event
)
from approval_workflows.models import (
    RoleActor, Workflow, WorkflowStatus, WorkflowStep
)


NOW = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def workflow():
    step = WorkflowStep(
        id="step-1", created_at=NOW, updated_at=NOW, workflow_id="wf-1", step_number=1,
        eligible_actor=RoleActor("FINANCE_HEAD"), name="Finance Review", activated_at=NOW
    )
    return Workflow(
        id="wf-1", created_at=NOW, updated_at=NOW, workflow_type="BUDGET_APPROVAL",
        reference_type="BUDGET", reference_id="B-1", status=WorkflowStatus.IN_PROGRESS,
        initiated_by="planner", steps=[step]
    )


def make_event(event_type=WorkflowEvent.STEP_DECIDED, workflow_id="wf-1"):
    return EventPayload(event_type=event_type, workflow_id=workflow_id, data={"status": "IN_PROGRESS"})


class TestEventPayload:
    """Test EventPayload creation and serialization"""

    def test_event_payload_creation(self):
        event = make_event()

        assert event.event_type == WorkflowEvent.STEP_DECIDED
        assert event.workflow_id == "wf-1"
        assert isinstance(event.timestamp, datetime)
        assert len(event.event_id) > 0

    def test_event_payload_serialization(self):
        original = make_event(WorkflowEvent.WORKFLOW_COMPLETED)

        event_dict = original.to_dict()
        assert event_dict["event_type"] == "workflow.completed"

        restored = EventPayload.from_dict(event_dict)
        assert restored.event_type == original.event_type
        assert restored.event_id == original.event_id
        assert restored.timestamp == original.timestamp
        assert restored.data == original.data


class TestEventDispatcher:
    """Test the event dispatcher"""

    def test_subscribe_and_publish(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(WorkflowEvent.STEP_DECIDED, handler)

        event = make_event()
        dispatcher.publish(event)

        handler.assert_called_once_with(event)

    def test_handlers_only_receive_their_type(self):
        dispatcher = EventDispatcher()
        decided = Mock()
        escalated = Mock()
        dispatcher.subscribe(WorkflowEvent.STEP_DECIDED, decided)
        dispatcher.subscribe(WorkflowEvent.STEP_ESCALATED, escalated)

        dispatcher.publish(make_event(WorkflowEvent.STEP_ESCALATED))

        decided.assert_not_called()
        escalated.assert_called_once()

    def test_global_handler_receives_all_events(self):
        dispatcher = EventDispatcher()
        global_handler = Mock()
        dispatcher.subscribe_all(global_handler)

        dispatcher.publish(make_event(WorkflowEvent.WORKFLOW_CREATED))
        dispatcher.publish(make_event(WorkflowEvent.WORKFLOW_COMPLETED))

        assert global_handler.call_count == 2

    def test_failing_handler_does_not_stop_delivery(self, caplog):
        dispatcher = EventDispatcher()
        failing = Mock(side_effect=RuntimeError("notification service down"))
        healthy = Mock()
        dispatcher.subscribe(WorkflowEvent.STEP_DECIDED, failing)
        dispatcher.subscribe(WorkflowEvent.STEP_DECIDED, healthy)

        with caplog.at_level(logging.ERROR, logger="approvals.events"):
            dispatcher.publish(make_event())

        healthy.assert_called_once()
        assert "Error in event handler" in caplog.text

    def test_unsubscribe(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(WorkflowEvent.STEP_DECIDED, handler)
        dispatcher.unsubscribe(WorkflowEvent.STEP_DECIDED, handler)

        dispatcher.publish(make_event())

        handler.assert_not_called()
        assert dispatcher.get_handler_count(WorkflowEvent.STEP_DECIDED) == 0

    def test_handler_count_and_clear(self):
        dispatcher = EventDispatcher()
        dispatcher.subscribe(WorkflowEvent.STEP_DECIDED, Mock())
        dispatcher.subscribe(WorkflowEvent.WORKFLOW_CREATED, Mock())
        dispatcher.subscribe_all(Mock())

        assert dispatcher.get_handler_count() == 3
        assert dispatcher.get_handler_count(WorkflowEvent.STEP_DECIDED) == 1

        dispatcher.clear()
        assert dispatcher.get_handler_count() == 0


class TestCreateWorkflowEvent:
    """Test building events from workflow state"""

    def test_summary_fields(self, workflow):
        event = create_workflow_event(WorkflowEvent.WORKFLOW_CREATED, workflow)

        assert event.workflow_id == "wf-1"
        assert event.data["reference_type"] == "BUDGET"
        assert event.data["reference_id"] == "B-1"
        assert event.data["status"] == "IN_PROGRESS"
        assert event.data["current_step"] == 1
        assert "step" not in event.data

    def test_step_and_extra_fields(self, workflow):
        event = create_workflow_event(
            WorkflowEvent.STEP_DECIDED, workflow, workflow.steps[0], result="moved_to_next"
        )

        assert event.data["step"]["step_number"] == 1
        assert event.data["step"]["eligible_actor"] == "role:FINANCE_HEAD"
        assert event.data["result"] == "moved_to_next"

    def test_explicit_timestamp(self, workflow):
        event = create_workflow_event(WorkflowEvent.WORKFLOW_CREATED, workflow, timestamp=NOW)

        assert event.timestamp == NOW
        assert "timestamp" not in event.data
