"""
SLA helpers: due-time computation and display-oriented status summaries.
"""

from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional

from .models import Workflow, WorkflowStatus, WorkflowStep

DEFAULT_STEP_HOURS = 24


def compute_due_at(activated_at: datetime, sla_hours: Optional[int]) -> Optional[datetime]:
    """Activation time plus the step SLA; None when the step has no SLA"""
    if sla_hours is None:
        return None
    return activated_at + timedelta(hours=sla_hours)


def is_overdue(step: WorkflowStep, now: datetime) -> bool:
    return step.is_active and step.due_at is not None and step.due_at < now


def is_due_soon(step: Optional[WorkflowStep], now: datetime, warning_hours: int) -> bool:
    """Active step whose deadline falls within the next ``warning_hours``"""
    if step is None or not step.is_active or step.due_at is None:
        return False
    return now < step.due_at <= now + timedelta(hours=warning_hours)


def needs_breach_flag(workflow: Workflow, now: datetime) -> bool:
    """In-progress workflow past its overall deadline and not yet flagged"""
    return (workflow.status == WorkflowStatus.IN_PROGRESS
            and workflow.sla_deadline is not None
            and workflow.sla_deadline < now
            and not workflow.sla_breached)


def sla_status(due_at: Optional[datetime], completed_at: Optional[datetime],
               now: datetime, warning_hours: int = 4) -> Dict[str, str]:
    """
    Classify a deadline as ``ok``, ``warning`` or ``breached``.

    Finished items are measured at their completion time rather than now.
    """
    if due_at is None:
        return {'status': 'ok', 'message': 'No SLA set'}

    reference = completed_at or now
    hours_remaining = (due_at - reference).total_seconds() / 3600

    if hours_remaining < 0:
        return {'status': 'breached', 'message': f"Overdue by {abs(hours_remaining):.1f} hours"}
    if hours_remaining < warning_hours:
        return {'status': 'warning', 'message': f"Due in {hours_remaining:.1f} hours"}
    return {'status': 'ok', 'message': f"{hours_remaining:.0f} hours remaining"}


def progress_percentage(total_steps: int, current_step: Optional[int], status: WorkflowStatus) -> int:
    if status in (WorkflowStatus.APPROVED, WorkflowStatus.REJECTED):
        return 100
    if status == WorkflowStatus.PENDING or not total_steps or current_step is None:
        return 0
    return round((current_step - 1) / total_steps * 100)


def estimated_completion(steps: Iterable[WorkflowStep], current_step: int, now: datetime) -> datetime:
    """Now plus the SLA hours of the current and every later step"""
    remaining = sum(
        step.sla_hours if step.sla_hours is not None else DEFAULT_STEP_HOURS
        for step in steps if step.step_number >= current_step
    )
    return now + timedelta(hours=remaining)
