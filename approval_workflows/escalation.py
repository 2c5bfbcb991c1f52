"""
SLA Escalation Module

Background sweep that reassigns overdue steps to an escalation target and
flags workflows that ran past their overall SLA deadline.
Escalation never approves, rejects or completes a workflow; it only changes
who may act on the active step, restarts its SLA clock and emits an event.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol, TYPE_CHECKING

from .errors import ConcurrentModificationError
from .models import EligibleActor, RoleActor, UserActor, Workflow, WorkflowStep, StepStatus
from .sla import is_due_soon, is_overdue, needs_breach_flag

if TYPE_CHECKING:
    from .engine import WorkflowEngine


class EscalationPolicy(Protocol):
    """Chooses who takes over an overdue step"""

    def escalation_target(self, workflow: Workflow, step: WorkflowStep) -> Optional[EligibleActor]:
        ...


class HierarchyEscalationPolicy:
    """
    Escalate along configured reporting lines.

    Users escalate to their manager, roles to their superior role. Anything
    without a configured superior goes to ``fallback_role`` (None disables the
    fallback and leaves ownership unchanged).
    """

    def __init__(self, user_managers: Optional[Dict[str, str]] = None,
                 role_superiors: Optional[Dict[str, str]] = None,
                 fallback_role: Optional[str] = "ADMIN"):
        self.user_managers = dict(user_managers or {})
        self.role_superiors = dict(role_superiors or {})
        self.fallback_role = fallback_role

    def escalation_target(self, workflow: Workflow, step: WorkflowStep) -> Optional[EligibleActor]:
        actor = step.eligible_actor
        if isinstance(actor, UserActor) and actor.user_id in self.user_managers:
            return UserActor(self.user_managers[actor.user_id])
        if isinstance(actor, RoleActor) and actor.role in self.role_superiors:
            return RoleActor(self.role_superiors[actor.role])
        if self.fallback_role:
            return RoleActor(self.fallback_role)
        return None


def needs_escalation(workflow: Workflow, now: datetime) -> bool:
    """Active step is past due and has not been escalated in this activation"""
    step = workflow.active_step()
    return (step is not None
            and step.status == StepStatus.PENDING
            and is_overdue(step, now))


@dataclass
class SweepResult:
    started_at: datetime
    escalated: List[str] = field(default_factory=list)
    breached: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: bool = False


class EscalationScheduler:
    """Periodic SLA sweep; at most one sweep runs at a time per scheduler"""

    def __init__(self, engine: 'WorkflowEngine', interval_seconds: int = 300,
                 clock: Optional[Callable[[], datetime]] = None):
        self.engine = engine
        self.interval_seconds = interval_seconds
        self._clock = clock or engine.now
        self._sweep_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.logger = logging.getLogger("approvals.escalation")

    def sweep_once(self) -> SweepResult:
        """
        Escalate every overdue active step once and flag workflows past their
        overall deadline.

        Active steps due within ``sla_warning_hours`` are reported in
        ``warnings``. Each workflow is handled in isolation: a conflict with a
        concurrent decision or any other failure is logged and the sweep moves on.
        """
        now = self._clock()
        result = SweepResult(started_at=now)
        warning_hours = self.engine.config.sla_warning_hours

        if not self._sweep_lock.acquire(blocking=False):
            self.logger.info("Escalation sweep already running; skipping")
            result.skipped = True
            return result

        try:
            for workflow in self.engine.store.find_active():
                if is_due_soon(workflow.active_step(), now, warning_hours):
                    result.warnings.append(workflow.id)
                if needs_escalation(workflow, now):
                    self._attempt("Escalation", self.engine.escalate_step,
                                  workflow.id, now, result, result.escalated)
                if needs_breach_flag(workflow, now):
                    self._attempt("SLA breach flag", self.engine.flag_sla_breach,
                                  workflow.id, now, result, result.breached)
        finally:
            self._sweep_lock.release()

        if result.escalated or result.breached or result.failed:
            self.logger.info(
                f"Escalation sweep finished: {len(result.escalated)} escalated, "
                f"{len(result.breached)} breached, {len(result.warnings)} nearing deadline, "
                f"{len(result.conflicts)} conflicts, {len(result.failed)} failed"
            )
        return result

    def _attempt(self, label: str, operation: Callable[..., Optional[Workflow]],
                 workflow_id: str, now: datetime, result: SweepResult,
                 succeeded: List[str]) -> None:
        try:
            if operation(workflow_id, now=now) is not None:
                succeeded.append(workflow_id)
        except ConcurrentModificationError:
            # A decision or another sweep won the race; the next sweep re-reads
            self.logger.info(f"{label} of workflow {workflow_id} lost a concurrent update")
            if workflow_id not in result.conflicts:
                result.conflicts.append(workflow_id)
        except Exception:
            self.logger.exception(f"{label} of workflow {workflow_id} failed")
            if workflow_id not in result.failed:
                result.failed.append(workflow_id)

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.sweep_once()
            except Exception:
                self.logger.exception("Escalation sweep crashed")

    def start(self) -> None:
        """Start the background sweep thread"""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="escalation-sweep")
        self._thread.daemon = True
        self._thread.start()
        self.logger.info(f"Escalation scheduler started (every {self.interval_seconds}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the background sweep thread"""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        self.logger.info("Escalation scheduler stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
