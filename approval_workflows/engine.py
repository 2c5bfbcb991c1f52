"""
Workflow Engine Module

The approval state machine. Creates workflows from registered approval chains,
applies approve/reject decisions to the active step, escalates overdue steps
and cancels workflows. Every transition is one read-modify-write of the
workflow document committed with compare-and-swap, so a lost race surfaces as
ConcurrentModificationError instead of a double decision.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union
import uuid

from .audit import AuditEventType, AuditTrail
from .authorization import AuthorizationGuard, RoleResolver
from .chains import ChainBuilder, ChainBuilderFn, ChainRegistry, default_chain_registry
from .config import WorkflowConfig, get_config
from .errors import (
    NotFoundError, StaleStepError, UnauthorizedError, ValidationError,
    WorkflowTerminalError
)
from .escalation import EscalationPolicy, HierarchyEscalationPolicy, needs_escalation
from .events import EventDispatcher, WorkflowEvent, create_workflow_event
from .logging_config import get_logger, log_action
from .models import (
    DecisionAction, DecisionOutcome, DecisionResult, StepStatus, Workflow,
    WorkflowStatus, WorkflowStep, WorkflowType, type_key
)
from .sla import (
    compute_due_at, estimated_completion, needs_breach_flag, progress_percentage, sla_status
)
from .storage import StorageInterface
from .store import WorkflowStore


class WorkflowEngine:
    """Approval workflow state machine"""

    def __init__(self, storage: StorageInterface,
                 audit_manager: Optional[AuditTrail] = None,
                 chain_registry: Optional[ChainRegistry] = None,
                 guard: Optional[AuthorizationGuard] = None,
                 dispatcher: Optional[EventDispatcher] = None,
                 escalation_policy: Optional[EscalationPolicy] = None,
                 config: Optional[WorkflowConfig] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.config = config or get_config()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.store = WorkflowStore(storage)
        self.chains = chain_registry or default_chain_registry(self.config.default_sla_hours)
        self.guard = guard or AuthorizationGuard(admin_roles=self.config.admin_roles, clock=self._clock)
        self.dispatcher = dispatcher or EventDispatcher()
        self.escalation_policy = escalation_policy or HierarchyEscalationPolicy()
        if audit_manager is None and self.config.enable_audit_logging:
            audit_manager = AuditTrail(storage, clock=self._clock)
        self.audit = audit_manager
        self.logger = get_logger("approvals.engine")

    def now(self) -> datetime:
        return self._clock()

    # Configuration

    def register_chain_builder(self, workflow_type: Union[str, WorkflowType],
                               builder: Union[ChainBuilder, ChainBuilderFn]) -> None:
        """Register (or replace) the approval chain strategy for a workflow type"""
        self.chains.register(workflow_type, builder)
        self.logger.info(f"Registered chain builder for {type_key(workflow_type)}")

    def register_escalation_policy(self, policy: EscalationPolicy) -> None:
        self.escalation_policy = policy
        self.logger.info(f"Registered escalation policy {type(policy).__name__}")

    def register_role_resolver(self, resolver: RoleResolver) -> None:
        self.guard.role_resolver = resolver
        self.logger.info(f"Registered role resolver {type(resolver).__name__}")

    # Workflow Lifecycle

    def create_workflow(self, workflow_type: Union[str, WorkflowType], reference_type: str,
                        reference_id: str, initiated_by: str,
                        context: Optional[Dict[str, Any]] = None,
                        sla_hours: Optional[int] = None) -> Workflow:
        """
        Build the approval chain for ``workflow_type`` and persist the workflow
        with step 1 active.

        ``sla_hours`` sets an overall deadline for the whole workflow, on top of
        the per-step SLAs; the escalation sweep flags it once when it passes.

        Nothing is stored unless the chain builds and the whole document is
        written. One-active-workflow-per-entity is the caller's concern.
        """
        for field_name, value in (('reference_type', reference_type),
                                  ('reference_id', reference_id),
                                  ('initiated_by', initiated_by)):
            if not value:
                raise ValidationError(f"{field_name} is required", field=field_name)
        if sla_hours is not None and sla_hours < 0:
            raise ValidationError("sla_hours must not be negative", field="sla_hours")

        context = dict(context or {})
        key = type_key(workflow_type)
        chain = self.chains.build(key, context)

        now = self.now()
        workflow_id = str(uuid.uuid4())
        steps = []
        for number, spec in enumerate(chain, start=1):
            step = WorkflowStep(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                workflow_id=workflow_id,
                step_number=number,
                eligible_actor=spec.eligible_actor,
                name=spec.name or f"Step {number}",
                description=spec.description,
                sla_hours=spec.sla_hours,
            )
            if number == 1:
                step.activated_at = now
                step.due_at = compute_due_at(now, spec.sla_hours)
            steps.append(step)

        workflow = Workflow(
            id=workflow_id,
            created_at=now,
            updated_at=now,
            workflow_type=key,
            reference_type=type_key(reference_type),
            reference_id=reference_id,
            status=WorkflowStatus.IN_PROGRESS,
            initiated_by=initiated_by,
            current_step=1,
            steps=steps,
            context=context,
            sla_deadline=compute_due_at(now, sla_hours),
        )
        self.store.create(workflow)

        self._audit(AuditEventType.WORKFLOW_CREATED, workflow, initiated_by, {
            'workflow_type': key,
            'reference_type': workflow.reference_type,
            'reference_id': reference_id,
            'total_steps': len(steps),
            'sla_deadline': workflow.sla_deadline,
        })
        log_action(
            self.logger, "info",
            f"Created {key} workflow for {workflow.reference_type}:{reference_id} with {len(steps)} steps",
            user_id=initiated_by, action="workflow_created", resource=f"workflow:{workflow.id}"
        )
        self._publish(WorkflowEvent.WORKFLOW_CREATED, workflow, steps[0])
        return workflow

    def get_workflow(self, workflow_id: str) -> Workflow:
        return self.store.load(workflow_id)

    def list_workflows(self, status: Optional[WorkflowStatus] = None,
                       workflow_type: Optional[Union[str, WorkflowType]] = None,
                       reference_type: Optional[str] = None,
                       reference_id: Optional[str] = None) -> List[Workflow]:
        return self.store.list(
            status=status,
            workflow_type=type_key(workflow_type) if workflow_type is not None else None,
            reference_type=type_key(reference_type) if reference_type is not None else None,
            reference_id=reference_id,
        )

    def get_pending_workflows(self, actor_id: str) -> List[Workflow]:
        """In-progress workflows whose active step the actor may decide, newest first"""
        pending = []
        for workflow in self.store.find_active():
            step = workflow.active_step()
            if step and self.guard.is_eligible(actor_id, step.eligible_actor):
                pending.append(workflow)
        return pending

    # Step Actions

    def process_decision(self, workflow_id: str, step_number: int, actor_id: str,
                         action: Union[str, DecisionAction],
                         comment: Optional[str] = None) -> DecisionOutcome:
        """
        Approve or reject the active step.

        Raises:
            ValidationError: unknown action, or reject without a required comment
            NotFoundError: workflow or step does not exist
            WorkflowTerminalError: workflow already finished
            StaleStepError: step is not the active one
            UnauthorizedError: actor is not eligible for the step
            ConcurrentModificationError: someone else committed first; re-read and retry
        """
        try:
            action = DecisionAction(action)
        except ValueError:
            raise ValidationError(f"Unknown action: {action}", field="action")

        if (action == DecisionAction.REJECT and self.config.require_reject_comment
                and not (comment and comment.strip())):
            raise ValidationError("A comment is required when rejecting", field="comment")

        workflow = self.store.load(workflow_id)
        expected_version = workflow.version

        if workflow.is_terminal:
            raise WorkflowTerminalError(workflow_id, workflow.status.value)

        step = workflow.get_step(step_number)
        if step is None:
            raise NotFoundError(workflow_id, step_number)
        if step_number != workflow.current_step or not step.is_active:
            raise StaleStepError(workflow_id, step_number, workflow.current_step)

        if not self.guard.is_eligible(actor_id, step.eligible_actor):
            raise UnauthorizedError(workflow_id, actor_id, step_number)

        now = self.now()
        step.decided_by = actor_id
        step.decided_at = now
        step.comment = comment
        next_step = None

        if action == DecisionAction.REJECT:
            step.status = StepStatus.REJECTED
            workflow.status = WorkflowStatus.REJECTED
            workflow.completed_at = now
            result = DecisionResult.REJECTED
        else:
            step.status = StepStatus.APPROVED
            if step_number == workflow.last_step_number:
                workflow.status = WorkflowStatus.APPROVED
                workflow.completed_at = now
                result = DecisionResult.COMPLETED
            else:
                next_step = workflow.get_step(step_number + 1)
                next_step.activated_at = now
                next_step.due_at = compute_due_at(now, next_step.sla_hours)
                next_step.touch(now)
                workflow.current_step = next_step.step_number
                result = DecisionResult.MOVED_TO_NEXT

        step.touch(now)
        workflow.updated_at = now
        self.store.commit(workflow, expected_version)

        audit_type = (AuditEventType.STEP_REJECTED if action == DecisionAction.REJECT
                      else AuditEventType.STEP_APPROVED)
        self._audit(audit_type, workflow, actor_id, {
            'step_number': step_number,
            'comment': comment,
            'result': result.value,
        })
        log_action(
            self.logger, "info",
            f"Step {step_number} of workflow {workflow_id} {step.status.value.lower()} by {actor_id}",
            user_id=actor_id, action=audit_type.value, resource=f"workflow:{workflow_id}",
            extra={'result': result.value}
        )

        self._publish(WorkflowEvent.STEP_DECIDED, workflow, step, result=result.value)
        if workflow.is_terminal:
            self._publish(WorkflowEvent.WORKFLOW_COMPLETED, workflow)

        return DecisionOutcome(
            status=result,
            workflow=workflow,
            next_step=next_step.step_number if next_step else None,
        )

    def escalate_step(self, workflow_id: str, now: Optional[datetime] = None) -> Optional[Workflow]:
        """
        Hand an overdue active step to its escalation target.

        Re-reads the workflow and returns None when there is nothing to do
        (finished, decided meanwhile, or already escalated in this
        activation). The step stays active with a fresh due time.
        """
        now = now or self.now()
        workflow = self.store.load(workflow_id)
        expected_version = workflow.version

        if workflow.is_terminal or not needs_escalation(workflow, now):
            return None

        step = workflow.active_step()
        previous = step.eligible_actor
        target = self.escalation_policy.escalation_target(workflow, step)

        step.status = StepStatus.ESCALATED
        step.escalated_from = previous
        if target is not None:
            step.eligible_actor = target
        step.decided_by = self.config.escalation_actor
        step.decided_at = now
        step.due_at = compute_due_at(now, step.sla_hours)
        step.escalation_count += 1
        step.touch(now)
        workflow.updated_at = now
        self.store.commit(workflow, expected_version)

        self._audit(AuditEventType.STEP_ESCALATED, workflow, self.config.escalation_actor, {
            'step_number': step.step_number,
            'escalated_from': previous.describe(),
            'escalated_to': step.eligible_actor.describe(),
        })
        log_action(
            self.logger, "info",
            f"Escalated step {step.step_number} of workflow {workflow_id} "
            f"from {previous.describe()} to {step.eligible_actor.describe()}",
            user_id=self.config.escalation_actor, action="step_escalated",
            resource=f"workflow:{workflow_id}"
        )
        self._publish(WorkflowEvent.STEP_ESCALATED, workflow, step,
                      escalated_from=previous.describe())
        return workflow

    def flag_sla_breach(self, workflow_id: str, now: Optional[datetime] = None) -> Optional[Workflow]:
        """
        Mark a workflow whose overall deadline has passed as breached.

        Re-reads the workflow and returns None when it finished, has no
        deadline, is not yet due or was already flagged, so the breach is
        recorded and announced once.
        """
        now = now or self.now()
        workflow = self.store.load(workflow_id)
        expected_version = workflow.version

        if not needs_breach_flag(workflow, now):
            return None

        workflow.sla_breached = True
        workflow.updated_at = now
        self.store.commit(workflow, expected_version)

        overdue_hours = round((now - workflow.sla_deadline).total_seconds() / 3600, 1)
        self._audit(AuditEventType.SLA_BREACHED, workflow, self.config.escalation_actor, {
            'sla_deadline': workflow.sla_deadline,
            'current_step': workflow.current_step,
        })
        log_action(
            self.logger, "warning",
            f"Workflow {workflow_id} exceeded its SLA deadline by {overdue_hours} hours",
            user_id=self.config.escalation_actor, action="sla_breached",
            resource=f"workflow:{workflow_id}"
        )
        self._publish(WorkflowEvent.SLA_BREACHED, workflow, workflow.active_step(),
                      sla_deadline=workflow.sla_deadline.isoformat())
        return workflow

    def cancel_workflow(self, workflow_id: str, actor_id: str, reason: str) -> Workflow:
        """Administrative terminal transition; allowed for admins and the initiator"""
        if not reason or not reason.strip():
            raise ValidationError("A cancellation reason is required", field="reason")

        workflow = self.store.load(workflow_id)
        expected_version = workflow.version

        if workflow.is_terminal:
            raise WorkflowTerminalError(workflow_id, workflow.status.value)
        if actor_id != workflow.initiated_by and not self.guard.is_admin(actor_id):
            raise UnauthorizedError(workflow_id, actor_id)

        now = self.now()
        step = workflow.active_step()
        if step is not None:
            step.status = StepStatus.SKIPPED
            step.decided_by = actor_id
            step.decided_at = now
            step.comment = reason
            step.touch(now)

        workflow.status = WorkflowStatus.CANCELLED
        workflow.completed_at = now
        workflow.cancel_reason = reason
        workflow.updated_at = now
        self.store.commit(workflow, expected_version)

        self._audit(AuditEventType.WORKFLOW_CANCELLED, workflow, actor_id, {'reason': reason})
        log_action(
            self.logger, "info", f"Workflow {workflow_id} cancelled by {actor_id}",
            user_id=actor_id, action="workflow_cancelled", resource=f"workflow:{workflow_id}"
        )
        self._publish(WorkflowEvent.WORKFLOW_COMPLETED, workflow, step)
        return workflow

    # Reporting

    def get_sla_report(self, workflow_id: str) -> Dict[str, Any]:
        """Progress, per-step SLA status and estimated completion for display"""
        workflow = self.store.load(workflow_id)
        now = self.now()
        report: Dict[str, Any] = {
            'workflow_id': workflow.id,
            'status': workflow.status.value,
            'total_steps': workflow.total_steps,
            'current_step': None if workflow.is_terminal else workflow.current_step,
            'progress': progress_percentage(
                workflow.total_steps,
                None if workflow.is_terminal else workflow.current_step,
                workflow.status
            ),
            'estimated_completion': None,
            'sla_deadline': workflow.sla_deadline.isoformat() if workflow.sla_deadline else None,
            'sla_breached': workflow.sla_breached,
            'steps': [],
        }
        if workflow.sla_deadline is not None:
            report['sla'] = sla_status(workflow.sla_deadline, workflow.completed_at, now,
                                       self.config.sla_warning_hours)
        if not workflow.is_terminal:
            report['estimated_completion'] = estimated_completion(
                workflow.steps, workflow.current_step, now
            ).isoformat()

        for step in workflow.steps:
            entry = {'step_number': step.step_number, 'name': step.name, 'status': step.status.value}
            if step.activated_at is not None:
                finished_at = None if step.is_active else step.decided_at
                entry['sla'] = sla_status(step.due_at, finished_at, now,
                                          self.config.sla_warning_hours)
            report['steps'].append(entry)
        return report

    # Helpers

    def _audit(self, event_type: AuditEventType, workflow: Workflow, user_id: str,
               metadata: Dict[str, Any]) -> None:
        if not self.audit:
            return
        metadata = dict(metadata, version=workflow.version, status=workflow.status.value)
        try:
            self.audit.log_event(event_type, 'workflow', workflow.id, metadata, user_id)
        except Exception:
            # Transition is already committed
            self.logger.exception(f"Failed to audit {event_type.value} for workflow {workflow.id}")

    def _publish(self, event_type: WorkflowEvent, workflow: Workflow,
                 step: Optional[WorkflowStep] = None, **extra: Any) -> None:
        try:
            self.dispatcher.publish(
                create_workflow_event(event_type, workflow, step, timestamp=self.now(), **extra)
            )
        except Exception:
            self.logger.exception(f"Failed to publish {event_type.value} for workflow {workflow.id}")
