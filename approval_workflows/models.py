"""
Workflow Data Model

Workflow and step records, their status enums, and the eligible-actor sum type.
A workflow is stored as one document with its steps embedded; both the
document and each step carry a ``version`` counter for optimistic writes.
"""

from datetime import datetime
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Union
from enum import Enum

from .storage import StorageRecord


class WorkflowType(str, Enum):
    """Built-in workflow types. Any other string may be registered too."""
    BUDGET_APPROVAL = "BUDGET_APPROVAL"
    OTB_APPROVAL = "OTB_APPROVAL"
    SKU_APPROVAL = "SKU_APPROVAL"


class ReferenceType(str, Enum):
    """Business entities guarded by the built-in workflow types"""
    BUDGET = "BUDGET"
    OTB_PLAN = "OTB_PLAN"
    SKU_PROPOSAL = "SKU_PROPOSAL"


class WorkflowStatus(str, Enum):
    """Status of an entire workflow"""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    WorkflowStatus.APPROVED, WorkflowStatus.REJECTED, WorkflowStatus.CANCELLED
})


class StepStatus(str, Enum):
    """Status of an individual step"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ESCALATED = "ESCALATED"
    SKIPPED = "SKIPPED"


class DecisionAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class DecisionResult(str, Enum):
    COMPLETED = "completed"
    MOVED_TO_NEXT = "moved_to_next"
    REJECTED = "rejected"


def type_key(value: Union[str, Enum]) -> str:
    """Normalise an enum member or plain string to its stored string form"""
    return value.value if isinstance(value, Enum) else str(value)


@dataclass(frozen=True)
class UserActor:
    """Step owned by one specific user"""
    user_id: str

    def describe(self) -> str:
        return f"user:{self.user_id}"


@dataclass(frozen=True)
class RoleActor:
    """Step owned by anyone holding a role"""
    role: str

    def describe(self) -> str:
        return f"role:{self.role}"


EligibleActor = Union[UserActor, RoleActor]


def actor_to_dict(actor: EligibleActor) -> Dict[str, str]:
    if isinstance(actor, UserActor):
        return {'kind': 'user', 'user_id': actor.user_id}
    return {'kind': 'role', 'role': actor.role}


def actor_from_dict(data: Dict[str, str]) -> EligibleActor:
    if data['kind'] == 'user':
        return UserActor(data['user_id'])
    if data['kind'] == 'role':
        return RoleActor(data['role'])
    raise ValueError(f"Unknown eligible actor kind: {data['kind']}")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class StepSpec:
    """One entry of an approval chain, as produced by a chain builder"""
    eligible_actor: EligibleActor
    sla_hours: Optional[int] = None
    name: str = ""
    description: str = ""


@dataclass
class WorkflowStep(StorageRecord):
    """A single approval gate within a workflow"""
    workflow_id: str
    step_number: int
    eligible_actor: EligibleActor
    status: StepStatus = StepStatus.PENDING
    name: str = ""
    description: str = ""
    sla_hours: Optional[int] = None
    activated_at: Optional[datetime] = None
    due_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    comment: Optional[str] = None
    escalated_from: Optional[EligibleActor] = None
    escalation_count: int = 0
    version: int = 1

    @property
    def is_active(self) -> bool:
        """Activated and still awaiting a decision"""
        return (self.activated_at is not None
                and self.status in (StepStatus.PENDING, StepStatus.ESCALATED))

    def touch(self, now: datetime) -> None:
        """Record a mutation of this step"""
        self.updated_at = now
        self.version += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'workflow_id': self.workflow_id,
            'step_number': self.step_number,
            'eligible_actor': actor_to_dict(self.eligible_actor),
            'status': self.status.value,
            'name': self.name,
            'description': self.description,
            'sla_hours': self.sla_hours,
            'activated_at': _iso(self.activated_at),
            'due_at': _iso(self.due_at),
            'decided_by': self.decided_by,
            'decided_at': _iso(self.decided_at),
            'comment': self.comment,
            'escalated_from': actor_to_dict(self.escalated_from) if self.escalated_from else None,
            'escalation_count': self.escalation_count,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowStep':
        return cls(
            id=data['id'],
            created_at=_parse(data['created_at']),
            updated_at=_parse(data['updated_at']),
            workflow_id=data['workflow_id'],
            step_number=data['step_number'],
            eligible_actor=actor_from_dict(data['eligible_actor']),
            status=StepStatus(data['status']),
            name=data.get('name', ""),
            description=data.get('description', ""),
            sla_hours=data.get('sla_hours'),
            activated_at=_parse(data.get('activated_at')),
            due_at=_parse(data.get('due_at')),
            decided_by=data.get('decided_by'),
            decided_at=_parse(data.get('decided_at')),
            comment=data.get('comment'),
            escalated_from=actor_from_dict(data['escalated_from']) if data.get('escalated_from') else None,
            escalation_count=data.get('escalation_count', 0),
            version=data.get('version', 1),
        )


@dataclass
class Workflow(StorageRecord):
    """One running (or finished) approval process for a business entity"""
    workflow_type: str
    reference_type: str
    reference_id: str
    status: WorkflowStatus
    initiated_by: str
    current_step: Optional[int] = 1
    steps: List[WorkflowStep] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)
    completed_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    sla_deadline: Optional[datetime] = None
    sla_breached: bool = False
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    @property
    def last_step_number(self) -> int:
        return max(step.step_number for step in self.steps)

    def get_step(self, step_number: int) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.step_number == step_number:
                return step
        return None

    def active_step(self) -> Optional[WorkflowStep]:
        """The unique step currently awaiting action, if any"""
        for step in self.steps:
            if step.is_active:
                return step
        return None

    def derive_current_step(self) -> Optional[int]:
        """Recompute the current step pointer from the step collection"""
        step = self.active_step()
        return step.step_number if step else None

    def check_invariants(self) -> List[str]:
        """Return a list of violated structural invariants (empty when consistent)"""
        problems = []
        numbers = sorted(step.step_number for step in self.steps)
        if numbers != list(range(1, len(numbers) + 1)):
            problems.append(f"step numbers not contiguous from 1: {numbers}")

        active = [step for step in self.steps if step.is_active]
        if self.status == WorkflowStatus.IN_PROGRESS:
            if len(active) != 1:
                problems.append(f"expected exactly one active step, found {len(active)}")
            elif active[0].step_number != self.current_step:
                problems.append(
                    f"current_step {self.current_step} != active step {active[0].step_number}"
                )
        elif self.is_terminal and active:
            problems.append(f"terminal workflow has {len(active)} active step(s)")

        if self.status == WorkflowStatus.APPROVED:
            last = self.get_step(self.last_step_number)
            if last is None or last.status != StepStatus.APPROVED:
                problems.append("approved workflow whose last step is not approved")
        return problems

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'workflow_type': self.workflow_type,
            'reference_type': self.reference_type,
            'reference_id': self.reference_id,
            'status': self.status.value,
            'initiated_by': self.initiated_by,
            'current_step': self.current_step,
            'steps': [step.to_dict() for step in self.steps],
            'context': self.context,
            'completed_at': _iso(self.completed_at),
            'cancel_reason': self.cancel_reason,
            'sla_deadline': _iso(self.sla_deadline),
            'sla_breached': self.sla_breached,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Workflow':
        steps = [WorkflowStep.from_dict(step) for step in data.get('steps', [])]
        steps.sort(key=lambda s: s.step_number)
        return cls(
            id=data['id'],
            created_at=_parse(data['created_at']),
            updated_at=_parse(data['updated_at']),
            workflow_type=data['workflow_type'],
            reference_type=data['reference_type'],
            reference_id=data['reference_id'],
            status=WorkflowStatus(data['status']),
            initiated_by=data['initiated_by'],
            current_step=data.get('current_step'),
            steps=steps,
            context=data.get('context') or {},
            completed_at=_parse(data.get('completed_at')),
            cancel_reason=data.get('cancel_reason'),
            sla_deadline=_parse(data.get('sla_deadline')),
            sla_breached=data.get('sla_breached', False),
            version=data.get('version', 1),
        )


@dataclass
class DecisionOutcome:
    """Result of a successful ProcessDecision call"""
    status: DecisionResult
    workflow: Workflow
    next_step: Optional[int] = None
