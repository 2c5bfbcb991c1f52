"""
Workflow Store Module

Durable storage for workflows and their steps on top of a StorageInterface.
Each workflow is one document, so every transition is a single compare-and-swap
write on the document ``version``: either all of a decision's changes land or
none do.
"""

from typing import List, Optional

from .errors import ConcurrentModificationError, NotFoundError, ValidationError
from .models import Workflow, WorkflowStatus
from .storage import StorageInterface


class WorkflowStore:
    """Transactional, optimistically-versioned workflow repository"""

    TABLE = "workflows"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def create(self, workflow: Workflow) -> Workflow:
        """Persist a new workflow with its full step list"""
        self._validate_steps(workflow)
        if not self.storage.insert(self.TABLE, workflow.id, workflow.to_dict()):
            raise ValidationError(f"Workflow {workflow.id} already exists", field="id")
        return workflow

    def load(self, workflow_id: str) -> Workflow:
        data = self.storage.load(self.TABLE, workflow_id)
        if not data:
            raise NotFoundError(workflow_id)
        return Workflow.from_dict(data)

    def exists(self, workflow_id: str) -> bool:
        return self.storage.exists(self.TABLE, workflow_id)

    def commit(self, workflow: Workflow, expected_version: int) -> Workflow:
        """
        Write a mutated workflow if nobody else committed since it was read.

        The caller passes the version it loaded; the stored document gets
        ``expected_version + 1``. A mismatch raises ConcurrentModificationError
        and leaves storage untouched.
        """
        workflow.version = expected_version + 1
        if not self.storage.compare_and_swap(self.TABLE, workflow.id, expected_version,
                                              workflow.to_dict()):
            workflow.version = expected_version
            if not self.storage.exists(self.TABLE, workflow.id):
                raise NotFoundError(workflow.id)
            raise ConcurrentModificationError(workflow.id, expected_version)
        return workflow

    def list(self, status: Optional[WorkflowStatus] = None,
             workflow_type: Optional[str] = None,
             reference_type: Optional[str] = None,
             reference_id: Optional[str] = None) -> List[Workflow]:
        """List workflows matching all given filters, newest first"""
        filters = {}
        if status is not None:
            filters['status'] = status.value
        if workflow_type is not None:
            filters['workflow_type'] = workflow_type
        if reference_type is not None:
            filters['reference_type'] = reference_type
        if reference_id is not None:
            filters['reference_id'] = reference_id

        workflows = [Workflow.from_dict(data) for data in self.storage.find(self.TABLE, filters)]
        return sorted(workflows, key=lambda w: w.created_at, reverse=True)

    def find_active(self) -> List[Workflow]:
        return self.list(status=WorkflowStatus.IN_PROGRESS)

    def _validate_steps(self, workflow: Workflow) -> None:
        if not workflow.steps:
            raise ValidationError("Workflow must have at least one step", field="steps")

        step_numbers = [step.step_number for step in workflow.steps]
        if len(set(step_numbers)) != len(step_numbers):
            raise ValidationError("Step numbers must be unique", field="steps")

        if sorted(step_numbers) != list(range(1, len(step_numbers) + 1)):
            raise ValidationError("Step numbers must be consecutive from 1", field="steps")
