"""
Workflow Error Module

Typed exception hierarchy for the approval engine. Every exception carries a
machine-readable ``code`` and the identifiers needed to act on it, so callers
catch by type instead of parsing messages.

    WorkflowError
    +-- NotFoundError
    +-- UnknownWorkflowTypeError
    +-- ChainBuildFailedError
    +-- WorkflowTerminalError
    +-- StaleStepError
    +-- UnauthorizedError
    +-- ConcurrentModificationError   (retryable)
    +-- ValidationError

Only ConcurrentModificationError is safe to retry after re-reading state.
"""

from typing import Optional


class WorkflowError(Exception):
    """Base exception for all workflow engine errors"""

    code: str = "WORKFLOW_ERROR"
    retryable: bool = False


class NotFoundError(WorkflowError):
    """Workflow (or step) does not exist"""

    code: str = "NOT_FOUND"

    def __init__(self, workflow_id: str, step_number: Optional[int] = None):
        self.workflow_id = workflow_id
        self.step_number = step_number
        if step_number is None:
            super().__init__(f"Workflow not found: {workflow_id}")
        else:
            super().__init__(f"Step {step_number} not found in workflow {workflow_id}")


class UnknownWorkflowTypeError(WorkflowError):
    """No chain builder is registered for the workflow type"""

    code: str = "UNKNOWN_WORKFLOW_TYPE"

    def __init__(self, workflow_type: str):
        self.workflow_type = workflow_type
        super().__init__(f"Unknown workflow type: {workflow_type}")


class ChainBuildFailedError(WorkflowError):
    """Chain builder raised or returned an unusable chain"""

    code: str = "CHAIN_BUILD_FAILED"

    def __init__(self, workflow_type: str, reason: str):
        self.workflow_type = workflow_type
        self.reason = reason
        super().__init__(f"Failed to build approval chain for {workflow_type}: {reason}")


class WorkflowTerminalError(WorkflowError):
    """Mutation attempted on a workflow that already reached a terminal status"""

    code: str = "WORKFLOW_TERMINAL"

    def __init__(self, workflow_id: str, status: str):
        self.workflow_id = workflow_id
        self.status = status
        super().__init__(f"Workflow {workflow_id} is already {status}")


class StaleStepError(WorkflowError):
    """Decision targets a step that is not the active one"""

    code: str = "STALE_STEP"

    def __init__(self, workflow_id: str, step_number: int, current_step: Optional[int]):
        self.workflow_id = workflow_id
        self.step_number = step_number
        self.current_step = current_step
        super().__init__(
            f"Step {step_number} of workflow {workflow_id} is not active "
            f"(current step: {current_step})"
        )


class UnauthorizedError(WorkflowError):
    """Actor is not eligible to act on the step"""

    code: str = "UNAUTHORIZED"

    def __init__(self, workflow_id: str, actor_id: str, step_number: Optional[int] = None):
        self.workflow_id = workflow_id
        self.actor_id = actor_id
        self.step_number = step_number
        target = f"step {step_number} of " if step_number is not None else ""
        super().__init__(f"Actor {actor_id} may not act on {target}workflow {workflow_id}")


class ConcurrentModificationError(WorkflowError):
    """Optimistic version check failed; re-read and retry"""

    code: str = "CONCURRENT_MODIFICATION"
    retryable: bool = True

    def __init__(self, workflow_id: str, expected_version: int):
        self.workflow_id = workflow_id
        self.expected_version = expected_version
        super().__init__(
            f"Workflow {workflow_id} was modified concurrently "
            f"(expected version {expected_version})"
        )


class ValidationError(WorkflowError):
    """Malformed input: bad action value, missing required comment, etc."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)
