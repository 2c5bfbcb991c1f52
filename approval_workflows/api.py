"""
Approval Workflow API Application Factory

HTTP surface over WorkflowEngine. Engine exceptions are translated by one
exception handler into ``{"code", "detail"}`` bodies with a fixed status map.
"""

from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import __version__
from .config import WorkflowConfig, get_config
from .engine import WorkflowEngine
from .errors import (
    ChainBuildFailedError, ConcurrentModificationError, NotFoundError, StaleStepError,
    UnauthorizedError, UnknownWorkflowTypeError, ValidationError, WorkflowError,
    WorkflowTerminalError
)
from .escalation import EscalationScheduler
from .logging_config import get_logger
from .models import Workflow, WorkflowStatus
from .storage import create_storage


# 422 is written literally; its Starlette constant name changed between releases
ERROR_STATUS_CODES = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    UnknownWorkflowTypeError: status.HTTP_400_BAD_REQUEST,
    ChainBuildFailedError: 422,
    WorkflowTerminalError: status.HTTP_409_CONFLICT,
    StaleStepError: status.HTTP_409_CONFLICT,
    UnauthorizedError: status.HTTP_403_FORBIDDEN,
    ConcurrentModificationError: status.HTTP_409_CONFLICT,
    ValidationError: 422,
}

logger = get_logger("approvals.api")


# Request models
class CreateWorkflowRequest(BaseModel):
    workflow_type: str
    reference_type: str
    reference_id: str
    initiated_by: str
    context: Optional[Dict[str, Any]] = None
    sla_hours: Optional[int] = None


class DecisionRequest(BaseModel):
    actor_id: str
    action: str
    comment: Optional[str] = None


class CancelWorkflowRequest(BaseModel):
    actor_id: str
    reason: str


def get_engine(request: Request) -> WorkflowEngine:
    return request.app.state.engine


def get_scheduler(request: Request) -> EscalationScheduler:
    return request.app.state.scheduler


def workflow_to_response(workflow: Workflow) -> Dict[str, Any]:
    data = workflow.to_dict()
    data['total_steps'] = workflow.total_steps
    if workflow.is_terminal:
        data['current_step'] = None
    return data


def create_app(engine: Optional[WorkflowEngine] = None,
               scheduler: Optional[EscalationScheduler] = None,
               config: Optional[WorkflowConfig] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    config = config or get_config()
    if engine is None:
        engine = WorkflowEngine(create_storage(config.database_url), config=config)
    if scheduler is None:
        scheduler = EscalationScheduler(engine, config.escalation_interval_seconds)

    app = FastAPI(
        title="Approval Workflow API",
        description="Multi-step approval workflows for budgets, OTB plans and SKU proposals",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.engine = engine
    app.state.scheduler = scheduler

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(WorkflowError)
    async def workflow_error_handler(request: Request, exc: WorkflowError):
        status_code = ERROR_STATUS_CODES.get(type(exc), status.HTTP_400_BAD_REQUEST)
        logger.info(f"{request.method} {request.url.path} -> {status_code} {exc.code}: {exc}")
        return JSONResponse(status_code=status_code, content={"code": exc.code, "detail": str(exc)})

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "approval_workflows",
            "version": __version__,
            "escalation_running": app.state.scheduler.running,
        }

    @app.post("/workflows", status_code=status.HTTP_201_CREATED, tags=["Workflows"])
    def create_workflow(request: CreateWorkflowRequest,
                        engine: WorkflowEngine = Depends(get_engine)):
        """Start an approval workflow for a business entity"""
        workflow = engine.create_workflow(
            workflow_type=request.workflow_type,
            reference_type=request.reference_type,
            reference_id=request.reference_id,
            initiated_by=request.initiated_by,
            context=request.context,
            sla_hours=request.sla_hours
        )
        return workflow_to_response(workflow)

    @app.get("/workflows", tags=["Workflows"])
    def list_workflows(
        status: Optional[str] = None,
        workflow_type: Optional[str] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        engine: WorkflowEngine = Depends(get_engine)
    ):
        """List workflows, newest first"""
        status_filter = None
        if status:
            try:
                status_filter = WorkflowStatus(status.upper())
            except ValueError:
                raise ValidationError(f"Unknown workflow status: {status}", field="status")

        workflows = engine.list_workflows(status_filter, workflow_type, reference_type, reference_id)
        return {"workflows": [workflow_to_response(w) for w in workflows]}

    # Declared before /workflows/{workflow_id} so "pending" is not read as an id
    @app.get("/workflows/pending", tags=["Workflows"])
    def get_pending_workflows(actor_id: str = Query(...),
                              engine: WorkflowEngine = Depends(get_engine)):
        """Workflows whose active step the actor may decide"""
        workflows = engine.get_pending_workflows(actor_id)
        return {"workflows": [workflow_to_response(w) for w in workflows]}

    @app.get("/workflows/{workflow_id}", tags=["Workflows"])
    def get_workflow(workflow_id: str, engine: WorkflowEngine = Depends(get_engine)):
        """Get a workflow with its steps and SLA summary"""
        workflow = engine.get_workflow(workflow_id)
        data = workflow_to_response(workflow)
        data['sla'] = engine.get_sla_report(workflow_id)
        return data

    @app.post("/workflows/{workflow_id}/steps/{step_number}/decision", tags=["Workflows"])
    def process_decision(workflow_id: str, step_number: int, request: DecisionRequest,
                         engine: WorkflowEngine = Depends(get_engine)):
        """Approve or reject the active step"""
        outcome = engine.process_decision(
            workflow_id=workflow_id,
            step_number=step_number,
            actor_id=request.actor_id,
            action=request.action,
            comment=request.comment
        )
        return {
            "status": outcome.status.value,
            "next_step": outcome.next_step,
            "workflow": workflow_to_response(outcome.workflow),
        }

    @app.post("/workflows/{workflow_id}/cancel", tags=["Workflows"])
    def cancel_workflow(workflow_id: str, request: CancelWorkflowRequest,
                        engine: WorkflowEngine = Depends(get_engine)):
        """Cancel an unfinished workflow"""
        workflow = engine.cancel_workflow(workflow_id, request.actor_id, request.reason)
        return workflow_to_response(workflow)

    @app.post("/escalations/sweep", tags=["Escalations"])
    def run_escalation_sweep(scheduler: EscalationScheduler = Depends(get_scheduler)):
        """Run one SLA sweep now: escalations, deadline breaches and warnings"""
        result = scheduler.sweep_once()
        return {
            "started_at": result.started_at.isoformat(),
            "skipped": result.skipped,
            "escalated": result.escalated,
            "breached": result.breached,
            "warnings": result.warnings,
            "conflicts": result.conflicts,
            "failed": result.failed,
        }

    @app.get("/workflow-types", tags=["Workflows"])
    def list_workflow_types(engine: WorkflowEngine = Depends(get_engine)) -> Dict[str, List[str]]:
        """Workflow types with a registered approval chain"""
        return {"workflow_types": engine.chains.registered_types()}

    return app
