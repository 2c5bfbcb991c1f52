"""
Approval Chain Module

Turns a workflow type plus submission context into the ordered list of steps
the engine will drive. Routing policy ("who approves what") lives entirely in
registered builders keyed by workflow type; the engine never branches on type.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from .errors import ChainBuildFailedError, UnknownWorkflowTypeError
from .models import RoleActor, StepSpec, UserActor, WorkflowType, type_key


class ChainBuilder(Protocol):
    """Strategy producing the approval chain for one workflow type"""

    def build_chain(self, workflow_type: str, context: Dict[str, Any]) -> List[StepSpec]:
        ...


ChainBuilderFn = Callable[[str, Dict[str, Any]], List[StepSpec]]


@dataclass
class StepTemplate:
    """Definition of a role-owned step inside a RoleChainBuilder"""
    name: str
    role: str
    sla_hours: Optional[int] = None
    description: str = ""


class RoleChainBuilder:
    """
    Reference chain builder: a fixed sequence of role-owned steps.

    A submitter may pin individual steps to a named user through the
    ``assignees`` context key, mapping step number (int or str) to user id.
    """

    def __init__(self, steps: List[StepTemplate], default_sla_hours: int = 24):
        if not steps:
            raise ValueError("RoleChainBuilder needs at least one step")
        self.steps = list(steps)
        self.default_sla_hours = default_sla_hours

    def build_chain(self, workflow_type: str, context: Dict[str, Any]) -> List[StepSpec]:
        assignees = {str(k): v for k, v in (context.get('assignees') or {}).items()}
        chain = []
        for number, template in enumerate(self.steps, start=1):
            user_id = assignees.get(str(number))
            actor = UserActor(user_id) if user_id else RoleActor(template.role)
            chain.append(StepSpec(
                eligible_actor=actor,
                sla_hours=template.sla_hours if template.sla_hours is not None else self.default_sla_hours,
                name=template.name,
                description=template.description,
            ))
        return chain


class ChainRegistry:
    """Registered chain builders keyed by workflow type"""

    def __init__(self):
        self._builders: Dict[str, Union[ChainBuilder, ChainBuilderFn]] = {}

    def register(self, workflow_type: Union[str, WorkflowType],
                 builder: Union[ChainBuilder, ChainBuilderFn]) -> None:
        if not (hasattr(builder, 'build_chain') or callable(builder)):
            raise TypeError("builder must implement build_chain or be callable")
        self._builders[type_key(workflow_type)] = builder

    def is_registered(self, workflow_type: Union[str, WorkflowType]) -> bool:
        return type_key(workflow_type) in self._builders

    def registered_types(self) -> List[str]:
        return sorted(self._builders)

    def build(self, workflow_type: Union[str, WorkflowType], context: Dict[str, Any]) -> List[StepSpec]:
        """
        Build and validate the chain for a workflow type.

        Raises:
            UnknownWorkflowTypeError: no builder registered for the type
            ChainBuildFailedError: the builder raised or returned an invalid chain
        """
        key = type_key(workflow_type)
        builder = self._builders.get(key)
        if builder is None:
            raise UnknownWorkflowTypeError(key)

        try:
            if hasattr(builder, 'build_chain'):
                chain = builder.build_chain(key, context)
            else:
                chain = builder(key, context)
        except Exception as e:
            raise ChainBuildFailedError(key, str(e)) from e

        chain = list(chain or [])
        if not chain:
            raise ChainBuildFailedError(key, "chain must contain at least one step")
        for index, spec in enumerate(chain, start=1):
            if not isinstance(spec, StepSpec):
                raise ChainBuildFailedError(key, f"step {index} is not a StepSpec")
            if not isinstance(spec.eligible_actor, (UserActor, RoleActor)):
                raise ChainBuildFailedError(key, f"step {index} has no eligible actor")
            if spec.sla_hours is not None and spec.sla_hours < 0:
                raise ChainBuildFailedError(key, f"step {index} has negative SLA")
        return chain


BUDGET_APPROVAL_STEPS = [
    StepTemplate("Finance Review", "FINANCE_HEAD", 24,
                 "Review budget allocation details and verify amounts"),
    StepTemplate("BOD Approval", "BOD_MEMBER", 48,
                 "Final approval by Board of Directors"),
]

OTB_APPROVAL_STEPS = [
    StepTemplate("Brand Manager Review", "BRAND_MANAGER", 24,
                 "Review OTB allocations and category breakdown"),
    StepTemplate("Finance Review", "FINANCE_HEAD", 24,
                 "Verify budget alignment and financial metrics"),
    StepTemplate("Merchandise Review", "MERCHANDISE_LEAD", 24,
                 "Review sizing and SKU selection strategy"),
    StepTemplate("BOD Approval", "BOD_MEMBER", 24,
                 "Final approval by Board of Directors"),
]

SKU_APPROVAL_STEPS = [
    StepTemplate("Brand Planner Review", "BRAND_PLANNER", 24,
                 "Verify SKU details and alignment with OTB plan"),
    StepTemplate("Brand Manager Approval", "BRAND_MANAGER", 24,
                 "Approve SKU selection and quantities"),
    StepTemplate("Finance Sign-off", "FINANCE_USER", 24,
                 "Final financial verification and sign-off"),
]


def default_chain_registry(default_sla_hours: int = 24) -> ChainRegistry:
    """Registry pre-loaded with the budget, OTB and SKU approval chains"""
    registry = ChainRegistry()
    registry.register(WorkflowType.BUDGET_APPROVAL, RoleChainBuilder(BUDGET_APPROVAL_STEPS, default_sla_hours))
    registry.register(WorkflowType.OTB_APPROVAL, RoleChainBuilder(OTB_APPROVAL_STEPS, default_sla_hours))
    registry.register(WorkflowType.SKU_APPROVAL, RoleChainBuilder(SKU_APPROVAL_STEPS, default_sla_hours))
    return registry
