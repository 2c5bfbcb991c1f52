"""
Tests for approval chain builders and the chain registry
"""

import pytest

from approval_workflows.chains import (
    BUDGET_APPROVAL_STEPS, ChainRegistry, RoleChainBuilder, StepTemplate,
    default_chain_registry
)
from approval_workflows.errors import ChainBuildFailedError, UnknownWorkflowTypeError
from approval_workflows.models import RoleActor, StepSpec, UserActor, WorkflowType


class TestRoleChainBuilder:
    """Test the reference role-based builder"""

    def test_builds_role_steps(self):
        builder = RoleChainBuilder([
            StepTemplate("Review", "BRAND_MANAGER", 12, "First look"),
            StepTemplate("Sign-off", "FINANCE_HEAD"),
        ], default_sla_hours=36)

        chain = builder.build_chain("OTB_APPROVAL", {})

        assert [s.eligible_actor for s in chain] == [RoleActor("BRAND_MANAGER"), RoleActor("FINANCE_HEAD")]
        assert [s.sla_hours for s in chain] == [12, 36]
        assert chain[0].name == "Review"
        assert chain[0].description == "First look"

    def test_assignees_pin_steps_to_users(self):
        builder = RoleChainBuilder(BUDGET_APPROVAL_STEPS)

        chain = builder.build_chain("BUDGET_APPROVAL", {"assignees": {"2": "board-chair", 1: "cfo"}})

        assert chain[0].eligible_actor == UserActor("cfo")
        assert chain[1].eligible_actor == UserActor("board-chair")

    def test_requires_steps(self):
        with pytest.raises(ValueError):
            RoleChainBuilder([])


class TestChainRegistry:
    """Test builder registration and chain validation"""

    def test_unknown_type(self):
        registry = ChainRegistry()
        with pytest.raises(UnknownWorkflowTypeError) as exc_info:
            registry.build("CUSTOM_APPROVAL", {})
        assert exc_info.value.workflow_type == "CUSTOM_APPROVAL"

    def test_callable_builder(self):
        registry = ChainRegistry()
        registry.register("CUSTOM_APPROVAL", lambda workflow_type, context: [
            StepSpec(UserActor(context["approver"]), 8)
        ])

        chain = registry.build("CUSTOM_APPROVAL", {"approver": "U9"})

        assert registry.is_registered("CUSTOM_APPROVAL")
        assert chain == [StepSpec(UserActor("U9"), 8)]

    def test_enum_and_string_keys_are_equivalent(self):
        registry = ChainRegistry()
        registry.register(WorkflowType.SKU_APPROVAL, RoleChainBuilder([StepTemplate("Only", "BRAND_PLANNER")]))

        assert registry.is_registered("SKU_APPROVAL")
        assert len(registry.build("SKU_APPROVAL", {})) == 1

    def test_register_rejects_non_builders(self):
        with pytest.raises(TypeError):
            ChainRegistry().register("CUSTOM_APPROVAL", object())

    def test_builder_exception_becomes_chain_build_failed(self):
        def broken(workflow_type, context):
            raise KeyError("amount")

        registry = ChainRegistry()
        registry.register("CUSTOM_APPROVAL", broken)

        with pytest.raises(ChainBuildFailedError) as exc_info:
            registry.build("CUSTOM_APPROVAL", {})
        assert isinstance(exc_info.value.__cause__, KeyError)
        assert exc_info.value.code == "CHAIN_BUILD_FAILED"

    def test_empty_chain_fails(self):
        registry = ChainRegistry()
        registry.register("CUSTOM_APPROVAL", lambda workflow_type, context: [])

        with pytest.raises(ChainBuildFailedError, match="at least one step"):
            registry.build("CUSTOM_APPROVAL", {})

    def test_invalid_step_fails(self):
        registry = ChainRegistry()
        registry.register("NOT_A_SPEC", lambda workflow_type, context: [{"role": "ADMIN"}])
        registry.register("NO_ACTOR", lambda workflow_type, context: [StepSpec("ADMIN")])
        registry.register("NEGATIVE_SLA", lambda workflow_type, context: [StepSpec(RoleActor("ADMIN"), -1)])

        for workflow_type in ("NOT_A_SPEC", "NO_ACTOR", "NEGATIVE_SLA"):
            with pytest.raises(ChainBuildFailedError):
                registry.build(workflow_type, {})


class TestDefaultChains:
    """Test the built-in budget, OTB and SKU chains"""

    def test_registered_types(self):
        registry = default_chain_registry()
        assert registry.registered_types() == ["BUDGET_APPROVAL", "OTB_APPROVAL", "SKU_APPROVAL"]

    def test_budget_chain(self):
        chain = default_chain_registry().build(WorkflowType.BUDGET_APPROVAL, {})

        assert [s.eligible_actor for s in chain] == [RoleActor("FINANCE_HEAD"), RoleActor("BOD_MEMBER")]
        assert [s.sla_hours for s in chain] == [24, 48]

    def test_otb_chain(self):
        chain = default_chain_registry().build(WorkflowType.OTB_APPROVAL, {})

        assert [s.eligible_actor.role for s in chain] == [
            "BRAND_MANAGER", "FINANCE_HEAD", "MERCHANDISE_LEAD", "BOD_MEMBER"
        ]

    def test_sku_chain(self):
        chain = default_chain_registry().build(WorkflowType.SKU_APPROVAL, {})

        assert [s.name for s in chain] == [
            "Brand Planner Review", "Brand Manager Approval", "Finance Sign-off"
        ]
