from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import pytest
from aws_cdk import App
from aws_cdk.assertions import Template

from botpress_stacks.botpress_topology import build_topology
from common import constants
from common.stack_context import StackContext
from topology.assembler import (
    DeploymentPlan,
    EnvironmentBindings,
    StackAssembler,
    StackFactory,
    StackScope,
    VariantConfig,
)
from topology.cdk_provisioner import CdkProvisioner
from topology.model import PlanEntry, ResourceKind
from topology.provisioning import PlanExecutor, RecordingProvisioner

CONTEXT = StackContext()
NETWORK_STACK = CONTEXT.build_stack_name(constants.STACK_NETWORK)
DATABASE_STACK = CONTEXT.build_stack_name(constants.STACK_DATABASE)
REDIS_STACK = CONTEXT.build_stack_name(constants.STACK_REDIS)
DOMAINS_STACK = CONTEXT.build_stack_name(constants.STACK_DOMAINS)
SERVICES_STACK = CONTEXT.build_stack_name(constants.STACK_SERVICES)
WAF_STACK = CONTEXT.build_stack_name(constants.STACK_WAF)

LITERAL_BINDINGS = {
    constants.BINDING_HOSTED_ZONE_ID: "Z0123456789ABCDEFGHIJ",
    constants.BINDING_HOSTED_ZONE_NAME: "example.com",
    constants.BINDING_CERTIFICATE_ARN: "arn:aws:acm:us-east-1:123456789012:certificate/abc",
}


# ------------------- Test Case Data Classes -------------------
@dataclass(frozen=True)
class ResourceCountTestCase:
    id: str
    stack: str
    kind: ResourceKind
    expected: int


@dataclass(frozen=True)
class IngressTestCase:
    id: str
    boundary_stack: str
    boundary: str
    source: str
    port: int
    origin: str


@dataclass(frozen=True)
class EnvTestCase:
    id: str
    key: str
    expected: str


@dataclass(frozen=True)
class VariantTestCase:
    id: str
    features: Tuple[str, ...]
    bindings: Mapping[str, Any] = field(default_factory=dict)
    present: Tuple[str, ...] = ()
    absent: Tuple[str, ...] = ()


# ------------------- Helper Functions -------------------


def factory(
    name: str,
    build: Optional[Callable[[StackScope], None]] = None,
    feature: Optional[str] = None,
    **inputs: Tuple[Any, ...],
) -> StackFactory:
    """Factory whose inputs are given as ``name=(type, source_stack[, source_output])``."""
    result = StackFactory(name=name, build=build or (lambda scope: None), feature=feature)
    for input_name, source in inputs.items():
        result = result.with_input(input_name, *source)
    return result


def build_plan(
    features: Optional[Sequence[str]] = constants.DEFAULT_FEATURES,
    bindings: Optional[Mapping[str, Any]] = None,
) -> DeploymentPlan:
    assembler = StackAssembler(
        variants=VariantConfig(features=features),
        bindings=EnvironmentBindings(bindings or {}),
    )
    return assembler.assemble(build_topology(CONTEXT))


def entries_of_kind(
    plan: DeploymentPlan, kind: ResourceKind, stack: Optional[str] = None
) -> List[PlanEntry]:
    return [
        entry
        for entry in plan
        if entry.kind == kind and (stack is None or entry.stack == stack)
    ]


def get_entry(plan: DeploymentPlan, stack: str, name: str) -> PlanEntry:
    entry = plan.find(stack, name)
    assert entry is not None, f"{stack}/{name} is not in the plan"
    return entry


def ingress_of(plan: DeploymentPlan, stack: str, name: str) -> Dict[Tuple[str, int], Any]:
    return {
        (str(rule.source), rule.port): rule
        for rule in get_entry(plan, stack, name).properties["ingress"]
    }


def assert_topological(plan: DeploymentPlan) -> None:
    position = {entry.qualified_name: index for index, entry in enumerate(plan)}
    for index, entry in enumerate(plan):
        for dependency in entry.depends_on:
            assert position[dependency] < index, f"{entry.qualified_name} precedes {dependency}"


def build_templates(
    features: Optional[Sequence[str]] = constants.DEFAULT_FEATURES,
    bindings: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Template]:
    return templates_for(build_plan(features, bindings))


def templates_for(plan: DeploymentPlan) -> Dict[str, Template]:
    """Provision ``plan`` into a fresh CDK app and synthesize every stack."""
    app = App()
    provisioner = CdkProvisioner(app)
    PlanExecutor(provisioner).apply(plan)
    app.synth()
    return {name: Template.from_stack(stack) for name, stack in provisioner.stacks.items()}


def find_resources_by_type(
    template: Template, resource_type: str, props: Optional[dict] = None
) -> Mapping[str, Any]:

    return template.find_resources(resource_type, props=props)


def get_single_resource_id(
    resources: Mapping[str, Any], resource_type: str = "resource"
) -> str:
    assert len(resources) == 1, f"expected exactly one {resource_type}"
    return next(iter(resources))


# ------------------- Pytest Fixtures -------------------


@pytest.fixture
def plan() -> DeploymentPlan:
    return build_plan()


@pytest.fixture
def recording(plan: DeploymentPlan) -> RecordingProvisioner:
    provisioner = RecordingProvisioner()
    PlanExecutor(provisioner).apply(plan)
    return provisioner


@pytest.fixture(scope="module")
def templates() -> Dict[str, Template]:
    return build_templates()