"""Stack-level orchestration.

``StackAssembler.assemble`` builds every participating stack in dependency
order and returns a ``DeploymentPlan``. A stack is only built once all of its
inputs are bound to outputs of resolved stacks. A stack that cannot be built is
marked failed and removed from the graph with everything it contributed; the
stacks that consume it fail in turn, while stacks that already resolved are
left as they are.
"""
import os
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

import attrs
from attrs import define, field
from aws_lambda_powertools import Logger

from topology.errors import (
    CyclicDependencyError,
    DuplicateDeclarationError,
    MissingBindingError,
    TopologyError,
    TypeMismatchError,
    UnresolvedReferenceError,
)
from topology.graph import ResourceGraph
from topology.model import (
    Output,
    OutputRef,
    OutputType,
    PlanEntry,
    Protocol,
    ResourceHandle,
    ResourceKind,
)
from topology.policy import EgressRule, IngressRule, NetworkPolicyComposer, Peer
from topology.secrets import SecretParameter, declare_parameter
from topology.services import DiscoveryNamespace, ServiceUnit, Sizing, define_service

logger = Logger(service="topology", level=os.getenv("LOG_LEVEL", "INFO").upper())

_MISSING = object()


class StackState(str, Enum):
    PENDING = "pending"
    ASSEMBLING = "assembling"
    RESOLVED = "resolved"
    FAILED = "failed"


@define(frozen=True)
class InputSpec:
    type: OutputType = field(converter=OutputType)
    source: OutputRef
    required: bool = True


@define(frozen=True)
class StackFactory:
    name: str
    build: Callable[["StackScope"], None] = field(eq=False)
    inputs: Mapping[str, InputSpec] = field(factory=dict)
    feature: Optional[str] = None
    description: str = ""

    def with_input(
        self,
        name: str,
        type: OutputType,
        source_stack: str,
        source_output: Optional[str] = None,
        required: bool = True,
    ) -> "StackFactory":
        spec = InputSpec(
            type=type, source=OutputRef(source_stack, source_output or name), required=required
        )
        return attrs.evolve(self, inputs={**self.inputs, name: spec})


@define(frozen=True)
class VariantConfig:
    """The optional stacks and services taking part in an assembly.

    ``features=None`` enables every feature.
    """

    features: Optional[FrozenSet[str]] = field(
        default=None, converter=lambda value: None if value is None else frozenset(value)
    )

    def enabled(self, feature: Optional[str]) -> bool:
        return feature is None or self.features is None or feature in self.features

    @classmethod
    def from_string(cls, value: Optional[str], default: Iterable[str] = ()) -> "VariantConfig":
        """Parse a comma separated flag list; ``None`` selects ``default``."""
        if value is None:
            return cls(features=default)
        return cls(features=[flag.strip().lower() for flag in value.split(",") if flag.strip()])

    def with_features(self, *features: str) -> "VariantConfig":
        if self.features is None:
            return self
        return VariantConfig(features=self.features | set(features))

    def without(self, *features: str) -> "VariantConfig":
        return VariantConfig(features=(self.features or frozenset()) - set(features))


@define(frozen=True)
class EnvironmentBindings:
    """Literal environment-specific configuration (IDs, names, endpoints)."""

    values: Mapping[str, Any] = field(factory=dict, converter=dict)

    def __contains__(self, key: str) -> bool:
        return key in self.values

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    def require(self, key: str, stack: Optional[str] = None) -> Any:
        if key not in self.values:
            raise MissingBindingError(key, stack=stack)
        return self.values[key]

    @classmethod
    def from_environ(cls, environ: Mapping[str, str], prefix: str) -> "EnvironmentBindings":
        return cls(
            {
                key[len(prefix):].lower(): value
                for key, value in environ.items()
                if key.startswith(prefix) and len(key) > len(prefix)
            }
        )


@define(frozen=True)
class DeploymentPlan:
    entries: Tuple[PlanEntry, ...]
    states: Mapping[str, StackState]
    errors: Mapping[str, TopologyError] = field(factory=dict)
    skipped: Tuple[str, ...] = ()
    stack_order: Tuple[str, ...] = ()

    def __iter__(self) -> Iterator[PlanEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def resolved_stacks(self) -> List[str]:
        return [name for name in self.stack_order if self.states.get(name) == StackState.RESOLVED]

    @property
    def failed_stacks(self) -> List[str]:
        return [name for name, state in self.states.items() if state == StackState.FAILED]

    @property
    def teardown_order(self) -> List[str]:
        return list(reversed(self.stack_order))

    def entries_for(self, stack: str) -> List[PlanEntry]:
        return [entry for entry in self.entries if entry.stack == stack]

    def find(self, stack: str, name: str) -> Optional[PlanEntry]:
        return next(
            (entry for entry in self.entries if entry.stack == stack and entry.name == name),
            None,
        )

    def to_list(self) -> List[dict]:
        return [entry.to_dict() for entry in self.entries]

    def summary(self) -> Dict[str, Any]:
        return {
            "resolved": self.resolved_stacks,
            "failed": {name: str(error) for name, error in self.errors.items()},
            "skipped": list(self.skipped),
            "resources": len(self.entries),
        }

    def raise_for_errors(self) -> None:
        for error in self.errors.values():
            raise error


class StackScope:
    """The view of the graph a stack factory builds against."""

    def __init__(
        self,
        assembler: "StackAssembler",
        stack: str,
        bindings: EnvironmentBindings,
    ) -> None:
        self.assembler = assembler
        self.stack = stack
        self.graph = assembler.graph
        self.composer = assembler.composer
        self.bindings = bindings
        self.variants = assembler.variants

    def input(self, name: str) -> Any:
        return self.graph.input_value(self.stack, name)

    def has_input(self, name: str) -> bool:
        slot = self.graph.stack(self.stack).inputs.get(name)
        return slot is not None and slot.bound is not None

    def resource(
        self,
        kind: ResourceKind,
        name: str,
        properties: Optional[Mapping[str, Any]] = None,
        depends_on: Iterable[ResourceHandle] = (),
    ) -> ResourceHandle:
        return self.graph.declare_resource(self.stack, kind, name, properties, depends_on)

    def output(self, name: str, type: OutputType, value: Any) -> Output:
        return self.graph.declare_output(self.stack, name, type, value)

    def allow_ingress(
        self,
        boundary: ResourceHandle,
        source: Peer,
        port: int,
        protocol: Union[Protocol, str] = Protocol.TCP,
        reason: str = "",
    ) -> IngressRule:
        return self.composer.allow_ingress(
            boundary, source, port, protocol, reason=reason, origin=self.stack
        )

    def allow_egress(
        self,
        boundary: ResourceHandle,
        destination: Peer,
        port: int,
        protocol: Union[Protocol, str] = Protocol.TCP,
        reason: str = "",
    ) -> EgressRule:
        return self.composer.allow_egress(
            boundary, destination, port, protocol, reason=reason, origin=self.stack
        )

    def binding(self, key: str, default: Any = _MISSING) -> Any:
        if default is _MISSING:
            return self.bindings.require(key, stack=self.stack)
        return self.bindings.get(key, default)

    def enabled(self, feature: str) -> bool:
        return self.variants.enabled(feature)

    def parameter(self, name: str, description: str = "") -> ResourceHandle:
        return declare_parameter(self, name, description=description)

    def secret_parameter(self, name: str, description: str = "") -> SecretParameter:
        return SecretParameter.declare(self, name, description=description)

    def generated_secret(self, name: str) -> SecretParameter:
        return SecretParameter.generated(self, name)

    def namespace(
        self, name: str, network: ResourceHandle, resource_name: str = "Namespace"
    ) -> DiscoveryNamespace:
        return DiscoveryNamespace.declare(self, name, network, resource_name=resource_name)

    def track_namespace(self, namespace: DiscoveryNamespace) -> None:
        self.assembler.namespaces.append(namespace)

    def service(
        self,
        cluster: ResourceHandle,
        image: str,
        sizing: Sizing,
        port: int,
        env: Optional[Mapping[str, Any]],
        secrets: Optional[Mapping[str, Any]],
        discovery_name: str,
        namespace: DiscoveryNamespace,
        network: ResourceHandle,
        **kwargs: Any,
    ) -> ServiceUnit:
        return define_service(
            self,
            cluster,
            image,
            sizing,
            port,
            env,
            secrets,
            discovery_name,
            namespace,
            network,
            **kwargs,
        )


class StackAssembler:
    def __init__(
        self,
        variants: Optional[VariantConfig] = None,
        bindings: Optional[EnvironmentBindings] = None,
    ) -> None:
        self.variants = variants or VariantConfig()
        self.bindings = bindings or EnvironmentBindings()
        self.graph = ResourceGraph()
        self.composer = NetworkPolicyComposer(self.graph)
        self.namespaces: List[DiscoveryNamespace] = []
        self.states: Dict[str, StackState] = {}
        self.errors: Dict[str, TopologyError] = {}

    def assemble(self, factories: Sequence[StackFactory]) -> DeploymentPlan:
        bindings = EnvironmentBindings(self.bindings.values)
        participating: Dict[str, StackFactory] = {}
        skipped: List[str] = []
        for factory in factories:
            if factory.name in participating or factory.name in self.graph.stacks:
                raise DuplicateDeclarationError(
                    f"stack '{factory.name}' is declared twice", stack=factory.name
                )
            if not self.variants.enabled(factory.feature):
                skipped.append(factory.name)
                logger.info(
                    "Stack skipped by variant",
                    extra={"stack": factory.name, "feature": factory.feature},
                )
                continue
            participating[factory.name] = factory

        for name, factory in participating.items():
            self.graph.add_stack(name)
            self.states[name] = StackState.PENDING
            for input_name, spec in factory.inputs.items():
                self.graph.declare_input(name, input_name, spec.type, required=spec.required)
                self.graph.bind_input(name, input_name, spec.source)

        cyclic = [
            (members, self.graph.cycle_through(members[0], members))
            for members in self.graph.cyclic_components()
        ]
        for members, cycle in cyclic:
            for name in members:
                self._fail(name, CyclicDependencyError(cycle))

        order = self.graph.stack_order(
            [name for name in participating if self.states[name] != StackState.FAILED]
        )
        for name in order:
            if self.states[name] == StackState.FAILED:
                continue
            error = self._check_inputs(name, skipped)
            if error is not None:
                self._fail(name, error)
                continue
            self.states[name] = StackState.ASSEMBLING
            logger.debug("Assembling stack", extra={"stack": name})
            self.composer.active_stack = name
            try:
                participating[name].build(StackScope(self, name, bindings))
            except TopologyError as e:
                if e.stack is None:
                    e.stack = name
                self._fail(name, e)
                continue
            finally:
                self.composer.active_stack = None
            self.states[name] = StackState.RESOLVED
            logger.info(
                "Stack resolved",
                extra={"stack": name, "resources": len(self.graph.stacks[name].resources)},
            )

        resources = self.graph.resolve()
        plan = DeploymentPlan(
            entries=tuple(PlanEntry.from_resource(resource) for resource in resources),
            states=dict(self.states),
            errors=dict(self.errors),
            skipped=tuple(skipped),
            stack_order=tuple(self.graph.stack_order()),
        )
        logger.info("Assembly finished", extra=plan.summary())
        return plan

    def _check_inputs(self, name: str, skipped: Sequence[str]) -> Optional[TopologyError]:
        for slot in self.graph.stack(name).inputs.values():
            if slot.source is None:
                if slot.required:
                    return UnresolvedReferenceError(name, slot.name, detail="input is not bound")
                continue
            source = slot.source.stack
            state = self.states.get(source)
            detail = None
            if state is None:
                reason = "skipped by variant" if source in skipped else "not part of this assembly"
                detail = f"stack '{source}' is {reason}"
            elif state == StackState.FAILED:
                detail = f"stack '{source}' failed"
            elif state != StackState.RESOLVED:
                detail = f"stack '{source}' is {state.value}"
            else:
                try:
                    if not self.graph.try_bind(name, slot):
                        detail = f"stack '{source}' has no output '{slot.source.name}'"
                except TypeMismatchError as e:
                    return e
            if detail is not None and slot.required:
                return UnresolvedReferenceError(
                    name, slot.name, source=str(slot.source), detail=detail
                )
        return None

    def _fail(self, name: str, error: TopologyError) -> None:
        self.states[name] = StackState.FAILED
        self.errors[name] = error
        if name in self.graph.stacks:
            self.graph.remove_stack(name)
        for namespace in self.namespaces:
            namespace.discard_origin(name)
        self.namespaces = [ns for ns in self.namespaces if ns.handle.stack != name]
        logger.error("Stack failed", extra={"stack": name, "error": str(error)})
