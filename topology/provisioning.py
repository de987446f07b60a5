"""Plan execution against a provider.

``PlanExecutor`` walks a resolved ``DeploymentPlan`` in order, replaces
handles and tokens with the provider objects and values created so far, and
calls the matching ``Provisioner`` method for every entry. Composed boundary
rules are applied last, each one in the stack that requested it.
"""
import os
from abc import ABC, abstractmethod
from itertools import count
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import attrs
from attrs import define, field
from aws_lambda_powertools import Logger

from topology.assembler import DeploymentPlan
from topology.errors import PlanNotProvisionableError
from topology.model import (
    TOKEN_PATTERN,
    AttributeRef,
    Endpoint,
    ParameterRef,
    PlanEntry,
    ResourceHandle,
    ResourceKind,
)
from topology.policy import EgressRule, IngressRule
from topology.services import HealthCheck, ServiceDescriptor

logger = Logger(service="topology", level=os.getenv("LOG_LEVEL", "INFO").upper())


class Provisioner(ABC):
    """Provider operations the engine relies on."""

    stack_name: Optional[str] = None
    entry: Optional[PlanEntry] = None

    def begin_stack(self, name: str) -> None:
        self.stack_name = name

    def begin_resource(self, entry: PlanEntry) -> None:
        self.entry = entry

    @abstractmethod
    def create_network(self, spec: Mapping[str, Any]) -> Any: ...

    @abstractmethod
    def create_security_boundary(self, spec: Mapping[str, Any], network: Any) -> Any: ...

    @abstractmethod
    def add_ingress_rule(self, boundary: Any, source: Any, rule: IngressRule) -> Any: ...

    @abstractmethod
    def add_egress_rule(self, boundary: Any, destination: Any, rule: EgressRule) -> Any: ...

    @abstractmethod
    def create_parameter(self, spec: Mapping[str, Any]) -> Any: ...

    @abstractmethod
    def create_secret(self, spec: Mapping[str, Any]) -> Any: ...

    @abstractmethod
    def create_data_store(self, spec: Mapping[str, Any], network: Any) -> Any: ...

    @abstractmethod
    def create_cache(self, spec: Mapping[str, Any], network: Any) -> Any: ...

    @abstractmethod
    def create_bastion(self, spec: Mapping[str, Any], network: Any) -> Any: ...

    @abstractmethod
    def create_compute_cluster(self, network: Any, spec: Optional[Mapping[str, Any]] = None) -> Any: ...

    @abstractmethod
    def create_namespace(self, spec: Mapping[str, Any], network: Any) -> Any: ...

    @abstractmethod
    def create_service(
        self, cluster: Any, descriptor: ServiceDescriptor, spec: Mapping[str, Any]
    ) -> Any: ...

    @abstractmethod
    def create_load_balancer(self, network: Any, spec: Optional[Mapping[str, Any]] = None) -> Any: ...

    @abstractmethod
    def bind_listener(
        self,
        load_balancer: Any,
        port: int,
        certificate: Any = None,
        spec: Optional[Mapping[str, Any]] = None,
    ) -> Any: ...

    @abstractmethod
    def register_target(
        self,
        listener: Any,
        service: Any,
        health_check: Optional[HealthCheck],
        spec: Optional[Mapping[str, Any]] = None,
    ) -> Any: ...

    @abstractmethod
    def create_dns_zone(self, spec: Mapping[str, Any]) -> Any: ...

    @abstractmethod
    def create_certificate(self, spec: Mapping[str, Any], zone: Any) -> Any: ...

    @abstractmethod
    def create_dns_record(self, zone: Any, name: str, target: Any) -> Any: ...

    @abstractmethod
    def create_log_delivery(self, spec: Mapping[str, Any]) -> Any: ...

    @abstractmethod
    def create_web_policy(
        self, rules: Sequence[Mapping[str, Any]], spec: Optional[Mapping[str, Any]] = None
    ) -> Any: ...

    @abstractmethod
    def attach_policy(self, policy: Any, target: Any) -> Any: ...

    @abstractmethod
    def attribute(self, resource: Any, attribute: str) -> str:
        """Value of ``attribute`` on a provisioned resource (usually a token)."""


class PlanExecutor:
    def __init__(self, provisioner: Provisioner) -> None:
        self.provisioner = provisioner
        self.provisioned: Dict[str, Any] = {}

    def apply(self, plan: DeploymentPlan, allow_partial: bool = False) -> Dict[str, Any]:
        """Provision every entry of ``plan``; returns provider objects by qualified name."""
        if not plan.ok and not allow_partial:
            raise PlanNotProvisionableError(
                "plan has failed stacks: " + ", ".join(plan.failed_stacks)
            )
        rules: List[Tuple[PlanEntry, List[IngressRule], List[EgressRule]]] = []
        current_stack = None
        for entry in plan:
            if entry.stack != current_stack:
                current_stack = entry.stack
                self.provisioner.begin_stack(entry.stack)
                logger.info("Provisioning stack", extra={"stack": entry.stack})
            properties = dict(entry.properties)
            ingress = properties.pop("ingress", [])
            egress = properties.pop("egress", [])
            if ingress or egress:
                rules.append((entry, list(ingress), list(egress)))
            self.provisioner.begin_resource(entry)
            self.provisioned[entry.qualified_name] = self._create(entry, self.resolve(properties))

        for entry, ingress, egress in rules:
            boundary = self.provisioned[entry.qualified_name]
            self.provisioner.begin_resource(entry)
            for rule in ingress:
                self.provisioner.begin_stack(rule.origin or entry.stack)
                self.provisioner.add_ingress_rule(boundary, self.resolve(rule.source), rule)
            for rule in egress:
                self.provisioner.begin_stack(rule.origin or entry.stack)
                self.provisioner.add_egress_rule(boundary, self.resolve(rule.destination), rule)
        logger.info("Plan provisioned", extra={"resources": len(self.provisioned)})
        return self.provisioned

    def resolve(self, value: Any) -> Any:
        if isinstance(value, ResourceHandle):
            return self.provisioned[value.qualified_name]
        if isinstance(value, AttributeRef):
            return self.provisioner.attribute(
                self.provisioned[value.handle.qualified_name], value.attribute
            )
        if isinstance(value, ParameterRef):
            return self.provisioner.attribute(self.provisioned[value.handle.qualified_name], "value")
        if isinstance(value, Endpoint):
            return Endpoint(self.resolve(value.address), value.port)
        if isinstance(value, str):
            return TOKEN_PATTERN.sub(self._render_token, value)
        if isinstance(value, Mapping):
            return {key: self.resolve(item) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return type(value)(self.resolve(item) for item in value)
        if attrs.has(type(value)) and not isinstance(value, (IngressRule, EgressRule)):
            return attrs.evolve(
                value,
                **{
                    attribute.name: self.resolve(getattr(value, attribute.name))
                    for attribute in attrs.fields(type(value))
                    if attribute.init
                },
            )
        return value

    def _render_token(self, match: Any) -> str:
        provisioned = self.provisioned[f"{match.group('stack')}/{match.group('name')}"]
        attribute = match.group("attribute") if match.group("type") == "attr" else "value"
        return str(self.provisioner.attribute(provisioned, attribute))

    def _create(self, entry: PlanEntry, spec: Dict[str, Any]) -> Any:
        p = self.provisioner
        kind = entry.kind
        if kind == ResourceKind.NETWORK:
            return p.create_network(spec)
        if kind == ResourceKind.SECURITY_BOUNDARY:
            return p.create_security_boundary(spec, spec.get("network"))
        if kind == ResourceKind.PARAMETER:
            return p.create_parameter(spec)
        if kind == ResourceKind.SECRET:
            return p.create_secret(spec)
        if kind == ResourceKind.DATA_STORE:
            return p.create_data_store(spec, spec["network"])
        if kind == ResourceKind.CACHE:
            return p.create_cache(spec, spec["network"])
        if kind == ResourceKind.BASTION:
            return p.create_bastion(spec, spec["network"])
        if kind == ResourceKind.COMPUTE_CLUSTER:
            return p.create_compute_cluster(spec["network"], spec)
        if kind == ResourceKind.DISCOVERY_NAMESPACE:
            return p.create_namespace(spec, spec["network"])
        if kind == ResourceKind.SERVICE:
            return p.create_service(spec["cluster"], spec["descriptor"], spec)
        if kind == ResourceKind.LOAD_BALANCER:
            return p.create_load_balancer(spec["network"], spec)
        if kind == ResourceKind.LISTENER:
            return p.bind_listener(spec["load_balancer"], spec["port"], spec.get("certificate"), spec)
        if kind == ResourceKind.TARGET:
            return p.register_target(spec["listener"], spec["service"], spec.get("health_check"), spec)
        if kind == ResourceKind.DNS_ZONE:
            return p.create_dns_zone(spec)
        if kind == ResourceKind.CERTIFICATE:
            return p.create_certificate(spec, spec.get("zone"))
        if kind == ResourceKind.DNS_RECORD:
            return p.create_dns_record(spec["zone"], spec["name"], spec["target"])
        if kind == ResourceKind.LOG_DELIVERY:
            return p.create_log_delivery(spec)
        if kind == ResourceKind.WEB_POLICY:
            return p.create_web_policy(spec["rules"], spec)
        if kind == ResourceKind.POLICY_ATTACHMENT:
            return p.attach_policy(spec["policy"], spec["target"])
        raise PlanNotProvisionableError(f"no provisioner operation for kind '{kind.value}'")


@define
class ProvisionedResource:
    id: str
    stack: Optional[str]
    name: Optional[str]
    operation: str
    spec: Any = field(default=None, repr=False)


@define(frozen=True)
class ProvisionerCall:
    operation: str
    stack: Optional[str]
    args: Tuple[Any, ...] = field(factory=tuple)


class RecordingProvisioner(Provisioner):
    """Dry-run provisioner that records calls and returns opaque handles.

    Nothing is created; the recorded calls show what a real provider would be
    asked to build, in order and per stack.
    """

    def __init__(self) -> None:
        self.calls: List[ProvisionerCall] = []
        self._ids = count(1)

    def _record(self, operation: str, *args: Any) -> ProvisionedResource:
        self.calls.append(ProvisionerCall(operation, self.stack_name, args))
        return ProvisionedResource(
            id=f"r-{next(self._ids)}",
            stack=self.stack_name,
            name=self.entry.name if self.entry else None,
            operation=operation,
            spec=args[0] if args else None,
        )

    def operations(self, operation: Optional[str] = None) -> List[ProvisionerCall]:
        return [call for call in self.calls if operation is None or call.operation == operation]

    def summary(self) -> Dict[str, Any]:
        per_stack: Dict[str, int] = {}
        for call in self.calls:
            per_stack[call.stack or ""] = per_stack.get(call.stack or "", 0) + 1
        return {"calls": len(self.calls), "per_stack": per_stack}

    def create_network(self, spec):
        return self._record("create_network", spec)

    def create_security_boundary(self, spec, network):
        return self._record("create_security_boundary", spec, network)

    def add_ingress_rule(self, boundary, source, rule):
        return self._record("add_ingress_rule", boundary, source, rule)

    def add_egress_rule(self, boundary, destination, rule):
        return self._record("add_egress_rule", boundary, destination, rule)

    def create_parameter(self, spec):
        return self._record("create_parameter", spec)

    def create_secret(self, spec):
        return self._record("create_secret", spec)

    def create_data_store(self, spec, network):
        return self._record("create_data_store", spec, network)

    def create_cache(self, spec, network):
        return self._record("create_cache", spec, network)

    def create_bastion(self, spec, network):
        return self._record("create_bastion", spec, network)

    def create_compute_cluster(self, network, spec=None):
        return self._record("create_compute_cluster", spec, network)

    def create_namespace(self, spec, network):
        return self._record("create_namespace", spec, network)

    def create_service(self, cluster, descriptor, spec):
        return self._record("create_service", descriptor, cluster, spec)

    def create_load_balancer(self, network, spec=None):
        return self._record("create_load_balancer", spec, network)

    def bind_listener(self, load_balancer, port, certificate=None, spec=None):
        return self._record("bind_listener", spec, load_balancer, port, certificate)

    def register_target(self, listener, service, health_check, spec=None):
        return self._record("register_target", spec, listener, service, health_check)

    def create_dns_zone(self, spec):
        return self._record("create_dns_zone", spec)

    def create_certificate(self, spec, zone):
        return self._record("create_certificate", spec, zone)

    def create_dns_record(self, zone, name, target):
        return self._record("create_dns_record", name, zone, target)

    def create_log_delivery(self, spec):
        return self._record("create_log_delivery", spec)

    def create_web_policy(self, rules, spec=None):
        return self._record("create_web_policy", spec, rules)

    def attach_policy(self, policy, target):
        return self._record("attach_policy", policy, target)

    def attribute(self, resource, attribute):
        return f"{resource.name}.{attribute}.{resource.id}"
