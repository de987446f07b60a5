"""Compute service units and the private discovery namespace they register in."""
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from attrs import define, field, validators

from topology.errors import (
    DiscoveryNameConflictError,
    InvalidDeclarationError,
    UnresolvedReferenceError,
)
from topology.model import (
    AttributeRef,
    Endpoint,
    ParameterRef,
    Protocol,
    ResourceHandle,
    ResourceKind,
)
from topology.policy import IngressRule, NetworkPolicyComposer
from topology.secrets import SecretParameter

if TYPE_CHECKING:
    from topology.assembler import StackScope

_positive = validators.gt(0)


@define(frozen=True)
class Sizing:
    cpu: int = field(validator=_positive)
    memory_mib: int = field(validator=_positive)


@define(frozen=True)
class HealthCheck:
    path: str = "/"
    interval_seconds: int = 30
    healthy_threshold: int = 5
    timeout_seconds: int = 5
    unhealthy_threshold: int = 2


@define(frozen=True)
class ServiceUrl:
    """URL of a service as reached through its discovery name."""

    service: ResourceHandle
    discovery_name: str
    host: str
    port: int
    scheme: str = "http"

    def __str__(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"


@define(frozen=True)
class EnvTemplate:
    """A ``str.format`` template whose fields are endpoints, URLs or tokens."""

    template: str
    values: Mapping[str, Any] = field(factory=dict)


EnvValue = Union[str, int, bool, Endpoint, ServiceUrl, AttributeRef, ParameterRef, EnvTemplate]


@define(frozen=True)
class ServiceDescriptor:
    name: str
    image: str
    sizing: Sizing
    port: int
    discovery_name: str
    environment: Mapping[str, str] = field(factory=dict)
    secrets: Mapping[str, ResourceHandle] = field(factory=dict)
    command: Tuple[str, ...] = field(default=(), converter=tuple)
    entry_point: Tuple[str, ...] = field(default=(), converter=tuple)
    desired_count: int = 1
    log_stream_prefix: Optional[str] = None
    log_retention_days: int = 30
    enable_execute_command: bool = False
    assign_public_ip: bool = False


@define(eq=False)
class DiscoveryNamespace:
    handle: ResourceHandle
    name: str
    network: ResourceHandle
    registry: Dict[str, "ServiceUnit"] = field(factory=dict)

    @classmethod
    def declare(
        cls,
        scope: "StackScope",
        name: str,
        network: ResourceHandle,
        resource_name: str = "Namespace",
    ) -> "DiscoveryNamespace":
        handle = scope.resource(
            ResourceKind.DISCOVERY_NAMESPACE, resource_name, {"name": name, "network": network}
        )
        namespace = cls(handle=handle, name=name, network=network)
        scope.track_namespace(namespace)
        return namespace

    def host(self, discovery_name: str) -> str:
        return f"{discovery_name}.{self.name}"

    def lookup(self, discovery_name: str) -> Optional["ServiceUnit"]:
        return self.registry.get(discovery_name)

    def check_available(self, discovery_name: str, incoming: str) -> None:
        existing = self.registry.get(discovery_name)
        if existing is not None:
            raise DiscoveryNameConflictError(
                self.name,
                discovery_name,
                existing.handle.qualified_name,
                incoming,
                stack=incoming.partition("/")[0],
            )

    def register(self, unit: "ServiceUnit") -> None:
        self.check_available(unit.discovery_name, unit.handle.qualified_name)
        self.registry[unit.discovery_name] = unit

    def endpoint(self, discovery_name: str) -> Endpoint:
        unit = self.lookup(discovery_name)
        if unit is None:
            raise UnresolvedReferenceError(
                self.handle.stack,
                discovery_name,
                detail=f"'{discovery_name}' is not registered in namespace '{self.name}'",
            )
        return Endpoint(self.host(discovery_name), unit.port)

    def discard_origin(self, stack: str) -> None:
        self.registry = {
            name: unit for name, unit in self.registry.items() if unit.handle.stack != stack
        }


@define(eq=False)
class ServiceUnit:
    handle: ResourceHandle
    descriptor: ServiceDescriptor
    boundary: ResourceHandle
    namespace: DiscoveryNamespace = field(repr=False)
    composer: NetworkPolicyComposer = field(repr=False)

    @property
    def port(self) -> int:
        return self.descriptor.port

    @property
    def discovery_name(self) -> str:
        return self.descriptor.discovery_name

    @property
    def endpoint(self) -> Endpoint:
        return Endpoint(self.namespace.host(self.discovery_name), self.port)

    def url(self, scheme: str = "http") -> ServiceUrl:
        return ServiceUrl(
            service=self.handle,
            discovery_name=self.discovery_name,
            host=self.namespace.host(self.discovery_name),
            port=self.port,
            scheme=scheme,
        )

    def allow_ingress(
        self, source: ResourceHandle, reason: Optional[str] = None, origin: Optional[str] = None
    ) -> IngressRule:
        """Let ``source`` reach this service; mutates this unit's own boundary."""
        return self.composer.allow_ingress(
            self.boundary,
            source,
            self.port,
            Protocol.TCP,
            reason=reason or f"{self.discovery_name} access",
            origin=origin,
        )


def _render_env_value(
    stack: str,
    key: str,
    value: Any,
    namespace: DiscoveryNamespace,
    peers: List[ResourceHandle],
) -> str:
    if isinstance(value, ServiceUrl):
        registered = namespace.lookup(value.discovery_name)
        if registered is None or registered.handle != value.service:
            raise UnresolvedReferenceError(
                stack,
                key,
                source=value.discovery_name,
                detail="referenced service is not registered yet; declare it first",
            )
        if value.service not in peers:
            peers.append(value.service)
        return str(value)
    if isinstance(value, EnvTemplate):
        rendered = {
            name: _render_env_value(stack, key, item, namespace, peers)
            for name, item in value.values.items()
        }
        return value.template.format(**rendered)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, Endpoint, AttributeRef, ParameterRef)):
        return str(value)
    raise InvalidDeclarationError(
        f"environment variable '{key}' has unsupported value type {type(value).__name__}",
        stack=stack,
    )


def _secret_handle(stack: str, key: str, value: Any) -> ResourceHandle:
    if isinstance(value, SecretParameter):
        value = value.secret
    if not isinstance(value, ResourceHandle) or value.kind != ResourceKind.SECRET:
        raise InvalidDeclarationError(
            f"secret '{key}' must reference a secret resource, not a literal", stack=stack
        )
    return value


def define_service(
    scope: "StackScope",
    cluster: ResourceHandle,
    image: str,
    sizing: Sizing,
    port: int,
    env: Optional[Mapping[str, EnvValue]],
    secrets: Optional[Mapping[str, Union[ResourceHandle, SecretParameter]]],
    discovery_name: str,
    namespace: DiscoveryNamespace,
    network: ResourceHandle,
    name: Optional[str] = None,
    static_env: Optional[Mapping[str, EnvValue]] = None,
    command: Sequence[str] = (),
    entry_point: Sequence[str] = (),
    desired_count: int = 1,
    log_stream_prefix: Optional[str] = None,
    log_retention_days: int = 30,
    enable_execute_command: bool = False,
) -> ServiceUnit:
    """Declare a service unit and register it under ``discovery_name``.

    Environment values referring to other units (``ServiceUrl``) must point at
    units that are already registered in ``namespace``; the new service then
    depends on them. Secrets are passed by handle and are read by the runtime
    when the service starts.
    """
    stack = scope.stack
    if cluster.kind != ResourceKind.COMPUTE_CLUSTER:
        raise InvalidDeclarationError(
            f"{cluster.qualified_name} is not a compute cluster", stack=stack
        )
    if not isinstance(port, int) or not 0 < port <= 65535:
        raise InvalidDeclarationError(f"invalid service port {port!r}", stack=stack)

    name = name or discovery_name.capitalize()
    namespace.check_available(discovery_name, f"{stack}/{name}Service")

    peers: List[ResourceHandle] = []
    merged = {**(static_env or {}), **(env or {})}
    environment = {
        key: _render_env_value(stack, key, value, namespace, peers)
        for key, value in merged.items()
    }
    secret_handles = {
        key: _secret_handle(stack, key, value) for key, value in (secrets or {}).items()
    }

    boundary = scope.resource(
        ResourceKind.SECURITY_BOUNDARY,
        f"{name}SecurityGroup",
        {"network": network, "description": f"Security group for the {name} service"},
    )
    descriptor = ServiceDescriptor(
        name=name,
        image=image,
        sizing=sizing,
        port=port,
        discovery_name=discovery_name,
        environment=environment,
        secrets=secret_handles,
        command=command,
        entry_point=entry_point,
        desired_count=desired_count,
        log_stream_prefix=log_stream_prefix,
        log_retention_days=log_retention_days,
        enable_execute_command=enable_execute_command,
    )
    handle = scope.resource(
        ResourceKind.SERVICE,
        f"{name}Service",
        {
            "cluster": cluster,
            "namespace": namespace.handle,
            "boundary": boundary,
            "descriptor": descriptor,
        },
        depends_on=peers,
    )
    unit = ServiceUnit(
        handle=handle,
        descriptor=descriptor,
        boundary=boundary,
        namespace=namespace,
        composer=scope.composer,
    )
    namespace.register(unit)
    return unit
