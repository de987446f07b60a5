"""Value types shared by the graph, the composer and the provisioners."""
import re
from enum import Enum
from typing import Any, Iterator, Mapping, Tuple

import attrs
from attrs import define, field


class OutputType(str, Enum):
    NETWORK = "network"
    ENDPOINT = "endpoint"
    SECURITY_BOUNDARY = "security-boundary"
    CERTIFICATE = "certificate"
    DNS_ZONE = "dns-zone"
    CLUSTER = "cluster"
    NAMESPACE = "namespace"
    LOAD_BALANCER = "load-balancer"
    SECRET = "secret"
    PARAMETER = "parameter"
    SERVICE = "service"
    VALUE = "value"


class ResourceKind(str, Enum):
    NETWORK = "network"
    SECURITY_BOUNDARY = "security-boundary"
    DATA_STORE = "data-store"
    CACHE = "cache"
    PARAMETER = "parameter"
    SECRET = "secret"
    BASTION = "bastion"
    COMPUTE_CLUSTER = "compute-cluster"
    DISCOVERY_NAMESPACE = "discovery-namespace"
    SERVICE = "service"
    LOAD_BALANCER = "load-balancer"
    LISTENER = "listener"
    TARGET = "target"
    DNS_ZONE = "dns-zone"
    CERTIFICATE = "certificate"
    DNS_RECORD = "dns-record"
    LOG_DELIVERY = "log-delivery"
    WEB_POLICY = "web-policy"
    POLICY_ATTACHMENT = "policy-attachment"


class Protocol(str, Enum):
    TCP = "tcp"
    UDP = "udp"


TOKEN_PATTERN = re.compile(
    r"\{\{(?P<type>attr|param):(?P<stack>[^/{}]+)/(?P<name>[^:{}]+)(?::(?P<attribute>[^{}]+))?\}\}"
)


@define(frozen=True)
class ResourceHandle:
    stack: str
    name: str
    kind: ResourceKind

    @property
    def qualified_name(self) -> str:
        return f"{self.stack}/{self.name}"

    def attr(self, attribute: str) -> "AttributeRef":
        return AttributeRef(self, attribute)

    def __str__(self) -> str:
        return self.qualified_name


@define(frozen=True)
class AttributeRef:
    """An attribute of a resource that is only known once it is provisioned."""

    handle: ResourceHandle
    attribute: str

    def __str__(self) -> str:
        return f"{{{{attr:{self.handle.qualified_name}:{self.attribute}}}}}"


@define(frozen=True)
class ParameterRef:
    """The deploy-time value of a parameter resource."""

    handle: ResourceHandle

    def __str__(self) -> str:
        return f"{{{{param:{self.handle.qualified_name}}}}}"


@define(frozen=True)
class Endpoint:
    address: str = field(converter=str)
    port: int = field(converter=int)

    def __str__(self) -> str:
        return f"{self.address}:{self.port}"


@define(frozen=True)
class OutputRef:
    stack: str
    name: str

    def __str__(self) -> str:
        return f"{self.stack}.{self.name}"


@define(frozen=True)
class Output:
    stack: str
    name: str
    type: OutputType
    value: Any = field(eq=False)

    @property
    def ref(self) -> OutputRef:
        return OutputRef(self.stack, self.name)


@define(frozen=True)
class Resource:
    handle: ResourceHandle
    properties: Mapping[str, Any] = field(factory=dict)
    depends_on: Tuple[str, ...] = ()

    @property
    def stack(self) -> str:
        return self.handle.stack

    @property
    def name(self) -> str:
        return self.handle.name

    @property
    def kind(self) -> ResourceKind:
        return self.handle.kind

    @property
    def qualified_name(self) -> str:
        return self.handle.qualified_name


@define(frozen=True)
class PlanEntry:
    stack: str
    name: str
    kind: ResourceKind
    properties: Mapping[str, Any]
    depends_on: Tuple[str, ...] = ()

    @property
    def qualified_name(self) -> str:
        return f"{self.stack}/{self.name}"

    @classmethod
    def from_resource(cls, resource: Resource) -> "PlanEntry":
        return cls(
            stack=resource.stack,
            name=resource.name,
            kind=resource.kind,
            properties=resource.properties,
            depends_on=resource.depends_on,
        )

    def to_dict(self) -> dict:
        return {
            "stack": self.stack,
            "name": self.name,
            "kind": self.kind.value,
            "properties": to_jsonable(self.properties),
            "depends_on": list(self.depends_on),
        }


def iter_references(value: Any) -> Iterator[str]:
    """Yield the qualified name of every resource referenced inside ``value``."""
    if isinstance(value, ResourceHandle):
        yield value.qualified_name
    elif isinstance(value, (AttributeRef, ParameterRef)):
        yield value.handle.qualified_name
    elif isinstance(value, Endpoint):
        yield from iter_references(value.address)
    elif isinstance(value, str):
        for match in TOKEN_PATTERN.finditer(value):
            yield f"{match.group('stack')}/{match.group('name')}"
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple, set, frozenset)):
        for item in value:
            yield from iter_references(item)
    elif attrs.has(type(value)):
        for attribute in attrs.fields(type(value)):
            yield from iter_references(getattr(value, attribute.name))


def to_jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (ResourceHandle, AttributeRef, ParameterRef, Endpoint, OutputRef)):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted(to_jsonable(item) for item in value)
    if attrs.has(type(value)):
        return {
            attribute.name: to_jsonable(getattr(value, attribute.name))
            for attribute in attrs.fields(type(value))
        }
    return value

