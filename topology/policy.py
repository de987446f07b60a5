"""Consumer-driven network policy.

Security boundaries are declared by the stack that owns the guarded resource.
Any later stack may open a boundary for its own traffic through
``NetworkPolicyComposer.allow_ingress``; the owning stack never needs to know
its consumers in advance.
"""
import ipaddress
import os
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple, Union

from attrs import define, field
from aws_lambda_powertools import Logger

from topology.errors import DuplicateIngressRuleError, InvalidDeclarationError
from topology.model import Protocol, ResourceHandle, ResourceKind

if TYPE_CHECKING:
    from topology.graph import ResourceGraph

logger = Logger(service="topology", level=os.getenv("LOG_LEVEL", "INFO").upper())

Peer = Union[ResourceHandle, str]


def _normalize_peer(peer: Peer) -> Peer:
    if isinstance(peer, ResourceHandle):
        if peer.kind != ResourceKind.SECURITY_BOUNDARY:
            raise InvalidDeclarationError(
                f"{peer.qualified_name} is a {peer.kind.value}, not a security boundary"
            )
        return peer
    try:
        return str(ipaddress.ip_network(peer, strict=False))
    except ValueError as e:
        raise InvalidDeclarationError(f"invalid CIDR '{peer}': {e}") from e


def _check_port(port: int) -> int:
    if not isinstance(port, int) or isinstance(port, bool) or not 0 <= port <= 65535:
        raise InvalidDeclarationError(f"invalid port {port!r}")
    return port


@define(frozen=True)
class IngressRule:
    source: Peer
    port: int
    protocol: Protocol = Protocol.TCP
    description: str = field(default="", eq=False)
    origin: Optional[str] = field(default=None, eq=False)

    @property
    def key(self) -> Tuple[str, int, str]:
        return (str(self.source), self.port, self.protocol.value)


@define(frozen=True)
class EgressRule:
    destination: Peer
    port: int
    protocol: Protocol = Protocol.TCP
    description: str = field(default="", eq=False)
    origin: Optional[str] = field(default=None, eq=False)

    @property
    def key(self) -> Tuple[str, int, str]:
        return (str(self.destination), self.port, self.protocol.value)


@define
class SecurityBoundary:
    handle: ResourceHandle
    ingress: List[IngressRule] = field(factory=list)
    egress: List[EgressRule] = field(factory=list)

    def add_ingress(self, rule: IngressRule) -> None:
        if any(existing.key == rule.key for existing in self.ingress):
            raise DuplicateIngressRuleError(
                f"ingress {rule.key} already present on {self.handle.qualified_name}",
                stack=rule.origin,
            )
        self.ingress.append(rule)

    def add_egress(self, rule: EgressRule) -> None:
        if any(existing.key == rule.key for existing in self.egress):
            raise DuplicateIngressRuleError(
                f"egress {rule.key} already present on {self.handle.qualified_name}",
                stack=rule.origin,
            )
        self.egress.append(rule)

    def discard_origin(self, stack: str) -> int:
        before = len(self.ingress) + len(self.egress)
        self.ingress = [rule for rule in self.ingress if rule.origin != stack]
        self.egress = [rule for rule in self.egress if rule.origin != stack]
        return before - len(self.ingress) - len(self.egress)


class NetworkPolicyComposer:
    """Routes every rule mutation on a boundary through one place."""

    def __init__(self, graph: "ResourceGraph") -> None:
        self.graph = graph
        # stack currently being built; rules without an explicit origin belong to it
        self.active_stack: Optional[str] = None

    def boundary(self, handle: ResourceHandle) -> SecurityBoundary:
        return self.graph.boundary(handle)

    def allow_ingress(
        self,
        boundary: ResourceHandle,
        source: Peer,
        port: int,
        protocol: Union[Protocol, str] = Protocol.TCP,
        reason: str = "",
        origin: Optional[str] = None,
    ) -> IngressRule:
        """Open ``boundary`` to ``source`` on ``port``/``protocol``.

        Returns the rule now present on the boundary. Repeating a call with the
        same boundary, source, port and protocol leaves the boundary unchanged.
        """
        target = self.boundary(boundary)
        rule = IngressRule(
            source=_normalize_peer(source),
            port=_check_port(port),
            protocol=Protocol(protocol),
            description=reason,
            origin=origin or self.active_stack or boundary.stack,
        )
        for existing in target.ingress:
            if existing.key == rule.key:
                return existing
        target.add_ingress(rule)
        logger.debug(
            "Ingress rule added",
            extra={
                "boundary": boundary.qualified_name,
                "source": str(rule.source),
                "port": rule.port,
                "protocol": rule.protocol.value,
                "origin": rule.origin,
            },
        )
        return rule

    def allow_egress(
        self,
        boundary: ResourceHandle,
        destination: Peer,
        port: int,
        protocol: Union[Protocol, str] = Protocol.TCP,
        reason: str = "",
        origin: Optional[str] = None,
    ) -> EgressRule:
        target = self.boundary(boundary)
        rule = EgressRule(
            destination=_normalize_peer(destination),
            port=_check_port(port),
            protocol=Protocol(protocol),
            description=reason,
            origin=origin or self.active_stack or boundary.stack,
        )
        for existing in target.egress:
            if existing.key == rule.key:
                return existing
        target.add_egress(rule)
        return rule

    def rules_for(self, boundary: ResourceHandle) -> List[IngressRule]:
        return list(self.boundary(boundary).ingress)

    def discard_origin(self, stack: str) -> Dict[str, int]:
        """Drop every rule requested by ``stack``; returns counts per boundary."""
        removed = {}
        for handle, target in self.graph.boundaries.items():
            count = target.discard_origin(stack)
            if count:
                removed[handle.qualified_name] = count
        return removed
