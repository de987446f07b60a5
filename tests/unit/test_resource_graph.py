from dataclasses import dataclass
from typing import Sequence, Tuple

import pytest

from topology.errors import (
    CyclicDependencyError,
    DuplicateDeclarationError,
    TypeMismatchError,
    UnresolvedReferenceError,
)
from topology.graph import ResourceGraph
from topology.model import Endpoint, OutputRef, OutputType, ResourceKind
from topology.policy import NetworkPolicyComposer


@dataclass(frozen=True)
class OrderTestCase:
    id: str
    stacks: Sequence[str]
    edges: Sequence[Tuple[str, str]]  # (consumer, source)
    expected: Sequence[str]


ORDER_CASES = [
    OrderTestCase("independent stacks keep insertion order", ["B", "A", "C"], [], ["B", "A", "C"]),
    OrderTestCase("chain declared backwards", ["App", "DB", "Net"], [("App", "DB"), ("DB", "Net")], ["Net", "DB", "App"]),
    OrderTestCase(
        "diamond",
        ["Services", "DB", "Redis", "Net"],
        [("Services", "DB"), ("Services", "Redis"), ("DB", "Net"), ("Redis", "Net")],
        ["Net", "DB", "Redis", "Services"],
    ),
]


def _graph_with_network() -> ResourceGraph:
    graph = ResourceGraph()
    graph.add_stack("Net")
    vpc = graph.declare_resource("Net", ResourceKind.NETWORK, "Vpc", {"cidr": "10.0.0.0/16"})
    graph.declare_output("Net", "network", OutputType.NETWORK, vpc)
    graph.add_stack("App")
    graph.declare_input("App", "network", OutputType.NETWORK)
    graph.bind_input("App", "network", OutputRef("Net", "network"))
    return graph


@pytest.mark.parametrize("test", ORDER_CASES, ids=lambda test: test.id)
def test_stack_order(test: OrderTestCase):
    graph = ResourceGraph()
    for name in test.stacks:
        graph.add_stack(name)
    for consumer, source in test.edges:
        graph.declare_input(consumer, f"from_{source}", OutputType.VALUE)
        graph.bind_input(consumer, f"from_{source}", OutputRef(source, "out"))
    for name in test.stacks:
        graph.declare_output(name, "out", OutputType.VALUE, name)

    assert graph.stack_order() == list(test.expected)


def test_resolve_orders_resources_after_their_dependencies():
    graph = _graph_with_network()
    vpc = graph.input_value("App", "network")
    sg = graph.declare_resource("App", ResourceKind.SECURITY_BOUNDARY, "SecurityGroup", {"network": vpc})
    graph.declare_resource("App", ResourceKind.DATA_STORE, "Db", {"network": vpc, "boundary": sg})

    resources = graph.resolve()

    names = [resource.qualified_name for resource in resources]
    assert names == ["Net/Vpc", "App/SecurityGroup", "App/Db"]
    assert resources[2].depends_on == ("Net/Vpc", "App/SecurityGroup")


def test_token_in_string_property_is_a_dependency():
    graph = _graph_with_network()
    graph.declare_resource("Net", ResourceKind.PARAMETER, "DomainName")
    graph.declare_resource(
        "App", ResourceKind.DNS_ZONE, "Zone", {"zone_name": "{{param:Net/DomainName}}"}
    )
    assert graph.resource("App/Zone").depends_on == ("Net/DomainName",)


def test_cycle_is_named():
    graph = ResourceGraph()
    for name in ["A", "B", "C"]:
        graph.add_stack(name)
    for consumer, source in [("A", "B"), ("B", "C"), ("C", "A")]:
        graph.declare_input(consumer, "upstream", OutputType.VALUE)
        graph.bind_input(consumer, "upstream", OutputRef(source, "out"))
        graph.declare_output(source, "out", OutputType.VALUE, source)

    with pytest.raises(CyclicDependencyError) as e:
        graph.resolve()

    assert e.value.cycle == ["A", "B", "C"]
    assert "A -> B -> C -> A" in str(e.value)


def test_overlapping_cycles_form_one_group():
    graph = ResourceGraph()
    for name in ["A", "B", "C", "D", "E"]:
        graph.add_stack(name)
        graph.declare_output(name, "out", OutputType.VALUE, name)
    edges = [("A", "B"), ("A", "C"), ("B", "D"), ("C", "A"), ("D", "B"), ("D", "C")]
    for consumer, source in edges:
        input_name = f"from_{source.lower()}"
        graph.declare_input(consumer, input_name, OutputType.VALUE)
        graph.bind_input(consumer, input_name, OutputRef(source, "out"))

    assert graph.cyclic_components() == [["A", "B", "C", "D"]]
    assert graph.find_cycles() == [["A", "B", "D", "C"]]
    assert graph.stack_order(["E"]) == ["E"]


def test_pending_reference_resolves_once_source_exists():
    graph = ResourceGraph()
    graph.add_stack("App")
    graph.declare_input("App", "db", OutputType.ENDPOINT)
    slot = graph.bind_input("App", "db", OutputRef("DB", "endpoint"))
    assert slot.pending

    with pytest.raises(UnresolvedReferenceError) as e:
        graph.resolve()
    assert e.value.input_name == "db"
    assert e.value.stack == "App"

    graph.add_stack("DB")
    graph.declare_output("DB", "endpoint", OutputType.ENDPOINT, Endpoint("db.internal", 5432))
    graph.resolve()
    assert graph.input_value("App", "db") == Endpoint("db.internal", 5432)


def test_type_mismatch_is_rejected_at_bind_time():
    graph = _graph_with_network()
    graph.declare_input("App", "db", OutputType.ENDPOINT)

    with pytest.raises(TypeMismatchError) as e:
        graph.bind_input("App", "db", OutputRef("Net", "network"))

    assert e.value.expected == "endpoint"
    assert e.value.actual == "network"


def test_binding_an_output_declares_the_input():
    graph = _graph_with_network()
    output = graph.declare_output("Net", "cidr", OutputType.VALUE, "10.0.0.0/16")
    graph.bind_input("App", "cidr", output)
    assert graph.input_value("App", "cidr") == "10.0.0.0/16"


def test_duplicate_resource_name_in_one_stack():
    graph = _graph_with_network()
    graph.declare_resource("App", ResourceKind.SECURITY_BOUNDARY, "SecurityGroup")
    with pytest.raises(DuplicateDeclarationError):
        graph.declare_resource("App", ResourceKind.SECURITY_BOUNDARY, "SecurityGroup")


def test_reference_to_a_stack_that_is_not_upstream():
    graph = _graph_with_network()
    cluster = graph.declare_resource("App", ResourceKind.COMPUTE_CLUSTER, "Cluster")
    with pytest.raises(UnresolvedReferenceError) as e:
        graph.declare_resource("Net", ResourceKind.SERVICE, "Web", {"cluster": cluster})
    assert e.value.source == "App/Cluster"


def test_boundary_accepts_rules_until_resolve():
    graph = _graph_with_network()
    sg = graph.declare_resource("Net", ResourceKind.SECURITY_BOUNDARY, "DbSecurityGroup")
    web = graph.declare_resource("App", ResourceKind.SECURITY_BOUNDARY, "WebSecurityGroup")
    NetworkPolicyComposer(graph).allow_ingress(sg, web, 5432, origin="App")

    resolved = {resource.qualified_name: resource for resource in graph.resolve()}
    [rule] = resolved["Net/DbSecurityGroup"].properties["ingress"]
    assert rule.source == web
    assert rule.origin == "App"


def test_remove_stack_drops_its_contributions():
    graph = _graph_with_network()
    sg = graph.declare_resource("Net", ResourceKind.SECURITY_BOUNDARY, "DbSecurityGroup")
    web = graph.declare_resource("App", ResourceKind.SECURITY_BOUNDARY, "WebSecurityGroup")
    NetworkPolicyComposer(graph).allow_ingress(sg, web, 5432, origin="App")
    graph.remove_stack("App")

    assert graph.boundary(sg).ingress == []
    assert [resource.qualified_name for resource in graph.resolve()] == [
        "Net/Vpc",
        "Net/DbSecurityGroup",
    ]
