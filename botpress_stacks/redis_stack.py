from topology.assembler import StackFactory, StackScope
from topology.model import Endpoint, OutputType, ResourceKind

from common import constants
from common.stack_context import StackContext


def build_redis_stack(context: StackContext) -> StackFactory:
    network_stack = context.build_stack_name(constants.STACK_NETWORK)

    def build(scope: StackScope) -> None:
        vpc = scope.input("network")
        security_group = scope.resource(
            ResourceKind.SECURITY_BOUNDARY,
            "RedisSecurityGroup",
            {"network": vpc, "description": "Redis replication group access"},
        )
        replication_group = scope.resource(
            ResourceKind.CACHE,
            "RedisReplicationGroup",
            {
                "network": vpc,
                "boundary": security_group,
                "engine": "redis",
                "node_type": constants.REDIS_NODE_TYPE,
                "num_nodes": 1,
                "port": constants.REDIS_PORT,
                "at_rest_encryption": True,
            },
        )
        scope.output(
            "endpoint",
            OutputType.ENDPOINT,
            Endpoint(replication_group.attr("address"), constants.REDIS_PORT),
        )
        scope.output("boundary", OutputType.SECURITY_BOUNDARY, security_group)

    return StackFactory(
        name=context.build_stack_name(constants.STACK_REDIS), build=build
    ).with_input("network", OutputType.NETWORK, network_stack)
