from topology.assembler import StackFactory, StackScope
from topology.model import OutputType, ResourceKind

from common import constants
from common.stack_context import StackContext


def build_network_stack(context: StackContext) -> StackFactory:
    """VPC with public and private subnets.

    When the binding table carries a ``vpc_id`` the network is imported by
    literal ID instead of created.
    """

    def build(scope: StackScope) -> None:
        vpc_id = scope.binding("vpc_id", None)
        if vpc_id:
            properties = {
                "import": {
                    "vpc_id": vpc_id,
                    "availability_zones": _split(scope.binding("availability_zones")),
                    "public_subnet_ids": _split(scope.binding("public_subnet_ids")),
                    "private_subnet_ids": _split(scope.binding("private_subnet_ids")),
                }
            }
        else:
            properties = {
                "cidr": constants.VPC_CIDR,
                "max_azs": constants.MAX_AZS,
                "nat_gateways": constants.NAT_GATEWAYS,
            }
        vpc = scope.resource(ResourceKind.NETWORK, "Vpc", properties)
        scope.output("network", OutputType.NETWORK, vpc)

    return StackFactory(name=context.build_stack_name(constants.STACK_NETWORK), build=build)


def _split(value):
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return list(value)
