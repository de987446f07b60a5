from topology.assembler import StackFactory, StackScope
from topology.model import OutputType, ParameterRef, ResourceKind

from common import constants
from common.stack_context import StackContext


def build_domains_stack(context: StackContext) -> StackFactory:
    """Public hosted zone and a wildcard certificate for the deploy-time domain."""

    def build(scope: StackScope) -> None:
        domain_name = str(ParameterRef(scope.parameter(constants.DOMAIN_NAME_PARAMETER)))
        hosted_zone = scope.resource(
            ResourceKind.DNS_ZONE, "HostedZone", {"zone_name": domain_name}
        )
        certificate = scope.resource(
            ResourceKind.CERTIFICATE,
            "Certificate",
            {
                "domain_name": domain_name,
                "alternative_names": [f"*.{domain_name}"],
                "validation": "dns",
                "zone": hosted_zone,
            },
        )
        scope.output("zone", OutputType.DNS_ZONE, hosted_zone)
        scope.output("zone_name", OutputType.VALUE, domain_name)
        scope.output("certificate", OutputType.CERTIFICATE, certificate)

    return StackFactory(
        name=context.build_stack_name(constants.STACK_DOMAINS),
        build=build,
        feature=constants.FEATURE_DOMAINS,
    )
