from topology.assembler import StackFactory, StackScope
from topology.model import OutputType, ResourceKind

from common import constants
from common.stack_context import StackContext

# Based on https://docs.aws.amazon.com/waf/latest/developerguide/waf-using-managed-rule-groups.html
MANAGED_RULES = [
    {
        "name": "AWS-AWSManagedRulesCommonRuleSet",
        "priority": 0,
        "vendor": "AWS",
        "rule_group": "AWSManagedRulesCommonRuleSet",
        "metric_name": "MetricForAMRCRS",
        "excluded_rules": [
            # Blocks file saves in the Botpress Code Editor
            "EC2MetaDataSSRF_BODY",
            "NoUserAgent_HEADER",
            "SizeRestrictions_BODY",
            "GenericLFI_BODY",
            "GenericRFI_BODY",
            # Blocks CSS statements
            "CrossSiteScripting_BODY",
            # Blocks the webchat via "Open Chat"
            "GenericRFI_QUERYARGUMENTS",
        ],
    },
    {
        "name": "AWS-AWSManagedRulesSQLiRuleSet",
        "priority": 1,
        "vendor": "AWS",
        "rule_group": "AWSManagedRulesSQLiRuleSet",
        "metric_name": "MetricForAMRSQLRS",
        "excluded_rules": [],
    },
]


def build_waf_stack(context: StackContext) -> StackFactory:
    services_stack = context.build_stack_name(constants.STACK_SERVICES)

    def build(scope: StackScope) -> None:
        load_balancer = scope.input("load_balancer")
        scope.resource(
            ResourceKind.LOG_DELIVERY,
            "LoggingDeliveryStream",
            {
                "stream_name": constants.WAF_LOG_STREAM_NAME,
                "buffer_interval_seconds": 900,
                "buffer_size_mb": 1,
                "compression": "GZIP",
            },
        )
        acl = scope.resource(
            ResourceKind.WEB_POLICY,
            "WebAcl",
            {
                "scope": "REGIONAL",
                "default_action": "allow",
                "metric_name": context.build_resource_id("WebAcl", action=context.project),
                "rules": MANAGED_RULES,
            },
        )
        scope.resource(
            ResourceKind.POLICY_ATTACHMENT,
            "AclAssociation",
            {"policy": acl, "target": load_balancer},
        )

    return StackFactory(
        name=context.build_stack_name(constants.STACK_WAF),
        build=build,
        feature=constants.FEATURE_WAF,
    ).with_input("load_balancer", OutputType.LOAD_BALANCER, services_stack)
