from typing import Dict

import pytest
from aws_cdk.assertions import Match, Template

from common import constants
from governance_checks import (
    assert_elasticache_compliance,
    assert_no_open_ingress,
    assert_parameters_hidden,
    assert_rds_compliance,
    assert_s3_compliance,
)
from plan_test_helpers import (
    DATABASE_STACK,
    DOMAINS_STACK,
    LITERAL_BINDINGS,
    NETWORK_STACK,
    REDIS_STACK,
    SERVICES_STACK,
    WAF_STACK,
    build_templates,
    factory,
    templates,
    templates_for,
)
from topology.assembler import StackAssembler, StackScope
from topology.model import OutputType, ResourceKind
from topology.services import Sizing

# ----------------------------- Resource count smoke test ------------------------

RESOURCES = [
    (NETWORK_STACK, "AWS::EC2::VPC", 1),
    (NETWORK_STACK, "AWS::EC2::NatGateway", 1),
    (DATABASE_STACK, "AWS::RDS::DBCluster", 1),
    (DATABASE_STACK, "AWS::RDS::DBInstance", 1),
    (DATABASE_STACK, "AWS::KMS::Key", 1),
    (DATABASE_STACK, "AWS::SecretsManager::Secret", 1),
    (DATABASE_STACK, "AWS::EC2::SecurityGroupIngress", 0),
    (REDIS_STACK, "AWS::ElastiCache::ReplicationGroup", 1),
    (REDIS_STACK, "AWS::ElastiCache::SubnetGroup", 1),
    (DOMAINS_STACK, "AWS::Route53::HostedZone", 1),
    (DOMAINS_STACK, "AWS::CertificateManager::Certificate", 1),
    (SERVICES_STACK, "AWS::ECS::Cluster", 1),
    (SERVICES_STACK, "AWS::ECS::Service", 3),
    (SERVICES_STACK, "AWS::ECS::TaskDefinition", 3),
    (SERVICES_STACK, "AWS::ServiceDiscovery::PrivateDnsNamespace", 1),
    (SERVICES_STACK, "AWS::SecretsManager::Secret", 2),
    (SERVICES_STACK, "AWS::ElasticLoadBalancingV2::LoadBalancer", 1),
    (SERVICES_STACK, "AWS::ElasticLoadBalancingV2::Listener", 2),
    (SERVICES_STACK, "AWS::ElasticLoadBalancingV2::TargetGroup", 1),
    (SERVICES_STACK, "AWS::Route53::RecordSet", 1),
    (WAF_STACK, "AWS::WAFv2::WebACL", 1),
    (WAF_STACK, "AWS::WAFv2::WebACLAssociation", 1),
    (WAF_STACK, "AWS::KinesisFirehose::DeliveryStream", 1),
    (WAF_STACK, "AWS::S3::Bucket", 1),
]

CROSS_STACK_INGRESS = [
    (constants.DB_PORT, "PostgreSQL access"),
    (constants.REDIS_PORT, "Redis access"),
    (constants.LANG_PORT, "lang access"),
    (constants.DUCKLING_PORT, "duckling access"),
]


def test_one_cloudformation_stack_per_plan_stack(templates: Dict[str, Template]):
    assert list(templates) == [
        NETWORK_STACK,
        DATABASE_STACK,
        REDIS_STACK,
        DOMAINS_STACK,
        SERVICES_STACK,
        WAF_STACK,
    ]


@pytest.mark.parametrize("stack,resource_type,expected", RESOURCES)
def test_resource_count(templates: Dict[str, Template], stack: str, resource_type: str, expected: int):
    templates[stack].resource_count_is(resource_type, expected)


# -------------------------- Network policy tests ------------------------


@pytest.mark.parametrize("port,description", CROSS_STACK_INGRESS)
def test_ingress_is_created_in_the_requesting_stack(
    templates: Dict[str, Template], port: int, description: str
):
    templates[SERVICES_STACK].has_resource_properties(
        "AWS::EC2::SecurityGroupIngress",
        {
            "IpProtocol": "tcp",
            "FromPort": port,
            "ToPort": port,
            "Description": description,
            "GroupId": Match.any_value(),
            "SourceSecurityGroupId": Match.any_value(),
        },
    )


def bastion_network(scope: StackScope) -> None:
    vpc = scope.resource(ResourceKind.NETWORK, "Vpc", {"cidr": "10.0.0.0/16"})
    bastion = scope.resource(ResourceKind.SECURITY_BOUNDARY, "BastionSecurityGroup", {"network": vpc})
    scope.output("network", OutputType.NETWORK, vpc)
    scope.output("bastion", OutputType.SECURITY_BOUNDARY, bastion)


def lang_app(scope: StackScope) -> None:
    vpc = scope.input("network")
    cluster = scope.resource(ResourceKind.COMPUTE_CLUSTER, "Cluster", {"network": vpc})
    namespace = scope.namespace(constants.INTERNAL_TLD, vpc)
    lang = scope.service(
        cluster, "lang:latest", Sizing(256, 512), constants.LANG_PORT, None, None, "lang", namespace, vpc
    )
    lang.allow_ingress(scope.input("bastion"))


def test_unit_opened_to_an_upstream_boundary_synthesizes():
    plan = StackAssembler().assemble(
        [
            factory("Net", bastion_network),
            factory(
                "App",
                lang_app,
                network=(OutputType.NETWORK, "Net", "network"),
                bastion=(OutputType.SECURITY_BOUNDARY, "Net", "bastion"),
            ),
        ]
    )
    [rule] = plan.find("App", "LangSecurityGroup").properties["ingress"]
    assert rule.origin == "App"

    stacks = templates_for(plan)

    stacks["Net"].resource_count_is("AWS::EC2::SecurityGroupIngress", 0)
    stacks["App"].has_resource_properties(
        "AWS::EC2::SecurityGroupIngress",
        {
            "FromPort": constants.LANG_PORT,
            "ToPort": constants.LANG_PORT,
            "Description": "lang access",
            "SourceSecurityGroupId": Match.any_value(),
        },
    )


# -------------------------- Service configuration tests ------------------------


def test_web_container(templates: Dict[str, Template]):
    templates[SERVICES_STACK].has_resource_properties(
        "AWS::ECS::TaskDefinition",
        {
            "Cpu": "1024",
            "Memory": "4096",
            "ContainerDefinitions": [
                Match.object_like(
                    {
                        "Name": "web",
                        "Image": constants.BOTPRESS_IMAGE,
                        "EntryPoint": ["/bin/sh", "-c"],
                        "Command": ["./bp"],
                        "PortMappings": [Match.object_like({"ContainerPort": constants.WEB_PORT})],
                        "Environment": Match.array_with(
                            [
                                {
                                    "Name": "BP_MODULE_NLU_DUCKLINGURL",
                                    "Value": "http://duckling.bp-internal:8000",
                                }
                            ]
                        ),
                        "Secrets": Match.array_with(
                            [Match.object_like({"Name": "BP_LICENSE_KEY"})]
                        ),
                    }
                )
            ],
        },
    )


def test_web_service_connect(templates: Dict[str, Template]):
    templates[SERVICES_STACK].has_resource_properties(
        "AWS::ECS::Service",
        {
            "DesiredCount": constants.WEB_DESIRED_COUNT,
            "ServiceConnectConfiguration": Match.object_like(
                {
                    "Enabled": True,
                    "Services": [
                        Match.object_like(
                            {
                                "PortName": "web",
                                "ClientAliases": [{"DnsName": "web", "Port": constants.WEB_PORT}],
                            }
                        )
                    ],
                }
            ),
        },
    )


def test_cluster_has_container_insights(templates: Dict[str, Template]):
    templates[SERVICES_STACK].has_resource_properties(
        "AWS::ECS::Cluster",
        {"ClusterSettings": [{"Name": "containerInsights", "Value": "enabled"}]},
    )


def test_log_groups_keep_a_month(templates: Dict[str, Template]):
    log_groups = templates[SERVICES_STACK].find_resources("AWS::Logs::LogGroup")
    assert len(log_groups) == 3
    assert {group["Properties"]["RetentionInDays"] for group in log_groups.values()} == {30}


# -------------------------- Edge tests ------------------------


def test_http_redirects_to_https(templates: Dict[str, Template]):
    templates[SERVICES_STACK].has_resource_properties(
        "AWS::ElasticLoadBalancingV2::Listener",
        {
            "Port": 80,
            "DefaultActions": [
                Match.object_like(
                    {
                        "Type": "redirect",
                        "RedirectConfig": Match.object_like(
                            {"Protocol": "HTTPS", "Port": "443", "StatusCode": "HTTP_301"}
                        ),
                    }
                )
            ],
        },
    )


def test_web_target_health_check(templates: Dict[str, Template]):
    templates[SERVICES_STACK].has_resource_properties(
        "AWS::ElasticLoadBalancingV2::TargetGroup",
        {
            "Port": constants.WEB_PORT,
            "Protocol": "HTTP",
            "TargetType": "ip",
            "HealthCheckPath": "/status",
            "HealthCheckIntervalSeconds": 60,
            "HealthCheckTimeoutSeconds": 10,
            "HealthyThresholdCount": 2,
            "UnhealthyThresholdCount": 10,
        },
    )


def test_waf_managed_rules(templates: Dict[str, Template]):
    templates[WAF_STACK].has_resource_properties(
        "AWS::WAFv2::WebACL",
        {
            "Scope": "REGIONAL",
            "DefaultAction": {"Allow": {}},
            "Rules": Match.array_with(
                [
                    Match.object_like(
                        {
                            "Name": "AWS-AWSManagedRulesCommonRuleSet",
                            "Priority": 0,
                            "OverrideAction": {"None": {}},
                        }
                    ),
                    Match.object_like({"Name": "AWS-AWSManagedRulesSQLiRuleSet", "Priority": 1}),
                ]
            ),
        },
    )


def test_literal_ids_are_imported_not_created():
    templates = build_templates(("web", "nlu"), LITERAL_BINDINGS)
    assert DOMAINS_STACK not in templates
    services = templates[SERVICES_STACK]
    services.resource_count_is("AWS::Route53::HostedZone", 0)
    services.resource_count_is("AWS::CertificateManager::Certificate", 0)
    services.has_resource_properties(
        "AWS::Route53::RecordSet",
        {"HostedZoneId": LITERAL_BINDINGS[constants.BINDING_HOSTED_ZONE_ID]},
    )
    services.has_resource_properties(
        "AWS::ElasticLoadBalancingV2::Listener",
        {
            "Port": 443,
            "Certificates": [{"CertificateArn": LITERAL_BINDINGS[constants.BINDING_CERTIFICATE_ARN]}],
        },
    )


# -------------------------- Governance tests ------------------------


def test_waf_log_bucket_is_private(templates: Dict[str, Template]):
    assert_s3_compliance(templates[WAF_STACK])


def test_data_stores_are_encrypted(templates: Dict[str, Template]):
    assert_rds_compliance(templates[DATABASE_STACK])
    assert_elasticache_compliance(templates[REDIS_STACK])


@pytest.mark.parametrize("stack", [DATABASE_STACK, REDIS_STACK, SERVICES_STACK])
def test_only_the_load_balancer_is_public(templates: Dict[str, Template], stack: str):
    assert_no_open_ingress(templates[stack], allowed_ports=(constants.HTTP_PORT, constants.HTTPS_PORT))


@pytest.mark.parametrize(
    "stack,parameters",
    [
        (SERVICES_STACK, [constants.LICENSE_PARAMETER, constants.DATABASE_URL_PARAMETER]),
        (DOMAINS_STACK, [constants.DOMAIN_NAME_PARAMETER]),
    ],
)
def test_deploy_time_parameters_are_hidden(templates: Dict[str, Template], stack: str, parameters):
    assert_parameters_hidden(templates[stack], parameters)
