import os
from typing import Optional, Tuple

from aws_lambda_powertools import Logger

from topology.assembler import StackFactory, StackScope
from topology.model import OutputType, ResourceHandle, ResourceKind
from topology.services import EnvTemplate, HealthCheck, Sizing

from botpress_stacks.nlu_services import BOTPRESS_ENV, SHELL_ENTRY_POINT, duckling_service, lang_server_service
from common import constants
from common.stack_context import StackContext

logger = Logger(service=constants.LOG_SERVICE_NAME, level=os.getenv("LOG_LEVEL", "INFO").upper())

WEB_HEALTH_CHECK = HealthCheck(
    path="/status",
    interval_seconds=60,
    healthy_threshold=2,
    timeout_seconds=10,
    unhealthy_threshold=10,
)
STICKINESS_SECONDS = 3600


def _public_edge(
    scope: StackScope,
) -> Tuple[Optional[ResourceHandle], Optional[str], Optional[ResourceHandle]]:
    """Hosted zone, zone name and certificate for the public listeners.

    Taken from the domains stack when it is part of the assembly, otherwise
    imported from the literal bindings. Either may be absent.
    """
    if scope.has_input("zone"):
        return scope.input("zone"), scope.input("zone_name"), scope.input("certificate")

    zone = zone_name = certificate = None
    zone_id = scope.binding(constants.BINDING_HOSTED_ZONE_ID, None)
    if zone_id:
        zone_name = scope.binding(constants.BINDING_HOSTED_ZONE_NAME)
        zone = scope.resource(
            ResourceKind.DNS_ZONE,
            "HostedZone",
            {"zone_name": zone_name, "import": {"hosted_zone_id": zone_id}},
        )
    certificate_arn = scope.binding(constants.BINDING_CERTIFICATE_ARN, None)
    if certificate_arn:
        certificate = scope.resource(
            ResourceKind.CERTIFICATE,
            "Certificate",
            {"import": {"certificate_arn": certificate_arn}},
        )
    logger.info(
        "Using literal bindings for the public edge",
        extra={
            "stack": scope.stack,
            "hosted_zone_id": zone_id,
            "certificate_arn": certificate_arn,
        },
    )
    return zone, zone_name, certificate


def build_services_stack(context: StackContext) -> StackFactory:
    network_stack = context.build_stack_name(constants.STACK_NETWORK)
    database_stack = context.build_stack_name(constants.STACK_DATABASE)
    redis_stack = context.build_stack_name(constants.STACK_REDIS)
    domains_stack = context.build_stack_name(constants.STACK_DOMAINS)

    def build(scope: StackScope) -> None:
        vpc = scope.input("network")
        db_endpoint = scope.input("db_endpoint")
        redis_endpoint = scope.input("redis_endpoint")
        zone, zone_name, certificate = _public_edge(scope)

        license_key = scope.secret_parameter(
            constants.LICENSE_PARAMETER, description="Botpress license key"
        )
        database_url = scope.secret_parameter(
            constants.DATABASE_URL_PARAMETER, description="Database connection URL"
        )

        cluster = scope.resource(
            ResourceKind.COMPUTE_CLUSTER, "Cluster", {"network": vpc, "container_insights": True}
        )
        namespace = scope.namespace(context.internal_tld, vpc)

        load_balancer = scope.resource(
            ResourceKind.LOAD_BALANCER, "LB", {"network": vpc, "internet_facing": True}
        )
        if zone_name:
            public_host = f"{constants.WEB_SUBDOMAIN}.{zone_name}"
        else:
            public_host = str(load_balancer.attr("dns_name"))
        scheme = "https" if certificate is not None else "http"

        web_enabled = scope.enabled(constants.FEATURE_WEB)
        no_target = {"type": "fixed-response", "status_code": 503, "message": "No web service"}
        if certificate is not None:
            scope.resource(
                ResourceKind.LISTENER,
                "HttpListener",
                {
                    "load_balancer": load_balancer,
                    "port": constants.HTTP_PORT,
                    "default_action": {
                        "type": "redirect",
                        "protocol": "HTTPS",
                        "port": constants.HTTPS_PORT,
                        "permanent": True,
                    },
                },
            )
            listener = scope.resource(
                ResourceKind.LISTENER,
                "HttpsListener",
                {
                    "load_balancer": load_balancer,
                    "port": constants.HTTPS_PORT,
                    "certificate": certificate,
                    "default_action": None if web_enabled else no_target,
                },
            )
        else:
            listener = scope.resource(
                ResourceKind.LISTENER,
                "HttpListener",
                {
                    "load_balancer": load_balancer,
                    "port": constants.HTTP_PORT,
                    "default_action": None if web_enabled else no_target,
                },
            )

        lang = duckling = None
        if scope.enabled(constants.FEATURE_NLU):
            duckling = duckling_service(scope, context, cluster, namespace, vpc)
            lang = lang_server_service(
                scope, context, cluster, namespace, vpc, domain_name=zone_name or public_host
            )

        if web_enabled:
            env = {
                "REDIS_URL": EnvTemplate("redis://{redis}/0", {"redis": redis_endpoint}),
                "EXTERNAL_URL": f"{scheme}://{public_host}",
            }
            if lang is not None:
                env["BP_MODULE_NLU_LANGUAGESOURCES"] = EnvTemplate(
                    '[{{"endpoint":"{lang}"}}]', {"lang": lang.url()}
                )
                env["BP_MODULE_NLU_DUCKLINGURL"] = duckling.url()
            web = scope.service(
                cluster,
                constants.BOTPRESS_IMAGE,
                Sizing(cpu=1024, memory_mib=4096),
                constants.WEB_PORT,
                env=env,
                secrets={"BP_LICENSE_KEY": license_key, "DATABASE_URL": database_url},
                discovery_name="web",
                namespace=namespace,
                network=vpc,
                static_env=BOTPRESS_ENV,
                entry_point=SHELL_ENTRY_POINT,
                command=["./bp"],
                desired_count=constants.WEB_DESIRED_COUNT,
                log_stream_prefix=context.build_log_stream_prefix("web"),
                log_retention_days=constants.LOG_RETENTION_DAYS,
            )

            scope.allow_ingress(
                scope.input("db_boundary"), web.boundary, db_endpoint.port, reason="PostgreSQL access"
            )
            scope.allow_ingress(
                scope.input("redis_boundary"), web.boundary, redis_endpoint.port, reason="Redis access"
            )
            if lang is not None:
                lang.allow_ingress(web.boundary)
                duckling.allow_ingress(web.boundary)

            scope.resource(
                ResourceKind.TARGET,
                "WebTarget",
                {
                    "listener": listener,
                    "service": web.handle,
                    "port": constants.WEB_PORT,
                    "health_check": WEB_HEALTH_CHECK,
                    "stickiness_seconds": STICKINESS_SECONDS,
                },
            )
            if zone is not None:
                scope.resource(
                    ResourceKind.DNS_RECORD,
                    "WebRecord",
                    {"zone": zone, "name": constants.WEB_SUBDOMAIN, "target": load_balancer},
                )

        scope.output("load_balancer", OutputType.LOAD_BALANCER, load_balancer)
        scope.output("cluster", OutputType.CLUSTER, cluster)
        scope.output("namespace", OutputType.NAMESPACE, namespace.handle)

    return (
        StackFactory(name=context.build_stack_name(constants.STACK_SERVICES), build=build)
        .with_input("network", OutputType.NETWORK, network_stack)
        .with_input("db_endpoint", OutputType.ENDPOINT, database_stack, "endpoint")
        .with_input("db_boundary", OutputType.SECURITY_BOUNDARY, database_stack, "boundary")
        .with_input("redis_endpoint", OutputType.ENDPOINT, redis_stack, "endpoint")
        .with_input("redis_boundary", OutputType.SECURITY_BOUNDARY, redis_stack, "boundary")
        .with_input("zone", OutputType.DNS_ZONE, domains_stack, required=False)
        .with_input("zone_name", OutputType.VALUE, domains_stack, required=False)
        .with_input("certificate", OutputType.CERTIFICATE, domains_stack, required=False)
    )
