"""Service units backing the Botpress NLU module."""
from topology.assembler import StackScope
from topology.model import ResourceHandle
from topology.services import DiscoveryNamespace, ServiceUnit, Sizing

from common import constants
from common.stack_context import StackContext

# Shared by every Botpress server process, whatever its role
BOTPRESS_ENV = {
    "BP_PRODUCTION": True,
    "BP_MODULES_PATH": "/botpress/modules:/botpress/additional-modules",
    "BP_DECISION_MIN_NO_REPEAT": "1ms",
    "BPFS_STORAGE": "database",
    "CLUSTER_ENABLED": True,
    "PRO_ENABLED": True,
    "EXPOSED_LICENSE_SERVER": "https://license.botpress.io/",
    "VERBOSITY_LEVEL": 3,
    "AUTO_MIGRATE": True,
    "DATABASE_POOL": '{"min": 2, "max": 5}',
}

SHELL_ENTRY_POINT = ("/bin/sh", "-c")


def duckling_service(
    scope: StackScope,
    context: StackContext,
    cluster: ResourceHandle,
    namespace: DiscoveryNamespace,
    network: ResourceHandle,
) -> ServiceUnit:
    return scope.service(
        cluster,
        constants.BOTPRESS_IMAGE,
        Sizing(cpu=256, memory_mib=512),
        constants.DUCKLING_PORT,
        env=None,
        secrets=None,
        discovery_name=constants.DUCKLING_SUBDOMAIN,
        namespace=namespace,
        network=network,
        entry_point=SHELL_ENTRY_POINT,
        command=[f"./duckling -p {constants.DUCKLING_PORT}"],
        log_stream_prefix=context.build_log_stream_prefix(
            f"{context.env}-{constants.DUCKLING_SUBDOMAIN}"
        ),
        log_retention_days=constants.LOG_RETENTION_DAYS,
        enable_execute_command=True,
    )


def lang_server_service(
    scope: StackScope,
    context: StackContext,
    cluster: ResourceHandle,
    namespace: DiscoveryNamespace,
    network: ResourceHandle,
    domain_name: str,
) -> ServiceUnit:
    """Language server holding the offline embeddings under /botpress/lang."""
    return scope.service(
        cluster,
        constants.BOTPRESS_IMAGE,
        Sizing(cpu=512, memory_mib=4096),
        constants.LANG_PORT,
        env={"EXTERNAL_URL": f"https://{domain_name}"},
        secrets=None,
        discovery_name=constants.LANG_SUBDOMAIN,
        namespace=namespace,
        network=network,
        static_env=BOTPRESS_ENV,
        entry_point=SHELL_ENTRY_POINT,
        command=[
            f"./bp lang --langDir /botpress/lang --port {constants.LANG_PORT} --offline --dim 300"
        ],
        log_stream_prefix=context.build_log_stream_prefix(constants.LANG_SUBDOMAIN),
        log_retention_days=constants.LOG_RETENTION_DAYS,
        enable_execute_command=True,
    )
