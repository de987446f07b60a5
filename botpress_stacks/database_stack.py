from topology.assembler import StackFactory, StackScope
from topology.model import Endpoint, OutputType, ResourceKind

from common import constants
from common.stack_context import StackContext


def build_database_stack(context: StackContext) -> StackFactory:
    network_stack = context.build_stack_name(constants.STACK_NETWORK)

    def build(scope: StackScope) -> None:
        vpc = scope.input("network")
        password = scope.generated_secret("MasterPassword")
        security_group = scope.resource(
            ResourceKind.SECURITY_BOUNDARY,
            "SecurityGroup",
            {"network": vpc, "description": "Aurora cluster access"},
        )
        cluster = scope.resource(
            ResourceKind.DATA_STORE,
            "DbCluster",
            {
                "network": vpc,
                "boundary": security_group,
                "engine": constants.DB_ENGINE,
                "engine_version": constants.DB_ENGINE_VERSION,
                "instance_class": constants.DB_INSTANCE_CLASS,
                "port": constants.DB_PORT,
                "database_name": constants.DB_NAME,
                "master_username": constants.DB_MASTER_USERNAME,
                "password": password.secret,
                "maintenance_window": constants.DB_MAINTENANCE_WINDOW,
                "backup_retention_days": constants.DB_BACKUP_RETENTION_DAYS,
                "storage_encrypted": True,
            },
        )

        if scope.enabled(constants.FEATURE_BASTION):
            bastion_security_group = scope.resource(
                ResourceKind.SECURITY_BOUNDARY,
                "BastionSecurityGroup",
                {"network": vpc, "description": "Bastion host"},
            )
            scope.allow_ingress(
                security_group,
                bastion_security_group,
                constants.DB_PORT,
                reason="Bastion access",
            )
            scope.resource(
                ResourceKind.BASTION,
                "BastionInstance",
                {
                    "network": vpc,
                    "boundary": bastion_security_group,
                    "instance_type": "t2.micro",
                    "commands": ["yum -y install ec2-instance-connect"],
                    # Used by the connect script to SSH into the instance
                    "tags": {"InstanceRole": "bastion"},
                },
            )

        scope.output(
            "endpoint", OutputType.ENDPOINT, Endpoint(cluster.attr("address"), constants.DB_PORT)
        )
        scope.output("boundary", OutputType.SECURITY_BOUNDARY, security_group)
        scope.output("password", OutputType.SECRET, password.secret)

    return StackFactory(
        name=context.build_stack_name(constants.STACK_DATABASE), build=build
    ).with_input("network", OutputType.NETWORK, network_stack)
