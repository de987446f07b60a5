"""AWS CDK implementation of the provisioning interface.

Each plan stack becomes one ``aws_cdk.Stack`` in the given app. Construct IDs
are the plan resource names, so they are stable across synthesis runs.
"""
import re
from typing import Any, Dict, Mapping, Optional, Sequence

from aws_cdk import (
    App,
    Duration,
    Environment,
    RemovalPolicy,
    SecretValue,
    Stack,
    Tags,
    Token,
    CfnParameter,
    aws_certificatemanager as acm,
    aws_ec2 as ec2,
    aws_ecs as ecs,
    aws_elasticache as elasticache,
    aws_elasticloadbalancingv2 as elbv2,
    aws_iam as iam,
    aws_kinesisfirehose as firehose,
    aws_kms as kms,
    aws_logs as logs,
    aws_rds as rds,
    aws_route53 as route53,
    aws_route53_targets as route53_targets,
    aws_s3 as s3,
    aws_secretsmanager as secretsmanager,
    aws_servicediscovery as servicediscovery,
    aws_wafv2 as wafv2,
)

from topology.policy import EgressRule, IngressRule
from topology.provisioning import Provisioner
from topology.services import HealthCheck, ServiceDescriptor

RETENTION_DAYS = {
    1: logs.RetentionDays.ONE_DAY,
    7: logs.RetentionDays.ONE_WEEK,
    14: logs.RetentionDays.TWO_WEEKS,
    30: logs.RetentionDays.ONE_MONTH,
    90: logs.RetentionDays.THREE_MONTHS,
    180: logs.RetentionDays.SIX_MONTHS,
    365: logs.RetentionDays.ONE_YEAR,
}


def construct_id(*parts: Any) -> str:
    return "".join(re.sub(r"[^A-Za-z0-9]", "", str(part)) for part in parts)


class CdkProvisioner(Provisioner):
    def __init__(self, app: App, env: Optional[Environment] = None) -> None:
        self.app = app
        self.env = env
        self.stacks: Dict[str, Stack] = {}

    def begin_stack(self, name: str) -> None:
        super().begin_stack(name)
        if name not in self.stacks:
            self.stacks[name] = Stack(self.app, name, env=self.env)

    @property
    def scope(self) -> Stack:
        return self.stacks[self.stack_name]

    @property
    def id(self) -> str:
        return self.entry.name

    # ---------- network ----------
    def create_network(self, spec: Mapping[str, Any]) -> ec2.IVpc:
        imported = spec.get("import")
        if imported:
            return ec2.Vpc.from_vpc_attributes(
                self.scope,
                self.id,
                vpc_id=imported["vpc_id"],
                availability_zones=list(imported["availability_zones"]),
                public_subnet_ids=list(imported.get("public_subnet_ids", [])),
                private_subnet_ids=list(imported.get("private_subnet_ids", [])),
            )
        return ec2.Vpc(
            self.scope,
            self.id,
            ip_addresses=ec2.IpAddresses.cidr(spec["cidr"]),
            max_azs=spec.get("max_azs", 2),
            nat_gateways=spec.get("nat_gateways", 1),
            subnet_configuration=[
                ec2.SubnetConfiguration(
                    name="Public",
                    subnet_type=ec2.SubnetType.PUBLIC,
                    cidr_mask=spec.get("cidr_mask", 24),
                ),
                ec2.SubnetConfiguration(
                    name="Private",
                    subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS,
                    cidr_mask=spec.get("cidr_mask", 24),
                ),
            ],
        )

    def create_security_boundary(self, spec: Mapping[str, Any], network: ec2.IVpc) -> ec2.ISecurityGroup:
        imported = spec.get("import")
        if imported:
            return ec2.SecurityGroup.from_security_group_id(
                self.scope, self.id, imported["security_group_id"]
            )
        return ec2.SecurityGroup(
            self.scope,
            self.id,
            vpc=network,
            description=spec.get("description"),
            allow_all_outbound=spec.get("allow_all_outbound", True),
        )

    def add_ingress_rule(self, boundary: ec2.ISecurityGroup, source: Any, rule: IngressRule) -> ec2.CfnSecurityGroupIngress:
        peer = self._peer_properties(source, "source_security_group_id")
        return ec2.CfnSecurityGroupIngress(
            self.scope,
            construct_id(self.entry.stack, self.entry.name, "From", _peer_name(rule.source), rule.port, rule.protocol.value),
            ip_protocol=rule.protocol.value,
            from_port=rule.port,
            to_port=rule.port,
            group_id=boundary.security_group_id,
            description=rule.description or None,
            **peer,
        )

    def add_egress_rule(self, boundary: ec2.ISecurityGroup, destination: Any, rule: EgressRule) -> ec2.CfnSecurityGroupEgress:
        peer = self._peer_properties(destination, "destination_security_group_id")
        return ec2.CfnSecurityGroupEgress(
            self.scope,
            construct_id(self.entry.stack, self.entry.name, "To", _peer_name(rule.destination), rule.port, rule.protocol.value),
            ip_protocol=rule.protocol.value,
            from_port=rule.port,
            to_port=rule.port,
            group_id=boundary.security_group_id,
            description=rule.description or None,
            **peer,
        )

    @staticmethod
    def _peer_properties(peer: Any, group_key: str) -> Dict[str, str]:
        if isinstance(peer, str):
            return {"cidr_ipv6": peer} if ":" in peer else {"cidr_ip": peer}
        return {group_key: peer.security_group_id}

    # ---------- secrets ----------
    def create_parameter(self, spec: Mapping[str, Any]) -> CfnParameter:
        return CfnParameter(
            self.scope,
            self.id,
            type=spec.get("type", "String"),
            no_echo=spec.get("no_echo", True),
            description=spec.get("description") or None,
        )

    def create_secret(self, spec: Mapping[str, Any]) -> secretsmanager.Secret:
        generate = spec.get("generate")
        if generate is not None:
            return secretsmanager.Secret(
                self.scope,
                self.id,
                generate_secret_string=secretsmanager.SecretStringGenerator(
                    exclude_punctuation=generate.get("exclude_punctuation", True),
                    include_space=generate.get("include_space", False),
                ),
            )
        return secretsmanager.Secret(
            self.scope,
            self.id,
            secret_string_value=SecretValue.unsafe_plain_text(spec["value_from"]),
        )

    # ---------- data stores ----------
    def create_data_store(self, spec: Mapping[str, Any], network: ec2.IVpc) -> rds.DatabaseCluster:
        version = str(spec["engine_version"])
        key = kms.Key(self.scope, f"{self.id}Key", enable_key_rotation=True)
        return rds.DatabaseCluster(
            self.scope,
            self.id,
            engine=rds.DatabaseClusterEngine.aurora_postgres(
                version=rds.AuroraPostgresEngineVersion.of(version, version.split(".")[0])
            ),
            credentials=rds.Credentials.from_password(
                spec["master_username"], spec["password"].secret_value
            ),
            writer=rds.ClusterInstance.provisioned(
                "Writer", instance_type=ec2.InstanceType(spec["instance_class"])
            ),
            vpc=network,
            vpc_subnets=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS),
            security_groups=[spec["boundary"]],
            preferred_maintenance_window=spec.get("maintenance_window"),
            default_database_name=spec.get("database_name"),
            storage_encryption_key=key,
            port=spec["port"],
            backup=rds.BackupProps(retention=Duration.days(spec.get("backup_retention_days", 14))),
        )

    def create_cache(self, spec: Mapping[str, Any], network: ec2.IVpc) -> elasticache.CfnReplicationGroup:
        subnet_group = elasticache.CfnSubnetGroup(
            self.scope,
            f"{self.id}SubnetGroup",
            description="Subnet group for the Redis cluster",
            subnet_ids=[subnet.subnet_id for subnet in network.private_subnets],
        )
        return elasticache.CfnReplicationGroup(
            self.scope,
            self.id,
            replication_group_description="Replication group for Redis",
            num_cache_clusters=spec.get("num_nodes", 1),
            automatic_failover_enabled=False,
            transit_encryption_enabled=False,
            cache_subnet_group_name=subnet_group.ref,
            engine=spec.get("engine", "redis"),
            cache_node_type=spec["node_type"],
            security_group_ids=[spec["boundary"].security_group_id],
            port=spec["port"],
            at_rest_encryption_enabled=spec.get("at_rest_encryption", True),
        )

    def create_bastion(self, spec: Mapping[str, Any], network: ec2.IVpc) -> ec2.Instance:
        role = iam.Role(
            self.scope,
            f"{self.id}Role",
            assumed_by=iam.ServicePrincipal("ec2.amazonaws.com"),
        )
        # Enables instances to use AWS SSM
        role.add_managed_policy(
            iam.ManagedPolicy.from_aws_managed_policy_name("AmazonSSMManagedInstanceCore")
        )
        user_data = ec2.UserData.for_linux()
        user_data.add_commands(*spec.get("commands", ()))
        instance = ec2.Instance(
            self.scope,
            self.id,
            vpc=network,
            instance_type=ec2.InstanceType(spec["instance_type"]),
            machine_image=ec2.MachineImage.latest_amazon_linux2(),
            security_group=spec["boundary"],
            user_data=user_data,
            role=role,
            vpc_subnets=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PUBLIC),
        )
        for key, value in spec.get("tags", {}).items():
            Tags.of(instance).add(key, value, apply_to_launched_instances=True)
        return instance

    # ---------- compute ----------
    def create_compute_cluster(self, network: ec2.IVpc, spec: Optional[Mapping[str, Any]] = None) -> ecs.Cluster:
        spec = spec or {}
        return ecs.Cluster(
            self.scope,
            self.id,
            vpc=network,
            container_insights_v2=(
                ecs.ContainerInsights.ENABLED
                if spec.get("container_insights", True)
                else ecs.ContainerInsights.DISABLED
            ),
        )

    def create_namespace(self, spec: Mapping[str, Any], network: ec2.IVpc) -> servicediscovery.PrivateDnsNamespace:
        return servicediscovery.PrivateDnsNamespace(
            self.scope, self.id, vpc=network, name=spec["name"]
        )

    def create_service(
        self, cluster: ecs.ICluster, descriptor: ServiceDescriptor, spec: Mapping[str, Any]
    ) -> ecs.FargateService:
        task_definition = ecs.FargateTaskDefinition(
            self.scope,
            f"{self.id}TaskDef",
            memory_limit_mib=descriptor.sizing.memory_mib,
            cpu=descriptor.sizing.cpu,
        )
        container = task_definition.add_container(
            descriptor.discovery_name,
            image=ecs.ContainerImage.from_registry(descriptor.image),
            entry_point=list(descriptor.entry_point) or None,
            command=list(descriptor.command) or None,
            environment=dict(descriptor.environment) or None,
            secrets={
                key: ecs.Secret.from_secrets_manager(secret)
                for key, secret in descriptor.secrets.items()
            }
            or None,
            logging=ecs.LogDrivers.aws_logs(
                stream_prefix=descriptor.log_stream_prefix or descriptor.discovery_name,
                log_retention=RETENTION_DAYS.get(
                    descriptor.log_retention_days, logs.RetentionDays.ONE_MONTH
                ),
            ),
        )
        container.add_port_mappings(
            ecs.PortMapping(container_port=descriptor.port, name=descriptor.discovery_name)
        )
        return ecs.FargateService(
            self.scope,
            self.id,
            cluster=cluster,
            task_definition=task_definition,
            assign_public_ip=descriptor.assign_public_ip,
            security_groups=[spec["boundary"]],
            enable_execute_command=descriptor.enable_execute_command,
            propagate_tags=ecs.PropagatedTagSource.SERVICE,
            desired_count=descriptor.desired_count,
            service_connect_configuration=ecs.ServiceConnectProps(
                namespace=spec["namespace"].namespace_arn,
                services=[
                    ecs.ServiceConnectService(
                        port_mapping_name=descriptor.discovery_name,
                        dns_name=descriptor.discovery_name,
                        port=descriptor.port,
                    )
                ],
            ),
        )

    # ---------- edge ----------
    def create_load_balancer(self, network: ec2.IVpc, spec: Optional[Mapping[str, Any]] = None) -> elbv2.ApplicationLoadBalancer:
        spec = spec or {}
        return elbv2.ApplicationLoadBalancer(
            self.scope,
            self.id,
            vpc=network,
            internet_facing=spec.get("internet_facing", True),
            vpc_subnets=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PUBLIC),
        )

    def bind_listener(
        self,
        load_balancer: elbv2.ApplicationLoadBalancer,
        port: int,
        certificate: Any = None,
        spec: Optional[Mapping[str, Any]] = None,
    ) -> elbv2.ApplicationListener:
        spec = spec or {}
        options: Dict[str, Any] = {"port": port}
        if certificate is not None:
            options["certificates"] = [
                elbv2.ListenerCertificate.from_certificate_manager(certificate)
            ]
        action = spec.get("default_action") or {}
        if action.get("type") == "redirect":
            options["default_action"] = elbv2.ListenerAction.redirect(
                protocol=action.get("protocol", "HTTPS"),
                port=str(action.get("port", 443)),
                permanent=action.get("permanent", True),
            )
        elif action.get("type") == "fixed-response":
            options["default_action"] = elbv2.ListenerAction.fixed_response(
                action.get("status_code", 503),
                content_type="text/plain",
                message_body=action.get("message"),
            )
        return load_balancer.add_listener(self.id, **options)

    def register_target(
        self,
        listener: elbv2.ApplicationListener,
        service: ecs.FargateService,
        health_check: Optional[HealthCheck],
        spec: Optional[Mapping[str, Any]] = None,
    ) -> elbv2.ApplicationTargetGroup:
        spec = spec or {}
        options: Dict[str, Any] = {
            "port": spec.get("port", 80),
            "protocol": elbv2.ApplicationProtocol(spec.get("protocol", "HTTP")),
            "targets": [service],
        }
        if health_check is not None:
            options["health_check"] = elbv2.HealthCheck(
                path=health_check.path,
                interval=Duration.seconds(health_check.interval_seconds),
                healthy_threshold_count=health_check.healthy_threshold,
                timeout=Duration.seconds(health_check.timeout_seconds),
                unhealthy_threshold_count=health_check.unhealthy_threshold,
            )
        if spec.get("stickiness_seconds"):
            options["stickiness_cookie_duration"] = Duration.seconds(spec["stickiness_seconds"])
        return listener.add_targets(self.id, **options)

    def create_dns_zone(self, spec: Mapping[str, Any]) -> route53.IHostedZone:
        imported = spec.get("import")
        if imported:
            return route53.HostedZone.from_hosted_zone_attributes(
                self.scope,
                self.id,
                hosted_zone_id=imported["hosted_zone_id"],
                zone_name=spec["zone_name"],
            )
        return route53.HostedZone(self.scope, self.id, zone_name=spec["zone_name"])

    def create_certificate(self, spec: Mapping[str, Any], zone: Optional[route53.IHostedZone]) -> acm.ICertificate:
        imported = spec.get("import")
        if imported:
            return acm.Certificate.from_certificate_arn(
                self.scope, self.id, imported["certificate_arn"]
            )
        return acm.Certificate(
            self.scope,
            self.id,
            domain_name=spec["domain_name"],
            subject_alternative_names=list(spec.get("alternative_names", [])) or None,
            validation=acm.CertificateValidation.from_dns(zone),
        )

    def create_dns_record(self, zone: route53.IHostedZone, name: str, target: Any) -> route53.ARecord:
        return route53.ARecord(
            self.scope,
            self.id,
            zone=zone,
            record_name=name,
            target=route53.RecordTarget.from_alias(route53_targets.LoadBalancerTarget(target)),
        )

    # ---------- WAF ----------
    def create_log_delivery(self, spec: Mapping[str, Any]) -> firehose.CfnDeliveryStream:
        bucket = s3.Bucket(
            self.scope,
            f"{self.id}Bucket",
            removal_policy=RemovalPolicy.DESTROY,
            encryption=s3.BucketEncryption.S3_MANAGED,
            block_public_access=s3.BlockPublicAccess.BLOCK_ALL,
        )
        role = iam.Role(
            self.scope,
            f"{self.id}Role",
            assumed_by=iam.ServicePrincipal("firehose.amazonaws.com"),
        )
        bucket.grant_read_write(role)
        return firehose.CfnDeliveryStream(
            self.scope,
            self.id,
            delivery_stream_name=spec["stream_name"],
            extended_s3_destination_configuration=firehose.CfnDeliveryStream.ExtendedS3DestinationConfigurationProperty(
                bucket_arn=bucket.bucket_arn,
                buffering_hints=firehose.CfnDeliveryStream.BufferingHintsProperty(
                    interval_in_seconds=spec.get("buffer_interval_seconds", 900),
                    size_in_m_bs=spec.get("buffer_size_mb", 1),
                ),
                compression_format=spec.get("compression", "GZIP"),
                role_arn=role.role_arn,
            ),
        )

    def create_web_policy(
        self, rules: Sequence[Mapping[str, Any]], spec: Optional[Mapping[str, Any]] = None
    ) -> wafv2.CfnWebACL:
        spec = spec or {}
        default_action = (
            wafv2.CfnWebACL.DefaultActionProperty(block={})
            if spec.get("default_action") == "block"
            else wafv2.CfnWebACL.DefaultActionProperty(allow={})
        )
        return wafv2.CfnWebACL(
            self.scope,
            self.id,
            default_action=default_action,
            scope=spec.get("scope", "REGIONAL"),
            visibility_config=_visibility(spec.get("metric_name", self.id)),
            rules=[
                wafv2.CfnWebACL.RuleProperty(
                    name=rule["name"],
                    priority=rule["priority"],
                    override_action=wafv2.CfnWebACL.OverrideActionProperty(none={}),
                    visibility_config=_visibility(rule["metric_name"]),
                    statement=wafv2.CfnWebACL.StatementProperty(
                        managed_rule_group_statement=wafv2.CfnWebACL.ManagedRuleGroupStatementProperty(
                            vendor_name=rule.get("vendor", "AWS"),
                            name=rule["rule_group"],
                            excluded_rules=[
                                wafv2.CfnWebACL.ExcludedRuleProperty(name=name)
                                for name in rule.get("excluded_rules", [])
                            ]
                            or None,
                        )
                    ),
                )
                for rule in rules
            ],
        )

    def attach_policy(self, policy: wafv2.CfnWebACL, target: elbv2.IApplicationLoadBalancer) -> wafv2.CfnWebACLAssociation:
        return wafv2.CfnWebACLAssociation(
            self.scope,
            self.id,
            web_acl_arn=policy.attr_arn,
            resource_arn=target.load_balancer_arn,
        )

    # ---------- attributes ----------
    def attribute(self, resource: Any, attribute: str) -> str:
        if isinstance(resource, CfnParameter) and attribute == "value":
            return resource.value_as_string
        if isinstance(resource, rds.DatabaseCluster):
            if attribute == "address":
                return resource.cluster_endpoint.hostname
            if attribute == "port":
                return Token.as_string(resource.cluster_endpoint.port)
        if isinstance(resource, elasticache.CfnReplicationGroup):
            if attribute == "address":
                return resource.attr_primary_end_point_address
            if attribute == "port":
                return resource.attr_primary_end_point_port
        if isinstance(resource, elbv2.ApplicationLoadBalancer) and attribute == "dns_name":
            return resource.load_balancer_dns_name
        if isinstance(resource, secretsmanager.Secret) and attribute == "arn":
            return resource.secret_arn
        raise KeyError(f"attribute '{attribute}' is not available on {type(resource).__name__}")


def _visibility(metric_name: str) -> wafv2.CfnWebACL.VisibilityConfigProperty:
    return wafv2.CfnWebACL.VisibilityConfigProperty(
        cloud_watch_metrics_enabled=True,
        metric_name=metric_name,
        sampled_requests_enabled=True,
    )


def _peer_name(peer: Any) -> str:
    return getattr(peer, "qualified_name", None) or str(peer)
