"""Resource driver rendering declared specs into AWS CDK constructs.

Each ``ResourceSpec`` becomes one construct (or a small group of them)
inside the given scope. Synthesis starts from an empty construct tree, so
every reconciled action is a create; CloudFormation computes updates and
replacements against the deployed stack at deploy time.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from typing import Any

from aws_cdk import Duration, RemovalPolicy, Tags
from aws_cdk import aws_ec2 as ec2
from aws_cdk import aws_ecr_assets as ecr_assets
from aws_cdk import aws_ecs as ecs
from aws_cdk import aws_elasticloadbalancingv2 as elbv2
from aws_cdk import aws_elasticloadbalancingv2_targets as elbv2_targets
from aws_cdk import aws_logs as logs
from cdk_nag import NagSuppressions
from constructs import Construct

from fin_chat_edge.core.errors import ConfigurationError, ProvisioningError
from fin_chat_edge.core.resources import ResourceKind, ResourceRecord, ResourceSpec

from .constants import LOG_RETENTION_DAYS, LOG_STREAM_PREFIX

logger = logging.getLogger(__name__)

_SUBNET_TYPES = {
    "public": ec2.SubnetType.PUBLIC,
    "isolated": ec2.SubnetType.PRIVATE_ISOLATED,
}
_APPLICATION_PROTOCOLS = {
    "HTTP": elbv2.ApplicationProtocol.HTTP,
    "HTTPS": elbv2.ApplicationProtocol.HTTPS,
}
_TARGET_PROTOCOLS = {
    "HTTP": elbv2.Protocol.HTTP,
    "HTTPS": elbv2.Protocol.HTTPS,
    "TCP": elbv2.Protocol.TCP,
}


class CdkDriver:
    """Materializes resource specs as constructs under ``scope``.

    Args:
        scope: Construct (normally the stack) that owns every rendered construct.
        environment_name: Value of the ``Environment`` tag.
        image_assets: Image assets built during synthesis, keyed by the image
            reference the task spec carries.
    """

    def __init__(
        self,
        scope: Construct,
        environment_name: str,
        image_assets: Mapping[str, ecr_assets.DockerImageAsset] | None = None,
    ) -> None:
        self.scope = scope
        self.environment_name = environment_name
        self.image_assets = dict(image_assets or {})
        self._records: dict[str, ResourceRecord] = {}
        self._constructs: dict[str, Construct] = {}
        self._renderers: dict[ResourceKind, Callable[[ResourceSpec, str], Construct]] = {
            ResourceKind.VPC: self._create_vpc,
            ResourceKind.SECURITY_GROUP: self._create_security_group,
            ResourceKind.SECURITY_GROUP_RULE: self._create_security_group_rule,
            ResourceKind.VPC_ENDPOINT: self._create_vpc_endpoint,
            ResourceKind.CLUSTER: self._create_cluster,
            ResourceKind.TASK_DEFINITION: self._create_task_definition,
            ResourceKind.SERVICE: self._create_service,
            ResourceKind.LOAD_BALANCER: self._create_load_balancer,
            ResourceKind.TARGET_GROUP: self._create_target_group,
            ResourceKind.LISTENER: self._create_listener,
        }

    def construct(self, name: str) -> Construct:
        try:
            return self._constructs[name]
        except KeyError:
            msg = f"No construct rendered for resource '{name}'"
            raise ConfigurationError(msg) from None

    def construct_id(self, name: str) -> str:
        """Stable construct ID for a logical name, without the environment prefix."""
        prefix = f"{self.environment_name}-"
        parts = re.split(r"[^0-9A-Za-z]+", name.replace(prefix, ""))
        return "".join(part[:1].upper() + part[1:] for part in parts if part)

    # ResourceDriver

    def observe(self) -> dict[str, ResourceRecord]:
        return dict(self._records)

    def exists(self, name: str) -> bool:
        return name in self._records

    def create(self, spec: ResourceSpec) -> ResourceRecord:
        existing = self._records.get(spec.name)
        if existing is not None:
            if existing.spec == spec:
                return existing
            msg = f"Resource '{spec.name}' is already rendered with a different definition"
            raise ProvisioningError(msg)

        construct_id = self.construct_id(spec.name)
        construct = self._renderers[spec.kind](spec, construct_id)
        Tags.of(construct).add("Name", spec.name)
        Tags.of(construct).add("Environment", self.environment_name)
        Tags.of(construct).add("Component", spec.kind.value)

        record = ResourceRecord(
            spec,
            physical_id=construct.node.path,
            attributes=self._attributes(construct),
        )
        self._constructs[spec.name] = construct
        self._records[spec.name] = record
        logger.debug("Rendered %s %s as %s", spec.kind.value, spec.name, construct.node.path)
        return record

    def update(self, spec: ResourceSpec) -> ResourceRecord:
        msg = f"Cannot update '{spec.name}' during synthesis; deploy the new template instead"
        raise ProvisioningError(msg)

    def replace(self, spec: ResourceSpec) -> ResourceRecord:
        msg = f"Cannot replace '{spec.name}' during synthesis; deploy the new template instead"
        raise ProvisioningError(msg)

    def delete(self, name: str) -> None:
        construct = self._constructs.pop(name, None)
        self._records.pop(name, None)
        if construct is not None:
            self.scope.node.try_remove_child(construct.node.id)

    # Renderers

    def _create_vpc(self, spec: ResourceSpec, construct_id: str) -> ec2.Vpc:
        props = spec.properties
        zones = list(props["zones"])
        for tier in props["tiers"]:
            if list(tier["zones"]) != zones:
                msg = f"Tier '{tier['name']}' must span every fabric zone to be rendered as a VPC subnet group"
                raise ConfigurationError(msg)
        vpc = ec2.Vpc(
            self.scope,
            construct_id,
            ip_addresses=ec2.IpAddresses.cidr(props["cidr"]),
            availability_zones=zones,
            nat_gateways=0,
            enable_dns_hostnames=True,
            enable_dns_support=True,
            subnet_configuration=[
                ec2.SubnetConfiguration(
                    name=tier["name"],
                    cidr_mask=tier["cidr_mask"],
                    subnet_type=_SUBNET_TYPES[tier["visibility"]],
                )
                for tier in props["tiers"]
            ],
        )
        NagSuppressions.add_resource_suppressions(
            vpc,
            [
                {
                    "id": "AwsSolutions-VPC7",
                    "reason": "Traffic is observed at the balancers and in container logs; flow logs are not collected.",
                },
            ],
        )
        return vpc

    def _create_security_group(self, spec: ResourceSpec, construct_id: str) -> ec2.SecurityGroup:
        props = spec.properties
        return ec2.SecurityGroup(
            self.scope,
            construct_id,
            vpc=self._vpc(props["vpc"]),
            description=props["description"],
            allow_all_outbound=props["allow_all_outbound"],
        )

    def _create_security_group_rule(self, spec: ResourceSpec, construct_id: str) -> Construct:
        props = spec.properties
        group = self._security_group(props["group"])
        rule: dict[str, Any] = {
            "group_id": group.security_group_id,
            "ip_protocol": props["protocol"],
            "from_port": props["port"],
            "to_port": props["port"],
            "description": props["description"] or None,
        }
        if props["direction"] == "ingress":
            if props["peer_is_cidr"]:
                rule["cidr_ip"] = props["peer"]
            else:
                rule["source_security_group_id"] = self._security_group(props["peer"]).security_group_id
            return ec2.CfnSecurityGroupIngress(self.scope, construct_id, **rule)
        if props["peer_is_cidr"]:
            rule["cidr_ip"] = props["peer"]
        else:
            rule["destination_security_group_id"] = self._security_group(props["peer"]).security_group_id
        return ec2.CfnSecurityGroupEgress(self.scope, construct_id, **rule)

    def _create_vpc_endpoint(self, spec: ResourceSpec, construct_id: str) -> Construct:
        props = spec.properties
        vpc = self._vpc(props["vpc"])
        subnets = ec2.SubnetSelection(subnet_group_name=props["tier"])
        # Service names look like com.amazonaws.<region>.<suffix>.
        suffix = props["service_name"].split(".", 3)[-1]
        if props["endpoint_type"] == "gateway":
            return ec2.GatewayVpcEndpoint(
                self.scope,
                construct_id,
                vpc=vpc,
                service=ec2.GatewayVpcEndpointAwsService(suffix),
                subnets=[subnets],
            )
        return ec2.InterfaceVpcEndpoint(
            self.scope,
            construct_id,
            vpc=vpc,
            service=ec2.InterfaceVpcEndpointAwsService(suffix),
            subnets=subnets,
            security_groups=[self._security_group(name) for name in props["security_groups"]],
            private_dns_enabled=props["private_dns_enabled"],
            open=False,
        )

    def _create_cluster(self, spec: ResourceSpec, construct_id: str) -> ecs.Cluster:
        return ecs.Cluster(
            self.scope,
            construct_id,
            vpc=self._vpc(spec.properties["vpc"]),
            container_insights_v2=ecs.ContainerInsights.ENHANCED,
        )

    def _create_task_definition(
        self,
        spec: ResourceSpec,
        construct_id: str,
    ) -> ecs.FargateTaskDefinition:
        props = spec.properties
        task_definition = ecs.FargateTaskDefinition(
            self.scope,
            construct_id,
            memory_limit_mib=props["memory_limit_mib"],
            cpu=props["cpu"],
        )
        log_group = logs.LogGroup(
            self.scope,
            f"{construct_id}Logs",
            retention=LOG_RETENTION_DAYS,
            removal_policy=RemovalPolicy.DESTROY,
        )
        task_definition.add_container(
            props["container_name"],
            image=self._container_image(props["image"]),
            memory_limit_mib=props["memory_limit_mib"],
            environment=dict(props["environment"]),
            port_mappings=[ecs.PortMapping(container_port=props["container_port"])],
            logging=ecs.LogDrivers.aws_logs(stream_prefix=LOG_STREAM_PREFIX, log_group=log_group),
        )
        NagSuppressions.add_resource_suppressions(
            task_definition,
            [
                {
                    "id": "AwsSolutions-ECS2",
                    "reason": "The container reads PORT and NODE_ENV, which are not secrets.",
                },
                {
                    "id": "AwsSolutions-IAM5",
                    "reason": "ecr:GetAuthorizationToken is not resource-scoped.",
                },
            ],
            apply_to_children=True,
        )
        return task_definition

    def _create_service(self, spec: ResourceSpec, construct_id: str) -> ecs.FargateService:
        props = spec.properties
        cluster = self.construct(props["cluster"])
        task_definition = self.construct(props["task_definition"])
        # Immutable references: ingress on the service's groups comes only from
        # declared rules, never from target group attachment.
        security_groups = [
            ec2.SecurityGroup.from_security_group_id(
                self.scope,
                f"{construct_id}{self.construct_id(name)}",
                self._security_group(name).security_group_id,
                mutable=False,
            )
            for name in props["security_groups"]
        ]
        return ecs.FargateService(
            self.scope,
            construct_id,
            cluster=cluster,
            task_definition=task_definition,
            service_name=props["service_name"],
            desired_count=props["desired_count"],
            assign_public_ip=props["assign_public_ip"],
            vpc_subnets=ec2.SubnetSelection(subnet_group_name=props["tier"]),
            security_groups=security_groups,
        )

    def _create_load_balancer(self, spec: ResourceSpec, construct_id: str) -> Construct:
        props = spec.properties
        vpc = self._vpc(props["vpc"])
        internet_facing = props["scheme"] == "internet-facing"
        subnets = ec2.SubnetSelection(subnet_group_name=props["tier"])
        if props["layer"] == "application":
            groups = [self._security_group(name) for name in props["security_groups"]]
            balancer: Construct = elbv2.ApplicationLoadBalancer(
                self.scope,
                construct_id,
                vpc=vpc,
                internet_facing=internet_facing,
                vpc_subnets=subnets,
                security_group=groups[0] if groups else None,
                drop_invalid_header_fields=True,
            )
        else:
            balancer = elbv2.NetworkLoadBalancer(
                self.scope,
                construct_id,
                vpc=vpc,
                internet_facing=internet_facing,
                vpc_subnets=subnets,
                cross_zone_enabled=True,
            )
        NagSuppressions.add_resource_suppressions(
            balancer,
            [
                {
                    "id": "AwsSolutions-ELB2",
                    "reason": "Access logging needs a log bucket, which this environment does not provision.",
                },
            ],
        )
        return balancer

    def _create_target_group(self, spec: ResourceSpec, construct_id: str) -> Construct:
        props = spec.properties
        vpc = self._vpc(props["vpc"])
        health = props["health_check"]
        health_check = elbv2.HealthCheck(
            path=health["path"],
            port=str(health["port"]),
            protocol=_TARGET_PROTOCOLS[health["protocol"]],
            interval=Duration.seconds(health["interval_seconds"]),
            timeout=Duration.seconds(health["timeout_seconds"]),
            healthy_threshold_count=health["healthy_threshold"],
            unhealthy_threshold_count=health["unhealthy_threshold"],
        )
        if props["target_type"] == "alb":
            return elbv2.NetworkTargetGroup(
                self.scope,
                construct_id,
                vpc=vpc,
                port=props["port"],
                protocol=_TARGET_PROTOCOLS[props["protocol"]],
                target_type=elbv2.TargetType.ALB,
                targets=[
                    elbv2_targets.AlbListenerTarget(self.construct(target["listener"]))
                    for target in props["targets"]
                ],
                health_check=health_check,
            )
        return elbv2.ApplicationTargetGroup(
            self.scope,
            construct_id,
            vpc=vpc,
            port=props["port"],
            protocol=_APPLICATION_PROTOCOLS[props["protocol"]],
            target_type=elbv2.TargetType.IP,
            targets=[
                self.construct(target["service"]).load_balancer_target(
                    container_name=target["container_name"],
                    container_port=target["container_port"],
                )
                for target in props["targets"]
            ],
            health_check=health_check,
        )

    def _create_listener(self, spec: ResourceSpec, construct_id: str) -> Construct:
        props = spec.properties
        balancer = self.construct(props["balancer"])
        action = props["action"]
        if props["protocol"] == "TCP":
            return elbv2.NetworkListener(
                self.scope,
                construct_id,
                load_balancer=balancer,
                port=props["port"],
                protocol=elbv2.Protocol.TCP,
                default_action=elbv2.NetworkListenerAction.forward(
                    [self.construct(action["target_group"])],
                ),
            )

        if action["type"] == "redirect":
            default_action = elbv2.ListenerAction.redirect(
                protocol=action["protocol"],
                port=str(action["port"]),
                permanent=action["permanent"],
            )
        else:
            default_action = elbv2.ListenerAction.forward([self.construct(action["target_group"])])
        certificate = props.get("certificate")
        return elbv2.ApplicationListener(
            self.scope,
            construct_id,
            load_balancer=balancer,
            port=props["port"],
            protocol=_APPLICATION_PROTOCOLS[props["protocol"]],
            certificates=[elbv2.ListenerCertificate.from_arn(certificate)] if certificate else None,
            default_action=default_action,
            open=False,
        )

    # Lookups

    def _vpc(self, name: str) -> ec2.Vpc:
        return self.construct(name)

    def _security_group(self, name: str) -> ec2.SecurityGroup:
        return self.construct(name)

    def _container_image(self, image: str) -> ecs.ContainerImage:
        asset = self.image_assets.get(image)
        if asset is not None:
            return ecs.ContainerImage.from_docker_image_asset(asset)
        return ecs.ContainerImage.from_registry(image)

    @staticmethod
    def _attributes(construct: Construct) -> dict[str, Any]:
        if isinstance(construct, (elbv2.ApplicationLoadBalancer, elbv2.NetworkLoadBalancer)):
            return {
                "dns_name": construct.load_balancer_dns_name,
                "arn": construct.load_balancer_arn,
            }
        return {}
