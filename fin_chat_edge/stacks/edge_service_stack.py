"""Deployable stack for the fin-chat edge service.

The stack runs the provisioning orchestrator with a CDK driver, so the
synthesized template holds exactly the resources the topology model
declares and validates:

    - VPC with public and isolated subnet tiers across two zones
    - Security groups for the endpoints, the tasks and the internal balancer
    - Interface endpoints for the registry, logs and metrics, plus the
      storage gateway endpoint
    - ECS cluster running one Fargate service on the isolated tier
    - Internal application balancer terminating TLS
    - Internet-facing network balancer forwarding TCP/443 to it
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import cdk_nag
from aws_cdk import Annotations, Aspects, Stack, Tags
from aws_cdk import aws_ecr_assets as ecr_assets
from cdk_nag import NagSuppressions
from constructs import Construct

from fin_chat_edge.aws.certificates import AcmCertificateResolver, CertificateResolver
from fin_chat_edge.config.settings import EdgeServiceSettings
from fin_chat_edge.core.context import ProvisioningContext
from fin_chat_edge.provisioning.orchestrator import ProvisioningOrchestrator
from fin_chat_edge.provisioning.report import ProvisioningReport
from fin_chat_edge.provisioning.topology import TopologySpec

from .cdk_driver import CdkDriver
from .constants import DEFAULT_TAGS
from .outputs import OutputManager


@dataclass(frozen=True)
class EdgeServiceStackProps:
    """Configuration properties for the edge service stack.

    Attributes:
        settings: Validated topology settings.
        certificates: Certificate resolver; defaults to ACM in the settings region.
    """

    settings: EdgeServiceSettings
    certificates: CertificateResolver | None = None


class EdgeServiceStack(Stack):
    """Network topology and traffic path for the fin-chat service.

    Attributes:
        driver: CDK driver holding the rendered constructs.
        report: Report of the provisioning run that rendered them.
        image_reference: Image the service runs.
        output_manager: Publishes the run outputs.
        parameters: SSM parameter names keyed by output ID.
    """

    driver: CdkDriver
    report: ProvisioningReport
    image_reference: str
    output_manager: OutputManager
    parameters: dict[str, str]

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        props: EdgeServiceStackProps,
        **kwargs: Any,
    ) -> None:
        """Initialize the stack by provisioning the topology into it.

        Args:
            scope: CDK construct scope for resource creation.
            construct_id: Unique identifier for this stack.
            props: Stack configuration.
            **kwargs: Additional arguments passed to parent Stack.

        Raises:
            StepFailedError: If any provisioning step rejects the topology.
        """
        super().__init__(scope, construct_id, **kwargs)

        self._settings = props.settings
        self.output_manager = OutputManager(self, self.stack_name)
        self.parameters = {}

        image_assets = self._create_image_asset()
        topology = TopologySpec.from_settings(self._settings, image=self.image_reference)
        context = ProvisioningContext(
            environment_name=self._settings.environment_name,
            region=self._settings.aws_region,
            certificates=props.certificates or AcmCertificateResolver(self._settings.aws_region),
        )
        self.driver = CdkDriver(self, context.environment_name, image_assets=image_assets)

        # jsii calls must stay on one thread, so run every driver call inline.
        orchestrator = ProvisioningOrchestrator.from_settings(
            context,
            self.driver,
            self._settings,
            create_timeout_seconds=None,
            endpoint_workers=1,
        )
        self.report = orchestrator.run(topology)

        for warning in self.report.warnings:
            Annotations.of(self).add_warning(warning)
        self._create_outputs()
        self._apply_tags()
        self._configure_security_checks()

    def _create_image_asset(self) -> dict[str, ecr_assets.DockerImageAsset]:
        """Build the container image from source unless a reference is configured."""
        if self._settings.image:
            self.image_reference = self._settings.image
            return {}
        asset = ecr_assets.DockerImageAsset(
            self,
            "AppImage",
            directory=self._settings.image_directory,
            platform=ecr_assets.Platform.LINUX_AMD64,
        )
        self.image_reference = asset.image_uri
        return {asset.image_uri: asset}

    def _create_outputs(self) -> None:
        if self.report.outputs is not None:
            self.parameters = self.output_manager.publish(self.report.outputs)

    def _apply_tags(self) -> None:
        for key, value in DEFAULT_TAGS.items():
            Tags.of(self).add(key, value)
        Tags.of(self).add("Environment", self._settings.environment_name)

    def _configure_security_checks(self) -> None:
        """Run AWS Solutions checks over the stack.

        Resource-level suppressions are attached by the driver as it renders
        each construct; only stack-wide findings are suppressed here.
        """
        Aspects.of(self).add(cdk_nag.AwsSolutionsChecks())
        NagSuppressions.add_stack_suppressions(
            stack=self,
            suppressions=[
                {
                    "id": "AwsSolutions-IAM4",
                    "reason": "The task execution role uses the AWS managed ECS execution policy.",
                },
            ],
        )
