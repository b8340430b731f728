"""Entry point for the fin-chat edge service deployment.

This module synthesizes the edge service stack for one environment. The
topology itself is configured through ``FIN_CHAT_EDGE_*`` settings; this
module only resolves where the stack is deployed.

Environment Configuration Options:
    1. AWS Named Profile:
       FIN_CHAT_EDGE_AWS_PROFILE: Named profile from AWS credentials file

    2. Direct Environment Variables:
       CDK_DEFAULT_ACCOUNT: Target AWS account for deployment
       FIN_CHAT_EDGE_AWS_REGION: Target AWS region (defaults to ca-central-1)
"""

import os
from dataclasses import dataclass

import boto3
from aws_cdk import App, Environment

from fin_chat_edge.config import EdgeServiceSettings, get_settings
from fin_chat_edge.stacks import EdgeServiceStack, EdgeServiceStackProps
from fin_chat_edge.stacks.constants import APP_NAME, DEFAULT_TAGS


@dataclass(frozen=True)
class StackConfiguration:
    """Configuration settings for stack deployment.

    Attributes:
        app_name: Base name for the stack identifier.
        environment: Deployment environment name.
        aws_profile: Optional AWS credentials profile name.
        region: Region the stack is deployed to.
    """

    app_name: str = APP_NAME
    environment: str = "production"
    aws_profile: str | None = None
    region: str = "ca-central-1"

    @property
    def stack_name(self) -> str:
        """Generate stack name with environment suffix."""
        return f"{self.app_name}Stack-{self.environment}"

    @classmethod
    def from_settings(cls, settings: EdgeServiceSettings) -> "StackConfiguration":
        return cls(
            environment=settings.environment_name,
            aws_profile=settings.aws_profile,
            region=settings.aws_region,
        )


def create_deployment_environment(config: StackConfiguration) -> Environment:
    """Creates CDK Environment from configuration.

    Args:
        config: Stack configuration containing environment details.

    Returns:
        CDK Environment with account and region resolved.
    """
    if config.aws_profile:
        session = boto3.Session(profile_name=config.aws_profile, region_name=config.region)
        sts = session.client("sts")
        account = sts.get_caller_identity()["Account"]
        return Environment(account=account, region=config.region)

    return Environment(
        account=os.environ.get("CDK_DEFAULT_ACCOUNT"),
        region=config.region,
    )


def apply_context_overrides(app: App, settings: EdgeServiceSettings) -> EdgeServiceSettings:
    """Apply CDK context values (``cdk synth -c environment=staging``) over settings.

    Args:
        app: CDK app whose context is read.
        settings: Settings from the environment.

    Returns:
        The settings, with ``environment_name`` replaced when the context sets it.
    """
    environment = app.node.try_get_context("environment")
    if not environment:
        return settings
    return EdgeServiceSettings(**{**settings.model_dump(), "environment_name": environment})


def initialize_app(settings: EdgeServiceSettings | None = None, app: App | None = None) -> App:
    """Initializes and configures the CDK application.

    Args:
        settings: Topology settings; read from the environment when omitted.
        app: CDK app to add the stack to; a new one is created when omitted.

    Returns:
        Configured CDK App instance ready for synthesis.
    """
    if app is None:
        app = App()
    settings = apply_context_overrides(app, settings or get_settings())
    config = StackConfiguration.from_settings(settings)
    env = create_deployment_environment(config)

    EdgeServiceStack(
        app,
        config.stack_name,
        EdgeServiceStackProps(settings=settings),
        env=env,
        description="Fin-chat edge service: private compute behind a layered balancer chain",
        tags={**DEFAULT_TAGS, "Environment": config.environment},
    )

    return app


def main() -> None:
    """Main entry point for CDK application."""
    app = initialize_app()
    app.synth()


if __name__ == "__main__":
    main()
