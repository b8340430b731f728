"""Publishes the outputs of a provisioning run from the edge service stack.

Each value is exported as a CloudFormation output and mirrored to an SSM
parameter under ``/infrastructure/<stack>/`` so operators and other stacks
can read the image reference and the external balancer address.
"""

from __future__ import annotations

from dataclasses import dataclass

from aws_cdk import CfnOutput
from aws_cdk import aws_ssm as ssm
from constructs import Construct

from fin_chat_edge.provisioning.report import ProvisioningOutputs


@dataclass(frozen=True)
class OutputField:
    """One published value.

    Attributes:
        output_id: Construct ID of the CloudFormation output.
        attribute: Attribute of ``ProvisioningOutputs`` holding the value.
        description: Output and parameter description.
    """

    output_id: str
    attribute: str
    description: str


OUTPUT_FIELDS: tuple[OutputField, ...] = (
    OutputField("ImageUri", "image_reference", "Container image the fin-chat service runs"),
    OutputField("ExternalAddress", "external_address", "DNS name of the internet-facing network balancer"),
    OutputField("ExternalPort", "external_port", "Port of the internet-facing network balancer"),
)


class OutputManager:
    """Exports run outputs for one stack.

    Attributes:
        scope: The construct the outputs and parameters are created in.
        stack_name: The name of the stack, used in export names and parameter paths.
    """

    def __init__(self, scope: Construct, stack_name: str) -> None:
        self.scope = scope
        self.stack_name = stack_name

    def export_name(self, output_id: str) -> str:
        return f"{self.stack_name}-{output_id}"

    def parameter_name(self, output_id: str) -> str:
        return f"/infrastructure/{self.stack_name}/{self.export_name(output_id)}".lower()

    def publish(self, outputs: ProvisioningOutputs) -> dict[str, str]:
        """Export every field of ``outputs``.

        Returns:
            Parameter names keyed by output ID.
        """
        parameters: dict[str, str] = {}
        for output in OUTPUT_FIELDS:
            value = str(getattr(outputs, output.attribute))
            CfnOutput(
                self.scope,
                output.output_id,
                value=value,
                export_name=self.export_name(output.output_id),
                description=output.description,
            )
            ssm.StringParameter(
                self.scope,
                f"{output.output_id}Parameter",
                parameter_name=self.parameter_name(output.output_id),
                string_value=value,
                description=output.description,
            )
            parameters[output.output_id] = self.parameter_name(output.output_id)
        return parameters
