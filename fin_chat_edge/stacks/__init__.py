from .cdk_driver import CdkDriver
from .edge_service_stack import EdgeServiceStack, EdgeServiceStackProps
from .outputs import OutputManager

__all__ = ["CdkDriver", "EdgeServiceStack", "EdgeServiceStackProps", "OutputManager"]
