from .drivers import ResourceDriver, SimulatedDriver
from .orchestrator import STEP_NAMES, ProvisioningOrchestrator
from .report import ProvisioningOutputs, ProvisioningReport, StepReport, StepStatus
from .retry import RetryPolicy, call_with_retry
from .topology import TopologySpec, default_tiers

__all__ = [
    "STEP_NAMES",
    "ProvisioningOrchestrator",
    "ProvisioningOutputs",
    "ProvisioningReport",
    "ResourceDriver",
    "RetryPolicy",
    "SimulatedDriver",
    "StepReport",
    "StepStatus",
    "TopologySpec",
    "call_with_retry",
    "default_tiers",
]
