"""Global pytest configuration and fixtures for topology and CDK testing."""

import os
import sys
from pathlib import Path

import pytest
from aws_cdk import App, Environment

from fin_chat_edge.aws.certificates import StaticCertificateResolver
from fin_chat_edge.config.settings import reset_settings
from fin_chat_edge.core.compute import TaskSpec
from fin_chat_edge.core.context import ProvisioningContext
from fin_chat_edge.core.fabric import NetworkFabric
from fin_chat_edge.core.reachability import ReachabilityPolicy
from fin_chat_edge.provisioning.drivers import SimulatedDriver
from fin_chat_edge.provisioning.retry import RetryPolicy
from fin_chat_edge.provisioning.topology import TopologySpec, default_tiers

# Add the project root to Python path so app.py is importable
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

TEST_REGION = "ca-central-1"
TEST_ZONES = ("ca-central-1a", "ca-central-1b")
TEST_CERTIFICATE_ARN = (
    "arn:aws:acm:ca-central-1:123456789012:certificate/5f2b7c1e-9d4a-4c1b-8e3f-1a2b3c4d5e6f"
)
TEST_IMAGE = "123456789012.dkr.ecr.ca-central-1.amazonaws.com/fin-chat:1.4.2"


@pytest.fixture(scope="session", autouse=True)
def configure_test_environment():
    """Configure environment variables for consistent testing."""
    test_env = {
        "AWS_DEFAULT_REGION": TEST_REGION,
        "AWS_REGION": TEST_REGION,
        "CDK_DEFAULT_REGION": TEST_REGION,
        "CDK_DEFAULT_ACCOUNT": "123456789012",
        "CDK_DISABLE_VERSION_CHECK": "true",
        # Prevent actual AWS API calls during testing
        "AWS_ACCESS_KEY_ID": "testing",
        "AWS_SECRET_ACCESS_KEY": "testing",
        "AWS_SECURITY_TOKEN": "testing",
        "AWS_SESSION_TOKEN": "testing",
    }

    for key, value in test_env.items():
        if key not in os.environ:
            os.environ[key] = value


@pytest.fixture(autouse=True)
def fresh_settings():
    """Clear the settings singleton around every test."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def cdk_app():
    """Create a fresh CDK App instance for each test."""
    return App()


@pytest.fixture(scope="session")
def aws_environment():
    """Provide AWS environment configuration for testing."""
    return Environment(
        account=os.environ.get("CDK_DEFAULT_ACCOUNT", "123456789012"),
        region=os.environ.get("CDK_DEFAULT_REGION", TEST_REGION),
    )


@pytest.fixture
def certificate_arn():
    return TEST_CERTIFICATE_ARN


@pytest.fixture
def image():
    return TEST_IMAGE


@pytest.fixture
def zones():
    return TEST_ZONES


@pytest.fixture
def certificates():
    """Certificate store holding only the test certificate."""
    return StaticCertificateResolver([TEST_CERTIFICATE_ARN])


@pytest.fixture
def context(certificates):
    """Provisioning context for a 'test' environment."""
    return ProvisioningContext(
        environment_name="test",
        region=TEST_REGION,
        certificates=certificates,
    )


@pytest.fixture
def fabric(context):
    """Two-zone fabric with the default public and isolated tiers."""
    return NetworkFabric(context).create_fabric(TEST_ZONES, default_tiers())


@pytest.fixture
def policy(context, fabric):
    return ReachabilityPolicy(context, fabric)


@pytest.fixture
def task_spec():
    return TaskSpec(
        image=TEST_IMAGE,
        memory_limit_mib=512,
        environment={"PORT": "3000", "NODE_ENV": "production"},
        container_port=3000,
    )


@pytest.fixture
def topology(task_spec):
    """The production-shaped topology used by orchestrator tests."""
    return TopologySpec(
        zones=TEST_ZONES,
        task_spec=task_spec,
        certificate_ref=TEST_CERTIFICATE_ARN,
    )


@pytest.fixture
def driver():
    return SimulatedDriver(region=TEST_REGION)


@pytest.fixture
def fast_retry():
    """Retry policy without backoff delays."""
    return RetryPolicy(max_attempts=3, base_delay_seconds=0.0, max_delay_seconds=0.0, jitter=0.0)


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: mark test as exercising real timeouts",
    )
