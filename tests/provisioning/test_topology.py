"""Tests for building the orchestrator input from settings."""

from unittest.mock import MagicMock

import pytest

from fin_chat_edge.config.settings import EdgeServiceSettings
from fin_chat_edge.core.endpoints import EndpointService
from fin_chat_edge.core.errors import ConfigurationError
from fin_chat_edge.provisioning.topology import TopologySpec


@pytest.fixture
def settings(image, certificate_arn):
    return EdgeServiceSettings(environment_name="test", image=image, certificate_arn=certificate_arn)


def test_defaults_reproduce_production_topology(settings, image, certificate_arn):
    topology = TopologySpec.from_settings(settings)

    assert topology.zones == ("ca-central-1a", "ca-central-1b")
    assert topology.public_tier == "Public"
    assert topology.isolated_tier == "Private"
    assert topology.certificate_ref == certificate_arn
    assert topology.replica_count == 1
    assert topology.task_spec.image == image
    assert topology.task_spec.memory_limit_mib == 512
    assert dict(topology.task_spec.environment) == {"PORT": "3000", "NODE_ENV": "production"}
    assert topology.health_check.port == 3000
    assert topology.endpoint_services == tuple(EndpointService)
    assert topology.endpoint_access_from_compute is True


def test_image_argument_overrides_settings(settings):
    topology = TopologySpec.from_settings(settings, image="registry.local/fin-chat@sha256:abc")
    assert topology.task_spec.image == "registry.local/fin-chat@sha256:abc"


def test_missing_image_is_rejected(certificate_arn):
    settings = EdgeServiceSettings(certificate_arn=certificate_arn)
    with pytest.raises(ConfigurationError, match="No container image"):
        TopologySpec.from_settings(settings)


def test_missing_certificate_is_rejected(image):
    settings = EdgeServiceSettings(image=image)
    with pytest.raises(ConfigurationError, match="No certificate"):
        TopologySpec.from_settings(settings)


def test_zone_ids_are_resolved(image, certificate_arn):
    settings = EdgeServiceSettings(
        image=image,
        certificate_arn=certificate_arn,
        availability_zone_ids=["cac1-az1", "cac1-az2"],
    )
    resolver = MagicMock(return_value=["ca-central-1b", "ca-central-1a"])

    topology = TopologySpec.from_settings(settings, zone_resolver=resolver)

    resolver.assert_called_once_with(["cac1-az1", "cac1-az2"], "ca-central-1")
    assert topology.zones == ("ca-central-1b", "ca-central-1a")


def test_topology_without_isolated_tier_fails_lookup(task_spec, certificate_arn, zones):
    topology = TopologySpec(zones=zones, task_spec=task_spec, certificate_ref=certificate_arn, tiers=())
    with pytest.raises(ConfigurationError, match="no isolated subnet tier"):
        _ = topology.isolated_tier
