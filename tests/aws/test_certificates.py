"""Tests for certificate resolution against ACM."""

from unittest.mock import MagicMock

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from fin_chat_edge.aws.certificates import AcmCertificateResolver, StaticCertificateResolver
from fin_chat_edge.core.errors import DependencyUnavailableError, TransientProvisioningError


def _client_error(code, operation="DescribeCertificate"):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


@pytest.fixture
def acm_client():
    return MagicMock()


class TestAcmCertificateResolver:
    def test_issued_certificate_resolves(self, acm_client, certificate_arn):
        acm_client.describe_certificate.return_value = {
            "Certificate": {
                "CertificateArn": certificate_arn,
                "DomainName": "chat.example.com",
                "Status": "ISSUED",
            },
        }
        resolver = AcmCertificateResolver("ca-central-1", client=acm_client)

        assert resolver.resolve(certificate_arn) == certificate_arn
        acm_client.describe_certificate.assert_called_once_with(CertificateArn=certificate_arn)

    @pytest.mark.parametrize("status", ["PENDING_VALIDATION", "EXPIRED", "REVOKED"])
    def test_unusable_certificate_is_unavailable(self, acm_client, certificate_arn, status):
        acm_client.describe_certificate.return_value = {
            "Certificate": {"CertificateArn": certificate_arn, "Status": status},
        }
        resolver = AcmCertificateResolver("ca-central-1", client=acm_client)

        with pytest.raises(DependencyUnavailableError, match=f"is {status}") as exc_info:
            resolver.resolve(certificate_arn)
        assert exc_info.value.reference == certificate_arn

    def test_access_denied_is_unavailable(self, acm_client, certificate_arn):
        acm_client.describe_certificate.side_effect = _client_error("AccessDeniedException")
        resolver = AcmCertificateResolver("ca-central-1", client=acm_client)

        with pytest.raises(DependencyUnavailableError, match="AccessDeniedException"):
            resolver.resolve(certificate_arn)

    def test_throttling_is_transient(self, acm_client, certificate_arn):
        acm_client.describe_certificate.side_effect = _client_error("ThrottlingException")
        resolver = AcmCertificateResolver("ca-central-1", client=acm_client)

        with pytest.raises(TransientProvisioningError):
            resolver.resolve(certificate_arn)

    def test_empty_reference_is_unavailable(self, acm_client):
        resolver = AcmCertificateResolver("ca-central-1", client=acm_client)
        with pytest.raises(DependencyUnavailableError, match="No certificate reference"):
            resolver.resolve("")
        acm_client.describe_certificate.assert_not_called()

    @mock_aws
    def test_missing_certificate_in_account_is_unavailable(self, certificate_arn):
        resolver = AcmCertificateResolver("ca-central-1", client=boto3.client("acm", region_name="ca-central-1"))
        with pytest.raises(DependencyUnavailableError) as exc_info:
            resolver.resolve(certificate_arn)
        assert exc_info.value.reference == certificate_arn


class TestStaticCertificateResolver:
    def test_known_reference_resolves(self, certificate_arn):
        assert StaticCertificateResolver([certificate_arn]).resolve(certificate_arn) == certificate_arn

    def test_unknown_reference_is_unavailable(self):
        with pytest.raises(DependencyUnavailableError, match="does not exist"):
            StaticCertificateResolver().resolve("arn:aws:acm:ca-central-1:123456789012:certificate/none")
