"""Certificate store lookups for the internal HTTPS listener.

Certificates are referenced, never created: issuance and rotation happen
outside this package. Resolution only proves the reference exists, is
accessible and is usable for TLS termination.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Protocol

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError

from fin_chat_edge.core.errors import DependencyUnavailableError

from .errors import translate_client_error

logger = Logger(service="fin-chat-edge")

USABLE_STATUSES = frozenset({"ISSUED"})


class CertificateResolver(Protocol):
    def resolve(self, certificate_ref: str) -> str:
        """Return the certificate identity or raise DependencyUnavailableError."""
        ...


class AcmCertificateResolver:
    """Resolves certificate ARNs through ACM ``describe_certificate``."""

    def __init__(self, region: str, client: Any = None) -> None:
        self.region = region
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("acm", region_name=self.region)
        return self._client

    def resolve(self, certificate_ref: str) -> str:
        """Validate ``certificate_ref`` in ACM.

        Args:
            certificate_ref: Certificate ARN.

        Returns:
            The certificate ARN as recorded by ACM.

        Raises:
            DependencyUnavailableError: If the certificate is missing,
                inaccessible or not issued.
            TransientProvisioningError: On ACM throttling.
        """
        if not certificate_ref:
            msg = "No certificate reference configured for the HTTPS listener"
            raise DependencyUnavailableError(msg, reference=certificate_ref)
        try:
            response = self.client.describe_certificate(CertificateArn=certificate_ref)
        except (ClientError, BotoCoreError) as e:
            logger.error(
                "Certificate lookup failed",
                extra={"certificate_arn": certificate_ref, "error": str(e)},
            )
            raise translate_client_error(e, certificate_ref, "describe_certificate") from e

        certificate = response.get("Certificate", {})
        status = certificate.get("Status", "UNKNOWN")
        if status not in USABLE_STATUSES:
            msg = f"Certificate '{certificate_ref}' is {status}, expected ISSUED"
            raise DependencyUnavailableError(msg, reference=certificate_ref)
        logger.info(
            "Resolved certificate",
            extra={"certificate_arn": certificate_ref, "domain": certificate.get("DomainName")},
        )
        return certificate.get("CertificateArn", certificate_ref)


class StaticCertificateResolver:
    """Resolver backed by a fixed set of known references."""

    def __init__(self, known: Iterable[str] = ()) -> None:
        self.known = set(known)

    def resolve(self, certificate_ref: str) -> str:
        if certificate_ref not in self.known:
            msg = f"Certificate '{certificate_ref}' does not exist or is not accessible"
            raise DependencyUnavailableError(msg, reference=certificate_ref)
        return certificate_ref
