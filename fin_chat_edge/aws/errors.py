"""Translation of botocore errors into provisioning errors."""

from __future__ import annotations

from botocore.exceptions import BotoCoreError, ClientError

from fin_chat_edge.core.errors import (
    DependencyUnavailableError,
    ProvisioningError,
    TransientProvisioningError,
)

RETRYABLE_ERROR_CODES = frozenset(
    {
        "ServiceUnavailable",
        "ThrottlingException",
        "Throttling",
        "RequestLimitExceeded",
        "InternalServerError",
        "InternalFailure",
    },
)


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def translate_client_error(
    error: ClientError | BotoCoreError,
    reference: str,
    action: str,
) -> ProvisioningError:
    """Map a boto3 failure on ``reference`` to the matching provisioning error.

    Throttling and service-side faults become transient and retryable;
    anything else means the referenced dependency is unusable.
    """
    if isinstance(error, ClientError):
        code = error_code(error)
        if code in RETRYABLE_ERROR_CODES:
            msg = f"Transient error during {action} for '{reference}': {code}"
            return TransientProvisioningError(msg)
        msg = f"{action} failed for '{reference}': {code or error!s}"
        return DependencyUnavailableError(msg, reference=reference)
    msg = f"{action} failed for '{reference}': {error!s}"
    return DependencyUnavailableError(msg, reference=reference)
