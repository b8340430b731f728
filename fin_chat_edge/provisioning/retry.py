"""Exponential backoff with jitter for transient provisioning failures."""

from __future__ import annotations

import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from aws_lambda_powertools import Logger

from fin_chat_edge.config.settings import EdgeServiceSettings
from fin_chat_edge.core.errors import (
    ConfigurationError,
    RetriesExhaustedError,
    TransientProvisioningError,
)

logger = Logger(service="fin-chat-edge")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff curve.

    Attributes:
        max_attempts: Total attempts including the first one.
        base_delay_seconds: Delay before the second attempt.
        max_delay_seconds: Ceiling for any single delay.
        jitter: Fraction of the delay randomized either way.
    """

    max_attempts: int = 5
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            msg = f"max_attempts must be at least 1, got {self.max_attempts}"
            raise ConfigurationError(msg)

    @classmethod
    def from_settings(cls, settings: EdgeServiceSettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            base_delay_seconds=settings.retry_base_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
        )

    def delay(self, retry_count: int) -> float:
        delay = min((2**retry_count) * self.base_delay_seconds, self.max_delay_seconds)
        spread = self.jitter * delay
        return max(0.0, delay + random.uniform(-spread, spread))


def call_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    description: str,
    should_retry: Callable[[], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation``, retrying transient failures with backoff.

    Args:
        operation: Zero-argument callable to run.
        policy: Attempt budget and backoff curve.
        description: Human-readable name of the operation, for logs.
        should_retry: Consulted before each retry; a False answer re-raises
            the transient error instead of retrying.
        sleep: Sleep function, replaceable in tests.

    Returns:
        Whatever ``operation`` returns.

    Raises:
        RetriesExhaustedError: If every attempt failed transiently.
        TransientProvisioningError: If ``should_retry`` vetoed a retry.
    """
    retry_count = 0
    last_exception: TransientProvisioningError | None = None
    while retry_count < policy.max_attempts:
        try:
            return operation()
        except TransientProvisioningError as e:
            last_exception = e
            if retry_count >= policy.max_attempts - 1:
                break
            if should_retry is not None and not should_retry():
                logger.warning(
                    "Transient failure not retried, partial resource may exist",
                    extra={"operation": description, "error": str(e)},
                )
                raise
            sleep_time = policy.delay(retry_count)
            logger.warning(
                f"Transient failure, retrying in {sleep_time:.2f}s",
                extra={
                    "operation": description,
                    "retry_count": retry_count + 1,
                    "max_attempts": policy.max_attempts,
                    "error": str(e),
                },
            )
            sleep(sleep_time)
            retry_count += 1

    logger.error(
        "Exhausted retries",
        extra={"operation": description, "attempts": policy.max_attempts},
    )
    msg = f"{description} failed after {policy.max_attempts} attempts: {last_exception!s}"
    raise RetriesExhaustedError(msg, attempts=policy.max_attempts) from last_exception
