"""Deployment constants for the fin-chat edge stack."""

from aws_cdk import aws_logs as logs

APP_NAME: str = "FinChatEdge"
LOG_RETENTION_DAYS: logs.RetentionDays = logs.RetentionDays.ONE_MONTH
LOG_STREAM_PREFIX: str = "fin-chat"

DEFAULT_TAGS: dict[str, str] = {
    "Application": APP_NAME,
    "ManagedBy": "AWS-CDK",
}
