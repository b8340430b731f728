"""Availability zone lookups.

Zone names such as ``ca-central-1a`` map to different physical zones in
different accounts; zone IDs such as ``cac1-az1`` do not. Resolving IDs to
the account's names keeps a topology pinned to the same physical zones.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError

from fin_chat_edge.core.errors import DependencyUnavailableError

from .errors import translate_client_error

logger = Logger(service="fin-chat-edge")


def resolve_zone_ids(
    zone_ids: Sequence[str],
    region: str,
    client: Any = None,
) -> list[str]:
    """Translate zone IDs into this account's zone names.

    Args:
        zone_ids: Zone IDs in the desired order.
        region: Region to query.
        client: Optional EC2 client.

    Returns:
        Zone names in the same order as ``zone_ids``.

    Raises:
        DependencyUnavailableError: If the lookup fails or an ID is unknown
            or not available in the region.
    """
    ec2 = client or boto3.client("ec2", region_name=region)
    try:
        response = ec2.describe_availability_zones(ZoneIds=list(zone_ids))
    except (ClientError, BotoCoreError) as e:
        raise translate_client_error(e, ",".join(zone_ids), "describe_availability_zones") from e

    by_id = {
        zone["ZoneId"]: zone["ZoneName"]
        for zone in response.get("AvailabilityZones", [])
        if zone.get("State") == "available"
    }
    missing = [zone_id for zone_id in zone_ids if zone_id not in by_id]
    if missing:
        msg = f"Availability zones not available in {region}: {missing}"
        raise DependencyUnavailableError(msg, reference=",".join(missing))

    names = [by_id[zone_id] for zone_id in zone_ids]
    logger.info("Resolved availability zones", extra={"zone_ids": list(zone_ids), "zones": names})
    return names
