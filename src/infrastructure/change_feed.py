"""
Publishes committed ``ChangeEvent`` records to Redis pub/sub.

Channels are ``changes:{event_id}`` (or ``changes`` for rows with no event),
so a dashboard subscribes to exactly one party.  Delivery is best-effort:
a Redis outage is logged and never fails the write that produced the change.
"""

from __future__ import annotations

import json
import logging
from typing import Iterable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from src.domain.changes import ChangeEvent

logger = logging.getLogger(__name__)


async def publish_changes(
    client: aioredis.Redis, changes: Iterable[ChangeEvent]
) -> int:
    """Publish each change; returns how many were sent."""
    sent = 0
    for change in changes:
        try:
            await client.publish(change.channel, json.dumps(change.to_payload()))
            sent += 1
        except (RedisError, OSError):
            logger.warning(
                "Failed to publish %s %s/%s",
                change.kind.value,
                change.entity.value,
                change.entity_id,
                exc_info=True,
            )
    return sent
