"""
Live notification channel: Redis PUBLISH to "customer:{id}" / "model:{id}".
The session layer subscribes connected clients to their own channel.
"""
import json
import logging

import redis

from app.core.config import settings

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class RedisPublisher:
    def __init__(self, client: redis.Redis | None = None) -> None:
        self._client = client

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        return self._client

    def publish(self, channel: str, message: dict) -> int:
        """Publish one event; returns the number of live subscribers that received it."""
        body = json.dumps({"schema_version": SCHEMA_VERSION, **message}, ensure_ascii=False, default=str)
        receivers = self.client.publish(channel, body)
        logger.debug("notification_published", extra={"kind": message.get("kind")})
        return receivers
