from __future__ import annotations

import json
from typing import Any, Optional, Sequence

import redis

from resocache.settings import AppConfig, get_config


class RedisQueueTransport:
    """Queue transport backed by a Redis list; consumers BLPOP the envelopes."""

    def __init__(self, client: "redis.Redis", queue_name: str) -> None:
        self.client = client
        self.queue_name = queue_name

    @classmethod
    def from_config(cls, config: Optional[AppConfig] = None) -> "RedisQueueTransport":
        resolved = config or get_config()
        return cls(redis.Redis.from_url(resolved.queue.redis_url), resolved.queue.queue_name)

    def send_batch(self, envelopes: Sequence[dict[str, Any]]) -> list[bool]:
        # One pipelined round-trip; each RPUSH gets its own reply, so rejections are per entry.
        pipe = self.client.pipeline(transaction=False)
        for envelope in envelopes:
            pipe.rpush(self.queue_name, json.dumps(envelope, separators=(",", ":")))
        replies = pipe.execute(raise_on_error=False)
        return [not isinstance(reply, Exception) for reply in replies]
