from __future__ import annotations

import json
import logging
from typing import Protocol

import redis

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when a message could not be handed to the bus."""


def record_channel(reference: str) -> str:
    return f"payment:{reference}"


def user_channel(user_id: int) -> str:
    return f"user:{user_id}:payments"


class Notifier(Protocol):
    def publish(self, channel: str, payload: dict) -> None: ...


class RedisNotifier:
    def __init__(self, url: str, client: redis.Redis | None = None):
        self._redis = client or redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
        )

    def publish(self, channel: str, payload: dict) -> None:
        message = json.dumps(payload)
        try:
            self._redis.publish(channel, message)
        except redis.RedisError as exc:
            raise NotificationError(f"Publish on {channel} failed: {exc}") from exc

    def close(self) -> None:
        self._redis.close()


class LogNotifier:
    """Stand-in for environments without a bus; messages only reach the log."""

    def publish(self, channel: str, payload: dict) -> None:
        logger.info("notify channel=%s payload=%s", channel, json.dumps(payload))

    def close(self) -> None:
        return None
