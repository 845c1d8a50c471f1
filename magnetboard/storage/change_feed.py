import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import redis

from magnetboard.config.settings import get_settings

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    table: str  # "assignments" | "jobs" | "resources"
    type: ChangeType
    record: Dict[str, Any]
    version: int

    def to_json(self) -> str:
        return json.dumps(
            {"table": self.table, "type": self.type.value, "record": self.record, "version": self.version},
            default=str,
        )

    @classmethod
    def from_json(cls, payload: str) -> "ChangeEvent":
        data = json.loads(payload)
        return cls(table=data["table"], type=ChangeType(data["type"]), record=data["record"], version=int(data["version"]))


ChangeCallback = Callable[[ChangeEvent], None]


class LocalChangeFeed:
    """
    In-process fan-out of store change events.

    Stores publish from their worker threads, so callbacks must be safe to
    call off the event loop (SyncReconciler.enqueue only appends to a deque).
    """

    def __init__(self):
        self._subscribers: List[ChangeCallback] = []

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: ChangeEvent) -> None:
        for callback in list(self._subscribers):
            callback(event)


class RedisChangeFeed(LocalChangeFeed):
    """
    Change feed shared between processes over a redis pub/sub channel.

    publish() sends to redis only; local subscribers receive events (including
    this process's own echoes) when poll() drains the channel. The channel is
    subscribed on construction since redis drops messages nobody listens for.
    """

    def __init__(self, redis_url: Optional[str] = None, channel: Optional[str] = None, client=None):
        super().__init__()
        settings = get_settings()
        self.channel = channel or settings.change_channel
        self.redis_client = client or redis.from_url(redis_url or settings.redis_url, decode_responses=True)
        self._pubsub = None
        self._listen()

    def _listen(self) -> None:
        self._pubsub = self.redis_client.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(self.channel)
        logger.info(f"Subscribed to change channel {self.channel}")

    def publish(self, event: ChangeEvent) -> None:
        self.redis_client.publish(self.channel, event.to_json())

    def poll(self, max_messages: int = 100) -> int:
        """Dispatch pending channel messages to subscribers; returns how many were delivered."""
        if self._pubsub is None:
            self._listen()
        delivered = 0
        for _ in range(max_messages):
            message = self._pubsub.get_message()
            if message is None:
                break
            if message.get("type") != "message":
                continue
            try:
                event = ChangeEvent.from_json(message["data"])
            except (ValueError, KeyError) as exc:
                logger.warning(f"Dropping malformed change message: {exc}")
                continue
            super().publish(event)
            delivered += 1
        return delivered

    def health_check(self) -> bool:
        """Check Redis connection."""
        try:
            self.redis_client.ping()
            return True
        except redis.RedisError:
            return False

    def close(self) -> None:
        if self._pubsub is not None:
            self._pubsub.close()
            self._pubsub = None
