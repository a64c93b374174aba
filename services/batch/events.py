# services/batch/events.py
from __future__ import annotations

import json
import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Protocol, Tuple

from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

BATCH_TOPIC = "batch_processing"


class EventBus(Protocol):
    def publish(self, topic: str, message: Dict[str, Any]) -> None: ...


class RedisEventBus:
    """
    Redis pub/sub notifications. Observability only: publish never raises and
    never retries, so a missing subscriber or broker outage cannot affect entry state.
    """

    def __init__(
        self,
        url: str,
        *,
        socket_timeout_s: float = 1.0,
        client: Optional[Redis] = None,
    ) -> None:
        self._client = client or Redis.from_url(
            url,
            socket_connect_timeout=socket_timeout_s,
            socket_timeout=socket_timeout_s,
            decode_responses=True,
            encoding="utf-8",
        )

    def publish(self, topic: str, message: Dict[str, Any]) -> None:
        try:
            self._client.publish(topic, json.dumps(message, default=str))
        except (RedisError, OSError, TypeError, ValueError) as e:
            logger.warning("Event publish to %s dropped: %s", topic, e)


class InMemoryEventBus:
    """
    Keeps the most recent events in process; used by tests and the thread-pool
    runtime. Older events fall off once maxlen is reached.
    """

    def __init__(self, maxlen: int = 1000) -> None:
        self._lock = threading.Lock()
        self.events: Deque[Tuple[str, Dict[str, Any]]] = deque(maxlen=maxlen)

    def publish(self, topic: str, message: Dict[str, Any]) -> None:
        with self._lock:
            self.events.append((topic, dict(message)))

    def for_topic(self, topic: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [m for t, m in self.events if t == topic]
