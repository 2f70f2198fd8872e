"""
Recognition events and the subscription interface that delivers them.

Subscribers are called synchronously, in registration order. A subscriber
that raises is logged and skipped; delivery to the others continues.
"""

import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecognitionEvent:
    pattern_kind: str          # "enemy", "strategy", "level", "rule"
    pattern_id: str
    description: str
    confidence: float
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


Subscriber = Callable[[RecognitionEvent], None]


class EventBus:
    def __init__(self):
        self._subscribers: List[Tuple[int, Subscriber]] = []
        self._tokens = itertools.count(1)
        self._lock = threading.Lock()
        self.published = 0
        self.failures = 0

    def subscribe(self, callback: Subscriber) -> int:
        """Register a callback; returns a token for unsubscribe()"""
        with self._lock:
            for token, existing in self._subscribers:
                if existing is callback:
                    return token
            token = next(self._tokens)
            self._subscribers.append((token, callback))
            return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            before = len(self._subscribers)
            self._subscribers = [(t, cb) for t, cb in self._subscribers if t != token]
            return len(self._subscribers) != before

    def publish(self, event: RecognitionEvent) -> int:
        """Deliver to every subscriber; returns how many handled it without error"""
        with self._lock:
            subscribers = list(self._subscribers)
        self.published += 1

        delivered = 0
        for token, callback in subscribers:
            try:
                callback(event)
                delivered += 1
            except Exception:
                self.failures += 1
                logger.exception(f"Error in pattern recognition subscriber {token}")
        return delivered

    def clear(self):
        with self._lock:
            self._subscribers.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)
