"""
Observation Memory - The bounded, short-term record of what was seen

Every processed frame becomes one Observation:
- the elements the detector found on screen
- the flat game-state map derived from them
- a snapshot of every tracked entity, grouped by entity type

The store is a FIFO ring. Capacity is a soft cap: writes are never rejected,
the oldest observation is simply dropped. Readers take a snapshot and
iterate it without holding the lock.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Mapping, Optional, Tuple

from .values import Rect, ValueMap


# Numeric state fields that describe the game's "shape" at a moment in time.
# Anything else in the state map is context, not a feature.
FEATURE_KEYS = ('score', 'level', 'lives', 'health', 'element_count')
FEATURE_PREFIX = 'game'


@dataclass(frozen=True)
class DetectedElement:
    """One on-screen element as reported by the external detector"""
    element_id: str
    category: str
    bounds: Rect
    attributes: ValueMap = field(default_factory=ValueMap)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'DetectedElement':
        bounds = Rect.from_any(data.get('bounds')) or Rect(0.0, 0.0, 0.0, 0.0)
        return cls(
            element_id=str(data.get('id') or data.get('element_id') or ''),
            category=str(data.get('category') or data.get('type') or 'unknown'),
            bounds=bounds,
            attributes=ValueMap.from_raw(data.get('attributes')),
        )

    @classmethod
    def coerce(cls, item: Any) -> Optional['DetectedElement']:
        if isinstance(item, DetectedElement):
            return item
        if isinstance(item, Mapping):
            return cls.from_dict(item)
        return None


@dataclass(frozen=True)
class TrackingSnapshot:
    """Where one tracked entity was, and how healthy it looked, at a given time"""
    entity_id: str
    entity_type: str
    position: Rect
    health: float = 1.0
    attributes: ValueMap = field(default_factory=ValueMap)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entity_id': self.entity_id,
            'entity_type': self.entity_type,
            'position': self.position.to_list(),
            'health': self.health,
            'attributes': self.attributes.to_raw(),
            'timestamp': self.timestamp,
        }


@dataclass(frozen=True)
class Observation:
    """A single timestamped frame of game state"""
    timestamp: float
    elements: Tuple[DetectedElement, ...] = ()
    game_state: ValueMap = field(default_factory=ValueMap)
    entities: Mapping[str, Tuple[TrackingSnapshot, ...]] = field(default_factory=dict)

    @property
    def element_count(self) -> int:
        return len(self.elements)

    def features(self) -> ValueMap:
        """State map plus derived element count"""
        return self.game_state.with_items(element_count=self.element_count)

    def simplified_features(self) -> ValueMap:
        """Only the fields that characterise progress through the game"""
        features = self.features()
        return ValueMap({
            k: v for k, v in features.items()
            if k in FEATURE_KEYS or k.startswith(FEATURE_PREFIX)
        })

    def snapshot_of(self, entity_id: str) -> Optional[TrackingSnapshot]:
        for snapshots in self.entities.values():
            for snapshot in snapshots:
                if snapshot.entity_id == entity_id:
                    return snapshot
        return None

    def has_entity(self, entity_id: str) -> bool:
        return self.snapshot_of(entity_id) is not None


class ObservationStore:
    """
    Bounded FIFO history of observations, safe to share between the
    frame-ingestion thread and the periodic analyzer.
    """

    def __init__(self, capacity: int = 1000):
        self.capacity = capacity
        self._buffer: Deque[Observation] = deque()
        self._lock = threading.Lock()
        self.total_recorded = 0

    def record(self, observation: Observation):
        with self._lock:
            self._buffer.append(observation)
            while len(self._buffer) > self.capacity:
                self._buffer.popleft()
            self.total_recorded += 1

    def snapshot(self) -> Tuple[Observation, ...]:
        """Copy of the buffer, safe to iterate without the lock"""
        with self._lock:
            return tuple(self._buffer)

    def latest(self) -> Optional[Observation]:
        with self._lock:
            return self._buffer[-1] if self._buffer else None

    def observations_of(self, entity_id: str) -> List[Observation]:
        """All stored observations that include the given entity, oldest first"""
        return [obs for obs in self.snapshot() if obs.has_entity(entity_id)]

    def clear(self):
        with self._lock:
            self._buffer.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            span = (self._buffer[-1].timestamp - self._buffer[0].timestamp) if self._buffer else 0.0
            return {
                'size': len(self._buffer),
                'capacity': self.capacity,
                'total_recorded': self.total_recorded,
                'time_span_s': span,
            }
