"""
Entity Tracker - Follows adversaries across frames and learns how they move

Per frame:
1. Pick out elements that look like adversaries (enemy/opponent/monster/boss)
2. Snapshot each one (position, health, attributes) under a stable id
3. Rebuild that entity's movement as direction-classified steps
4. Re-detect a known EnemyPattern for its type, or record a new one

For every recognised pattern a plain-language counter strategy is produced
from the directions the enemy favours.

The periodic analyzer also summarises levels (what each screen type contains)
and player strategies (action sequences that preceded a score gain).
"""

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .events import EventBus, RecognitionEvent
from .memory import DetectedElement, Observation, TrackingSnapshot
from .pattern import (
    EnemyPattern, LevelPattern, PatternStep, StrategyPattern, steps_match,
)
from .values import ValueMap

logger = logging.getLogger(__name__)


ADVERSARY_MARKERS = ('enemy', 'opponent', 'monster', 'boss')
RESOURCE_MARKERS = ('gold', 'coin', 'gem', 'resource', 'energy', 'mana', 'ammo', 'wood', 'food')

OPPOSITE_POSITION = {
    'left': "Position to the right",
    'right': "Position to the left",
    'up': "Position below",
    'down': "Position above",
}


@dataclass
class GameContext:
    game_type: str
    game_mode: str
    screen_type: str
    game_state: ValueMap = field(default_factory=ValueMap)

    @classmethod
    def from_observations(cls, observations: Sequence[Observation], game_type: str) -> 'GameContext':
        if not observations:
            return cls(game_type, "unknown", "unknown")
        state = observations[-1].game_state
        return cls(
            game_type=game_type,
            game_mode=state.text('gameMode', 'unknown'),
            screen_type=state.text('screenType', 'unknown'),
            game_state=state,
        )


def is_adversary(element: DetectedElement) -> bool:
    category = element.category.lower()
    return any(marker in category for marker in ADVERSARY_MARKERS)


def classify_enemy_type(element: DetectedElement) -> str:
    explicit = element.attributes.get('enemyType')
    if explicit is not None:
        return str(explicit)

    category = element.category.lower()
    if 'boss' in category:
        return 'boss'
    if 'ranged' in category:
        return 'ranged_enemy'
    if 'melee' in category:
        return 'melee_enemy'
    if 'flying' in category:
        return 'flying_enemy'
    return 'generic_enemy'


def classify_direction(dx: float, dy: float) -> str:
    """Dominant axis of displacement wins; screen y grows downwards"""
    if dx == 0 and dy == 0:
        return 'still'
    if abs(dx) > abs(dy):
        return 'right' if dx > 0 else 'left'
    return 'down' if dy > 0 else 'up'


def counter_strategy(pattern: EnemyPattern) -> str:
    """Suggest positioning opposite the enemy's favoured direction, plus timing hints"""
    tally = Counter(
        step.direction for step in pattern.steps
        if step.direction in OPPOSITE_POSITION
    )

    advice = "Counter: Stay mobile and observe pattern. "
    if tally:
        ranked = tally.most_common()
        top_direction, top_count = ranked[0]
        if len(ranked) == 1 or ranked[1][1] < top_count:
            advice = f"Counter: {OPPOSITE_POSITION[top_direction]}. "

    if pattern.duration_ms > 0:
        advice += f"Pattern repeats every ~{pattern.duration_ms // 1000} seconds. "

    advice += "Attack during direction changes for best results."
    return advice


class EntityTracker:
    """
    Keeps the latest snapshot per entity id and the enemy/strategy/level
    pattern tables. All mutation goes through one lock.
    """

    def __init__(self, events: Optional[EventBus] = None,
                 step_gap_ms: int = 1000,
                 min_observations: int = 3,
                 min_steps_to_create: int = 3,
                 min_steps_to_match: int = 2,
                 initial_confidence: float = 0.6,
                 strategy_window: int = 3,
                 **tolerances):
        self.events = events if events is not None else EventBus()
        self.step_gap_ms = step_gap_ms
        self.min_observations = min_observations
        self.min_steps_to_create = min_steps_to_create
        self.min_steps_to_match = min_steps_to_match
        self.initial_confidence = initial_confidence
        self.strategy_window = strategy_window
        self.tolerances = tolerances

        self.tracked: Dict[str, TrackingSnapshot] = {}
        self.enemy_patterns: Dict[str, EnemyPattern] = {}
        self.strategy_patterns: Dict[str, StrategyPattern] = {}
        self.level_patterns: Dict[str, LevelPattern] = {}
        self._lock = threading.RLock()

    # ── Per-frame extraction ─────────────────────────────────────────────

    def extract(self, elements: Iterable[DetectedElement], timestamp: float) -> Dict[str, Tuple[TrackingSnapshot, ...]]:
        """Snapshot every adversary in the frame, grouped by enemy type"""
        grouped: Dict[str, List[TrackingSnapshot]] = {}

        for element in elements:
            if not is_adversary(element):
                continue

            entity_id = element.element_id
            if not entity_id:
                entity_id = f"enemy_{int(element.bounds.center_x)}_{int(element.bounds.center_y)}"

            enemy_type = classify_enemy_type(element)
            snapshot = TrackingSnapshot(
                entity_id=entity_id,
                entity_type=enemy_type,
                position=element.bounds,
                health=element.attributes.number('health', 1.0),
                attributes=element.attributes,
                timestamp=timestamp,
            )
            grouped.setdefault(enemy_type, []).append(snapshot)

            with self._lock:
                self.tracked[entity_id] = snapshot

        return {k: tuple(v) for k, v in grouped.items()}

    def movement_steps(self, entity_id: str, observations: Sequence[Observation]) -> List[PatternStep]:
        """
        Direction-classified movement steps for one entity.

        A step is only emitted when the direction changes or more than
        step_gap_ms passed since the previous sighting.
        """
        steps: List[PatternStep] = []
        last_position = None
        last_timestamp = 0.0
        last_direction = None

        for obs in observations:
            snapshot = obs.snapshot_of(entity_id)
            if snapshot is None:
                continue

            if last_position is None:
                last_position = snapshot.position
                last_timestamp = obs.timestamp
                continue

            dx = snapshot.position.center_x - last_position.center_x
            dy = snapshot.position.center_y - last_position.center_y
            duration_ms = int(round((obs.timestamp - last_timestamp) * 1000))
            direction = classify_direction(dx, dy)

            if last_direction is None or direction != last_direction or duration_ms > self.step_gap_ms:
                distance = (dx * dx + dy * dy) ** 0.5
                speed = distance / duration_ms if duration_ms > 0 else 0.0
                steps.append(PatternStep(
                    action_type='move',
                    parameters={'direction': direction, 'speed': speed},
                    duration_ms=duration_ms,
                ))
                last_direction = direction

            last_position = snapshot.position
            last_timestamp = obs.timestamp

        return steps

    def check(self, snapshot: TrackingSnapshot, observations: Sequence[Observation]) -> Optional[EnemyPattern]:
        """Match or create an enemy pattern for one entity; returns the pattern if any"""
        relevant = [obs for obs in observations if obs.has_entity(snapshot.entity_id)]
        if len(relevant) < self.min_observations:
            return None

        steps = self.movement_steps(snapshot.entity_id, relevant)
        if len(steps) < self.min_steps_to_match:
            return None

        duration_ms = int(round((relevant[-1].timestamp - relevant[0].timestamp) * 1000))

        with self._lock:
            for pattern in self.enemy_patterns.values():
                if pattern.enemy_type == snapshot.entity_type and steps_match(pattern.steps, steps, **self.tolerances):
                    pattern.record_match(relevant[-1].timestamp)
                    self._notify(pattern, snapshot)
                    return pattern

            if len(steps) < self.min_steps_to_create:
                return None

            pattern = EnemyPattern.create(
                steps,
                enemy_type=snapshot.entity_type,
                duration_ms=duration_ms,
                consistency=self.initial_confidence,
            )
            if pattern.id in self.enemy_patterns:
                return self.enemy_patterns[pattern.id]
            self.enemy_patterns[pattern.id] = pattern

        logger.debug(f"New enemy pattern detected: {pattern.description}")
        self._notify(pattern, snapshot)
        return pattern

    def process(self, observation: Observation, history: Sequence[Observation]) -> List[EnemyPattern]:
        """Run pattern checks for every entity in a freshly recorded observation"""
        recognised = []
        for snapshots in observation.entities.values():
            for snapshot in snapshots:
                pattern = self.check(snapshot, history)
                if pattern is not None:
                    recognised.append(pattern)
        if history:
            self.prune(history[0].timestamp)
        return recognised

    def prune(self, before: float) -> int:
        """Forget entities not seen since the oldest retained observation"""
        with self._lock:
            stale = [eid for eid, s in self.tracked.items() if s.timestamp < before]
            for entity_id in stale:
                del self.tracked[entity_id]
        return len(stale)

    def _notify(self, pattern: EnemyPattern, snapshot: TrackingSnapshot):
        details = {
            'enemyType': snapshot.entity_type,
            'enemyId': snapshot.entity_id,
            'patternSteps': pattern.length,
            'patternDuration': pattern.duration_ms,
            'confidence': pattern.consistency,
            'currentPosition': [snapshot.position.center_x, snapshot.position.center_y],
            'counterStrategy': counter_strategy(pattern),
        }
        self.events.publish(RecognitionEvent(
            pattern_kind='enemy',
            pattern_id=pattern.id,
            description=pattern.description,
            confidence=pattern.consistency,
            details=details,
        ))

    # ── Periodic analysis ────────────────────────────────────────────────

    def analyze_level(self, observations: Sequence[Observation], context: GameContext) -> Optional[LevelPattern]:
        """Fold the recent frames into the LevelPattern of the current screen type"""
        if not observations:
            return None

        relevant = [o for o in observations if o.game_state.text('screenType', 'unknown') == context.screen_type]

        with self._lock:
            level = self.level_patterns.get(context.screen_type)
            if level is None:
                level = LevelPattern.create_for(context.screen_type)
                self.level_patterns[context.screen_type] = level

            resource_totals: Dict[str, List[float]] = {}
            for obs in relevant:
                for element in obs.elements:
                    category = element.category.lower()
                    ids = level.element_distribution.setdefault(category, [])
                    if element.element_id and element.element_id not in ids and len(ids) < 50:
                        ids.append(element.element_id)
                    if category not in level.sequence:
                        level.sequence.append(category)
                for key, value in obs.game_state.numeric_items():
                    if any(marker in key.lower() for marker in RESOURCE_MARKERS):
                        resource_totals.setdefault(key, []).append(value)

            for key, values in resource_totals.items():
                mean = sum(values) / len(values)
                previous = level.resource_distribution.get(key)
                level.resource_distribution[key] = mean if previous is None else 0.9 * previous + 0.1 * mean

            level.record_match(observations[-1].timestamp)
        return level

    def analyze_strategies(self, observations: Sequence[Observation], context: GameContext) -> List[StrategyPattern]:
        """Record player action windows that ended with a score gain"""
        acted = [o for o in observations if o.game_state.text('action') is not None]
        window = self.strategy_window
        if len(acted) < window:
            return []

        touched = []
        with self._lock:
            for start in range(len(acted) - window + 1):
                frames = acted[start:start + window]
                steps = [self._action_step(o) for o in frames]
                gained = frames[-1].game_state.number('score') > frames[0].game_state.number('score')

                existing = next(
                    (p for p in self.strategy_patterns.values()
                     if p.game_context == context.game_type and steps_match(p.steps, steps)),
                    None,
                )
                if existing is not None:
                    attempts = existing.outcomes.get('attempts', 0) + 1
                    successes = existing.outcomes.get('successes', 0) + (1 if gained else 0)
                    existing.outcomes.update({'attempts': attempts, 'successes': successes})
                    existing.success_rate = successes / attempts
                    existing.record_match(frames[-1].timestamp)
                    touched.append(existing)
                elif gained:
                    name = "-".join(step.action_type for step in steps)
                    pattern = StrategyPattern.create(steps, strategy_name=name,
                                                     game_context=context.game_type,
                                                     success_rate=1.0)
                    pattern.outcomes.update({'attempts': 1, 'successes': 1})
                    pattern.preconditions.update(frames[0].simplified_features().to_raw())
                    self.strategy_patterns[pattern.id] = pattern
                    touched.append(pattern)
                    logger.debug(f"New strategy pattern: {pattern.description}")
        return touched

    @staticmethod
    def _action_step(observation: Observation) -> PatternStep:
        state = observation.game_state
        params = {k: state[k] for k in ('target', 'direction') if k in state}
        return PatternStep(action_type=state.text('action', 'observe'), parameters=params)

    # ── Queries ──────────────────────────────────────────────────────────

    def get_enemy_patterns(self) -> List[EnemyPattern]:
        with self._lock:
            return list(self.enemy_patterns.values())

    def get_strategy_patterns(self) -> List[StrategyPattern]:
        with self._lock:
            return list(self.strategy_patterns.values())

    def get_level_patterns(self) -> List[LevelPattern]:
        with self._lock:
            return list(self.level_patterns.values())

    def get_tracked(self) -> List[TrackingSnapshot]:
        with self._lock:
            return list(self.tracked.values())

    def load(self, enemy: Sequence[EnemyPattern], strategies: Sequence[StrategyPattern],
             levels: Sequence[LevelPattern]):
        with self._lock:
            self.enemy_patterns.update((p.id, p) for p in enemy)
            self.strategy_patterns.update((p.id, p) for p in strategies)
            self.level_patterns.update((p.level_type, p) for p in levels)

    def clear(self):
        with self._lock:
            self.tracked.clear()
            self.enemy_patterns.clear()
            self.strategy_patterns.clear()
            self.level_patterns.clear()

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'tracked_entities': len(self.tracked),
                'enemy_patterns': len(self.enemy_patterns),
                'strategy_patterns': len(self.strategy_patterns),
                'level_patterns': len(self.level_patterns),
            }
