"""
Pattern - The unit of mined behaviour

A Pattern is an ordered sequence of PatternSteps that has been seen at least
once and keeps getting re-matched. Every re-match raises its consistency,
asymptotically, towards 0.99. Patterns are never deleted, only accumulated.

Variants:
- Pattern         - generic, mined from the observation stream
- EnemyPattern    - movement sequence of one tracked adversary type
- StrategyPattern - player action sequence that led to a score gain
- LevelPattern    - layout/resource summary of one screen type

Matching is tolerant: numbers may differ by a relative margin, durations by
a larger one. The comparator is reflexive, so a sequence always matches
itself.
"""

import hashlib
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .values import ValueKind, ValueMap


MAX_CONSISTENCY = 0.99
NUMERIC_TOLERANCE = 0.1
DURATION_TOLERANCE = 0.3


class PatternKind(Enum):
    GENERIC = "generic"
    ENEMY = "enemy"
    STRATEGY = "strategy"
    LEVEL = "level"


@dataclass(frozen=True)
class PatternStep:
    """One step of a pattern: what happened, with which parameters, for how long"""
    action_type: str
    parameters: ValueMap = field(default_factory=ValueMap)
    duration_ms: int = 0
    preconditions: ValueMap = field(default_factory=ValueMap)

    def __post_init__(self):
        # Allow plain dicts at construction time
        if not isinstance(self.parameters, ValueMap):
            object.__setattr__(self, 'parameters', ValueMap.from_raw(self.parameters))
        if not isinstance(self.preconditions, ValueMap):
            object.__setattr__(self, 'preconditions', ValueMap.from_raw(self.preconditions))

    @property
    def direction(self) -> Optional[str]:
        return self.parameters.text('direction')

    @property
    def description(self) -> str:
        desc = self.action_type
        if 'direction' in self.parameters:
            desc += f" {self.parameters['direction']}"
        if 'target' in self.parameters:
            desc += f" at {self.parameters['target']}"
        if self.duration_ms > 0:
            desc += f" ({self.duration_ms}ms)"
        return desc

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action_type': self.action_type,
            'parameters': self.parameters.to_raw(),
            'duration_ms': self.duration_ms,
            'preconditions': self.preconditions.to_raw(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PatternStep':
        return cls(
            action_type=data['action_type'],
            parameters=ValueMap.from_raw(data.get('parameters')),
            duration_ms=int(data.get('duration_ms', 0)),
            preconditions=ValueMap.from_raw(data.get('preconditions')),
        )


def step_matches(reference: PatternStep, candidate: PatternStep,
                 numeric_tolerance: float = NUMERIC_TOLERANCE,
                 duration_tolerance: float = DURATION_TOLERANCE) -> bool:
    """Compare one candidate step against a reference step"""
    if reference.action_type != candidate.action_type:
        return False

    for key, ref_value in reference.parameters.items():
        cand_value = candidate.parameters.get(key)
        if key == 'direction':
            # Direction only constrains the match when both sides have one
            if cand_value is not None and cand_value != ref_value:
                return False
            continue
        if cand_value is None:
            return False
        if ref_value.kind is ValueKind.NUMBER and cand_value.kind is ValueKind.NUMBER:
            if abs(ref_value.data - cand_value.data) > numeric_tolerance * abs(ref_value.data):
                return False
        elif ref_value != cand_value:
            return False

    d1, d2 = reference.duration_ms, candidate.duration_ms
    if abs(d1 - d2) > max(d1, d2) * duration_tolerance:
        return False

    return True


def steps_match(reference: Sequence[PatternStep], candidate: Sequence[PatternStep],
                numeric_tolerance: float = NUMERIC_TOLERANCE,
                duration_tolerance: float = DURATION_TOLERANCE) -> bool:
    """Two step sequences match when they have the same length and match step by step"""
    if len(reference) != len(candidate):
        return False
    return all(
        step_matches(r, c, numeric_tolerance, duration_tolerance)
        for r, c in zip(reference, candidate)
    )


def describe_steps(steps: Sequence[PatternStep], limit: int = 3) -> str:
    text = " → ".join(step.description for step in steps[:limit])
    if len(steps) > limit:
        text += " → ..."
    return text


@dataclass
class Pattern:
    """A recurring, matched subsequence of steps"""
    id: str
    steps: List[PatternStep]
    match_count: int = 0
    consistency: float = 0.0
    duration_ms: int = 0
    success_rate: Optional[float] = None
    created_at: float = field(default_factory=time.time)
    last_matched_at: Optional[float] = None

    kind = PatternKind.GENERIC

    @staticmethod
    def _generate_id(prefix: str, steps: Sequence[PatternStep], extra: str = "") -> str:
        """Content-addressed id: same steps, same id"""
        content = json.dumps({
            'steps': [s.to_dict() for s in steps],
            'extra': extra,
        }, sort_keys=True, default=str)
        return f"{prefix}_{hashlib.sha256(content.encode()).hexdigest()[:12]}"

    @classmethod
    def create(cls, steps: Sequence[PatternStep]) -> 'Pattern':
        steps = list(steps)
        return cls(
            id=cls._generate_id("pattern", steps),
            steps=steps,
            duration_ms=sum(s.duration_ms for s in steps),
        )

    @property
    def length(self) -> int:
        return len(self.steps)

    @property
    def description(self) -> str:
        return f"Auto-detected pattern of length {self.length}"

    def matches(self, candidate: Sequence[PatternStep], **tolerances) -> bool:
        return steps_match(self.steps, candidate, **tolerances)

    def record_match(self, now: Optional[float] = None):
        """Re-match: count it and let consistency climb, bounded at 0.99"""
        self.match_count += 1
        self.consistency = min(MAX_CONSISTENCY, self.consistency + 0.1 / self.match_count)
        self.last_matched_at = now if now is not None else time.time()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'kind': self.kind.value,
            'steps': [s.to_dict() for s in self.steps],
            'match_count': self.match_count,
            'consistency': self.consistency,
            'duration_ms': self.duration_ms,
            'success_rate': self.success_rate,
            'created_at': self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Pattern':
        return cls(
            id=data['id'],
            steps=[PatternStep.from_dict(s) for s in data.get('steps', [])],
            match_count=data.get('match_count', 0),
            consistency=data.get('consistency', 0.0),
            duration_ms=data.get('duration_ms', 0),
            success_rate=data.get('success_rate'),
            created_at=data.get('created_at', time.time()),
        )

    def __repr__(self):
        return f"{type(self).__name__}({self.id}, steps={self.length}, consistency={self.consistency:.2f})"


@dataclass(repr=False)
class EnemyPattern(Pattern):
    """Movement pattern of one adversary type"""
    enemy_type: str = "generic_enemy"

    kind = PatternKind.ENEMY

    @classmethod
    def create(cls, steps: Sequence[PatternStep], enemy_type: str = "generic_enemy",
               duration_ms: int = 0, consistency: float = 0.6) -> 'EnemyPattern':
        steps = list(steps)
        return cls(
            id=cls._generate_id(f"enemy_pattern_{enemy_type}", steps, enemy_type),
            steps=steps,
            match_count=1,
            consistency=consistency,
            duration_ms=duration_ms,
            enemy_type=enemy_type,
        )

    @property
    def detection_count(self) -> int:
        return self.match_count

    @property
    def description(self) -> str:
        if not self.steps:
            return "Unknown pattern"
        return f"{self.enemy_type}: {describe_steps(self.steps)}"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['enemy_type'] = self.enemy_type
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EnemyPattern':
        base = Pattern.from_dict(data)
        return cls(**{**base.__dict__, 'enemy_type': data.get('enemy_type', 'generic_enemy')})


@dataclass(repr=False)
class StrategyPattern(Pattern):
    """Player action sequence observed to lead to a good outcome"""
    strategy_name: str = "unnamed"
    game_context: str = "unknown"
    preconditions: Dict[str, Any] = field(default_factory=dict)
    outcomes: Dict[str, Any] = field(default_factory=dict)

    kind = PatternKind.STRATEGY

    @classmethod
    def create(cls, steps: Sequence[PatternStep], strategy_name: str = "unnamed",
               game_context: str = "unknown", success_rate: float = 0.0) -> 'StrategyPattern':
        steps = list(steps)
        return cls(
            id=cls._generate_id("strategy_pattern", steps, game_context),
            steps=steps,
            match_count=1,
            duration_ms=sum(s.duration_ms for s in steps),
            success_rate=success_rate,
            strategy_name=strategy_name,
            game_context=game_context,
        )

    @property
    def description(self) -> str:
        return f"{self.strategy_name} ({self.game_context}): {describe_steps(self.steps)}"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            'strategy_name': self.strategy_name,
            'game_context': self.game_context,
            'preconditions': self.preconditions,
            'outcomes': self.outcomes,
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StrategyPattern':
        base = Pattern.from_dict(data)
        return cls(**{
            **base.__dict__,
            'strategy_name': data.get('strategy_name', 'unnamed'),
            'game_context': data.get('game_context', 'unknown'),
            'preconditions': data.get('preconditions', {}),
            'outcomes': data.get('outcomes', {}),
        })


@dataclass(repr=False)
class LevelPattern(Pattern):
    """What a given screen/level type tends to contain"""
    level_type: str = "unknown"
    element_distribution: Dict[str, List[str]] = field(default_factory=dict)
    sequence: List[str] = field(default_factory=list)
    resource_distribution: Dict[str, float] = field(default_factory=dict)

    kind = PatternKind.LEVEL

    @classmethod
    def create_for(cls, level_type: str) -> 'LevelPattern':
        return cls(id=f"level_pattern_{level_type}", steps=[], level_type=level_type)

    @property
    def description(self) -> str:
        categories = ", ".join(sorted(self.element_distribution)) or "no elements"
        return f"Level '{self.level_type}' containing {categories}"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            'level_type': self.level_type,
            'element_distribution': self.element_distribution,
            'sequence': self.sequence,
            'resource_distribution': self.resource_distribution,
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LevelPattern':
        base = Pattern.from_dict(data)
        return cls(**{
            **base.__dict__,
            'level_type': data.get('level_type', 'unknown'),
            'element_distribution': data.get('element_distribution', {}),
            'sequence': data.get('sequence', []),
            'resource_distribution': data.get('resource_distribution', {}),
        })


PATTERN_CLASSES = {
    PatternKind.GENERIC: Pattern,
    PatternKind.ENEMY: EnemyPattern,
    PatternKind.STRATEGY: StrategyPattern,
    PatternKind.LEVEL: LevelPattern,
}


def pattern_from_dict(data: Dict[str, Any]) -> Pattern:
    kind = PatternKind(data.get('kind', PatternKind.GENERIC.value))
    return PATTERN_CLASSES[kind].from_dict(data)
