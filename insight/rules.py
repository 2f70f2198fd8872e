"""
Rule Inference - From consistent patterns to statements about the game

A pattern that keeps re-occurring (consistency > 0.5, matched at least 3
times) is promoted to a typed Rule with a plain-language description.
Rules with the same (type, description) are the same rule: seeing it again
raises its observation count and nudges confidence towards 0.99.

Alongside rules, the engine tracks cause -> effect associations: for every
(before, action, after) triple in the history, each state key that changed
meaningfully between before and after is credited to the action.
"""

import hashlib
import json
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set

from .memory import Observation
from .pattern import MAX_CONSISTENCY, Pattern, PatternStep
from .values import ValueKind, ValueMap

logger = logging.getLogger(__name__)


class RuleType(Enum):
    # Mechanics taxonomy (inferred from patterns)
    OBJECTIVE = "objective"
    CONSTRAINT = "constraint"
    MECHANICS = "mechanics"
    SCORING = "scoring"
    PROGRESSION = "progression"
    INTERACTION = "interaction"
    STATE_CHANGE = "state_change"
    TEMPORAL = "temporal"
    SPATIAL = "spatial"
    # Extraction taxonomy (supplied by strategy/goal extractors)
    PATTERN = "pattern"
    CONTEXTUAL = "contextual"
    STRATEGY = "strategy"
    GOAL = "goal"
    RESOURCE = "resource"
    CAUSAL = "causal"
    FEEDBACK = "feedback"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, raw: Any) -> 'RuleType':
        """Accept a value ("strategy") or a member name ("STRATEGY")"""
        try:
            return cls(str(raw).lower())
        except ValueError:
            return cls[str(raw).upper()]


_CONDITION = re.compile(r"^\s*(\w+)\s*(<=|>=|==|<|>)\s*(-?\d+(?:\.\d+)?)\s*$")

_COMPARATORS = {
    '<': lambda a, b: a < b,
    '<=': lambda a, b: a <= b,
    '>': lambda a, b: a > b,
    '>=': lambda a, b: a >= b,
    '==': lambda a, b: a == b,
}


def increase_confidence(confidence: float, observation_count: int) -> float:
    """Asymptotic climb shared by rules and causal relationships"""
    return min(MAX_CONSISTENCY, confidence + 0.05 / max(1, observation_count))


def _flatten_parameters(raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Lists cannot be Values: keep the first pattern step and the first listed action"""
    params = dict(raw or {})
    pattern = params.get('pattern')
    if isinstance(pattern, (list, tuple)):
        del params['pattern']
        if pattern and isinstance(pattern[0], dict):
            params.setdefault('step', pattern[0])
    actions = params.get('actions')
    if isinstance(actions, (list, tuple)):
        del params['actions']
        if actions:
            params.setdefault('action', actions[0])
    return params


@dataclass
class Rule:
    """A generalised, typed statement about the game"""
    id: str
    rule_type: RuleType
    description: str
    confidence: float = 0.1
    observation_count: int = 1
    examples: List[str] = field(default_factory=list)
    parameters: ValueMap = field(default_factory=ValueMap)
    game_type: str = "unknown"
    importance: float = 0.5
    created_at: float = field(default_factory=time.time)

    def __post_init__(self):
        if not isinstance(self.parameters, ValueMap):
            self.parameters = ValueMap.from_raw(_flatten_parameters(self.parameters))
        self.confidence = max(0.0, min(1.0, self.confidence))
        self.importance = max(0.0, min(1.0, self.importance))

    @property
    def key(self):
        return (self.rule_type, self.description)

    def increment_observation_count(self):
        self.observation_count += 1
        self.confidence = increase_confidence(self.confidence, self.observation_count)

    def add_example(self, pattern_id: str):
        if pattern_id not in self.examples:
            self.examples.append(pattern_id)

    def add_parameter(self, key: str, value: Any):
        self.parameters = self.parameters.with_items(**{key: value})

    def matches(self, game_state: ValueMap) -> bool:
        """
        Whether the rule applies to a state: a named target key must be
        present, a simple numeric condition ("health<0.3") must hold.
        """
        target = self.parameters.text('target')
        if target is not None and target not in game_state:
            return False

        condition = self.parameters.text('condition')
        if condition:
            parsed = _CONDITION.match(condition)
            if parsed is None:
                return False
            key, op, number = parsed.groups()
            return _COMPARATORS[op](game_state.number(key), float(number))

        return True

    def score(self, game_state: ValueMap) -> float:
        if not self.matches(game_state):
            return 0.0
        return self.confidence * self.importance

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.rule_type.value,
            'description': self.description,
            'confidence': self.confidence,
            'observation_count': self.observation_count,
            'examples': list(self.examples),
            'parameters': self.parameters.to_raw(),
            'game_type': self.game_type,
            'importance': self.importance,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Rule':
        return cls(
            id=data['id'],
            rule_type=RuleType.parse(data['type']),
            description=data['description'],
            confidence=data.get('confidence', 0.1),
            observation_count=data.get('observation_count', 1),
            examples=list(data.get('examples', [])),
            parameters=_flatten_parameters(data.get('parameters')),
            game_type=data.get('game_type', 'unknown'),
            importance=data.get('importance', 0.5),
        )

    def __repr__(self):
        return (f"Rule({self.id}, type={self.rule_type.name}, conf={self.confidence:.2f}, "
                f"obs={self.observation_count}, '{self.description}')")


@dataclass
class CausalRelationship:
    """cause event -> changed state key, with accumulated strength"""
    id: str
    cause: str
    effect: str
    strength: float = 0.1
    observation_count: int = 1

    def increment_observation_count(self):
        self.observation_count += 1
        self.strength = increase_confidence(self.strength, self.observation_count)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'cause': self.cause,
            'effect': self.effect,
            'strength': self.strength,
            'observation_count': self.observation_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CausalRelationship':
        return cls(**data)


def _first_last(steps: Sequence[PatternStep], key: str):
    return steps[0].parameters.number(key), steps[-1].parameters.number(key)


def classify_pattern(pattern: Pattern) -> RuleType:
    """Look at how score/level/element count moved across the pattern"""
    steps = pattern.steps
    if not steps:
        return RuleType.MECHANICS

    first = steps[0].parameters

    level_change = False
    if 'level' in first:
        start, end = _first_last(steps, 'level')
        level_change = abs(end - start) > 0.1

    score_gain = False
    if 'score' in first:
        start, end = _first_last(steps, 'score')
        score_gain = abs(end - start) > 0.1 and end > start

    count_change = False
    if 'element_count' in first:
        start, end = _first_last(steps, 'element_count')
        count_change = abs(end - start) > 1.0

    if level_change:
        return RuleType.PROGRESSION
    if score_gain:
        return RuleType.SCORING
    if count_change:
        return RuleType.STATE_CHANGE
    if len(steps) > 5:
        return RuleType.TEMPORAL
    return RuleType.MECHANICS


def describe_rule(pattern: Pattern, rule_type: RuleType) -> str:
    steps = pattern.steps
    first = steps[0].parameters if steps else ValueMap()

    if rule_type is RuleType.SCORING:
        if 'score' in first:
            start, end = _first_last(steps, 'score')
            return (f"Scoring occurs when completing a sequence of {len(steps)} steps, "
                    f"resulting in {end - start:.0f} points")
        return "Scoring occurs when completing this pattern"

    if rule_type is RuleType.PROGRESSION:
        if 'level' in first:
            return "Level advancement occurs after completing specific game conditions"
        return "Level advancement occurs after completing this pattern"

    if rule_type is RuleType.STATE_CHANGE:
        if 'element_count' in first:
            start, end = _first_last(steps, 'element_count')
            if end > start:
                return "Game state changes when new elements appear"
            return "Game state changes when elements are removed"
        return "Game state changes when completing this pattern"

    if rule_type is RuleType.TEMPORAL:
        return f"Timed sequence requiring {len(steps)} consecutive steps"

    if rule_type is RuleType.MECHANICS:
        return f"Game mechanic involving a {len(steps)}-step sequence"

    return "Game rule based on consistent pattern"


def significant_changes(before: ValueMap, after: ValueMap, threshold: float = 0.1) -> Set[str]:
    """Keys whose value moved by more than `threshold` (relative) or changed identity"""
    changed = set()

    for key in set(before) & set(after):
        b, a = before[key], after[key]
        if b.kind is ValueKind.NUMBER and a.kind is ValueKind.NUMBER:
            if abs(a.data - b.data) > threshold * abs(b.data):
                changed.add(key)
        elif a != b:
            changed.add(key)

    for key in after:
        if key not in before:
            changed.add(key)

    return changed


def event_id(observation: Observation) -> str:
    """Deterministic id for the 'action' frame of a causal triple (timestamp excluded)"""
    content = json.dumps(observation.features().to_raw(), sort_keys=True, default=str)
    return f"event_{hashlib.sha256(content.encode()).hexdigest()[:12]}"


class RuleInferenceEngine:
    """
    Owns the rule and causal tables. Inference and causal updates run on the
    analyzer thread; queries may come from anywhere, hence the lock.
    """

    def __init__(self, consistency_threshold: float = 0.5, min_matches: int = 3,
                 change_threshold: float = 0.1, initial_confidence_scale: float = 0.8,
                 game_type: str = "unknown"):
        self.consistency_threshold = consistency_threshold
        self.min_matches = min_matches
        self.change_threshold = change_threshold
        self.initial_confidence_scale = initial_confidence_scale
        self.game_type = game_type

        self._rules: Dict[str, Rule] = {}
        self._rule_index: Dict[tuple, str] = {}
        self._causal: Dict[str, CausalRelationship] = {}
        self._lock = threading.RLock()
        self.inference_count = 0

    # ── Rules ────────────────────────────────────────────────────────────

    def infer(self, patterns: Sequence[Pattern]) -> List[Rule]:
        """Promote every sufficiently consistent pattern; returns the rules touched"""
        touched = []
        for pattern in patterns:
            if pattern.consistency > self.consistency_threshold and pattern.match_count >= self.min_matches:
                touched.append(self.infer_from_pattern(pattern))
        return touched

    def infer_from_pattern(self, pattern: Pattern) -> Rule:
        rule_type = classify_pattern(pattern)
        description = describe_rule(pattern, rule_type)

        with self._lock:
            existing = self._find(rule_type, description)
            if existing is not None:
                existing.increment_observation_count()
                existing.add_example(pattern.id)
                return existing

            rule = Rule(
                id=self._next_id(),
                rule_type=rule_type,
                description=description,
                confidence=pattern.consistency * self.initial_confidence_scale,
                parameters={'patternLength': pattern.length, 'basePattern': pattern.id},
                game_type=self.game_type,
            )
            rule.add_example(pattern.id)
            self._store(rule)

        logger.debug(f"Inferred new rule: {rule}")
        return rule

    def add_rule(self, rule: Rule) -> Rule:
        """Insert an externally extracted rule, merging with an identical one"""
        with self._lock:
            existing = self._find(rule.rule_type, rule.description)
            if existing is not None:
                existing.increment_observation_count()
                for example in rule.examples:
                    existing.add_example(example)
                return existing
            if rule.id in self._rules:
                rule.id = self._next_id()
            self._store(rule)
            return rule

    def _find(self, rule_type: RuleType, description: str) -> Optional[Rule]:
        rule_id = self._rule_index.get((rule_type, description))
        return self._rules.get(rule_id) if rule_id else None

    def _next_id(self) -> str:
        rule_id = f"rule_{self.inference_count}"
        while rule_id in self._rules:
            self.inference_count += 1
            rule_id = f"rule_{self.inference_count}"
        return rule_id

    def _store(self, rule: Rule):
        self._rules[rule.id] = rule
        self._rule_index[rule.key] = rule.id
        self.inference_count += 1

    def rules(self) -> List[Rule]:
        with self._lock:
            return list(self._rules.values())

    def rules_by_type(self, rule_type: RuleType) -> List[Rule]:
        with self._lock:
            return [r for r in self._rules.values() if r.rule_type is rule_type]

    def rules_above_confidence(self, threshold: float) -> List[Rule]:
        with self._lock:
            return [r for r in self._rules.values() if r.confidence >= threshold]

    def matching_rules(self, game_state: ValueMap) -> List[Rule]:
        """Rules that apply to a state, best score first"""
        with self._lock:
            scored = [(r, r.score(game_state)) for r in self._rules.values() if r.matches(game_state)]
        scored.sort(key=lambda x: x[1], reverse=True)
        return [r for r, _ in scored]

    # ── Causal relationships ─────────────────────────────────────────────

    def update_causal(self, observations: Sequence[Observation]) -> int:
        """Credit state changes to the frame between them; returns upserts made"""
        if len(observations) < 3:
            return 0

        upserts = 0
        with self._lock:
            for i in range(len(observations) - 2):
                before, action, after = observations[i], observations[i + 1], observations[i + 2]
                changed = significant_changes(before.features(), after.features(), self.change_threshold)
                if not changed:
                    continue

                cause = event_id(action)
                for key in sorted(changed):
                    effect = f"{key}_change"
                    relationship_id = f"{cause}_causes_{effect}"
                    relationship = self._causal.get(relationship_id)
                    if relationship is None:
                        self._causal[relationship_id] = CausalRelationship(relationship_id, cause, effect)
                    else:
                        relationship.increment_observation_count()
                    upserts += 1
        return upserts

    def causal_relationships(self) -> List[CausalRelationship]:
        with self._lock:
            return list(self._causal.values())

    def strongest_effects(self, cause: str, limit: int = 5) -> List[CausalRelationship]:
        with self._lock:
            related = [c for c in self._causal.values() if c.cause == cause]
        related.sort(key=lambda c: c.strength, reverse=True)
        return related[:limit]

    # ── Bookkeeping ──────────────────────────────────────────────────────

    def clear(self):
        with self._lock:
            self._rules.clear()
            self._rule_index.clear()
            self._causal.clear()
            self.inference_count = 0

    def load(self, rules: Sequence[Rule], causal: Sequence[CausalRelationship]):
        """Restore saved rules; a saved rule with a known (type, description) merges into it"""
        with self._lock:
            for rule in rules:
                existing = self._find(rule.rule_type, rule.description)
                if existing is not None:
                    existing.observation_count = max(existing.observation_count, rule.observation_count)
                    existing.confidence = max(existing.confidence, rule.confidence)
                    for example in rule.examples:
                        existing.add_example(example)
                    continue
                if rule.id in self._rules:
                    rule.id = self._next_id()
                self._store(rule)
            for relationship in causal:
                self._causal[relationship.id] = relationship

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            by_type: Dict[str, int] = {}
            for rule in self._rules.values():
                by_type[rule.rule_type.name] = by_type.get(rule.rule_type.name, 0) + 1

            stats = {
                'rule_count': len(self._rules),
                'causal_relationship_count': len(self._causal),
                'rules_by_type': by_type,
            }
            if self._rules:
                stats['average_rule_confidence'] = (
                    sum(r.confidence for r in self._rules.values()) / len(self._rules)
                )
            return stats
