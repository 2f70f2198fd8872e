"""
Action Prioritization - Ranking candidate actions with a multiplicative score

final priority = base priority × Π factors

Factor families, applied in order:
1. action_type    - static weight per coarse action type
2. contextual     - low_health / low_resource / under_attack / boss_fight flags
3. emergency      - critical_health when state health < 0.2 and the action heals
4. game_specific  - weight keyed by (current game type, action type)
5. history        - success_rate and avg_reward from recorded results
6. user_feedback  - satisfaction from recorded user feedback

A factor that does not apply is simply absent (neutral 1.0). Candidate
actions come from outside (the action-value model, or rule recommendations).
"""

import itertools
import logging
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .feedback import FeedbackLedger
from .rules import Rule, RuleType
from .values import Value, ValueMap

logger = logging.getLogger(__name__)


MAX_PRIORITY = 100.0
CRITICAL_HEALTH = 0.2
RULE_CONFIDENCE_FLOOR = 0.7

ACTION_TYPE_PRIORITIES = {
    'attack': 0.8,
    'defend': 0.85,
    'heal': 0.9,
    'collect': 0.7,
    'move': 0.6,
    'interact': 0.65,
    'use_item': 0.75,
}

CONTEXTUAL_PRIORITIES = {
    'low_health': 2.0,
    'low_resource': 1.5,
    'under_attack': 1.8,
    'boss_fight': 1.7,
    'exploration': 0.6,
    'grinding': 0.4,
}

GAME_SPECIFIC_PRIORITIES = {
    'action_game_attack': 1.2,
    'rpg_heal': 1.5,
    'racing_boost': 1.3,
    'strategy_build': 1.1,
}

EMERGENCY_PRIORITIES = {
    'critical_health': 3.0,
    'instant_death_avoid': 5.0,
    'game_over_prevention': 4.0,
}


class ActionKind(Enum):
    """Input gestures the external executor understands"""
    TAP = "tap"
    SWIPE = "swipe"
    LONG_PRESS = "long_press"
    MULTI_TAP = "multi_tap"
    DRAG = "drag"
    PINCH = "pinch"
    ZOOM = "zoom"
    ROTATE = "rotate"
    CUSTOM = "custom"


class PriorityThresholds:
    CRITICAL = 0.9
    HIGH = 0.7
    MEDIUM = 0.5
    LOW = 0.3
    BACKGROUND = 0.1

    @classmethod
    def band(cls, priority: float) -> str:
        for name in ('CRITICAL', 'HIGH', 'MEDIUM', 'LOW', 'BACKGROUND'):
            if priority >= getattr(cls, name):
                return name.lower()
        return 'idle'


@dataclass
class GameAction:
    """A candidate action; `kind` is a gesture (tap, swipe…) or a semantic type (heal…)"""
    kind: str
    parameters: ValueMap = field(default_factory=ValueMap)
    priority: float = 0.5
    confidence: float = 0.5
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])

    def __post_init__(self):
        if isinstance(self.kind, ActionKind):
            self.kind = self.kind.value
        self.kind = str(self.kind).lower()
        if not isinstance(self.parameters, ValueMap):
            self.parameters = ValueMap.from_raw(self.parameters)
        self.priority = max(0.0, min(1.0, self.priority))
        self.confidence = max(0.0, min(1.0, self.confidence))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'GameAction':
        kwargs = {
            'kind': data.get('kind') or data.get('type') or 'custom',
            'parameters': ValueMap.from_raw(data.get('parameters')),
            'priority': float(data.get('priority', 0.5)),
            'confidence': float(data.get('confidence', 0.5)),
        }
        if data.get('id'):
            kwargs['id'] = str(data['id'])
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'kind': self.kind,
            'parameters': self.parameters.to_raw(),
            'priority': self.priority,
            'confidence': self.confidence,
        }


@dataclass
class PrioritizedAction:
    action_id: str
    action: GameAction
    base_priority: float
    factors: Dict[str, float] = field(default_factory=dict)

    def add_factor(self, name: str, value: float):
        self.factors[name] = value

    @property
    def final_priority(self) -> float:
        multiplier = 1.0
        for value in self.factors.values():
            multiplier *= value
        return max(0.0, min(MAX_PRIORITY, self.base_priority * multiplier))

    @property
    def band(self) -> str:
        return PriorityThresholds.band(self.final_priority)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action_id': self.action_id,
            'action': self.action.to_dict(),
            'base_priority': self.base_priority,
            'factors': dict(self.factors),
            'final_priority': self.final_priority,
        }


def action_type_of(action: GameAction) -> str:
    """Coarse semantic type: explicit parameter, then target hints, then gesture mapping"""
    params = action.parameters

    if 'action_type' in params:
        return str(params['action_type']).lower()

    if 'target_type' in params:
        target_type = str(params['target_type']).lower()
        if 'enemy' in target_type:
            return 'attack'
        if 'item' in target_type or 'resource' in target_type:
            return 'collect'

    if action.kind == ActionKind.TAP.value:
        if 'target' in params and 'enemy' in str(params['target']).lower():
            return 'attack'
        return 'interact'
    if action.kind == ActionKind.SWIPE.value:
        return 'move'
    if action.kind == ActionKind.LONG_PRESS.value:
        return 'use_item'
    return action.kind


def action_key_of(action: GameAction) -> str:
    """Record key: type, qualified by target id or target type when known"""
    action_type = action_type_of(action)
    params = action.parameters
    if 'target_id' in params:
        return f"{action_type}_{params['target_id']}"
    if 'target_type' in params:
        return f"{action_type}_{params['target_type']}"
    return action_type


def _state_health(game_state: ValueMap) -> Optional[float]:
    value = game_state.get('health')
    if value is None:
        return None
    number = value.as_number()
    if number is not None:
        return number
    text = value.as_text()
    if text is not None:
        try:
            return float(text)
        except ValueError:
            return None
    return None


class ActionPrioritizer:
    """
    Scores candidate actions. Holds the current game type, the critical
    state flags and the feedback ledger; tables are per-instance so tests
    and multiple sessions can tune them independently.
    """

    def __init__(self, ledger: Optional[FeedbackLedger] = None, game_type: str = "unknown"):
        self.ledger = ledger or FeedbackLedger()
        self.game_type = game_type

        self.action_type_priorities = dict(ACTION_TYPE_PRIORITIES)
        self.contextual_priorities = dict(CONTEXTUAL_PRIORITIES)
        self.game_specific_priorities = dict(GAME_SPECIFIC_PRIORITIES)
        self.emergency_priorities = dict(EMERGENCY_PRIORITIES)

        self.low_health = False
        self.low_resource = False
        self.under_attack = False
        self.boss_fight = False

        self._counter = itertools.count(1)
        self._counter_lock = threading.Lock()
        self.actions_prioritized = 0

    def set_game_type(self, game_type: str):
        self.game_type = game_type
        logger.info(f"Game type set to: {game_type}")

    def set_critical_state_flags(self, low_health: bool = False, low_resource: bool = False,
                                 under_attack: bool = False, boss_fight: bool = False):
        self.low_health = low_health
        self.low_resource = low_resource
        self.under_attack = under_attack
        self.boss_fight = boss_fight

    def _next_id(self, prefix: str) -> str:
        with self._counter_lock:
            self.actions_prioritized += 1
            return f"{prefix}_{next(self._counter)}"

    # ── Ranking ──────────────────────────────────────────────────────────

    def prioritize(self, actions: Optional[Sequence[GameAction]],
                   game_state: Optional[Mapping[str, Any]] = None) -> List[PrioritizedAction]:
        state = ValueMap.from_raw(game_state)
        ranked = []

        for action in actions or ():
            prioritized = PrioritizedAction(self._next_id("action"), action, action.priority)
            action_type = action_type_of(action)

            if action_type in self.action_type_priorities:
                prioritized.add_factor('action_type', self.action_type_priorities[action_type])

            self._apply_contextual(prioritized, action_type, state)
            self._apply_game_specific(prioritized, action_type)
            self._apply_history(prioritized, action)
            self._apply_user_feedback(prioritized, action)

            ranked.append(prioritized)

        # sort() is stable, ties keep input order
        ranked.sort(key=lambda p: p.final_priority, reverse=True)
        return ranked

    def _apply_contextual(self, prioritized: PrioritizedAction, action_type: str, state: ValueMap):
        if self.low_health and action_type == 'heal':
            prioritized.add_factor('low_health', self.contextual_priorities['low_health'])
        if self.low_resource and action_type == 'collect':
            prioritized.add_factor('low_resource', self.contextual_priorities['low_resource'])
        if self.under_attack and action_type in ('attack', 'defend'):
            prioritized.add_factor('under_attack', self.contextual_priorities['under_attack'])
        if self.boss_fight:
            prioritized.add_factor('boss_fight', self.contextual_priorities['boss_fight'])

        health = _state_health(state)
        if health is not None and health < CRITICAL_HEALTH and action_type == 'heal':
            prioritized.add_factor('critical_health', self.emergency_priorities['critical_health'])

    def _apply_game_specific(self, prioritized: PrioritizedAction, action_type: str):
        key = f"{self.game_type}_{action_type}"
        if key in self.game_specific_priorities:
            prioritized.add_factor('game_specific', self.game_specific_priorities[key])

    def _apply_history(self, prioritized: PrioritizedAction, action: GameAction):
        record = self.ledger.success_record(action_key_of(action))
        if record is None or record.attempts == 0:
            return
        prioritized.add_factor('success_rate', 0.7 + 0.6 * record.success_rate)
        prioritized.add_factor('avg_reward', 0.8 + 0.4 * record.avg_reward)

    def _apply_user_feedback(self, prioritized: PrioritizedAction, action: GameAction):
        record = self.ledger.feedback_record(action_key_of(action))
        if record is not None:
            prioritized.add_factor('user_feedback', 0.5 + record.satisfaction)

    # ── Rule-derived recommendations ─────────────────────────────────────

    def recommend_from_rules(self, game_state: Optional[Mapping[str, Any]],
                             rules: Optional[Sequence[Rule]]) -> List[PrioritizedAction]:
        recommendations = []

        for rule in rules or ():
            if rule.confidence < RULE_CONFIDENCE_FLOOR:
                continue
            if rule.rule_type not in (RuleType.STRATEGY, RuleType.GOAL):
                continue

            action = self.action_from_rule(rule)

            recommendation = PrioritizedAction(
                self._next_id("strategy"), action, 0.7 + 0.3 * rule.confidence)
            recommendation.add_factor('rule_confidence', rule.confidence)
            recommendation.add_factor('observation_count', min(1.0 + rule.observation_count / 100.0, 1.5))
            recommendations.append(recommendation)

        recommendations.sort(key=lambda p: p.final_priority, reverse=True)
        return recommendations

    @staticmethod
    def action_from_rule(rule: Rule) -> GameAction:
        """
        Build a candidate action from a rule's parameters: a nested 'step'
        mapping is used as-is, an 'action'/'action_type' name becomes the
        action_type parameter. Target hints are carried over. A rule with
        none of these still yields a plain tap.
        """
        params = rule.parameters
        built: Dict[str, Value] = dict(params.mapping('step').items())

        name = params.text('action_type') or params.text('action')
        if name is not None and 'action_type' not in built:
            built['action_type'] = Value.of(name)
        for key in ('target', 'target_id', 'target_type'):
            if key in params and key not in built:
                built[key] = params[key]

        action_name = str(built['action_type']).lower() if 'action_type' in built else ''
        if 'swipe' in action_name:
            kind = ActionKind.SWIPE
        elif 'long' in action_name or 'press' in action_name:
            kind = ActionKind.LONG_PRESS
        else:
            kind = ActionKind.TAP

        return GameAction(kind=kind, parameters=ValueMap(built),
                          priority=rule.confidence, confidence=rule.confidence)

    # ── Recording ────────────────────────────────────────────────────────

    def record_action_result(self, action: GameAction, success: bool, reward: float,
                             execution_time_ms: int = 0):
        self.ledger.record_result(action_key_of(action), success, reward, execution_time_ms)

    def record_user_feedback(self, action: GameAction, positive: bool, satisfaction_delta: float):
        self.ledger.record_feedback(action_key_of(action), positive, satisfaction_delta)

    def priority_adjustment(self, action_type: str) -> float:
        """0.7..1.3 from the mean satisfaction of matching feedback records, 1.0 if none"""
        records = self.ledger.feedback_with_prefix(action_type)
        if not records:
            return 1.0
        mean = sum(r.satisfaction for r in records) / len(records)
        return 0.7 + mean * 0.6

    def stats(self) -> Dict[str, Any]:
        return {
            'actions_prioritized': self.actions_prioritized,
            'game_type': self.game_type,
            'success_record_count': len(self.ledger.success),
            'feedback_record_count': len(self.ledger.feedback),
            'low_health': self.low_health,
            'low_resource': self.low_resource,
            'under_attack': self.under_attack,
            'boss_fight': self.boss_fight,
            'action_success': self.ledger.success_stats(),
            'user_feedback': self.ledger.feedback_stats(),
        }

    def reset(self):
        self.ledger.clear()
        self.set_critical_state_flags()
        with self._counter_lock:
            self._counter = itertools.count(1)
            self.actions_prioritized = 0
