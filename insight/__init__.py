"""
Game Insight - Core Components

Learns how a game works by watching it:
1. Observation - Bounded history of timestamped frames
2. Patterns    - Recurring step sequences, enemy movements, level layouts
3. Rules       - Typed generalisations of consistent patterns, causal links
4. Ranking     - Multiplicative priority model for candidate actions

The system implements:
- Tolerant step matching (numeric and duration slack)
- Asymptotic confidence growth capped below certainty
- Counter strategies for recognised enemy patterns
- Learning from action outcomes and user feedback
"""

from .values import Rect, Value, ValueKind, ValueMap
from .memory import DetectedElement, Observation, ObservationStore, TrackingSnapshot
from .pattern import EnemyPattern, LevelPattern, Pattern, PatternKind, PatternStep, StrategyPattern
from .engine import MiningResult, PatternMiner
from .events import EventBus, RecognitionEvent
from .tracker import EntityTracker, GameContext, counter_strategy
from .rules import CausalRelationship, Rule, RuleInferenceEngine, RuleType
from .feedback import ActionSuccessRecord, FeedbackLedger, UserFeedbackRecord
from .prioritizer import ActionKind, ActionPrioritizer, GameAction, PrioritizedAction, PriorityThresholds
from .config import ConfigError, InsightConfig, MiningConfig, SchedulerConfig

__all__ = [
    'Rect',
    'Value',
    'ValueKind',
    'ValueMap',
    'DetectedElement',
    'Observation',
    'ObservationStore',
    'TrackingSnapshot',
    'EnemyPattern',
    'LevelPattern',
    'Pattern',
    'PatternKind',
    'PatternStep',
    'StrategyPattern',
    'MiningResult',
    'PatternMiner',
    'EventBus',
    'RecognitionEvent',
    'EntityTracker',
    'GameContext',
    'counter_strategy',
    'CausalRelationship',
    'Rule',
    'RuleInferenceEngine',
    'RuleType',
    'ActionSuccessRecord',
    'FeedbackLedger',
    'UserFeedbackRecord',
    'ActionKind',
    'ActionPrioritizer',
    'GameAction',
    'PrioritizedAction',
    'PriorityThresholds',
    'ConfigError',
    'InsightConfig',
    'MiningConfig',
    'SchedulerConfig',
]
