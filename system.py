"""
Game Insight System - Watches a running game and learns what matters in it

This ties the components into one long-lived service:

THE PIPELINE:
1. Ingestion   - each frame becomes an Observation (elements + state + entity snapshots)
2. Tracking    - adversaries are followed per id; recurring movement becomes EnemyPatterns
3. Mining      - recurring step windows in the history become Patterns
4. Inference   - consistent Patterns are promoted to typed Rules; state changes to causes
5. Ranking     - candidate actions are scored by type, context, history and feedback

Ingestion runs on the caller's thread. Mining, inference and level/strategy
analysis run on one background thread at a fixed period. Every shared table
is owned by a component with its own lock.
"""

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from insight.config import InsightConfig
from insight.engine import PatternMiner
from insight.events import EventBus, RecognitionEvent
from insight.feedback import FeedbackLedger
from insight.memory import DetectedElement, Observation, ObservationStore, TrackingSnapshot
from insight.pattern import EnemyPattern, LevelPattern, Pattern, StrategyPattern, pattern_from_dict
from insight.prioritizer import ActionPrioritizer, GameAction, PrioritizedAction
from insight.rules import CausalRelationship, Rule, RuleInferenceEngine, RuleType
from insight.tracker import EntityTracker, GameContext
from insight.values import ValueMap

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class GameInsightSystem:
    """
    Owns one of each component. Nothing here is a process-wide singleton, so
    several systems (or tests) can run side by side.
    """

    def __init__(self, config: Optional[InsightConfig] = None):
        self.config = config or InsightConfig()
        self.config.validate()
        mining = self.config.mining

        self.events = EventBus()
        self.observations = ObservationStore(self.config.observation_capacity)
        self.rule_history = ObservationStore(self.config.rule_history_capacity)

        tolerances = {
            'numeric_tolerance': mining.numeric_tolerance,
            'duration_tolerance': mining.duration_tolerance,
        }
        self.miner = PatternMiner(
            max_window=mining.max_window,
            min_observations=mining.min_observations,
            significance_threshold=mining.significance_threshold,
            **tolerances,
        )
        self.rule_engine = RuleInferenceEngine(
            consistency_threshold=mining.consistency_threshold,
            min_matches=mining.min_observations,
            change_threshold=mining.causal_change_threshold,
            game_type=self.config.game_type,
        )
        self.tracker = EntityTracker(
            events=self.events,
            step_gap_ms=mining.step_gap_ms,
            min_observations=mining.min_observations,
            **tolerances,
        )
        self.prioritizer = ActionPrioritizer(FeedbackLedger(), game_type=self.config.game_type)

        self.frame_count = 0
        self.analysis_count = 0
        self.analysis_failures = 0
        self._frame_lock = threading.Lock()
        self._analysis_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        logger.info(f"Game insight system created (game type: {self.config.game_type})")

    # ── Lifecycle ────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            logger.warning("Game insight system already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="insight-analyzer", daemon=True)
        self._thread.start()
        logger.info("Game insight system started")

    def stop(self):
        """Cancel the analysis loop and drop everything learned this session"""
        thread = self._thread
        if thread is None:
            return
        self._stop_event.set()
        thread.join(self.config.scheduler.stop_timeout_s)
        if thread.is_alive():
            logger.error("Analysis thread did not stop in time; abandoning it")
        self._thread = None
        self._clear_learned()
        logger.info("Game insight system stopped")

    def _run(self):
        scheduler = self.config.scheduler
        if self._stop_event.wait(scheduler.initial_delay_s):
            return
        while not self._stop_event.is_set():
            try:
                self.analyze_now()
            except Exception:
                self.analysis_failures += 1
                logger.exception("Error in periodic pattern analysis")
            if self._stop_event.wait(scheduler.period_s):
                break

    # ── Ingestion ────────────────────────────────────────────────────────

    def ingest_frame(self, elements: Optional[Iterable[Any]],
                     game_state: Optional[Mapping[str, Any]],
                     timestamp: Optional[float] = None) -> Optional[Observation]:
        """
        Record one frame. Elements may be DetectedElement instances or plain
        dicts; anything unusable is dropped. Returns the stored Observation,
        or None when the system is not running.
        """
        if not self.running and not self.config.ingest_when_stopped:
            return None

        timestamp = time.time() if timestamp is None else float(timestamp)
        detected = tuple(
            element for element in (DetectedElement.coerce(item) for item in (elements or ()))
            if element is not None
        )

        observation = Observation(
            timestamp=timestamp,
            elements=detected,
            game_state=ValueMap.from_raw(game_state),
            entities=self.tracker.extract(detected, timestamp),
        )
        self.observations.record(observation)
        self.rule_history.record(observation)
        self.tracker.process(observation, self.observations.snapshot())

        with self._frame_lock:
            self.frame_count += 1
            frame_count = self.frame_count
        if frame_count % self.config.log_every_frames == 0:
            logger.info(f"Processed {frame_count} frames, "
                        f"{self.miner.get_statistics()['pattern_count']} patterns, "
                        f"{len(self.rule_engine.rules())} rules")
        return observation

    # ── Periodic analysis ────────────────────────────────────────────────

    def analyze_now(self) -> Dict[str, int]:
        """One synchronous analysis tick; what the background loop runs each period"""
        with self._analysis_lock:
            summary = {'patterns_created': 0, 'patterns_matched': 0,
                       'rules_created': 0, 'causal_upserts': 0,
                       'strategy_patterns': 0, 'level_patterns': 0}

            history = self.rule_history.snapshot()
            if len(history) >= self.config.mining.min_observations:
                known = {rule.id for rule in self.rule_engine.rules()}
                mined = self.miner.mine(history)
                touched = self.rule_engine.infer(self.miner.get_patterns())
                summary['patterns_created'] = len(mined.created)
                summary['patterns_matched'] = len(mined.matched)
                summary['causal_upserts'] = self.rule_engine.update_causal(history)

                for rule in touched:
                    if rule.id not in known:
                        known.add(rule.id)
                        summary['rules_created'] += 1
                        self._announce_rule(rule)

            observations = self.observations.snapshot()
            if len(observations) >= self.config.min_observations_for_analysis:
                context = GameContext.from_observations(observations, self.prioritizer.game_type)
                if self.tracker.analyze_level(observations, context) is not None:
                    summary['level_patterns'] = 1
                summary['strategy_patterns'] = len(self.tracker.analyze_strategies(observations, context))

            self.analysis_count += 1
            return summary

    def _announce_rule(self, rule: Rule):
        self.events.publish(RecognitionEvent(
            pattern_kind='rule',
            pattern_id=rule.id,
            description=rule.description,
            confidence=rule.confidence,
            details={'ruleType': rule.rule_type.name, 'examples': list(rule.examples)},
        ))

    # ── Queries ──────────────────────────────────────────────────────────

    def rules(self) -> List[Rule]:
        return self.rule_engine.rules()

    def rules_by_type(self, rule_type: RuleType) -> List[Rule]:
        return self.rule_engine.rules_by_type(rule_type)

    def rules_above_confidence(self, threshold: float) -> List[Rule]:
        return self.rule_engine.rules_above_confidence(threshold)

    def patterns(self) -> List[Pattern]:
        return self.miner.get_patterns()

    def enemy_patterns(self) -> List[EnemyPattern]:
        return self.tracker.get_enemy_patterns()

    def strategy_patterns(self) -> List[StrategyPattern]:
        return self.tracker.get_strategy_patterns()

    def level_patterns(self) -> List[LevelPattern]:
        return self.tracker.get_level_patterns()

    def tracked_entities(self) -> List[TrackingSnapshot]:
        return self.tracker.get_tracked()

    def causal_relationships(self) -> List[CausalRelationship]:
        return self.rule_engine.causal_relationships()

    # ── Action ranking ───────────────────────────────────────────────────

    def prioritize_actions(self, candidates: Optional[Sequence[GameAction]],
                           game_state: Optional[Mapping[str, Any]] = None) -> List[PrioritizedAction]:
        return self.prioritizer.prioritize(candidates, game_state)

    def recommend_from_rules(self, game_state: Optional[Mapping[str, Any]],
                             rules: Optional[Sequence[Rule]] = None) -> List[PrioritizedAction]:
        """Recommend actions from the given rules, or from every learned rule"""
        if rules is None:
            rules = self.rule_engine.rules()
        return self.prioritizer.recommend_from_rules(game_state, rules)

    def record_action_result(self, action: GameAction, success: bool, reward: float,
                             execution_time_ms: int = 0):
        self.prioritizer.record_action_result(action, success, reward, execution_time_ms)

    def record_user_feedback(self, action: GameAction, positive: bool, satisfaction_delta: float):
        self.prioritizer.record_user_feedback(action, positive, satisfaction_delta)

    def set_game_type(self, game_type: str):
        self.prioritizer.set_game_type(game_type)
        self.rule_engine.game_type = game_type

    def set_critical_state_flags(self, low_health: bool = False, low_resource: bool = False,
                                 under_attack: bool = False, boss_fight: bool = False):
        self.prioritizer.set_critical_state_flags(low_health, low_resource, under_attack, boss_fight)

    # ── Subscriptions ────────────────────────────────────────────────────

    def subscribe(self, callback: Callable[[RecognitionEvent], None]) -> int:
        return self.events.subscribe(callback)

    def unsubscribe(self, token: int) -> bool:
        return self.events.unsubscribe(token)

    # ── Bookkeeping ──────────────────────────────────────────────────────

    def stats(self) -> Dict[str, Any]:
        """Counters and sizes; reading them changes nothing"""
        return {
            'running': self.running,
            'frames_processed': self.frame_count,
            'analysis_passes': self.analysis_count,
            'analysis_failures': self.analysis_failures,
            'observations': self.observations.stats(),
            'rule_history': self.rule_history.stats(),
            'patterns': self.miner.get_statistics(),
            'rules': self.rule_engine.stats(),
            'tracking': self.tracker.stats(),
            'prioritizer': self.prioritizer.stats(),
            'events': {
                'subscribers': len(self.events),
                'published': self.events.published,
                'subscriber_failures': self.events.failures,
            },
        }

    def _clear_learned(self):
        # Waits for an in-flight analysis tick so it cannot repopulate the tables
        with self._analysis_lock:
            self.observations.clear()
            self.rule_history.clear()
            self.miner.clear()
            self.rule_engine.clear()
            self.tracker.clear()

    def reset(self):
        """Forget everything, including action history and user feedback"""
        self._clear_learned()
        self.prioritizer.reset()
        with self._frame_lock:
            self.frame_count = 0
        self.analysis_count = 0
        self.analysis_failures = 0
        logger.info("Game insight system reset")

    def save_state(self, filepath: str):
        """Save learned patterns, rules and feedback to file"""
        state = {
            'version': STATE_VERSION,
            'game_type': self.prioritizer.game_type,
            'patterns': [p.to_dict() for p in self.miner.get_patterns()],
            'enemy_patterns': [p.to_dict() for p in self.tracker.get_enemy_patterns()],
            'strategy_patterns': [p.to_dict() for p in self.tracker.get_strategy_patterns()],
            'level_patterns': [p.to_dict() for p in self.tracker.get_level_patterns()],
            'rules': [r.to_dict() for r in self.rule_engine.rules()],
            'causal_relationships': [c.to_dict() for c in self.rule_engine.causal_relationships()],
            'feedback': self.prioritizer.ledger.to_dict(),
        }

        with open(filepath, 'w') as f:
            json.dump(state, f, indent=2)
        logger.info(f"Saved state to {filepath}")

    def load_state(self, filepath: str):
        """Load state written by save_state(), merging into the current tables"""
        with open(filepath, 'r') as f:
            state = json.load(f)

        for data in state.get('patterns', []):
            self.miner.add_pattern(pattern_from_dict(data))

        self.tracker.load(
            [EnemyPattern.from_dict(d) for d in state.get('enemy_patterns', [])],
            [StrategyPattern.from_dict(d) for d in state.get('strategy_patterns', [])],
            [LevelPattern.from_dict(d) for d in state.get('level_patterns', [])],
        )

        rules = []
        for data in state.get('rules', []):
            try:
                rules.append(Rule.from_dict(data))
            except (KeyError, ValueError):
                logger.warning(f"Skipping unreadable rule in {filepath}: {data.get('id', '?')}")
        causal = [CausalRelationship.from_dict(d) for d in state.get('causal_relationships', [])]
        self.rule_engine.load(rules, causal)

        self.prioritizer.ledger.load(state.get('feedback', {}))
        if state.get('game_type'):
            self.set_game_type(state['game_type'])
        logger.info(f"Loaded state from {filepath}: {len(rules)} rules, {len(causal)} causal relationships")
