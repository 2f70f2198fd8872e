"""
Tests for the orchestrating system, its configuration and the CLI.

Tests cover:
- Configuration defaults, validation, environment and file loading
- Frame ingestion and the not-running guard
- Analysis ticks (patterns, rules, causal links, events)
- Subscriber isolation
- Background lifecycle (start/stop, reset during analysis)
- Persistence round trip and merging of loaded rules
- CLI commands
"""

import sys
import os
import json
import threading
import time

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from insight.config import ConfigError, InsightConfig, MiningConfig, SchedulerConfig
from insight.prioritizer import ActionKind, GameAction
from insight.rules import Rule, RuleType
from system import GameInsightSystem
import cli


def offline_system(**mining):
    return GameInsightSystem(InsightConfig(ingest_when_stopped=True, mining=MiningConfig(**mining)))


def feed_alternating(system, n=10):
    for i in range(n):
        system.ingest_frame([], {'score': 100 if i % 2 == 0 else 150}, timestamp=float(i))


def enemy(x, y):
    return {'id': 'e1', 'category': 'enemy', 'bounds': [x - 5, y - 5, x + 5, y + 5]}


def wait_for(predicate, timeout=3.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestConfig:
    def test_defaults(self):
        config = InsightConfig()
        assert config.observation_capacity == 1000
        assert config.rule_history_capacity == 100
        assert config.mining.max_window == 10
        assert config.mining.consistency_threshold == 0.5
        assert config.scheduler.initial_delay_s == 0.5
        assert config.scheduler.period_s == 1.0
        assert config.game_type == "unknown"
        assert config.ingest_when_stopped is False

    @pytest.mark.parametrize("kwargs", [
        {'observation_capacity': 0},
        {'rule_history_capacity': -1},
        {'mining': MiningConfig(max_window=1)},
        {'mining': MiningConfig(consistency_threshold=1.5)},
        {'scheduler': SchedulerConfig(period_s=0)},
    ])
    def test_validation(self, kwargs):
        with pytest.raises(ConfigError):
            InsightConfig(**kwargs)

    def test_config_error_is_value_error(self):
        assert issubclass(ConfigError, ValueError)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv('INSIGHT_OBSERVATION_CAPACITY', '50')
        monkeypatch.setenv('INSIGHT_PERIOD', '0.25')
        monkeypatch.setenv('INSIGHT_GAME_TYPE', 'rpg')
        monkeypatch.setenv('INSIGHT_INGEST_WHEN_STOPPED', 'true')
        config = InsightConfig.from_env()
        assert config.observation_capacity == 50
        assert config.scheduler.period_s == 0.25
        assert config.game_type == 'rpg'
        assert config.ingest_when_stopped is True

    def test_from_env_rejects_garbage(self, monkeypatch):
        monkeypatch.setenv('INSIGHT_MAX_WINDOW', 'lots')
        with pytest.raises(ConfigError):
            InsightConfig.from_env()

    def test_file_round_trip(self, tmp_path):
        path = str(tmp_path / "config.json")
        original = InsightConfig(observation_capacity=42, mining=MiningConfig(max_window=4))
        original.save(path)

        loaded = InsightConfig.from_file(path)
        assert loaded == original
        assert loaded.to_dict()['mining']['max_window'] == 4


class TestIngestion:
    def test_ignored_when_not_running(self):
        system = GameInsightSystem()
        assert system.ingest_frame([], {'score': 1}) is None
        assert len(system.observations) == 0

    def test_none_inputs_are_empty(self):
        system = offline_system()
        obs = system.ingest_frame(None, None, timestamp=5.0)
        assert obs.timestamp == 5.0
        assert obs.elements == ()
        assert len(obs.game_state) == 0

    def test_frames_are_recorded_in_both_histories(self):
        system = GameInsightSystem(InsightConfig(ingest_when_stopped=True, rule_history_capacity=3))
        feed_alternating(system, 5)
        assert len(system.observations) == 5
        assert len(system.rule_history) == 3
        assert system.stats()['frames_processed'] == 5

    def test_unusable_elements_dropped(self):
        system = offline_system()
        obs = system.ingest_frame([enemy(0, 0), "garbage", 7], {}, timestamp=0.0)
        assert len(obs.elements) == 1
        assert [s.entity_id for s in system.tracked_entities()] == ['e1']

    def test_enemy_pattern_event(self):
        system = offline_system()
        received = []
        system.subscribe(received.append)

        for i, (x, y) in enumerate([(0, 0), (10, 0), (10, 10), (20, 10)]):
            system.ingest_frame([enemy(x, y)], {}, timestamp=float(i))

        assert len(system.enemy_patterns()) == 1
        assert [e.pattern_kind for e in received] == ['enemy']

    def test_tracker_publishes_on_system_bus(self):
        system = offline_system()
        assert system.tracker.events is system.events


class TestAnalysis:
    def test_tick_mines_patterns_and_causes(self):
        system = offline_system()
        for i in range(6):
            system.ingest_frame([], {'score': 10 * i}, timestamp=float(i))
        summary = system.analyze_now()

        assert summary['patterns_created'] > 0
        assert summary['causal_upserts'] > 0
        assert system.patterns()
        assert system.causal_relationships()

    def test_rules_promoted_and_announced(self):
        system = offline_system(consistency_threshold=0.1)
        received = []
        system.subscribe(received.append)
        feed_alternating(system)

        summary = system.analyze_now()

        assert summary['rules_created'] >= 1
        assert system.rules_by_type(RuleType.SCORING)
        rule_events = [e for e in received if e.pattern_kind == 'rule']
        assert len(rule_events) == summary['rules_created']

        # A second tick merges instead of duplicating
        scoring = system.rules_by_type(RuleType.SCORING)[0]
        system.analyze_now()
        keys = [(r.rule_type, r.description) for r in system.rules()]
        assert len(keys) == len(set(keys))
        assert scoring.observation_count >= 2

    def test_failing_subscriber_is_isolated(self):
        system = offline_system(consistency_threshold=0.1)
        received = []

        def broken(event):
            raise RuntimeError("subscriber bug")

        system.subscribe(broken)
        system.subscribe(received.append)
        feed_alternating(system)
        system.analyze_now()

        assert received
        assert system.stats()['events']['subscriber_failures'] == len(received)

    def test_unsubscribe(self):
        system = offline_system(consistency_threshold=0.1)
        received = []
        token = system.subscribe(received.append)
        assert system.unsubscribe(token)
        assert not system.unsubscribe(token)

        feed_alternating(system)
        system.analyze_now()
        assert received == []

    def test_level_and_strategy_analysis_need_history(self):
        system = offline_system()
        for i in range(9):
            system.ingest_frame([], {'screenType': 'battle', 'action': 'attack', 'score': i}, timestamp=float(i))
        assert system.analyze_now()['level_patterns'] == 0

        system.ingest_frame([], {'screenType': 'battle', 'action': 'attack', 'score': 9}, timestamp=9.0)
        summary = system.analyze_now()
        assert summary['level_patterns'] == 1
        assert summary['strategy_patterns'] >= 1
        assert system.level_patterns()[0].level_type == 'battle'

    def test_stats_idempotent(self):
        system = offline_system()
        feed_alternating(system)
        system.analyze_now()
        assert system.stats() == system.stats()

    def test_recommend_from_learned_rules_by_default(self):
        system = offline_system()
        assert system.recommend_from_rules({}) == []


class TestLifecycle:
    def fast_config(self):
        return InsightConfig(scheduler=SchedulerConfig(initial_delay_s=0.01, period_s=0.02, stop_timeout_s=1.0))

    def test_start_analyze_stop(self):
        system = GameInsightSystem(self.fast_config())
        system.start()
        try:
            assert system.running
            assert system.ingest_frame([], {'score': 1}) is not None
            assert wait_for(lambda: system.analysis_count > 0)
        finally:
            system.stop()

        assert not system.running
        assert len(system.observations) == 0
        assert system.ingest_frame([], {'score': 1}) is None

    def test_stop_keeps_action_history(self):
        system = GameInsightSystem(self.fast_config())
        system.start()
        system.record_action_result(GameAction(ActionKind.TAP, {'action_type': 'attack'}), True, 1.0)
        system.stop()
        assert system.prioritizer.ledger.success_record('attack') is not None

    def test_stop_without_start(self):
        system = GameInsightSystem()
        system.stop()
        assert not system.running

    def test_reset_forgets_everything(self):
        system = offline_system()
        feed_alternating(system)
        system.analyze_now()
        system.record_action_result(GameAction('heal'), True, 1.0)

        system.reset()

        stats = system.stats()
        assert stats['frames_processed'] == 0
        assert stats['patterns']['pattern_count'] == 0
        assert stats['prioritizer']['success_record_count'] == 0

    def test_reset_waits_for_running_analysis(self):
        system = offline_system()
        feed_alternating(system)
        system.analyze_now()
        assert system.patterns()

        # Stand in for an analysis tick that is still running
        system._analysis_lock.acquire()
        resetter = threading.Thread(target=system.reset)
        try:
            resetter.start()
            time.sleep(0.05)
            assert resetter.is_alive()
            assert system.patterns()
        finally:
            system._analysis_lock.release()
        resetter.join(timeout=3.0)

        assert not resetter.is_alive()
        assert system.patterns() == []
        assert system.rules() == []


class TestPersistence:
    def test_round_trip(self, tmp_path):
        path = str(tmp_path / "state.json")
        system = offline_system(consistency_threshold=0.1)
        feed_alternating(system)
        system.analyze_now()
        system.set_game_type('rpg')
        system.record_user_feedback(GameAction('heal'), True, 0.2)
        system.save_state(path)

        restored = offline_system()
        restored.load_state(path)

        assert sorted(r.id for r in restored.rules()) == sorted(r.id for r in system.rules())
        assert len(restored.patterns()) == len(system.patterns())
        assert len(restored.causal_relationships()) == len(system.causal_relationships())
        assert restored.prioritizer.game_type == 'rpg'
        assert restored.prioritizer.ledger.feedback_record('heal').satisfaction == pytest.approx(0.7)

    def test_unknown_rule_types_skipped(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({'rules': [
            {'id': 'a', 'type': 'bogus', 'description': 'x'},
            {'id': 'b', 'type': 'goal', 'description': 'Collect gems', 'confidence': 0.9},
        ]}))

        system = offline_system()
        system.load_state(str(path))
        assert [r.id for r in system.rules()] == ['b']

    def test_loaded_rule_merges_with_known_rule(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({'rules': [
            {'id': 'rule_0', 'type': 'goal', 'description': 'Collect gems',
             'confidence': 0.9, 'observation_count': 4},
        ]}))

        system = offline_system()
        system.rule_engine.add_rule(Rule('rule_7', RuleType.GOAL, 'Collect gems', confidence=0.6))
        system.load_state(str(path))
        system.load_state(str(path))

        rules = system.rules()
        assert [r.id for r in rules] == ['rule_7']
        assert rules[0].confidence == 0.9
        assert rules[0].observation_count == 4

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            GameInsightSystem().load_state(str(tmp_path / "nope.json"))


class TestCLI:
    def test_rank(self, tmp_path, capsys):
        path = tmp_path / "rank.json"
        path.write_text(json.dumps({
            'state': {'health': 0.1},
            'flags': {'low_health': True},
            'game_type': 'rpg',
            'actions': [
                {'id': 'attack', 'kind': 'tap', 'parameters': {'action_type': 'attack'}},
                {'id': 'heal', 'kind': 'tap', 'parameters': {'action_type': 'heal'}},
            ],
        }))

        assert cli.main(['rank', str(path), '--json']) == 0
        ranked = json.loads(capsys.readouterr().out)
        assert [r['action']['id'] for r in ranked] == ['heal', 'attack']
        assert ranked[0]['factors']['critical_health'] == 3.0
        assert ranked[0]['factors']['game_specific'] == 1.5

    def test_recommend(self, tmp_path, capsys):
        path = tmp_path / "recommend.json"
        path.write_text(json.dumps({
            'state': {},
            'rules': [
                {'id': 'r1', 'type': 'STRATEGY', 'description': 'Hit the boss',
                 'confidence': 0.9, 'parameters': {'action': 'attack', 'target_id': 'boss'}},
                {'id': 'r2', 'type': 'constraint', 'description': 'Avoid lava', 'confidence': 0.9},
            ],
        }))

        assert cli.main(['recommend', str(path), '--json']) == 0
        recommended = json.loads(capsys.readouterr().out)
        assert len(recommended) == 1
        assert recommended[0]['action']['parameters']['target_id'] == 'boss'

    def test_replay(self, tmp_path, capsys):
        frames = [{'timestamp': float(i), 'elements': [], 'state': {'score': 100 if i % 2 == 0 else 150}}
                  for i in range(10)]
        path = tmp_path / "frames.json"
        path.write_text(json.dumps({'frames': frames}))
        saved = tmp_path / "state.json"

        assert cli.main(['replay', str(path), '--json', '--save', str(saved)]) == 0
        summary = json.loads(capsys.readouterr().out)
        assert summary['frames'] == 10
        assert summary['patterns']
        assert saved.exists()

    def test_missing_input(self, tmp_path, capsys):
        assert cli.main(['rank', str(tmp_path / "missing.json")]) == 1
        assert "Error" in capsys.readouterr().err
