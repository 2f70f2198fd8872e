"""
Tests for patterns and the sliding-window miner.

Tests cover:
- Tolerant step comparison
- Consistency growth and its upper bound
- Pattern serialization by kind
- Observation to step reduction
- Novelty test
- Mining passes (creation, re-matching, determinism)
- Concurrent reads while mining
"""

import sys
import os
import threading

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from insight.values import ValueMap
from insight.memory import Observation
from insight.pattern import (
    MAX_CONSISTENCY, EnemyPattern, LevelPattern, Pattern, PatternStep,
    StrategyPattern, describe_steps, pattern_from_dict, step_matches, steps_match,
)
from insight.engine import PatternMiner, is_significant, observation_to_step, observations_to_steps


def make_observation(ts, **state):
    return Observation(timestamp=ts, game_state=ValueMap.from_raw(state))


def alternating_history(n=6):
    return [make_observation(float(i), score=100 if i % 2 == 0 else 150) for i in range(n)]


class TestStepMatching:
    def test_reflexive(self):
        step = PatternStep('move', {'direction': 'right', 'speed': 2.0}, 1000)
        assert step_matches(step, step)

    def test_numeric_tolerance(self):
        ref = PatternStep('move', {'speed': 100.0}, 1000)
        assert step_matches(ref, PatternStep('move', {'speed': 109.0}, 1000))
        assert not step_matches(ref, PatternStep('move', {'speed': 111.0}, 1000))

    def test_duration_tolerance(self):
        ref = PatternStep('move', {}, 1000)
        assert step_matches(ref, PatternStep('move', {}, 1250))
        assert not step_matches(ref, PatternStep('move', {}, 1500))

    def test_action_type_must_match(self):
        assert not step_matches(PatternStep('move'), PatternStep('tap'))

    def test_direction_only_checked_when_candidate_has_one(self):
        ref = PatternStep('move', {'direction': 'left'}, 1000)
        assert step_matches(ref, PatternStep('move', {}, 1000))
        assert not step_matches(ref, PatternStep('move', {'direction': 'right'}, 1000))

    def test_missing_reference_key_fails(self):
        ref = PatternStep('tap', {'target': 'enemy'})
        assert not step_matches(ref, PatternStep('tap', {}))

    def test_sequences_need_equal_length(self):
        step = PatternStep('move', {}, 1000)
        assert steps_match([step, step], [step, step])
        assert not steps_match([step, step], [step])


class TestPattern:
    def test_consistency_monotonic_and_bounded(self):
        pattern = Pattern.create([PatternStep('move'), PatternStep('tap')])
        previous = pattern.consistency
        for _ in range(500):
            pattern.record_match(now=1.0)
            assert pattern.consistency >= previous
            assert 0.0 <= pattern.consistency <= MAX_CONSISTENCY
            previous = pattern.consistency
        assert pattern.match_count == 500

    def test_first_match_adds_tenth(self):
        pattern = Pattern.create([PatternStep('move')])
        pattern.record_match()
        assert pattern.consistency == pytest.approx(0.1)
        pattern.record_match()
        assert pattern.consistency == pytest.approx(0.15)

    def test_content_addressed_ids(self):
        steps = [PatternStep('move', {'direction': 'up'}, 500)]
        assert Pattern.create(steps).id == Pattern.create(list(steps)).id
        assert Pattern.create(steps).id != Pattern.create([PatternStep('tap')]).id

    def test_step_description(self):
        assert PatternStep('move', {'direction': 'right'}, 1000).description == "move right (1000ms)"
        assert PatternStep('tap', {'target': 'enemy'}).description == "tap at enemy"

    def test_enemy_description_shows_first_three_steps(self):
        steps = [PatternStep('move', {'direction': d}) for d in ('up', 'down', 'left', 'right')]
        pattern = EnemyPattern.create(steps, enemy_type='boss')
        assert pattern.description == "boss: move up → move down → move left → ..."
        assert describe_steps(steps[:2]) == "move up → move down"

    def test_enemy_pattern_starts_detected(self):
        pattern = EnemyPattern.create([PatternStep('move')], enemy_type='boss', consistency=0.6)
        assert pattern.detection_count == 1
        assert pattern.consistency == 0.6

    def test_serialization_keeps_variant(self):
        enemy = EnemyPattern.create([PatternStep('move', {'direction': 'up'}, 100)], enemy_type='boss')
        strategy = StrategyPattern.create([PatternStep('attack')], strategy_name='rush', game_context='rpg')
        level = LevelPattern.create_for('menu')

        restored = [pattern_from_dict(p.to_dict()) for p in (enemy, strategy, level)]
        assert isinstance(restored[0], EnemyPattern)
        assert restored[0].enemy_type == 'boss'
        assert restored[0].steps == enemy.steps
        assert isinstance(restored[1], StrategyPattern)
        assert restored[1].strategy_name == 'rush'
        assert isinstance(restored[2], LevelPattern)
        assert restored[2].id == 'level_pattern_menu'


class TestObservationSteps:
    def test_step_from_observation(self):
        obs = make_observation(1.0, score=5, action='jump', direction='up', color='red')
        step = observation_to_step(obs, make_observation(1.5))
        assert step.action_type == 'jump'
        assert step.duration_ms == 500
        assert step.parameters.number('score') == 5.0
        assert step.parameters.text('direction') == 'up'
        assert 'color' not in step.parameters

    def test_default_action_and_last_duration(self):
        steps = observations_to_steps([make_observation(0.0), make_observation(2.0)])
        assert [s.action_type for s in steps] == ['observe', 'observe']
        assert [s.duration_ms for s in steps] == [2000, 0]

    def test_significance(self):
        flat = observations_to_steps([make_observation(float(i), score=100) for i in range(3)])
        rising = observations_to_steps([make_observation(float(i), score=100 + 50 * i) for i in range(3)])
        assert not is_significant(flat)
        assert is_significant(rising)
        assert not is_significant(rising[:1])


class TestPatternMiner:
    def test_too_few_observations(self):
        miner = PatternMiner(min_observations=3)
        result = miner.mine(alternating_history(2))
        assert result.windows_scanned == 0
        assert miner.get_patterns() == []

    def test_flat_history_creates_nothing(self):
        miner = PatternMiner()
        miner.mine([make_observation(float(i), score=10) for i in range(6)])
        assert miner.get_patterns() == []

    def test_repeating_history_rematches(self):
        miner = PatternMiner()
        result = miner.mine(alternating_history())
        assert result.created
        assert result.matched

    def test_second_pass_creates_nothing_new(self):
        miner = PatternMiner()
        history = alternating_history()
        miner.mine(history)
        count = len(miner.get_patterns())
        consistencies = {p.id: p.consistency for p in miner.get_patterns()}

        second = miner.mine(history)
        assert second.created == []
        assert len(miner.get_patterns()) == count
        for pattern in miner.get_patterns():
            assert pattern.consistency >= consistencies[pattern.id]

    def test_window_capped(self):
        miner = PatternMiner(max_window=3)
        miner.mine(alternating_history(8))
        assert all(p.length <= 3 for p in miner.get_patterns())

    def test_statistics(self):
        miner = PatternMiner()
        assert miner.get_statistics()['pattern_count'] == 0
        miner.mine(alternating_history())
        stats = miner.get_statistics()
        assert stats['pattern_count'] == len(miner.get_patterns())
        assert 0.0 <= stats['avg_consistency'] <= stats['max_consistency'] <= MAX_CONSISTENCY

    def test_reads_during_mining_are_safe(self):
        miner = PatternMiner()
        errors = []
        done = threading.Event()

        def mine_varied_histories():
            try:
                for round_ in range(40):
                    history = [make_observation(float(i), score=(i + 1) * (round_ + 2) * 37)
                               for i in range(8)]
                    miner.mine(history)
            except Exception as exc:
                errors.append(exc)
            finally:
                done.set()

        writer = threading.Thread(target=mine_varied_histories)
        writer.start()
        try:
            while not done.is_set():
                stats = miner.get_statistics()
                assert stats['pattern_count'] >= 0
                for pattern in miner.get_patterns():
                    assert pattern.consistency <= MAX_CONSISTENCY
        finally:
            writer.join(timeout=30)

        assert not writer.is_alive()
        assert errors == []
        assert miner.get_statistics()['passes'] == 40
