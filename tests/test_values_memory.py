"""
Tests for the value model and the observation store.

Tests cover:
- Value classification and typed accessors
- ValueMap construction from raw dicts
- Rect parsing
- Detected element parsing
- Observation features
- Bounded FIFO eviction
"""

import sys
import os
import numpy as np

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from insight.values import Rect, Value, ValueKind, ValueMap
from insight.memory import DetectedElement, Observation, ObservationStore


def make_observation(ts, **state):
    return Observation(timestamp=ts, game_state=ValueMap.from_raw(state))


# ── Values ────────────────────────────────────────────────────────────────

class TestValue:
    def test_bool_is_flag_not_number(self):
        assert Value.of(True).kind is ValueKind.FLAG
        assert Value.of(True).as_number() is None

    def test_int_becomes_number(self):
        value = Value.of(3)
        assert value.kind is ValueKind.NUMBER
        assert value.as_number() == 3.0

    def test_numeric_string_stays_text(self):
        value = Value.of("5")
        assert value.kind is ValueKind.TEXT
        assert value.as_number() is None
        assert value.as_text() == "5"

    def test_unclassifiable_values(self):
        assert Value.of(None) is None
        assert Value.of([1, 2]) is None
        assert Value.of(float('nan')) is None

    def test_numpy_scalar(self):
        value = Value.of(np.float64(2.5))
        assert value.kind is ValueKind.NUMBER
        assert value.as_number() == 2.5

    def test_nested_mapping(self):
        value = Value.of({'a': 1})
        assert value.kind is ValueKind.MAPPING
        assert value.as_mapping().number('a') == 1.0

    def test_str_of_integral_number(self):
        assert str(Value.of(7.0)) == "7"
        assert str(Value.of(0.5)) == "0.5"


class TestValueMap:
    def test_from_raw_drops_unclassifiable(self):
        vm = ValueMap.from_raw({'a': 1, 'b': None, 'c': [1]})
        assert list(vm) == ['a']

    def test_from_none_is_empty(self):
        assert len(ValueMap.from_raw(None)) == 0

    def test_typed_accessors_with_defaults(self):
        vm = ValueMap.from_raw({'score': 10, 'name': 'hero', 'alive': True})
        assert vm.number('score') == 10.0
        assert vm.number('missing') == 0.0
        assert vm.number('name', 5.0) == 5.0
        assert vm.text('score') is None
        assert vm.text('name') == 'hero'
        assert vm.flag('alive') is True
        assert vm.maybe_number('missing') is None

    def test_equality_follows_contents(self):
        a = ValueMap.from_raw({'x': 1, 'y': 'z'})
        b = ValueMap.from_raw({'y': 'z', 'x': 1.0})
        assert a == b
        assert hash(a) == hash(b)

    def test_with_items(self):
        vm = ValueMap.from_raw({'a': 1})
        updated = vm.with_items(b=2, a=None)
        assert 'a' not in updated
        assert updated.number('b') == 2.0
        assert vm.number('a') == 1.0

    def test_numeric_items(self):
        vm = ValueMap.from_raw({'a': 1, 'b': 'x', 'c': 2.5})
        assert sorted(vm.numeric_items()) == [('a', 1.0), ('c', 2.5)]


class TestRect:
    def test_from_list(self):
        rect = Rect.from_any([0, 0, 10, 20])
        assert rect.center_x == 5.0
        assert rect.center_y == 10.0
        assert rect.width == 10.0
        assert rect.height == 20.0

    def test_from_xywh_dict(self):
        rect = Rect.from_any({'x': 10, 'y': 10, 'w': 4, 'h': 6})
        assert rect == Rect(10.0, 10.0, 14.0, 16.0)

    def test_invalid(self):
        assert Rect.from_any("nope") is None
        assert Rect.from_any([1, 2]) is None


# ── Memory ────────────────────────────────────────────────────────────────

class TestDetectedElement:
    def test_from_dict(self):
        element = DetectedElement.from_dict({
            'id': 'e1', 'category': 'enemy', 'bounds': [0, 0, 10, 10],
            'attributes': {'health': 0.5},
        })
        assert element.element_id == 'e1'
        assert element.category == 'enemy'
        assert element.bounds.center_x == 5.0
        assert element.attributes.number('health') == 0.5

    def test_missing_bounds_default_to_zero(self):
        element = DetectedElement.from_dict({'type': 'coin'})
        assert element.category == 'coin'
        assert element.bounds == Rect(0.0, 0.0, 0.0, 0.0)

    def test_coerce_rejects_garbage(self):
        assert DetectedElement.coerce(42) is None


class TestObservation:
    def test_features_include_element_count(self):
        element = DetectedElement('a', 'button', Rect(0, 0, 1, 1))
        obs = Observation(timestamp=1.0, elements=(element, element),
                          game_state=ValueMap.from_raw({'score': 5}))
        features = obs.features()
        assert features.number('element_count') == 2.0
        assert features.number('score') == 5.0

    def test_simplified_features_keep_progress_keys(self):
        obs = make_observation(1.0, score=1, level=2, color='red', game_phase=3)
        simplified = obs.simplified_features()
        assert set(simplified) == {'score', 'level', 'game_phase', 'element_count'}


class TestObservationStore:
    def test_fifo_eviction(self):
        store = ObservationStore(capacity=3)
        for i in range(5):
            store.record(make_observation(float(i)))

        snapshot = store.snapshot()
        assert len(store) == 3
        assert [o.timestamp for o in snapshot] == [2.0, 3.0, 4.0]
        assert store.total_recorded == 5

    def test_latest_and_clear(self):
        store = ObservationStore(capacity=10)
        assert store.latest() is None
        store.record(make_observation(1.0))
        store.record(make_observation(2.0))
        assert store.latest().timestamp == 2.0

        store.clear()
        assert len(store) == 0

    def test_stats(self):
        store = ObservationStore(capacity=10)
        store.record(make_observation(1.0))
        store.record(make_observation(3.5))
        stats = store.stats()
        assert stats['size'] == 2
        assert stats['capacity'] == 10
        assert stats['time_span_s'] == pytest.approx(2.5)
