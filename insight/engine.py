"""
Pattern Mining Engine - Sliding-window discovery over the observation stream

Processing per tick:
1. Turn each observation into a PatternStep (what happened + key features)
2. For every window length 2..max_window, slide over the history
3. A window that matches a known pattern reinforces it (consistency climbs)
4. An unmatched window becomes a new pattern only if it is "significant":
   some numeric feature moved by more than 20% between its first and last step

The novelty test is a trend heuristic, not a statistical test.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from .memory import Observation
from .pattern import (
    DURATION_TOLERANCE, NUMERIC_TOLERANCE, Pattern, PatternStep,
)
from .values import ValueMap

logger = logging.getLogger(__name__)


DEFAULT_ACTION = "observe"


@dataclass
class MiningResult:
    """What one mining pass did"""
    windows_scanned: int = 0
    matched: List[str] = field(default_factory=list)
    created: List[str] = field(default_factory=list)


def observation_to_step(observation: Observation, next_observation: Optional[Observation] = None) -> PatternStep:
    """
    Reduce an observation to a PatternStep.

    Action type comes from the state's 'action' field when the orchestrator
    reports one; parameters are the simplified progress features plus any
    direction/target hint; duration is the gap to the next observation.
    """
    state = observation.game_state
    action_type = state.text('action', DEFAULT_ACTION)

    params = observation.simplified_features()
    extras = {}
    for key in ('direction', 'target'):
        if key in state:
            extras[key] = state[key]
    if extras:
        params = ValueMap({**dict(params.items()), **extras})

    duration_ms = 0
    if next_observation is not None:
        duration_ms = max(0, int(round((next_observation.timestamp - observation.timestamp) * 1000)))

    return PatternStep(action_type=action_type, parameters=params, duration_ms=duration_ms)


def observations_to_steps(observations: Sequence[Observation]) -> List[PatternStep]:
    steps = []
    for i, obs in enumerate(observations):
        nxt = observations[i + 1] if i + 1 < len(observations) else None
        steps.append(observation_to_step(obs, nxt))
    return steps


def feature_matrix(steps: Sequence[PatternStep]):
    """Rows = steps, columns = every numeric parameter seen in the window (missing = 0)"""
    keys = sorted({k for s in steps for k, _ in s.parameters.numeric_items()})
    matrix = np.zeros((len(steps), len(keys)), dtype=float)
    for row, step in enumerate(steps):
        for col, key in enumerate(keys):
            matrix[row, col] = step.parameters.number(key)
    return keys, matrix


def is_significant(steps: Sequence[PatternStep], threshold: float = 0.2) -> bool:
    """True if any numeric feature changes by more than `threshold` of its first value"""
    if len(steps) < 2:
        return False
    keys, matrix = feature_matrix(steps)
    if not keys:
        return False
    first, last = matrix[0], matrix[-1]
    return bool(np.any(np.abs(last - first) > threshold * np.abs(first)))


class PatternMiner:
    """
    Mines recurring step subsequences from observation snapshots.

    Patterns are kept in insertion order; the first matching pattern wins,
    which keeps results deterministic for a given history.
    """

    def __init__(self, max_window: int = 10, min_observations: int = 3,
                 significance_threshold: float = 0.2,
                 numeric_tolerance: float = NUMERIC_TOLERANCE,
                 duration_tolerance: float = DURATION_TOLERANCE):
        self.max_window = max_window
        self.min_observations = min_observations
        self.significance_threshold = significance_threshold
        self.numeric_tolerance = numeric_tolerance
        self.duration_tolerance = duration_tolerance

        self.patterns: Dict[str, Pattern] = {}
        self.passes = 0
        self._lock = threading.RLock()

    def mine(self, observations: Sequence[Observation]) -> MiningResult:
        """Run one full sliding-window pass over a snapshot of observations"""
        result = MiningResult()
        if len(observations) < self.min_observations:
            return result

        steps = observations_to_steps(observations)
        now = observations[-1].timestamp

        with self._lock:
            for length in range(2, min(self.max_window, len(steps)) + 1):
                for start in range(len(steps) - length + 1):
                    window = steps[start:start + length]
                    result.windows_scanned += 1

                    matched = self._find_match(window)
                    if matched is not None:
                        matched.record_match(now)
                        result.matched.append(matched.id)
                    elif is_significant(window, self.significance_threshold):
                        pattern = self._create_pattern(window)
                        if pattern is not None:
                            result.created.append(pattern.id)

            self.passes += 1
            passes = self.passes
        if result.created:
            logger.debug(f"Mining pass {passes}: {len(result.created)} new patterns, "
                         f"{len(result.matched)} re-matches")
        return result

    def _find_match(self, window: Sequence[PatternStep]) -> Optional[Pattern]:
        for pattern in self.patterns.values():
            if pattern.matches(window,
                               numeric_tolerance=self.numeric_tolerance,
                               duration_tolerance=self.duration_tolerance):
                return pattern
        return None

    def _create_pattern(self, window: Sequence[PatternStep]) -> Optional[Pattern]:
        pattern = Pattern.create(window)
        if pattern.id in self.patterns:
            # Identical content is already known (it would have matched)
            return None
        self.patterns[pattern.id] = pattern
        logger.debug(f"Created new pattern: {pattern.id} ({pattern.length} steps)")
        return pattern

    def add_pattern(self, pattern: Pattern):
        with self._lock:
            self.patterns[pattern.id] = pattern

    def get_patterns(self) -> List[Pattern]:
        with self._lock:
            return list(self.patterns.values())

    def clear(self):
        with self._lock:
            self.patterns.clear()
            self.passes = 0

    def get_statistics(self) -> Dict[str, float]:
        with self._lock:
            consistencies = np.array([p.consistency for p in self.patterns.values()], dtype=float)
            count, passes = len(self.patterns), self.passes
        return {
            'pattern_count': count,
            'passes': passes,
            'avg_consistency': float(consistencies.mean()) if consistencies.size else 0.0,
            'max_consistency': float(consistencies.max()) if consistencies.size else 0.0,
        }
