"""
Insight Configuration - Tunables for observation, mining and scheduling

Three layers:
- MiningConfig:    windows, thresholds and tolerances of the learners
- SchedulerConfig: timing of the background analysis loop
- InsightConfig:   capacities, game type and the two nested configs

Load from code defaults, from INSIGHT_* environment variables, or from a
JSON file written by save().
"""

import json
import os
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Optional


class ConfigError(ValueError):
    """Raised when a configuration value is out of range"""


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == '':
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _known_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class MiningConfig:
    """Pattern, rule and entity mining settings"""
    max_window: int = 10
    min_observations: int = 3           # observations needed before mining
    consistency_threshold: float = 0.5  # patterns below this yield no rule
    significance_threshold: float = 0.2
    numeric_tolerance: float = 0.1
    duration_tolerance: float = 0.3
    causal_change_threshold: float = 0.1
    step_gap_ms: int = 1000             # movement step split on longer gaps

    @classmethod
    def from_env(cls) -> 'MiningConfig':
        """Load from environment variables"""
        return cls(
            max_window=_env_int('INSIGHT_MAX_WINDOW', 10),
            min_observations=_env_int('INSIGHT_MIN_OBSERVATIONS', 3),
            consistency_threshold=_env_float('INSIGHT_CONSISTENCY_THRESHOLD', 0.5),
            significance_threshold=_env_float('INSIGHT_SIGNIFICANCE_THRESHOLD', 0.2),
            numeric_tolerance=_env_float('INSIGHT_NUMERIC_TOLERANCE', 0.1),
            duration_tolerance=_env_float('INSIGHT_DURATION_TOLERANCE', 0.3),
            causal_change_threshold=_env_float('INSIGHT_CAUSAL_THRESHOLD', 0.1),
            step_gap_ms=_env_int('INSIGHT_STEP_GAP_MS', 1000),
        )


@dataclass
class SchedulerConfig:
    """Background analysis loop timing, in seconds"""
    initial_delay_s: float = 0.5
    period_s: float = 1.0
    stop_timeout_s: float = 1.0

    @classmethod
    def from_env(cls) -> 'SchedulerConfig':
        """Load from environment variables"""
        return cls(
            initial_delay_s=_env_float('INSIGHT_INITIAL_DELAY', 0.5),
            period_s=_env_float('INSIGHT_PERIOD', 1.0),
            stop_timeout_s=_env_float('INSIGHT_STOP_TIMEOUT', 1.0),
        )


@dataclass
class InsightConfig:
    """Master configuration for a GameInsightSystem"""
    observation_capacity: int = 1000
    rule_history_capacity: int = 100
    min_observations_for_analysis: int = 10
    log_every_frames: int = 100
    game_type: str = "unknown"
    ingest_when_stopped: bool = False

    mining: MiningConfig = field(default_factory=MiningConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    def __post_init__(self):
        self.validate()

    def validate(self):
        if self.observation_capacity <= 0:
            raise ConfigError("observation_capacity must be positive")
        if self.rule_history_capacity <= 0:
            raise ConfigError("rule_history_capacity must be positive")
        if self.min_observations_for_analysis < 0:
            raise ConfigError("min_observations_for_analysis must not be negative")
        if self.log_every_frames <= 0:
            raise ConfigError("log_every_frames must be positive")
        if self.mining.max_window < 2:
            raise ConfigError("mining.max_window must be at least 2")
        if self.mining.min_observations < 1:
            raise ConfigError("mining.min_observations must be positive")
        if self.mining.step_gap_ms <= 0:
            raise ConfigError("mining.step_gap_ms must be positive")
        for name in ('numeric_tolerance', 'duration_tolerance',
                     'significance_threshold', 'causal_change_threshold'):
            if getattr(self.mining, name) < 0:
                raise ConfigError(f"mining.{name} must not be negative")
        if not 0.0 <= self.mining.consistency_threshold <= 1.0:
            raise ConfigError("mining.consistency_threshold must be within [0, 1]")
        if self.scheduler.period_s <= 0:
            raise ConfigError("scheduler.period_s must be positive")
        if self.scheduler.initial_delay_s < 0:
            raise ConfigError("scheduler.initial_delay_s must not be negative")
        if self.scheduler.stop_timeout_s <= 0:
            raise ConfigError("scheduler.stop_timeout_s must be positive")

    @classmethod
    def from_env(cls) -> 'InsightConfig':
        """Load from INSIGHT_* environment variables"""
        return cls(
            observation_capacity=_env_int('INSIGHT_OBSERVATION_CAPACITY', 1000),
            rule_history_capacity=_env_int('INSIGHT_RULE_HISTORY_CAPACITY', 100),
            min_observations_for_analysis=_env_int('INSIGHT_MIN_ANALYSIS_OBSERVATIONS', 10),
            log_every_frames=_env_int('INSIGHT_LOG_EVERY_FRAMES', 100),
            game_type=os.getenv('INSIGHT_GAME_TYPE', 'unknown'),
            ingest_when_stopped=os.getenv('INSIGHT_INGEST_WHEN_STOPPED', 'false').lower() == 'true',
            mining=MiningConfig.from_env(),
            scheduler=SchedulerConfig.from_env(),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InsightConfig':
        top = _known_fields(cls, data)
        top['mining'] = MiningConfig(**_known_fields(MiningConfig, data.get('mining') or {}))
        top['scheduler'] = SchedulerConfig(**_known_fields(SchedulerConfig, data.get('scheduler') or {}))
        return cls(**top)

    @classmethod
    def from_file(cls, filepath: str) -> 'InsightConfig':
        """Load configuration from a JSON file"""
        with open(filepath, 'r') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ConfigError(f"{filepath} does not contain a JSON object")
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize configuration"""
        return asdict(self)

    def save(self, filepath: str):
        """Save configuration to file"""
        with open(filepath, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def with_overrides(self, game_type: Optional[str] = None,
                       ingest_when_stopped: Optional[bool] = None) -> 'InsightConfig':
        data = self.to_dict()
        if game_type is not None:
            data['game_type'] = game_type
        if ingest_when_stopped is not None:
            data['ingest_when_stopped'] = ingest_when_stopped
        return InsightConfig.from_dict(data)
