"""
Feedback Records - What happened when an action was taken, and what the user thought

Two running statistics per action key ("attack", "collect_gem", ...):
- ActionSuccessRecord: attempts, successes, smoothed reward, execution time
- UserFeedbackRecord:  thumbs up/down counts and a bounded satisfaction score

Both are upserted by explicit record calls and only cleared by a reset.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

REWARD_SMOOTHING = 0.9  # weight kept by the previous average


@dataclass
class ActionSuccessRecord:
    action_key: str
    attempts: int = 0
    successes: int = 0
    avg_reward: float = 0.0
    last_attempt_time: float = 0.0
    total_execution_time_ms: int = 0

    def record_attempt(self, success: bool, reward: float, execution_time_ms: int = 0,
                       now: Optional[float] = None):
        self.attempts += 1
        if success:
            self.successes += 1
        # Exponential moving average
        self.avg_reward = self.avg_reward * REWARD_SMOOTHING + reward * (1.0 - REWARD_SMOOTHING)
        self.last_attempt_time = now if now is not None else time.time()
        self.total_execution_time_ms += int(execution_time_ms)

    @property
    def success_rate(self) -> float:
        return self.successes / self.attempts if self.attempts > 0 else 0.0

    @property
    def avg_execution_time_ms(self) -> float:
        return self.total_execution_time_ms / self.attempts if self.attempts > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action_key': self.action_key,
            'attempts': self.attempts,
            'successes': self.successes,
            'avg_reward': self.avg_reward,
            'last_attempt_time': self.last_attempt_time,
            'total_execution_time_ms': self.total_execution_time_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ActionSuccessRecord':
        return cls(**data)


@dataclass
class UserFeedbackRecord:
    action_key: str
    positive_count: int = 0
    negative_count: int = 0
    satisfaction: float = 0.5  # neutral
    last_feedback_time: float = 0.0

    def record_feedback(self, positive: bool, satisfaction_delta: float,
                        now: Optional[float] = None):
        if positive:
            self.positive_count += 1
        else:
            self.negative_count += 1
        self.satisfaction = max(0.0, min(1.0, self.satisfaction + satisfaction_delta))
        self.last_feedback_time = now if now is not None else time.time()

    @property
    def feedback_ratio(self) -> float:
        total = self.positive_count + self.negative_count
        return self.positive_count / total if total > 0 else 0.5

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action_key': self.action_key,
            'positive_count': self.positive_count,
            'negative_count': self.negative_count,
            'satisfaction': self.satisfaction,
            'last_feedback_time': self.last_feedback_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UserFeedbackRecord':
        return cls(**data)


class FeedbackLedger:
    """Keyed store of success and feedback records"""

    def __init__(self):
        self.success: Dict[str, ActionSuccessRecord] = {}
        self.feedback: Dict[str, UserFeedbackRecord] = {}
        self._lock = threading.Lock()

    def record_result(self, action_key: str, success: bool, reward: float,
                      execution_time_ms: int = 0) -> ActionSuccessRecord:
        with self._lock:
            record = self.success.get(action_key)
            if record is None:
                record = ActionSuccessRecord(action_key)
                self.success[action_key] = record
            record.record_attempt(success, reward, execution_time_ms)
            return record

    def record_feedback(self, action_key: str, positive: bool,
                        satisfaction_delta: float) -> UserFeedbackRecord:
        with self._lock:
            record = self.feedback.get(action_key)
            if record is None:
                record = UserFeedbackRecord(action_key)
                self.feedback[action_key] = record
            record.record_feedback(positive, satisfaction_delta)
            return record

    def success_record(self, action_key: str) -> Optional[ActionSuccessRecord]:
        with self._lock:
            return self.success.get(action_key)

    def feedback_record(self, action_key: str) -> Optional[UserFeedbackRecord]:
        with self._lock:
            return self.feedback.get(action_key)

    def feedback_with_prefix(self, prefix: str) -> List[UserFeedbackRecord]:
        with self._lock:
            return [r for k, r in self.feedback.items() if k.startswith(prefix)]

    def clear(self):
        with self._lock:
            self.success.clear()
            self.feedback.clear()

    def success_stats(self) -> Dict[str, Dict[str, float]]:
        with self._lock:
            records = [r for r in self.success.values() if r.attempts > 0]
            return {
                'success_rates': {r.action_key: r.success_rate for r in records},
                'avg_rewards': {r.action_key: r.avg_reward for r in records},
                'avg_execution_times': {r.action_key: r.avg_execution_time_ms for r in records},
            }

    def feedback_stats(self) -> Dict[str, Dict[str, float]]:
        with self._lock:
            return {
                'feedback_ratios': {k: r.feedback_ratio for k, r in self.feedback.items()},
                'satisfaction_scores': {k: r.satisfaction for k, r in self.feedback.items()},
            }

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'success': [r.to_dict() for r in self.success.values()],
                'feedback': [r.to_dict() for r in self.feedback.values()],
            }

    def load(self, data: Dict[str, Any]):
        with self._lock:
            for item in data.get('success', []):
                record = ActionSuccessRecord.from_dict(item)
                self.success[record.action_key] = record
            for item in data.get('feedback', []):
                record = UserFeedbackRecord.from_dict(item)
                self.feedback[record.action_key] = record
