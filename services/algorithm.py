"""
SM-2 Scheduling Algorithm for Vocabulary Review
===============================================

This module holds the pure scheduling math: no database access, no clock.
Callers hand in the current memory state of one word, the quality of the
answer and the review time, and get back the next state.

Key Features:
- SuperMemo-2 easiness update with a configurable floor
- Fixed first two intervals, multiplicative growth afterwards
- Lapse handling (repetitions and interval reset, lapse counter)
- Mastery predicate used by the progress tracker and the dashboard

All constants live in SchedulingPolicy so deployments can tune them through
the Flask config instead of editing code.
"""

import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import IntEnum
from typing import Mapping, Optional

from errors import InvalidQuality

MIN_QUALITY = 0
MAX_QUALITY = 5


class ReviewQuality(IntEnum):
    """Answer quality on the SM-2 scale"""

    BLACKOUT = 0  # Complete blank
    FORGOT = 1  # "Don't know" button
    ALMOST = 2  # Wrong, but the answer felt familiar
    VAGUE = 3  # "Vague" button - recalled with effort
    HESITANT = 4  # Recalled after a pause
    KNOWN = 5  # "Know" button - instant recall


@dataclass(frozen=True)
class SchedulingPolicy:
    """Tunable constants of the scheduler, mastery predicate and streak walk"""

    initial_easiness: float = 2.5
    min_easiness: float = 1.3
    easiness_base: float = 0.1
    easiness_linear: float = 0.08
    easiness_quadratic: float = 0.02
    first_interval: int = 1
    second_interval: int = 6
    lapse_threshold: int = 3
    lapse_interval: int = 1
    mastery_min_repetitions: int = 5
    mastery_min_easiness: float = 2.5
    mastery_min_interval: int = 30
    streak_max_lookback_days: int = 365

    @classmethod
    def from_config(cls, config: Mapping) -> "SchedulingPolicy":
        """Build a policy from Flask config keys, keeping defaults for absent keys"""
        mapping = {
            "initial_easiness": "SRS_INITIAL_EASINESS",
            "min_easiness": "SRS_MIN_EASINESS",
            "easiness_base": "SRS_EASINESS_BASE",
            "easiness_linear": "SRS_EASINESS_LINEAR",
            "easiness_quadratic": "SRS_EASINESS_QUADRATIC",
            "first_interval": "SRS_FIRST_INTERVAL",
            "second_interval": "SRS_SECOND_INTERVAL",
            "lapse_threshold": "SRS_LAPSE_THRESHOLD",
            "lapse_interval": "SRS_LAPSE_INTERVAL",
            "mastery_min_repetitions": "MASTERY_MIN_REPETITIONS",
            "mastery_min_easiness": "MASTERY_MIN_EASINESS",
            "mastery_min_interval": "MASTERY_MIN_INTERVAL",
            "streak_max_lookback_days": "STREAK_MAX_LOOKBACK_DAYS",
        }
        values = {
            field: config[key] for field, key in mapping.items() if key in config
        }
        return cls(**values)


@dataclass
class MemoryState:
    """Scheduling state of one word for one learner"""

    easiness_factor: float
    interval_days: int
    repetitions: int
    lapse_count: int = 0
    due_at: Optional[datetime] = None
    last_reviewed_at: Optional[datetime] = None


@dataclass(frozen=True)
class ReviewResult:
    """Outcome of applying one answer to a memory state"""

    state: MemoryState
    quality: int
    lapsed: bool
    mastered_before: bool
    mastered_after: bool

    @property
    def became_mastered(self) -> bool:
        return self.mastered_after and not self.mastered_before


def validate_quality(quality) -> int:
    """Return quality as int, or raise InvalidQuality"""
    # bool is an int subclass; True must not sneak in as quality 1
    if isinstance(quality, bool) or not isinstance(quality, int):
        raise InvalidQuality()
    if not MIN_QUALITY <= quality <= MAX_QUALITY:
        raise InvalidQuality()
    return quality


def round_half_up(value: float) -> int:
    """Round to nearest integer with .5 going up (round() would go to even)"""
    return int(math.floor(value + 0.5))


class Sm2Scheduler:
    """Applies review answers to memory states"""

    def __init__(self, policy: SchedulingPolicy = None):
        self.policy = policy or SchedulingPolicy()

    def next_easiness(self, easiness: float, quality: int) -> float:
        """EF' = EF + (base - (5-q) * (linear + (5-q) * quadratic)), floored"""
        p = self.policy
        miss = MAX_QUALITY - quality
        updated = easiness + (
            p.easiness_base - miss * (p.easiness_linear + miss * p.easiness_quadratic)
        )
        return max(updated, p.min_easiness)

    def next_interval(self, interval: int, repetitions: int, easiness: float) -> int:
        """Interval in days for a successful answer; `repetitions` is already incremented"""
        if repetitions == 1:
            return self.policy.first_interval
        if repetitions == 2:
            return self.policy.second_interval
        # A record can reach here with interval 0 if it was imported mid-history
        return max(1, round_half_up(interval * easiness))

    def is_mastered(self, state: MemoryState) -> bool:
        p = self.policy
        return (
            state.repetitions >= p.mastery_min_repetitions
            and state.easiness_factor >= p.mastery_min_easiness
            and state.interval_days >= p.mastery_min_interval
        )

    def is_lapse(self, quality: int) -> bool:
        return quality < self.policy.lapse_threshold

    def new_state(self, created_at: datetime) -> MemoryState:
        """State of a word that was just added to a collection"""
        return MemoryState(
            easiness_factor=self.policy.initial_easiness,
            interval_days=0,
            repetitions=0,
            lapse_count=0,
            due_at=created_at,
            last_reviewed_at=None,
        )

    def process_review(
        self, state: MemoryState, quality: int, reviewed_at: datetime
    ) -> ReviewResult:
        """Compute the state after answering with `quality` at `reviewed_at`"""
        quality = validate_quality(quality)
        easiness = self.next_easiness(state.easiness_factor, quality)
        lapsed = self.is_lapse(quality)

        if lapsed:
            repetitions = 0
            interval = self.policy.lapse_interval
            lapse_count = state.lapse_count + 1
        else:
            repetitions = state.repetitions + 1
            interval = self.next_interval(state.interval_days, repetitions, easiness)
            lapse_count = state.lapse_count

        updated = replace(
            state,
            easiness_factor=easiness,
            interval_days=interval,
            repetitions=repetitions,
            lapse_count=lapse_count,
            due_at=reviewed_at + timedelta(days=interval),
            last_reviewed_at=reviewed_at,
        )

        return ReviewResult(
            state=updated,
            quality=quality,
            lapsed=lapsed,
            mastered_before=self.is_mastered(state),
            mastered_after=self.is_mastered(updated),
        )
