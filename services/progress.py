"""
Mastery and streak tracking.

Neither value is stored as a counter. Mastery is a predicate over the
current record state (plus the `mastered_transition` flag written on the
ReviewEvent that crossed it), and the streak is recomputed from review
history on every read.
"""

from datetime import date, datetime, timedelta

from db import db
from models import ReviewEvent, WordMemoryRecord, current_policy, get_user_timezone
from services.algorithm import SchedulingPolicy
from utils.datetime_utils import (
    ensure_timezone_aware,
    local_date,
    local_day_bounds,
    now_utc,
)


def count_mastered(user_id: str, policy: SchedulingPolicy = None) -> int:
    """Records currently satisfying the mastery predicate"""
    policy = policy or current_policy()
    return WordMemoryRecord.query.filter(
        WordMemoryRecord.user_id == user_id,
        WordMemoryRecord.mastered_clause(policy),
    ).count()


def reviewed_on(user_id: str, day: date, tz) -> bool:
    """Whether the learner submitted any review on a local calendar day"""
    start, end = local_day_bounds(day, tz)
    reviews = ReviewEvent.query.filter(
        ReviewEvent.user_id == user_id,
        ReviewEvent.submitted_at >= start,
        ReviewEvent.submitted_at < end,
    )
    return bool(db.session.query(reviews.exists()).scalar())


def calculate_streak(
    user_id: str,
    now: datetime = None,
    tz=None,
    policy: SchedulingPolicy = None,
) -> int:
    """
    Consecutive days with reviews, counting back from today.

    Each day is one indexed existence check and the walk stops at the first
    day without reviews. Today without a review means a streak of 0,
    whatever came before. The walk never looks further back than
    `streak_max_lookback_days`, so longer streaks are reported as that bound.
    """
    policy = policy or current_policy()
    tz = tz or get_user_timezone(user_id)
    now = ensure_timezone_aware(now) if now else now_utc()

    lookback = policy.streak_max_lookback_days
    if lookback <= 0:
        return 0

    streak = 0
    check_date = local_date(now, tz)
    while streak < lookback and reviewed_on(user_id, check_date, tz):
        streak += 1
        check_date -= timedelta(days=1)

    return streak
