"""
Dashboard and review statistics.

Read-only: everything here is derived from committed WordMemoryRecord rows
and ReviewEvent history. Calendar days are the learner's local days.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, List

from flask import current_app
from sqlalchemy import distinct, func

from db import db
from errors import InvalidRequest
from models import ReviewEvent, WordMemoryRecord, current_policy, get_user_timezone
from services.algorithm import SchedulingPolicy
from services.progress import calculate_streak, count_mastered
from services.review import count_due_reviews
from utils.datetime_utils import (
    ensure_timezone_aware,
    isoformat_utc,
    local_date,
    local_day_bounds,
    local_day_start,
    now_utc,
    trailing_days,
)

WEEK_DAYS = 7


@dataclass
class DailyCounter:
    """Review activity of one learner on one local calendar day"""

    day: date
    reviewed_count: int = 0
    new_count: int = 0
    mastered_count: int = 0

    def to_dict(self) -> Dict:
        return {
            "date": self.day.isoformat(),
            "reviewedCount": self.reviewed_count,
            "newCount": self.new_count,
            "masteredCount": self.mastered_count,
        }


def get_daily_counters(
    user_id: str, days: int = WEEK_DAYS, now: datetime = None, tz=None
) -> List[DailyCounter]:
    """One counter per trailing day, oldest first, zero-filled"""
    max_days = current_app.config["DAILY_STATS_MAX_DAYS"]
    if days <= 0 or days > max_days:
        raise InvalidRequest(f"days must be between 1 and {max_days}")

    tz = tz or get_user_timezone(user_id)
    now = ensure_timezone_aware(now) if now else now_utc()
    calendar = trailing_days(local_date(now, tz), days)

    events = (
        db.session.query(
            ReviewEvent.submitted_at,
            ReviewEvent.was_new,
            ReviewEvent.mastered_transition,
        )
        .filter(
            ReviewEvent.user_id == user_id,
            ReviewEvent.submitted_at >= local_day_start(calendar[0], tz),
            ReviewEvent.submitted_at < local_day_start(calendar[-1] + timedelta(days=1), tz),
        )
        .all()
    )

    counters = {day: DailyCounter(day) for day in calendar}
    for submitted_at, was_new, mastered in events:
        counter = counters.get(local_date(submitted_at, tz))
        if counter is None:
            continue
        counter.reviewed_count += 1
        counter.new_count += int(bool(was_new))
        counter.mastered_count += int(bool(mastered))

    return [counters[day] for day in calendar]


def get_weekly_stats(user_id: str, now: datetime = None, tz=None) -> List[Dict]:
    """Review counts for the trailing seven days, oldest first"""
    return [
        {"date": counter.day.isoformat(), "count": counter.reviewed_count}
        for counter in get_daily_counters(user_id, WEEK_DAYS, now=now, tz=tz)
    ]


def count_new_today(user_id: str, now: datetime, tz) -> int:
    """Words collected today that have not been reviewed yet"""
    start, end = local_day_bounds(local_date(now, tz), tz)
    return WordMemoryRecord.query.filter(
        WordMemoryRecord.user_id == user_id,
        WordMemoryRecord.last_reviewed_at.is_(None),
        WordMemoryRecord.created_at >= start,
        WordMemoryRecord.created_at < end,
    ).count()


def get_recent_words(user_id: str, limit: int = None) -> List[Dict]:
    """Most recently collected words"""
    limit = limit or current_app.config["RECENT_WORDS_LIMIT"]
    records = (
        WordMemoryRecord.query.filter(WordMemoryRecord.user_id == user_id)
        .order_by(WordMemoryRecord.created_at.desc(), WordMemoryRecord.id.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            "userWordId": record.id,
            "wordId": record.word_id,
            "word": record.word.text if record.word else None,
            "definitions": record.word.definitions if record.word else [],
            "createdAt": isoformat_utc(record.created_at),
        }
        for record in records
    ]


def count_words_reviewed(user_id: str, start: datetime, end: datetime) -> int:
    """Distinct records with at least one review in [start, end)"""
    return (
        db.session.query(func.count(distinct(ReviewEvent.user_word_id)))
        .filter(
            ReviewEvent.user_id == user_id,
            ReviewEvent.submitted_at >= start,
            ReviewEvent.submitted_at < end,
        )
        .scalar()
    )


def count_collected(user_id: str, start: datetime, end: datetime) -> int:
    """Records collected in [start, end), reviewed or not"""
    return WordMemoryRecord.query.filter(
        WordMemoryRecord.user_id == user_id,
        WordMemoryRecord.created_at >= start,
        WordMemoryRecord.created_at < end,
    ).count()


def get_review_stats(user_id: str, now: datetime = None) -> Dict:
    """
    Counters shown above the review session.

    `reviewed` counts words, so a word failed and retried today counts once.
    `newWords` counts words collected today. `quotaUsed` is the part of the
    new-word quota spent on first reviews today.
    """
    tz = get_user_timezone(user_id)
    now = ensure_timezone_aware(now) if now else now_utc()
    start, end = local_day_bounds(local_date(now, tz), tz)
    today = get_daily_counters(user_id, 1, now=now, tz=tz)[0]

    return {
        "totalDue": count_due_reviews(user_id, now),
        "reviewed": count_words_reviewed(user_id, start, end),
        "newWords": count_collected(user_id, start, end),
        "masteredToday": today.mastered_count,
        "quotaUsed": today.new_count,
    }


def get_dashboard(
    user_id: str, now: datetime = None, policy: SchedulingPolicy = None
) -> Dict:
    """Get comprehensive learning dashboard data"""
    policy = policy or current_policy()
    tz = get_user_timezone(user_id)
    now = ensure_timezone_aware(now) if now else now_utc()

    return {
        "todayDue": count_due_reviews(user_id, now),
        "todayNew": count_new_today(user_id, now, tz),
        "totalMastered": count_mastered(user_id, policy),
        "streakDays": calculate_streak(user_id, now=now, tz=tz, policy=policy),
        "recentWords": get_recent_words(user_id),
        "weeklyStats": get_weekly_stats(user_id, now=now, tz=tz),
    }
