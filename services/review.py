"""
Review submission and due-queue selection.

submit_review is the only writer of WordMemoryRecord scheduling state. It
commits the new state and the ReviewEvent in one transaction, guarded by
the record's version column.
"""

import logging
from datetime import datetime
from typing import List, Optional

from flask import current_app

from db import db
from errors import Conflict, InvalidRequest
from models import (
    ReviewEvent,
    WordMemoryRecord,
    commit_session,
    current_policy,
    get_daily_new_word_quota,
    get_record,
    get_user_timezone,
)
from services.algorithm import SchedulingPolicy, Sm2Scheduler, validate_quality
from utils.datetime_utils import (
    ensure_timezone_aware,
    local_date,
    local_day_bounds,
    now_utc,
    utc,
)

logger = logging.getLogger(__name__)


def submit_review(
    user_id: str,
    user_word_id: int,
    quality: int,
    expected_version: Optional[int] = None,
    now: datetime = None,
    policy: SchedulingPolicy = None,
) -> WordMemoryRecord:
    """
    Apply one review answer to a record and persist it.

    Raises InvalidQuality before touching the store, NotFound if the record
    is not in the learner's collection, Conflict if `expected_version` is
    stale or another writer commits first, StoreUnavailable if the commit
    fails. On any error nothing is written.
    """
    quality = validate_quality(quality)
    if expected_version is not None and (
        isinstance(expected_version, bool) or not isinstance(expected_version, int)
    ):
        raise InvalidRequest("expectedVersion must be an integer")

    scheduler = Sm2Scheduler(policy or current_policy())
    now = ensure_timezone_aware(now) if now else now_utc()

    record = get_record(user_id, user_word_id, refresh=True)
    if expected_version is not None and record.version != expected_version:
        logger.warning(
            "Conflict on record %s: expected version %s, stored %s",
            record.id,
            expected_version,
            record.version,
        )
        raise Conflict()

    was_new = record.last_reviewed_at is None
    result = scheduler.process_review(record.to_memory_state(), quality, now)

    record.apply_memory_state(result.state)
    db.session.add(
        ReviewEvent(
            user_id=user_id,
            user_word_id=record.id,
            quality=quality,
            submitted_at=now,
            resulting_interval=result.state.interval_days,
            resulting_ef=result.state.easiness_factor,
            resulting_repetitions=result.state.repetitions,
            was_new=was_new,
            mastered_transition=result.became_mastered,
        )
    )
    commit_session()

    logger.info(
        "Record %s reviewed with quality %s: interval %s days, EF %.2f",
        record.id,
        quality,
        record.interval_days,
        record.easiness_factor,
    )
    if result.became_mastered:
        logger.info("Record %s mastered by user %s", record.id, user_id)

    return record


def resolve_limit(limit: Optional[int]) -> int:
    """Missing or non-positive limits fall back to the default; large ones are capped"""
    config = current_app.config
    if limit is None or limit <= 0:
        return config["REVIEW_DEFAULT_LIMIT"]
    return min(limit, config["REVIEW_MAX_LIMIT"])


def quota_timezone(user_id: str):
    """Timezone whose midnight resets the new-word quota"""
    if current_app.config["NEW_WORD_QUOTA_RESET_UTC"]:
        return utc
    return get_user_timezone(user_id)


def count_new_words_started(user_id: str, now: datetime, tz) -> int:
    """Words given their first review on the current day in `tz`"""
    start, end = local_day_bounds(local_date(now, tz), tz)
    return ReviewEvent.query.filter(
        ReviewEvent.user_id == user_id,
        ReviewEvent.was_new.is_(True),
        ReviewEvent.submitted_at >= start,
        ReviewEvent.submitted_at < end,
    ).count()


def due_review_query(user_id: str, now: datetime):
    """Previously reviewed records whose due time has arrived"""
    return WordMemoryRecord.query.filter(
        WordMemoryRecord.user_id == user_id,
        WordMemoryRecord.last_reviewed_at.isnot(None),
        WordMemoryRecord.due_at <= now,
    )


def get_due_words(
    user_id: str,
    limit: Optional[int] = None,
    new_word_quota: Optional[int] = None,
    now: datetime = None,
) -> List[WordMemoryRecord]:
    """
    Ordered review queue for a learner.

    Due reviews come first, most overdue first, weakest (lowest EF) first
    on ties, id last so the order is total. Free slots are filled with
    never-reviewed words, oldest collected first, up to what is left of
    today's new-word quota. Returns [] when there is nothing to study.
    """
    now = ensure_timezone_aware(now) if now else now_utc()
    limit = resolve_limit(limit)
    if new_word_quota is None:
        new_word_quota = get_daily_new_word_quota(user_id)

    due = (
        due_review_query(user_id, now)
        .order_by(
            WordMemoryRecord.due_at.asc(),
            WordMemoryRecord.easiness_factor.asc(),
            WordMemoryRecord.id.asc(),
        )
        .limit(limit)
        .all()
    )

    free_slots = limit - len(due)
    if free_slots <= 0 or new_word_quota <= 0:
        return due

    started = count_new_words_started(user_id, now, quota_timezone(user_id))
    allowance = min(free_slots, new_word_quota - started)
    if allowance <= 0:
        return due

    fresh = (
        WordMemoryRecord.query.filter(
            WordMemoryRecord.user_id == user_id,
            WordMemoryRecord.last_reviewed_at.is_(None),
            WordMemoryRecord.repetitions == 0,
            WordMemoryRecord.due_at <= now,
        )
        .order_by(WordMemoryRecord.created_at.asc(), WordMemoryRecord.id.asc())
        .limit(allowance)
        .all()
    )

    return due + fresh


def count_due_reviews(user_id: str, now: datetime = None) -> int:
    """Size of the review-only queue, without the page limit"""
    now = ensure_timezone_aware(now) if now else now_utc()
    return due_review_query(user_id, now).count()
