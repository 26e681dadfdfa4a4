"""
Database Models for the Vocabulary Review Engine
================================================

This models.py is the Memory Model Store: the durable state the scheduler,
the due queue and the dashboard read and write.

Key Design Principles:
- One WordMemoryRecord per (learner, word), written only by the review engine
- Optimistic concurrency on WordMemoryRecord through SQLAlchemy mapper
  versioning; a stale writer gets StaleDataError instead of overwriting
- ReviewEvent is append-only and is the only source of historical stats
- Timestamps are stored in UTC; naive values read back from SQLite are UTC
- Word definitions are validated once on write and stored structured
"""

import json
import logging
from datetime import datetime
from typing import Dict, List, Optional

import pytz
from flask import current_app
from sqlalchemy import and_, event, not_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.types import JSON

from db import db
from errors import Conflict, InvalidRequest, NotFound, StoreUnavailable
from services.algorithm import MemoryState, SchedulingPolicy, Sm2Scheduler
from utils.datetime_utils import (
    ensure_timezone_aware,
    get_timezone,
    isoformat_utc,
    now_utc,
)

logger = logging.getLogger(__name__)

RECORD_STATUSES = ("new", "learning", "mastered")

# Sortable fields of the collection listing, by API name
SORT_COLUMNS = {
    "createdAt": "created_at",
    "dueAt": "due_at",
    "lastReviewedAt": "last_reviewed_at",
    "easinessFactor": "easiness_factor",
    "intervalDays": "interval_days",
    "repetitions": "repetitions",
}


def validate_definitions(raw) -> List[Dict]:
    """
    Normalize word definitions to a list of
    {"partOfSpeech", "meaning", "example"} records.

    Accepts the list itself or a JSON string of it (the shape older clients
    send). Raises InvalidRequest on anything else.
    """
    if raw is None or raw == "":
        return []

    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            raise InvalidRequest("definitions must be valid JSON")

    if not isinstance(raw, list):
        raise InvalidRequest("definitions must be a list")

    cleaned = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise InvalidRequest("each definition must be an object")

        meaning = entry.get("meaning")
        if not isinstance(meaning, str) or not meaning.strip():
            raise InvalidRequest("each definition needs a meaning")

        part_of_speech = entry.get("partOfSpeech", entry.get("part_of_speech"))
        example = entry.get("example")
        for name, value in (("partOfSpeech", part_of_speech), ("example", example)):
            if value is not None and not isinstance(value, str):
                raise InvalidRequest(f"definition {name} must be a string")

        cleaned.append(
            {
                "partOfSpeech": part_of_speech or None,
                "meaning": meaning.strip(),
                "example": example or None,
            }
        )

    return cleaned


class Word(db.Model):
    """
    Dictionary entry. Owned by the vocabulary store; the engine only needs
    the text and definitions to render review cards.
    """

    __tablename__ = "words"

    id = db.Column(db.Integer, primary_key=True)
    text = db.Column(db.String(200), nullable=False, index=True)
    language = db.Column(db.String(10), nullable=False, default="en")
    phonetic = db.Column(db.String(200), nullable=True)
    definitions = db.Column(JSON, nullable=False, default=list)

    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(pytz.utc)
    )

    __table_args__ = (
        db.UniqueConstraint("text", "language", name="uq_word_text_language"),
    )

    def __init__(self, text: str, language: str = "en", definitions=None, **kwargs):
        super().__init__()
        self.text = text.strip()
        self.language = language
        self.definitions = validate_definitions(definitions)

        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "word": self.text,
            "language": self.language,
            "phonetic": self.phonetic,
            "definitions": self.definitions or [],
        }


class WordMemoryRecord(db.Model):
    """
    Per-learner memory state of one word (easiness, interval, repetitions,
    due date). `version` is bumped by SQLAlchemy on every UPDATE and checked
    in the UPDATE's WHERE clause.
    """

    __tablename__ = "word_memory_records"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(128), nullable=False, index=True)
    word_id = db.Column(db.Integer, db.ForeignKey("words.id"), nullable=False)

    # Scheduling state
    easiness_factor = db.Column(db.Float, nullable=False)
    interval_days = db.Column(db.Integer, nullable=False, default=0)
    repetitions = db.Column(db.Integer, nullable=False, default=0)
    lapse_count = db.Column(db.Integer, nullable=False, default=0)
    due_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    last_reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version = db.Column(db.Integer, nullable=False)

    # Where the learner met the word
    context_sentence = db.Column(db.Text, nullable=True)
    source = db.Column(db.String(50), nullable=True)  # manual, ocr, extension

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    word = db.relationship("Word", lazy="joined")

    __table_args__ = (
        db.UniqueConstraint("user_id", "word_id", name="uq_record_user_word"),
        db.Index("ix_records_user_due", "user_id", "due_at"),
    )

    __mapper_args__ = {"version_id_col": version}

    def __init__(self, user_id: str, word: Word, state: MemoryState, **kwargs):
        super().__init__()
        self.user_id = user_id
        self.word = word
        self.created_at = state.due_at
        self.updated_at = state.due_at
        self.apply_memory_state(state)

        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)

    # =========================================================================
    # ALGORITHM INTEGRATION METHODS
    # =========================================================================

    def to_memory_state(self) -> MemoryState:
        """Convert SQLAlchemy model to algorithm MemoryState object"""
        return MemoryState(
            easiness_factor=self.easiness_factor,
            interval_days=self.interval_days,
            repetitions=self.repetitions,
            lapse_count=self.lapse_count,
            due_at=ensure_timezone_aware(self.due_at),
            last_reviewed_at=ensure_timezone_aware(self.last_reviewed_at),
        )

    def apply_memory_state(self, state: MemoryState):
        """Copy an algorithm state onto the row"""
        self.easiness_factor = state.easiness_factor
        self.interval_days = state.interval_days
        self.repetitions = state.repetitions
        self.lapse_count = state.lapse_count
        self.due_at = ensure_timezone_aware(state.due_at)
        self.last_reviewed_at = ensure_timezone_aware(state.last_reviewed_at)
        if state.last_reviewed_at is not None:
            self.updated_at = self.last_reviewed_at

    @classmethod
    def mastered_clause(cls, policy: SchedulingPolicy):
        """SQL form of Sm2Scheduler.is_mastered"""
        return and_(
            cls.repetitions >= policy.mastery_min_repetitions,
            cls.easiness_factor >= policy.mastery_min_easiness,
            cls.interval_days >= policy.mastery_min_interval,
        )

    def status(self, policy: SchedulingPolicy = None) -> str:
        if self.last_reviewed_at is None:
            return "new"
        scheduler = Sm2Scheduler(policy or current_policy())
        return "mastered" if scheduler.is_mastered(self.to_memory_state()) else "learning"

    def to_dict(self, policy: SchedulingPolicy = None) -> Dict:
        word = self.word.to_dict() if self.word else {}
        return {
            "id": self.id,
            "userId": self.user_id,
            "wordId": self.word_id,
            "word": word.get("word"),
            "phonetic": word.get("phonetic"),
            "definitions": word.get("definitions", []),
            "easinessFactor": self.easiness_factor,
            "intervalDays": self.interval_days,
            "repetitions": self.repetitions,
            "lapseCount": self.lapse_count,
            "dueAt": isoformat_utc(self.due_at),
            "lastReviewedAt": isoformat_utc(self.last_reviewed_at),
            "version": self.version,
            "status": self.status(policy),
            "contextSentence": self.context_sentence,
            "source": self.source,
            "createdAt": isoformat_utc(self.created_at),
        }


class ReviewEvent(db.Model):
    """
    One submitted review. Never updated after insert.

    `user_word_id` is not a foreign key: history outlives a word
    the learner removed, so streaks and weekly counts do not change.
    """

    __tablename__ = "review_events"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(128), nullable=False)
    user_word_id = db.Column(db.Integer, nullable=False, index=True)

    quality = db.Column(db.Integer, nullable=False)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=False)

    resulting_interval = db.Column(db.Integer, nullable=False)
    resulting_ef = db.Column(db.Float, nullable=False)
    resulting_repetitions = db.Column(db.Integer, nullable=False)

    # Derived-counter inputs, fixed at write time
    was_new = db.Column(db.Boolean, nullable=False, default=False)
    mastered_transition = db.Column(db.Boolean, nullable=False, default=False)

    __table_args__ = (
        db.Index("ix_review_events_user_time", "user_id", "submitted_at"),
    )

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "userWordId": self.user_word_id,
            "quality": self.quality,
            "submittedAt": isoformat_utc(self.submitted_at),
            "resultingInterval": self.resulting_interval,
            "resultingEF": self.resulting_ef,
            "resultingRepetitions": self.resulting_repetitions,
            "wasNew": self.was_new,
            "masteredTransition": self.mastered_transition,
        }


@event.listens_for(ReviewEvent, "before_update")
def _reject_review_event_update(mapper, connection, target):
    raise ValueError("review events are append-only")


class LearnerSettings(db.Model):
    """Per-learner calendar and pacing preferences"""

    __tablename__ = "learner_settings"

    user_id = db.Column(db.String(128), primary_key=True)
    timezone = db.Column(db.String(64), nullable=True)
    daily_new_words = db.Column(db.Integer, nullable=True)

    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(pytz.utc),
        onupdate=lambda: datetime.now(pytz.utc),
    )

    def to_dict(self) -> Dict:
        return {
            "timezone": self.timezone or current_app.config["DEFAULT_TIMEZONE"],
            "dailyNewWords": (
                self.daily_new_words
                if self.daily_new_words is not None
                else current_app.config["DAILY_NEW_WORD_QUOTA"]
            ),
        }


# ============================================================================
# DATABASE HELPER FUNCTIONS
# ============================================================================


def current_policy() -> SchedulingPolicy:
    """Scheduling policy configured on the running app"""
    return SchedulingPolicy.from_config(current_app.config)


def commit_session():
    """
    Commit the current unit of work or roll all of it back.

    A version mismatch detected by the mapper becomes Conflict; any other
    database failure becomes StoreUnavailable.
    """
    try:
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning("Stale version on commit: %s", exc)
        raise Conflict() from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Commit failed; transaction rolled back")
        raise StoreUnavailable() from exc


def get_learner_settings(user_id: str) -> LearnerSettings:
    """Stored settings, or an unsaved default instance"""
    settings = db.session.get(LearnerSettings, user_id)
    if settings is None:
        settings = LearnerSettings(user_id=user_id)
    return settings


def get_user_timezone(user_id: str):
    settings = db.session.get(LearnerSettings, user_id)
    name = settings.timezone if settings and settings.timezone else None
    return get_timezone(name or current_app.config["DEFAULT_TIMEZONE"])


def get_daily_new_word_quota(user_id: str) -> int:
    settings = db.session.get(LearnerSettings, user_id)
    if settings is not None and settings.daily_new_words is not None:
        return settings.daily_new_words
    return current_app.config["DAILY_NEW_WORD_QUOTA"]


def update_learner_settings(
    user_id: str, timezone: str = None, daily_new_words: int = None
) -> LearnerSettings:
    """Validate and persist learner settings; None leaves a field unchanged"""
    if timezone is not None:
        try:
            get_timezone(timezone)
        except pytz.UnknownTimeZoneError:
            raise InvalidRequest(f"unknown timezone: {timezone}")

    if daily_new_words is not None:
        if (
            isinstance(daily_new_words, bool)
            or not isinstance(daily_new_words, int)
            or daily_new_words < 0
        ):
            raise InvalidRequest("dailyNewWords must be a non-negative integer")

    settings = get_learner_settings(user_id)
    if timezone is not None:
        settings.timezone = timezone
    if daily_new_words is not None:
        settings.daily_new_words = daily_new_words

    db.session.add(settings)
    commit_session()
    return settings


def get_record(user_id: str, record_id: int, refresh: bool = False) -> WordMemoryRecord:
    """Point read of one learner's record; NotFound for other learners' ids"""
    query = WordMemoryRecord.query
    if refresh:
        query = query.populate_existing()
    record = query.filter_by(id=record_id, user_id=user_id).first()
    if record is None:
        raise NotFound()
    return record


def resolve_page(page: Optional[int] = None, limit: Optional[int] = None):
    """Clamp paging input: page starts at 1, out-of-range limits use the default"""
    config = current_app.config
    if page is None or page < 1:
        page = 1
    if limit is None or limit < 1 or limit > config["WORDS_MAX_LIMIT"]:
        limit = config["WORDS_DEFAULT_LIMIT"]
    return page, limit


def records_query(
    user_id: str, status: Optional[str] = None, policy: SchedulingPolicy = None
):
    """Unordered query over a learner's collection, optionally by status"""
    policy = policy or current_policy()
    query = WordMemoryRecord.query.filter(WordMemoryRecord.user_id == user_id)

    if status is not None:
        if status not in RECORD_STATUSES:
            raise InvalidRequest(f"status must be one of {', '.join(RECORD_STATUSES)}")
        if status == "new":
            query = query.filter(WordMemoryRecord.last_reviewed_at.is_(None))
        elif status == "mastered":
            query = query.filter(WordMemoryRecord.mastered_clause(policy))
        else:
            query = query.filter(
                WordMemoryRecord.last_reviewed_at.isnot(None),
                not_(WordMemoryRecord.mastered_clause(policy)),
            )

    return query


def count_records(
    user_id: str, status: Optional[str] = None, policy: SchedulingPolicy = None
) -> int:
    return records_query(user_id, status, policy).count()


def list_records(
    user_id: str,
    status: Optional[str] = None,
    page: Optional[int] = None,
    limit: Optional[int] = None,
    sort: Optional[str] = None,
    order: Optional[str] = None,
    policy: SchedulingPolicy = None,
) -> List[WordMemoryRecord]:
    """
    One page of a learner's collection.

    Sorted by `sort` (default createdAt) in `order` (default desc), with id
    as the final tie-break so pages never overlap.
    """
    page, limit = resolve_page(page, limit)

    sort = sort or "createdAt"
    column = SORT_COLUMNS.get(sort)
    if column is None and sort in SORT_COLUMNS.values():
        column = sort
    if column is None:
        raise InvalidRequest(f"sort must be one of {', '.join(SORT_COLUMNS)}")
    direction = "asc" if (order or "").lower() == "asc" else "desc"

    sort_column = getattr(WordMemoryRecord, column)
    id_column = WordMemoryRecord.id
    if direction == "asc":
        ordering = (sort_column.asc(), id_column.asc())
    else:
        ordering = (sort_column.desc(), id_column.desc())

    return (
        records_query(user_id, status, policy)
        .order_by(*ordering)
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )


def collect_word(
    user_id: str,
    text: str,
    language: str = "en",
    phonetic: str = None,
    definitions=None,
    context_sentence: str = None,
    source: str = None,
    now: datetime = None,
    policy: SchedulingPolicy = None,
) -> WordMemoryRecord:
    """
    Add a word to a learner's collection, creating the dictionary entry if
    needed. Returns the existing record when the word is already collected.
    """
    if not isinstance(text, str) or not text.strip():
        raise InvalidRequest("word is required")

    now = ensure_timezone_aware(now) if now else now_utc()
    definitions = validate_definitions(definitions)

    word = Word.query.filter_by(text=text.strip(), language=language).first()
    if word is None:
        word = Word(text, language=language, definitions=definitions, phonetic=phonetic)
        db.session.add(word)
    else:
        existing = WordMemoryRecord.query.filter_by(
            user_id=user_id, word_id=word.id
        ).first()
        if existing is not None:
            return existing

    state = Sm2Scheduler(policy or current_policy()).new_state(now)
    record = WordMemoryRecord(
        user_id,
        word,
        state,
        context_sentence=context_sentence,
        source=source,
    )
    db.session.add(record)
    commit_session()

    logger.info("User %s collected word %r as record %s", user_id, word.text, record.id)
    return record


def remove_word(user_id: str, record_id: int):
    """Delete a record from the learner's collection; its review events stay"""
    record = get_record(user_id, record_id)
    db.session.delete(record)
    commit_session()
    logger.info("User %s removed record %s", user_id, record_id)
