"""
Tests for review submission and the due queue.
"""

from datetime import timedelta

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

import services.review as review_service
from db import db
from errors import Conflict, InvalidQuality, NotFound, StoreUnavailable
from models import ReviewEvent, WordMemoryRecord, get_record, update_learner_settings
from services.review import (
    count_due_reviews,
    get_due_words,
    resolve_limit,
    submit_review,
)


def snapshot(record_id):
    db.session.expire_all()
    record = db.session.get(WordMemoryRecord, record_id)
    return (
        record.easiness_factor,
        record.interval_days,
        record.repetitions,
        record.lapse_count,
        record.due_at,
        record.last_reviewed_at,
        record.version,
    )


class TestSubmitReview:

    def test_growth_scenario_is_persisted(self, make_record, now):
        record = make_record(easiness=2.5, interval=6, repetitions=2,
                             last_reviewed_at=now - timedelta(days=6))
        assert record.version == 1

        updated = submit_review('alice', record.id, 5, expected_version=1, now=now)

        assert updated.easiness_factor == pytest.approx(2.6)
        assert updated.repetitions == 3
        assert updated.interval_days == 16
        assert updated.version == 2

    def test_round_trip_point_read(self, make_record, now):
        record = make_record(easiness=2.6, interval=16, repetitions=3,
                             last_reviewed_at=now - timedelta(days=16))
        updated = submit_review('alice', record.id, 1, now=now)
        expected = updated.to_dict()

        db.session.expire_all()
        fetched = get_record('alice', record.id)

        assert fetched.to_dict() == expected
        assert fetched.repetitions == 0
        assert fetched.interval_days == 1
        assert fetched.lapse_count == 1
        assert fetched.easiness_factor == pytest.approx(2.06)

    def test_due_date_and_review_time(self, make_record, now):
        record = make_record()
        updated = submit_review('alice', record.id, 5, now=now)
        fetched = updated.to_memory_state()

        assert fetched.last_reviewed_at == now
        assert fetched.due_at == now + timedelta(days=1)

    def test_appends_one_event(self, make_record, now):
        record = make_record()
        submit_review('alice', record.id, 3, now=now)

        events = ReviewEvent.query.all()
        assert len(events) == 1
        event = events[0]
        assert event.user_id == 'alice'
        assert event.user_word_id == record.id
        assert event.quality == 3
        assert event.resulting_interval == 1
        assert event.resulting_repetitions == 1
        assert event.resulting_ef == pytest.approx(2.36)
        assert event.was_new is True
        assert event.mastered_transition is False

    def test_second_review_is_not_new(self, make_record, now):
        record = make_record()
        submit_review('alice', record.id, 5, now=now)
        submit_review('alice', record.id, 5, now=now + timedelta(days=1))

        flags = [e.was_new for e in ReviewEvent.query.order_by(ReviewEvent.id).all()]
        assert flags == [True, False]

    def test_mastery_transition_is_recorded(self, make_record, now):
        record = make_record(easiness=2.5, interval=12, repetitions=4,
                             last_reviewed_at=now - timedelta(days=12))
        submit_review('alice', record.id, 5, now=now)

        event = ReviewEvent.query.one()
        assert event.mastered_transition is True

    def test_stale_version_is_rejected_without_changes(self, make_record, now):
        record = make_record(easiness=2.5, interval=6, repetitions=2,
                             last_reviewed_at=now - timedelta(days=6))
        submit_review('alice', record.id, 5, expected_version=1, now=now)
        before = snapshot(record.id)

        with pytest.raises(Conflict):
            submit_review('alice', record.id, 5, expected_version=1, now=now)

        assert snapshot(record.id) == before
        assert ReviewEvent.query.count() == 1

    def test_concurrent_writer_loses_at_commit(self, make_record, now, monkeypatch):
        record = make_record()
        before = snapshot(record.id)
        real_get_record = review_service.get_record

        def racing_get_record(user_id, record_id, refresh=False):
            loaded = real_get_record(user_id, record_id, refresh=refresh)
            # Another request commits a new version after we loaded ours
            db.session.execute(
                text('UPDATE word_memory_records SET version = version + 1 WHERE id = :id'),
                {'id': record_id},
            )
            return loaded

        monkeypatch.setattr(review_service, 'get_record', racing_get_record)

        with pytest.raises(Conflict):
            submit_review('alice', record.id, 5, now=now)

        assert snapshot(record.id) == before
        assert ReviewEvent.query.count() == 0

    def test_store_failure_leaves_no_partial_state(self, make_record, now, monkeypatch):
        record = make_record()
        before = snapshot(record.id)

        def failing_commit():
            raise OperationalError('COMMIT', {}, Exception('disk I/O error'))

        monkeypatch.setattr(db.session, 'commit', failing_commit)

        with pytest.raises(StoreUnavailable):
            submit_review('alice', record.id, 5, now=now)

        monkeypatch.undo()
        assert snapshot(record.id) == before
        assert ReviewEvent.query.count() == 0

    def test_unknown_record(self, app, now):
        with pytest.raises(NotFound):
            submit_review('alice', 999, 5, now=now)

    def test_other_users_record(self, make_record, now):
        record = make_record(user_id='bob')
        with pytest.raises(NotFound):
            submit_review('alice', record.id, 5, now=now)

    def test_quality_checked_before_lookup(self, app, now):
        with pytest.raises(InvalidQuality):
            submit_review('alice', 999, 6, now=now)

    def test_full_quality_range_is_accepted(self, make_record, now):
        for quality in range(0, 6):
            record = make_record()
            updated = submit_review('alice', record.id, quality, now=now)
            assert updated.easiness_factor >= 1.3


class TestDueQueue:

    def test_orders_by_due_then_easiness(self, make_record, now):
        reviewed = now - timedelta(days=10)
        late = make_record(easiness=2.5, due_at=now - timedelta(days=1), last_reviewed_at=reviewed)
        oldest_strong = make_record(easiness=2.8, due_at=now - timedelta(days=3), last_reviewed_at=reviewed)
        oldest_weak = make_record(easiness=1.9, due_at=now - timedelta(days=3), last_reviewed_at=reviewed)

        queue = get_due_words('alice', limit=10, new_word_quota=0, now=now)

        assert [r.id for r in queue] == [oldest_weak.id, oldest_strong.id, late.id]

    def test_excludes_future_records(self, make_record, now):
        reviewed = now - timedelta(days=5)
        make_record(due_at=now + timedelta(minutes=1), last_reviewed_at=reviewed)
        make_record(due_at=now + timedelta(minutes=1), created_at=now)
        due = make_record(due_at=now, last_reviewed_at=reviewed)

        queue = get_due_words('alice', limit=10, new_word_quota=10, now=now)

        assert [r.id for r in queue] == [due.id]
        assert all(r.to_memory_state().due_at <= now for r in queue)

    def test_is_deterministic(self, make_record, now):
        reviewed = now - timedelta(days=5)
        for _ in range(5):
            make_record(easiness=2.5, due_at=now - timedelta(hours=1), last_reviewed_at=reviewed)

        first = [r.id for r in get_due_words('alice', limit=3, new_word_quota=0, now=now)]
        second = [r.id for r in get_due_words('alice', limit=3, new_word_quota=0, now=now)]

        assert first == second
        assert first == sorted(first)

    def test_caps_at_limit(self, make_record, now):
        reviewed = now - timedelta(days=5)
        for _ in range(4):
            make_record(last_reviewed_at=reviewed)
        make_record()

        queue = get_due_words('alice', limit=3, new_word_quota=5, now=now)
        assert len(queue) == 3
        assert all(r.last_reviewed_at is not None for r in queue)

    def test_fills_free_slots_with_oldest_new_words(self, make_record, now):
        due = make_record(last_reviewed_at=now - timedelta(days=2))
        newest = make_record(created_at=now - timedelta(hours=1), due_at=now - timedelta(hours=1))
        oldest = make_record(created_at=now - timedelta(days=2), due_at=now - timedelta(days=2))
        middle = make_record(created_at=now - timedelta(days=1), due_at=now - timedelta(days=1))

        queue = get_due_words('alice', limit=10, new_word_quota=2, now=now)

        assert [r.id for r in queue] == [due.id, oldest.id, middle.id]
        assert newest.id not in [r.id for r in queue]

    def test_new_words_started_today_use_up_quota(self, make_record, now):
        first = make_record(created_at=now - timedelta(days=3))
        second = make_record(created_at=now - timedelta(days=2))
        third = make_record(created_at=now - timedelta(days=1))
        submit_review('alice', first.id, 5, now=now - timedelta(hours=2))

        queue = get_due_words('alice', limit=10, new_word_quota=2, now=now)

        assert [r.id for r in queue] == [second.id]
        assert third.id not in [r.id for r in queue]

    def test_empty_when_nothing_due_and_quota_spent(self, make_record, now):
        first = make_record(created_at=now - timedelta(days=2))
        make_record(created_at=now - timedelta(days=1))
        submit_review('alice', first.id, 5, now=now - timedelta(hours=1))

        assert get_due_words('alice', limit=10, new_word_quota=1, now=now) == []

    def test_empty_collection(self, app, now):
        assert get_due_words('nobody', now=now) == []

    def test_quota_from_learner_settings(self, make_record, now):
        for offset in range(4):
            make_record(created_at=now - timedelta(days=4 - offset))
        update_learner_settings('alice', daily_new_words=1)

        assert len(get_due_words('alice', limit=10, now=now)) == 1

    def test_ignores_other_users(self, make_record, now):
        make_record(user_id='bob', last_reviewed_at=now - timedelta(days=2))
        assert get_due_words('alice', limit=10, now=now) == []

    def test_count_due_reviews_excludes_new_words(self, make_record, now):
        make_record(last_reviewed_at=now - timedelta(days=2))
        make_record(last_reviewed_at=now - timedelta(days=2))
        make_record()
        assert count_due_reviews('alice', now) == 2

    def test_resolve_limit(self, app):
        assert resolve_limit(None) == 20
        assert resolve_limit(0) == 20
        assert resolve_limit(-5) == 20
        assert resolve_limit(7) == 7
        assert resolve_limit(5000) == 100
