import os
import sys
from datetime import datetime, timedelta

import pytest
import pytz

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from app import create_app
from config import Config
from db import db
from models import ReviewEvent, Word, WordMemoryRecord
from services.algorithm import MemoryState

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=pytz.utc)


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_ENGINE_OPTIONS = {
        'connect_args': {'check_same_thread': False}
    }
    LOG_LEVEL = 'WARNING'


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_record(app):
    """Insert a record with an explicit scheduling state"""
    counter = {'n': 0}

    def _make(user_id='alice', easiness=2.5, interval=0, repetitions=0,
              due_at=None, last_reviewed_at=None, created_at=None, lapse_count=0):
        counter['n'] += 1
        word = Word(f'word-{counter["n"]}', definitions=[{'meaning': f'meaning {counter["n"]}'}])
        state = MemoryState(
            easiness_factor=easiness,
            interval_days=interval,
            repetitions=repetitions,
            lapse_count=lapse_count,
            due_at=due_at or NOW - timedelta(days=1),
            last_reviewed_at=last_reviewed_at,
        )
        record = WordMemoryRecord(user_id, word, state)
        record.created_at = created_at or NOW - timedelta(days=30)
        db.session.add(record)
        db.session.commit()
        return record

    return _make


@pytest.fixture
def add_event(app):
    """Append a bare review event at a given time"""

    def _add(submitted_at, user_id='alice', user_word_id=1, was_new=False, mastered=False):
        event = ReviewEvent(
            user_id=user_id,
            user_word_id=user_word_id,
            quality=5,
            submitted_at=submitted_at,
            resulting_interval=1,
            resulting_ef=2.6,
            resulting_repetitions=1,
            was_new=was_new,
            mastered_transition=mastered,
        )
        db.session.add(event)
        db.session.commit()
        return event

    return _add
