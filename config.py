import os


class Config:
    """
    Flask configuration for the review engine.
    """

    SECRET_KEY = os.environ.get("SECRET_KEY") or "change-me-in-production"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or "sqlite:///data.db"
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # The gateway authenticates the caller and forwards its id in this header
    USER_ID_HEADER = os.environ.get("USER_ID_HEADER", "X-User-Id")

    # Calendar days (streaks, daily counters) are computed in this timezone
    # unless the learner configured their own
    DEFAULT_TIMEZONE = os.environ.get("DEFAULT_TIMEZONE", "UTC")

    # SM-2 policy
    SRS_INITIAL_EASINESS = 2.5
    SRS_MIN_EASINESS = 1.3
    SRS_EASINESS_BASE = 0.1
    SRS_EASINESS_LINEAR = 0.08
    SRS_EASINESS_QUADRATIC = 0.02
    SRS_FIRST_INTERVAL = 1
    SRS_SECOND_INTERVAL = 6
    SRS_LAPSE_THRESHOLD = 3
    SRS_LAPSE_INTERVAL = 1

    # Mastery thresholds
    MASTERY_MIN_REPETITIONS = 5
    MASTERY_MIN_EASINESS = 2.5
    MASTERY_MIN_INTERVAL = 30

    # Longer streaks are reported as this value
    STREAK_MAX_LOOKBACK_DAYS = 365

    # Review queue
    REVIEW_DEFAULT_LIMIT = 20
    REVIEW_MAX_LIMIT = 100
    DAILY_NEW_WORD_QUOTA = 10
    NEW_WORD_QUOTA_RESET_UTC = False

    # Collection listing
    WORDS_DEFAULT_LIMIT = 20
    WORDS_MAX_LIMIT = 100

    # Dashboard
    RECENT_WORDS_LIMIT = 5
    DAILY_STATS_MAX_DAYS = 90
