import logging

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from db import db
from errors import InvalidRequest, MissingUser, ReviewServiceError, StoreUnavailable
from models import (
    collect_word,
    count_records,
    get_learner_settings,
    get_record,
    list_records,
    remove_word,
    resolve_page,
    update_learner_settings,
)
from services.review import get_due_words, submit_review
from services.stats import get_daily_counters, get_dashboard, get_review_stats

logger = logging.getLogger(__name__)

bp = Blueprint('bp', __name__)


def success(data, status=200):
    return jsonify({'success': True, 'data': data}), status


def current_user_id():
    """User id forwarded by the authenticating gateway"""
    user_id = request.headers.get(current_app.config['USER_ID_HEADER'], '').strip()
    if not user_id:
        raise MissingUser()
    return user_id


def json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidRequest('request body must be a JSON object')
    return data


def optional_int(value, name):
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidRequest(f'{name} must be an integer')
    return value


# ============================================================================
# ERROR HANDLERS
# ============================================================================

@bp.errorhandler(ReviewServiceError)
def handle_service_error(error):
    if error.status_code >= 500:
        logger.error('%s: %s', error.__class__.__name__, error.message)
    else:
        logger.warning('%s: %s', error.__class__.__name__, error.message)
    return jsonify({'success': False, 'error': error.message}), error.status_code


@bp.errorhandler(SQLAlchemyError)
def handle_store_error(error):
    db.session.rollback()
    logger.exception('Database error while serving %s', request.path)
    unavailable = StoreUnavailable()
    return jsonify({'success': False, 'error': unavailable.message}), unavailable.status_code


# ============================================================================
# REVIEW ROUTES
# ============================================================================

@bp.route('/review/due')
def review_due():
    """Words to study now: due reviews first, then new words"""
    user_id = current_user_id()
    limit = request.args.get('limit', type=int)
    new_words = request.args.get('newWords', type=int)

    records = get_due_words(user_id, limit=limit, new_word_quota=new_words)
    return success({
        'words': [record.to_dict() for record in records],
        'total': len(records),
    })


@bp.route('/review/stats')
def review_stats():
    user_id = current_user_id()
    return success(get_review_stats(user_id))


@bp.route('/review/submit', methods=['POST'])
def review_submit():
    """Record one answer and return the rescheduled word"""
    user_id = current_user_id()
    data = json_body()

    user_word_id = optional_int(data.get('userWordId', data.get('user_word_id')), 'userWordId')
    if user_word_id is None:
        raise InvalidRequest('userWordId is required')

    record = submit_review(
        user_id,
        user_word_id,
        data.get('quality'),
        expected_version=data.get('expectedVersion'),
    )
    return success(record.to_dict())


# ============================================================================
# DASHBOARD ROUTES
# ============================================================================

@bp.route('/dashboard')
def dashboard():
    user_id = current_user_id()
    return success(get_dashboard(user_id))


@bp.route('/stats/daily')
def daily_stats():
    """Per-day review, new-word and mastery counts"""
    user_id = current_user_id()
    days = request.args.get('days', default=7, type=int)
    counters = get_daily_counters(user_id, days)
    return success([counter.to_dict() for counter in counters])


# ============================================================================
# COLLECTION ROUTES
# ============================================================================

@bp.route('/words')
def words_list():
    """One page of the learner's collection, newest first by default"""
    user_id = current_user_id()
    status = request.args.get('status', '').strip() or None
    page, limit = resolve_page(
        request.args.get('page', type=int),
        request.args.get('limit', type=int),
    )

    records = list_records(
        user_id,
        status=status,
        page=page,
        limit=limit,
        sort=request.args.get('sort'),
        order=request.args.get('order'),
    )
    return success({
        'words': [record.to_dict() for record in records],
        'total': count_records(user_id, status=status),
        'page': page,
        'limit': limit,
    })


@bp.route('/words', methods=['POST'])
def words_collect():
    """Add a word to the learner's collection"""
    user_id = current_user_id()
    data = json_body()

    record = collect_word(
        user_id,
        data.get('word'),
        language=data.get('language') or 'en',
        phonetic=data.get('phonetic'),
        definitions=data.get('definitions'),
        context_sentence=data.get('contextSentence'),
        source=data.get('source'),
    )
    return success(record.to_dict(), 201)


@bp.route('/words/<int:record_id>')
def words_detail(record_id):
    user_id = current_user_id()
    return success(get_record(user_id, record_id).to_dict())


@bp.route('/words/<int:record_id>', methods=['DELETE'])
def words_remove(record_id):
    user_id = current_user_id()
    remove_word(user_id, record_id)
    return success({'id': record_id})


# ============================================================================
# SETTINGS ROUTES
# ============================================================================

@bp.route('/settings')
def settings_get():
    user_id = current_user_id()
    return success(get_learner_settings(user_id).to_dict())


@bp.route('/settings', methods=['PUT'])
def settings_update():
    user_id = current_user_id()
    data = json_body()

    timezone = data.get('timezone')
    if timezone is not None and not isinstance(timezone, str):
        raise InvalidRequest('timezone must be a string')

    settings = update_learner_settings(
        user_id,
        timezone=timezone,
        daily_new_words=optional_int(data.get('dailyNewWords'), 'dailyNewWords'),
    )
    return success(settings.to_dict())


@bp.route('/health')
def health():
    return jsonify({'status': 'ok'})
