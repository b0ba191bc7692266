"""Group trips: creation, the join/leave workflow, rosters and trip chat.

Joining negotiates the participant ``status`` label. Databases created by
``init_db.py`` accept every label below, but older ones were built with a
narrower CHECK constraint, so the insert walks the candidates in order until
one is accepted. Everything that reads participation by status uses the
superset, otherwise a rider stored under a late label would vanish from
rosters, counts and the chat permission check.
"""
import json
import logging
import sqlite3

from auth import ensure_authenticated
from db import (query_db, execute_db, count_db, now_iso, placeholders, row_to_dict,
                classify_integrity_error, translate_integrity_error)
from errors import (AlreadyJoined, BackendError, MotoLogError, NotFound, PermissionDenied, StatusConstraintError,
                    TripFull, TripNotOpen, ValidationError)
from notifications import create_notification
from profiles import ANONYMOUS_USER, get_user_profile, safe_profile_summaries

logger = logging.getLogger(__name__)


class ParticipantStatus:
    JOINED = 'joined'
    CONFIRMED = 'confirmed'
    ACCEPTED = 'accepted'
    ACTIVE = 'active'
    PENDING = 'pending'


class TripStatus:
    OPEN = 'open'
    FULL = 'full'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


JOIN_STATUS_CANDIDATES = (ParticipantStatus.JOINED, ParticipantStatus.CONFIRMED,
                          ParticipantStatus.ACCEPTED, ParticipantStatus.ACTIVE)
PARTICIPANT_STATUSES = JOIN_STATUS_CANDIDATES + (ParticipantStatus.PENDING,)

TRIP_JSON_FIELDS = ('included_services', 'waypoints', 'fuel_stops', 'images')
DIFFICULTIES = ('easy', 'moderate', 'challenging', 'expert')
DEFAULT_MAX_PARTICIPANTS = 10

ANONYMOUS_ORGANIZER = {'username': 'unknown', 'display_name': 'Anonymous Organizer', 'avatar_url': None}

_STATUS_SQL = placeholders(PARTICIPANT_STATUSES)


def _trip_dict(row):
    trip = row_to_dict(row, json_fields=TRIP_JSON_FIELDS)
    if trip is not None:
        trip['is_public'] = bool(trip['is_public'])
        trip['meals_included'] = bool(trip['meals_included'])
    return trip


def _get_trip(trip_id):
    row = query_db('SELECT * FROM group_trips WHERE id = ?', (trip_id,), one=True)
    if not row:
        raise NotFound(f'Trip not found: {trip_id}')
    return _trip_dict(row)


def _organizer(trip, profiles):
    return profiles.get(trip['organizer_id']) or dict(ANONYMOUS_ORGANIZER, user_id=trip['organizer_id'])


# ======== PARTICIPATION ========

def get_participant_count(trip_id):
    return count_db(f'''
        SELECT COUNT(*) AS c FROM trip_participants
        WHERE trip_id = ? AND status IN ({_STATUS_SQL})
    ''', (trip_id, *PARTICIPANT_STATUSES))


def refresh_participant_count(trip_id):
    """Overwrite the stored current_participants with an exact count."""
    count = get_participant_count(trip_id)
    query_db('UPDATE group_trips SET current_participants = ? WHERE id = ?', (count, trip_id))
    return count


def _find_participation(trip_id, user_id):
    return query_db('SELECT id, status FROM trip_participants WHERE trip_id = ? AND user_id = ?',
                    (trip_id, user_id), one=True)


def check_trip_participation(trip_id, user_id):
    if user_id is None:
        return False
    return _find_participation(trip_id, user_id) is not None


def insert_participant(trip_id, user_id, candidates=JOIN_STATUS_CANDIDATES):
    """Insert a participant row, trying each status label until the store accepts one.

    Only a CHECK-constraint rejection moves on to the next label. Any other
    rejection (duplicate pair, missing trip) is final and raised at once.
    """
    last_error = None
    for status in candidates:
        logger.debug('Join attempt for trip %s with status %r', trip_id, status)
        try:
            participant_id = execute_db('''
                INSERT INTO trip_participants (trip_id, user_id, status, joined_at)
                VALUES (?, ?, ?, ?)
            ''', (trip_id, user_id, status, now_iso()))
        except sqlite3.IntegrityError as e:
            kind = classify_integrity_error(e)
            if kind == 'check':
                logger.warning('Status %r rejected for trip %s: %s', status, trip_id, e)
                last_error = str(e)
                continue
            if kind == 'unique':
                raise AlreadyJoined('You are already a participant in this trip')
            if kind == 'foreign_key':
                raise BackendError(f'Trip with ID {trip_id} does not exist. Please refresh the page.',
                                   kind=kind, status_code=404)
            raise translate_integrity_error(e)

        logger.info('Joined trip %s with status %r', trip_id, status)
        row = query_db('SELECT * FROM trip_participants WHERE id = ?', (participant_id,), one=True)
        return dict(row)

    logger.error('All status values failed for trip %s: %s', trip_id, last_error)
    raise StatusConstraintError()


def join_trip(trip_id, user_id):
    ensure_authenticated(user_id)
    trip = _get_trip(trip_id)

    if trip['status'] != TripStatus.OPEN:
        raise TripNotOpen('Trip is not open for new participants')

    # Check if already participant
    if _find_participation(trip_id, user_id):
        raise AlreadyJoined('You are already a participant in this trip')

    # Check capacity
    if get_participant_count(trip_id) >= trip['max_participants']:
        raise TripFull('Trip is full')

    participant = insert_participant(trip_id, user_id)
    refresh_participant_count(trip_id)

    profile = get_user_profile(user_id)
    name = profile['display_name'] if profile else 'A rider'
    create_notification(trip['organizer_id'], user_id, 'trip_join', title='New trip participant',
                        message=f"{name} joined {trip['title']}", entity_type='trip', entity_id=trip_id)
    return participant


def leave_trip(trip_id, user_id):
    ensure_authenticated(user_id)
    trip = _get_trip(trip_id)
    if trip['organizer_id'] == user_id:
        raise PermissionDenied('You cannot leave a trip you organize.')

    query_db('DELETE FROM trip_participants WHERE trip_id = ? AND user_id = ?', (trip_id, user_id))
    refresh_participant_count(trip_id)
    return True


# ======== TRIPS ========

def _clean_trip(data):
    errors = []
    title = (data.get('title') or '').strip()
    if len(title) < 3:
        errors.append('Title must be at least 3 characters.')

    max_participants = data.get('max_participants')
    if max_participants in (None, ''):
        max_participants = DEFAULT_MAX_PARTICIPANTS
    else:
        try:
            max_participants = int(max_participants)
            if max_participants <= 0:
                errors.append('Max participants must be positive.')
        except (TypeError, ValueError):
            errors.append('Max participants must be a number.')

    distance = data.get('distance')
    if distance not in (None, ''):
        try:
            distance = int(distance)
        except (TypeError, ValueError):
            errors.append('Distance must be a number.')
    else:
        distance = None

    difficulty = data.get('difficulty')
    if difficulty and difficulty not in DIFFICULTIES:
        errors.append('Invalid difficulty.')

    start_date, end_date = data.get('start_date'), data.get('end_date')
    if start_date and end_date and end_date < start_date:
        errors.append('End date must be after the start date.')

    if errors:
        raise ValidationError(' '.join(errors))
    return title, max_participants, distance


def create_trip(organizer_id, data):
    """Create a public open trip and enrol the organizer as its first participant."""
    ensure_authenticated(organizer_id)
    title, max_participants, distance = _clean_trip(data)

    now = now_iso()
    trip_id = execute_db('''
        INSERT INTO group_trips
        (organizer_id, title, description, start_date, end_date, start_location, end_location, distance,
         difficulty, max_participants, estimated_cost, requirements, included_services, waypoints, fuel_stops,
         accommodation_type, meals_included, emergency_contact, images, status, is_public, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ''', (organizer_id, title, data.get('description'), data.get('start_date'), data.get('end_date'),
          data.get('start_location'), data.get('end_location'), distance, data.get('difficulty'),
          max_participants, data.get('estimated_cost'), data.get('requirements'),
          json.dumps(data.get('included_services') or []), json.dumps(data.get('waypoints') or []),
          json.dumps(data.get('fuel_stops') or []), data.get('accommodation_type'),
          1 if data.get('meals_included') else 0, data.get('emergency_contact'),
          json.dumps(data.get('images') or []), TripStatus.OPEN, 1, now, now))

    try:
        insert_participant(trip_id, organizer_id)
    except MotoLogError:
        # no trip without its organizer on the roster
        logger.error('Organizer enrolment failed, removing trip %s', trip_id)
        query_db('DELETE FROM group_trips WHERE id = ?', (trip_id,))
        raise
    refresh_participant_count(trip_id)
    return _get_trip(trip_id)


def update_trip_images(trip_id, user_id, images):
    ensure_authenticated(user_id)
    trip = _get_trip(trip_id)
    if trip['organizer_id'] != user_id:
        raise PermissionDenied('Only the organizer can change trip images.')
    query_db('UPDATE group_trips SET images = ?, updated_at = ? WHERE id = ?',
             (json.dumps(list(images or [])), now_iso(), trip_id))
    return _get_trip(trip_id)


def get_public_trips(limit=20, offset=0):
    rows = query_db('''
        SELECT * FROM group_trips
        WHERE is_public = 1 AND status = ?
        ORDER BY created_at DESC, id DESC
        LIMIT ? OFFSET ?
    ''', (TripStatus.OPEN, limit, offset))
    trips = [_trip_dict(r) for r in rows]
    if not trips:
        return []

    profiles = safe_profile_summaries([t['organizer_id'] for t in trips], 'trip organizers')
    for trip in trips:
        trip['organizer'] = _organizer(trip, profiles)
        trip['participant_count'] = get_participant_count(trip['id'])
    return trips


def get_trip_roster(trip_id):
    rows = query_db(f'''
        SELECT user_id, joined_at, status FROM trip_participants
        WHERE trip_id = ? AND status IN ({_STATUS_SQL})
        ORDER BY joined_at ASC, id ASC
    ''', (trip_id, *PARTICIPANT_STATUSES))
    participants = [dict(r) for r in rows]
    profiles = safe_profile_summaries([p['user_id'] for p in participants], 'participant profiles')
    for p in participants:
        p['user_profiles'] = profiles.get(p['user_id']) or dict(ANONYMOUS_USER)
    return participants


def get_trip_by_id(trip_id):
    trip = _get_trip(trip_id)
    profiles = safe_profile_summaries([trip['organizer_id']], 'trip organizer')
    trip['organizer'] = _organizer(trip, profiles)
    trip['participants'] = get_trip_roster(trip_id)
    trip['participant_count'] = len(trip['participants'])
    trip['spaces_remaining'] = max(0, trip['max_participants'] - trip['participant_count'])
    trip['is_full'] = trip['participant_count'] >= trip['max_participants']
    return trip


def get_user_trips(user_id):
    rows = query_db('SELECT * FROM group_trips WHERE organizer_id = ? ORDER BY start_date ASC, id ASC', (user_id,))
    trips = [_trip_dict(r) for r in rows]
    profiles = safe_profile_summaries([user_id], 'trip organizer')
    for trip in trips:
        trip['organizer'] = _organizer(trip, profiles)
    return trips


def get_user_joined_trips(user_id):
    participations = query_db(f'''
        SELECT trip_id, joined_at, status FROM trip_participants
        WHERE user_id = ? AND status IN ({_STATUS_SQL})
    ''', (user_id, *PARTICIPANT_STATUSES))
    if not participations:
        return []

    trip_ids = [p['trip_id'] for p in participations]
    rows = query_db(f'SELECT * FROM group_trips WHERE id IN ({placeholders(trip_ids)}) ORDER BY start_date ASC, id ASC',
                    trip_ids)
    trips = [_trip_dict(r) for r in rows]
    profiles = safe_profile_summaries([t['organizer_id'] for t in trips], 'trip organizers')
    joined = {p['trip_id']: p for p in participations}
    for trip in trips:
        trip['organizer'] = _organizer(trip, profiles)
        trip['participation_status'] = joined[trip['id']]['status']
        trip['joined_at'] = joined[trip['id']]['joined_at']
    return trips


# ======== TRIP CHAT ========

def can_post_in_trip_chat(trip, user_id):
    if trip['organizer_id'] == user_id:
        return True
    participation = query_db(f'''
        SELECT id FROM trip_participants
        WHERE trip_id = ? AND user_id = ? AND status IN ({_STATUS_SQL})
    ''', (trip['id'], user_id, *PARTICIPANT_STATUSES), one=True)
    return participation is not None


def get_trip_chat_messages(trip_id):
    rows = query_db('''
        SELECT * FROM trip_chat_messages WHERE trip_id = ?
        ORDER BY created_at ASC, id ASC
    ''', (trip_id,))
    messages = [dict(r) for r in rows]
    if not messages:
        return []

    # Continue without profiles if the lookup fails
    profiles = safe_profile_summaries([m['sender_id'] for m in messages], 'chat sender profiles')
    for m in messages:
        m['sender_profile'] = profiles.get(m['sender_id'])
    return messages


def send_trip_message(trip_id, user_id, message):
    ensure_authenticated(user_id)
    message = (message or '').strip()
    if not message:
        raise ValidationError('Message cannot be empty.')

    trip = _get_trip(trip_id)
    if not can_post_in_trip_chat(trip, user_id):
        logger.warning('Chat permission denied for user %s on trip %s', user_id, trip_id)
        raise PermissionDenied('You must be a participant or organizer to send messages')

    message_id = execute_db('INSERT INTO trip_chat_messages (trip_id, sender_id, message, created_at) VALUES (?, ?, ?, ?)',
                            (trip_id, user_id, message, now_iso()))
    return dict(query_db('SELECT * FROM trip_chat_messages WHERE id = ?', (message_id,), one=True))
