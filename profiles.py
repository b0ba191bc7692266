import json
import logging
import re
import sqlite3
import time

from db import query_db, execute_db, count_db, now_iso, placeholders, row_to_dict
from errors import NotFound, ValidationError

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ('username', 'display_name', 'bio', 'avatar_url', 'location',
                  'experience', 'favorite_type', 'website_url')
BIKE_FIELDS = ('name', 'brand', 'model', 'year', 'color', 'engine_size',
               'image_url', 'mileage', 'is_primary')
ADVENTURE_FIELDS = ('title', 'description', 'start_date', 'end_date', 'distance',
                    'duration_days', 'difficulty', 'route_type', 'images',
                    'total_riding_hours', 'is_public', 'featured')

ANONYMOUS_USER = {'username': 'unknown', 'display_name': 'Anonymous User', 'avatar_url': None}

USERNAME_RE = re.compile(r'^[a-z0-9_]{3,30}$')


# ======== PROFILES ========

def get_user_profile(user_id):
    row = query_db('SELECT * FROM user_profiles WHERE user_id = ?', (user_id,), one=True)
    return row_to_dict(row)


def get_user_profile_by_username(username):
    row = query_db('SELECT * FROM user_profiles WHERE username = ?', ((username or '').lower(),), one=True)
    return row_to_dict(row)


def username_taken(username, exclude_user_id=None):
    if exclude_user_id is None:
        row = query_db('SELECT id FROM user_profiles WHERE username = ?', (username,), one=True)
    else:
        row = query_db('SELECT id FROM user_profiles WHERE username = ? AND user_id != ?',
                       (username, exclude_user_id), one=True)
    return row is not None


def generate_unique_username(base_name):
    """Slug of the rider's name, with a numeric suffix until it is free."""
    base = re.sub(r'[^a-z0-9_]', '', (base_name or '').strip().lower().replace(' ', '_'))[:24]
    if len(base) < 3:
        base = 'rider'

    candidate = base
    for n in range(1, 1000):
        if not username_taken(candidate):
            return candidate
        candidate = f'{base}{n}'

    return f'rider{str(int(time.time()))[-6:]}'


def insert_profile(user_id, username, display_name, **fields):
    now = now_iso()
    values = {k: fields.get(k) for k in PROFILE_FIELDS if k not in ('username', 'display_name')}
    execute_db('''
        INSERT INTO user_profiles
        (user_id, username, display_name, bio, avatar_url, location, experience, favorite_type, website_url, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ''', (user_id, username, display_name, values['bio'], values['avatar_url'], values['location'],
          values['experience'], values['favorite_type'], values['website_url'], now, now))
    return get_user_profile(user_id)


def update_user_profile(user_id, updates):
    profile = get_user_profile(user_id)
    if not profile:
        raise NotFound('Profile not found.')

    changes = {k: v for k, v in (updates or {}).items() if k in PROFILE_FIELDS}
    if 'username' in changes:
        username = (changes['username'] or '').strip().lower()
        if not USERNAME_RE.match(username):
            raise ValidationError('Username must be 3-30 characters: letters, numbers or underscores.')
        # check username availability (allow same if unchanged)
        if username_taken(username, exclude_user_id=user_id):
            raise ValidationError('Username already taken.')
        changes['username'] = username
    if 'display_name' in changes and not (changes['display_name'] or '').strip():
        raise ValidationError('Display name cannot be empty.')

    if not changes:
        return profile

    assignments = ', '.join(f'{k} = ?' for k in changes)
    try:
        query_db(f'UPDATE user_profiles SET {assignments}, updated_at = ? WHERE user_id = ?',
                 (*changes.values(), now_iso(), user_id))
    except sqlite3.IntegrityError:
        # lost a race for the username
        raise ValidationError('Username already taken.')
    return get_user_profile(user_id)


def get_profile_summaries(user_ids):
    """Display data for a set of riders, keyed by user id. Raises on store errors."""
    ids = list(dict.fromkeys(user_ids))
    if not ids:
        return {}
    rows = query_db(f'''
        SELECT user_id, username, display_name, avatar_url
        FROM user_profiles WHERE user_id IN ({placeholders(ids)})
    ''', ids)
    return {r['user_id']: dict(r) for r in rows}


def safe_profile_summaries(user_ids, what='profiles'):
    """get_profile_summaries for merge paths: a failed lookup yields no profiles."""
    try:
        return get_profile_summaries(user_ids)
    except sqlite3.Error as e:
        logger.error('Error fetching %s: %s', what, e)
        return {}


def search_users(query, limit=20):
    q = (query or '').strip()
    if not q:
        return []
    pattern = f'%{q}%'
    rows = query_db('''
        SELECT * FROM user_profiles
        WHERE username LIKE ? COLLATE NOCASE OR display_name LIKE ? COLLATE NOCASE
        ORDER BY username LIMIT ?
    ''', (pattern, pattern, limit))
    return [dict(r) for r in rows]


# ======== STATS ========

def ensure_stats_row(user_id):
    query_db('INSERT OR IGNORE INTO user_stats (user_id, updated_at) VALUES (?, ?)', (user_id, now_iso()))


def count_followers(user_id):
    return count_db('SELECT COUNT(*) AS c FROM user_followers WHERE following_id = ?', (user_id,))


def count_following(user_id):
    return count_db('SELECT COUNT(*) AS c FROM user_followers WHERE follower_id = ?', (user_id,))


def store_follow_counts(user_id):
    """Overwrite the stored follower/following counters with exact counts from the edge table."""
    followers = count_followers(user_id)
    following = count_following(user_id)
    query_db('''
        INSERT INTO user_stats (user_id, followers_count, following_count, updated_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET
            followers_count = excluded.followers_count,
            following_count = excluded.following_count,
            updated_at = excluded.updated_at
    ''', (user_id, followers, following, now_iso()))
    return followers, following


def get_user_stats(user_id):
    if not query_db('SELECT id FROM auth_users WHERE id = ?', (user_id,), one=True):
        raise NotFound('User not found.')

    # Get accurate counts directly from the source tables
    followers, following = store_follow_counts(user_id)
    totals = query_db('''
        SELECT COUNT(*) AS adventures,
               COALESCE(SUM(distance), 0) AS miles,
               COALESCE(SUM(total_riding_hours), 0) AS hours
        FROM user_adventures WHERE user_id = ?
    ''', (user_id,), one=True)
    posts = count_db('SELECT COUNT(*) AS c FROM user_posts WHERE user_id = ?', (user_id,))

    query_db('''
        UPDATE user_stats
        SET total_posts = ?, total_adventures = ?, total_miles = ?, riding_hours_total = ?, updated_at = ?
        WHERE user_id = ?
    ''', (posts, totals['adventures'], totals['miles'], totals['hours'], now_iso(), user_id))

    stats = row_to_dict(query_db('SELECT * FROM user_stats WHERE user_id = ?', (user_id,), one=True))
    stats['followers_count'] = followers
    stats['following_count'] = following
    return stats


# ======== BIKES ========

def _clean_bike(data, partial=False):
    bike = {k: v for k, v in (data or {}).items() if k in BIKE_FIELDS}
    errors = []
    if not partial or 'name' in bike:
        bike['name'] = (bike.get('name') or '').strip()
        if not bike['name']:
            errors.append('Bike name is required.')
    if bike.get('year') not in (None, ''):
        try:
            bike['year'] = int(bike['year'])
            if bike['year'] < 1885 or bike['year'] > 2100:
                errors.append('Year is out of range.')
        except (TypeError, ValueError):
            errors.append('Year must be a number.')
    if bike.get('mileage') not in (None, ''):
        try:
            bike['mileage'] = float(bike['mileage'])
        except (TypeError, ValueError):
            errors.append('Mileage must be a number.')
    if 'is_primary' in bike:
        bike['is_primary'] = 1 if bike['is_primary'] else 0
    if errors:
        raise ValidationError(' '.join(errors))
    return bike


def get_user_bikes(user_id):
    rows = query_db('''
        SELECT * FROM user_bikes WHERE user_id = ?
        ORDER BY is_primary DESC, created_at DESC, id DESC
    ''', (user_id,))
    return [dict(r) for r in rows]


def get_user_bike(user_id, bike_id):
    row = query_db('SELECT * FROM user_bikes WHERE id = ? AND user_id = ?', (bike_id, user_id), one=True)
    if not row:
        raise NotFound('Bike not found.')
    return dict(row)


def _clear_primary(user_id, keep_id=None):
    query_db('UPDATE user_bikes SET is_primary = 0 WHERE user_id = ? AND id != ?', (user_id, keep_id or -1))


def add_user_bike(user_id, data):
    bike = _clean_bike(data)
    now = now_iso()
    bike_id = execute_db('''
        INSERT INTO user_bikes (user_id, name, brand, model, year, color, engine_size, image_url, mileage, is_primary, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ''', (user_id, bike['name'], bike.get('brand'), bike.get('model'), bike.get('year'), bike.get('color'),
          bike.get('engine_size'), bike.get('image_url'), bike.get('mileage'), bike.get('is_primary', 0), now, now))
    if bike.get('is_primary'):
        _clear_primary(user_id, keep_id=bike_id)
    return get_user_bike(user_id, bike_id)


def update_user_bike(user_id, bike_id, data):
    get_user_bike(user_id, bike_id)
    bike = _clean_bike(data, partial=True)
    if bike:
        assignments = ', '.join(f'{k} = ?' for k in bike)
        query_db(f'UPDATE user_bikes SET {assignments}, updated_at = ? WHERE id = ? AND user_id = ?',
                 (*bike.values(), now_iso(), bike_id, user_id))
    if bike.get('is_primary'):
        _clear_primary(user_id, keep_id=bike_id)
    return get_user_bike(user_id, bike_id)


def upsert_user_bike(user_id, data):
    data = dict(data or {})
    bike_id = data.pop('id', None)
    if bike_id:
        return update_user_bike(user_id, bike_id, data)
    return add_user_bike(user_id, data)


def delete_user_bike(user_id, bike_id):
    get_user_bike(user_id, bike_id)
    query_db('DELETE FROM user_bikes WHERE id = ? AND user_id = ?', (bike_id, user_id))
    return True


# ======== ADVENTURES ========

def create_adventure(user_id, data):
    adv = {k: v for k, v in (data or {}).items() if k in ADVENTURE_FIELDS}
    title = (adv.get('title') or '').strip()
    start_date = (adv.get('start_date') or '').strip()

    errors = []
    if len(title) < 3:
        errors.append('Title must be at least 3 characters.')
    if not start_date:
        errors.append('Start date is required.')
    for field in ('distance', 'total_riding_hours'):
        if adv.get(field) not in (None, ''):
            try:
                adv[field] = float(adv[field])
            except (TypeError, ValueError):
                errors.append(f'{field.replace("_", " ").capitalize()} must be a number.')
    if errors:
        raise ValidationError(' '.join(errors))

    adventure_id = execute_db('''
        INSERT INTO user_adventures
        (user_id, title, description, start_date, end_date, distance, duration_days, difficulty, route_type,
         images, total_riding_hours, is_public, featured, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ''', (user_id, title, adv.get('description'), start_date, adv.get('end_date'), adv.get('distance'),
          adv.get('duration_days'), adv.get('difficulty'), adv.get('route_type'),
          json.dumps(adv.get('images') or []), adv.get('total_riding_hours'),
          1 if adv.get('is_public', True) else 0, 1 if adv.get('featured') else 0, now_iso()))
    row = query_db('SELECT * FROM user_adventures WHERE id = ?', (adventure_id,), one=True)
    return row_to_dict(row, json_fields=('images',))


def get_user_adventures(user_id, public_only=True):
    query = 'SELECT * FROM user_adventures WHERE user_id = ?'
    if public_only:
        query += ' AND is_public = 1'
    query += ' ORDER BY start_date DESC, id DESC'
    return [row_to_dict(r, json_fields=('images',)) for r in query_db(query, (user_id,))]
