"""Identity and session handling.

Identities (``auth_users``) are separate from the public rider profile. After a
successful email sign-up this module also creates the profile and stats rows;
Google identities get neither until the rider finishes onboarding.
"""
import json
import logging
import sqlite3
import urllib.error
import urllib.parse
import urllib.request
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout

from flask import current_app, session
from werkzeug.security import generate_password_hash, check_password_hash

from db import query_db, execute_db, now_iso
from errors import MotoLogError, NotAuthenticated, ValidationError
from profiles import (get_user_profile, insert_profile, ensure_stats_row, add_user_bike,
                      generate_unique_username, username_taken)

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = 'https://accounts.google.com/o/oauth2/v2/auth'
GOOGLE_TOKEN_URL = 'https://oauth2.googleapis.com/token'
GOOGLE_USERINFO_URL = 'https://openidconnect.googleapis.com/v1/userinfo'

# Auth change events
INITIAL_SESSION = 'INITIAL_SESSION'
SIGNED_IN = 'SIGNED_IN'
SIGNED_OUT = 'SIGNED_OUT'
SIGNING_OUT = 'SIGNING_OUT'
TOKEN_REFRESHED = 'TOKEN_REFRESHED'
USER_UPDATED = 'USER_UPDATED'

# Session states
ANONYMOUS = 'anonymous'
AUTHENTICATING = 'authenticating'
AUTHENTICATED = 'authenticated'
NEEDS_ONBOARDING = 'needs_onboarding'
SIGNING_OUT_STATE = 'signing_out'

SessionState = namedtuple('SessionState', 'status user_id profile_id loading')

LOADING_STATE = SessionState(AUTHENTICATING, None, None, True)
ANONYMOUS_STATE = SessionState(ANONYMOUS, None, None, False)

_subscribers = []


# ======== AUTH EVENTS ========

def subscribe(callback):
    """Register ``callback(event, session_payload)``; returns an unsubscribe function."""
    _subscribers.append(callback)

    def unsubscribe():
        if callback in _subscribers:
            _subscribers.remove(callback)
    return unsubscribe


def _emit(event, user):
    payload = {'user': user}
    for callback in list(_subscribers):
        try:
            callback(event, payload)
        except Exception:
            logger.exception('Auth listener failed for %s', event)


# ======== IDENTITIES ========

def _public_user(row):
    if row is None:
        return None
    user = dict(row)
    user.pop('password', None)
    user['metadata'] = json.loads(user['metadata']) if user['metadata'] else {}
    return user


def get_identity(user_id):
    return _public_user(query_db('SELECT * FROM auth_users WHERE id = ?', (user_id,), one=True))


def is_social_login(user):
    identities = (user or {}).get('metadata', {}).get('identities') or [user.get('provider', 'email')]
    return any(p != 'email' for p in identities)


def current_user_id():
    return session.get('user_id')


def get_current_user():
    uid = current_user_id()
    if uid is None:
        return None
    user = get_identity(uid)
    if user is None:
        # identity deleted underneath the cookie
        session.clear()
    return user


def ensure_authenticated(user_id):
    if user_id is None:
        raise NotAuthenticated('User not authenticated')
    return user_id


def require_user():
    return ensure_authenticated(current_user_id())


def _start_session(user):
    session.clear()
    session['user_id'] = user['id']
    session['email'] = user['email']
    session['provider'] = user['provider']


# ======== SIGN UP / SIGN IN ========

def sign_up(email, password, name, bio=None, experience=None, favorite_type=None,
            bike_brand=None, bike_model=None, bike_year=None):
    email = (email or '').strip().lower()
    name = (name or '').strip()

    errors = []
    if not email or '@' not in email:
        errors.append('A valid email is required.')
    if not password or len(password) < 6:
        errors.append('Password must be at least 6 characters.')
    if not name:
        errors.append('Name is required.')
    if errors:
        raise ValidationError(' '.join(errors))

    metadata = {'display_name': name, 'identities': ['email']}
    try:
        user_id = execute_db(
            'INSERT INTO auth_users (email, password, provider, metadata, created_at) VALUES (?, ?, ?, ?, ?)',
            (email, generate_password_hash(password), 'email', json.dumps(metadata), now_iso())
        )
    except sqlite3.IntegrityError:
        raise ValidationError('Email already exists. Please log in.')

    # The identity exists now; the rows below are best-effort like the original sign-up
    try:
        insert_profile(user_id, generate_unique_username(name), name,
                       bio=bio, experience=experience, favorite_type=favorite_type)
    except sqlite3.Error as e:
        logger.error('Error creating user profile for %s: %s', user_id, e)

    try:
        ensure_stats_row(user_id)
    except sqlite3.Error as e:
        logger.error('Error creating user stats for %s: %s', user_id, e)

    if bike_brand and bike_model:
        try:
            add_user_bike(user_id, {'name': 'My Bike', 'brand': bike_brand, 'model': bike_model,
                                    'year': bike_year or None, 'is_primary': True})
        except (sqlite3.Error, ValidationError) as e:
            logger.error('Error creating user bike for %s: %s', user_id, e)

    user = get_identity(user_id)
    _start_session(user)
    _emit(SIGNED_IN, user)
    return user


def sign_in(email, password):
    email = (email or '').strip().lower()
    row = query_db('SELECT * FROM auth_users WHERE email = ?', (email,), one=True)
    if row is None:
        raise NotAuthenticated("User doesn't exist. Please register first.")
    if not row['password'] or not check_password_hash(row['password'], password or ''):
        raise NotAuthenticated('Incorrect password. Please try again.')

    user = _public_user(row)
    _start_session(user)
    _emit(SIGNED_IN, user)
    return user


def sign_out():
    session.clear()
    _emit(SIGNED_OUT, None)


# ======== GOOGLE ========

def google_authorize_url(redirect_uri, state):
    params = {
        'client_id': current_app.config['GOOGLE_CLIENT_ID'],
        'redirect_uri': redirect_uri,
        'response_type': 'code',
        'scope': 'openid email profile',
        'state': state,
        'access_type': 'offline',
        'prompt': 'consent',
    }
    return f'{GOOGLE_AUTH_URL}?{urllib.parse.urlencode(params)}'


def exchange_google_code(code, redirect_uri):
    """Trade an authorization code for the Google account's userinfo."""
    data = urllib.parse.urlencode({
        'code': code,
        'client_id': current_app.config['GOOGLE_CLIENT_ID'],
        'client_secret': current_app.config['GOOGLE_CLIENT_SECRET'],
        'redirect_uri': redirect_uri,
        'grant_type': 'authorization_code',
    }).encode()
    try:
        req = urllib.request.Request(GOOGLE_TOKEN_URL, data=data, method='POST')
        with urllib.request.urlopen(req, timeout=6) as resp:
            tokens = json.loads(resp.read().decode('utf-8'))

        req = urllib.request.Request(GOOGLE_USERINFO_URL,
                                     headers={'Authorization': f"Bearer {tokens['access_token']}"})
        with urllib.request.urlopen(req, timeout=6) as resp:
            return json.loads(resp.read().decode('utf-8'))
    except (urllib.error.URLError, KeyError, ValueError) as e:
        logger.error('Google sign-in failed: %s', e)
        raise NotAuthenticated('Google sign-in failed. Please try again.')


def sign_in_with_google(identity):
    email = (identity.get('email') or '').strip().lower()
    if not email:
        raise NotAuthenticated('Google did not return an email address.')

    google = {k: identity[k] for k in ('sub', 'name', 'full_name', 'picture', 'avatar_url') if identity.get(k)}
    row = query_db('SELECT * FROM auth_users WHERE email = ?', (email,), one=True)
    if row is None:
        metadata = {'identities': ['google'], 'google': google}
        user_id = execute_db(
            'INSERT INTO auth_users (email, password, provider, metadata, created_at) VALUES (?, NULL, ?, ?, ?)',
            (email, 'google', json.dumps(metadata), now_iso())
        )
    else:
        # link the Google identity to the existing account
        user_id = row['id']
        metadata = json.loads(row['metadata']) if row['metadata'] else {}
        identities = metadata.get('identities') or [row['provider']]
        if 'google' not in identities:
            identities.append('google')
        metadata['identities'] = identities
        metadata['google'] = google
        query_db('UPDATE auth_users SET metadata = ? WHERE id = ?', (json.dumps(metadata), user_id))

    user = get_identity(user_id)
    _start_session(user)
    _emit(SIGNED_IN, user)
    return user


def get_google_profile_data(user_id):
    user = get_identity(user_id)
    if not user or 'google' not in (user['metadata'].get('identities') or []):
        return None

    meta = user['metadata']
    google = meta.get('google') or {}
    avatar_url = meta.get('avatar_url') or meta.get('picture') or google.get('avatar_url') or google.get('picture')
    display_name = (meta.get('full_name') or meta.get('name') or google.get('full_name')
                    or google.get('name') or meta.get('display_name'))

    if avatar_url or display_name:
        return {'avatar_url': avatar_url, 'display_name': display_name}
    return None


def sync_google_profile(user_id):
    """Fill an existing profile's empty avatar/display name from Google. Best-effort."""
    try:
        google = get_google_profile_data(user_id)
        if not google:
            return None
        profile = get_user_profile(user_id)
        if not profile:
            logger.warning('Profile not found for Google sync: %s', user_id)
            return None

        updates = {}
        if not profile['avatar_url'] and google['avatar_url']:
            updates['avatar_url'] = google['avatar_url']
        if not profile['display_name'] and google['display_name']:
            updates['display_name'] = google['display_name']
        if not updates:
            return None

        assignments = ', '.join(f'{k} = ?' for k in updates)
        query_db(f'UPDATE user_profiles SET {assignments}, updated_at = ? WHERE user_id = ?',
                 (*updates.values(), now_iso(), user_id))
        logger.info('Synced Google profile data for user %s: %s', user_id, sorted(updates))
        return get_user_profile(user_id)
    except sqlite3.Error as e:
        logger.error('Error in sync_google_profile: %s', e)
        return None


def create_user_profile(user_id, data):
    """Onboarding for social-login riders who have an identity but no profile."""
    ensure_authenticated(user_id)
    if get_user_profile(user_id):
        raise ValidationError('Profile already exists.')

    google = get_google_profile_data(user_id) or {}
    display_name = (data.get('display_name') or '').strip() or google.get('display_name') or 'New Rider'
    username = (data.get('username') or '').strip().lower() or generate_unique_username(display_name)
    if username_taken(username):
        raise ValidationError('Username already taken.')

    fields = {k: data.get(k) for k in ('bio', 'location', 'experience', 'favorite_type', 'website_url')}
    fields['avatar_url'] = data.get('avatar_url') or google.get('avatar_url')
    try:
        profile = insert_profile(user_id, username, display_name, **fields)
    except sqlite3.IntegrityError:
        raise ValidationError('Username already taken.')
    ensure_stats_row(user_id)

    _emit(USER_UPDATED, get_identity(user_id))
    return profile


# ======== SESSION STATE ========

def reduce_session(state, event, user=None, profile=None):
    """Single reducer for session state transitions."""
    if event == TOKEN_REFRESHED:
        return state
    if event == SIGNING_OUT:
        return state._replace(status=SIGNING_OUT_STATE, loading=True)
    if event == SIGNED_OUT:
        return ANONYMOUS_STATE
    if event in (INITIAL_SESSION, SIGNED_IN, USER_UPDATED):
        if user is None:
            return ANONYMOUS_STATE
        if profile is None and is_social_login(user):
            status = NEEDS_ONBOARDING
        else:
            status = AUTHENTICATED
        return SessionState(status, user['id'], profile['id'] if profile else None, False)
    return state


class SessionTracker:
    """Applies auth events through reduce_session and notifies only on real changes.

    Repeated or reordered events that resolve to the state already held are
    dropped, so listeners see exactly one transition per meaningful change.
    """

    def __init__(self, profile_loader=None):
        self.state = LOADING_STATE
        self.profile_loader = profile_loader or get_user_profile
        self._listeners = []

    def add_listener(self, listener):
        self._listeners.append(listener)

    def handle(self, event, payload=None):
        user = (payload or {}).get('user')
        profile = self.profile_loader(user['id']) if user else None
        new_state = reduce_session(self.state, event, user, profile)
        if new_state == self.state:
            return False
        self.state = new_state
        for listener in list(self._listeners):
            listener(new_state)
        return True


def resolve_session(user_id):
    user = get_identity(user_id) if user_id is not None else None
    profile = get_user_profile(user_id) if user else None
    if user and profile and is_social_login(user):
        profile = sync_google_profile(user_id) or profile
    return reduce_session(LOADING_STATE, INITIAL_SESSION, user, profile)


def bootstrap_session(user_id, timeout=None, resolver=resolve_session):
    """Resolve the initial session state, giving up after a fixed timeout.

    On timeout or store failure the loading state is cleared and the caller
    is treated as anonymous.
    """
    app = current_app._get_current_object()
    if timeout is None:
        timeout = app.config['AUTH_BOOTSTRAP_TIMEOUT']

    def work():
        with app.app_context():
            return resolver(user_id)

    executor = ThreadPoolExecutor(max_workers=1)
    future = executor.submit(work)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        logger.warning('Auth initialization timeout after %ss, clearing loading state', timeout)
        return ANONYMOUS_STATE
    except (sqlite3.Error, MotoLogError) as e:
        logger.error('Error getting initial session: %s', e)
        return ANONYMOUS_STATE
    finally:
        executor.shutdown(wait=False)
