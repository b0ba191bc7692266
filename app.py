from flask import Flask, request, redirect, session, jsonify, url_for
import logging
import os
import secrets

from auth import (bootstrap_session, create_user_profile, current_user_id, exchange_google_code,
                  get_current_user, google_authorize_url, require_user, sign_in, sign_in_with_google,
                  sign_out, sign_up)
from chat import create_chat_room, get_chat_room, get_room_messages, get_user_conversations, send_message
from errors import MotoLogError, NotAuthenticated, NotFound, ValidationError
from notifications import get_unread_count, get_user_notifications, mark_all_read, mark_notification_read
from profiles import (add_user_bike, create_adventure, delete_user_bike, get_user_adventures, get_user_bikes,
                      get_user_profile, get_user_profile_by_username, get_user_stats, search_users,
                      update_user_bike, update_user_profile)
from social import (add_post_comment, check_follow_status, clamp_page_size, create_post, follow_user,
                    get_followers, get_following, get_global_feed, get_post_comments, get_user_activity, get_user_posts,
                    get_user_stories, toggle_post_like, unfollow_user)
from storage import BUCKETS, delete_file, get_policy, get_user_media_files, upload_file
from trips import (check_trip_participation, create_trip, get_public_trips, get_trip_by_id, get_trip_chat_messages,
                   get_user_joined_trips, get_user_trips, join_trip, leave_trip, send_trip_message,
                   update_trip_images)

logger = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = os.environ.get('FLASK_SECRET', 'dev_secret')

UPLOAD_FOLDER = os.environ.get('MOTOLOG_UPLOADS', os.path.join('static', 'uploads'))
os.makedirs(UPLOAD_FOLDER, exist_ok=True)
app.config.update(
    DATABASE=os.environ.get('MOTOLOG_DB', 'moto_log.db'),
    UPLOAD_FOLDER=UPLOAD_FOLDER,
    STORAGE_PUBLIC_URL=os.environ.get('MOTOLOG_PUBLIC_URL', '/static/uploads'),
    AUTH_BOOTSTRAP_TIMEOUT=float(os.environ.get('MOTOLOG_AUTH_TIMEOUT', '5')),
    GOOGLE_CLIENT_ID=os.environ.get('GOOGLE_CLIENT_ID', ''),
    GOOGLE_CLIENT_SECRET=os.environ.get('GOOGLE_CLIENT_SECRET', ''),
    FEED_PAGE_SIZE=10,
    MAX_CONTENT_LENGTH=60 * 1024 * 1024,
)


@app.errorhandler(MotoLogError)
def handle_motolog_error(e):
    if e.status_code >= 500:
        logger.error('%s: %s', type(e).__name__, e)
    return jsonify(e.to_dict()), e.status_code


def _json():
    return request.get_json(silent=True) or {}


def _int_arg(name, default):
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError):
        raise ValidationError(f'{name} must be a number.')


# ======== AUTH ========

@app.route('/api/auth/register', methods=['POST'])
def register():
    data = _json()
    user = sign_up(data.get('email'), data.get('password'), data.get('name'),
                   bio=data.get('bio'), experience=data.get('experience'),
                   favorite_type=data.get('favorite_type'), bike_brand=data.get('bike_brand'),
                   bike_model=data.get('bike_model'), bike_year=data.get('bike_year'))
    return jsonify({'success': True, 'user': user}), 201


@app.route('/api/auth/login', methods=['POST'])
def login():
    data = _json()
    user = sign_in(data.get('email'), data.get('password'))
    return jsonify({'success': True, 'user': user})


@app.route('/api/auth/logout', methods=['POST'])
def logout():
    sign_out()
    return jsonify({'success': True})


@app.route('/api/auth/session')
def auth_session():
    state = bootstrap_session(current_user_id())
    return jsonify({'session': state._asdict(), 'user': get_current_user() if state.user_id else None})


@app.route('/api/auth/google')
def google_login():
    state = secrets.token_urlsafe(16)
    session['oauth_state'] = state
    return redirect(google_authorize_url(url_for('google_callback', _external=True), state))


@app.route('/api/auth/google/callback')
def google_callback():
    if request.args.get('state') != session.pop('oauth_state', None):
        raise NotAuthenticated('Google sign-in failed. Please try again.')
    code = request.args.get('code')
    if not code:
        raise NotAuthenticated('Google sign-in was cancelled.')
    identity = exchange_google_code(code, url_for('google_callback', _external=True))
    user = sign_in_with_google(identity)
    return jsonify({'success': True, 'user': user, 'needs_onboarding': get_user_profile(user['id']) is None})


@app.route('/api/auth/onboarding', methods=['POST'])
def onboarding():
    profile = create_user_profile(require_user(), _json())
    return jsonify({'success': True, 'profile': profile}), 201


# ======== PROFILES ========

@app.route('/api/profile', methods=['GET', 'PUT'])
def my_profile():
    user_id = require_user()
    if request.method == 'PUT':
        return jsonify({'success': True, 'profile': update_user_profile(user_id, _json())})
    profile = get_user_profile(user_id)
    if not profile:
        raise NotFound('Profile not found')
    return jsonify({'profile': profile})


@app.route('/api/users/search')
def users_search():
    q = request.args.get('q', '').strip()
    if not q:
        return jsonify({'users': []})
    return jsonify({'users': search_users(q)})


@app.route('/api/users/<username>')
def user_profile(username):
    profile = get_user_profile_by_username(username)
    if not profile:
        raise NotFound('User not found')
    viewer_id = current_user_id()
    user_id = profile['user_id']
    return jsonify({
        'profile': profile,
        'stats': get_user_stats(user_id),
        'bikes': get_user_bikes(user_id),
        'posts': get_user_posts(user_id, public_only=viewer_id != user_id),
        'adventures': get_user_adventures(user_id, public_only=viewer_id != user_id),
        'is_following': check_follow_status(viewer_id, user_id) if viewer_id else False,
    })


@app.route('/api/users/<int:user_id>/stats')
def user_stats(user_id):
    return jsonify({'stats': get_user_stats(user_id)})


@app.route('/api/users/<int:user_id>/followers')
def user_followers(user_id):
    return jsonify({'followers': get_followers(user_id)})


@app.route('/api/users/<int:user_id>/following')
def user_following(user_id):
    return jsonify({'following': get_following(user_id)})


@app.route('/api/users/<int:user_id>/activity')
def user_activity(user_id):
    return jsonify({'activity': get_user_activity(user_id, limit=_int_arg('limit', 10))})


@app.route('/api/users/<int:user_id>/follow', methods=['POST', 'DELETE'])
def follow(user_id):
    me = require_user()
    if request.method == 'DELETE':
        unfollow_user(me, user_id)
        return jsonify({'success': True, 'following': False})
    follow_user(me, user_id)
    return jsonify({'success': True, 'following': True})


# ======== BIKES / ADVENTURES ========

@app.route('/api/bikes', methods=['GET', 'POST'])
def bikes():
    user_id = require_user()
    if request.method == 'POST':
        return jsonify({'success': True, 'bike': add_user_bike(user_id, _json())}), 201
    return jsonify({'bikes': get_user_bikes(user_id)})


@app.route('/api/bikes/<int:bike_id>', methods=['PUT', 'DELETE'])
def bike(bike_id):
    user_id = require_user()
    if request.method == 'DELETE':
        delete_user_bike(user_id, bike_id)
        return jsonify({'success': True})
    return jsonify({'success': True, 'bike': update_user_bike(user_id, bike_id, _json())})


@app.route('/api/adventures', methods=['GET', 'POST'])
def adventures():
    user_id = require_user()
    if request.method == 'POST':
        return jsonify({'success': True, 'adventure': create_adventure(user_id, _json())}), 201
    return jsonify({'adventures': get_user_adventures(user_id, public_only=False)})


# ======== FEED / POSTS ========

@app.route('/api/feed')
def feed():
    limit = clamp_page_size(_int_arg('limit', app.config['FEED_PAGE_SIZE']))
    offset = _int_arg('offset', 0)
    posts = get_global_feed(limit=limit, offset=offset, viewer_id=current_user_id())
    return jsonify({'posts': posts, 'has_more': len(posts) == limit})


@app.route('/api/stories')
def stories():
    return jsonify({'stories': get_user_stories(limit=_int_arg('limit', 10))})


@app.route('/api/posts', methods=['POST'])
def new_post():
    user_id = require_user()
    data = _json()
    post = create_post(user_id, data.get('caption'), images=data.get('images'), location=data.get('location'),
                       tags=data.get('tags'), adventure_id=data.get('adventure_id'), bike_id=data.get('bike_id'),
                       is_public=data.get('is_public', True))
    return jsonify({'success': True, 'post': post}), 201


@app.route('/api/posts/<int:post_id>/like', methods=['POST'])
def like_post(post_id):
    liked = toggle_post_like(require_user(), post_id)
    return jsonify({'success': True, 'liked': liked})


@app.route('/api/posts/<int:post_id>/comments', methods=['GET', 'POST'])
def post_comments(post_id):
    if request.method == 'POST':
        data = _json()
        comment = add_post_comment(require_user(), post_id, data.get('comment'),
                                   parent_comment_id=data.get('parent_comment_id'))
        return jsonify({'success': True, 'comment': comment}), 201
    return jsonify({'comments': get_post_comments(post_id)})


# ======== TRIPS ========

@app.route('/api/trips', methods=['GET', 'POST'])
def trips():
    if request.method == 'POST':
        trip = create_trip(require_user(), _json())
        return jsonify({'success': True, 'trip': trip}), 201
    return jsonify({'trips': get_public_trips(limit=_int_arg('limit', 20), offset=_int_arg('offset', 0))})


@app.route('/api/trips/mine')
def my_trips():
    user_id = require_user()
    return jsonify({'organized': get_user_trips(user_id), 'joined': get_user_joined_trips(user_id)})


@app.route('/api/trips/<int:trip_id>')
def trip_detail(trip_id):
    trip = get_trip_by_id(trip_id)
    trip['is_participant'] = check_trip_participation(trip_id, current_user_id())
    return jsonify({'trip': trip})


@app.route('/api/trips/<int:trip_id>/join', methods=['POST'])
def trip_join(trip_id):
    participant = join_trip(trip_id, current_user_id())
    return jsonify({'success': True, 'participant': participant})


@app.route('/api/trips/<int:trip_id>/leave', methods=['POST'])
def trip_leave(trip_id):
    leave_trip(trip_id, current_user_id())
    return jsonify({'success': True})


@app.route('/api/trips/<int:trip_id>/images', methods=['PUT'])
def trip_images(trip_id):
    trip = update_trip_images(trip_id, require_user(), _json().get('images'))
    return jsonify({'success': True, 'trip': trip})


@app.route('/api/trips/<int:trip_id>/messages', methods=['GET', 'POST'])
def trip_messages(trip_id):
    if request.method == 'POST':
        message = send_trip_message(trip_id, current_user_id(), _json().get('message'))
        return jsonify({'success': True, 'message': message}), 201
    return jsonify({'messages': get_trip_chat_messages(trip_id)})


# ======== CHAT ========

@app.route('/api/chats', methods=['GET', 'POST'])
def chats():
    user_id = require_user()
    if request.method == 'POST':
        data = _json()
        room = create_chat_room(user_id, data.get('name'), description=data.get('description'),
                                is_group=data.get('is_group', True), participant_ids=data.get('participant_ids') or [])
        return jsonify({'success': True, 'room': room}), 201
    return jsonify({'conversations': get_user_conversations(user_id)})


@app.route('/api/chats/<int:room_id>')
def chat_room(room_id):
    return jsonify({'room': get_chat_room(room_id, require_user())})


@app.route('/api/chats/<int:room_id>/messages', methods=['GET', 'POST'])
def chat_messages(room_id):
    user_id = require_user()
    if request.method == 'POST':
        data = _json()
        message = send_message(room_id, user_id, data.get('content'),
                               message_type=data.get('message_type', 'text'), media_url=data.get('media_url'))
        return jsonify({'success': True, 'message': message}), 201
    messages = get_room_messages(room_id, user_id, limit=_int_arg('limit', 50), offset=_int_arg('offset', 0))
    return jsonify({'messages': messages})


# ======== NOTIFICATIONS ========

@app.route('/api/notifications')
def notifications():
    user_id = require_user()
    return jsonify({'notifications': get_user_notifications(user_id, limit=_int_arg('limit', 20))})


@app.route('/api/notifications/unread_count')
def notifications_unread_count():
    user_id = current_user_id()
    if user_id is None:
        return jsonify({'count': 0})
    return jsonify({'count': get_unread_count(user_id)})


@app.route('/api/notifications/<int:notification_id>/read', methods=['POST'])
def notification_read(notification_id):
    mark_notification_read(require_user(), notification_id)
    return jsonify({'success': True})


@app.route('/api/notifications/read_all', methods=['POST'])
def notifications_read_all():
    mark_all_read(require_user())
    return jsonify({'success': True})


# ======== MEDIA ========

@app.route('/api/media/<bucket>', methods=['POST'])
def media_upload(bucket):
    user_id = require_user()
    if bucket not in BUCKETS:
        raise NotFound(f'Unknown bucket: {bucket}')
    file = request.files.get('file')
    if not file or not file.filename:
        raise ValidationError('No file provided.')
    result = upload_file(file.read(), file.filename, file.mimetype, bucket,
                         user_id=user_id, folder=request.form.get('folder'))
    return jsonify({'success': True, 'url': result.url, 'path': result.path}), 201


@app.route('/api/media', methods=['GET'])
def media_list():
    user_id = require_user()
    return jsonify({'files': get_user_media_files(user_id, entity_type=request.args.get('entity_type'))})


@app.route('/api/media/<bucket>/<path:path>', methods=['DELETE'])
def media_delete(bucket, path):
    user_id = require_user()
    policy = get_policy(bucket)
    owned = [f for f in get_user_media_files(user_id) if f['bucket'] == policy.name and f['storage_path'] == path]
    if not owned:
        raise NotFound('File not found')
    return jsonify({'success': delete_file(bucket, path)})


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    app.run(debug=True)
