import logging

from auth import ensure_authenticated
from db import query_db, execute_db, count_db, now_iso
from errors import NotFound, PermissionDenied, ValidationError
from profiles import ANONYMOUS_USER, safe_profile_summaries

logger = logging.getLogger(__name__)

MESSAGE_TYPES = ('text', 'image', 'video', 'file')


def _get_room(room_id):
    room = query_db('SELECT * FROM chat_rooms WHERE id = ?', (room_id,), one=True)
    if not room:
        raise NotFound('Chat room not found')
    return dict(room)


def is_room_member(room_id, user_id):
    member = query_db('SELECT id FROM chat_participants WHERE room_id = ? AND user_id = ?',
                      (room_id, user_id), one=True)
    return member is not None


def _require_member(room_id, user_id):
    _get_room(room_id)
    if not is_room_member(room_id, user_id):
        raise PermissionDenied('You are not a member of this chat.')


def create_chat_room(user_id, name, description=None, is_group=True, participant_ids=()):
    ensure_authenticated(user_id)
    name = (name or '').strip()
    if not name:
        raise ValidationError('Chat name is required.')

    now = now_iso()
    room_id = execute_db('INSERT INTO chat_rooms (name, description, is_group, created_by, created_at) VALUES (?, ?, ?, ?, ?)',
                         (name, description, 1 if is_group else 0, user_id, now))

    # creator is admin
    execute_db('INSERT INTO chat_participants (room_id, user_id, is_admin, last_read, added_at) VALUES (?, ?, 1, ?, ?)',
               (room_id, user_id, now, now))

    for uid in participant_ids or ():
        try:
            uid = int(uid)
        except (TypeError, ValueError):
            continue
        if uid == user_id or is_room_member(room_id, uid):
            continue
        exists = query_db('SELECT id FROM auth_users WHERE id = ?', (uid,), one=True)
        if not exists:
            logger.warning('Skipping unknown chat participant %s for room %s', uid, room_id)
            continue
        execute_db('INSERT INTO chat_participants (room_id, user_id, added_at) VALUES (?, ?, ?)',
                   (room_id, uid, now))

    return get_chat_room(room_id, user_id)


def get_chat_room(room_id, user_id):
    _require_member(room_id, user_id)
    room = _get_room(room_id)
    room['is_group'] = bool(room['is_group'])
    members = query_db('SELECT user_id, is_admin FROM chat_participants WHERE room_id = ? ORDER BY id ASC', (room_id,))
    profiles = safe_profile_summaries([m['user_id'] for m in members], 'chat members')
    room['participants'] = [
        {'user_id': m['user_id'], 'is_admin': bool(m['is_admin']),
         'profile': profiles.get(m['user_id']) or dict(ANONYMOUS_USER)}
        for m in members
    ]
    return room


def send_message(room_id, user_id, content, message_type='text', media_url=None):
    ensure_authenticated(user_id)
    content = (content or '').strip()
    if not content and not media_url:
        raise ValidationError('Message cannot be empty.')
    if message_type not in MESSAGE_TYPES:
        raise ValidationError('Invalid message type.')

    _require_member(room_id, user_id)
    now = now_iso()
    message_id = execute_db('''
        INSERT INTO chat_messages (room_id, sender_id, content, message_type, media_url, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
    ''', (room_id, user_id, content, message_type, media_url, now))
    # Sender has read their own message
    query_db('UPDATE chat_participants SET last_read = ? WHERE room_id = ? AND user_id = ?', (now, room_id, user_id))
    return dict(query_db('SELECT * FROM chat_messages WHERE id = ?', (message_id,), one=True))


def get_room_messages(room_id, user_id, limit=50, offset=0):
    """Newest-first page of a room's messages. Opening the room marks it read."""
    ensure_authenticated(user_id)
    _require_member(room_id, user_id)

    rows = query_db('''
        SELECT * FROM chat_messages WHERE room_id = ?
        ORDER BY created_at DESC, id DESC
        LIMIT ? OFFSET ?
    ''', (room_id, limit, offset))
    messages = [dict(r) for r in rows]

    profiles = safe_profile_summaries([m['sender_id'] for m in messages], 'chat sender profiles')
    for m in messages:
        m['sender_profile'] = profiles.get(m['sender_id'])

    query_db('UPDATE chat_participants SET last_read = ? WHERE room_id = ? AND user_id = ?',
             (now_iso(), room_id, user_id))
    return messages


def get_unread_messages(room_id, user_id):
    member = query_db('SELECT last_read FROM chat_participants WHERE room_id = ? AND user_id = ?',
                      (room_id, user_id), one=True)
    if not member:
        return 0
    if member['last_read'] is None:
        return count_db('SELECT COUNT(*) AS c FROM chat_messages WHERE room_id = ? AND sender_id != ?',
                        (room_id, user_id))
    return count_db('''
        SELECT COUNT(*) AS c FROM chat_messages
        WHERE room_id = ? AND sender_id != ? AND created_at > ?
    ''', (room_id, user_id, member['last_read']))


def get_user_conversations(user_id):
    ensure_authenticated(user_id)
    rooms = query_db('''
        SELECT r.* FROM chat_rooms r
        JOIN chat_participants cp ON cp.room_id = r.id
        WHERE cp.user_id = ?
    ''', (user_id,))

    conversations = []
    for r in rooms:
        room = dict(r)
        room['is_group'] = bool(room['is_group'])
        last = query_db('''
            SELECT * FROM chat_messages WHERE room_id = ?
            ORDER BY created_at DESC, id DESC LIMIT 1
        ''', (room['id'],), one=True)
        room['last_message'] = dict(last) if last else None
        room['unread_count'] = get_unread_messages(room['id'], user_id)
        conversations.append(room)

    # most recent activity first
    conversations.sort(key=lambda c: (c['last_message'] or {}).get('created_at') or c['created_at'], reverse=True)
    return conversations
