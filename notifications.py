import logging
import sqlite3

from db import query_db, execute_db, count_db, now_iso
from errors import NotFound

logger = logging.getLogger(__name__)


def create_notification(user_id, actor_id, notif_type, title=None, message=None,
                        entity_type=None, entity_id=None):
    """Create a notification for a user. Failures are logged, never raised."""
    if user_id is None or user_id == actor_id:
        return None
    try:
        return execute_db('''
            INSERT INTO notifications (user_id, actor_id, type, title, message, entity_type, entity_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ''', (user_id, actor_id, notif_type, title, message, entity_type, entity_id, now_iso()))
    except sqlite3.Error as e:
        logger.error('Notification creation error: %s', e)
        return None


def get_user_notifications(user_id, limit=20):
    try:
        rows = query_db('''
            SELECT n.*, p.username AS actor_username, p.display_name AS actor_display_name,
                   p.avatar_url AS actor_avatar_url
            FROM notifications n
            LEFT JOIN user_profiles p ON n.actor_id = p.user_id
            WHERE n.user_id = ?
            ORDER BY n.created_at DESC, n.id DESC
            LIMIT ?
        ''', (user_id, limit))
    except sqlite3.Error as e:
        logger.error('Error fetching notifications: %s', e)
        return []

    notifications = []
    for r in rows:
        n = dict(r)
        n['is_read'] = bool(n['is_read'])
        n['actor'] = {
            'username': n.pop('actor_username'),
            'display_name': n.pop('actor_display_name'),
            'avatar_url': n.pop('actor_avatar_url'),
        }
        notifications.append(n)
    return notifications


def get_unread_count(user_id):
    return count_db('SELECT COUNT(*) AS c FROM notifications WHERE user_id = ? AND is_read = 0', (user_id,))


def mark_notification_read(user_id, notification_id):
    # Verify the notification belongs to this user
    notif = query_db('SELECT id FROM notifications WHERE id = ? AND user_id = ?',
                     (notification_id, user_id), one=True)
    if not notif:
        raise NotFound('Notification not found')
    query_db('UPDATE notifications SET is_read = 1 WHERE id = ?', (notification_id,))
    return True


def mark_all_read(user_id):
    query_db('UPDATE notifications SET is_read = 1 WHERE user_id = ?', (user_id,))
    return True
