import json
import logging
import sqlite3
from datetime import datetime

from auth import ensure_authenticated
from db import query_db, execute_db, count_db, now_iso, placeholders, row_to_dict
from errors import AlreadyFollowing, NotFollowing, NotFound, PermissionDenied, ValidationError
from notifications import create_notification
from profiles import (ANONYMOUS_USER, get_profile_summaries, get_user_profile,
                      safe_profile_summaries, store_follow_counts)

logger = logging.getLogger(__name__)

POST_JSON_FIELDS = ('images', 'tags')
MAX_PAGE_SIZE = 50


def format_time_ago(date_string, now=None):
    date = datetime.fromisoformat(date_string)
    now = now or datetime.now()
    seconds = max(0, int((now - date).total_seconds()))

    if seconds < 60:
        return f'{seconds}s ago'
    if seconds < 3600:
        return f'{seconds // 60}m ago'
    if seconds < 86400:
        return f'{seconds // 3600}h ago'
    return f'{seconds // 86400}d ago'


def _display_name(user_id):
    profile = get_user_profile(user_id)
    return profile['display_name'] if profile else 'Someone'


# ======== POSTS ========

def _get_post(post_id):
    row = query_db('SELECT * FROM user_posts WHERE id = ?', (post_id,), one=True)
    if not row:
        raise NotFound('Post not found.')
    return row_to_dict(row, json_fields=POST_JSON_FIELDS)


def _ensure_visible(post, user_id, action):
    if not post['is_public'] and post['user_id'] != user_id:
        raise PermissionDenied(f'Cannot {action} a private post.')


def create_post(user_id, caption, images=None, location=None, tags=None,
                adventure_id=None, bike_id=None, is_public=True):
    ensure_authenticated(user_id)
    caption = (caption or '').strip()
    images = list(images or [])
    if not caption and not images:
        raise ValidationError('A post needs a caption or at least one image.')

    now = now_iso()
    post_id = execute_db('''
        INSERT INTO user_posts (user_id, caption, images, location, tags, adventure_id, bike_id, is_public, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ''', (user_id, caption, json.dumps(images), location, json.dumps(list(tags or [])),
          adventure_id, bike_id, 1 if is_public else 0, now, now))
    return _get_post(post_id)


def get_user_posts(user_id, public_only=True):
    query = 'SELECT * FROM user_posts WHERE user_id = ?'
    if public_only:
        query += ' AND is_public = 1'
    query += ' ORDER BY created_at DESC, id DESC'
    return [row_to_dict(r, json_fields=POST_JSON_FIELDS) for r in query_db(query, (user_id,))]


def _counts_by_post(table, post_ids):
    if not post_ids:
        return {}
    rows = query_db(f'''
        SELECT post_id, COUNT(*) AS c FROM {table}
        WHERE post_id IN ({placeholders(post_ids)}) GROUP BY post_id
    ''', post_ids)
    return {r['post_id']: r['c'] for r in rows}


def clamp_page_size(limit):
    return max(1, min(int(limit), MAX_PAGE_SIZE))


def get_global_feed(limit=10, offset=0, viewer_id=None):
    """Newest public posts, one page at a time, with author display data merged in.

    Offset paging gives no consistency across pages; callers accumulating
    pages should go through merge_feed_pages.
    """
    limit = clamp_page_size(limit)
    offset = max(0, int(offset))
    rows = query_db('''
        SELECT * FROM user_posts
        WHERE is_public = 1
        ORDER BY created_at DESC, id DESC
        LIMIT ? OFFSET ?
    ''', (limit, offset))
    if not rows:
        return []

    posts = [row_to_dict(r, json_fields=POST_JSON_FIELDS) for r in rows]
    post_ids = [p['id'] for p in posts]
    authors = safe_profile_summaries([p['user_id'] for p in posts], 'feed authors')
    like_counts = _counts_by_post('post_likes', post_ids)
    comment_counts = _counts_by_post('post_comments', post_ids)
    liked = get_post_like_status(viewer_id, post_ids) if viewer_id is not None else {}

    for post in posts:
        post['user_profiles'] = authors.get(post['user_id']) or dict(ANONYMOUS_USER)
        post['likes_count'] = like_counts.get(post['id'], 0)
        post['comments_count'] = comment_counts.get(post['id'], 0)
        post['is_liked'] = liked.get(post['id'], False)
    return posts


def merge_feed_pages(accumulated, page):
    """Append a feed page, dropping posts already seen."""
    seen = {p['id'] for p in accumulated}
    merged = list(accumulated)
    for post in page:
        if post['id'] not in seen:
            seen.add(post['id'])
            merged.append(post)
    return merged


# ======== LIKES ========

def get_post_like_count(post_id):
    return count_db('SELECT COUNT(*) AS c FROM post_likes WHERE post_id = ?', (post_id,))


def get_post_like_status(user_id, post_ids):
    post_ids = list(post_ids)
    liked = {pid: False for pid in post_ids}
    if user_id is None or not post_ids:
        return liked
    rows = query_db(f'''
        SELECT post_id FROM post_likes
        WHERE user_id = ? AND post_id IN ({placeholders(post_ids)})
    ''', (user_id, *post_ids))
    for r in rows:
        liked[r['post_id']] = True
    return liked


def _refresh_post_counts(post_id):
    query_db('''
        UPDATE user_posts SET
            likes_count = (SELECT COUNT(*) FROM post_likes WHERE post_id = ?),
            comments_count = (SELECT COUNT(*) FROM post_comments WHERE post_id = ?)
        WHERE id = ?
    ''', (post_id, post_id, post_id))


def toggle_post_like(user_id, post_id):
    """Like or unlike a post. Returns True when the post is now liked.

    Check-then-act: two concurrent toggles by the same rider can race; the
    UNIQUE(user_id, post_id) constraint keeps at most one like row.
    """
    ensure_authenticated(user_id)
    post = _get_post(post_id)
    _ensure_visible(post, user_id, 'like')

    existing = query_db('SELECT id FROM post_likes WHERE user_id = ? AND post_id = ?', (user_id, post_id), one=True)
    if existing:
        query_db('DELETE FROM post_likes WHERE id = ?', (existing['id'],))
        liked = False
    else:
        liked = True
        try:
            query_db('INSERT INTO post_likes (user_id, post_id, created_at) VALUES (?, ?, ?)',
                     (user_id, post_id, now_iso()))
        except sqlite3.IntegrityError:
            # a concurrent toggle inserted it first and already notified
            logger.info('Like by %s on post %s already recorded', user_id, post_id)
        else:
            create_notification(post['user_id'], user_id, 'like', title='New like',
                                message=f'{_display_name(user_id)} liked your post',
                                entity_type='post', entity_id=post_id)

    _refresh_post_counts(post_id)
    return liked


# ======== COMMENTS ========

def _comments_with_profiles(rows):
    comments = [dict(r) for r in rows]
    profiles = safe_profile_summaries([c['user_id'] for c in comments], 'comment authors')
    for c in comments:
        c['user_profiles'] = profiles.get(c['user_id']) or dict(ANONYMOUS_USER)
    return comments


def add_post_comment(user_id, post_id, comment, parent_comment_id=None):
    ensure_authenticated(user_id)
    comment = (comment or '').strip()
    if not comment:
        raise ValidationError('Comment cannot be empty.')

    # Ensure post exists and is commentable
    post = _get_post(post_id)
    _ensure_visible(post, user_id, 'comment on')

    if parent_comment_id is not None:
        parent = query_db('SELECT id FROM post_comments WHERE id = ? AND post_id = ?',
                          (parent_comment_id, post_id), one=True)
        if not parent:
            raise ValidationError('Replied-to comment does not belong to this post.')

    comment_id = execute_db('''
        INSERT INTO post_comments (post_id, user_id, comment, parent_comment_id, created_at)
        VALUES (?, ?, ?, ?, ?)
    ''', (post_id, user_id, comment, parent_comment_id, now_iso()))
    _refresh_post_counts(post_id)

    create_notification(post['user_id'], user_id, 'comment', title='New comment',
                        message=f'{_display_name(user_id)} commented on your post',
                        entity_type='post', entity_id=post_id)

    row = query_db('SELECT * FROM post_comments WHERE id = ?', (comment_id,), one=True)
    return _comments_with_profiles([row])[0]


def get_post_comments(post_id):
    rows = query_db('''
        SELECT * FROM post_comments WHERE post_id = ?
        ORDER BY created_at DESC, id DESC
    ''', (post_id,))
    return _comments_with_profiles(rows)


# ======== FOLLOWS ========

def _follow_edge(follower_id, following_id):
    return query_db('SELECT * FROM user_followers WHERE follower_id = ? AND following_id = ?',
                    (follower_id, following_id), one=True)


def follow_user(user_id, following_id):
    """Create the follower -> following edge, then recompute both riders' counters."""
    ensure_authenticated(user_id)
    if user_id == following_id:
        raise ValidationError("Can't follow yourself.")
    if not query_db('SELECT id FROM auth_users WHERE id = ?', (following_id,), one=True):
        raise NotFound('User not found.')
    if _follow_edge(user_id, following_id):
        raise AlreadyFollowing('Already following this user')

    try:
        execute_db('INSERT INTO user_followers (follower_id, following_id, created_at) VALUES (?, ?, ?)',
                   (user_id, following_id, now_iso()))
    except sqlite3.IntegrityError:
        raise AlreadyFollowing('Already following this user')

    store_follow_counts(following_id)
    store_follow_counts(user_id)

    create_notification(following_id, user_id, 'follow', title='New follower',
                        message=f'{_display_name(user_id)} started following you',
                        entity_type='user', entity_id=user_id)
    logger.info('Follow relationship created: %s -> %s', user_id, following_id)
    return dict(_follow_edge(user_id, following_id))


def unfollow_user(user_id, following_id):
    ensure_authenticated(user_id)
    if not _follow_edge(user_id, following_id):
        raise NotFollowing('Not following this user')

    query_db('DELETE FROM user_followers WHERE follower_id = ? AND following_id = ?', (user_id, following_id))

    store_follow_counts(following_id)
    store_follow_counts(user_id)
    logger.info('Unfollow relationship removed: %s -> %s', user_id, following_id)
    return True


def check_follow_status(user_id, following_id):
    if user_id is None:
        return False
    return _follow_edge(user_id, following_id) is not None


def get_follower_count(user_id):
    try:
        return count_db('SELECT COUNT(*) AS c FROM user_followers WHERE following_id = ?', (user_id,))
    except sqlite3.Error as e:
        logger.error('Error getting follower count: %s', e)
        return 0


def get_following_count(user_id):
    try:
        return count_db('SELECT COUNT(*) AS c FROM user_followers WHERE follower_id = ?', (user_id,))
    except sqlite3.Error as e:
        logger.error('Error getting following count: %s', e)
        return 0


def get_followers(user_id):
    rows = query_db('''
        SELECT p.user_id, p.username, p.display_name, p.avatar_url
        FROM user_profiles p
        JOIN user_followers f ON p.user_id = f.follower_id
        WHERE f.following_id = ?
        ORDER BY f.created_at DESC
    ''', (user_id,))
    return [dict(r) for r in rows]


def get_following(user_id):
    rows = query_db('''
        SELECT p.user_id, p.username, p.display_name, p.avatar_url
        FROM user_profiles p
        JOIN user_followers f ON p.user_id = f.following_id
        WHERE f.follower_id = ?
        ORDER BY f.created_at DESC
    ''', (user_id,))
    return [dict(r) for r in rows]


# ======== ACTIVITY / STORIES ========

def get_user_activity(user_id, limit=10):
    """Recent likes by other riders on this rider's posts. Best-effort: [] on failure."""
    try:
        likes = query_db('''
            SELECT l.created_at, l.user_id, l.post_id
            FROM post_likes l
            JOIN user_posts p ON l.post_id = p.id
            WHERE p.user_id = ? AND l.user_id != ?
            ORDER BY l.created_at DESC
            LIMIT ?
        ''', (user_id, user_id, limit))
        if not likes:
            return []
        profiles = get_profile_summaries([l['user_id'] for l in likes])
    except sqlite3.Error as e:
        logger.error('Error fetching user activity: %s', e)
        return []

    activities = []
    for like in likes:
        profile = profiles.get(like['user_id']) or {}
        activities.append({
            'type': 'like',
            'user': profile.get('display_name') or 'Someone',
            'action': 'liked your post',
            'post_id': like['post_id'],
            'time': format_time_ago(like['created_at']),
            'avatar_url': profile.get('avatar_url'),
            'created_at': like['created_at'],
        })
    return activities


def get_user_stories(limit=10):
    """Public featured adventures shown as stories. Best-effort: [] on failure."""
    try:
        rows = query_db('''
            SELECT * FROM user_adventures
            WHERE is_public = 1 AND featured = 1
            ORDER BY created_at DESC, id DESC
            LIMIT ?
        ''', (limit,))
    except sqlite3.Error as e:
        logger.error('Stories query failed: %s', e)
        return []

    stories = [row_to_dict(r, json_fields=('images',)) for r in rows]
    profiles = safe_profile_summaries([s['user_id'] for s in stories], 'story authors')
    for story in stories:
        story['user_profiles'] = profiles.get(story['user_id']) or dict(ANONYMOUS_USER)
    return stories
