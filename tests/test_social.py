from datetime import datetime

import pytest

import social
from db import query_db
from errors import AlreadyFollowing, NotAuthenticated, NotFollowing, PermissionDenied, ValidationError
from profiles import get_user_stats
from social import (add_post_comment, create_post, follow_user, format_time_ago, get_global_feed,
                    get_post_comments, get_post_like_count, get_user_activity, merge_feed_pages,
                    toggle_post_like, unfollow_user)


def test_follower_count_is_follows_minus_unfollows(app, make_user):
    star = make_user('Star')
    fans = [make_user(f'Fan{i}') for i in range(4)]

    for fan in fans:
        follow_user(fan, star)
    unfollow_user(fans[1], star)
    follow_user(fans[1], star)
    unfollow_user(fans[2], star)
    unfollow_user(fans[3], star)

    # 5 follows, 3 unfollows
    stats = get_user_stats(star)
    assert stats['followers_count'] == 2
    stored = query_db('SELECT followers_count FROM user_stats WHERE user_id = ?', (star,), one=True)
    assert stored['followers_count'] == 2
    assert get_user_stats(fans[0])['following_count'] == 1


def test_follow_guards(app, make_user):
    alice, bob = make_user('Alice'), make_user('Bob')
    with pytest.raises(ValidationError, match="Can't follow yourself"):
        follow_user(alice, alice)
    with pytest.raises(NotAuthenticated):
        follow_user(None, bob)

    follow_user(alice, bob)
    with pytest.raises(AlreadyFollowing):
        follow_user(alice, bob)
    assert query_db('SELECT COUNT(*) AS c FROM user_followers', one=True)['c'] == 1

    unfollow_user(alice, bob)
    with pytest.raises(NotFollowing):
        unfollow_user(alice, bob)


def test_follow_notifies_followed_rider(app, make_user):
    alice, bob = make_user('Alice'), make_user('Bob')
    follow_user(alice, bob)
    notif = query_db('SELECT * FROM notifications WHERE user_id = ?', (bob,), one=True)
    assert notif['type'] == 'follow'
    assert notif['actor_id'] == alice


def test_like_toggle_twice_restores_state(app, make_user):
    alice, bob = make_user('Alice'), make_user('Bob')
    post = create_post(alice, 'Sunset over the pass')

    assert toggle_post_like(bob, post['id']) is True
    assert get_post_like_count(post['id']) == 1
    assert toggle_post_like(bob, post['id']) is False
    assert get_post_like_count(post['id']) == 0
    assert query_db('SELECT likes_count FROM user_posts WHERE id = ?', (post['id'],), one=True)['likes_count'] == 0


def test_private_post_cannot_be_liked_by_others(app, make_user):
    alice, bob = make_user('Alice'), make_user('Bob')
    post = create_post(alice, 'Only me', is_public=False)
    with pytest.raises(PermissionDenied):
        toggle_post_like(bob, post['id'])
    assert toggle_post_like(alice, post['id']) is True


def test_feed_never_contains_private_posts(app, make_user):
    alice = make_user('Alice')
    for i in range(6):
        create_post(alice, f'post {i}', is_public=i % 2 == 0)

    feed = get_global_feed(limit=50)
    assert len(feed) == 3
    assert all(p['is_public'] == 1 for p in feed)


def test_feed_orders_newest_first_and_merges_counts(app, make_user):
    alice, bob = make_user('Alice'), make_user('Bob')
    first = create_post(alice, 'first')
    second = create_post(alice, 'second')
    toggle_post_like(bob, first['id'])
    add_post_comment(bob, first['id'], 'Nice ride')

    feed = get_global_feed(viewer_id=bob)
    assert [p['id'] for p in feed] == [second['id'], first['id']]
    assert feed[1]['likes_count'] == 1
    assert feed[1]['comments_count'] == 1
    assert feed[1]['is_liked'] is True
    assert feed[0]['is_liked'] is False
    assert feed[0]['user_profiles']['display_name'] == 'Alice'


def test_feed_uses_placeholder_for_missing_author(app, make_user):
    alice = make_user('Alice')
    create_post(alice, 'ghost post')
    query_db('DELETE FROM user_profiles WHERE user_id = ?', (alice,))

    post = get_global_feed()[0]
    assert post['user_profiles']['display_name'] == 'Anonymous User'
    assert post['user_profiles']['username'] == 'unknown'


def test_merge_feed_pages_drops_duplicates():
    page1 = [{'id': 3}, {'id': 2}]
    page2 = [{'id': 2}, {'id': 1}]
    assert [p['id'] for p in merge_feed_pages(page1, page2)] == [3, 2, 1]


def test_comments_and_replies(app, make_user):
    alice, bob = make_user('Alice'), make_user('Bob')
    post = create_post(alice, 'Where next?')
    parent = add_post_comment(bob, post['id'], 'Alps!')
    add_post_comment(alice, post['id'], 'Good call', parent_comment_id=parent['id'])

    comments = get_post_comments(post['id'])
    assert len(comments) == 2
    assert comments[0]['parent_comment_id'] == parent['id']
    assert comments[1]['user_profiles']['display_name'] == 'Bob'

    with pytest.raises(ValidationError):
        add_post_comment(bob, post['id'], '   ')


def test_activity_lists_likes_from_others(app, make_user):
    alice, bob = make_user('Alice'), make_user('Bob')
    post = create_post(alice, 'Lake loop')
    toggle_post_like(alice, post['id'])
    toggle_post_like(bob, post['id'])

    activity = get_user_activity(alice)
    assert len(activity) == 1
    assert activity[0]['user'] == 'Bob'
    assert activity[0]['action'] == 'liked your post'


def test_format_time_ago():
    now = datetime(2024, 5, 1, 12, 0, 0)
    assert format_time_ago('2024-05-01T11:59:30', now) == '30s ago'
    assert format_time_ago('2024-05-01T11:15:00', now) == '45m ago'
    assert format_time_ago('2024-05-01T09:00:00', now) == '3h ago'
    assert format_time_ago('2024-04-28T12:00:00', now) == '3d ago'


def test_feed_endpoint_pages(client, register):
    register('Alice')
    for i in range(12):
        client.post('/api/posts', json={'caption': f'ride {i}'})

    first = client.get('/api/feed').get_json()
    assert len(first['posts']) == 10
    assert first['has_more'] is True
    second = client.get('/api/feed?offset=10').get_json()
    assert len(second['posts']) == 2
    assert second['has_more'] is False


def test_feed_endpoint_caps_page_size(client, make_user):
    alice = make_user('Alice')
    for i in range(60):
        create_post(alice, f'ride {i}')

    first = client.get('/api/feed?limit=100').get_json()
    assert len(first['posts']) == 50
    assert first['has_more'] is True
    rest = client.get('/api/feed?limit=100&offset=50').get_json()
    assert len(rest['posts']) == 10
    assert rest['has_more'] is False

    single = client.get('/api/feed?limit=0').get_json()
    assert len(single['posts']) == 1
    assert single['has_more'] is True


def test_like_insert_lost_to_concurrent_toggle(app, make_user, monkeypatch):
    alice, bob = make_user('Alice'), make_user('Bob')
    post = create_post(alice, 'Race day')
    query_db('INSERT INTO post_likes (user_id, post_id, created_at) VALUES (?, ?, ?)',
             (bob, post['id'], '2024-01-01T00:00:00'))

    real_query_db = social.query_db

    def stale_check(query, args=(), one=False):
        # the existence check ran before the other toggle's insert landed
        if query.startswith('SELECT id FROM post_likes'):
            return None
        return real_query_db(query, args, one)

    monkeypatch.setattr(social, 'query_db', stale_check)
    assert toggle_post_like(bob, post['id']) is True
    assert get_post_like_count(post['id']) == 1
    assert query_db('SELECT * FROM notifications WHERE user_id = ?', (alice,)) == []


def test_like_endpoint_requires_login(client, register):
    register('Alice')
    post_id = client.post('/api/posts', json={'caption': 'hi'}).get_json()['post']['id']
    client.post('/api/auth/logout')
    resp = client.post(f'/api/posts/{post_id}/like')
    assert resp.status_code == 401
    assert resp.get_json()['code'] == 'not_authenticated'
