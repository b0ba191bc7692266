import sqlite3

import pytest

import notifications
from errors import NotFound
from notifications import (create_notification, get_unread_count, get_user_notifications, mark_all_read,
                           mark_notification_read)
from social import create_post, toggle_post_like


def test_like_creates_notification_with_actor(app, make_user):
    alice, bob = make_user('Alice'), make_user('Bob')
    post = create_post(alice, 'Twisties')
    toggle_post_like(bob, post['id'])

    [notif] = get_user_notifications(alice)
    assert notif['type'] == 'like'
    assert notif['actor']['display_name'] == 'Bob'
    assert notif['is_read'] is False
    assert get_unread_count(alice) == 1


def test_no_notification_for_own_actions(app, make_user):
    alice = make_user('Alice')
    assert create_notification(alice, alice, 'like') is None
    assert get_unread_count(alice) == 0


def test_mark_read(app, make_user):
    alice, bob = make_user('Alice'), make_user('Bob')
    first = create_notification(alice, bob, 'follow')
    create_notification(alice, bob, 'comment')

    mark_notification_read(alice, first)
    assert get_unread_count(alice) == 1
    with pytest.raises(NotFound):
        mark_notification_read(bob, first)

    mark_all_read(alice)
    assert get_unread_count(alice) == 0


def test_notification_failure_is_swallowed(app, make_user, monkeypatch, caplog):
    alice, bob = make_user('Alice'), make_user('Bob')

    def broken(*args, **kwargs):
        raise sqlite3.OperationalError('disk I/O error')

    monkeypatch.setattr(notifications, 'execute_db', broken)
    assert create_notification(alice, bob, 'follow') is None
    assert 'Notification creation error' in caplog.text


def test_unread_count_endpoint_anonymous(client):
    assert client.get('/api/notifications/unread_count').get_json() == {'count': 0}
