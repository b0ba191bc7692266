import sqlite3

import pytest

from db import classify_integrity_error, count_db, execute_db, now_iso, translate_integrity_error


def test_rejected_write_releases_the_database(app, make_user):
    alice = make_user('Alice')
    with pytest.raises(sqlite3.IntegrityError) as exc:
        execute_db('INSERT INTO user_stats (user_id, updated_at) VALUES (?, ?)', (alice, now_iso()))
    # the error and its traceback stay referenced while the next write runs
    held = exc.value

    execute_db('INSERT INTO notifications (user_id, type, created_at) VALUES (?, ?, ?)', (alice, 'test', now_iso()))
    assert count_db('SELECT COUNT(*) AS c FROM notifications WHERE user_id = ?', (alice,)) == 1
    assert classify_integrity_error(held) == 'unique'


def test_translate_integrity_error_kinds(app, make_user):
    alice = make_user('Alice')
    with pytest.raises(sqlite3.IntegrityError) as exc:
        execute_db('INSERT INTO user_bikes (user_id, name, created_at, updated_at) VALUES (?, ?, ?, ?)',
                   (alice + 100, 'Ghost', now_iso(), now_iso()))
    err = translate_integrity_error(exc.value)
    assert err.kind == 'foreign_key'
    assert err.status_code == 400
