import logging
import sqlite3

import pytest

import migrate_participant_status
from db import query_db
from errors import (AlreadyJoined, BackendError, NotAuthenticated, PermissionDenied, StatusConstraintError,
                    TripFull, TripNotOpen, ValidationError)
from init_db import PARTICIPANT_STATUS_CHECK, create_trip_participants
from trips import (JOIN_STATUS_CANDIDATES, create_trip, get_participant_count, get_public_trips, get_trip_by_id,
                   get_trip_chat_messages, get_user_joined_trips, insert_participant, join_trip, leave_trip,
                   send_trip_message)


def rebuild_participants(app, status_check):
    """Swap trip_participants for one built with an older status constraint."""
    conn = sqlite3.connect(app.config['DATABASE'])
    c = conn.cursor()
    c.execute('DROP TABLE trip_participants')
    create_trip_participants(c, status_check)
    conn.commit()
    conn.close()


def join_attempts(caplog):
    return [r.getMessage() for r in caplog.records
            if r.name == 'trips' and r.getMessage().startswith('Join attempt')]


@pytest.fixture
def riders(make_user):
    return make_user('Alice'), make_user('Bob'), make_user('Carol')


def test_capacity_scenario(app, riders):
    alice, bob, carol = riders
    trip = create_trip(alice, {'title': 'Coastal run', 'max_participants': 2, 'start_date': '2024-07-01'})
    assert get_participant_count(trip['id']) == 1

    join_trip(trip['id'], bob)
    assert get_participant_count(trip['id']) == 2

    with pytest.raises(TripFull):
        join_trip(trip['id'], carol)

    leave_trip(trip['id'], bob)
    assert get_participant_count(trip['id']) == 1

    join_trip(trip['id'], carol)
    detail = get_trip_by_id(trip['id'])
    assert detail['participant_count'] == 2
    assert detail['current_participants'] == 2
    assert detail['is_full'] is True
    assert {p['user_id'] for p in detail['participants']} == {alice, carol}


def test_join_twice_is_rejected_without_second_row(app, riders):
    alice, bob, _ = riders
    trip = create_trip(alice, {'title': 'Hill climb'})
    join_trip(trip['id'], bob)
    with pytest.raises(AlreadyJoined):
        join_trip(trip['id'], bob)
    rows = query_db('SELECT * FROM trip_participants WHERE trip_id = ? AND user_id = ?', (trip['id'], bob))
    assert len(rows) == 1


def test_join_requires_login_and_open_trip(app, riders):
    alice, bob, _ = riders
    trip = create_trip(alice, {'title': 'Night ride'})
    with pytest.raises(NotAuthenticated):
        join_trip(trip['id'], None)

    query_db("UPDATE group_trips SET status = 'cancelled' WHERE id = ?", (trip['id'],))
    with pytest.raises(TripNotOpen):
        join_trip(trip['id'], bob)


def test_organizer_cannot_leave(app, riders):
    alice = riders[0]
    trip = create_trip(alice, {'title': 'Desert loop'})
    with pytest.raises(PermissionDenied):
        leave_trip(trip['id'], alice)


def test_create_trip_validation(app, riders):
    with pytest.raises(ValidationError):
        create_trip(riders[0], {'title': 'ab'})
    with pytest.raises(ValidationError):
        create_trip(riders[0], {'title': 'Valid title', 'max_participants': 0})


def test_first_accepted_status_is_used(app, riders, caplog):
    alice, bob, _ = riders
    rebuild_participants(app, "status IN ('accepted', 'pending')")
    caplog.set_level(logging.DEBUG, logger='trips')

    trip = create_trip(alice, {'title': 'Legacy ride'})
    assert len(join_attempts(caplog)) == 3

    participant = join_trip(trip['id'], bob)
    assert participant['status'] == 'accepted'
    assert get_participant_count(trip['id']) == 2
    assert [p['status'] for p in get_trip_by_id(trip['id'])['participants']] == ['accepted', 'accepted']


def test_all_statuses_rejected(app, riders, caplog):
    alice, bob, _ = riders
    trip = create_trip(alice, {'title': 'Strict ride'})
    rebuild_participants(app, "status IN ('pending')")
    caplog.set_level(logging.DEBUG, logger='trips')

    with pytest.raises(StatusConstraintError):
        join_trip(trip['id'], bob)
    assert len(join_attempts(caplog)) == len(JOIN_STATUS_CANDIDATES)
    assert query_db('SELECT * FROM trip_participants') == []


def test_failed_organizer_enrolment_leaves_no_trip(app, riders):
    rebuild_participants(app, "status IN ('pending')")
    with pytest.raises(StatusConstraintError):
        create_trip(riders[0], {'title': 'Doomed ride'})
    assert query_db('SELECT id FROM group_trips') == []
    assert get_public_trips() == []


def test_missing_trip_stops_after_one_attempt(app, riders, caplog):
    caplog.set_level(logging.DEBUG, logger='trips')
    with pytest.raises(BackendError) as exc:
        insert_participant(9999, riders[1])
    assert exc.value.kind == 'foreign_key'
    assert len(join_attempts(caplog)) == 1


def test_pending_participants_count_and_show(app, riders):
    alice, bob, carol = riders
    trip = create_trip(alice, {'title': 'Pending ride', 'max_participants': 2})
    query_db("INSERT INTO trip_participants (trip_id, user_id, status, joined_at) VALUES (?, ?, 'pending', '2024-01-01')",
             (trip['id'], bob))

    assert get_participant_count(trip['id']) == 2
    with pytest.raises(TripFull):
        join_trip(trip['id'], carol)
    assert send_trip_message(trip['id'], bob, 'On my way')['message'] == 'On my way'
    assert get_user_joined_trips(bob)[0]['participation_status'] == 'pending'


def test_migration_rebuilds_constraint(app, riders):
    alice, bob, _ = riders
    rebuild_participants(app, "status IN ('accepted', 'pending', 'waitlisted')")
    trip = create_trip(alice, {'title': 'Old database'})
    query_db("INSERT INTO trip_participants (trip_id, user_id, status, joined_at) VALUES (?, ?, 'waitlisted', '2024-01-01')",
             (trip['id'], bob))

    assert migrate_participant_status.run(app.config['DATABASE']) == 2
    statuses = {r['user_id']: r['status'] for r in query_db('SELECT * FROM trip_participants')}
    assert statuses == {alice: 'accepted', bob: 'pending'}

    conn = sqlite3.connect(app.config['DATABASE'])
    try:
        assert PARTICIPANT_STATUS_CHECK in migrate_participant_status.table_sql(conn, 'trip_participants')
    finally:
        conn.close()
    assert migrate_participant_status.run(app.config['DATABASE']) is None


def test_trip_chat_permissions(app, riders):
    alice, bob, carol = riders
    trip = create_trip(alice, {'title': 'Chatty ride'})
    join_trip(trip['id'], bob)

    send_trip_message(trip['id'], alice, 'Meet at 8')
    send_trip_message(trip['id'], bob, 'See you there')
    with pytest.raises(PermissionDenied):
        send_trip_message(trip['id'], carol, 'Can I come?')
    with pytest.raises(ValidationError):
        send_trip_message(trip['id'], bob, '  ')

    messages = get_trip_chat_messages(trip['id'])
    assert [m['message'] for m in messages] == ['Meet at 8', 'See you there']
    assert messages[1]['sender_profile']['display_name'] == 'Bob'


def test_public_trips_use_organizer_placeholder(app, riders):
    alice = riders[0]
    create_trip(alice, {'title': 'Orphan ride'})
    query_db('DELETE FROM user_profiles WHERE user_id = ?', (alice,))
    trip = get_public_trips()[0]
    assert trip['organizer']['display_name'] == 'Anonymous Organizer'
    assert trip['participant_count'] == 1


def test_join_endpoint(client, register):
    register('Alice')
    trip_id = client.post('/api/trips', json={'title': 'API ride', 'max_participants': 1}).get_json()['trip']['id']
    client.post('/api/auth/logout')

    assert client.post(f'/api/trips/{trip_id}/join').status_code == 401
    register('Bob')
    resp = client.post(f'/api/trips/{trip_id}/join')
    assert resp.status_code == 409
    assert resp.get_json()['code'] == 'full'
