import pytest

from errors import NotFound, ValidationError
from profiles import (add_user_bike, create_adventure, delete_user_bike, get_user_adventures, get_user_bikes,
                      get_user_stats, search_users, update_user_bike, update_user_profile, upsert_user_bike)


def test_update_profile_username_rules(app, make_user):
    alice, bob = make_user('Alice'), make_user('Bob')
    profile = update_user_profile(alice, {'username': 'Alice_Moto', 'bio': 'Twins only', 'email': 'ignored'})
    assert profile['username'] == 'alice_moto'
    assert profile['bio'] == 'Twins only'

    with pytest.raises(ValidationError, match='Username already taken'):
        update_user_profile(bob, {'username': 'alice_moto'})
    with pytest.raises(ValidationError):
        update_user_profile(bob, {'username': 'no spaces!'})
    # keeping your own username is fine
    assert update_user_profile(alice, {'username': 'alice_moto'})['username'] == 'alice_moto'


def test_single_primary_bike(app, make_user):
    alice = make_user('Alice')
    first = add_user_bike(alice, {'name': 'Tenere', 'brand': 'Yamaha', 'is_primary': True})
    second = add_user_bike(alice, {'name': 'Scrambler', 'is_primary': True})

    bikes = get_user_bikes(alice)
    assert [b['id'] for b in bikes if b['is_primary']] == [second['id']]

    update_user_bike(alice, first['id'], {'is_primary': True, 'mileage': '12000'})
    bikes = {b['id']: b for b in get_user_bikes(alice)}
    assert bikes[first['id']]['is_primary'] == 1
    assert bikes[second['id']]['is_primary'] == 0
    assert bikes[first['id']]['mileage'] == 12000.0


def test_bike_validation_and_ownership(app, make_user):
    alice, bob = make_user('Alice'), make_user('Bob')
    with pytest.raises(ValidationError):
        add_user_bike(alice, {'name': ''})
    with pytest.raises(ValidationError):
        add_user_bike(alice, {'name': 'Old', 'year': 'ancient'})

    bike = upsert_user_bike(alice, {'name': 'Duke'})
    assert upsert_user_bike(alice, {'id': bike['id'], 'color': 'orange'})['color'] == 'orange'
    with pytest.raises(NotFound):
        delete_user_bike(bob, bike['id'])
    assert delete_user_bike(alice, bike['id']) is True


def test_adventures_feed_stats(app, make_user):
    alice = make_user('Alice')
    create_adventure(alice, {'title': 'Alps tour', 'start_date': '2024-06-01', 'distance': 1200,
                             'total_riding_hours': 30})
    create_adventure(alice, {'title': 'Secret trail', 'start_date': '2024-07-01', 'distance': 80,
                             'is_public': False})

    assert [a['title'] for a in get_user_adventures(alice)] == ['Alps tour']
    assert len(get_user_adventures(alice, public_only=False)) == 2

    stats = get_user_stats(alice)
    assert stats['total_adventures'] == 2
    assert stats['total_miles'] == 1280
    assert stats['riding_hours_total'] == 30

    with pytest.raises(ValidationError):
        create_adventure(alice, {'title': 'No'})


def test_stats_for_unknown_user(app):
    with pytest.raises(NotFound):
        get_user_stats(4242)


def test_search_users(app, make_user):
    make_user('Valentina')
    make_user('Marco')
    assert [u['display_name'] for u in search_users('VALEN')] == ['Valentina']
    assert search_users('  ') == []


def test_profile_page_endpoint(client, register):
    register('Alice')
    client.post('/api/posts', json={'caption': 'public'})
    client.post('/api/posts', json={'caption': 'private', 'is_public': False})

    body = client.get('/api/users/alice').get_json()
    assert body['profile']['display_name'] == 'Alice'
    assert len(body['posts']) == 2

    client.post('/api/auth/logout')
    body = client.get('/api/users/alice').get_json()
    assert [p['caption'] for p in body['posts']] == ['public']
    assert client.get('/api/users/nobody').status_code == 404
