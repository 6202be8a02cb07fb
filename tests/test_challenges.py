"""Tests for challenge creation, participation and nearby discovery."""
import json
from datetime import timedelta

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from sportconnect.app import db
from sportconnect.models import Challenge, ChallengeParticipant
from sportconnect.services import challenges as challenge_service
from sportconnect.services.geo import haversine_distance
from sportconnect.time_utils import utcnow_naive

# Union Square, San Francisco
ORIGIN = (37.7880, -122.4075)


def _register(client, username, full_name=''):
    res = client.post('/api/auth/register', json={
        'username': username,
        'email': f'{username}@test.com',
        'password': 'password123',
        'full_name': full_name,
    })
    data = json.loads(res.data)
    return data['token'], data['user']['id']


def _auth(token):
    return {'Authorization': f'Bearer {token}'}


def _create(client, token, **overrides):
    payload = {
        'sport': 'tennis',
        'title': 'Evening rally',
        'start_time': (utcnow_naive() + timedelta(days=1)).isoformat(),
        'location': 'Alice Marble courts',
        'latitude': ORIGIN[0],
        'longitude': ORIGIN[1],
    }
    payload.update(overrides)
    return client.post('/api/challenges', json=payload, headers=_auth(token))


def test_create_friendly_challenge(client):
    token, user_id = _register(client, 'creator', 'Casey Creator')
    res = _create(client, token, sport='Table Tennis')
    assert res.status_code == 201
    challenge = json.loads(res.data)['challenge']
    assert challenge['creator_id'] == user_id
    assert challenge['sport'] == 'tabletennis'
    assert challenge['status'] == 'open'
    assert challenge['bid_amount'] == 0
    assert challenge['payments'] == []
    assert challenge['creator']['full_name'] == 'Casey Creator'


@pytest.mark.parametrize('overrides,message', [
    ({'sport': 'quidditch'}, 'supported sport'),
    ({'start_time': 'tomorrow-ish'}, 'ISO-8601'),
    ({'start_time': '2001-01-01T10:00:00Z'}, 'future'),
    ({'location': ''}, 'Location'),
    ({'latitude': 123.0}, 'Latitude'),
    ({'bid_amount': -5}, 'negative'),
    ({'bid_amount': 12.5}, 'whole number'),
    ({'bid_amount': 10_000_000}, 'exceed'),
])
def test_create_validation(client, overrides, message):
    token, _ = _register(client, 'validator')
    res = _create(client, token, **overrides)
    assert res.status_code == 400
    assert message in json.loads(res.data)['error']


def test_create_requires_login(client):
    res = client.post('/api/challenges', json={'sport': 'tennis'})
    assert res.status_code == 401


def test_join_moves_open_challenge_to_accepted(client):
    alice_token, alice_id = _register(client, 'join_alice')
    bob_token, bob_id = _register(client, 'join_bob')
    challenge_id = json.loads(_create(client, alice_token).data)['challenge']['id']

    res = client.post(f'/api/challenges/{challenge_id}/join', json={}, headers=_auth(bob_token))
    assert res.status_code == 200
    challenge = json.loads(res.data)['challenge']
    assert challenge['status'] == 'accepted'
    assert [(p['user_id'], p['status']) for p in challenge['participants']] == [(bob_id, 'accepted')]

    notes = json.loads(client.get('/api/notifications', headers=_auth(alice_token)).data)
    assert notes['notifications'][0]['type'] == 'challenge_joined'
    assert notes['notifications'][0]['data']['user_id'] == bob_id

    own = client.post(f'/api/challenges/{challenge_id}/join', json={}, headers=_auth(alice_token))
    assert own.status_code == 409


def test_repeated_joins_leave_one_participant_row(client):
    alice_token, _ = _register(client, 'race_alice')
    bob_token, bob_id = _register(client, 'race_bob')
    challenge_id = json.loads(_create(client, alice_token).data)['challenge']['id']

    for _ in range(3):
        res = client.post(f'/api/challenges/{challenge_id}/join', json={}, headers=_auth(bob_token))
        assert res.status_code == 200

    rows = ChallengeParticipant.query.filter_by(challenge_id=challenge_id, user_id=bob_id).all()
    assert len(rows) == 1
    assert rows[0].status == 'accepted'

    notes = json.loads(client.get('/api/notifications', headers=_auth(alice_token)).data)
    assert [n['type'] for n in notes['notifications']].count('challenge_joined') == 1


def test_participant_pair_is_unique_at_the_database(app, make_user):
    creator = make_user('unique_creator')
    joiner = make_user('unique_joiner')
    challenge = Challenge(
        creator_id=creator.id, sport='golf', start_time=utcnow_naive() + timedelta(days=1),
        location='Presidio', latitude=37.79, longitude=-122.46,
    )
    db.session.add(challenge)
    db.session.commit()

    db.session.add(ChallengeParticipant(challenge_id=challenge.id, user_id=joiner.id, status='accepted'))
    db.session.commit()
    db.session.add(ChallengeParticipant(challenge_id=challenge.id, user_id=joiner.id, status='accepted'))
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()


def test_invite_and_decline(client):
    alice_token, _ = _register(client, 'invite_alice')
    bob_token, bob_id = _register(client, 'invite_bob')
    carol_token, _ = _register(client, 'invite_carol')
    challenge_id = json.loads(_create(client, alice_token).data)['challenge']['id']

    not_creator = client.post(f'/api/challenges/{challenge_id}/invite', json={'user_id': bob_id}, headers=_auth(carol_token))
    assert not_creator.status_code == 403

    invite = client.post(f'/api/challenges/{challenge_id}/invite', json={'user_id': bob_id}, headers=_auth(alice_token))
    assert invite.status_code == 200
    assert json.loads(invite.data)['invited'] is True

    bob_notes = json.loads(client.get('/api/notifications', headers=_auth(bob_token)).data)
    assert bob_notes['notifications'][0]['type'] == 'challenge_invite'

    mine = json.loads(client.get('/api/challenges/mine', headers=_auth(bob_token)).data)
    assert [c['id'] for c in mine['participating']] == [challenge_id]

    decline = client.post(f'/api/challenges/{challenge_id}/decline', headers=_auth(bob_token))
    assert decline.status_code == 200
    participant = ChallengeParticipant.query.filter_by(challenge_id=challenge_id, user_id=bob_id).one()
    assert participant.status == 'rejected'

    mine = json.loads(client.get('/api/challenges/mine', headers=_auth(bob_token)).data)
    assert mine['participating'] == []

    no_invite = client.post(f'/api/challenges/{challenge_id}/decline', headers=_auth(carol_token))
    assert no_invite.status_code == 404


def test_cancel_rules(client):
    alice_token, _ = _register(client, 'cancel_alice')
    bob_token, _ = _register(client, 'cancel_bob')
    challenge_id = json.loads(_create(client, alice_token).data)['challenge']['id']

    by_other = client.post(f'/api/challenges/{challenge_id}/cancel', headers=_auth(bob_token))
    assert by_other.status_code == 403

    res = client.post(f'/api/challenges/{challenge_id}/cancel', headers=_auth(alice_token))
    assert res.status_code == 200
    assert json.loads(res.data)['challenge']['status'] == 'canceled'

    again = client.post(f'/api/challenges/{challenge_id}/cancel', headers=_auth(alice_token))
    assert again.status_code == 200

    join = client.post(f'/api/challenges/{challenge_id}/join', json={}, headers=_auth(bob_token))
    assert join.status_code == 409


def test_my_challenges_lists_created(client):
    token, _ = _register(client, 'mine_owner')
    first = json.loads(_create(client, token).data)['challenge']['id']
    second = json.loads(_create(client, token, sport='golf').data)['challenge']['id']

    res = client.get('/api/challenges/mine', headers=_auth(token))
    data = json.loads(res.data)
    assert sorted(c['id'] for c in data['created']) == sorted([first, second])
    assert data['participating'] == []


def test_haversine_distance_in_meters():
    # Union Square to the Ferry Building is roughly 1.3 km.
    distance = haversine_distance(ORIGIN[0], ORIGIN[1], 37.7955, -122.3937)
    assert 1_200 < distance < 1_500
    assert haversine_distance(10.0, 20.0, 10.0, 20.0) == 0.0


def test_nearby_filters_sorts_and_annotates(client):
    token, _ = _register(client, 'nearby_host', 'Nina Host')
    joiner_token, _ = _register(client, 'nearby_joiner')

    near = json.loads(_create(client, token, latitude=37.7955, longitude=-122.3937).data)['challenge']['id']
    nearest = json.loads(_create(client, token, latitude=37.7881, longitude=-122.4076).data)['challenge']['id']
    golf = json.loads(_create(client, token, sport='golf', latitude=37.7890, longitude=-122.4080).data)['challenge']['id']
    # Los Angeles, far outside the default radius.
    _create(client, token, latitude=34.0522, longitude=-118.2437)
    accepted = json.loads(_create(client, token, latitude=37.7882, longitude=-122.4077).data)['challenge']['id']
    client.post(f'/api/challenges/{accepted}/join', json={}, headers=_auth(joiner_token))

    res = client.get(f'/api/challenges/nearby?lat={ORIGIN[0]}&lng={ORIGIN[1]}')
    assert res.status_code == 200
    rows = json.loads(res.data)['challenges']
    assert [row['id'] for row in rows] == [nearest, golf, near]
    distances = [row['distance'] for row in rows]
    assert distances == sorted(distances)
    assert all(row['creator_name'] == 'Nina Host' for row in rows)
    assert all(row['status'] == 'open' for row in rows)

    tennis_only = json.loads(client.get(
        f'/api/challenges/nearby?lat={ORIGIN[0]}&lng={ORIGIN[1]}&sport=tennis'
    ).data)['challenges']
    assert [row['id'] for row in tennis_only] == [nearest, near]

    tight = json.loads(client.get(
        f'/api/challenges/nearby?lat={ORIGIN[0]}&lng={ORIGIN[1]}&radius=500'
    ).data)['challenges']
    assert [row['id'] for row in tight] == [nearest, golf]


def test_nearby_validates_coordinates(client):
    assert client.get('/api/challenges/nearby?lat=abc&lng=1').status_code == 400
    assert client.get('/api/challenges/nearby?lat=10&lng=200').status_code == 400
    assert client.get('/api/challenges/nearby?lat=10&lng=20&sport=quidditch').status_code == 400


def test_unknown_challenge_status_is_rejected_by_the_database(app, make_user):
    creator = make_user('status_creator')
    db.session.add(Challenge(
        creator_id=creator.id, sport='tennis', status='postponed',
        start_time=utcnow_naive() + timedelta(days=1),
        location='Dolores Park', latitude=37.76, longitude=-122.43,
    ))
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()


def test_join_after_competing_join_keeps_one_participant_row(race_app, make_user):
    creator = make_user('join_race_creator')
    bob = make_user('join_race_bob')
    challenge = Challenge(
        creator_id=creator.id, sport='tennis', status='open',
        start_time=utcnow_naive() + timedelta(days=1),
        location='Golden Gate Park', latitude=37.7694, longitude=-122.4862,
    )
    db.session.add(challenge)
    db.session.commit()

    # This worker loads the open challenge before the other join commits.
    stale = db.session.get(Challenge, challenge.id)
    assert stale.status == 'open'
    assert stale.participants == []

    with db.engine.begin() as conn:
        conn.execute(
            text('INSERT INTO challenge_participant (challenge_id, user_id, status, updated_at) '
                 'VALUES (:challenge_id, :user_id, \'accepted\', CURRENT_TIMESTAMP)'),
            {'challenge_id': challenge.id, 'user_id': bob.id},
        )
        conn.execute(
            text('UPDATE challenge SET status = \'accepted\' WHERE id = :id'),
            {'id': challenge.id},
        )

    challenge_service.join_challenge(challenge.id, bob)

    rows = ChallengeParticipant.query.filter_by(challenge_id=challenge.id).populate_existing().all()
    assert [(row.user_id, row.status) for row in rows] == [(bob.id, 'accepted')]
    assert db.session.get(Challenge, challenge.id).status == 'accepted'
