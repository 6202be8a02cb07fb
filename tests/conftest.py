from datetime import timedelta

import pytest
from werkzeug.security import generate_password_hash
from sportconnect.app import create_app, db
from sportconnect.config import TestingConfig
from sportconnect.time_utils import utcnow_naive


@pytest.fixture
def app():
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def race_app(monkeypatch, tmp_path):
    """App on a file-backed SQLite database, so a second engine connection can
    commit a competing write while the session still holds stale objects."""
    monkeypatch.setattr(
        TestingConfig, 'SQLALCHEMY_DATABASE_URI', f'sqlite:///{tmp_path / "race.db"}',
    )
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers(client):
    """Register a user and return auth headers."""
    res = client.post('/api/auth/register', json={
        'username': 'testuser', 'email': 'test@example.com',
        'password': 'password123', 'full_name': 'Test User',
    })
    token = res.get_json()['token']
    return {'Authorization': f'Bearer {token}', 'Content-Type': 'application/json'}


@pytest.fixture
def make_user():
    """Create users directly through the ORM."""
    from sportconnect.models import User, UserLocation

    def _make(username, district=None, phone_verified=False, **fields):
        user = User(
            username=username,
            email=f'{username}@example.com',
            password_hash=generate_password_hash('password123'),
            full_name=fields.pop('full_name', username.title()),
            phone_verified=phone_verified,
            phone='+15555550100' if phone_verified else None,
            **fields,
        )
        db.session.add(user)
        db.session.flush()
        if district:
            db.session.add(UserLocation(
                user_id=user.id, district=district,
                latitude=37.7749, longitude=-122.4194,
            ))
        db.session.commit()
        return user

    return _make


@pytest.fixture
def make_accepted_challenge():
    """Creator vs one accepted opponent, with stakes held for bid challenges."""
    from sportconnect.models import Challenge, ChallengeParticipant
    from sportconnect.services.escrow import hold_stake

    def _make(creator, opponent, sport='tennis', bid_amount=0):
        challenge = Challenge(
            creator_id=creator.id,
            title='Test challenge',
            sport=sport,
            bid_amount=bid_amount,
            status='accepted',
            start_time=utcnow_naive() + timedelta(days=1),
            location='Golden Gate Park',
            latitude=37.7694,
            longitude=-122.4862,
        )
        db.session.add(challenge)
        db.session.flush()
        db.session.add(ChallengeParticipant(
            challenge_id=challenge.id, user_id=opponent.id, status='accepted',
        ))
        db.session.flush()
        hold_stake(challenge, creator.id)
        hold_stake(challenge, opponent.id)
        db.session.commit()
        return challenge

    return _make
