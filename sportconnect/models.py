import json
from sportconnect.app import db
from sportconnect.time_utils import utcnow_naive, isoformat_or_none

SPORTS = (
    'basketball', 'football', 'tennis', 'volleyball', 'badminton', 'running',
    'cycling', 'swimming', 'golf', 'tabletennis', 'baseball', 'rugby',
)
GENDERS = ('male', 'female', 'non-binary', 'prefer-not-to-say')
CHALLENGE_STATUSES = ('open', 'accepted', 'completed', 'canceled')
PARTICIPANT_STATUSES = ('pending', 'accepted', 'rejected')
MATCH_STATUSES = ('pending_verification', 'verified', 'disputed', 'voided')
PAYMENT_STATUSES = ('held', 'released', 'refunded')
POST_TYPES = ('win', 'lose', 'achievement')


def _one_of(column, values, name):
    allowed = ', '.join(f"'{value}'" for value in values)
    return db.CheckConstraint(f'{column} IN ({allowed})', name=name)


def _safe_json(raw_value, fallback=None):
    if fallback is None:
        fallback = {}
    if not raw_value:
        return fallback
    try:
        return json.loads(raw_value)
    except (TypeError, ValueError):
        return fallback


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    google_sub = db.Column(db.String(255), unique=True, nullable=True)
    apple_sub = db.Column(db.String(255), unique=True, nullable=True)
    is_admin = db.Column(db.Boolean, default=False, nullable=False)
    full_name = db.Column(db.String(120), default='')
    bio = db.Column(db.Text, nullable=True)
    college = db.Column(db.String(200), nullable=True)
    avatar_url = db.Column(db.String(500), nullable=True)
    dob = db.Column(db.Date, nullable=True)
    gender = db.Column(db.String(30), nullable=True)
    phone = db.Column(db.String(30), nullable=True)
    phone_verified = db.Column(db.Boolean, default=False, nullable=False)
    # Bumped on sign-out; tokens carrying an older version are rejected.
    token_version = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    sports = db.relationship('UserSport', backref='user', lazy='selectin',
                             cascade='all, delete-orphan')
    location = db.relationship('UserLocation', backref='user', uselist=False,
                               lazy='selectin', cascade='all, delete-orphan')
    rankings = db.relationship('UserRanking', backref='user', lazy='selectin',
                               cascade='all, delete-orphan')

    @property
    def display_name(self):
        return self.full_name or self.username

    @property
    def profile_complete(self):
        return bool(self.full_name and self.sports and self.location)

    def to_public_dict(self):
        return {
            'id': self.id, 'username': self.username,
            'full_name': self.full_name, 'avatar_url': self.avatar_url,
            'bio': self.bio, 'college': self.college,
        }

    def to_dict(self):
        return {
            'id': self.id, 'username': self.username, 'email': self.email,
            'full_name': self.full_name, 'bio': self.bio,
            'college': self.college, 'avatar_url': self.avatar_url,
            'dob': isoformat_or_none(self.dob), 'gender': self.gender,
            'phone': self.phone, 'phone_verified': self.phone_verified,
            'is_admin': self.is_admin,
            'profile_complete': self.profile_complete,
            'created_at': isoformat_or_none(self.created_at),
        }


class UserSport(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    sport = db.Column(db.String(40), nullable=False)
    skill_level = db.Column(db.Integer, default=5, nullable=False)

    __table_args__ = (
        db.UniqueConstraint('user_id', 'sport', name='uq_user_sport'),
    )

    def to_dict(self):
        return {'sport': self.sport, 'skill_level': self.skill_level}


class UserLocation(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, unique=True)
    district = db.Column(db.String(120), nullable=False)
    latitude = db.Column(db.Float, nullable=False)
    longitude = db.Column(db.Float, nullable=False)
    last_updated = db.Column(db.DateTime, default=lambda: utcnow_naive())

    def to_dict(self):
        return {
            'district': self.district,
            'latitude': self.latitude, 'longitude': self.longitude,
            'last_updated': isoformat_or_none(self.last_updated),
        }


class UserRanking(db.Model):
    """Elo standing of a user for one (sport, district) partition."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    sport = db.Column(db.String(40), nullable=False)
    district = db.Column(db.String(120), nullable=False)
    elo_rating = db.Column(db.Float, nullable=False)
    wins = db.Column(db.Integer, default=0, nullable=False)
    losses = db.Column(db.Integer, default=0, nullable=False)
    rank = db.Column(db.Integer, nullable=True)
    updated_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    __table_args__ = (
        db.UniqueConstraint('user_id', 'sport', 'district', name='uq_user_ranking_partition'),
        db.Index('ix_user_ranking_sport_district_rank', 'sport', 'district', 'rank'),
    )

    def to_dict(self):
        return {
            'id': self.id, 'user_id': self.user_id,
            'sport': self.sport, 'district': self.district,
            'elo_rating': round(self.elo_rating, 1),
            'wins': self.wins, 'losses': self.losses, 'rank': self.rank,
        }


class Challenge(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    creator_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    title = db.Column(db.String(200), default='')
    sport = db.Column(db.String(40), nullable=False)
    description = db.Column(db.Text, default='')
    # Minor currency units; 0 is a friendly challenge.
    bid_amount = db.Column(db.Integer, default=0, nullable=False)
    status = db.Column(db.String(20), default='open', nullable=False)
    start_time = db.Column(db.DateTime, nullable=False)
    location = db.Column(db.String(300), nullable=False)
    latitude = db.Column(db.Float, nullable=False)
    longitude = db.Column(db.Float, nullable=False)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())
    completed_at = db.Column(db.DateTime, nullable=True)
    canceled_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.Index('ix_challenge_status_sport', 'status', 'sport'),
        db.Index('ix_challenge_lat_lng', 'latitude', 'longitude'),
        _one_of('status', CHALLENGE_STATUSES, 'ck_challenge_status'),
    )

    creator = db.relationship('User', backref='created_challenges')
    participants = db.relationship('ChallengeParticipant', backref='challenge',
                                   lazy='selectin', cascade='all, delete-orphan')

    @property
    def is_bid(self):
        return (self.bid_amount or 0) > 0

    def accepted_user_ids(self):
        return {p.user_id for p in self.participants if p.status == 'accepted'}

    def competitor_ids(self):
        """Creator plus accepted participants."""
        return {self.creator_id} | self.accepted_user_ids()

    def to_dict(self, include_participants=True):
        data = {
            'id': self.id, 'creator_id': self.creator_id,
            'title': self.title, 'sport': self.sport,
            'description': self.description, 'bid_amount': self.bid_amount,
            'status': self.status,
            'start_time': isoformat_or_none(self.start_time),
            'location': self.location,
            'latitude': self.latitude, 'longitude': self.longitude,
            'created_at': isoformat_or_none(self.created_at),
            'completed_at': isoformat_or_none(self.completed_at),
            'canceled_at': isoformat_or_none(self.canceled_at),
            'creator': self.creator.to_public_dict() if self.creator else None,
        }
        if include_participants:
            data['participants'] = [p.to_dict() for p in self.participants]
        return data


class ChallengeParticipant(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    challenge_id = db.Column(db.Integer, db.ForeignKey('challenge.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    status = db.Column(db.String(20), default='pending', nullable=False)
    updated_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    __table_args__ = (
        db.UniqueConstraint('challenge_id', 'user_id', name='uq_challenge_participant'),
        _one_of('status', PARTICIPANT_STATUSES, 'ck_challenge_participant_status'),
    )

    user = db.relationship('User', backref='challenge_participations')

    def to_dict(self):
        return {
            'id': self.id, 'challenge_id': self.challenge_id,
            'user_id': self.user_id, 'status': self.status,
            'user': self.user.to_public_dict() if self.user else None,
        }


class Match(db.Model):
    """Declared result of a challenge, verified before it affects rankings."""
    id = db.Column(db.Integer, primary_key=True)
    challenge_id = db.Column(db.Integer, db.ForeignKey('challenge.id'), nullable=False, unique=True)
    winner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    loser_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    submitted_by_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    score = db.Column(db.String(100), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    verified = db.Column(db.Boolean, default=False, nullable=False)
    status = db.Column(db.String(30), default='pending_verification', nullable=False)
    verification_source = db.Column(db.String(20), nullable=True)  # opponent, tracker, timeout
    disputed_by_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    disputed_winner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    winner_elo_before = db.Column(db.Float, nullable=True)
    winner_elo_change = db.Column(db.Float, nullable=True)
    loser_elo_before = db.Column(db.Float, nullable=True)
    loser_elo_change = db.Column(db.Float, nullable=True)
    ended_at = db.Column(db.DateTime, default=lambda: utcnow_naive())
    verified_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.Index('ix_match_status_ended', 'status', 'ended_at'),
        _one_of('status', MATCH_STATUSES, 'ck_match_status'),
    )

    challenge = db.relationship('Challenge', backref=db.backref('match', uselist=False))
    winner = db.relationship('User', foreign_keys=[winner_id])
    loser = db.relationship('User', foreign_keys=[loser_id])
    submitted_by = db.relationship('User', foreign_keys=[submitted_by_id])

    def counterparty_id(self):
        return self.loser_id if self.submitted_by_id == self.winner_id else self.winner_id

    def to_dict(self):
        return {
            'id': self.id, 'challenge_id': self.challenge_id,
            'winner_id': self.winner_id, 'loser_id': self.loser_id,
            'submitted_by_id': self.submitted_by_id,
            'score': self.score, 'notes': self.notes,
            'verified': self.verified, 'status': self.status,
            'verification_source': self.verification_source,
            'disputed_by_id': self.disputed_by_id,
            'disputed_winner_id': self.disputed_winner_id,
            'winner_elo_before': self.winner_elo_before,
            'winner_elo_change': self.winner_elo_change,
            'loser_elo_before': self.loser_elo_before,
            'loser_elo_change': self.loser_elo_change,
            'ended_at': isoformat_or_none(self.ended_at),
            'verified_at': isoformat_or_none(self.verified_at),
            'winner': self.winner.to_public_dict() if self.winner else None,
            'loser': self.loser.to_public_dict() if self.loser else None,
            'sport': self.challenge.sport if self.challenge else None,
        }


class Payment(db.Model):
    """A bid stake held in escrow until the challenge is settled."""
    id = db.Column(db.Integer, primary_key=True)
    challenge_id = db.Column(db.Integer, db.ForeignKey('challenge.id'), nullable=False)
    payer_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), default='held', nullable=False)
    processor_reference = db.Column(db.String(255), nullable=True)
    payout_recipient_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    # False while a released/refunded transition still has to reach the processor.
    processor_synced = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())
    settled_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.UniqueConstraint('challenge_id', 'payer_id', name='uq_payment_challenge_payer'),
        db.Index('ix_payment_status_synced', 'status', 'processor_synced'),
        _one_of('status', PAYMENT_STATUSES, 'ck_payment_status'),
    )

    challenge = db.relationship('Challenge', backref='payments')

    def to_dict(self):
        return {
            'id': self.id, 'challenge_id': self.challenge_id,
            'payer_id': self.payer_id, 'amount': self.amount,
            'status': self.status,
            'processor_reference': self.processor_reference,
            'payout_recipient_id': self.payout_recipient_id,
            'processor_synced': self.processor_synced,
            'created_at': isoformat_or_none(self.created_at),
            'settled_at': isoformat_or_none(self.settled_at),
        }


class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    notif_type = db.Column(db.String(50), nullable=False)
    data_json = db.Column(db.Text, default='{}')
    read = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    __table_args__ = (
        db.Index('ix_notification_user_created', 'user_id', 'created_at'),
    )

    def to_dict(self):
        return {
            'id': self.id, 'type': self.notif_type,
            'data': _safe_json(self.data_json, {}),
            'read': self.read,
            'created_at': isoformat_or_none(self.created_at),
        }


class Post(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    match_id = db.Column(db.Integer, db.ForeignKey('match.id'), nullable=True)
    post_type = db.Column(db.String(20), nullable=False)
    image_url = db.Column(db.String(500), nullable=True)
    content = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    __table_args__ = (
        _one_of('post_type', POST_TYPES, 'ck_post_type'),
    )

    user = db.relationship('User', backref='posts')

    def to_dict(self):
        return {
            'id': self.id, 'user_id': self.user_id, 'match_id': self.match_id,
            'type': self.post_type, 'image_url': self.image_url,
            'content': self.content,
            'created_at': isoformat_or_none(self.created_at),
            'user': self.user.to_public_dict() if self.user else None,
        }


class PhoneVerification(db.Model):
    """Pending one-time code sent to a user's phone."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    phone = db.Column(db.String(30), nullable=False)
    code_hash = db.Column(db.String(128), nullable=False)
    attempts = db.Column(db.Integer, default=0, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    consumed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    __table_args__ = (
        db.Index('ix_phone_verification_user_created', 'user_id', 'created_at'),
    )
