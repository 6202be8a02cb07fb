"""Challenge lifecycle: create, join, invite, decline, cancel."""
import logging

from flask import current_app
from sqlalchemy import update

from sportconnect.app import db
from sportconnect.errors import (
    Conflict, NotFound, PermissionDenied, PhoneVerificationRequired, ValidationError,
)
from sportconnect.models import SPORTS, Challenge, ChallengeParticipant, Match, User
from sportconnect.services import escrow
from sportconnect.services.geo import parse_lat_lng
from sportconnect.services.notifications import (
    emit_notification_update, emit_to_users, notify,
)
from sportconnect.services.upserts import insert_ignore, upsert
from sportconnect.time_utils import parse_iso_datetime, utcnow_naive

logger = logging.getLogger(__name__)

ACTIVE_CHALLENGE_STATUSES = ('open', 'accepted')
_TITLE_MAX = 200
_DESCRIPTION_MAX = 3000
_LOCATION_MAX = 300


def normalize_sport(raw_value):
    sport = str(raw_value or '').strip().lower().replace(' ', '').replace('-', '')
    return sport if sport in SPORTS else None


def _clean_text(value, max_len):
    if value is None:
        return ''
    return str(value).strip()[:max_len]


def normalize_challenge_payload(data):
    """Validate a create payload. Returns ``(normalized, errors)``."""
    errors = []
    normalized = {}

    sport = normalize_sport(data.get('sport'))
    if not sport:
        errors.append('A supported sport is required')
    normalized['sport'] = sport

    normalized['title'] = _clean_text(data.get('title'), _TITLE_MAX)
    normalized['description'] = _clean_text(data.get('description'), _DESCRIPTION_MAX)
    if not normalized['title'] and sport:
        normalized['title'] = f'{sport.capitalize()} challenge'

    start_time = parse_iso_datetime(data.get('start_time'))
    if not start_time:
        errors.append('start_time must be an ISO-8601 datetime')
    elif start_time <= utcnow_naive():
        errors.append('start_time must be in the future')
    normalized['start_time'] = start_time

    location = _clean_text(data.get('location'), _LOCATION_MAX)
    if not location:
        errors.append('Location is required')
    normalized['location'] = location

    try:
        normalized['latitude'], normalized['longitude'] = parse_lat_lng(
            data.get('latitude'), data.get('longitude'),
        )
    except ValidationError as exc:
        errors.append(exc.message)

    raw_bid = data.get('bid_amount', 0)
    if isinstance(raw_bid, bool):
        raw_bid = None
    try:
        bid_amount = int(raw_bid if raw_bid not in (None, '') else 0)
        if isinstance(raw_bid, float) and not raw_bid.is_integer():
            raise ValueError
    except (TypeError, ValueError):
        bid_amount = None
        errors.append('bid_amount must be a whole number of minor currency units')
    max_bid = int(current_app.config.get('MAX_BID_AMOUNT', 100_000))
    if bid_amount is not None and bid_amount < 0:
        errors.append('bid_amount cannot be negative')
    elif bid_amount is not None and bid_amount > max_bid:
        errors.append(f'bid_amount cannot exceed {max_bid}')
    normalized['bid_amount'] = bid_amount

    return normalized, errors


def get_challenge_or_404(challenge_id):
    challenge = db.session.get(Challenge, challenge_id)
    if not challenge:
        raise NotFound('Challenge not found')
    return challenge


def challenge_detail(challenge):
    data = challenge.to_dict()
    data['match'] = challenge.match.to_dict() if challenge.match else None
    data['payments'] = [
        payment.to_dict() for payment in escrow.payments_for_challenge(challenge.id)
    ]
    return data


def _emit_challenge_update(challenge, reason):
    user_ids = challenge.competitor_ids() | {
        p.user_id for p in challenge.participants if p.status == 'pending'
    }
    emit_to_users('challenge_update', user_ids, {
        'challenge_id': challenge.id,
        'status': challenge.status,
        'reason': reason,
    })


def create_challenge(creator, data):
    normalized, errors = normalize_challenge_payload(data)
    if errors:
        raise ValidationError(errors[0], errors=errors)
    if normalized['bid_amount'] > 0 and not creator.phone_verified:
        raise PhoneVerificationRequired()

    challenge = Challenge(creator_id=creator.id, status='open', **normalized)
    db.session.add(challenge)
    db.session.flush()
    escrow.hold_stake(challenge, creator.id, data.get('payment_method'))
    db.session.commit()
    logger.info(
        'Challenge %s created by user %s (%s, bid %s)',
        challenge.id, creator.id, challenge.sport, challenge.bid_amount,
    )
    return challenge


def join_challenge(challenge_id, user, payment_method=None):
    """Accept a challenge. Joining twice leaves a single participant row."""
    challenge = get_challenge_or_404(challenge_id)
    if challenge.creator_id == user.id:
        raise Conflict('You cannot join your own challenge')
    if challenge.status not in ACTIVE_CHALLENGE_STATUSES:
        raise Conflict(f'Challenge is {challenge.status}')
    if challenge.is_bid and not user.phone_verified:
        raise PhoneVerificationRequired()

    already_accepted = user.id in challenge.accepted_user_ids()

    # open -> accepted, accepted stays; zero rows means it was canceled or completed meanwhile.
    gate = db.session.execute(
        update(Challenge)
        .where(
            Challenge.id == challenge.id,
            Challenge.status.in_(ACTIVE_CHALLENGE_STATUSES),
        )
        .values(status='accepted')
        .execution_options(synchronize_session=False)
    )
    if gate.rowcount != 1:
        db.session.rollback()
        raise Conflict('Challenge is no longer open')

    upsert(
        ChallengeParticipant,
        {
            'challenge_id': challenge.id,
            'user_id': user.id,
            'status': 'accepted',
            'updated_at': utcnow_naive(),
        },
        ('challenge_id', 'user_id'),
        ('status', 'updated_at'),
    )
    db.session.expire_all()
    escrow.hold_stake(challenge, user.id, payment_method)
    if not already_accepted:
        notify(challenge.creator_id, 'challenge_joined', {
            'challenge_id': challenge.id,
            'user_id': user.id,
            'username': user.username,
        })
    db.session.commit()

    if not already_accepted:
        logger.info('User %s joined challenge %s', user.id, challenge.id)
        emit_notification_update((challenge.creator_id,), reason='challenge_joined')
        _emit_challenge_update(challenge, 'joined')
    return challenge


def invite_to_challenge(challenge_id, inviter, invitee_id):
    challenge = get_challenge_or_404(challenge_id)
    if challenge.creator_id != inviter.id:
        raise PermissionDenied('Only the challenge creator can invite players')
    if challenge.status not in ACTIVE_CHALLENGE_STATUSES:
        raise Conflict(f'Challenge is {challenge.status}')
    try:
        invitee_id = int(invitee_id)
    except (TypeError, ValueError):
        raise ValidationError('user_id is required') from None
    if invitee_id == inviter.id:
        raise ValidationError('You cannot invite yourself')
    if not db.session.get(User, invitee_id):
        raise NotFound('User not found')

    invited = insert_ignore(
        ChallengeParticipant,
        {
            'challenge_id': challenge.id,
            'user_id': invitee_id,
            'status': 'pending',
            'updated_at': utcnow_naive(),
        },
        ('challenge_id', 'user_id'),
    )
    if invited:
        notify(invitee_id, 'challenge_invite', {
            'challenge_id': challenge.id,
            'from_user_id': inviter.id,
            'from_username': inviter.username,
            'sport': challenge.sport,
        })
    db.session.commit()
    db.session.refresh(challenge)
    if invited:
        emit_notification_update((invitee_id,), reason='challenge_invite')
    return challenge, invited


def decline_challenge(challenge_id, user):
    challenge = get_challenge_or_404(challenge_id)
    participant = ChallengeParticipant.query.filter_by(
        challenge_id=challenge.id, user_id=user.id,
    ).first()
    if not participant:
        raise NotFound('No invitation found for this challenge')
    if participant.status == 'rejected':
        return challenge
    if participant.status != 'pending':
        raise Conflict('Accepted challenges can only be canceled by the creator')

    participant.status = 'rejected'
    participant.updated_at = utcnow_naive()
    notify(challenge.creator_id, 'challenge_declined', {
        'challenge_id': challenge.id,
        'user_id': user.id,
        'username': user.username,
    })
    db.session.commit()
    emit_notification_update((challenge.creator_id,), reason='challenge_declined')
    return challenge


def cancel_challenge(challenge_id, user):
    """Cancel an open/accepted challenge, voiding its result and refunding stakes."""
    challenge = get_challenge_or_404(challenge_id)
    if challenge.creator_id != user.id and not user.is_admin:
        raise PermissionDenied('Only the challenge creator can cancel it')

    now = utcnow_naive()
    gate = db.session.execute(
        update(Challenge)
        .where(
            Challenge.id == challenge.id,
            Challenge.status.in_(ACTIVE_CHALLENGE_STATUSES),
        )
        .values(status='canceled', canceled_at=now)
        .execution_options(synchronize_session=False)
    )
    if gate.rowcount != 1:
        db.session.rollback()
        if challenge.status == 'canceled':
            return challenge
        raise Conflict(f'Challenge is {challenge.status}')

    db.session.execute(
        update(Match)
        .where(
            Match.challenge_id == challenge.id,
            Match.status.in_(('pending_verification', 'disputed')),
        )
        .values(status='voided')
        .execution_options(synchronize_session=False)
    )
    escrow.refund_for_challenge(challenge)
    db.session.expire_all()

    recipients = challenge.competitor_ids() - {user.id}
    for recipient_id in recipients:
        notify(recipient_id, 'challenge_canceled', {
            'challenge_id': challenge.id,
            'canceled_by': user.id,
        })
    db.session.commit()
    logger.info('Challenge %s canceled by user %s', challenge.id, user.id)

    escrow.sync_payments(challenge_id=challenge.id)
    emit_notification_update(recipients, reason='challenge_canceled')
    _emit_challenge_update(challenge, 'canceled')
    return challenge


def user_challenges(user):
    created = Challenge.query.filter_by(creator_id=user.id).order_by(
        Challenge.start_time.desc(),
    ).all()
    participating = Challenge.query.join(
        ChallengeParticipant, ChallengeParticipant.challenge_id == Challenge.id,
    ).filter(
        ChallengeParticipant.user_id == user.id,
        ChallengeParticipant.status.in_(('pending', 'accepted')),
    ).order_by(Challenge.start_time.desc()).all()
    return {
        'created': [challenge.to_dict() for challenge in created],
        'participating': [challenge.to_dict() for challenge in participating],
    }
