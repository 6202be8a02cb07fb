"""Match result submission and verification.

A match is created ``pending_verification`` by one player and becomes
``verified`` through exactly one of: the counter-party confirming (or
submitting the same winner), a signed fitness-tracker attestation, or the
auto-verification timeout. A conflicting claim from the counter-party moves
it to ``disputed``, which is terminal.

Verification is gated by two conditional updates in one transaction (the
match leaves pending, the challenge leaves open/accepted). Only the caller
that wins both gates applies ratings, releases stakes and writes feed posts;
every other caller rolls back and sees the settled state.
"""
import hashlib
import hmac
import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from sportconnect.app import db
from sportconnect.errors import (
    Conflict, IntegrationUnavailable, NotFound, PermissionDenied, ValidationError,
)
from sportconnect.models import Challenge, Match, Post
from sportconnect.services import escrow, rankings
from sportconnect.services.notifications import (
    emit_notification_update, emit_to_users, notify,
)
from sportconnect.time_utils import utcnow_naive

logger = logging.getLogger(__name__)

_MAX_SCORE_LENGTH = 100
_MAX_NOTES_LENGTH = 2000


def get_match_or_404(match_id):
    match = db.session.get(Match, match_id)
    if not match:
        raise NotFound('Match not found')
    return match


def _require_player(match, user):
    if user.id not in (match.winner_id, match.loser_id):
        raise PermissionDenied('You are not a player in this match')


def _emit_match_update(match, reason):
    emit_to_users('match_update', (match.winner_id, match.loser_id), {
        'match_id': match.id,
        'challenge_id': match.challenge_id,
        'status': match.status,
        'reason': reason,
    })


def _create_result_posts(match):
    sport = match.challenge.sport
    score = f' ({match.score})' if match.score else ''
    db.session.add(Post(
        user_id=match.winner_id, match_id=match.id, post_type='win',
        content=f'Won a {sport} challenge against {match.loser.display_name}{score}',
    ))
    db.session.add(Post(
        user_id=match.loser_id, match_id=match.id, post_type='lose',
        content=f'Lost a {sport} challenge to {match.winner.display_name}{score}',
    ))


def _finalize_match(match, source):
    """Verify ``match`` if it is still pending. Returns True if this call did it."""
    now = utcnow_naive()
    match_gate = db.session.execute(
        update(Match)
        .where(
            Match.id == match.id,
            Match.verified.is_(False),
            Match.status == 'pending_verification',
        )
        .values(verified=True, status='verified', verification_source=source, verified_at=now)
        .execution_options(synchronize_session=False)
    )
    challenge_gate = db.session.execute(
        update(Challenge)
        .where(
            Challenge.id == match.challenge_id,
            Challenge.status.in_(('open', 'accepted')),
        )
        .values(status='completed', completed_at=now)
        .execution_options(synchronize_session=False)
    )
    if match_gate.rowcount != 1 or challenge_gate.rowcount != 1:
        db.session.rollback()
        logger.info('Match %s already settled; skipping %s verification', match.id, source)
        return False

    db.session.expire_all()

    partitions = rankings.apply_match_result(match)
    escrow.release_for_match(match)
    _create_result_posts(match)
    for user_id, won in ((match.winner_id, True), (match.loser_id, False)):
        change = match.winner_elo_change if won else match.loser_elo_change
        notify(user_id, 'match_verified', {
            'match_id': match.id,
            'challenge_id': match.challenge_id,
            'won': won,
            'elo_change': round(change, 1),
            'source': source,
        })
    db.session.commit()
    logger.info('Match %s verified via %s; winner %s', match.id, source, match.winner_id)

    rankings.recalculate_partitions(partitions)
    escrow.sync_payments(challenge_id=match.challenge_id)
    _emit_match_update(match, 'verified')
    emit_notification_update((match.winner_id, match.loser_id), reason='match_verified')
    emit_to_users('challenge_update', match.challenge.competitor_ids(), {
        'challenge_id': match.challenge_id, 'status': 'completed',
    })
    return True


def _mark_disputed(match, disputed_by, claimed_winner_id):
    result = db.session.execute(
        update(Match)
        .where(
            Match.id == match.id,
            Match.verified.is_(False),
            Match.status == 'pending_verification',
        )
        .values(
            status='disputed',
            disputed_by_id=disputed_by.id,
            disputed_winner_id=claimed_winner_id,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        return False

    db.session.expire_all()
    notify(match.submitted_by_id, 'match_disputed', {
        'match_id': match.id,
        'challenge_id': match.challenge_id,
        'disputed_by': disputed_by.id,
        'claimed_winner_id': claimed_winner_id,
    })
    db.session.commit()
    logger.warning(
        'Match %s disputed by user %s (claims winner %s)',
        match.id, disputed_by.id, claimed_winner_id,
    )
    _emit_match_update(match, 'disputed')
    emit_notification_update((match.submitted_by_id,), reason='match_disputed')
    return True


def _parse_user_id(raw_value, label):
    try:
        value = int(raw_value)
    except (TypeError, ValueError):
        raise ValidationError(f'{label} is required') from None
    if value <= 0:
        raise ValidationError(f'{label} is required')
    return value


def _clean_optional_text(raw_value, max_len):
    text = str(raw_value or '').strip()
    return text[:max_len] or None


def submit_result(challenge_id, submitter, data):
    """Record a player's claimed result. Returns ``(match, created)``."""
    challenge = db.session.get(Challenge, challenge_id)
    if not challenge:
        raise NotFound('Challenge not found')

    winner_id = _parse_user_id(data.get('winner_id'), 'Winner')
    loser_id = _parse_user_id(data.get('loser_id'), 'Loser')
    score = _clean_optional_text(data.get('score'), _MAX_SCORE_LENGTH)
    notes = _clean_optional_text(data.get('notes'), _MAX_NOTES_LENGTH)

    existing = Match.query.filter_by(challenge_id=challenge.id).first()
    if existing is None and challenge.status not in ('open', 'accepted'):
        raise Conflict(f'Cannot submit a result for a {challenge.status} challenge')

    competitors = challenge.competitor_ids()
    if submitter.id not in competitors:
        raise PermissionDenied('You are not a player in this challenge')
    if winner_id == loser_id:
        raise ValidationError('Winner and loser must be different players')
    if winner_id not in competitors or loser_id not in competitors:
        raise ValidationError('Winner and loser must both be players in this challenge')
    if submitter.id not in (winner_id, loser_id):
        raise PermissionDenied('Only a player in the match can submit its result')

    if existing is None:
        match = Match(
            challenge_id=challenge.id,
            winner_id=winner_id,
            loser_id=loser_id,
            submitted_by_id=submitter.id,
            score=score,
            notes=notes,
            verified=False,
            status='pending_verification',
        )
        db.session.add(match)
        try:
            db.session.flush()
        except IntegrityError:
            # Another submission for this challenge committed first.
            db.session.rollback()
            existing = Match.query.filter_by(challenge_id=challenge_id).one()
        else:
            counterparty_id = match.counterparty_id()
            notify(counterparty_id, 'match_result_submitted', {
                'match_id': match.id,
                'challenge_id': challenge.id,
                'submitted_by': submitter.id,
                'winner_id': winner_id,
                'score': score,
            })
            db.session.commit()
            logger.info('Match %s submitted by user %s for challenge %s', match.id, submitter.id, challenge.id)
            _emit_match_update(match, 'submitted')
            emit_notification_update((counterparty_id,), reason='match_result_submitted')
            return match, True

    return _resolve_existing_claim(existing, submitter, winner_id, loser_id), False


def _resolve_existing_claim(match, submitter, winner_id, loser_id):
    same_claim = match.winner_id == winner_id and match.loser_id == loser_id
    if match.status == 'verified':
        if same_claim:
            return match
        raise Conflict('This match result has already been verified')
    if match.status == 'disputed':
        raise Conflict('This match result is disputed')
    if match.status == 'voided':
        raise Conflict('This match result was voided')

    if submitter.id == match.submitted_by_id:
        if same_claim:
            return match
        raise Conflict('You already submitted a different result for this match')

    if same_claim:
        _finalize_match(match, 'opponent')
    else:
        _mark_disputed(match, submitter, winner_id)
    return match


def confirm_result(match_id, user):
    """Counter-party confirmation. Confirming a verified match changes nothing."""
    match = get_match_or_404(match_id)
    _require_player(match, user)
    if match.verified:
        return match
    if match.status != 'pending_verification':
        raise Conflict(f'Match is {match.status}')
    if user.id == match.submitted_by_id:
        raise PermissionDenied('Your opponent must confirm the result you submitted')
    _finalize_match(match, 'opponent')
    return match


def dispute_result(match_id, user, claimed_winner_id=None):
    match = get_match_or_404(match_id)
    _require_player(match, user)
    if match.status != 'pending_verification':
        raise Conflict(f'Match is {match.status}')
    if user.id == match.submitted_by_id:
        raise PermissionDenied('You cannot dispute the result you submitted')

    if claimed_winner_id is None:
        # Without an explicit claim only the recorded loser can contest the winner.
        claimed_winner_id = user.id if user.id == match.loser_id else match.winner_id
    else:
        claimed_winner_id = _parse_user_id(claimed_winner_id, 'Winner')
    if claimed_winner_id not in (match.winner_id, match.loser_id):
        raise ValidationError('Claimed winner must be a player in this match')
    if claimed_winner_id == match.winner_id:
        raise ValidationError('Claim matches the submitted result; confirm it instead')

    _mark_disputed(match, user, claimed_winner_id)
    return match


def verify_tracker_signature(raw_body, signature):
    secret = str(current_app.config.get('TRACKER_WEBHOOK_SECRET') or '')
    if not secret:
        raise IntegrationUnavailable('Tracker attestations are not configured')
    expected = hmac.new(secret.encode('utf-8'), raw_body or b'', hashlib.sha256).hexdigest()
    provided = str(signature or '').strip().lower()
    if provided.startswith('sha256='):
        provided = provided[len('sha256='):]
    if not provided or not hmac.compare_digest(expected, provided):
        raise PermissionDenied('Invalid tracker signature')


def attest_result(match_id, claimed_winner_id):
    """Apply a signed tracker attestation naming the winner of ``match_id``."""
    match = get_match_or_404(match_id)
    claimed_winner_id = _parse_user_id(claimed_winner_id, 'Winner')
    if claimed_winner_id not in (match.winner_id, match.loser_id):
        raise ValidationError('Attested winner is not a player in this match')
    if claimed_winner_id != match.winner_id:
        raise Conflict('Tracker attestation conflicts with the submitted result')
    if match.verified:
        return match
    if match.status != 'pending_verification':
        raise Conflict(f'Match is {match.status}')
    _finalize_match(match, 'tracker')
    return match


def auto_verify_stale(now=None):
    """Verify pending matches older than AUTO_VERIFY_HOURS. Returns the count verified."""
    hours = int(current_app.config.get('AUTO_VERIFY_HOURS') or 0)
    if hours <= 0:
        return 0
    cutoff = (now or utcnow_naive()) - timedelta(hours=hours)
    stale_ids = [
        row.id for row in db.session.query(Match.id).filter(
            Match.status == 'pending_verification',
            Match.verified.is_(False),
            Match.ended_at < cutoff,
        ).order_by(Match.id.asc()).all()
    ]
    verified = 0
    for match_id in stale_ids:
        match = db.session.get(Match, match_id)
        if match and _finalize_match(match, 'timeout'):
            verified += 1
    if verified:
        logger.info('Auto-verified %d stale match(es)', verified)
    return verified


def pending_for_user(user):
    """Matches awaiting this user's confirmation."""
    rows = Match.query.filter(
        Match.status == 'pending_verification',
        (Match.winner_id == user.id) | (Match.loser_id == user.id),
        Match.submitted_by_id != user.id,
    ).order_by(Match.ended_at.desc()).all()
    return [row.to_dict() for row in rows]
