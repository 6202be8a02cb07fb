"""Escrow for bid challenges.

A stake is ``held`` from the moment its payer commits to the challenge and
leaves that state exactly once: ``released`` to the winner when the match
verifies, or ``refunded`` when the challenge is canceled. Both transitions
are conditional on ``status = 'held'`` and run inside the transaction that
moves the challenge out of open/accepted, so they cannot both happen.

Processor calls for settled payments run after commit in ``sync_payments``.
"""
import logging

from sqlalchemy import update

from sportconnect.app import db
from sportconnect.errors import PaymentProcessorError, IntegrationUnavailable
from sportconnect.models import Payment
from sportconnect.services.payment_processor import get_processor
from sportconnect.services.upserts import insert_ignore
from sportconnect.time_utils import utcnow_naive

logger = logging.getLogger(__name__)


def hold_stake(challenge, payer_id, payment_method=None):
    """Hold ``payer_id``'s stake for a bid challenge. Returns the Payment or None."""
    if not challenge.is_bid:
        return None

    inserted = insert_ignore(
        Payment,
        {
            'challenge_id': challenge.id,
            'payer_id': payer_id,
            'amount': challenge.bid_amount,
            'status': 'held',
            'processor_synced': True,
            'created_at': utcnow_naive(),
        },
        ('challenge_id', 'payer_id'),
    )
    payment = Payment.query.filter_by(
        challenge_id=challenge.id, payer_id=payer_id,
    ).populate_existing().one()

    if inserted:
        # Raises on failure; the caller's transaction is rolled back with it.
        payment.processor_reference = get_processor().hold(payment, payment_method)
        logger.info(
            'Held %s for challenge %s from user %s',
            payment.amount, challenge.id, payer_id,
        )
    return payment


def _settle_held(challenge_id, status, payout_recipient_id=None):
    result = db.session.execute(
        update(Payment)
        .where(Payment.challenge_id == challenge_id, Payment.status == 'held')
        .values(
            status=status,
            payout_recipient_id=payout_recipient_id,
            processor_synced=False,
            settled_at=utcnow_naive(),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def release_for_match(match):
    """Release every held stake of the match's challenge to the winner."""
    released = _settle_held(match.challenge_id, 'released', payout_recipient_id=match.winner_id)
    if released:
        logger.info(
            'Released %d payment(s) of challenge %s to user %s',
            released, match.challenge_id, match.winner_id,
        )
    return released


def refund_for_challenge(challenge):
    refunded = _settle_held(challenge.id, 'refunded')
    if refunded:
        logger.info('Refunded %d payment(s) of challenge %s', refunded, challenge.id)
    return refunded


def payments_for_challenge(challenge_id):
    return Payment.query.filter_by(challenge_id=challenge_id).order_by(
        Payment.id.asc(),
    ).populate_existing().all()


def sync_payments(challenge_id=None):
    """Push settled-but-unsynced payments to the processor.

    Each payment commits on its own, so a failure leaves it unsynced for the
    next run. Returns ``(synced, failed)``.
    """
    query = Payment.query.filter(
        Payment.status.in_(('released', 'refunded')),
        Payment.processor_synced.is_(False),
    )
    if challenge_id is not None:
        query = query.filter(Payment.challenge_id == challenge_id)
    pending = query.order_by(Payment.id.asc()).populate_existing().all()
    if not pending:
        return 0, 0

    try:
        processor = get_processor()
    except IntegrationUnavailable as exc:
        logger.error('Cannot settle %d payment(s): %s', len(pending), exc.message)
        return 0, len(pending)

    synced = failed = 0
    for payment in pending:
        try:
            if payment.status == 'released':
                processor.release(payment)
            else:
                processor.refund(payment)
        except PaymentProcessorError as exc:
            failed += 1
            logger.error('Settlement of payment %s (%s) failed: %s', payment.id, payment.status, exc.message)
            continue
        payment.processor_synced = True
        db.session.commit()
        synced += 1
    return synced, failed
