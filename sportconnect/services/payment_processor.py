"""External payment processor clients used by the escrow service.

Stakes are authorized without capture when a payment enters ``held``. A
release captures the authorization (the payout transfer to the winner is
handled by the processor account configuration); a refund voids it.
"""
import logging

import requests
from flask import current_app

from sportconnect.errors import IntegrationUnavailable, PaymentProcessorError, ValidationError

logger = logging.getLogger(__name__)


class ManualProcessor:
    """Records references without contacting a processor (dev, tests, cash stakes)."""
    name = 'manual'

    def hold(self, payment, payment_method=None):
        return f'manual_{payment.challenge_id}_{payment.payer_id}'

    def release(self, payment):
        logger.info('Manual release of payment %s to user %s', payment.id, payment.payout_recipient_id)

    def refund(self, payment):
        logger.info('Manual refund of payment %s to user %s', payment.id, payment.payer_id)


class StripeProcessor:
    """Stripe PaymentIntents with manual capture, over the REST API."""
    name = 'stripe'

    def __init__(self, secret_key, api_base, currency='usd', timeout=10.0):
        self.secret_key = secret_key
        self.api_base = api_base.rstrip('/')
        self.currency = currency
        self.timeout = timeout

    def _post(self, path, data, idempotency_key):
        try:
            response = requests.post(
                f'{self.api_base}{path}',
                data=data,
                auth=(self.secret_key, ''),
                headers={'Idempotency-Key': idempotency_key},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise PaymentProcessorError(f'Payment processor unreachable: {exc}') from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 400:
            message = (body.get('error') or {}).get('message') or f'HTTP {response.status_code}'
            raise PaymentProcessorError(f'Payment processor rejected the request: {message}')
        return body

    def hold(self, payment, payment_method=None):
        # An unconfirmed intent can never be captured.
        if not payment_method:
            raise ValidationError('payment_method is required for bid challenges')
        data = {
            'amount': payment.amount,
            'currency': self.currency,
            'capture_method': 'manual',
            'payment_method': payment_method,
            'confirm': 'true',
            'metadata[challenge_id]': payment.challenge_id,
            'metadata[payer_id]': payment.payer_id,
        }
        body = self._post('/payment_intents', data, f'hold-{payment.challenge_id}-{payment.payer_id}')
        reference = body.get('id')
        if not reference:
            raise PaymentProcessorError('Payment processor returned no reference')
        if body.get('status') != 'requires_capture':
            raise PaymentProcessorError(
                f'Stake was not authorized (payment intent is {body.get("status") or "unknown"})'
            )
        return reference

    def release(self, payment):
        data = {'metadata[payout_recipient_id]': payment.payout_recipient_id}
        self._post(f'/payment_intents/{payment.processor_reference}/capture', data, f'release-{payment.id}')

    def refund(self, payment):
        data = {'cancellation_reason': 'requested_by_customer'}
        self._post(f'/payment_intents/{payment.processor_reference}/cancel', data, f'refund-{payment.id}')


def get_processor():
    name = str(current_app.config.get('PAYMENT_PROCESSOR') or 'manual').strip().lower()
    if name == 'manual':
        return ManualProcessor()
    if name == 'stripe':
        secret_key = current_app.config.get('STRIPE_SECRET_KEY')
        if not secret_key:
            raise IntegrationUnavailable('Bid challenges are not available right now')
        return StripeProcessor(
            secret_key,
            current_app.config.get('STRIPE_API_BASE', 'https://api.stripe.com/v1'),
            currency=current_app.config.get('PAYMENT_CURRENCY', 'usd'),
            timeout=current_app.config.get('STRIPE_TIMEOUT_SECONDS', 10.0),
        )
    raise IntegrationUnavailable(f'Unknown payment processor: {name}')
