"""Stripe adapter for destination-charge checkouts and refunds.

This module is the only Stripe caller in the process, so the client
settings below are applied globally on purpose: every call gets the
explicit timeout and none is retried by the library. A refund that
times out may still have happened on Stripe's side, and a silent retry
would hide that from the settlement claim.
"""

import stripe
import os
import logging
from glossed import db
from glossed.errors import (
    AlreadyRefunded,
    InvalidTransition,
    ProcessorDeclined,
    ProcessorTimeout,
    ValidationError,
)
from glossed.models import OfferStatus, User

logger = logging.getLogger(__name__)

# Initialize Stripe with secret key from environment
stripe.api_key = os.getenv('STRIPE_SECRET_KEY')

# Process-wide on purpose, see the module docstring
STRIPE_TIMEOUT_SECONDS = float(os.getenv('STRIPE_TIMEOUT_SECONDS', '15'))
stripe.max_network_retries = 0
stripe.default_http_client = stripe.RequestsClient(timeout=STRIPE_TIMEOUT_SECONDS)

DEFAULT_CURRENCY = os.getenv('DEFAULT_CURRENCY', 'eur')


def _raise_processor_error(e, action):
    """Translate a Stripe exception into one of our processor error kinds."""
    if isinstance(e, (stripe.APIConnectionError, stripe.APIError)):
        # Network failure, timeout or 5xx: outcome unknown
        raise ProcessorTimeout(f'Stripe did not acknowledge {action}: {e}') from e
    
    code = getattr(e, 'code', None)
    if code == 'charge_already_refunded':
        raise AlreadyRefunded(f'Stripe reports the charge as already refunded ({action})') from e
    
    message = getattr(e, 'user_message', None) or str(e)
    raise ProcessorDeclined(f'Stripe declined {action}: {message}') from e


class StripeService:
    """Payment processor adapter."""
    
    @staticmethod
    def create_checkout_session(offer, success_url, cancel_url):
        """Create a Checkout session paying the offer's professional.
        
        The charge is a destination charge: the platform fee is kept as the
        application fee and the rest is transferred to the professional's
        Connect account.
        
        An offer has at most one live session. While the previous one is
        still open it is handed out again; once it completed the offer is
        paid and no new session is issued.
        
        Args:
            offer: Offer in 'proposed' status
            success_url: Redirect after payment
            cancel_url: Redirect when the client abandons checkout
        
        Returns:
            dict: {'session_id': ..., 'url': ...}
        """
        from glossed.services.lifecycle import LifecycleService
        from glossed.services.settlement import SettlementService
        
        LifecycleService.validate_confirmation(offer)
        
        if offer.stripe_checkout_session_id:
            try:
                previous = stripe.checkout.Session.retrieve(offer.stripe_checkout_session_id)
            except stripe.StripeError as e:
                _raise_processor_error(e, 'checkout session lookup')
        
            if previous.status == 'open':
                logger.info(f'Reusing open checkout session {previous.id} for offer {offer.id}')
                return {'session_id': previous.id, 'url': previous.url}
            if previous.status == 'complete':
                raise InvalidTransition(
                    'offer', offer.status, OfferStatus.CONFIRMED,
                    message='This offer has already been paid'
                )
        
        pro = db.session.get(User, offer.professional_id)
        if not pro or not pro.stripe_account_id:
            raise ValidationError('Professional is not connected to Stripe')
        
        application_fee, _ = SettlementService.calculate_fees(offer.price)
        metadata = {
            'offer_id': str(offer.id),
            'client_id': str(offer.client_id),
            'professional_id': str(offer.professional_id),
            'fee_cents': str(application_fee),
        }
        
        try:
            session = stripe.checkout.Session.create(
                payment_method_types=['card'],
                mode='payment',
                line_items=[{
                    'price_data': {
                        'currency': (offer.currency or DEFAULT_CURRENCY).lower(),
                        'unit_amount': offer.price,
                        'product_data': {
                            'name': offer.service or 'Booking',
                        },
                    },
                    'quantity': 1,
                }],
                payment_intent_data={
                    'application_fee_amount': application_fee,
                    'transfer_data': {'destination': pro.stripe_account_id},
                    'metadata': metadata,
                },
                metadata=metadata,
                success_url=success_url,
                cancel_url=cancel_url,
            )
        except stripe.StripeError as e:
            _raise_processor_error(e, 'checkout session creation')
        
        offer.stripe_checkout_session_id = session.id
        db.session.commit()
        
        logger.info(f'Checkout session {session.id} created for offer {offer.id}')
        return {'session_id': session.id, 'url': session.url}
    
    @staticmethod
    def create_refund(payment_reference, amount_cents=None, reverse_transfer=True,
                      reclaim_application_fee=False, idempotency_key=None):
        """Refund a payment intent.
        
        Args:
            payment_reference: Stripe PaymentIntent ID
            amount_cents: Amount to refund (None = full refund)
            reverse_transfer: Pull the amount back from the professional's account
            reclaim_application_fee: Also refund the platform fee
            idempotency_key: Stripe idempotency key
            
        Returns:
            str: Stripe refund ID
            
        Raises:
            ProcessorDeclined, AlreadyRefunded, ProcessorTimeout
        """
        params = {
            'payment_intent': payment_reference,
            'reverse_transfer': reverse_transfer,
            'refund_application_fee': reclaim_application_fee,
        }
        if amount_cents is not None:
            params['amount'] = amount_cents
        if idempotency_key:
            params['idempotency_key'] = idempotency_key
        
        try:
            refund = stripe.Refund.create(**params)
        except stripe.StripeError as e:
            _raise_processor_error(e, 'the refund')
        
        if getattr(refund, 'status', None) in ('failed', 'canceled'):
            raise ProcessorDeclined(f'Stripe refund {refund.id} ended as {refund.status}')
        
        logger.info(f'Stripe refund {refund.id} created for {payment_reference}')
        return refund.id
    
    @staticmethod
    def list_refunds(payment_reference):
        """Refunds Stripe holds for a payment intent."""
        try:
            refunds = stripe.Refund.list(payment_intent=payment_reference, limit=10)
        except stripe.StripeError as e:
            _raise_processor_error(e, 'the refund lookup')
        return list(refunds.data)
    
    @staticmethod
    def construct_event(payload, sig_header):
        """Verify and parse a webhook payload."""
        webhook_secret = os.getenv('STRIPE_WEBHOOK_SECRET')
        return stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
    
    @staticmethod
    def handle_webhook(event):
        """Handle Stripe webhook events.
        
        Args:
            event: Stripe event object
            
        Returns:
            dict: Result of handling
        """
        from glossed.services.settlement import SettlementService
        
        event_type = event['type']
        
        if event_type == 'checkout.session.completed':
            session = event['data']['object']
            metadata = session.get('metadata') or {}
            offer_id = metadata.get('offer_id')
            
            if not offer_id:
                logger.warning(f'Checkout session {session.get("id")} has no offer_id in metadata')
                return {'status': 'ignored'}
            
            payment_reference = session.get('payment_intent') or session.get('id')
            payment, created = SettlementService.record_payment(
                offer_id=int(offer_id),
                payment_reference=payment_reference,
                amount_cents=session.get('amount_total'),
                checkout_session_id=session.get('id'),
            )
            if not created:
                status = 'duplicate'
            elif payment.is_surplus:
                status = 'surplus'  # Offer could not take it; refunded or flagged
            else:
                status = 'recorded'
            return {'status': status, 'payment_id': payment.id}
        
        elif event_type == 'payment_intent.payment_failed':
            payment_intent = event['data']['object']
            logger.warning(f'Payment failed for {payment_intent.get("id")}')
            return {'status': 'failed'}
        
        return {'status': 'ignored'}
