"""Settlement engine: fee split, payment recording, cancellation refunds.

A refund touches three systems (Stripe, the payment row, the offer row)
that cannot be committed together. The payment row is the serialization
point: a settlement first claims it with a conditional update, only then
calls Stripe (once), then writes the payment and the offer in that order.
Any step that fails after money may have moved is recorded as a
reconciliation gap instead of being retried.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError

from glossed import db
from glossed.errors import (
    AlreadyRefunded,
    BookingError,
    DataIntegrityError,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    ProcessorError,
    ValidationError,
)
from glossed.models import (
    GapKind,
    Offer,
    OfferStatus,
    Payment,
    PaymentStatus,
    ReconciliationGap,
)
from glossed.services.change_feed import conditional_update
from glossed.services.lifecycle import LifecycleService
from glossed.services.stripe_service import StripeService

logger = logging.getLogger(__name__)

# Platform fee percentage (10% default)
PLATFORM_FEE_PERCENT = float(os.getenv('PLATFORM_FEE_PERCENT', '10.0'))


class SettlementMode:
    PROFESSIONAL_CANCEL = 'professional_cancel'  # Full refund, fee reclaimed
    CLIENT_CANCEL_APPROVED = 'client_cancel_approved'  # Net refunded, fee retained
    
    ALL = (PROFESSIONAL_CANCEL, CLIENT_CANCEL_APPROVED)


REFUNDABLE_OFFER_STATUSES = {
    SettlementMode.PROFESSIONAL_CANCEL: (OfferStatus.CONFIRMED, OfferStatus.CANCEL_REQUESTED),
    SettlementMode.CLIENT_CANCEL_APPROVED: (OfferStatus.CANCEL_REQUESTED,),
}

RESULTING_PAYMENT_STATUS = {
    SettlementMode.PROFESSIONAL_CANCEL: PaymentStatus.REFUNDED,
    SettlementMode.CLIENT_CANCEL_APPROVED: PaymentStatus.PARTIALLY_REFUNDED,
}


@dataclass
class SettlementResult:
    status: str  # 'settled', 'already_settled' or 'in_progress'
    offer: Offer
    payment: Optional[Payment] = None
    refund_id: Optional[str] = None
    refund_amount: Optional[int] = None
    reconciliation_gap: Optional[ReconciliationGap] = None
    
    SETTLED = 'settled'
    ALREADY_SETTLED = 'already_settled'
    IN_PROGRESS = 'in_progress'
    
    def to_dict(self):
        return {
            'status': self.status,
            'offer': self.offer.to_dict() if self.offer else None,
            'payment': self.payment.to_dict() if self.payment else None,
            'refund_id': self.refund_id,
            'refund_amount': self.refund_amount / 100 if self.refund_amount is not None else None,
            'reconciliation_gap_id': self.reconciliation_gap.id if self.reconciliation_gap else None,
        }


class SettlementService:
    """Business rules for payouts and cancellation refunds."""
    
    @staticmethod
    def calculate_fees(amount_cents):
        """Calculate platform fee and professional amount.
        
        Args:
            amount_cents: Total amount in cents
            
        Returns:
            tuple: (application_fee_cents, net_amount_cents)
        """
        application_fee = int(round(amount_cents * (PLATFORM_FEE_PERCENT / 100)))
        application_fee = max(0, min(application_fee, amount_cents))
        net_amount = amount_cents - application_fee
        return application_fee, net_amount
    
    # ------------------------------------------------------------------
    # Payment confirmation
    # ------------------------------------------------------------------
    
    @staticmethod
    def _build_payment(offer, payment_reference, checkout_session_id=None):
        application_fee, net_amount = SettlementService.calculate_fees(offer.price)
        return Payment(
            offer_id=offer.id,
            client_id=offer.client_id,
            professional_id=offer.professional_id,
            amount=offer.price,
            service_price=offer.service_price,
            travel_fee=offer.travel_fee or 0,
            application_fee=application_fee,
            net_amount=net_amount,
            currency=offer.currency,
            stripe_payment_id=payment_reference,
            stripe_checkout_session_id=checkout_session_id,
            status=PaymentStatus.PAID,
        )
    
    @staticmethod
    def record_payment(offer_id, payment_reference, amount_cents=None, checkout_session_id=None):
        """Record a confirmed checkout and confirm its offer.
        
        Idempotent on ``payment_reference``: a repeated confirmation returns
        the existing row.
        
        Returns:
            tuple: (Payment, created)
        """
        existing = Payment.query.filter_by(stripe_payment_id=payment_reference).first()
        if existing:
            logger.info(f'Duplicate confirmation for {payment_reference}, payment {existing.id} already recorded')
            return existing, False
        
        offer = db.session.get(Offer, offer_id, populate_existing=True)
        if not offer:
            raise NotFound('Offer not found')
        
        if amount_cents is not None and amount_cents != offer.price:
            logger.warning(
                f'Offer {offer_id} charged {amount_cents} but quoted {offer.price}; '
                f'recording the quoted breakdown'
            )
        
        try:
            db.session.add(SettlementService._build_payment(offer, payment_reference, checkout_session_id))
            LifecycleService.confirm_offer(offer_id, commit=False)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            existing = Payment.query.filter_by(stripe_payment_id=payment_reference).first()
            if existing is None:
                raise
            logger.info(f'Concurrent confirmation for {payment_reference} lost the insert race')
            return existing, False
        except (InvalidTransition, ValidationError) as e:
            db.session.rollback()
            return SettlementService._refund_surplus_payment(
                offer_id, payment_reference, checkout_session_id, reason=str(e)
            )
    
        payment = Payment.query.filter_by(stripe_payment_id=payment_reference).first()
        logger.info(f'Payment {payment.id} recorded, offer {offer_id} confirmed')
        return payment, True
    
    @staticmethod
    def _refund_surplus_payment(offer_id, payment_reference, checkout_session_id, reason):
        """Store and refund a charge for an offer that can no longer take it.
        
        This covers a second paid checkout and a payment landing after the
        offer was withdrawn. The row is stored claimed and marked surplus so
        settlement never counts it, then refunded in full. A refund that
        fails or times out leaves an orphan_payment gap.
        
        Returns:
            tuple: (Payment, created)
        """
        offer = db.session.get(Offer, offer_id, populate_existing=True)
        payment = SettlementService._build_payment(offer, payment_reference, checkout_session_id)
        payment.is_surplus = True
        payment.refund_claimed_at = datetime.utcnow()
        db.session.add(payment)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return Payment.query.filter_by(stripe_payment_id=payment_reference).first(), False
    
        payment_id = payment.id
        amount = payment.amount
        offer_status = offer.status
        logger.warning(
            f'Payment {payment_id} ({payment_reference}) arrived for offer {offer_id} '
            f'in status {offer_status}: {reason}. Refunding it'
        )
    
        try:
            refund_id = StripeService.create_refund(
                payment_reference,
                None,
                reverse_transfer=True,
                reclaim_application_fee=True,
                idempotency_key=f'refund-payment-{payment_id}',
            )
        except ProcessorError as e:
            SettlementService.record_gap(
                GapKind.ORPHAN_PAYMENT, offer_id=offer_id, payment_id=payment_id,
                detail={'reason': reason, 'offer_status': offer_status, 'error': str(e)},
            )
            return db.session.get(Payment, payment_id, populate_existing=True), True
    
        try:
            refunded = conditional_update(
                Payment, payment_id, PaymentStatus.PAID,
                {
                    'status': PaymentStatus.REFUNDED,
                    'refunded_at': datetime.utcnow(),
                    'stripe_refund_id': refund_id,
                    'refund_amount': amount,
                }
            )
            if refunded is None:
                raise RuntimeError('surplus payment left paid status before its refund was recorded')
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            SettlementService.record_gap(
                GapKind.PAYMENT_UPDATE_FAILED, offer_id=offer_id, payment_id=payment_id,
                detail={'error': str(e), 'refund_id': refund_id, 'refund_amount': amount},
            )
            return db.session.get(Payment, payment_id, populate_existing=True), True
    
        logger.info(f'Surplus payment {payment_id} refunded ({refund_id})')
        return refunded, True
    
    # ------------------------------------------------------------------
    # Cancellation refunds
    # ------------------------------------------------------------------
    
    @staticmethod
    def settle_cancellation(offer_id, mode, actor_id=None):
        """Refund a cancelled booking and reconcile payment and offer.
        
        Args:
            offer_id: Offer ID
            mode: 'professional_cancel' (full refund, transfer and fee
                reversed) or 'client_cancel_approved' (net refunded,
                platform fee retained)
            actor_id: User ID of the professional acting, if any
            
        Returns:
            SettlementResult
            
        Raises:
            InvalidTransition, DataIntegrityError, ProcessorError
        """
        if mode not in SettlementMode.ALL:
            raise ValidationError(f'Invalid settlement mode: {mode}')
        
        offer = db.session.get(Offer, offer_id, populate_existing=True)
        if not offer:
            raise NotFound('Offer not found')
        if actor_id is not None and actor_id != offer.professional_id:
            raise PermissionDenied('Only the professional can settle this cancellation')
        
        paid = Payment.query.filter_by(
            offer_id=offer_id,
            status=PaymentStatus.PAID,
            is_surplus=False
        ).order_by(Payment.created_at.desc(), Payment.id.desc()).all()
        
        if len(paid) > 1:
            logger.critical(
                f'Data integrity: offer {offer_id} has {len(paid)} paid payments '
                f'({[p.id for p in paid]}), settlement aborted'
            )
            raise DataIntegrityError(
                'More than one paid payment found for this offer',
                offer_id=offer_id,
                payment_ids=[p.id for p in paid],
            )
        
        if not paid:
            settled = Payment.query.filter(
                Payment.offer_id == offer_id,
                Payment.is_surplus.is_(False),
                Payment.status.in_(PaymentStatus.TERMINAL)
            ).order_by(Payment.created_at.desc()).first()
            if settled:
                return SettlementResult(SettlementResult.ALREADY_SETTLED, offer, settled)
            if offer.status in (OfferStatus.CONFIRMED, OfferStatus.CANCEL_REQUESTED):
                logger.critical(f'Data integrity: offer {offer_id} is {offer.status} without a paid payment')
                raise DataIntegrityError('Confirmed offer has no paid payment', offer_id=offer_id)
            raise InvalidTransition('offer', offer.status, OfferStatus.CANCELLED)
        
        payment = paid[0]
        
        if offer.status not in REFUNDABLE_OFFER_STATUSES[mode]:
            raise InvalidTransition(
                'offer', offer.status, OfferStatus.CANCELLED,
                message=f'Offer is not refundable with {mode} from status {offer.status}'
            )
        
        # Claim the payment; a second attempt matches zero rows here
        claimed = conditional_update(
            Payment, payment.id, PaymentStatus.PAID,
            {'refund_claimed_at': datetime.utcnow()},
            Payment.refund_claimed_at.is_(None)
        )
        if claimed is None:
            db.session.rollback()
            current = db.session.get(Payment, payment.id, populate_existing=True)
            status = (SettlementResult.ALREADY_SETTLED
                      if current.status in PaymentStatus.TERMINAL
                      else SettlementResult.IN_PROGRESS)
            logger.info(f'Settlement of offer {offer_id} skipped: payment {payment.id} already claimed')
            return SettlementResult(status, offer, current)
        db.session.commit()
        
        if mode == SettlementMode.PROFESSIONAL_CANCEL:
            refund_amount = claimed.amount
            refund_kwargs = {
                'amount_cents': None,
                'reverse_transfer': True,
                'reclaim_application_fee': True,
            }
        else:
            refund_amount = claimed.net_amount
            refund_kwargs = {
                'amount_cents': claimed.net_amount,
                'reverse_transfer': True,
                'reclaim_application_fee': False,
            }
        
        payment_id = claimed.id
        payment_reference = claimed.stripe_payment_id
        
        try:
            refund_id = StripeService.create_refund(
                payment_reference,
                idempotency_key=f'refund-payment-{payment_id}',
                **refund_kwargs
            )
        except ProcessorError as e:
            if e.ambiguous or isinstance(e, AlreadyRefunded):
                # Money may have moved; the claim stays until reconciliation
                gap = SettlementService.record_gap(
                    GapKind.PROCESSOR_TIMEOUT, offer_id=offer_id, payment_id=payment_id, mode=mode,
                    detail={'error': str(e), 'refund_amount': refund_amount},
                )
                if gap is not None:
                    e.details['reconciliation_gap_id'] = gap.id
            else:
                SettlementService._release_claim(payment_id)
                logger.warning(f'Refund for offer {offer_id} declined: {e}')
            raise
        
        return SettlementService._apply_refund(
            offer_id, payment_id, mode, refund_id, refund_amount, RESULTING_PAYMENT_STATUS[mode]
        )
    
    @staticmethod
    def _apply_refund(offer_id, payment_id, mode, refund_id, refund_amount, payment_status):
        """Write payment then offer after a refund Stripe acknowledged."""
        try:
            payment = conditional_update(
                Payment, payment_id, PaymentStatus.PAID,
                {
                    'status': payment_status,
                    'refunded_at': datetime.utcnow(),
                    'stripe_refund_id': refund_id,
                    'refund_amount': refund_amount,
                }
            )
            if payment is None:
                raise RuntimeError('payment left paid status before refund was recorded')
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            gap = SettlementService.record_gap(
                GapKind.PAYMENT_UPDATE_FAILED, offer_id=offer_id, payment_id=payment_id, mode=mode,
                detail={'error': str(e), 'refund_id': refund_id, 'refund_amount': refund_amount},
            )
            offer = db.session.get(Offer, offer_id, populate_existing=True)
            payment = db.session.get(Payment, payment_id, populate_existing=True)
            return SettlementResult(SettlementResult.SETTLED, offer, payment, refund_id, refund_amount, gap)
        
        gap = None
        offer = db.session.get(Offer, offer_id, populate_existing=True)
        if offer.status != OfferStatus.CANCELLED:
            try:
                offer = LifecycleService.transition_offer(offer, OfferStatus.CANCELLED)
            except Exception as e:
                gap = SettlementService.record_gap(
                    GapKind.OFFER_UPDATE_FAILED, offer_id=offer_id, payment_id=payment_id, mode=mode,
                    detail={'error': str(e), 'refund_id': refund_id},
                )
                offer = db.session.get(Offer, offer_id, populate_existing=True)
        
        logger.info(
            f'Offer {offer_id} settled ({mode}): refund {refund_id} of {refund_amount} cents, '
            f'payment {payment_id} {payment_status}'
        )
        return SettlementResult(SettlementResult.SETTLED, offer, payment, refund_id, refund_amount, gap)
    
    @staticmethod
    def _release_claim(payment_id):
        try:
            conditional_update(
                Payment, payment_id, PaymentStatus.PAID, {'refund_claimed_at': None}
            )
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.error(f'Could not release settlement claim on payment {payment_id}: {e}')
    
    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    
    @staticmethod
    def record_gap(kind, offer_id=None, payment_id=None, mode=None, detail=None):
        """Log and persist a reconciliation gap. Never raises."""
        logged_at = datetime.utcnow()
        logger.critical(
            f'Reconciliation gap [{kind}] offer={offer_id} payment={payment_id} '
            f'mode={mode} at={logged_at.isoformat()} detail={detail}'
        )
        try:
            gap = ReconciliationGap(
                offer_id=offer_id,
                payment_id=payment_id,
                mode=mode,
                kind=kind,
                created_at=logged_at,
            )
            gap.set_detail(detail)
            db.session.add(gap)
            db.session.commit()
            return gap
        except Exception as e:
            db.session.rollback()
            logger.error(f'Could not persist reconciliation gap for offer {offer_id}: {e}')
            return None
    
    @staticmethod
    def reconcile_gaps():
        """Resolve open gaps against Stripe. Safe to run on a schedule.
        
        Returns:
            list: [{'gap_id': ..., 'resolution': ...}] for every gap looked at
        """
        gaps = ReconciliationGap.query.filter(
            ReconciliationGap.resolved_at.is_(None)
        ).order_by(ReconciliationGap.created_at).all()
        
        results = []
        for gap in gaps:
            try:
                resolution = SettlementService._reconcile_gap(gap)
            except BookingError as e:
                db.session.rollback()
                logger.error(f'Reconciliation of gap {gap.id} postponed: {e}')
                resolution = None
            
            if resolution:
                gap = db.session.get(ReconciliationGap, gap.id)
                gap.resolved_at = datetime.utcnow()
                gap.resolution = resolution
                db.session.commit()
            results.append({'gap_id': gap.id, 'resolution': resolution})
        return results
    
    @staticmethod
    def _reconcile_gap(gap):
        if gap.kind == GapKind.OFFER_UPDATE_FAILED:
            return SettlementService._cancel_settled_offer(gap.offer_id)
        
        payment = db.session.get(Payment, gap.payment_id, populate_existing=True)
        if payment is None:
            return 'payment missing'
        
        if payment.status not in PaymentStatus.TERMINAL:
            refunds = [
                r for r in StripeService.list_refunds(payment.stripe_payment_id)
                if getattr(r, 'status', None) in ('succeeded', 'pending')
            ]
            if not refunds:
                if payment.is_surplus:
                    return None  # Needs a human decision
                SettlementService._release_claim(payment.id)
                return 'no refund found, claim released'
            
            refund = refunds[0]
            payment_status = (PaymentStatus.REFUNDED if refund.amount >= payment.amount
                              else PaymentStatus.PARTIALLY_REFUNDED)
            conditional_update(
                Payment, payment.id, PaymentStatus.PAID,
                {
                    'status': payment_status,
                    'refunded_at': datetime.utcnow(),
                    'stripe_refund_id': refund.id,
                    'refund_amount': refund.amount,
                }
            )
            db.session.commit()
        
        if payment.is_surplus:
            # The offer belongs to whichever payment is not surplus
            return 'surplus payment refunded'
        
        SettlementService._cancel_settled_offer(gap.offer_id)
        return 'refund found, payment and offer updated'
    
    @staticmethod
    def _cancel_settled_offer(offer_id):
        offer = db.session.get(Offer, offer_id, populate_existing=True)
        if offer is None:
            return 'offer missing'
        if offer.status != OfferStatus.CANCELLED:
            LifecycleService.transition_offer(offer, OfferStatus.CANCELLED)
        return 'offer cancelled'
