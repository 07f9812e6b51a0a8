"""Payment model for confirmed checkouts and their refunds."""

from datetime import datetime
from glossed import db


class PaymentStatus:
    PAID = 'paid'
    REFUNDED = 'refunded'
    PARTIALLY_REFUNDED = 'partially_refunded'
    
    TERMINAL = (REFUNDED, PARTIALLY_REFUNDED)


class Payment(db.Model):
    """Record of a successful charge against an offer, with its fee split."""
    
    __tablename__ = 'payments'
    
    id = db.Column(db.Integer, primary_key=True)
    offer_id = db.Column(db.Integer, db.ForeignKey('offers.id'), nullable=False, index=True)
    client_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    professional_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    
    # Amounts in cents
    amount = db.Column(db.Integer, nullable=False)  # Gross charged to the client
    service_price = db.Column(db.Integer, nullable=False)
    travel_fee = db.Column(db.Integer, default=0, nullable=False)
    application_fee = db.Column(db.Integer, nullable=False)  # Platform commission
    net_amount = db.Column(db.Integer, nullable=False)  # Transferred to the professional
    currency = db.Column(db.String(3), default='EUR', nullable=False)
    
    # Stripe IDs
    stripe_payment_id = db.Column(db.String(255), unique=True, nullable=False, index=True)  # Idempotency key
    stripe_checkout_session_id = db.Column(db.String(255), nullable=True)
    stripe_refund_id = db.Column(db.String(255), unique=True, nullable=True)
    
    status = db.Column(db.String(20), default=PaymentStatus.PAID, nullable=False, index=True)
    # 'paid' - Charge succeeded, transfer made to the professional
    # 'refunded' - Full refund, transfer and fee reversed
    # 'partially_refunded' - Net refunded, platform fee retained
    
    refund_amount = db.Column(db.Integer, nullable=True)
    refund_claimed_at = db.Column(db.DateTime, nullable=True)  # Set while a settlement owns this payment
    # A second charge for an offer that could not take it; refunded on arrival
    # and never part of the offer's settlement
    is_surplus = db.Column(db.Boolean, default=False, nullable=False)
    
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    refunded_at = db.Column(db.DateTime, nullable=True)
    
    def to_dict(self):
        """Convert payment to dictionary."""
        return {
            'id': self.id,
            'offer_id': self.offer_id,
            'client_id': self.client_id,
            'professional_id': self.professional_id,
            'amount': self.amount / 100,  # Convert cents to currency
            'service_price': self.service_price / 100,
            'travel_fee': (self.travel_fee or 0) / 100,
            'application_fee': self.application_fee / 100,
            'net_amount': self.net_amount / 100,
            'currency': self.currency,
            'status': self.status,
            'refund_amount': self.refund_amount / 100 if self.refund_amount is not None else None,
            'stripe_payment_id': self.stripe_payment_id,
            'is_surplus': self.is_surplus,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
            'refunded_at': self.refunded_at.isoformat() if self.refunded_at else None,
        }
    
    def __repr__(self):
        return f'<Payment {self.id}: {self.amount/100} {self.currency} - {self.status}>'
