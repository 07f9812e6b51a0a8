"""Offer model (a professional's binding proposal, a "mission")."""

from datetime import datetime
from glossed import db


class OfferStatus:
    PROPOSED = 'proposed'
    CONFIRMED = 'confirmed'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    CANCEL_REQUESTED = 'cancel_requested'


class Offer(db.Model):
    """Offer made by a professional against a client's request."""
    
    __tablename__ = 'offers'
    
    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(db.Integer, db.ForeignKey('requests.id'), nullable=True, index=True)
    client_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    professional_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    service = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, nullable=True)
    date = db.Column(db.String(10), nullable=False)  # YYYY-MM-DD
    time = db.Column(db.String(5), nullable=False)  # HH:mm
    duration = db.Column(db.Integer, default=60, nullable=False)  # Minutes
    
    # Amounts in cents to avoid float issues
    service_price = db.Column(db.Integer, nullable=False)
    travel_fee = db.Column(db.Integer, default=0, nullable=False)
    price = db.Column(db.Integer, nullable=False)  # service_price + travel_fee, what the client pays
    currency = db.Column(db.String(3), default='EUR', nullable=False)
    
    status = db.Column(db.String(20), default=OfferStatus.PROPOSED, nullable=False, index=True)
    stripe_checkout_session_id = db.Column(db.String(255), nullable=True)  # Latest checkout issued
    
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    confirmed_at = db.Column(db.DateTime, nullable=True)
    cancel_requested_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    
    @property
    def net_amount(self):
        """Amount in cents the professional keeps after the platform fee."""
        from glossed.services.settlement import SettlementService
        _, net = SettlementService.calculate_fees(self.price or 0)
        return net
    
    def to_dict(self):
        """Convert offer to dictionary."""
        return {
            'id': self.id,
            'request_id': self.request_id,
            'client_id': self.client_id,
            'professional_id': self.professional_id,
            'service': self.service,
            'description': self.description,
            'date': self.date,
            'time': self.time,
            'duration': self.duration,
            'service_price': (self.service_price or 0) / 100,
            'travel_fee': (self.travel_fee or 0) / 100,
            'price': (self.price or 0) / 100,
            'net_amount': self.net_amount / 100,
            'currency': self.currency,
            'status': self.status,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
            'confirmed_at': self.confirmed_at.isoformat() if self.confirmed_at else None,
            'cancel_requested_at': self.cancel_requested_at.isoformat() if self.cancel_requested_at else None,
            'cancelled_at': self.cancelled_at.isoformat() if self.cancelled_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }
    
    def __repr__(self):
        return f'<Offer {self.id}: {self.price/100} {self.currency} - {self.status}>'
