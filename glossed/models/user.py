"""User model shared by clients and professionals."""

from datetime import datetime
from glossed import db


class User(db.Model):
    """Marketplace user. A user can act as client, professional, or both."""
    
    __tablename__ = 'users'
    
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    first_name = db.Column(db.String(80), nullable=True)
    last_name = db.Column(db.String(80), nullable=True)
    is_pro = db.Column(db.Boolean, default=False, nullable=False)
    is_staff = db.Column(db.Boolean, default=False, nullable=False)  # Support staff (reconciliation)
    
    # Stripe Connect destination account (professionals only)
    stripe_account_id = db.Column(db.String(255), nullable=True)
    
    # Working area used to match professionals with new requests
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    radius_km = db.Column(db.Float, default=20.0, nullable=False)
    services = db.Column(db.JSON, nullable=True)  # e.g. ['Nails', 'Hair']
    
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    
    def to_dict(self):
        """Convert user to dictionary."""
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'is_pro': self.is_pro,
            'has_stripe_account': bool(self.stripe_account_id),
            'latitude': self.latitude,
            'longitude': self.longitude,
            'radius_km': self.radius_km,
            'services': self.services or [],
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
    
    def __repr__(self):
        return f'<User {self.username}>'
