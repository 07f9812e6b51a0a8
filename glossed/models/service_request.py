"""Service request model (a client's job looking for a professional)."""

from datetime import datetime
from glossed import db


class RequestStatus:
    PENDING = 'pending'
    PROPOSED = 'proposed'
    CONFIRMED = 'confirmed'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


class ServiceRequest(db.Model):
    """Client-submitted request for a beauty service."""
    
    __tablename__ = 'requests'
    
    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    professional_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)  # Set once an offer is made
    service = db.Column(db.String(120), nullable=False)  # Primary label used in messages
    services = db.Column(db.JSON, nullable=True)  # All requested services
    date = db.Column(db.String(10), nullable=False)  # YYYY-MM-DD
    time_slot = db.Column(db.String(50), nullable=True)  # e.g. 'Afternoon (13-18)'
    address = db.Column(db.String(255), nullable=True)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), default=RequestStatus.PENDING, nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    
    def to_dict(self):
        """Convert request to dictionary."""
        return {
            'id': self.id,
            'client_id': self.client_id,
            'professional_id': self.professional_id,
            'service': self.service,
            'services': self.services or [self.service],
            'date': self.date,
            'time_slot': self.time_slot,
            'address': self.address,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'notes': self.notes,
            'status': self.status,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }
    
    def __repr__(self):
        return f'<ServiceRequest {self.id}: {self.service} ({self.status})>'
