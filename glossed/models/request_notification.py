"""Fan-out record telling a professional about a nearby request."""

from datetime import datetime
from glossed import db


class RequestNotification(db.Model):
    
    __tablename__ = 'request_notifications'
    
    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(db.Integer, db.ForeignKey('requests.id'), nullable=False, index=True)
    professional_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    
    __table_args__ = (
        db.UniqueConstraint('request_id', 'professional_id', name='uq_request_notification'),
    )
    
    def to_dict(self):
        return {
            'id': self.id,
            'request_id': self.request_id,
            'professional_id': self.professional_id,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
    
    def __repr__(self):
        return f'<RequestNotification request={self.request_id} pro={self.professional_id}>'
