"""Reconciliation gaps between Stripe and the payment/offer rows."""

import json
from datetime import datetime
from glossed import db


class GapKind:
    PROCESSOR_TIMEOUT = 'processor_timeout'  # Refund may have happened without acknowledgment
    PAYMENT_UPDATE_FAILED = 'payment_update_failed'  # Refund done, payment row not updated
    OFFER_UPDATE_FAILED = 'offer_update_failed'  # Payment settled, offer row not cancelled
    ORPHAN_PAYMENT = 'orphan_payment'  # Surplus charge whose immediate refund failed


class ReconciliationGap(db.Model):
    """Disagreement that needs a manual or scheduled reconciliation pass."""
    
    __tablename__ = 'reconciliation_gaps'
    
    id = db.Column(db.Integer, primary_key=True)
    offer_id = db.Column(db.Integer, nullable=True, index=True)
    payment_id = db.Column(db.Integer, nullable=True, index=True)
    mode = db.Column(db.String(40), nullable=True)
    kind = db.Column(db.String(40), nullable=False, index=True)
    detail = db.Column(db.Text, nullable=True)  # JSON string
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    resolution = db.Column(db.String(255), nullable=True)
    
    def set_detail(self, detail_dict: dict):
        self.detail = json.dumps(detail_dict, default=str) if detail_dict else None
    
    def get_detail(self) -> dict:
        if self.detail:
            try:
                return json.loads(self.detail)
            except (json.JSONDecodeError, TypeError):
                return {}
        return {}
    
    def to_dict(self):
        return {
            'id': self.id,
            'offer_id': self.offer_id,
            'payment_id': self.payment_id,
            'mode': self.mode,
            'kind': self.kind,
            'detail': self.get_detail(),
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'resolved_at': self.resolved_at.isoformat() if self.resolved_at else None,
            'resolution': self.resolution,
        }
    
    def __repr__(self):
        return f'<ReconciliationGap {self.id}: {self.kind} offer={self.offer_id}>'
