"""Database models for the booking lifecycle."""

from .user import User
from .service_request import ServiceRequest, RequestStatus
from .offer import Offer, OfferStatus
from .payment import Payment, PaymentStatus
from .request_notification import RequestNotification
from .reconciliation_gap import ReconciliationGap, GapKind

__all__ = [
    'User',
    'ServiceRequest',
    'RequestStatus',
    'Offer',
    'OfferStatus',
    'Payment',
    'PaymentStatus',
    'RequestNotification',
    'ReconciliationGap',
    'GapKind',
]
