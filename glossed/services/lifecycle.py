"""Request and offer lifecycle.

Valid transitions live in the two tables below. Every transition re-reads
the row, checks the table, then writes with a conditional update keyed on
the status it just read, so a concurrent writer makes the update match
zero rows instead of silently overwriting. Offer transitions that affect
the originating request update both rows in the same transaction.
"""

import logging
import re
from datetime import datetime

from sqlalchemy import exists

from glossed import db
from glossed.errors import (
    InvalidTransition,
    NotFound,
    PermissionDenied,
    RequestNoLongerAvailable,
    ValidationError,
)
from glossed.models import (
    Offer,
    OfferStatus,
    RequestNotification,
    RequestStatus,
    ServiceRequest,
    User,
)
from glossed.services.change_feed import conditional_update
from glossed.services.matching import find_matching_professionals

logger = logging.getLogger(__name__)

REQUEST_TRANSITIONS = {
    RequestStatus.PENDING: {RequestStatus.PROPOSED, RequestStatus.CANCELLED},
    RequestStatus.PROPOSED: {RequestStatus.CONFIRMED, RequestStatus.CANCELLED},
    RequestStatus.CONFIRMED: {RequestStatus.COMPLETED, RequestStatus.CANCELLED},
}

OFFER_TRANSITIONS = {
    OfferStatus.PROPOSED: {OfferStatus.CONFIRMED, OfferStatus.CANCELLED},
    OfferStatus.CONFIRMED: {OfferStatus.CANCEL_REQUESTED, OfferStatus.CANCELLED, OfferStatus.COMPLETED},
    OfferStatus.CANCEL_REQUESTED: {OfferStatus.CANCELLED, OfferStatus.CONFIRMED},
}

# Offer statuses that take the originating request out of the open lists
LOCKING_OFFER_STATUSES = (OfferStatus.CONFIRMED, OfferStatus.CANCEL_REQUESTED, OfferStatus.COMPLETED)

OFFER_TIMESTAMPS = {
    OfferStatus.CONFIRMED: 'confirmed_at',
    OfferStatus.CANCEL_REQUESTED: 'cancel_requested_at',
    OfferStatus.CANCELLED: 'cancelled_at',
    OfferStatus.COMPLETED: 'completed_at',
}


def check_transition(entity, current, target):
    """Raise InvalidTransition unless ``current -> target`` is allowed."""
    table = REQUEST_TRANSITIONS if entity == 'request' else OFFER_TRANSITIONS
    if target not in table.get(current, set()):
        raise InvalidTransition(entity, current, target)


def predecessors(entity, target):
    table = REQUEST_TRANSITIONS if entity == 'request' else OFFER_TRANSITIONS
    return tuple(sorted(source for source, targets in table.items() if target in targets))


def paired_request_target(current, target):
    """Request status that must change together with an offer transition.
    
    Returns None when the request is unaffected (asking for or declining a
    cancellation keeps the booking confirmed).
    """
    if current == OfferStatus.CANCEL_REQUESTED and target == OfferStatus.CONFIRMED:
        return None
    return {
        OfferStatus.CONFIRMED: RequestStatus.CONFIRMED,
        OfferStatus.COMPLETED: RequestStatus.COMPLETED,
        OfferStatus.CANCELLED: RequestStatus.CANCELLED,
    }.get(target)


def time_from_slot(slot):
    """Extract "HH:00" from a slot label like 'Afternoon (13-18)'."""
    if not slot:
        return ''
    match = re.search(r'\((\d{2})[–-](\d{2})\)', slot)
    return f'{match.group(1)}:00' if match else ''


def to_cents(value, field):
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be a number')
    if amount < 0:
        raise ValidationError(f'{field} cannot be negative')
    return int(round(amount * 100))


class LifecycleService:
    """Transitions for requests and offers."""
    
    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    
    @staticmethod
    def create_request(client_id, data):
        """Create a pending request and notify matching professionals.
        
        Args:
            client_id: User ID of the client
            data: dict with services (or service), date, time_slot, address,
                latitude, longitude, notes
        
        Returns:
            tuple: (ServiceRequest, number of professionals notified)
        """
        services = data.get('services') or ([data['service']] if data.get('service') else [])
        services = [s.strip() for s in services if s and s.strip()]
        if not services:
            raise ValidationError('At least one service is required')
        if not data.get('date'):
            raise ValidationError('Date is required')
        
        service_request = ServiceRequest(
            client_id=client_id,
            service=services[0],
            services=services,
            date=data['date'],
            time_slot=data.get('time_slot'),
            address=data.get('address'),
            latitude=data.get('latitude'),
            longitude=data.get('longitude'),
            notes=data.get('notes'),
            status=RequestStatus.PENDING,
        )
        db.session.add(service_request)
        db.session.flush()
        
        matching_pros = find_matching_professionals(service_request)
        for pro in matching_pros:
            db.session.add(RequestNotification(request_id=service_request.id, professional_id=pro.id))
        
        db.session.commit()
        logger.info(f'Request {service_request.id} created, {len(matching_pros)} professionals notified')
        return service_request, len(matching_pros)
    
    @staticmethod
    def withdraw_request(request_id, client_id):
        """Client withdraws a request that has not received an offer yet."""
        service_request = db.session.get(ServiceRequest, request_id, populate_existing=True)
        if not service_request:
            raise NotFound('Request not found')
        if service_request.client_id != client_id:
            raise PermissionDenied('Only the client can withdraw this request')
        
        check_transition('request', service_request.status, RequestStatus.CANCELLED)
        if service_request.status != RequestStatus.PENDING:
            # Once an offer exists the request follows the offer
            raise InvalidTransition('request', service_request.status, RequestStatus.CANCELLED)
        
        try:
            updated = conditional_update(
                ServiceRequest, request_id, RequestStatus.PENDING,
                {'status': RequestStatus.CANCELLED}
            )
            if updated is None:
                current = db.session.get(ServiceRequest, request_id, populate_existing=True)
                raise InvalidTransition('request', current.status, RequestStatus.CANCELLED)
            
            RequestNotification.query.filter_by(request_id=request_id).delete(synchronize_session=False)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        
        logger.info(f'Request {request_id} withdrawn by client {client_id}')
        return updated
    
    @staticmethod
    def open_requests_query():
        """Requests still pending and not locked by any confirmed offer."""
        locked = exists().where(
            Offer.request_id == ServiceRequest.id,
            Offer.status.in_(LOCKING_OFFER_STATUSES),
        )
        return ServiceRequest.query.filter(
            ServiceRequest.status == RequestStatus.PENDING,
            ~locked,
        )
    
    @staticmethod
    def list_open_requests(professional_id):
        """Pending requests this professional was notified about."""
        notified = exists().where(
            RequestNotification.request_id == ServiceRequest.id,
            RequestNotification.professional_id == professional_id,
        )
        return LifecycleService.open_requests_query().filter(notified).order_by(
            ServiceRequest.created_at.desc()
        ).all()
    
    @staticmethod
    def list_client_requests(client_id):
        """Client's requests, without those already represented by a confirmed offer."""
        locked = exists().where(
            Offer.request_id == ServiceRequest.id,
            Offer.status.in_(LOCKING_OFFER_STATUSES),
        )
        return ServiceRequest.query.filter(
            ServiceRequest.client_id == client_id,
            ~locked,
        ).order_by(ServiceRequest.created_at.desc()).all()
    
    # ------------------------------------------------------------------
    # Offers
    # ------------------------------------------------------------------
    
    @staticmethod
    def create_offer(service_request, professional_id, data):
        """Professional proposes an offer against a pending request.
        
        The request is moved pending -> proposed and assigned to the
        professional in the same transaction as the offer insert. If another
        professional got there first the conditional update matches no row
        and RequestNoLongerAvailable is raised; no offer is created.
        
        Args:
            service_request: ServiceRequest as read by the caller
            professional_id: User ID of the professional
            data: dict with service_price, travel_fee, date, time, description
        
        Returns:
            Offer: The created offer
        """
        if service_request.client_id == professional_id:
            raise PermissionDenied('You cannot make an offer on your own request')
        
        pro = db.session.get(User, professional_id)
        if not pro or not pro.is_pro:
            raise PermissionDenied('Only professionals can make offers')
        
        if data.get('service_price') in (None, ''):
            raise ValidationError('Service price is required')
        service_price = to_cents(data.get('service_price'), 'service_price')
        if service_price <= 0:
            raise ValidationError('Service price must be greater than 0')
        travel_fee = to_cents(data.get('travel_fee') or 0, 'travel_fee')
        
        offer_date = data.get('date') or service_request.date
        offer_time = data.get('time') or time_from_slot(service_request.time_slot)
        if not offer_date or not offer_time:
            raise ValidationError('Date and time are required')
        
        if service_request.status != RequestStatus.PENDING:
            raise RequestNoLongerAvailable()
        
        try:
            claimed = conditional_update(
                ServiceRequest, service_request.id, RequestStatus.PENDING,
                {'status': RequestStatus.PROPOSED, 'professional_id': professional_id}
            )
            if claimed is None:
                raise RequestNoLongerAvailable()
            
            offer = Offer(
                request_id=claimed.id,
                client_id=claimed.client_id,
                professional_id=professional_id,
                service=claimed.service,
                description=data.get('description') or claimed.notes,
                date=offer_date,
                time=offer_time,
                duration=int(data.get('duration') or 60),
                service_price=service_price,
                travel_fee=travel_fee,
                price=service_price + travel_fee,
                status=OfferStatus.PROPOSED,
            )
            db.session.add(offer)
            
            # The request is no longer open to anyone else
            RequestNotification.query.filter_by(request_id=claimed.id).delete(synchronize_session=False)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        
        logger.info(f'Offer {offer.id} created by professional {professional_id} for request {claimed.id}')
        return offer
    
    @staticmethod
    def transition_offer(offer, target, values=None, commit=True):
        """Move an offer to ``target`` and pair the request update.
        
        ``offer`` is the row the caller read; the check runs against a
        fresh read and the write is conditional on that fresh status.
        
        Returns:
            Offer: The updated offer
        """
        fresh = db.session.get(Offer, offer.id, populate_existing=True)
        if not fresh:
            raise NotFound('Offer not found')
        
        current = fresh.status
        check_transition('offer', current, target)
        
        changes = {'status': target}
        stamp = OFFER_TIMESTAMPS.get(target)
        if stamp:
            changes[stamp] = datetime.utcnow()
        if values:
            changes.update(values)
        
        try:
            updated = conditional_update(Offer, fresh.id, current, changes)
            if updated is None:
                latest = db.session.get(Offer, fresh.id, populate_existing=True)
                raise InvalidTransition('offer', latest.status, target)
            
            request_target = paired_request_target(current, target)
            if request_target and updated.request_id:
                LifecycleService._transition_request(updated.request_id, request_target)
            
            if commit:
                db.session.commit()
        except Exception:
            if commit:
                db.session.rollback()
            raise
        
        logger.info(f'Offer {updated.id}: {current} -> {target}')
        return updated
    
    @staticmethod
    def _transition_request(request_id, target):
        service_request = db.session.get(ServiceRequest, request_id, populate_existing=True)
        if not service_request:
            raise NotFound('Request not found')
        
        check_transition('request', service_request.status, target)
        updated = conditional_update(
            ServiceRequest, request_id, service_request.status, {'status': target}
        )
        if updated is None:
            latest = db.session.get(ServiceRequest, request_id, populate_existing=True)
            raise InvalidTransition('request', latest.status, target)
        return updated
    
    @staticmethod
    def get_offer(offer_id):
        offer = db.session.get(Offer, offer_id, populate_existing=True)
        if not offer:
            raise NotFound('Offer not found')
        return offer
    
    @staticmethod
    def withdraw_offer(offer_id, professional_id):
        """Professional deletes a proposal before it is paid. No refund needed."""
        offer = LifecycleService.get_offer(offer_id)
        if offer.professional_id != professional_id:
            raise PermissionDenied('Only the professional can withdraw this offer')
        if offer.status != OfferStatus.PROPOSED:
            raise InvalidTransition('offer', offer.status, OfferStatus.CANCELLED)
        return LifecycleService.transition_offer(offer, OfferStatus.CANCELLED)
    
    @staticmethod
    def request_cancellation(offer_id, client_id):
        """Client asks the professional to cancel a confirmed booking."""
        offer = LifecycleService.get_offer(offer_id)
        if offer.client_id != client_id:
            raise PermissionDenied('Only the client can request a cancellation')
        return LifecycleService.transition_offer(offer, OfferStatus.CANCEL_REQUESTED)
    
    @staticmethod
    def decline_cancellation(offer_id, professional_id):
        """Professional declines the cancellation request; booking stays confirmed."""
        offer = LifecycleService.get_offer(offer_id)
        if offer.professional_id != professional_id:
            raise PermissionDenied('Only the professional can decline a cancellation')
        if offer.status != OfferStatus.CANCEL_REQUESTED:
            raise InvalidTransition('offer', offer.status, OfferStatus.CONFIRMED)
        # cancel_requested_at is kept so the declined request stays visible
        return LifecycleService.transition_offer(
            offer, OfferStatus.CONFIRMED, values={'confirmed_at': offer.confirmed_at}
        )
    
    @staticmethod
    def validate_confirmation(offer):
        """Check that an offer may be paid and confirmed. Does not write."""
        if offer.status != OfferStatus.PROPOSED:
            raise InvalidTransition('offer', offer.status, OfferStatus.CONFIRMED)
        if offer.price is None or offer.price <= 0:
            raise ValidationError('Offer has no payable price')
        return True
    
    @staticmethod
    def confirm_offer(offer_id, commit=True):
        """Apply an external payment confirmation: proposed -> confirmed."""
        offer = LifecycleService.get_offer(offer_id)
        LifecycleService.validate_confirmation(offer)
        return LifecycleService.transition_offer(offer, OfferStatus.CONFIRMED, commit=commit)
    
    @staticmethod
    def complete_offer(offer_id):
        """Mark a confirmed booking as done. Terminal."""
        offer = LifecycleService.get_offer(offer_id)
        return LifecycleService.transition_offer(offer, OfferStatus.COMPLETED)
