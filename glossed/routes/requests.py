"""Service request routes (create, list, withdraw, make an offer)."""

from flask import Blueprint, request, jsonify
from glossed import db
from glossed.errors import BookingError
from glossed.models import ServiceRequest
from glossed.services.lifecycle import LifecycleService
from glossed.utils import token_required, error_response

requests_bp = Blueprint('requests', __name__)


@requests_bp.route('', methods=['POST'])
@token_required
def create_request(current_user_id):
    """Client submits a new request.
    
    Body:
        services: list[str] - Requested services
        date: str - YYYY-MM-DD
        time_slot: str - e.g. 'Afternoon (13-18)'
        address, latitude, longitude, notes
    """
    data = request.get_json() or {}
    try:
        service_request, notified = LifecycleService.create_request(current_user_id, data)
    except BookingError as e:
        return error_response(e)
    
    return jsonify({
        'request': service_request.to_dict(),
        'professionals_notified': notified,
    }), 201


@requests_bp.route('/mine', methods=['GET'])
@token_required
def my_requests(current_user_id):
    """Client's own requests, excluding those already booked."""
    requests_list = LifecycleService.list_client_requests(current_user_id)
    return jsonify({
        'requests': [r.to_dict() for r in requests_list],
        'total': len(requests_list),
    }), 200


@requests_bp.route('/open', methods=['GET'])
@token_required
def open_requests(current_user_id):
    """Pending requests the current professional was notified about."""
    requests_list = LifecycleService.list_open_requests(current_user_id)
    return jsonify({
        'requests': [r.to_dict() for r in requests_list],
        'total': len(requests_list),
    }), 200


@requests_bp.route('/<int:request_id>/withdraw', methods=['POST'])
@token_required
def withdraw_request(current_user_id, request_id):
    """Client withdraws a request that has no offer yet."""
    try:
        service_request = LifecycleService.withdraw_request(request_id, current_user_id)
    except BookingError as e:
        return error_response(e)
    
    return jsonify({
        'message': 'Request withdrawn.',
        'request': service_request.to_dict(),
    }), 200


@requests_bp.route('/<int:request_id>/offers', methods=['POST'])
@token_required
def create_offer(current_user_id, request_id):
    """Professional proposes an offer for a pending request.
    
    Body:
        service_price: float - Price of the service
        travel_fee: float - Travel fee (optional)
        date: str - YYYY-MM-DD (defaults to the requested date)
        time: str - HH:mm (defaults to the requested slot start)
        description: str (optional)
    """
    service_request = db.session.get(ServiceRequest, request_id)
    if not service_request:
        return jsonify({'error': 'Request not found'}), 404
    
    data = request.get_json() or {}
    try:
        offer = LifecycleService.create_offer(service_request, current_user_id, data)
    except BookingError as e:
        return error_response(e)
    
    return jsonify({
        'message': 'Proposal sent successfully!',
        'offer': offer.to_dict(),
    }), 201
