"""Offer routes: checkout, cancellation workflow, withdrawal."""

from flask import Blueprint, request, jsonify, current_app
from glossed import db
from glossed.errors import BookingError
from glossed.models import Offer
from glossed.services.lifecycle import LifecycleService
from glossed.services.settlement import SettlementMode, SettlementResult, SettlementService
from glossed.services.stripe_service import StripeService
from glossed.utils import token_required, error_response
from glossed.utils.responses import cancellation_error_response

offers_bp = Blueprint('offers', __name__)


@offers_bp.route('', methods=['GET'])
@token_required
def list_offers(current_user_id):
    """Offers where the current user is client or professional.
    
    Query params:
        role: 'client' or 'professional' (optional)
        status: Filter by status (optional)
    """
    role = request.args.get('role')
    status = request.args.get('status')
    
    if role == 'client':
        query = Offer.query.filter(Offer.client_id == current_user_id)
    elif role == 'professional':
        query = Offer.query.filter(Offer.professional_id == current_user_id)
    else:
        query = Offer.query.filter(
            db.or_(
                Offer.client_id == current_user_id,
                Offer.professional_id == current_user_id
            )
        )
    
    if status:
        query = query.filter(Offer.status == status)
    
    offers = query.order_by(Offer.date.asc(), Offer.time.asc()).all()
    return jsonify({
        'offers': [o.to_dict() for o in offers],
        'total': len(offers),
    }), 200


@offers_bp.route('/<int:offer_id>', methods=['DELETE'])
@token_required
def withdraw_offer(current_user_id, offer_id):
    """Professional withdraws a proposal that was not paid."""
    try:
        offer = LifecycleService.withdraw_offer(offer_id, current_user_id)
    except BookingError as e:
        return error_response(e)
    return jsonify({'message': 'Offer withdrawn.', 'offer': offer.to_dict()}), 200


@offers_bp.route('/<int:offer_id>/checkout', methods=['POST'])
@token_required
def checkout(current_user_id, offer_id):
    """Client starts paying an offer. Returns the Stripe Checkout URL."""
    offer = db.session.get(Offer, offer_id)
    if not offer:
        return jsonify({'error': 'Offer not found'}), 404
    if offer.client_id != current_user_id:
        return jsonify({'error': 'Only the client can pay this offer'}), 403
    
    base_url = current_app.config['FRONTEND_URL']
    try:
        session = StripeService.create_checkout_session(
            offer,
            success_url=f'{base_url}/dashboard/payment/success?session_id={{CHECKOUT_SESSION_ID}}',
            cancel_url=f'{base_url}/dashboard/payment/cancel',
        )
    except BookingError as e:
        return error_response(e)
    
    return jsonify(session), 200


@offers_bp.route('/<int:offer_id>/request-cancellation', methods=['POST'])
@token_required
def request_cancellation(current_user_id, offer_id):
    """Client asks the professional to cancel a confirmed booking."""
    try:
        offer = LifecycleService.request_cancellation(offer_id, current_user_id)
    except BookingError as e:
        return error_response(e)
    return jsonify({
        'message': 'Your cancellation request was sent to the professional.',
        'offer': offer.to_dict(),
    }), 200


@offers_bp.route('/<int:offer_id>/decline-cancellation', methods=['POST'])
@token_required
def decline_cancellation(current_user_id, offer_id):
    """Professional keeps the booking; nothing is refunded."""
    try:
        offer = LifecycleService.decline_cancellation(offer_id, current_user_id)
    except BookingError as e:
        return error_response(e)
    return jsonify({'message': 'Cancellation request declined.', 'offer': offer.to_dict()}), 200


def _settle(current_user_id, offer_id, mode, success_message):
    try:
        result = SettlementService.settle_cancellation(offer_id, mode, actor_id=current_user_id)
    except BookingError as e:
        return cancellation_error_response(e)
    
    body = result.to_dict()
    if result.status == SettlementResult.IN_PROGRESS:
        body['message'] = 'This cancellation is already being processed.'
        return jsonify(body), 202
    if result.status == SettlementResult.ALREADY_SETTLED:
        body['message'] = 'This booking was already cancelled and refunded.'
        return jsonify(body), 200
    body['message'] = success_message
    return jsonify(body), 200


@offers_bp.route('/<int:offer_id>/approve-cancellation', methods=['POST'])
@token_required
def approve_cancellation(current_user_id, offer_id):
    """Professional approves the client's request: net refunded, platform fee kept."""
    return _settle(
        current_user_id, offer_id, SettlementMode.CLIENT_CANCEL_APPROVED,
        'Cancellation approved. The client has been refunded.'
    )


@offers_bp.route('/<int:offer_id>/cancel', methods=['POST'])
@token_required
def cancel_offer(current_user_id, offer_id):
    """Professional cancels a confirmed booking: full refund."""
    return _settle(
        current_user_id, offer_id, SettlementMode.PROFESSIONAL_CANCEL,
        'Booking cancelled. The client has been fully refunded.'
    )
