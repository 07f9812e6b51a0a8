"""Payment routes: history, Stripe webhook, reconciliation."""

from flask import Blueprint, request, jsonify, current_app
from glossed import db
from glossed.errors import BookingError
from glossed.models import Payment, ReconciliationGap, User
from glossed.services.settlement import PLATFORM_FEE_PERCENT
from glossed.services.stripe_service import StripeService
from glossed.utils import token_required, error_response
import stripe
import os

payments_bp = Blueprint('payments', __name__)


@payments_bp.route('', methods=['GET'])
@token_required
def get_payments(current_user_id):
    """Get user's payment history.
    
    Query params:
        status: Filter by status (optional)
    """
    status = request.args.get('status')
    
    query = Payment.query.filter(
        db.or_(
            Payment.client_id == current_user_id,
            Payment.professional_id == current_user_id
        )
    )
    
    if status:
        query = query.filter(Payment.status == status)
    
    payments = query.order_by(Payment.created_at.desc()).all()
    
    return jsonify({
        'payments': [p.to_dict() for p in payments],
        'total': len(payments)
    }), 200


@payments_bp.route('/webhook', methods=['POST'])
def stripe_webhook():
    """Handle Stripe webhooks."""
    payload = request.data
    sig_header = request.headers.get('Stripe-Signature')
    
    try:
        event = StripeService.construct_event(payload, sig_header)
    except ValueError:
        return jsonify({'error': 'Invalid payload'}), 400
    except stripe.SignatureVerificationError:
        return jsonify({'error': 'Invalid signature'}), 400
    
    try:
        result = StripeService.handle_webhook(event)
    except BookingError as e:
        current_app.logger.error(f'Webhook {event["type"]} failed: {e.message}')
        return error_response(e)
    
    return jsonify(result), 200


@payments_bp.route('/config', methods=['GET'])
def get_stripe_config():
    """Get Stripe public configuration."""
    return jsonify({
        'publishable_key': os.getenv('STRIPE_PUBLISHABLE_KEY'),
        'platform_fee_percent': PLATFORM_FEE_PERCENT
    }), 200


@payments_bp.route('/reconciliation-gaps', methods=['GET'])
@token_required
def get_reconciliation_gaps(current_user_id):
    """Open reconciliation gaps, for support staff.
    
    Query params:
        include_resolved: 'true' to include resolved gaps
    """
    user = db.session.get(User, current_user_id)
    if not user or not user.is_staff:
        return jsonify({'error': 'Access denied'}), 403
    
    query = ReconciliationGap.query
    if request.args.get('include_resolved', 'false').lower() != 'true':
        query = query.filter(ReconciliationGap.resolved_at.is_(None))
    
    gaps = query.order_by(ReconciliationGap.created_at.desc()).all()
    return jsonify({
        'gaps': [g.to_dict() for g in gaps],
        'total': len(gaps)
    }), 200
