"""Notification counter routes."""

from flask import Blueprint, jsonify
from glossed.errors import BookingError
from glossed.services.notifications import notification_hub
from glossed.utils import token_required, error_response

notifications_bp = Blueprint('notifications', __name__)


@notifications_bp.route('', methods=['GET'])
@token_required
def get_notifications(current_user_id):
    """Per-category unread counters of the current user."""
    return jsonify({'notifications': notification_hub.notifications(current_user_id)}), 200


@notifications_bp.route('/<category>/reset', methods=['POST'])
@token_required
def reset_notification(current_user_id, category):
    """Zero one category (e.g. after opening the offers list)."""
    try:
        counters = notification_hub.reset_notification(current_user_id, category)
    except BookingError as e:
        return error_response(e)
    return jsonify({'notifications': counters}), 200
