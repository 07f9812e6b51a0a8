"""JSON error responses for service errors."""

from flask import jsonify, current_app
from glossed.errors import BookingError, ProcessorError

CANCELLATION_FAILED_MESSAGE = (
    'The cancellation did not complete. Our support team will follow up.'
)


def error_response(error: BookingError):
    """Translate a service error into a JSON response tuple."""
    if error.status_code >= 500:
        current_app.logger.error(f'{error.__class__.__name__}: {error.message}')
    return jsonify(error.to_dict()), error.status_code


def cancellation_error_response(error: BookingError):
    """Like error_response, but never lets a failed refund read as a success."""
    if isinstance(error, ProcessorError):
        current_app.logger.error(f'Cancellation refund failed: {error.message}')
        payload = error.to_dict()
        payload['error'] = CANCELLATION_FAILED_MESSAGE
        payload['processor_message'] = error.message
        return jsonify(payload), error.status_code
    return error_response(error)
