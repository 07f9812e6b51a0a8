"""Shared authentication utilities.

Tokens are issued by the external auth service; this module only
verifies them.
"""

from functools import wraps
from flask import request, jsonify, current_app
import jwt


def decode_user_id(token):
    """Return the user_id claim of a JWT, or None when the token is invalid."""
    if not token:
        return None
    if token.startswith('Bearer '):
        token = token.split(' ', 1)[1]
    try:
        payload = jwt.decode(token, current_app.config['JWT_SECRET_KEY'], algorithms=['HS256'])
        return payload.get('user_id')
    except jwt.InvalidTokenError:
        return None


def token_required(f):
    """
    Decorator to require valid JWT token.
    
    Extracts user_id from JWT token and passes it as the first argument
    to the decorated function.
    
    Usage:
        @app.route('/protected')
        @token_required
        def protected_route(current_user_id):
            return jsonify({'user_id': current_user_id})
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        auth_header = request.headers.get('Authorization')
        
        if not auth_header:
            return jsonify({'error': 'Token is missing'}), 401
        
        # Support both "Bearer <token>" and raw token formats
        token = auth_header.split(' ')[1] if ' ' in auth_header else auth_header
        try:
            payload = jwt.decode(token, current_app.config['JWT_SECRET_KEY'], algorithms=['HS256'])
            current_user_id = payload['user_id']
        except jwt.ExpiredSignatureError:
            return jsonify({'error': 'Token has expired'}), 401
        except (jwt.InvalidTokenError, KeyError):
            return jsonify({'error': 'Token is invalid'}), 401
        
        return f(current_user_id, *args, **kwargs)
    return decorated
